"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest

from consensus_audit.api.routes import router
from consensus_audit.api.status_routes import router as status_router
from consensus_audit.config import settings
from consensus_audit.db.migration_runner import run_migrations
from consensus_audit.db.session import close_engines
from consensus_audit.models.api import ErrorResponse
from consensus_audit.observability import (
    get_logger,
    log_context,
    metrics,
    setup_logging,
    setup_tracing,
)
from consensus_audit.observability.tracing import instrument_fastapi
from consensus_audit.services.dispatcher import BackgroundDispatcher, OutboxWorker
from consensus_audit.services.llm_provider import close_llm_provider
from consensus_audit.services.moderation import close_moderation_provider
from consensus_audit.services.notifications import close_email_sender, get_email_sender
from consensus_audit.services.stripe_provider import get_checkout_provider
from consensus_audit.services.tasks import BackgroundTaskHandlers

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Starts the background dispatcher and outbox worker; drains them on shutdown.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)

    handlers = BackgroundTaskHandlers(get_email_sender(), get_checkout_provider())
    dispatcher = BackgroundDispatcher(handlers.as_mapping())
    app.state.dispatcher = dispatcher

    worker: OutboxWorker | None = None
    if settings.outbox_worker_enabled:
        worker = OutboxWorker(dispatcher)
        worker.start()

    yield

    logger.info("application_shutting_down")
    if worker is not None:
        await worker.stop()
    await dispatcher.wait_idle()

    await close_llm_provider()
    await close_moderation_provider()
    await close_email_sender()
    await close_engines()
    logger.info("application_stopped")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed requests as 400 with a readable summary."""
    errors = exc.errors()

    messages = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=messages,
    )
    body = ErrorResponse(error="Invalid request", details="; ".join(messages))
    return JSONResponse(status_code=400, content=body.model_dump(by_alias=True, exclude_none=True))


# Setup tracing
setup_tracing()
instrument_fastapi(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def route_label(request: Request) -> str:
    """Route template for metric labels, so path parameters do not explode cardinality."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


# Request logging middleware
@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log every request with timing and echo its X-Request-ID."""
    start_time = time.perf_counter()
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    method = request.method

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=request.url.path)
        metrics.http_requests_in_progress.labels(method=method).inc()

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            metrics.record_http_request(route_label(request), method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")
            logger.error(
                "request_failed",
                method=method,
                path=request.url.path,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(method=method).dec()

        duration = time.perf_counter() - start_time
        metrics.record_http_request(route_label(request), method, response.status_code, duration)
        logger.info(
            "request_completed",
            method=method,
            path=request.url.path,
            status_code=response.status_code,
            duration_seconds=duration,
        )

    response.headers[REQUEST_ID_HEADER] = request_id
    return response


# Register routes
app.include_router(router)
app.include_router(status_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "consensus_audit.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
