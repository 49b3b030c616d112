"""
API Routes - Consensus audit endpoint and health check.

Typed AuditErrors map to their own status codes with an {error, details}
body. Anything unexpected is reported with `unexpected_error_status`
(200 by default, which the web client expects) and an {error} body.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from consensus_audit.api.dependencies import get_bearer_credential, get_pipeline
from consensus_audit.config import settings
from consensus_audit.db.session import get_db
from consensus_audit.exceptions import AuditError
from consensus_audit.models.api import (
    AuditRequest,
    AuditResponse,
    ComputeStats,
    DraftItem,
    ErrorResponse,
    HealthResponse,
)
from consensus_audit.models.domain import AuditResult
from consensus_audit.observability import metrics
from consensus_audit.services.pipeline import ConsensusAuditPipeline

logger = get_logger(__name__)
router = APIRouter()

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred while running the audit"


def error_response(exc: AuditError) -> JSONResponse:
    """Render a typed error as a JSON response."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(by_alias=True, exclude_none=True),
    )


def to_audit_response(result: AuditResult) -> AuditResponse:
    """Convert a pipeline result to the wire model."""
    return AuditResponse(
        drafts=[
            DraftItem(agent=d.slot.slot_key, name=d.slot.display_name, response=d.response)
            for d in result.drafts
        ],
        verdict=result.verdict.verdict,
        librarian_analysis=result.librarian_analysis,
        remaining_audits=result.remaining_audits,
        training_dataset_id=(
            str(result.training_dataset_id) if result.training_dataset_id else None
        ),
        compute_stats=ComputeStats(
            total_tokens=result.total_tokens,
            estimated_cost=float(result.estimated_cost),
            model_count=result.model_count,
        ),
    )


@router.post(
    "/v1/consensus/audit",
    response_model=AuditResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def run_consensus_audit(
    body: AuditRequest,
    credential: str | None = Depends(get_bearer_credential),
    pipeline: ConsensusAuditPipeline = Depends(get_pipeline),
) -> AuditResponse | JSONResponse:
    """
    Run a consensus audit.

    Drafts the prompt with every council drafter, synthesizes one verdict
    with the auditor and charges the estimated cost to the caller's credits.
    """
    try:
        result = await pipeline.run(credential, body)
    except AuditError as exc:
        return error_response(exc)
    except Exception as exc:
        logger.exception("audit_unexpected_failure", error_type=type(exc).__name__)
        metrics.record_error(type(exc).__name__, "consensus_audit")
        return JSONResponse(
            status_code=settings.unexpected_error_status,
            content={"error": UNEXPECTED_ERROR_MESSAGE},
        )

    return to_audit_response(result)


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
