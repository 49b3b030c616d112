"""
Status API routes - Health of the service's dependencies.

Public endpoint (no auth) for status page aggregation.
Rate limited to prevent abuse.

Moderation only degrades the service while the gate fails open; with
fail-closed moderation every audit is rejected, which is an outage.
"""

import asyncio
import time
from datetime import UTC, datetime
from enum import Enum

import httpx
from fastapi import APIRouter
from pydantic import BaseModel, Field
from sqlalchemy import text
from structlog import get_logger

from consensus_audit.config import settings
from consensus_audit.db.session import get_session
from consensus_audit.exceptions import ProviderError
from consensus_audit.services.llm_provider import get_llm_provider
from consensus_audit.services.moderation import get_moderation_provider

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

# Timeout for health checks
CHECK_TIMEOUT = 5.0  # seconds
DEGRADED_LATENCY_THRESHOLD = 1000  # ms
MODERATION_CHECK_TEXT = "status check"

# Rate limiting: cache last result for 10 seconds
_status_cache: dict[str, tuple[datetime, "ServiceStatusResponse"]] = {}
_CACHE_TTL_SECONDS = 10


class StatusLevel(str, Enum):
    """Status levels for health checks."""

    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    OUTAGE = "outage"


class ProviderStatus(BaseModel):
    """Status of a single dependency."""

    status: StatusLevel
    latency_ms: int | None = None
    last_check: str = Field(..., description="ISO 8601 timestamp")
    message: str | None = None


class ServiceStatusResponse(BaseModel):
    """Response for /v1/status endpoint."""

    service: str = "consensus-audit"
    status: StatusLevel
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    version: str
    providers: dict[str, ProviderStatus]


def _timed_status(latency_ms: int, timestamp: str) -> ProviderStatus:
    status = (
        StatusLevel.DEGRADED if latency_ms > DEGRADED_LATENCY_THRESHOLD else StatusLevel.OPERATIONAL
    )
    return ProviderStatus(
        status=status,
        latency_ms=latency_ms,
        last_check=timestamp,
        message="High latency" if status == StatusLevel.DEGRADED else None,
    )


async def check_postgresql() -> ProviderStatus:
    """Check PostgreSQL connectivity."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
        return _timed_status(int((time.perf_counter() - start) * 1000), timestamp)
    except Exception as e:
        logger.warning("postgresql_health_check_failed", error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=None,
            last_check=timestamp,
            message="Connection failed",
        )


async def check_llm_gateway() -> ProviderStatus:
    """Check the LLM gateway's model listing is reachable."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    try:
        status_code = await asyncio.wait_for(get_llm_provider().ping(), timeout=CHECK_TIMEOUT)
        latency_ms = int((time.perf_counter() - start) * 1000)

        if status_code == 200:
            return _timed_status(latency_ms, timestamp)

        return ProviderStatus(
            status=StatusLevel.DEGRADED,
            latency_ms=latency_ms,
            last_check=timestamp,
            message=f"Unexpected status: {status_code}",
        )
    except (TimeoutError, httpx.TimeoutException):
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=int(CHECK_TIMEOUT * 1000),
            last_check=timestamp,
            message="Timeout",
        )
    except Exception as e:
        logger.warning("llm_gateway_health_check_failed", error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=None,
            last_check=timestamp,
            message="Connection failed",
        )


async def check_moderation() -> ProviderStatus:
    """Check the moderation endpoint classifies a sample text."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()
    unavailable = StatusLevel.DEGRADED if settings.moderation_fail_open else StatusLevel.OUTAGE

    try:
        await asyncio.wait_for(
            get_moderation_provider().moderate(MODERATION_CHECK_TEXT), timeout=CHECK_TIMEOUT
        )
        return _timed_status(int((time.perf_counter() - start) * 1000), timestamp)
    except TimeoutError:
        return ProviderStatus(
            status=unavailable,
            latency_ms=int(CHECK_TIMEOUT * 1000),
            last_check=timestamp,
            message="Timeout",
        )
    except ProviderError as e:
        logger.warning("moderation_health_check_failed", error=e.message)
        return ProviderStatus(
            status=unavailable,
            latency_ms=None,
            last_check=timestamp,
            message=(
                f"Unexpected status: {e.http_status}" if e.http_status else "Connection failed"
            ),
        )


def calculate_overall_status(providers: dict[str, ProviderStatus]) -> StatusLevel:
    """Calculate overall service status from dependency statuses."""
    statuses = [p.status for p in providers.values()]

    if StatusLevel.OUTAGE in statuses:
        return StatusLevel.OUTAGE
    if StatusLevel.DEGRADED in statuses:
        return StatusLevel.DEGRADED
    return StatusLevel.OPERATIONAL


@router.get("/v1/status", response_model=ServiceStatusResponse)
async def get_status() -> ServiceStatusResponse:
    """
    Get service status.

    Checks database, LLM gateway and moderation reachability concurrently.
    Rate limited via 10-second cache to prevent abuse.
    """
    cache_key = "status"
    now = datetime.now(UTC)

    if cache_key in _status_cache:
        cached_time, cached_response = _status_cache[cache_key]
        age_seconds = (now - cached_time).total_seconds()
        if age_seconds < _CACHE_TTL_SECONDS:
            logger.debug("status_cache_hit", age_seconds=age_seconds)
            return cached_response

    postgresql_status, llm_gateway_status, moderation_status = await asyncio.gather(
        check_postgresql(), check_llm_gateway(), check_moderation()
    )

    providers = {
        "postgresql": postgresql_status,
        "llm_gateway": llm_gateway_status,
        "moderation": moderation_status,
    }

    response = ServiceStatusResponse(
        status=calculate_overall_status(providers),
        timestamp=now.isoformat(),
        version=settings.api_version,
        providers=providers,
    )

    _status_cache[cache_key] = (now, response)
    return response
