"""
Tests for Status API Routes.

Tests the status endpoint and dependency checks.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from consensus_audit.api import status_routes
from consensus_audit.api.status_routes import (
    ProviderStatus,
    ServiceStatusResponse,
    StatusLevel,
    calculate_overall_status,
    check_llm_gateway,
    check_moderation,
    check_postgresql,
)
from consensus_audit.config import settings
from consensus_audit.exceptions import ProviderError


def provider(status: StatusLevel, latency_ms: int | None = 50) -> ProviderStatus:
    return ProviderStatus(
        status=status, latency_ms=latency_ms, last_check=datetime.now(UTC).isoformat()
    )


def gateway_returning(ping: AsyncMock) -> MagicMock:
    gateway = MagicMock()
    gateway.ping = ping
    return gateway


class TestStatusLevel:
    """Tests for StatusLevel enum."""

    def test_status_levels_exist(self):
        """StatusLevel has expected values."""
        assert StatusLevel.OPERATIONAL == "operational"
        assert StatusLevel.DEGRADED == "degraded"
        assert StatusLevel.OUTAGE == "outage"


class TestCalculateOverallStatus:
    """Tests for calculate_overall_status function."""

    def test_all_operational(self):
        providers = {
            "postgresql": provider(StatusLevel.OPERATIONAL),
            "llm_gateway": provider(StatusLevel.OPERATIONAL, 100),
        }
        assert calculate_overall_status(providers) == StatusLevel.OPERATIONAL

    def test_one_degraded(self):
        providers = {
            "postgresql": provider(StatusLevel.OPERATIONAL),
            "llm_gateway": provider(StatusLevel.DEGRADED, 1500),
        }
        assert calculate_overall_status(providers) == StatusLevel.DEGRADED

    def test_outage_takes_priority_over_degraded(self):
        """Outage status takes priority over degraded."""
        providers = {
            "postgresql": provider(StatusLevel.OUTAGE, None),
            "llm_gateway": provider(StatusLevel.DEGRADED, 1500),
        }
        assert calculate_overall_status(providers) == StatusLevel.OUTAGE


class TestCheckPostgresql:
    """Tests for check_postgresql function."""

    @pytest.mark.asyncio
    async def test_postgresql_operational(self):
        """PostgreSQL check returns operational on success."""
        mock_db = AsyncMock()
        mock_db.execute = AsyncMock()

        @asynccontextmanager
        async def mock_get_session():
            yield mock_db

        with patch("consensus_audit.api.status_routes.get_session", mock_get_session):
            result = await check_postgresql()

        assert result.status == StatusLevel.OPERATIONAL
        assert result.latency_ms is not None
        assert result.latency_ms >= 0
        mock_db.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_postgresql_outage_on_error(self):
        """PostgreSQL check returns outage on connection error."""

        @asynccontextmanager
        async def mock_get_session():
            raise ConnectionError("Cannot connect")
            yield  # noqa: unreachable

        with patch("consensus_audit.api.status_routes.get_session", mock_get_session):
            result = await check_postgresql()

        assert result.status == StatusLevel.OUTAGE
        assert result.message == "Connection failed"


class TestCheckLLMGateway:
    """Tests for check_llm_gateway function."""

    @pytest.mark.asyncio
    async def test_gateway_operational(self):
        gateway = gateway_returning(AsyncMock(return_value=200))

        with patch("consensus_audit.api.status_routes.get_llm_provider", return_value=gateway):
            result = await check_llm_gateway()

        assert result.status == StatusLevel.OPERATIONAL
        assert result.latency_ms is not None

    @pytest.mark.asyncio
    async def test_gateway_timeout(self):
        gateway = gateway_returning(AsyncMock(side_effect=httpx.TimeoutException("Timeout")))

        with patch("consensus_audit.api.status_routes.get_llm_provider", return_value=gateway):
            result = await check_llm_gateway()

        assert result.status == StatusLevel.OUTAGE
        assert result.message == "Timeout"

    @pytest.mark.asyncio
    async def test_gateway_connection_error(self):
        gateway = gateway_returning(AsyncMock(side_effect=httpx.ConnectError("refused")))

        with patch("consensus_audit.api.status_routes.get_llm_provider", return_value=gateway):
            result = await check_llm_gateway()

        assert result.status == StatusLevel.OUTAGE
        assert result.message == "Connection failed"

    @pytest.mark.asyncio
    async def test_gateway_unexpected_status(self):
        """Gateway check returns degraded on unexpected status code."""
        gateway = gateway_returning(AsyncMock(return_value=401))

        with patch("consensus_audit.api.status_routes.get_llm_provider", return_value=gateway):
            result = await check_llm_gateway()

        assert result.status == StatusLevel.DEGRADED
        assert "Unexpected status" in result.message


class TestCheckModeration:
    """Tests for check_moderation function."""

    @pytest.mark.asyncio
    async def test_moderation_operational(self):
        moderation = MagicMock()
        moderation.moderate = AsyncMock()

        with patch(
            "consensus_audit.api.status_routes.get_moderation_provider", return_value=moderation
        ):
            result = await check_moderation()

        assert result.status == StatusLevel.OPERATIONAL
        moderation.moderate.assert_awaited_once_with(status_routes.MODERATION_CHECK_TEXT)

    @pytest.mark.asyncio
    async def test_failure_degrades_when_failing_open(self):
        moderation = MagicMock()
        moderation.moderate = AsyncMock(
            side_effect=ProviderError("omni", "moderation HTTP 500", http_status=500)
        )

        with patch(
            "consensus_audit.api.status_routes.get_moderation_provider", return_value=moderation
        ), patch.object(settings, "moderation_fail_open", True):
            result = await check_moderation()

        assert result.status == StatusLevel.DEGRADED
        assert result.message == "Unexpected status: 500"

    @pytest.mark.asyncio
    async def test_failure_is_outage_when_failing_closed(self):
        moderation = MagicMock()
        moderation.moderate = AsyncMock(side_effect=ProviderError("omni", "transport error"))

        with patch(
            "consensus_audit.api.status_routes.get_moderation_provider", return_value=moderation
        ), patch.object(settings, "moderation_fail_open", False):
            result = await check_moderation()

        assert result.status == StatusLevel.OUTAGE
        assert result.message == "Connection failed"


class TestStatusEndpoint:
    """Tests for GET /v1/status."""

    def test_status_reports_providers(self, client):
        status_routes._status_cache.clear()
        with patch.object(
            status_routes, "check_postgresql", new_callable=AsyncMock
        ) as mock_pg, patch.object(
            status_routes, "check_llm_gateway", new_callable=AsyncMock
        ) as mock_llm, patch.object(
            status_routes, "check_moderation", new_callable=AsyncMock
        ) as mock_mod:
            mock_pg.return_value = provider(StatusLevel.OPERATIONAL)
            mock_llm.return_value = provider(StatusLevel.DEGRADED, 1500)
            mock_mod.return_value = provider(StatusLevel.OPERATIONAL)

            response = client.get("/v1/status")

        assert response.status_code == 200
        body = response.json()
        assert body["service"] == "consensus-audit"
        assert body["status"] == "degraded"
        assert set(body["providers"]) == {"postgresql", "llm_gateway", "moderation"}
        status_routes._status_cache.clear()

    def test_status_is_cached(self, client):
        status_routes._status_cache.clear()
        with patch.object(
            status_routes, "check_postgresql", new_callable=AsyncMock
        ) as mock_pg, patch.object(
            status_routes, "check_llm_gateway", new_callable=AsyncMock
        ) as mock_llm, patch.object(
            status_routes, "check_moderation", new_callable=AsyncMock
        ) as mock_mod:
            mock_pg.return_value = provider(StatusLevel.OPERATIONAL)
            mock_llm.return_value = provider(StatusLevel.OPERATIONAL)
            mock_mod.return_value = provider(StatusLevel.OPERATIONAL)

            client.get("/v1/status")
            client.get("/v1/status")

        assert mock_pg.await_count == 1
        status_routes._status_cache.clear()


class TestServiceStatusResponse:
    """Tests for ServiceStatusResponse model."""

    def test_service_status_response_model(self):
        response = ServiceStatusResponse(
            status=StatusLevel.OPERATIONAL,
            timestamp=datetime.now(UTC).isoformat(),
            version="1.0.0",
            providers={"postgresql": provider(StatusLevel.OPERATIONAL)},
        )
        assert response.service == "consensus-audit"
        assert response.providers["postgresql"].status == StatusLevel.OPERATIONAL
