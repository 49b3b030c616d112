"""
Tests for the application entry point.
"""

from unittest.mock import AsyncMock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from consensus_audit.config import settings
from consensus_audit.services.dispatcher import BackgroundDispatcher


class TestRootEndpoint:
    def test_root(self, client: TestClient):
        response = client.get("/")

        assert response.status_code == 200
        body = response.json()
        assert body["service"] == settings.api_title
        assert body["status"] == "running"


class TestRequestIdHeader:
    def test_request_id_echoed(self, client: TestClient):
        response = client.get("/", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated_when_missing(self, client: TestClient):
        response = client.get("/")
        assert response.headers["X-Request-ID"]


class TestMetricsEndpoint:
    def test_metrics_exposed(self, client: TestClient):
        client.get("/")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text


class TestLifespan:
    """Startup and shutdown wiring."""

    def test_dispatcher_created_and_closed(self, app: FastAPI):
        with patch("consensus_audit.main.close_engines", new_callable=AsyncMock) as mock_close, patch(
            "consensus_audit.main.run_migrations"
        ) as mock_migrate:
            with TestClient(app):
                assert isinstance(app.state.dispatcher, BackgroundDispatcher)

        mock_close.assert_awaited_once()
        if not settings.run_migrations_on_startup:
            mock_migrate.assert_not_called()
