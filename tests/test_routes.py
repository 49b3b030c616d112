"""
Tests for API Routes.

The pipeline is replaced through dependency overrides; these tests cover
the HTTP contract only.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import make_council
from consensus_audit.db.session import get_db
from consensus_audit.exceptions import (
    AccountSuspendedError,
    ContentPolicyViolationError,
    InsufficientCreditsError,
    QuotaExceededError,
    SynthesisFailedError,
    UnauthenticatedError,
)
from consensus_audit.models.domain import AuditResult, DraftResult, VerdictResult

AUDIT_PATH = "/v1/consensus/audit"


def audit_result(training_id=None) -> AuditResult:
    council = make_council()
    drafts = tuple(
        DraftResult(slot=slot, response=f"draft {slot.slot_key}", latency_ms=10, input_chars=100)
        for slot in council.drafters
    )
    return AuditResult(
        drafts=drafts,
        verdict=VerdictResult(slot=council.auditor, verdict="final verdict", latency_ms=20, input_chars=300),
        librarian_analysis=None,
        remaining_audits=2,
        training_dataset_id=training_id,
        total_tokens=150,
        estimated_cost=Decimal("0.012"),
        model_count=3,
    )


class TestAuditEndpoint:
    """Tests for POST /v1/consensus/audit."""

    def test_success_body(self, pipeline_client: TestClient, mock_pipeline: MagicMock, token):
        training_id = uuid4()
        mock_pipeline.run.return_value = audit_result(training_id)

        response = pipeline_client.post(
            AUDIT_PATH,
            json={"prompt": "Review this"},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["drafts"] == [
            {"agent": "agent_a", "name": "llama-3.3-70b-instruct", "response": "draft agent_a"},
            {"agent": "agent_b", "name": "claude-3.5-sonnet", "response": "draft agent_b"},
        ]
        assert body["verdict"] == "final verdict"
        assert body["remainingAudits"] == 2
        assert body["trainingDatasetId"] == str(training_id)
        assert body["computeStats"] == {"totalTokens": 150, "estimatedCost": 0.012, "modelCount": 3}

    def test_bearer_token_passed_to_pipeline(self, pipeline_client, mock_pipeline, token):
        mock_pipeline.run.return_value = audit_result()

        pipeline_client.post(
            AUDIT_PATH,
            json={"prompt": "Review this", "turboMode": True},
            headers={"Authorization": f"Bearer {token}"},
        )

        credential, request = mock_pipeline.run.await_args.args
        assert credential == token
        assert request.turbo_mode is True

    def test_missing_header_passes_none(self, pipeline_client, mock_pipeline):
        mock_pipeline.run.side_effect = UnauthenticatedError("missing bearer token")

        response = pipeline_client.post(AUDIT_PATH, json={"prompt": "Review this"})

        assert response.status_code == 401
        assert mock_pipeline.run.await_args.args[0] is None
        assert response.json()["details"]

    def test_insufficient_credits(self, pipeline_client, mock_pipeline, token):
        mock_pipeline.run.side_effect = InsufficientCreditsError(Decimal("0.01"), Decimal("0.012"))

        response = pipeline_client.post(
            AUDIT_PATH, json={"prompt": "x"}, headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 402
        body = response.json()
        assert body["error"] == "Insufficient credits"
        assert body["balance"] == 0.01
        assert body["estimatedCost"] == 0.012

    def test_quota_exceeded(self, pipeline_client, mock_pipeline, token):
        mock_pipeline.run.side_effect = QuotaExceededError("free", 3, 3)

        response = pipeline_client.post(
            AUDIT_PATH, json={"prompt": "x"}, headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 403
        assert response.json()["limit"] == 3

    def test_suspended_account(self, pipeline_client, mock_pipeline, token):
        mock_pipeline.run.side_effect = AccountSuspendedError(uuid4(), "abuse", None)

        response = pipeline_client.post(
            AUDIT_PATH, json={"prompt": "x"}, headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 403
        assert response.json()["banReason"] == "abuse"

    def test_content_policy_violation(self, pipeline_client, mock_pipeline, token):
        mock_pipeline.run.side_effect = ContentPolicyViolationError(["violence"])

        response = pipeline_client.post(
            AUDIT_PATH, json={"prompt": "x"}, headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 403
        assert response.json()["categories"] == ["violence"]

    def test_synthesis_failure(self, pipeline_client, mock_pipeline, token):
        mock_pipeline.run.side_effect = SynthesisFailedError("deepseek/deepseek-r1", "HTTP 503")

        response = pipeline_client.post(
            AUDIT_PATH, json={"prompt": "x"}, headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 502
        assert "No credits were charged" in response.json()["details"]

    def test_unexpected_failure(self, pipeline_client, mock_pipeline, token):
        """Untyped failures keep the legacy status and a generic message."""
        mock_pipeline.run.side_effect = RuntimeError("boom")

        response = pipeline_client.post(
            AUDIT_PATH, json={"prompt": "x"}, headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 200
        assert response.json() == {"error": "An unexpected error occurred while running the audit"}

    def test_blank_prompt_rejected(self, pipeline_client, mock_pipeline):
        response = pipeline_client.post(AUDIT_PATH, json={"prompt": "   "})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Invalid request"
        assert "prompt" in body["details"]
        mock_pipeline.run.assert_not_awaited()

    def test_missing_prompt_rejected(self, pipeline_client, mock_pipeline):
        response = pipeline_client.post(AUDIT_PATH, json={"fileUrl": "https://x.test/a.pdf"})

        assert response.status_code == 400
        mock_pipeline.run.assert_not_awaited()

    def test_non_http_file_url_rejected(self, pipeline_client, mock_pipeline):
        response = pipeline_client.post(AUDIT_PATH, json={"prompt": "x", "fileUrl": "file:///etc/passwd"})

        assert response.status_code == 400
        assert "fileUrl" in response.json()["details"]


class TestHealthEndpoint:
    """Tests for GET /health."""

    def test_healthy(self, app: FastAPI):
        db = AsyncMock()
        db.execute = AsyncMock()
        app.dependency_overrides[get_db] = lambda: db
        try:
            response = TestClient(app).get("/health")
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    def test_database_down(self, app: FastAPI):
        db = AsyncMock()
        db.execute = AsyncMock(side_effect=ConnectionError("down"))
        app.dependency_overrides[get_db] = lambda: db
        try:
            response = TestClient(app).get("/health")
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 503
        assert response.json()["detail"]["database"] == "disconnected"
