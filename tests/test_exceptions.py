"""
Tests for exception classes.

Covers status codes, error kinds and client-facing bodies.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from consensus_audit.exceptions import (
    AccountDisabledError,
    AccountInactiveError,
    AccountSuspendedError,
    AuditError,
    ContentPolicyViolationError,
    CouncilConfigurationError,
    EmailDeliveryError,
    InsufficientCreditsError,
    ModerationUnavailableError,
    NoCreditsError,
    PaymentProviderError,
    PersistenceFailure,
    ProviderError,
    QuotaExceededError,
    SynthesisFailedError,
    UnauthenticatedError,
)


class TestAuditError:
    """Tests for the base AuditError class."""

    def test_is_exception(self):
        assert issubclass(AuditError, Exception)

    def test_default_response(self):
        body = AuditError("something broke").to_response()
        assert body.error == "Audit failed"
        assert body.details == "something broke"

    @pytest.mark.parametrize(
        "exc, status_code",
        [
            (UnauthenticatedError("missing"), 401),
            (AccountSuspendedError(uuid4(), None, None), 403),
            (AccountDisabledError(uuid4()), 403),
            (AccountInactiveError(uuid4()), 403),
            (ContentPolicyViolationError(["hate"]), 403),
            (QuotaExceededError("free", 3, 3), 403),
            (NoCreditsError(Decimal("0")), 402),
            (InsufficientCreditsError(Decimal("0.01"), Decimal("0.012")), 402),
            (CouncilConfigurationError("no auditor"), 400),
            (ModerationUnavailableError("HTTP 503"), 503),
            (SynthesisFailedError("m", "timeout"), 502),
            (ProviderError("m", "timeout"), 502),
        ],
    )
    def test_status_codes(self, exc: AuditError, status_code: int):
        assert exc.status_code == status_code
        assert isinstance(exc, AuditError)


class TestInsufficientCreditsError:
    """Tests for InsufficientCreditsError."""

    def test_attributes(self):
        exc = InsufficientCreditsError(Decimal("0.01"), Decimal("0.012"))
        assert exc.balance == Decimal("0.01")
        assert exc.required == Decimal("0.012")
        assert exc.error_kind == "InsufficientCredits"

    def test_message_format(self):
        exc = InsufficientCreditsError(Decimal("0.01"), Decimal("0.012"))
        assert exc.details == "Insufficient credits. Balance: $0.0100, estimated cost: $0.0120"

    def test_response_body(self):
        body = InsufficientCreditsError(Decimal("0.01"), Decimal("0.012")).to_response()
        assert body.model_dump(by_alias=True, exclude_none=True) == {
            "error": "Insufficient credits",
            "details": "Insufficient credits. Balance: $0.0100, estimated cost: $0.0120",
            "balance": 0.01,
            "estimatedCost": 0.012,
        }


class TestNoCreditsError:
    def test_response_carries_balance(self):
        body = NoCreditsError(Decimal("-0.5")).to_response()
        assert body.balance == -0.5
        assert body.estimated_cost is None


class TestAccountSuspendedError:
    """Tests for AccountSuspendedError."""

    def test_message_uses_reason(self):
        exc = AccountSuspendedError(uuid4(), "spam", None)
        assert "spam" in exc.details

    def test_message_without_reason(self):
        exc = AccountSuspendedError(uuid4(), None, None)
        assert "policy violation" in exc.details

    def test_response_includes_ban_fields(self):
        banned_at = datetime(2026, 9, 1, tzinfo=UTC)
        body = AccountSuspendedError(uuid4(), "spam", banned_at).to_response()
        dumped = body.model_dump(by_alias=True, exclude_none=True)
        assert dumped["banReason"] == "spam"
        assert dumped["bannedAt"] == banned_at.isoformat()


class TestContentPolicyViolationError:
    def test_categories_listed(self):
        exc = ContentPolicyViolationError(["violence", "hate"])
        assert "violence, hate" in exc.details
        assert exc.to_response().categories == ["violence", "hate"]

    def test_no_categories(self):
        assert "unspecified" in ContentPolicyViolationError([]).details


class TestQuotaExceededError:
    def test_attributes(self):
        exc = QuotaExceededError("free", 3, 4)
        assert exc.tier == "free"
        assert exc.limit == 3
        assert exc.used == 4
        assert exc.to_response().limit == 3


class TestSynthesisFailedError:
    def test_message_says_nothing_charged(self):
        exc = SynthesisFailedError("deepseek/deepseek-r1", "HTTP 503")
        assert exc.model_id == "deepseek/deepseek-r1"
        assert "HTTP 503" in exc.details
        assert "No credits were charged" in exc.details


class TestInternalErrors:
    """Errors that never reach the client directly."""

    def test_provider_error(self):
        exc = ProviderError("m/x", "HTTP 500", http_status=500)
        assert str(exc) == "m/x: HTTP 500"
        assert exc.http_status == 500

    def test_persistence_failure(self):
        exc = PersistenceFailure("record_analytics", "connection reset")
        assert exc.operation == "record_analytics"
        assert exc.error_kind == "PersistenceFailure"

    def test_email_delivery_error(self):
        assert EmailDeliveryError("HTTP 422").message == "HTTP 422"

    def test_payment_provider_error(self):
        exc = PaymentProviderError("card declined")
        assert str(exc) == "Payment provider error: card declined"
