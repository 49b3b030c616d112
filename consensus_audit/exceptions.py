"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
Every error carries a stable `error_kind`, the HTTP `status_code` it maps to,
and a human-readable `details` string the client can show as-is.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from consensus_audit.models.api import ErrorResponse


class AuditError(Exception):
    """Base exception for all audit pipeline errors."""

    error_kind = "AuditError"
    status_code = 500
    error_message = "Audit failed"
    # Set once the caller's identity is known
    user_id: UUID | None = None

    def __init__(self, details: str) -> None:
        self.details = details
        super().__init__(details)

    def to_response(self) -> ErrorResponse:
        """Build the client-facing error body."""
        return ErrorResponse(error=self.error_message, details=self.details)


# ============================================================================
# Eligibility Gate
# ============================================================================


class UnauthenticatedError(AuditError):
    """Raised when the bearer credential is missing or invalid."""

    error_kind = "Unauthenticated"
    status_code = 401
    error_message = "Authentication required"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class AccountSuspendedError(AuditError):
    """Raised when the account is banned."""

    error_kind = "AccountSuspended"
    status_code = 403
    error_message = "Account suspended"

    def __init__(self, user_id: UUID, reason: str | None, banned_at: datetime | None) -> None:
        self.user_id = user_id
        self.reason = reason
        self.banned_at = banned_at
        super().__init__(
            f"Your account has been suspended: {reason or 'policy violation'}. "
            "Contact support if you believe this is a mistake."
        )

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error=self.error_message,
            details=self.details,
            ban_reason=self.reason,
            banned_at=self.banned_at.isoformat() if self.banned_at else None,
        )


class AccountDisabledError(AuditError):
    """Raised when the account status is disabled."""

    error_kind = "AccountDisabled"
    status_code = 403
    error_message = "Account disabled"

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__("Your account has been disabled. Contact support to restore access.")


class AccountInactiveError(AuditError):
    """Raised when the account status is inactive."""

    error_kind = "AccountInactive"
    status_code = 403
    error_message = "Account inactive"

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__("Your account is inactive. Reactivate it from account settings.")


class ContentPolicyViolationError(AuditError):
    """Raised when moderation flags the prompt."""

    error_kind = "ContentPolicyViolation"
    status_code = 403
    error_message = "Content policy violation"

    def __init__(self, categories: list[str]) -> None:
        self.categories = categories
        listed = ", ".join(categories) if categories else "unspecified"
        super().__init__(
            f"Your request was flagged for: {listed}. No credits were charged."
        )

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error=self.error_message, details=self.details, categories=self.categories
        )


class ModerationUnavailableError(AuditError):
    """Raised when moderation errors and the gate is configured to fail closed."""

    error_kind = "ModerationUnavailable"
    status_code = 503
    error_message = "Content moderation unavailable"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__("Content checks are temporarily unavailable. Please retry shortly.")


class QuotaExceededError(AuditError):
    """Raised when the monthly audit quota is used up."""

    error_kind = "QuotaExceeded"
    status_code = 403
    error_message = "Usage limit reached"

    def __init__(self, tier: str, limit: int, used: int) -> None:
        self.tier = tier
        self.limit = limit
        self.used = used
        super().__init__(
            f"You have used {used} of {limit} audits included in the {tier} plan this month. "
            "Upgrade your plan for more audits."
        )

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(error=self.error_message, details=self.details, limit=self.limit)


# ============================================================================
# Cost Estimator / Ledger
# ============================================================================


class NoCreditsError(AuditError):
    """Raised when the credit balance is zero or below."""

    error_kind = "NoCredits"
    status_code = 402
    error_message = "No credits remaining"

    def __init__(self, balance: Decimal) -> None:
        self.balance = balance
        super().__init__("Your credit balance is empty. Add credits to run an audit.")

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error=self.error_message, details=self.details, balance=float(self.balance)
        )


class InsufficientCreditsError(AuditError):
    """Raised when the balance cannot cover the estimated cost."""

    error_kind = "InsufficientCredits"
    status_code = 402
    error_message = "Insufficient credits"

    def __init__(self, balance: Decimal, required: Decimal) -> None:
        self.balance = balance
        self.required = required
        super().__init__(
            f"Insufficient credits. Balance: ${balance:.4f}, estimated cost: ${required:.4f}"
        )

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error=self.error_message,
            details=self.details,
            balance=float(self.balance),
            estimated_cost=float(self.required),
        )


# ============================================================================
# Execution
# ============================================================================


class CouncilConfigurationError(AuditError):
    """Raised when a council configuration cannot be resolved."""

    error_kind = "MalformedInput"
    status_code = 400
    error_message = "Invalid council configuration"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ProviderError(AuditError):
    """Raised when a model invocation fails (timeout, non-2xx, malformed body)."""

    error_kind = "ProviderError"
    status_code = 502
    error_message = "Model provider error"

    def __init__(self, model_id: str, message: str, http_status: int | None = None) -> None:
        self.model_id = model_id
        self.message = message
        self.http_status = http_status
        super().__init__(f"{model_id}: {message}")


class SynthesisFailedError(AuditError):
    """Raised when the auditor fails; the run is aborted without charge."""

    error_kind = "SynthesisFailure"
    status_code = 502
    error_message = "Synthesis failed"

    def __init__(self, model_id: str, provider_message: str) -> None:
        self.model_id = model_id
        self.provider_message = provider_message
        super().__init__(
            f"The auditor model {model_id} failed to produce a verdict: {provider_message}. "
            "No credits were charged."
        )


class PersistenceFailure(AuditError):
    """Raised when a telemetry or background write fails; never surfaced to callers."""

    error_kind = "PersistenceFailure"

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"{operation}: {message}")


class EmailDeliveryError(AuditError):
    """Raised when the email capability rejects a message."""

    error_kind = "EmailDeliveryError"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Email delivery failed: {message}")


class PaymentProviderError(AuditError):
    """Raised when payment provider operation fails."""

    error_kind = "PaymentProviderError"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")
