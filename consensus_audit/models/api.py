"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Wire names are camelCase to match the web client; Python names stay snake_case.
"""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_PROMPT_LENGTH = 32_000


class AccountStatus(str, Enum):
    """Account status enumeration."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    DISABLED = "disabled"


class SlotRole(str, Enum):
    """Role of a council slot."""

    DRAFTER = "drafter"
    AUDITOR = "auditor"


class TransactionType(str, Enum):
    """Billing transaction type enumeration."""

    USAGE = "usage"
    PURCHASE = "purchase"
    AUTO_RECHARGE = "auto_recharge"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class AlertType(str, Enum):
    """Cost alert type enumeration."""

    PER_AUDIT = "per_audit"
    DAILY_THRESHOLD = "daily_threshold"
    BUDGET_FORECAST = "budget_forecast"


class ActivityType(str, Enum):
    """Activity log entry type."""

    AUDIT_COMPLETED = "audit_completed"
    AUDIT_REJECTED = "audit_rejected"


class BackgroundTaskKind(str, Enum):
    """Kinds of detached work handled by the outbox worker."""

    AUTO_RECHARGE = "auto_recharge"
    LOW_BALANCE_EMAIL = "low_balance_email"
    COST_ALERT_EMAIL = "cost_alert_email"
    VERDICT_EMAIL = "verdict_email"
    TRAINING_CAPTURE = "training_capture"


class BackgroundTaskStatus(str, Enum):
    """Outbox row status."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    DEAD = "dead"


# ============================================================================
# Audit Request Models
# ============================================================================


class CouncilSlotConfig(BaseModel):
    """One slot of a council configuration as sent by the client."""

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model_id: str = Field(..., alias="id", min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    role: SlotRole | None = Field(
        None, description="Explicit slot role; legacy configs omit it"
    )


class AuditRequest(BaseModel):
    """POST /v1/consensus/audit request body."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(..., min_length=1, max_length=MAX_PROMPT_LENGTH)
    file_url: str | None = Field(None, alias="fileUrl", max_length=2048)
    conversation_id: UUID | None = Field(None, alias="conversationId")
    council_config: dict[str, CouncilSlotConfig] | None = Field(
        None,
        alias="councilConfig",
        description="Ordered slot map; slot keys become draft agent names",
    )
    council_source: str | None = Field(None, alias="councilSource", max_length=100)
    notify_by_email: bool = Field(default=False, alias="notifyByEmail")
    turbo_mode: bool = Field(default=False, alias="turboMode")

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        """Reject whitespace-only prompts."""
        if not v.strip():
            raise ValueError("prompt cannot be blank")
        return v

    @field_validator("file_url")
    @classmethod
    def validate_file_url(cls, v: str | None) -> str | None:
        """Only accept http(s) document URLs."""
        if v is not None and not v.startswith(("https://", "http://")):
            raise ValueError("fileUrl must be an http(s) URL")
        return v


# ============================================================================
# Audit Response Models
# ============================================================================


class DraftItem(BaseModel):
    """One drafter output in the audit response."""

    agent: str
    name: str
    response: str


class ComputeStats(BaseModel):
    """Compute usage summary for one audit."""

    model_config = ConfigDict(populate_by_name=True)

    total_tokens: int = Field(..., alias="totalTokens")
    estimated_cost: float = Field(..., alias="estimatedCost")
    model_count: int = Field(..., alias="modelCount")


class AuditResponse(BaseModel):
    """POST /v1/consensus/audit response."""

    model_config = ConfigDict(populate_by_name=True)

    drafts: list[DraftItem]
    verdict: str
    librarian_analysis: str | None = Field(None, alias="librarianAnalysis")
    remaining_audits: int = Field(..., alias="remainingAudits")
    training_dataset_id: str | None = Field(None, alias="trainingDatasetId")
    compute_stats: ComputeStats = Field(..., alias="computeStats")


class ErrorResponse(BaseModel):
    """Error body returned for every rejected or failed audit."""

    model_config = ConfigDict(populate_by_name=True)

    error: str
    details: str | None = None
    balance: float | None = None
    estimated_cost: float | None = Field(None, alias="estimatedCost")
    ban_reason: str | None = Field(None, alias="banReason")
    banned_at: str | None = Field(None, alias="bannedAt")
    categories: list[str] | None = None
    limit: int | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    timestamp: str
