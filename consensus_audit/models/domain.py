"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - Pipeline data flows through immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from consensus_audit.models.api import SlotRole


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity resolved from a bearer credential."""

    user_id: UUID
    email: str | None = None


# ============================================================================
# Model Invocation
# ============================================================================


@dataclass(frozen=True)
class ChatMessage:
    """Single chat message sent to a model."""

    role: str
    content: str

    def __post_init__(self) -> None:
        """Validate message role."""
        if self.role not in ("system", "user", "assistant"):
            raise ValueError(f"Invalid message role: {self.role}")


@dataclass(frozen=True)
class ModelReply:
    """Text returned by one model invocation."""

    model_id: str
    text: str
    latency_ms: int


@dataclass(frozen=True)
class ModerationVerdict:
    """Result of a content moderation check."""

    flagged: bool
    categories: tuple[str, ...] = ()
    scores: dict[str, float] = field(default_factory=dict)


# ============================================================================
# Council Configuration
# ============================================================================


@dataclass(frozen=True)
class CouncilSlot:
    """One named model slot in a council."""

    slot_key: str
    model_id: str
    display_name: str
    role: SlotRole
    position: int

    def __post_init__(self) -> None:
        """Validate slot fields."""
        if not self.model_id:
            raise ValueError("model_id cannot be empty")
        if self.position < 0:
            raise ValueError(f"Slot position cannot be negative: {self.position}")


@dataclass(frozen=True)
class CouncilConfiguration:
    """Ordered council slots with exactly one auditor and at least one drafter."""

    slots: tuple[CouncilSlot, ...]

    def __post_init__(self) -> None:
        """Validate council shape."""
        auditors = [s for s in self.slots if s.role == SlotRole.AUDITOR]
        if len(auditors) != 1:
            raise ValueError(f"Council must have exactly one auditor, got {len(auditors)}")
        if len(self.slots) < 2:
            raise ValueError("Council must have at least one drafter")

    @property
    def auditor(self) -> CouncilSlot:
        """The single synthesizing slot."""
        return next(s for s in self.slots if s.role == SlotRole.AUDITOR)

    @property
    def drafters(self) -> tuple[CouncilSlot, ...]:
        """All drafting slots, in configured order."""
        return tuple(s for s in self.slots if s.role == SlotRole.DRAFTER)

    @property
    def model_ids(self) -> list[str]:
        """Model IDs of every slot, in configured order."""
        return [s.model_id for s in self.slots]


# ============================================================================
# Pricing
# ============================================================================


@dataclass(frozen=True)
class ModelPriceData:
    """Per-token prices for one model."""

    model_id: str
    input_price: Decimal
    output_price: Decimal
    last_updated: datetime | None = None

    def __post_init__(self) -> None:
        """Validate prices."""
        if self.input_price < 0 or self.output_price < 0:
            raise ValueError(f"Prices cannot be negative for {self.model_id}")


@dataclass(frozen=True)
class SlotCost:
    """Estimated cost attributed to one slot."""

    slot: CouncilSlot
    cost: Decimal


@dataclass(frozen=True)
class CostEstimate:
    """Pre-execution cost estimate for a whole council run."""

    slot_costs: tuple[SlotCost, ...]
    total: Decimal

    def cost_for(self, slot: CouncilSlot) -> Decimal:
        """Get the estimated cost share of a slot."""
        for slot_cost in self.slot_costs:
            if slot_cost.slot == slot:
                return slot_cost.cost
        return Decimal("0")


# ============================================================================
# Account State
# ============================================================================


@dataclass(frozen=True)
class UsageSnapshot:
    """Usage counters and thresholds as read by the Eligibility Gate."""

    user_id: UUID
    subscription_tier: str
    is_premium: bool
    audit_count: int
    audits_this_month: int
    monthly_limit: int | None
    daily_cost_threshold: Decimal | None = None
    per_audit_cost_threshold: Decimal | None = None
    monthly_budget_limit: Decimal | None = None


@dataclass(frozen=True)
class LedgerSnapshot:
    """Credit ledger state as read once per run."""

    user_id: UUID
    balance: Decimal
    currency: str
    auto_recharge_enabled: bool
    auto_recharge_threshold: Decimal
    auto_recharge_amount: Decimal


@dataclass(frozen=True)
class EligibilityResult:
    """Everything the gate resolved for an admitted request."""

    user: AuthenticatedUser
    usage: UsageSnapshot
    ledger: LedgerSnapshot


# ============================================================================
# Execution Results
# ============================================================================


@dataclass(frozen=True)
class AssembledContext:
    """Extra prompt context gathered before drafting."""

    brand_guidelines: str | None = None
    conversation_context: str | None = None
    librarian_analysis: str | None = None

    @property
    def document_context(self) -> str | None:
        """Conversation context and file analysis, concatenated in order."""
        parts = [p for p in (self.conversation_context, self.librarian_analysis) if p]
        return "\n\n".join(parts) if parts else None


@dataclass(frozen=True)
class DraftResult:
    """Output of one drafter; failed drafts carry a placeholder response."""

    slot: CouncilSlot
    response: str
    latency_ms: int
    input_chars: int
    failed: bool = False
    error: str | None = None


@dataclass(frozen=True)
class VerdictResult:
    """Output of the auditor."""

    slot: CouncilSlot
    verdict: str
    latency_ms: int
    input_chars: int


@dataclass(frozen=True)
class DebitResult:
    """Ledger state after a successful debit."""

    previous_balance: Decimal
    new_balance: Decimal
    amount: Decimal
    transaction_id: UUID
    audit_count: int
    audits_this_month: int


@dataclass(frozen=True)
class AuditResult:
    """Final product of a pipeline run."""

    drafts: tuple[DraftResult, ...]
    verdict: VerdictResult
    librarian_analysis: str | None
    remaining_audits: int
    training_dataset_id: UUID | None
    total_tokens: int
    estimated_cost: Decimal
    model_count: int
