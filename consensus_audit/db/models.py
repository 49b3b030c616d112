"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
JSONB columns hold free-form audit metadata only.
"""

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from consensus_audit.models.api import AlertType, TransactionType

# Ledger amounts keep six decimal places: per-audit costs are fractions of a cent.
MONEY = Numeric(14, 6)
PRICE = Numeric(18, 12)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UsageCounters(Base):
    """
    ORM model for user_usage table.

    Account status, ban flag, subscription tier, audit counters and
    optional cost thresholds. One row per user.
    """

    __tablename__ = "user_usage"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, unique=True)

    # Status
    account_status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    is_banned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ban_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    banned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Counters
    audit_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    audits_this_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reset_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Plan
    subscription_tier: Mapped[str] = mapped_column(String(50), nullable=False, default="free")
    is_premium: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Cost thresholds (dollars, optional)
    daily_cost_threshold: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)
    per_audit_cost_threshold: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 4), nullable=True
    )
    monthly_budget_limit: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("audit_count >= 0", name="ck_audit_count_non_negative"),
        CheckConstraint("audits_this_month >= 0", name="ck_audits_this_month_non_negative"),
        CheckConstraint(
            "account_status IN ('active', 'inactive', 'disabled')", name="ck_account_status"
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UsageCounters(user_id={self.user_id}, tier={self.subscription_tier}, "
            f"audits_this_month={self.audits_this_month})>"
        )


class CreditLedger(Base):
    """
    ORM model for credit_ledgers table.

    Prepaid balance per billing owner. The balance is only mutated by a
    single conditional UPDATE (see LedgerService.record_successful_audit).
    """

    __tablename__ = "credit_ledgers"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, unique=True)

    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    auto_recharge_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_recharge_threshold: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("5.00")
    )
    auto_recharge_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("20.00")
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_ledger_balance_non_negative"),
        CheckConstraint("auto_recharge_amount > 0", name="ck_auto_recharge_amount_positive"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<CreditLedger(user_id={self.user_id}, balance={self.balance})>"


class BillingTransaction(Base):
    """
    ORM model for billing_transactions table.

    Append-only ledger of balance changes. Rows are never updated or deleted.
    """

    __tablename__ = "billing_transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)

    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(
        SQLEnum(
            TransactionType,
            name="transaction_type",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    balance_after: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    description: Mapped[str] = mapped_column(String, nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance_after >= 0", name="ck_transaction_balance_after_non_negative"),
        CheckConstraint("amount <> 0", name="ck_transaction_amount_non_zero"),
        Index("idx_billing_transactions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<BillingTransaction(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, balance_after={self.balance_after})>"
        )


class ModelPrice(Base):
    """
    ORM model for model_prices table.

    Per-token prices, refreshed out-of-band by the price sync job.
    """

    __tablename__ = "model_prices"

    model_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="openrouter")
    input_price: Mapped[Decimal] = mapped_column(PRICE, nullable=False)
    output_price: Mapped[Decimal] = mapped_column(PRICE, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("input_price >= 0", name="ck_input_price_non_negative"),
        CheckConstraint("output_price >= 0", name="ck_output_price_non_negative"),
    )


class AnalyticsEvent(Base):
    """ORM model for analytics_events table. One row per model invocation."""

    __tablename__ = "analytics_events"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    conversation_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)

    model_id: Mapped[str] = mapped_column(String(255), nullable=False)
    model_name: Mapped[str] = mapped_column(String(255), nullable=False)
    model_role: Mapped[str] = mapped_column(String(20), nullable=False)
    slot_position: Mapped[int] = mapped_column(Integer, nullable=False)

    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_analytics_events_user_created", "user_id", "created_at"),
        Index("idx_analytics_events_model_id", "model_id"),
    )


class ActivityLog(Base):
    """
    ORM model for activity_logs table.

    One human-readable entry per completed or rejected run. The metadata
    payload carries `estimated_cost` for the daily threshold sum.
    """

    __tablename__ = "activity_logs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(String, nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_activity_logs_user_created", "user_id", "created_at"),
        Index("idx_activity_logs_type", "activity_type"),
    )


class CostAlert(Base):
    """
    ORM model for cost_alerts table.

    Daily and budget alerts are unique per user, type and alert_date
    (budget alerts use the first day of the month).
    """

    __tablename__ = "cost_alerts"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    alert_type: Mapped[AlertType] = mapped_column(
        SQLEnum(
            AlertType,
            name="alert_type",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    estimated_cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    threshold: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    alert_date: Mapped[date] = mapped_column(Date, nullable=False)
    notified_via_email: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index(
            "uq_cost_alerts_periodic",
            "user_id",
            "alert_type",
            "alert_date",
            unique=True,
            postgresql_where=text("alert_type <> 'per_audit'"),
        ),
        Index("idx_cost_alerts_user_created", "user_id", "created_at"),
    )


class SecurityLog(Base):
    """ORM model for security_logs table. Flagged prompts and moderation events."""

    __tablename__ = "security_logs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    flag_category: Mapped[str] = mapped_column(String(255), nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict
    )
    flagged_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_security_logs_user_flagged", "user_id", "flagged_at"),)


class TrainingDatasetRecord(Base):
    """ORM model for training_dataset table. Capped snapshots for fine-tuning."""

    __tablename__ = "training_dataset"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    draft_a_model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    draft_a_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    draft_b_model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    draft_b_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    verdict_model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    verdict_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    council_config: Mapped[dict[str, Any]] = mapped_column(
        "model_config", JSONB, nullable=False, default=dict
    )
    council_source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    human_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class BrandDocument(Base):
    """ORM model for brand_documents table."""

    __tablename__ = "brand_documents"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (Index("idx_brand_documents_user_active", "user_id", "is_active"),)


class Conversation(Base):
    """ORM model for conversations table. Holds persisted document context."""

    __tablename__ = "conversations"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    context: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )


class EmailLog(Base):
    """ORM model for email_logs table. One row per outbound email attempt."""

    __tablename__ = "email_logs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    email_type: Mapped[str] = mapped_column(String(50), nullable=False)
    recipient_email: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_email_logs_user_sent", "user_id", "sent_at"),)


class BackgroundTask(Base):
    """
    ORM model for background_tasks table.

    Outbox of detached work. Rows are written in the request and processed
    by the outbox worker with retries.
    """

    __tablename__ = "background_tasks"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    next_attempt_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("attempts >= 0", name="ck_background_task_attempts_non_negative"),
        Index("idx_background_tasks_due", "status", "next_attempt_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<BackgroundTask(id={self.id}, kind={self.kind}, status={self.status})>"


class AutoRechargeAttempt(Base):
    """ORM model for auto_recharge_attempts table."""

    __tablename__ = "auto_recharge_attempts"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    checkout_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_auto_recharge_attempts_user_status", "user_id", "status"),)
