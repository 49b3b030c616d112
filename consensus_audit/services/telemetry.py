"""
Telemetry & Threshold Monitor - Post-charge analytics and cost alerts.

Runs after the ledger commit. Every write here is best-effort: a failure is
logged as a PersistenceFailure and the audit result is still returned.
"""

import calendar
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, time
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import Numeric, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from consensus_audit.db.models import ActivityLog, AnalyticsEvent, CostAlert
from consensus_audit.exceptions import AuditError, InsufficientCreditsError, PersistenceFailure
from consensus_audit.models.api import ActivityType, AlertType, BackgroundTaskKind, SlotRole
from consensus_audit.models.domain import (
    AuthenticatedUser,
    CostEstimate,
    CouncilConfiguration,
    DraftResult,
    UsageSnapshot,
    VerdictResult,
)
from consensus_audit.observability import metrics
from consensus_audit.services.dispatcher import BackgroundDispatcher

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4


def estimate_tokens(chars: int) -> int:
    """Rough token estimate from character count."""
    return chars // CHARS_PER_TOKEN


def start_of_day(day: date) -> datetime:
    """Midnight UTC of a calendar day."""
    return datetime.combine(day, time.min, tzinfo=UTC)


def project_month_end(month_to_date: Decimal, today: date) -> Decimal:
    """Linear projection of month-to-date spend to the end of the month."""
    days_in_month = calendar.monthrange(today.year, today.month)[1]
    return month_to_date / today.day * days_in_month


class TelemetryMonitor:
    """Records analytics and raises cost alerts for one completed run."""

    def __init__(self, session: AsyncSession, dispatcher: BackgroundDispatcher | None = None) -> None:
        self.session = session
        self.dispatcher = dispatcher

    async def record_run(
        self,
        user: AuthenticatedUser,
        usage: UsageSnapshot,
        council: CouncilConfiguration,
        estimate: CostEstimate,
        drafts: tuple[DraftResult, ...],
        verdict: VerdictResult,
        conversation_id: UUID | None = None,
        now: datetime | None = None,
    ) -> None:
        """Write analytics rows, then evaluate every threshold rule. Never raises."""
        now = now or datetime.now(UTC)
        today = now.date()

        logged = await self._guarded(
            "record_analytics",
            lambda: self._record_analytics(user, council, estimate, drafts, verdict, conversation_id, now),
        )
        # The daily sum must include this run even if its activity entry was lost
        unlogged_cost = Decimal("0") if logged else estimate.total

        if usage.per_audit_cost_threshold is not None:
            await self._guarded(
                "per_audit_alert",
                lambda: self._check_per_audit(user, estimate.total, usage.per_audit_cost_threshold, today),
            )
        if usage.daily_cost_threshold is not None:
            await self._guarded(
                "daily_threshold_alert",
                lambda: self._check_daily(user, usage.daily_cost_threshold, today, unlogged_cost),
            )
        if usage.monthly_budget_limit is not None:
            await self._guarded(
                "budget_forecast_alert",
                lambda: self._check_budget_forecast(user, usage.monthly_budget_limit, today, unlogged_cost),
            )

    async def record_rejection(
        self, user_id: UUID, error: AuditError, now: datetime | None = None
    ) -> None:
        """Write the activity entry for a run that ended without a charge. Never raises."""
        await self._guarded(
            "record_rejection",
            lambda: self._record_rejection(user_id, error, now or datetime.now(UTC)),
        )

    async def _guarded(self, operation: str, step: Callable[[], Awaitable[None]]) -> bool:
        try:
            await step()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            failure = PersistenceFailure(operation, str(exc))
            logger.error("telemetry_persistence_failed", operation=operation, error=failure.details)
            metrics.record_error(failure.error_kind, operation)
            return False
        return True

    # ========================================================================
    # Analytics
    # ========================================================================

    async def _record_analytics(
        self,
        user: AuthenticatedUser,
        council: CouncilConfiguration,
        estimate: CostEstimate,
        drafts: tuple[DraftResult, ...],
        verdict: VerdictResult,
        conversation_id: UUID | None,
        now: datetime,
    ) -> None:
        for draft in drafts:
            self.session.add(
                AnalyticsEvent(
                    user_id=user.user_id,
                    conversation_id=conversation_id,
                    model_id=draft.slot.model_id,
                    model_name=draft.slot.display_name,
                    model_role=SlotRole.DRAFTER.value,
                    slot_position=draft.slot.position,
                    latency_ms=draft.latency_ms,
                    input_tokens=estimate_tokens(draft.input_chars),
                    output_tokens=0 if draft.failed else estimate_tokens(len(draft.response)),
                    cost=estimate.cost_for(draft.slot),
                    created_at=now,
                )
            )
        self.session.add(
            AnalyticsEvent(
                user_id=user.user_id,
                conversation_id=conversation_id,
                model_id=verdict.slot.model_id,
                model_name=verdict.slot.display_name,
                model_role=SlotRole.AUDITOR.value,
                slot_position=verdict.slot.position,
                latency_ms=verdict.latency_ms,
                input_tokens=estimate_tokens(verdict.input_chars),
                output_tokens=estimate_tokens(len(verdict.verdict)),
                cost=estimate.cost_for(verdict.slot),
                created_at=now,
            )
        )
        self.session.add(
            ActivityLog(
                user_id=user.user_id,
                activity_type=ActivityType.AUDIT_COMPLETED.value,
                description=f"Consensus audit with {len(council.slots)} models",
                metadata_={
                    "estimated_cost": str(estimate.total),
                    "models": council.model_ids,
                    "failed_drafters": [d.slot.slot_key for d in drafts if d.failed],
                    "conversation_id": str(conversation_id) if conversation_id else None,
                },
                created_at=now,
            )
        )
        await self.session.commit()

    async def _record_rejection(self, user_id: UUID, error: AuditError, now: datetime) -> None:
        metadata: dict[str, str] = {"error_kind": error.error_kind, "details": error.details}
        if isinstance(error, InsufficientCreditsError):
            metadata["estimated_cost"] = str(error.required)

        self.session.add(
            ActivityLog(
                user_id=user_id,
                activity_type=ActivityType.AUDIT_REJECTED.value,
                description=f"Consensus audit rejected: {error.error_message}",
                metadata_=metadata,
                created_at=now,
            )
        )
        await self.session.commit()

    # ========================================================================
    # Threshold rules
    # ========================================================================

    async def _check_per_audit(
        self, user: AuthenticatedUser, cost: Decimal, threshold: Decimal, today: date
    ) -> None:
        if cost <= threshold:
            return
        alert = CostAlert(
            id=uuid4(),
            user_id=user.user_id,
            alert_type=AlertType.PER_AUDIT,
            estimated_cost=cost,
            threshold=threshold,
            alert_date=today,
        )
        self.session.add(alert)
        await self.session.commit()
        await self._alert_raised(user, alert)

    async def _check_daily(
        self, user: AuthenticatedUser, threshold: Decimal, today: date, unlogged_cost: Decimal
    ) -> None:
        daily_total = await self._sum_estimated_cost(user.user_id, start_of_day(today)) + unlogged_cost
        if daily_total <= threshold:
            return
        if await self._alert_exists(user.user_id, AlertType.DAILY_THRESHOLD, today):
            return

        alert = CostAlert(
            id=uuid4(),
            user_id=user.user_id,
            alert_type=AlertType.DAILY_THRESHOLD,
            estimated_cost=daily_total,
            threshold=threshold,
            alert_date=today,
        )
        if await self._insert_once(alert):
            await self._alert_raised(user, alert)

    async def _check_budget_forecast(
        self, user: AuthenticatedUser, limit: Decimal, today: date, unlogged_cost: Decimal
    ) -> None:
        month_start = today.replace(day=1)
        month_to_date = (
            await self._sum_estimated_cost(user.user_id, start_of_day(month_start)) + unlogged_cost
        )
        projected = project_month_end(month_to_date, today)
        if projected <= limit:
            return
        if await self._alert_exists(user.user_id, AlertType.BUDGET_FORECAST, month_start):
            return

        alert = CostAlert(
            id=uuid4(),
            user_id=user.user_id,
            alert_type=AlertType.BUDGET_FORECAST,
            estimated_cost=projected.quantize(Decimal("0.000001")),
            threshold=limit,
            alert_date=month_start,
        )
        if await self._insert_once(alert):
            await self._alert_raised(user, alert)

    async def _sum_estimated_cost(self, user_id: UUID, since: datetime) -> Decimal:
        cost = ActivityLog.metadata_["estimated_cost"].astext.cast(Numeric)
        stmt = select(func.coalesce(func.sum(cost), 0)).where(
            ActivityLog.user_id == user_id,
            ActivityLog.activity_type == ActivityType.AUDIT_COMPLETED.value,
            ActivityLog.created_at >= since,
        )
        result = await self.session.execute(stmt)
        return Decimal(str(result.scalar_one() or 0))

    async def _alert_exists(self, user_id: UUID, alert_type: AlertType, alert_date: date) -> bool:
        stmt = (
            select(CostAlert.id)
            .where(
                CostAlert.user_id == user_id,
                CostAlert.alert_type == alert_type,
                CostAlert.alert_date == alert_date,
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def _insert_once(self, alert: CostAlert) -> bool:
        """Insert a periodic alert; a concurrent duplicate loses on the unique index."""
        try:
            async with self.session.begin_nested():
                self.session.add(alert)
        except IntegrityError:
            logger.info(
                "cost_alert_already_recorded",
                user_id=str(alert.user_id),
                alert_type=alert.alert_type.value,
                alert_date=alert.alert_date.isoformat(),
            )
            return False
        await self.session.commit()
        return True

    async def _alert_raised(self, user: AuthenticatedUser, alert: CostAlert) -> None:
        metrics.record_cost_alert(alert.alert_type.value)
        logger.info(
            "cost_alert_raised",
            user_id=str(user.user_id),
            alert_type=alert.alert_type.value,
            estimated_cost=str(alert.estimated_cost),
            threshold=str(alert.threshold),
        )
        if self.dispatcher is None or not user.email:
            return
        await self.dispatcher.dispatch(
            BackgroundTaskKind.COST_ALERT_EMAIL,
            {
                "user_id": str(user.user_id),
                "email": user.email,
                "alert_id": str(alert.id),
                "alert_type": alert.alert_type.value,
                "estimated_cost": str(alert.estimated_cost),
                "threshold": str(alert.threshold),
            },
        )
