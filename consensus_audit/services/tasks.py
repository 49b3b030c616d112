"""
Background Task Handlers - Work executed by the dispatcher.

Payloads are JSON objects written at dispatch time; each handler parses its
own payload and re-reads current state before acting, since a task may run
minutes after it was dispatched.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from consensus_audit.config import settings
from consensus_audit.db.models import (
    AutoRechargeAttempt,
    CostAlert,
    CreditLedger,
    TrainingDatasetRecord,
)
from consensus_audit.exceptions import PaymentProviderError
from consensus_audit.models.api import AlertType, BackgroundTaskKind
from consensus_audit.services.dispatcher import TaskHandler
from consensus_audit.services.notifications import (
    EmailSender,
    NotificationService,
    cost_alert_email,
    low_balance_email,
    verdict_email,
)
from consensus_audit.services.stripe_provider import RechargeCheckoutProvider

logger = get_logger(__name__)


def _truncate(text: str | None) -> str | None:
    if text is None:
        return None
    return text[: settings.training_capture_max_chars]


class BackgroundTaskHandlers:
    """Handlers for every BackgroundTaskKind."""

    def __init__(
        self,
        email_sender: EmailSender,
        checkout_provider: RechargeCheckoutProvider,
    ) -> None:
        self.email_sender = email_sender
        self.checkout_provider = checkout_provider

    def as_mapping(self) -> dict[BackgroundTaskKind, TaskHandler]:
        """Handler registry for BackgroundDispatcher."""
        return {
            BackgroundTaskKind.AUTO_RECHARGE: self.auto_recharge,
            BackgroundTaskKind.LOW_BALANCE_EMAIL: self.low_balance_email,
            BackgroundTaskKind.COST_ALERT_EMAIL: self.cost_alert_email,
            BackgroundTaskKind.VERDICT_EMAIL: self.verdict_email,
            BackgroundTaskKind.TRAINING_CAPTURE: self.training_capture,
        }

    # ========================================================================
    # Auto-recharge
    # ========================================================================

    async def auto_recharge(self, session: AsyncSession, payload: dict[str, Any]) -> None:
        """
        Start a checkout session for an auto-recharge.

        Skipped when auto-recharge was turned off, the balance recovered, or
        an attempt is already pending.
        """
        user_id = UUID(payload["user_id"])

        result = await session.execute(select(CreditLedger).where(CreditLedger.user_id == user_id))
        ledger = result.scalar_one_or_none()
        if ledger is None or not ledger.auto_recharge_enabled:
            logger.info("auto_recharge_skipped", user_id=str(user_id), reason="disabled")
            return
        if ledger.balance >= ledger.auto_recharge_threshold:
            logger.info("auto_recharge_skipped", user_id=str(user_id), reason="balance_recovered")
            return

        pending = await session.execute(
            select(AutoRechargeAttempt.id)
            .where(
                AutoRechargeAttempt.user_id == user_id,
                AutoRechargeAttempt.status == "pending",
            )
            .limit(1)
        )
        if pending.scalar_one_or_none() is not None:
            logger.info("auto_recharge_skipped", user_id=str(user_id), reason="already_pending")
            return

        amount = Decimal(ledger.auto_recharge_amount)
        currency = ledger.currency
        try:
            checkout = await self.checkout_provider.create_recharge_checkout(
                user_id=user_id,
                email=payload.get("email"),
                amount=amount,
                currency=currency,
                idempotency_key=f"auto-recharge-{payload.get('transaction_id', user_id)}",
            )
        except PaymentProviderError as exc:
            session.add(
                AutoRechargeAttempt(
                    user_id=user_id,
                    amount=amount,
                    currency=currency,
                    status="failed",
                    error_message=exc.message,
                )
            )
            await session.commit()
            raise

        session.add(
            AutoRechargeAttempt(
                user_id=user_id,
                amount=amount,
                currency=currency,
                status="pending",
                checkout_session_id=checkout.session_id,
            )
        )
        await session.commit()
        logger.info(
            "auto_recharge_checkout_created",
            user_id=str(user_id),
            session_id=checkout.session_id,
            amount=str(amount),
        )

    # ========================================================================
    # Email
    # ========================================================================

    async def low_balance_email(self, session: AsyncSession, payload: dict[str, Any]) -> None:
        """Warn the user that the balance fell below the threshold."""
        email = payload.get("email")
        if not email:
            logger.info("low_balance_email_skipped", user_id=payload["user_id"], reason="no_email")
            return
        message = low_balance_email(
            to=email,
            balance=Decimal(payload["balance"]),
            threshold=Decimal(payload["threshold"]),
            currency=payload.get("currency", "USD"),
        )
        await NotificationService(session, self.email_sender).send(UUID(payload["user_id"]), message)

    async def cost_alert_email(self, session: AsyncSession, payload: dict[str, Any]) -> None:
        """Email a cost alert and mark it notified."""
        email = payload.get("email")
        if not email:
            logger.info("cost_alert_email_skipped", user_id=payload["user_id"], reason="no_email")
            return
        message = cost_alert_email(
            to=email,
            alert_type=AlertType(payload["alert_type"]),
            estimated_cost=Decimal(payload["estimated_cost"]),
            threshold=Decimal(payload["threshold"]),
        )
        await NotificationService(session, self.email_sender).send(UUID(payload["user_id"]), message)

        if payload.get("alert_id"):
            await session.execute(
                update(CostAlert)
                .where(CostAlert.id == UUID(payload["alert_id"]))
                .values(notified_via_email=True, email_sent_at=datetime.now(UTC))
            )
            await session.commit()

    async def verdict_email(self, session: AsyncSession, payload: dict[str, Any]) -> None:
        """Email the finished verdict to the requester."""
        email = payload.get("email")
        if not email:
            logger.info("verdict_email_skipped", user_id=payload["user_id"], reason="no_email")
            return
        message = verdict_email(to=email, prompt=payload["prompt"], verdict=payload["verdict"])
        await NotificationService(session, self.email_sender).send(UUID(payload["user_id"]), message)

    # ========================================================================
    # Training capture
    # ========================================================================

    async def training_capture(self, session: AsyncSession, payload: dict[str, Any]) -> None:
        """Store a capped snapshot of the run under its pre-generated ID."""
        record_id = UUID(payload["record_id"])
        if await session.get(TrainingDatasetRecord, record_id) is not None:
            logger.info("training_capture_already_stored", record_id=str(record_id))
            return

        drafts = payload.get("drafts") or []
        first = drafts[0] if len(drafts) > 0 else {}
        second = drafts[1] if len(drafts) > 1 else {}

        session.add(
            TrainingDatasetRecord(
                id=record_id,
                user_id=UUID(payload["user_id"]) if payload.get("user_id") else None,
                prompt=_truncate(payload["prompt"]) or "",
                draft_a_model=first.get("model"),
                draft_a_response=_truncate(first.get("response")),
                draft_b_model=second.get("model"),
                draft_b_response=_truncate(second.get("response")),
                verdict_model=payload.get("verdict_model"),
                verdict_response=_truncate(payload.get("verdict")),
                council_config=payload.get("council_config") or {},
                council_source=payload.get("council_source"),
            )
        )
        await session.commit()
        logger.info("training_capture_stored", record_id=str(record_id))
