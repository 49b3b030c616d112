"""
Ledger Service - Atomic debit and usage update after a successful audit.

NO DICTIONARIES - Results are DebitResult dataclasses.

The balance is only ever changed by one conditional UPDATE
(`... WHERE balance >= cost RETURNING balance`), executed in the same
transaction as the usage counter increment and the billing transaction
insert. Either all three are committed or none are.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from consensus_audit.db.models import BillingTransaction, CreditLedger, UsageCounters
from consensus_audit.exceptions import InsufficientCreditsError
from consensus_audit.models.api import BackgroundTaskKind, TransactionType
from consensus_audit.models.domain import AuthenticatedUser, DebitResult
from consensus_audit.observability import metrics
from consensus_audit.services.dispatcher import BackgroundDispatcher

logger = get_logger(__name__)


class LedgerService:
    """Debits the credit ledger and bumps usage counters."""

    def __init__(self, session: AsyncSession, dispatcher: BackgroundDispatcher | None = None) -> None:
        self.session = session
        self.dispatcher = dispatcher

    async def record_successful_audit(
        self,
        user: AuthenticatedUser,
        cost: Decimal,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> DebitResult:
        """
        Charge a completed audit.

        Args:
            user: Identity being charged
            cost: Estimated cost reserved before execution
            description: Billing transaction description
            metadata: JSON metadata stored on the billing transaction

        Returns:
            Balance and counters after the debit

        Raises:
            InsufficientCreditsError: The balance no longer covers the cost
                (concurrent spend since the reservation check); nothing is written
        """
        if cost < 0:
            raise ValueError(f"Audit cost cannot be negative: {cost}")

        now = datetime.now(UTC)

        debit = await self.session.execute(
            update(CreditLedger)
            .where(CreditLedger.user_id == user.user_id, CreditLedger.balance >= cost)
            .values(balance=CreditLedger.balance - cost, updated_at=now)
            .returning(
                CreditLedger.balance,
                CreditLedger.currency,
                CreditLedger.auto_recharge_enabled,
                CreditLedger.auto_recharge_threshold,
                CreditLedger.auto_recharge_amount,
            )
        )
        ledger_row = debit.one_or_none()

        if ledger_row is None:
            await self.session.rollback()
            balance = await self._current_balance(user)
            metrics.record_ledger_debit(False)
            logger.warning(
                "ledger_debit_rejected",
                user_id=str(user.user_id),
                balance=str(balance),
                cost=str(cost),
            )
            raise InsufficientCreditsError(balance, cost)

        counters = await self.session.execute(
            update(UsageCounters)
            .where(UsageCounters.user_id == user.user_id)
            .values(
                audit_count=UsageCounters.audit_count + 1,
                audits_this_month=UsageCounters.audits_this_month + 1,
                updated_at=now,
            )
            .returning(UsageCounters.audit_count, UsageCounters.audits_this_month)
        )
        counter_row = counters.one()

        new_balance = Decimal(ledger_row.balance)
        transaction_id = uuid4()

        # Zero-cost runs leave no ledger entry: entries must move the balance
        if cost > 0:
            self.session.add(
                BillingTransaction(
                    id=transaction_id,
                    user_id=user.user_id,
                    amount=-cost,
                    transaction_type=TransactionType.USAGE,
                    balance_after=new_balance,
                    description=description,
                    metadata_=metadata or {},
                    created_at=now,
                )
            )

        await self.session.commit()

        metrics.record_ledger_debit(True)
        logger.info(
            "ledger_debited",
            user_id=str(user.user_id),
            amount=str(cost),
            balance_after=str(new_balance),
            transaction_id=str(transaction_id),
        )

        result = DebitResult(
            previous_balance=new_balance + cost,
            new_balance=new_balance,
            amount=cost,
            transaction_id=transaction_id,
            audit_count=counter_row.audit_count,
            audits_this_month=counter_row.audits_this_month,
        )

        await self._dispatch_balance_followup(
            user,
            result,
            currency=ledger_row.currency,
            auto_recharge_enabled=ledger_row.auto_recharge_enabled,
            threshold=Decimal(ledger_row.auto_recharge_threshold),
        )
        return result

    async def _dispatch_balance_followup(
        self,
        user: AuthenticatedUser,
        result: DebitResult,
        currency: str,
        auto_recharge_enabled: bool,
        threshold: Decimal,
    ) -> None:
        """Auto-recharge or warn when the new balance is below the threshold."""
        if self.dispatcher is None or result.new_balance >= threshold:
            return

        payload = {
            "user_id": str(user.user_id),
            "email": user.email,
            "balance": str(result.new_balance),
            "threshold": str(threshold),
            "currency": currency,
            "transaction_id": str(result.transaction_id),
        }
        if auto_recharge_enabled:
            await self.dispatcher.dispatch(BackgroundTaskKind.AUTO_RECHARGE, payload)
        else:
            await self.dispatcher.dispatch(BackgroundTaskKind.LOW_BALANCE_EMAIL, payload)

    async def _current_balance(self, user: AuthenticatedUser) -> Decimal:
        result = await self.session.execute(
            select(CreditLedger.balance).where(CreditLedger.user_id == user.user_id)
        )
        balance = result.scalar_one_or_none()
        return Decimal(balance) if balance is not None else Decimal("0")
