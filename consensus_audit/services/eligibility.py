"""
Eligibility Gate - Admission checks run before any paid work.

Checks run in a fixed order and stop at the first failure:
credential, ban flag, account status, moderation, usage quota.
Only this gate creates UsageCounters / CreditLedger rows.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

import jwt
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from consensus_audit.config import settings
from consensus_audit.db.models import CreditLedger, SecurityLog, UsageCounters
from consensus_audit.exceptions import (
    AccountDisabledError,
    AccountInactiveError,
    AccountSuspendedError,
    AuditError,
    ContentPolicyViolationError,
    ModerationUnavailableError,
    ProviderError,
    QuotaExceededError,
    UnauthenticatedError,
)
from consensus_audit.models.api import AccountStatus
from consensus_audit.models.domain import (
    AuthenticatedUser,
    EligibilityResult,
    LedgerSnapshot,
    UsageSnapshot,
)
from consensus_audit.services.moderation import ModerationProvider

logger = get_logger(__name__)

# Monthly audit quota per subscription tier; premium accounts are unlimited
TIER_MONTHLY_LIMITS: dict[str, int] = {
    "free": 3,
    "pro": 200,
    "max": 800,
    "team": 1500,
    "agency": 5000,
}
DEFAULT_TIER = "free"

MAX_LOGGED_PROMPT_CHARS = 10_000


def monthly_limit_for(tier: str, is_premium: bool) -> int | None:
    """Monthly audit quota for a tier; None means unlimited."""
    if is_premium:
        return None
    return TIER_MONTHLY_LIMITS.get(tier, TIER_MONTHLY_LIMITS[DEFAULT_TIER])


def should_reset_monthly_usage(last_reset_at: datetime | None, now: datetime) -> bool:
    """Check if the monthly counter belongs to an earlier calendar month (UTC)."""
    if last_reset_at is None:
        return False
    if last_reset_at.tzinfo is None:
        last_reset_at = last_reset_at.replace(tzinfo=UTC)
    last = last_reset_at.astimezone(UTC)
    return (last.year, last.month) < (now.year, now.month)


def verify_credential(token: str | None) -> AuthenticatedUser:
    """
    Verify a bearer JWT and resolve the identity.

    Raises:
        UnauthenticatedError: Missing, expired, malformed or foreign token
    """
    if not token:
        raise UnauthenticatedError("Missing bearer credential")

    try:
        claims: dict[str, Any] = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            audience=settings.auth_jwt_audience,
        )
    except jwt.ExpiredSignatureError as exc:
        logger.warning("credential_expired")
        raise UnauthenticatedError("Credential has expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.warning("credential_invalid", error=str(exc))
        raise UnauthenticatedError("Invalid credential") from exc

    try:
        user_id = UUID(str(claims.get("sub")))
    except ValueError as exc:
        raise UnauthenticatedError("Credential subject is not a user ID") from exc

    email = claims.get("email")
    return AuthenticatedUser(user_id=user_id, email=email if isinstance(email, str) else None)


class EligibilityGate:
    """Admits or rejects an audit request."""

    def __init__(
        self,
        session: AsyncSession,
        moderation: ModerationProvider,
        moderation_fail_open: bool | None = None,
    ) -> None:
        self.session = session
        self.moderation = moderation
        self.moderation_fail_open = (
            settings.moderation_fail_open if moderation_fail_open is None else moderation_fail_open
        )

    async def check(self, credential: str | None, prompt: str) -> EligibilityResult:
        """
        Run every admission check in order.

        Raises:
            UnauthenticatedError: Invalid credential
            AccountSuspendedError: Account is banned
            AccountDisabledError / AccountInactiveError: Account not active
            ModerationUnavailableError: Moderation failed while failing closed
            ContentPolicyViolationError: Prompt was flagged
            QuotaExceededError: Monthly audit quota used up

        Rejections after the credential is verified carry the caller's user_id.
        """
        user = verify_credential(credential)
        try:
            return await self._admit(user, prompt)
        except AuditError as exc:
            exc.user_id = user.user_id
            raise

    async def _admit(self, user: AuthenticatedUser, prompt: str) -> EligibilityResult:
        existing = await self._find_usage(user.user_id)
        if existing is not None:
            self._check_account_standing(existing)

        await self._moderate(user.user_id, prompt)

        usage = existing or await self._create_usage(user.user_id)
        ledger = await self._get_or_create_ledger(user.user_id)

        now = datetime.now(UTC)
        if should_reset_monthly_usage(usage.last_reset_at, now):
            logger.info(
                "monthly_usage_reset",
                user_id=str(user.user_id),
                previous_count=usage.audits_this_month,
            )
            usage.audits_this_month = 0
            usage.last_reset_at = now
            await self.session.commit()

        usage_snapshot = _usage_snapshot(usage)
        if (
            usage_snapshot.monthly_limit is not None
            and usage_snapshot.audits_this_month >= usage_snapshot.monthly_limit
        ):
            logger.info(
                "audit_quota_exceeded",
                user_id=str(user.user_id),
                tier=usage_snapshot.subscription_tier,
                used=usage_snapshot.audits_this_month,
            )
            raise QuotaExceededError(
                usage_snapshot.subscription_tier,
                usage_snapshot.monthly_limit,
                usage_snapshot.audits_this_month,
            )

        return EligibilityResult(user=user, usage=usage_snapshot, ledger=_ledger_snapshot(ledger))

    # ========================================================================
    # Checks
    # ========================================================================

    def _check_account_standing(self, usage: UsageCounters) -> None:
        if usage.is_banned:
            logger.warning("suspended_account_rejected", user_id=str(usage.user_id))
            raise AccountSuspendedError(usage.user_id, usage.ban_reason, usage.banned_at)
        if usage.account_status == AccountStatus.DISABLED.value:
            raise AccountDisabledError(usage.user_id)
        if usage.account_status == AccountStatus.INACTIVE.value:
            raise AccountInactiveError(usage.user_id)

    async def _moderate(self, user_id: UUID, prompt: str) -> None:
        try:
            verdict = await self.moderation.moderate(prompt)
        except ProviderError as exc:
            if not self.moderation_fail_open:
                logger.error("moderation_unavailable_rejecting", user_id=str(user_id), error=exc.message)
                raise ModerationUnavailableError(exc.message) from exc

            logger.warning("moderation_unavailable_failing_open", user_id=str(user_id), error=exc.message)
            await self._log_security_event(
                user_id, prompt, "moderation_unavailable", {"error": exc.message}
            )
            return

        if verdict.flagged:
            categories = list(verdict.categories)
            logger.warning("prompt_flagged", user_id=str(user_id), categories=categories)
            await self._log_security_event(
                user_id,
                prompt,
                ", ".join(categories) or "flagged",
                {"categories": categories, "scores": verdict.scores},
            )
            raise ContentPolicyViolationError(categories)

    async def _log_security_event(
        self, user_id: UUID, prompt: str, category: str, details: dict[str, Any]
    ) -> None:
        try:
            self.session.add(
                SecurityLog(
                    user_id=user_id,
                    prompt=prompt[:MAX_LOGGED_PROMPT_CHARS],
                    flag_category=category[:255],
                    metadata_=details,
                )
            )
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("security_log_write_failed", user_id=str(user_id), error=str(exc))

    # ========================================================================
    # Lookups / lazy creation
    # ========================================================================

    async def _find_usage(self, user_id: UUID) -> UsageCounters | None:
        result = await self.session.execute(
            select(UsageCounters).where(UsageCounters.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def _create_usage(self, user_id: UUID) -> UsageCounters:
        usage = UsageCounters(
            user_id=user_id,
            account_status=AccountStatus.ACTIVE.value,
            is_banned=False,
            audit_count=0,
            audits_this_month=0,
            last_reset_at=datetime.now(UTC),
            subscription_tier=DEFAULT_TIER,
            is_premium=False,
        )
        self.session.add(usage)
        try:
            await self.session.flush()
            await self.session.commit()
        except IntegrityError as exc:
            # Race condition - counters created by a concurrent request
            logger.warning("usage_creation_integrity_error", user_id=str(user_id), error=str(exc))
            await self.session.rollback()
            found = await self._find_usage(user_id)
            if found is None:
                raise
            return found

        logger.info("usage_counters_created", user_id=str(user_id))
        return usage

    async def _get_or_create_ledger(self, user_id: UUID) -> CreditLedger:
        result = await self.session.execute(
            select(CreditLedger).where(CreditLedger.user_id == user_id)
        )
        ledger = result.scalar_one_or_none()
        if ledger is not None:
            return ledger

        ledger = CreditLedger(
            user_id=user_id,
            balance=Decimal("0"),
            currency="USD",
            auto_recharge_enabled=False,
            auto_recharge_threshold=Decimal("5.00"),
            auto_recharge_amount=Decimal("20.00"),
        )
        self.session.add(ledger)
        try:
            await self.session.flush()
            await self.session.commit()
        except IntegrityError as exc:
            logger.warning("ledger_creation_integrity_error", user_id=str(user_id), error=str(exc))
            await self.session.rollback()
            result = await self.session.execute(
                select(CreditLedger).where(CreditLedger.user_id == user_id)
            )
            found = result.scalar_one_or_none()
            if found is None:
                raise
            return found

        logger.info("credit_ledger_created", user_id=str(user_id))
        return ledger


def _usage_snapshot(usage: UsageCounters) -> UsageSnapshot:
    return UsageSnapshot(
        user_id=usage.user_id,
        subscription_tier=usage.subscription_tier,
        is_premium=usage.is_premium,
        audit_count=usage.audit_count,
        audits_this_month=usage.audits_this_month,
        monthly_limit=monthly_limit_for(usage.subscription_tier, usage.is_premium),
        daily_cost_threshold=usage.daily_cost_threshold,
        per_audit_cost_threshold=usage.per_audit_cost_threshold,
        monthly_budget_limit=usage.monthly_budget_limit,
    )


def _ledger_snapshot(ledger: CreditLedger) -> LedgerSnapshot:
    return LedgerSnapshot(
        user_id=ledger.user_id,
        balance=Decimal(ledger.balance),
        currency=ledger.currency,
        auto_recharge_enabled=ledger.auto_recharge_enabled,
        auto_recharge_threshold=Decimal(ledger.auto_recharge_threshold),
        auto_recharge_amount=Decimal(ledger.auto_recharge_amount),
    )
