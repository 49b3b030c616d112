"""
Notification Service - Transactional email via the Resend HTTP API.

Every attempt, sent or failed, is recorded in email_logs.
"""

from dataclasses import dataclass
from decimal import Decimal
from html import escape
from typing import Protocol
from uuid import UUID

import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from consensus_audit.config import settings
from consensus_audit.db.models import EmailLog
from consensus_audit.exceptions import EmailDeliveryError
from consensus_audit.models.api import AlertType

logger = get_logger(__name__)

VERDICT_PREVIEW_CHARS = 4000


@dataclass(frozen=True)
class EmailMessage:
    """Rendered outbound email."""

    email_type: str
    to: str
    subject: str
    html: str

    def __post_init__(self) -> None:
        """Validate recipient."""
        if "@" not in self.to:
            raise ValueError(f"Invalid recipient address: {self.to!r}")


class EmailSender(Protocol):
    """Email delivery capability."""

    async def send(self, message: EmailMessage) -> str | None:
        """
        Deliver a message.

        Returns:
            Provider message ID, if the provider returns one

        Raises:
            EmailDeliveryError: If the provider rejects the message
        """
        ...


class ResendEmailSender:
    """Resend `/emails` implementation of EmailSender."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        from_address: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.from_address = from_address
        self._client = client or httpx.AsyncClient(timeout=15.0)

    async def send(self, message: EmailMessage) -> str | None:
        """Send one email."""
        if not self.api_key:
            raise EmailDeliveryError("email API key is not configured")

        try:
            response = await self._client.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "from": self.from_address,
                    "to": [message.to],
                    "subject": message.subject,
                    "html": message.html,
                },
            )
        except httpx.HTTPError as exc:
            raise EmailDeliveryError(f"transport error: {exc}") from exc

        if response.status_code >= 400:
            raise EmailDeliveryError(f"HTTP {response.status_code}: {response.text[:300]}")

        try:
            return response.json().get("id")
        except ValueError:
            return None

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()


class NotificationService:
    """Sends emails and records them in email_logs."""

    def __init__(self, session: AsyncSession, sender: EmailSender) -> None:
        self.session = session
        self.sender = sender

    async def send(self, user_id: UUID, message: EmailMessage) -> str | None:
        """
        Send a message and log the attempt.

        Raises:
            EmailDeliveryError: After logging the failed attempt
        """
        try:
            message_id = await self.sender.send(message)
        except EmailDeliveryError as exc:
            self.session.add(
                EmailLog(
                    user_id=user_id,
                    email_type=message.email_type,
                    recipient_email=message.to,
                    subject=message.subject,
                    status="failed",
                    error_message=exc.message,
                )
            )
            await self.session.commit()
            logger.warning(
                "email_delivery_failed",
                user_id=str(user_id),
                email_type=message.email_type,
                error=exc.message,
            )
            raise

        self.session.add(
            EmailLog(
                user_id=user_id,
                email_type=message.email_type,
                recipient_email=message.to,
                subject=message.subject,
                status="sent",
                message_id=message_id,
            )
        )
        await self.session.commit()
        logger.info(
            "email_sent",
            user_id=str(user_id),
            email_type=message.email_type,
            message_id=message_id,
        )
        return message_id


# ============================================================================
# Templates
# ============================================================================


def low_balance_email(to: str, balance: Decimal, threshold: Decimal, currency: str) -> EmailMessage:
    """Balance fell below the recharge threshold and auto-recharge is off."""
    return EmailMessage(
        email_type="low_balance",
        to=to,
        subject="Your Consensus credit balance is running low",
        html=(
            "<h1>Low credit balance</h1>"
            f"<p>Your balance is <strong>{balance:.2f} {escape(currency)}</strong>, "
            f"below your threshold of {threshold:.2f} {escape(currency)}.</p>"
            f'<p><a href="{settings.app_base_url}/settings/billing">Add credits</a> '
            "or enable auto-recharge to keep running audits.</p>"
        ),
    )


def cost_alert_email(
    to: str, alert_type: AlertType, estimated_cost: Decimal, threshold: Decimal
) -> EmailMessage:
    """A per-audit, daily or budget forecast threshold was crossed."""
    label = {
        AlertType.PER_AUDIT: "Per-Audit",
        AlertType.DAILY_THRESHOLD: "Daily",
        AlertType.BUDGET_FORECAST: "Budget Forecast",
    }[alert_type]

    if alert_type == AlertType.BUDGET_FORECAST:
        subject = f"Cost Alert: {label} Warning"
        lead = (
            "Based on your spending so far this month, you are projected to exceed "
            "your monthly budget limit."
        )
        cost_label = "Projected monthly cost"
    else:
        subject = f"Cost Alert: {label} Exceeded"
        lead = f"Your {label.lower()} cost threshold has been exceeded."
        cost_label = "Cost"

    return EmailMessage(
        email_type=f"cost_alert_{alert_type.value}",
        to=to,
        subject=subject,
        html=(
            f"<h1>{subject}</h1><p>{lead}</p>"
            f"<p>{cost_label}: <strong>${estimated_cost:.4f}</strong><br>"
            f"Threshold: ${threshold:.4f}</p>"
            f'<p><a href="{settings.app_base_url}/settings/billing">Review your limits</a></p>'
        ),
    )


def verdict_email(to: str, prompt: str, verdict: str) -> EmailMessage:
    """Send the finished verdict to the requesting user."""
    preview = verdict[:VERDICT_PREVIEW_CHARS]
    if len(verdict) > VERDICT_PREVIEW_CHARS:
        preview += "..."
    return EmailMessage(
        email_type="verdict",
        to=to,
        subject="Your Consensus audit is ready",
        html=(
            "<h1>Consensus verdict</h1>"
            f"<p><strong>Your question:</strong> {escape(prompt[:500])}</p>"
            f"<div style=\"white-space: pre-wrap\">{escape(preview)}</div>"
        ),
    )


_sender: ResendEmailSender | None = None


def get_email_sender() -> ResendEmailSender:
    """Get or create the shared email sender."""
    global _sender
    if _sender is None:
        _sender = ResendEmailSender(
            api_url=settings.email_api_url,
            api_key=settings.email_api_key,
            from_address=settings.email_from,
        )
    return _sender


async def close_email_sender() -> None:
    """Close the shared email sender (for graceful shutdown)."""
    global _sender
    if _sender is not None:
        await _sender.aclose()
        _sender = None
