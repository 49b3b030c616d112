"""
Stripe Checkout Provider - Auto-recharge top-up sessions.

NO DICTIONARIES - Results are returned as CheckoutSession dataclasses.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol
from uuid import UUID

import stripe
from structlog import get_logger

from consensus_audit.config import settings
from consensus_audit.exceptions import PaymentProviderError

logger = get_logger(__name__)

RECHARGE_PRODUCT_NAME = "Credit Top-Up (Auto-Recharge)"


@dataclass(frozen=True)
class CheckoutSession:
    """Created checkout session."""

    session_id: str
    url: str | None


class RechargeCheckoutProvider(Protocol):
    """Creates hosted checkout sessions for credit top-ups."""

    async def create_recharge_checkout(
        self,
        user_id: UUID,
        email: str | None,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> CheckoutSession:
        """
        Create a one-off payment checkout session.

        Raises:
            PaymentProviderError: If the provider call fails
        """
        ...


class StripeCheckoutProvider:
    """
    Stripe implementation of RechargeCheckoutProvider.
    """

    def __init__(self, api_key: str, app_base_url: str) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            app_base_url: Web app URL the checkout redirects back to
        """
        self.api_key = api_key
        self.app_base_url = app_base_url.rstrip("/")
        stripe.api_key = api_key

    async def create_recharge_checkout(
        self,
        user_id: UUID,
        email: str | None,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> CheckoutSession:
        """Create a Stripe Checkout Session for an auto-recharge."""
        if not self.api_key:
            raise PaymentProviderError("Stripe API key is not configured")

        amount_minor = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

        try:
            logger.info(
                "creating_stripe_checkout_session",
                user_id=str(user_id),
                amount_minor=amount_minor,
                currency=currency,
            )

            session = stripe.checkout.Session.create(
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "product_data": {"name": RECHARGE_PRODUCT_NAME},
                            "unit_amount": amount_minor,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=f"{self.app_base_url}/settings/billing?recharge=success",
                cancel_url=f"{self.app_base_url}/settings/billing?recharge=cancelled",
                client_reference_id=str(user_id),
                customer_email=email,
                metadata={
                    "user_id": str(user_id),
                    "amount": str(amount),
                    "currency": currency.lower(),
                    "type": "auto_recharge",
                },
                idempotency_key=idempotency_key,
            )

            logger.info("stripe_checkout_session_created", session_id=session.id)
            return CheckoutSession(session_id=session.id, url=session.url)

        except stripe.StripeError as exc:
            logger.error(
                "stripe_checkout_session_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe checkout failed: {exc}") from exc


def get_checkout_provider() -> StripeCheckoutProvider:
    """Create the checkout provider from settings."""
    return StripeCheckoutProvider(settings.stripe_api_key, settings.app_base_url)
