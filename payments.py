"""Stripe payment intents."""

import logging
from typing import Optional

import stripe

from errors import UpstreamError

logger = logging.getLogger("towertrack.payments")


class PaymentGateway:
    def __init__(self, api_key: Optional[str], currency: str = "bdt"):
        self.api_key = api_key
        self.currency = currency

    def create_intent(self, amount: int) -> str:
        """Create a card PaymentIntent for ``amount`` whole units and return its client secret."""
        if not self.api_key:
            raise UpstreamError("Payment processor is not configured")
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount * 100,
                currency=self.currency,
                payment_method_types=["card"],
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe rejected payment intent for %d %s: %s", amount, self.currency, exc)
            raise UpstreamError(exc.user_message or "Payment intent failed") from exc
        return intent.client_secret
