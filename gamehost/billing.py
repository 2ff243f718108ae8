"""Stripe-backed payment gateway used for hosted checkout."""
from __future__ import annotations

import logging
from typing import Mapping

import stripe

logger = logging.getLogger("gamehost.billing")


class BillingError(RuntimeError):
    """Raised when the payment gateway rejects or fails a request."""


class StripeBilling:
    """Create customers and hosted checkout sessions through Stripe."""

    def __init__(self, api_key: str, *, client: stripe.StripeClient | None = None) -> None:
        if client is None:
            if not api_key:
                raise ValueError("Stripe API key must not be empty")
            client = stripe.StripeClient(api_key)
        self._client = client

    def create_customer(self, email: str) -> str:
        try:
            customer = self._client.customers.create(params={"email": email})
        except stripe.StripeError as exc:
            raise BillingError(f"Stripe customer creation failed: {exc}") from exc
        logger.info("Created Stripe customer %s", customer.id)
        return str(customer.id)

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Mapping[str, str],
    ) -> str:
        """Return the hosted checkout URL for a one-off plan purchase."""

        try:
            session = self._client.checkout.sessions.create(
                params={
                    "mode": "payment",
                    "payment_method_types": ["card"],
                    "customer": customer_id,
                    "line_items": [{"price": price_id, "quantity": 1}],
                    "success_url": success_url,
                    "cancel_url": cancel_url,
                    "metadata": dict(metadata),
                }
            )
        except stripe.StripeError as exc:
            raise BillingError(f"Stripe checkout session creation failed: {exc}") from exc

        if not session.url:
            raise BillingError("Stripe did not return a checkout URL")
        return str(session.url)


__all__ = ["BillingError", "StripeBilling"]
