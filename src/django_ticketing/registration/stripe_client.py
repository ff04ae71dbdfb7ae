"""Stripe Checkout adapter for per-event payment sessions.

Each event has its own Stripe account keys, so the client is initialized with
an ``Event`` and uses the ``stripe.StripeClient`` pattern (v1 namespace) for
API calls. Webhook payloads are verified with the event's signing secret.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import stripe

from django_ticketing.registration.exceptions import PaymentGatewayError
from django_ticketing.registration.stripe_utils import convert_amount_for_api, obfuscate_key
from django_ticketing.settings import get_config

if TYPE_CHECKING:
    from decimal import Decimal

    from django_ticketing.events.models import Event

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CheckoutSession:
    """The parts of a created Checkout Session the checkout flow needs."""

    session_id: str
    url: str


class StripeCheckoutClient:
    """Per-event Stripe Checkout client.

    Wraps ``stripe.StripeClient`` and binds every call to the event's secret key
    and the globally configured API version.

    Args:
        event: The event whose Stripe keys will be used.

    Raises:
        ValueError: If the event has no Stripe secret key configured.
    """

    def __init__(self, event: Event) -> None:
        raw_key = event.stripe_secret_key
        if not raw_key:
            msg = (
                f"Event '{event.slug}' does not have a Stripe secret key configured. "
                f"Set 'stripe_secret_key' on the Event record before starting a paid checkout."
            )
            raise ValueError(msg)

        secret_key = str(raw_key)
        self.event = event
        self.client = stripe.StripeClient(
            secret_key,
            stripe_version=get_config().stripe.api_version,
        )
        logger.debug("Initialized Stripe client for event '%s' (%s)", event.slug, obfuscate_key(secret_key))

    def create_session(
        self,
        amount: Decimal,
        currency: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        *,
        customer_email: str = "",
        description: str = "",
    ) -> CheckoutSession:
        """Create a hosted Checkout Session for a single registration.

        The ``metadata`` is attached to both the session and its PaymentIntent
        so every webhook event can be correlated back to the registration.

        Args:
            amount: The amount to charge.
            currency: ISO 4217 code of ``amount``.
            success_url: Where Stripe redirects after payment.
            cancel_url: Where Stripe redirects when the attendee backs out.
            metadata: Correlation keys, including ``registration_id``.
            customer_email: Prefills the email field on the hosted page.
            description: Line item name shown to the attendee.

        Returns:
            The session id and hosted checkout URL.

        Raises:
            PaymentGatewayError: If Stripe rejects the request or returns no URL.
        """
        params: dict[str, object] = {
            "mode": "payment",
            "line_items": [
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": convert_amount_for_api(amount, currency),
                        "product_data": {"name": description or self.event.name},
                    },
                },
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if customer_email:
            params["customer_email"] = customer_email

        registration_id = metadata.get("registration_id")
        try:
            session = self.client.v1.checkout.sessions.create(params=params)
        except stripe.StripeError as exc:
            logger.warning(
                "Stripe rejected checkout session for event '%s' (registration %s): %s",
                self.event.slug,
                registration_id,
                exc,
            )
            msg = f"Could not create a checkout session: {exc}"
            raise PaymentGatewayError(msg) from exc

        if not session.url:
            msg = f"Stripe returned no checkout URL for session {session.id}"
            raise PaymentGatewayError(msg)
        return CheckoutSession(session_id=session.id, url=session.url)

    @staticmethod
    def construct_event(event: Event, payload: bytes, sig_header: str) -> stripe.Event:
        """Verify a webhook payload against the event's signing secret.

        Raises:
            ValueError: If the event has no webhook secret, or the payload is
                not valid JSON.
            stripe.SignatureVerificationError: If the signature does not match.
        """
        secret = event.stripe_webhook_secret
        if not secret:
            msg = f"Event '{event.slug}' does not have a Stripe webhook secret configured."
            raise ValueError(msg)
        return stripe.Webhook.construct_event(
            payload,
            sig_header,
            str(secret),
            tolerance=get_config().stripe.webhook_tolerance,
        )
