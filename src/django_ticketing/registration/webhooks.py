"""Stripe webhook handling for the registration app.

Provides a registry-based dispatch system for Stripe webhook events. Each event
kind (e.g. ``payment_intent.succeeded``) maps to a handler class that finds the
registration named in the event metadata and drives the checkout state machine.

Stripe delivers events at least once and in no guaranteed order. Handlers do
not deduplicate by event id; every transition checks the registration's current
state first, so replays are no-ops.

Usage in URL configuration::

    from django_ticketing.registration.webhooks import payment_webhook

    urlpatterns = [
        path("webhooks/payment/<slug:event_slug>/", payment_webhook),
    ]
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import TYPE_CHECKING

import stripe
from django.http import HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from django_ticketing.events.models import Event
from django_ticketing.registration.models import Registration
from django_ticketing.registration.services.checkout import CheckoutService, TransitionResult
from django_ticketing.registration.stripe_client import StripeCheckoutClient
from django_ticketing.registration.stripe_utils import convert_amount_for_db

if TYPE_CHECKING:
    from django.http import HttpRequest

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class WebhookRegistry:
    """Registry mapping Stripe event kinds to handler classes.

    Handlers are registered at module load time and looked up by the webhook
    view when an event arrives.
    """

    def __init__(self) -> None:
        self._registry: dict[str, type[Webhook]] = {}

    def register(self, kind: str, handler_class: type[Webhook]) -> None:
        """Register a handler class for a Stripe event kind."""
        self._registry[kind] = handler_class

    def get(self, kind: str) -> type[Webhook] | None:
        """Return the handler class for ``kind``, or ``None``."""
        return self._registry.get(kind)

    def keys(self) -> list[str]:
        """Return all registered event kinds."""
        return list(self._registry.keys())


registry = WebhookRegistry()


# ---------------------------------------------------------------------------
# Base handler
# ---------------------------------------------------------------------------


class Webhook:
    """Base class for Stripe webhook event handlers.

    Subclasses set ``name`` to the Stripe event kind they handle and implement
    ``process_webhook()``. The base ``process()`` resolves the registration,
    runs the transition, then fires confirmation side effects outside the
    transition's transaction.

    Attributes:
        name: The Stripe event kind this handler processes.
        event: The ticketed event the webhook endpoint belongs to.
        payload: The verified Stripe event as a plain dict.
    """

    name: str = ""

    def __init__(self, event: Event, payload: dict[str, object]) -> None:
        self.event = event
        self.payload = payload
        self.registration: Registration | None = None

    @property
    def data_object(self) -> dict[str, object]:
        """Return the event's ``data.object`` dict (empty if malformed)."""
        data = self.payload.get("data")
        if isinstance(data, dict):
            obj = data.get("object")
            if isinstance(obj, dict):
                return obj
        return {}

    @property
    def registration_id(self) -> str:
        metadata = self.data_object.get("metadata")
        if isinstance(metadata, dict):
            return str(metadata.get("registration_id") or "")
        return ""

    def process(self) -> TransitionResult | None:
        """Run the handler against the registration named in the metadata.

        Returns ``None`` when the event does not point at a registration of
        this event; such events are acknowledged and ignored.
        """
        registration_id = self.registration_id
        if not registration_id.isdigit():
            logger.info("Stripe event %s (%s) carries no registration_id", self.payload.get("id"), self.name)
            return None
        self.registration = Registration.objects.filter(pk=int(registration_id), event=self.event).first()
        if self.registration is None:
            logger.warning(
                "Stripe event %s (%s) references unknown registration %s for event '%s'",
                self.payload.get("id"),
                self.name,
                registration_id,
                self.event.slug,
            )
            return None

        try:
            result = self.process_webhook(self.registration)
        except Exception:
            self.log_exception()
            raise
        CheckoutService.dispatch_confirmation(result)
        return result

    def process_webhook(self, registration: Registration) -> TransitionResult:
        """Implement event-specific processing logic.

        Raises:
            NotImplementedError: Subclasses must override this method.
        """
        raise NotImplementedError

    def log_exception(self) -> None:
        logger.exception(
            "Error processing webhook %s (event %s) for registration %s",
            self.name,
            self.payload.get("id"),
            self.registration_id,
        )

    def received_amount(self, key: str = "amount_received") -> Decimal:
        """Convert an amount field of the data object from minor units."""
        obj = self.data_object
        raw = obj.get(key)
        if raw is None:
            raw = obj.get("amount")
        currency = str(obj.get("currency") or self.event.currency)
        return convert_amount_for_db(int(raw or 0), currency)


# ---------------------------------------------------------------------------
# Concrete handlers
# ---------------------------------------------------------------------------


class CheckoutSessionCompletedWebhook(Webhook):
    """Handles ``checkout.session.completed``: payment is now underway."""

    name = "checkout.session.completed"

    def process_webhook(self, registration: Registration) -> TransitionResult:
        session = self.data_object
        return CheckoutService.handle_checkout_completed(
            registration,
            session_id=str(session.get("id") or ""),
            payment_intent_id=str(session.get("payment_intent") or ""),
        )


class CheckoutSessionExpiredWebhook(Webhook):
    """Handles ``checkout.session.expired``: the attendee never paid."""

    name = "checkout.session.expired"

    def process_webhook(self, registration: Registration) -> TransitionResult:
        return CheckoutService.handle_checkout_expired(registration)


class PaymentIntentSucceededWebhook(Webhook):
    """Handles ``payment_intent.succeeded``.

    Uses ``amount_received`` rather than the requested ``amount`` so a short
    capture can never be recorded as paid in full.
    """

    name = "payment_intent.succeeded"

    def process_webhook(self, registration: Registration) -> TransitionResult:
        return CheckoutService.handle_payment_succeeded(
            registration,
            amount=self.received_amount(),
            payment_intent_id=str(self.data_object.get("id") or ""),
        )


class PaymentIntentFailedWebhook(Webhook):
    """Handles ``payment_intent.payment_failed``."""

    name = "payment_intent.payment_failed"

    def process_webhook(self, registration: Registration) -> TransitionResult:
        error = self.data_object.get("last_payment_error")
        reason = str(error.get("message") or "") if isinstance(error, dict) else ""
        return CheckoutService.handle_payment_failed(registration, reason=reason)


class PaymentIntentPartiallyFundedWebhook(Webhook):
    """Handles ``payment_intent.partially_funded``."""

    name = "payment_intent.partially_funded"

    def process_webhook(self, registration: Registration) -> TransitionResult:
        return CheckoutService.handle_partial_funds(registration, amount=self.received_amount())


registry.register(CheckoutSessionCompletedWebhook.name, CheckoutSessionCompletedWebhook)
registry.register(CheckoutSessionExpiredWebhook.name, CheckoutSessionExpiredWebhook)
registry.register(PaymentIntentSucceededWebhook.name, PaymentIntentSucceededWebhook)
registry.register(PaymentIntentFailedWebhook.name, PaymentIntentFailedWebhook)
registry.register(PaymentIntentPartiallyFundedWebhook.name, PaymentIntentPartiallyFundedWebhook)


# ---------------------------------------------------------------------------
# View
# ---------------------------------------------------------------------------


@csrf_exempt
@require_POST
def payment_webhook(request: HttpRequest, event_slug: str) -> HttpResponse:
    """Receive and process Stripe webhook events for a specific event.

    Responses:
        * 404 when no event matches ``event_slug``.
        * 400 when the signature, signing secret, or payload is unusable.
          Stripe does not retry these.
        * 500 when a handler fails, so Stripe retries the delivery.
        * 200 otherwise, including event kinds without a handler and events
          naming an unknown registration.

    Args:
        request: The incoming HTTP request from Stripe.
        event_slug: URL slug identifying which event this webhook is for.
    """
    event = Event.objects.filter(slug=event_slug).first()
    if event is None:
        logger.warning("Webhook received for unknown event slug: %s", event_slug)
        return HttpResponse(status=404)

    payload = request.body
    sig_header = request.META.get("HTTP_STRIPE_SIGNATURE", "")
    try:
        StripeCheckoutClient.construct_event(event, payload, sig_header)
        data = json.loads(payload)
    except (stripe.SignatureVerificationError, ValueError):
        logger.warning("Rejected Stripe webhook for event '%s': bad signature, secret or payload", event_slug)
        return HttpResponse(status=400)
    if not isinstance(data, dict):
        return HttpResponse(status=400)

    kind = str(data.get("type") or "")
    handler_class = registry.get(kind)
    if handler_class is None:
        logger.info("No handler registered for event kind '%s'", kind)
        return HttpResponse(status=200)

    try:
        handler_class(event, data).process()
    except Exception:
        logger.exception("Error processing Stripe event %s (kind=%s) for event '%s'", data.get("id"), kind, event_slug)
        return HttpResponse(status=500)
    return HttpResponse(status=200)
