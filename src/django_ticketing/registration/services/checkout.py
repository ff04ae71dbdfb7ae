"""Registration checkout state machine.

Drives a registration through ``draft -> pending_payment -> payment_processing
-> confirmed`` with side exits to ``abandoned`` and ``payment_failed``. Every
transition locks the registration row and checks the current state first, so
repeated or out-of-order gateway events are safe no-ops.

Confirmation side effects (the ``registration_completed`` signal and the CRM
sync) are not fired from inside these transactions. Callers pass the returned
result to :meth:`CheckoutService.dispatch_confirmation` once the work is
committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol

from django.db import IntegrityError, transaction
from django.utils import timezone

from django_ticketing.registration import hubspot
from django_ticketing.registration.exceptions import (
    CouponUsageLimitReached,
    CouponValidationError,
    DuplicateRegistration,
    EventSoldOut,
    InvalidTransition,
    PaymentGatewayError,
    PaymentInProgress,
    RegistrationsClosed,
)
from django_ticketing.registration.models import Coupon, CouponReservation, Registration
from django_ticketing.registration.services.coupons import CouponService, PricingQuote
from django_ticketing.registration.services.reservations import ReservationService
from django_ticketing.registration.signals import registration_completed
from django_ticketing.registration.stripe_client import CheckoutSession, StripeCheckoutClient
from django_ticketing.settings import get_config

if TYPE_CHECKING:
    from django_ticketing.events.models import Event

logger = logging.getLogger(__name__)

_COMPLETABLE_STATUSES = (Registration.Status.DRAFT, Registration.Status.PENDING_PAYMENT)
_AWAITING_PAYMENT_STATUSES = (Registration.Status.PENDING_PAYMENT, Registration.Status.PAYMENT_PROCESSING)


class PaymentGateway(Protocol):
    """Anything that can open a hosted checkout session."""

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
    ) -> CheckoutSession: ...


@dataclass
class InitiationResult:
    """Outcome of :meth:`CheckoutService.initiate`.

    Attributes:
        registration: The draft registration, created or updated in place.
        pricing: The price the attendee will be asked to pay.
        reservation: The coupon hold, when a coupon was applied.
        coupon_error: Why a requested coupon was dropped, when it was.
    """

    registration: Registration
    pricing: PricingQuote
    reservation: CouponReservation | None = None
    coupon_error: CouponValidationError | None = None


@dataclass
class CompletionResult:
    """Outcome of :meth:`CheckoutService.complete`.

    ``confirmed_now`` is ``True`` only for the call that actually confirmed
    the registration; ``checkout_url`` is set when the attendee must pay.
    """

    registration: Registration
    confirmed_now: bool = False
    checkout_url: str = ""
    session_id: str = ""


@dataclass
class TransitionResult:
    """Outcome of a gateway-driven transition."""

    registration: Registration
    changed: bool = False
    confirmed_now: bool = False


class CheckoutService:
    """Stateless service for the registration checkout flow.

    All methods are static and operate on model instances directly.
    """

    @staticmethod
    def validate_coupon(event: Event, code: str, *, now=None) -> PricingQuote:
        """Price a ticket with ``code`` applied, without changing anything.

        Raises:
            CouponValidationError: If the code cannot be used for ``event``.
        """
        coupon = CouponService.validate(event, code, now=now)
        return CouponService.price_for(event, coupon)

    @staticmethod
    def initiate(
        event: Event,
        *,
        email: str,
        name: str,
        surname: str = "",
        company: str = "",
        phone: str = "",
        coupon_code: str = "",
        additional_fields: dict[str, object] | None = None,
        now=None,
    ) -> InitiationResult:
        """Create or update the attendee's draft registration.

        An unusable coupon does not stop the registration: it proceeds at full
        price and the reason is returned in ``coupon_error``. A retryable
        registration for the same email is updated in place after its old
        coupon hold is released.

        Raises:
            RegistrationsClosed: If the event does not accept registrations.
            EventSoldOut: If every seat is taken.
            DuplicateRegistration: If the email is already confirmed.
            PaymentInProgress: If a payment for the email is being processed.
        """
        now = now or timezone.now()
        if not event.is_registration_open():
            raise RegistrationsClosed
        if not event.has_available_seats():
            raise EventSoldOut

        email = email.strip().lower()
        coupon: Coupon | None = None
        coupon_error: CouponValidationError | None = None
        if coupon_code.strip():
            try:
                coupon = CouponService.validate(event, coupon_code, now=now)
            except CouponValidationError as exc:
                logger.warning("Proceeding at full price for %s on '%s': coupon %s", email, event.slug, exc.reason)
                coupon_error = exc
        if coupon_error is None:
            pricing = CouponService.price_for(event, coupon)
        else:
            pricing = CouponService.full_price(event, coupon_error)

        fields = {
            "name": name.strip(),
            "surname": surname.strip(),
            "company": company.strip(),
            "phone": phone.strip(),
            "additional_fields": additional_fields or {},
        }

        with transaction.atomic():
            registration = Registration.objects.select_for_update().filter(event=event, email=email).first()
            if registration is None:
                try:
                    with transaction.atomic():
                        registration = Registration.objects.create(event=event, email=email, **fields)
                except IntegrityError:
                    registration = Registration.objects.select_for_update().get(event=event, email=email)
            _prepare_for_retry(registration, now=now)

            for key, value in fields.items():
                setattr(registration, key, value)
            _apply_pricing(registration, pricing)
            registration.save()

            reservation = None
            if coupon is not None:
                try:
                    reservation = ReservationService.create_reservation(coupon, registration, event, now=now)
                except CouponUsageLimitReached as exc:
                    logger.warning(
                        "Coupon %s exhausted while %s was registering; charging full price", coupon.code, email
                    )
                    coupon_error = exc
                    pricing = CouponService.full_price(event, exc)
                    _apply_pricing(registration, pricing)
                    registration.save()

        logger.info(
            "Initiated registration %s for '%s' (expected %s %s)",
            registration.pk,
            event.slug,
            registration.expected_amount,
            event.currency,
        )
        return InitiationResult(
            registration=registration,
            pricing=pricing,
            reservation=reservation,
            coupon_error=coupon_error,
        )

    @staticmethod
    def complete(
        registration: Registration,
        *,
        success_url: str = "",
        cancel_url: str = "",
        gateway: PaymentGateway | None = None,
        now=None,
    ) -> CompletionResult:
        """Finish checkout for a draft registration.

        Free registrations are confirmed immediately, consuming their coupon
        hold. Paid registrations get a gateway checkout session and move to
        ``pending_payment``. Completing a confirmed registration again returns
        it unchanged.

        Raises:
            InvalidTransition: If the registration is past the point of checkout.
            CouponUsageLimitReached: If a free registration's coupon ran out
                before it could be confirmed. The hold is released and the
                registration stays a draft.
            PaymentGatewayError: If no checkout session could be created.
        """
        now = now or timezone.now()
        current = Registration.objects.select_related("event").get(pk=registration.pk)
        if current.is_confirmed:
            return CompletionResult(registration=current)
        if current.registration_status not in _COMPLETABLE_STATUSES:
            raise InvalidTransition
        if current.expected_amount <= 0:
            return _complete_free(current, now=now)
        return _complete_paid(current, success_url=success_url, cancel_url=cancel_url, gateway=gateway)

    @staticmethod
    def handle_checkout_completed(
        registration: Registration,
        *,
        session_id: str = "",
        payment_intent_id: str = "",
    ) -> TransitionResult:
        """The attendee finished the hosted checkout page; payment is underway."""
        with transaction.atomic():
            locked = Registration.all_objects.select_for_update().get(pk=registration.pk)
            if locked.registration_status != Registration.Status.PENDING_PAYMENT:
                return TransitionResult(registration=locked)
            locked.registration_status = Registration.Status.PAYMENT_PROCESSING
            if session_id:
                locked.stripe_session_id = session_id
            if payment_intent_id:
                locked.stripe_payment_intent_id = payment_intent_id
            locked.save(
                update_fields=["registration_status", "stripe_session_id", "stripe_payment_intent_id", "updated_at"],
            )
        logger.info("Registration %s is processing payment", locked.pk)
        return TransitionResult(registration=locked, changed=True)

    @staticmethod
    def handle_checkout_expired(registration: Registration, *, now=None) -> TransitionResult:
        """The hosted checkout session expired unpaid."""
        now = now or timezone.now()
        with transaction.atomic():
            locked = Registration.all_objects.select_for_update().get(pk=registration.pk)
            if locked.registration_status not in _AWAITING_PAYMENT_STATUSES:
                return TransitionResult(registration=locked)
            locked.registration_status = Registration.Status.ABANDONED
            locked.save(update_fields=["registration_status", "updated_at"])
            ReservationService.release_for_registration(locked, now=now)
        logger.info("Registration %s abandoned after checkout expired", locked.pk)
        return TransitionResult(registration=locked, changed=True)

    @staticmethod
    def handle_payment_succeeded(
        registration: Registration,
        *,
        amount: Decimal,
        payment_intent_id: str = "",
        now=None,
    ) -> TransitionResult:
        """Money arrived. Confirm the registration if it covers the expected amount.

        The payment is recorded for any registration that is not confirmed
        yet, including one that previously failed or was abandoned: Stripe
        sends a success after a failure when the attendee retries a declined
        card on the same session. Such a registration is confirmed like any
        other, taking a fresh coupon hold when its old one was released.

        If the coupon ran out of uses while the attendee was paying, the
        discount is dropped: the hold is released, the expected amount goes
        back to the ticket price, and the payment status is recomputed against
        it. The registration stays in ``payment_processing`` unless the amount
        still covers the full price.
        """
        now = now or timezone.now()
        with transaction.atomic():
            locked = Registration.all_objects.select_for_update().select_related("event").get(pk=registration.pk)
            if locked.is_confirmed:
                return TransitionResult(registration=locked)
            if locked.deleted_at is not None:
                locked.mark_as_paid(amount)
                logger.warning("Recorded payment of %s for cancelled registration %s", amount, locked.pk)
                return TransitionResult(registration=locked, changed=True)

            _start_processing(locked, payment_intent_id=payment_intent_id)
            if locked.mark_as_paid(amount) != Registration.PaymentStatus.PAID:
                logger.info("Registration %s received %s of %s", locked.pk, amount, locked.expected_amount)
                return TransitionResult(registration=locked, changed=True)

            try:
                _confirm_coupon_use(locked, now=now)
            except CouponUsageLimitReached:
                logger.warning(
                    "Coupon %s ran out before registration %s was paid; dropping the discount",
                    locked.coupon_code,
                    locked.pk,
                )
                ReservationService.release_for_registration(locked, now=now)
                locked.coupon_code = ""
                locked.discount_amount = Decimal("0.00")
                locked.expected_amount = locked.ticket_price
                locked.save(update_fields=["coupon_code", "discount_amount", "expected_amount", "updated_at"])
                if locked.mark_as_paid(amount) != Registration.PaymentStatus.PAID:
                    return TransitionResult(registration=locked, changed=True)

            _mark_confirmed(locked, now=now)
        return TransitionResult(registration=locked, changed=True, confirmed_now=True)

    @staticmethod
    def handle_payment_failed(registration: Registration, *, reason: str = "", now=None) -> TransitionResult:
        """The payment was declined; the attendee may retry from a new draft."""
        now = now or timezone.now()
        with transaction.atomic():
            locked = Registration.all_objects.select_for_update().get(pk=registration.pk)
            if locked.registration_status not in _AWAITING_PAYMENT_STATUSES:
                return TransitionResult(registration=locked)
            locked.registration_status = Registration.Status.PAYMENT_FAILED
            locked.payment_status = Registration.PaymentStatus.FAILED
            locked.save(update_fields=["registration_status", "payment_status", "updated_at"])
            ReservationService.release_for_registration(locked, now=now)
        logger.info("Payment failed for registration %s: %s", locked.pk, reason or "no reason given")
        return TransitionResult(registration=locked, changed=True)

    @staticmethod
    def handle_partial_funds(registration: Registration, *, amount: Decimal) -> TransitionResult:
        """Only part of the amount was captured; record it without confirming.

        A zero amount carries no money and leaves the registration as it is,
        so an earlier ``failed`` payment status is not overwritten.
        """
        with transaction.atomic():
            locked = Registration.all_objects.select_for_update().get(pk=registration.pk)
            if locked.is_confirmed or amount <= 0:
                return TransitionResult(registration=locked)
            if locked.deleted_at is None:
                _start_processing(locked)
            locked.mark_as_paid(amount)
        logger.info("Registration %s partially funded: %s of %s", locked.pk, amount, locked.expected_amount)
        return TransitionResult(registration=locked, changed=True)

    @staticmethod
    def dispatch_confirmation(result: CompletionResult | TransitionResult) -> None:
        """Fire confirmation side effects for a registration confirmed just now.

        Sends ``registration_completed`` and syncs the attendee to the CRM.
        Receiver and CRM failures are logged and never raised.
        """
        if not result.confirmed_now:
            return
        registration = result.registration
        for receiver, response in registration_completed.send_robust(sender=Registration, registration=registration):
            if isinstance(response, Exception):
                logger.error(
                    "registration_completed receiver %r failed for registration %s: %s",
                    receiver,
                    registration.pk,
                    response,
                )
        hubspot.sync_contact(registration, Registration.Status.CONFIRMED)

    @staticmethod
    def cancel(registration: Registration, *, now=None) -> bool:
        """Cancel a registration on the attendee's request.

        Any open coupon hold is released. A confirmed registration cancelled
        before ``event_date - cancellation_deadline_hours`` gives its coupon use
        back; a later cancellation is recorded as a no-show and keeps it. The
        registration is soft-deleted either way.

        Returns:
            ``True`` if a coupon use was given back.
        """
        now = now or timezone.now()
        with transaction.atomic():
            locked = Registration.all_objects.select_for_update().select_related("event").get(pk=registration.pk)
            if locked.deleted_at is not None:
                return False
            ReservationService.release_for_registration(locked, now=now)

            deadline = locked.event.event_date - timedelta(hours=get_config().cancellation_deadline_hours)
            returned = False
            if locked.is_confirmed and now >= deadline:
                locked.attendance_status = Registration.Attendance.NO_SHOW
            else:
                locked.attendance_status = Registration.Attendance.CANCELLED
                if locked.is_confirmed:
                    returned = _return_coupon_use(locked)
            if locked.paid_amount <= 0:
                locked.payment_status = Registration.PaymentStatus.CANCELLED
            locked.cancelled_at = now
            locked.deleted_at = now
            locked.save(
                update_fields=[
                    "attendance_status",
                    "payment_status",
                    "cancelled_at",
                    "deleted_at",
                    "updated_at",
                ],
            )
        logger.info("Cancelled registration %s (%s)", locked.pk, locked.attendance_status)
        _sync_instance(registration, locked)
        return returned

    @staticmethod
    def refund(registration: Registration) -> bool:
        """Record a refund and give back the coupon use it consumed.

        The received amount moves from ``paid_amount`` to ``refunded_amount``,
        so no refunded registration still reads as paid.

        Returns:
            ``True`` if a coupon use was given back.
        """
        with transaction.atomic():
            locked = Registration.all_objects.select_for_update().get(pk=registration.pk)
            if locked.payment_status == Registration.PaymentStatus.REFUNDED:
                return False
            returned = False
            if locked.is_confirmed and locked.attendance_status != Registration.Attendance.CANCELLED:
                returned = _return_coupon_use(locked)
                locked.attendance_status = Registration.Attendance.CANCELLED
            locked.refunded_amount = locked.paid_amount
            locked.paid_amount = Decimal("0.00")
            locked.payment_status = Registration.PaymentStatus.REFUNDED
            locked.save(
                update_fields=["paid_amount", "refunded_amount", "payment_status", "attendance_status", "updated_at"],
            )
        logger.info("Refunded registration %s", locked.pk)
        _sync_instance(registration, locked)
        return returned


def _prepare_for_retry(registration: Registration, *, now) -> None:
    """Reset an existing registration so checkout can start over, or refuse."""
    if registration.is_confirmed:
        raise DuplicateRegistration
    if registration.registration_status == Registration.Status.PAYMENT_PROCESSING:
        raise PaymentInProgress
    ReservationService.release_for_registration(registration, now=now)
    registration.registration_status = Registration.Status.DRAFT
    registration.payment_status = Registration.PaymentStatus.PENDING
    registration.paid_amount = Decimal("0.00")
    registration.stripe_session_id = ""
    registration.stripe_payment_intent_id = ""


def _start_processing(registration: Registration, *, payment_intent_id: str = "") -> None:
    """Move a live, unconfirmed registration to ``payment_processing``."""
    registration.registration_status = Registration.Status.PAYMENT_PROCESSING
    if payment_intent_id:
        registration.stripe_payment_intent_id = payment_intent_id
    registration.save(update_fields=["registration_status", "stripe_payment_intent_id", "updated_at"])


def _apply_pricing(registration: Registration, pricing: PricingQuote) -> None:
    registration.ticket_price = pricing.original_price
    registration.discount_amount = pricing.discount_amount
    registration.expected_amount = pricing.final_price
    registration.coupon_code = pricing.coupon_code


def _confirm_coupon_use(registration: Registration, *, now) -> None:
    """Turn the registration's coupon hold into a durable use, if it has a coupon."""
    if not registration.coupon_code:
        return
    with transaction.atomic():
        reservation = ReservationService.confirmable_reservation(registration)
        if reservation is None:
            coupon = Coupon.all_objects.by_code(registration.coupon_code).first()
            if coupon is None:
                raise CouponUsageLimitReached
            reservation = ReservationService.create_reservation(coupon, registration, registration.event, now=now)
        ReservationService.confirm(reservation, now=now)


def _mark_confirmed(registration: Registration, *, now) -> None:
    registration.registration_status = Registration.Status.CONFIRMED
    registration.confirmed_at = now
    registration.save(update_fields=["registration_status", "confirmed_at", "updated_at"])
    logger.info("Confirmed registration %s for '%s'", registration.pk, registration.event.slug)


def _complete_free(registration: Registration, *, now) -> CompletionResult:
    try:
        with transaction.atomic():
            locked = Registration.objects.select_for_update().select_related("event").get(pk=registration.pk)
            if locked.is_confirmed:
                return CompletionResult(registration=locked)
            _confirm_coupon_use(locked, now=now)
            locked.mark_as_paid(Decimal("0.00"))
            _mark_confirmed(locked, now=now)
    except CouponUsageLimitReached:
        ReservationService.release_for_registration(registration, now=now)
        logger.warning(
            "Coupon %s ran out before free registration %s was confirmed; left as draft",
            registration.coupon_code,
            registration.pk,
        )
        raise
    return CompletionResult(registration=locked, confirmed_now=True)


def _complete_paid(
    registration: Registration,
    *,
    success_url: str,
    cancel_url: str,
    gateway: PaymentGateway | None,
) -> CompletionResult:
    event = registration.event
    try:
        gateway = gateway or StripeCheckoutClient(event)
    except ValueError as exc:
        raise PaymentGatewayError(str(exc)) from exc

    session = gateway.create_session(
        registration.expected_amount,
        event.currency,
        success_url,
        cancel_url,
        {
            "registration_id": str(registration.pk),
            "event_slug": event.slug,
            "coupon_code": registration.coupon_code,
        },
        customer_email=registration.email,
        description=f"{event.name} registration",
    )

    with transaction.atomic():
        locked = Registration.objects.select_for_update().get(pk=registration.pk)
        if locked.registration_status not in _COMPLETABLE_STATUSES:
            raise InvalidTransition
        locked.registration_status = Registration.Status.PENDING_PAYMENT
        locked.stripe_session_id = session.session_id
        locked.save(update_fields=["registration_status", "stripe_session_id", "updated_at"])
    logger.info("Registration %s awaiting payment (session %s)", locked.pk, session.session_id)
    return CompletionResult(registration=locked, checkout_url=session.url, session_id=session.session_id)


def _return_coupon_use(registration: Registration) -> bool:
    if not registration.coupon_code:
        return False
    coupon = Coupon.all_objects.by_code(registration.coupon_code).first()
    if coupon is None:
        return False
    return coupon.decrement_usage()


def _sync_instance(target: Registration, source: Registration) -> None:
    for field in (
        "attendance_status",
        "payment_status",
        "paid_amount",
        "refunded_amount",
        "cancelled_at",
        "deleted_at",
        "updated_at",
    ):
        setattr(target, field, getattr(source, field))
