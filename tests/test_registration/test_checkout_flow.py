"""Tests for CheckoutService initiation, completion and cancellation."""

from datetime import timedelta
from decimal import Decimal

import pytest
from django.test import override_settings
from django.utils import timezone

from django_ticketing.registration.exceptions import (
    CouponUsageLimitReached,
    DuplicateRegistration,
    EventSoldOut,
    InvalidTransition,
    PaymentGatewayError,
    PaymentInProgress,
    RegistrationsClosed,
)
from django_ticketing.registration.models import Coupon, CouponReservation, Registration
from django_ticketing.registration.services.checkout import CheckoutService, CompletionResult
from django_ticketing.registration.signals import registration_completed

# -- Fixtures ----------------------------------------------------------------


@pytest.fixture
def free_coupon(make_coupon):
    return make_coupon(code="COMP", discount_value=Decimal("100"), max_uses=1)


@pytest.fixture
def received():
    """Collect registration_completed deliveries."""
    calls = []

    def receiver(sender, registration, **kwargs):
        calls.append(registration)

    registration_completed.connect(receiver, weak=False)
    yield calls
    registration_completed.disconnect(receiver)


def _initiate(event, email="ada@example.com", **kwargs):
    return CheckoutService.initiate(event, email=email, name="Ada", surname="Lovelace", **kwargs)


# =============================================================================
# TestInitiate
# =============================================================================


@pytest.mark.django_db
class TestInitiate:
    def test_creates_a_draft_at_full_price(self, event):
        result = _initiate(event, email="  Ada@Example.com ")

        registration = result.registration
        assert registration.email == "ada@example.com"
        assert registration.registration_status == Registration.Status.DRAFT
        assert registration.expected_amount == Decimal("100.00")
        assert result.reservation is None
        assert result.coupon_error is None

    def test_coupon_is_applied_and_held(self, event, make_coupon):
        make_coupon(code="SAVE20")
        result = _initiate(event, coupon_code="save20")

        registration = result.registration
        assert registration.coupon_code == "SAVE20"
        assert registration.discount_amount == Decimal("20.00")
        assert registration.expected_amount == Decimal("80.00")
        assert result.reservation.status == CouponReservation.Status.RESERVED
        assert registration.open_reservation() == result.reservation

    def test_unusable_coupon_falls_back_to_full_price(self, event):
        result = _initiate(event, coupon_code="NOPE")

        assert result.coupon_error.reason == "invalid_code"
        assert result.pricing.final_price == Decimal("100.00")
        assert result.registration.coupon_code == ""
        assert result.reservation is None

    def test_closed_event(self, event):
        event.is_active = False
        event.save()
        with pytest.raises(RegistrationsClosed):
            _initiate(event)

    @override_settings(DJANGO_TICKETING={"features": {"registration_enabled": False}})
    def test_global_toggle_closes_registration(self, event):
        with pytest.raises(RegistrationsClosed):
            _initiate(event)

    def test_sold_out(self, event, make_registration):
        event.max_attendees = 1
        event.save()
        make_registration(email="taken@example.com", registration_status=Registration.Status.CONFIRMED)
        with pytest.raises(EventSoldOut):
            _initiate(event)

    def test_confirmed_email_is_a_duplicate(self, event, make_registration):
        make_registration(registration_status=Registration.Status.CONFIRMED)
        with pytest.raises(DuplicateRegistration) as excinfo:
            _initiate(event)
        assert excinfo.value.status_code == 409

    def test_payment_in_progress(self, event, make_registration):
        make_registration(registration_status=Registration.Status.PAYMENT_PROCESSING)
        with pytest.raises(PaymentInProgress):
            _initiate(event)

    @pytest.mark.parametrize(
        "status",
        [Registration.Status.PENDING_PAYMENT, Registration.Status.ABANDONED, Registration.Status.PAYMENT_FAILED],
    )
    def test_retryable_registration_is_reused(self, event, make_registration, status):
        existing = make_registration(
            registration_status=status,
            payment_status=Registration.PaymentStatus.FAILED,
            stripe_session_id="cs_old",
        )
        result = _initiate(event)

        registration = result.registration
        assert registration.pk == existing.pk
        assert registration.registration_status == Registration.Status.DRAFT
        assert registration.payment_status == Registration.PaymentStatus.PENDING
        assert registration.stripe_session_id == ""
        assert Registration.objects.filter(event=event).count() == 1

    def test_retry_releases_the_previous_hold(self, event, make_coupon):
        make_coupon(code="SAVE20")
        first = _initiate(event, coupon_code="SAVE20")

        second = _initiate(event)

        first.reservation.refresh_from_db()
        assert first.reservation.status == CouponReservation.Status.RELEASED
        assert second.registration.coupon_code == ""
        assert second.registration.expected_amount == Decimal("100.00")

    def test_coupon_held_by_others_is_refused(self, event, make_coupon):
        make_coupon(code="ONCE", max_uses_per_event=1)
        _initiate(event, email="first@example.com", coupon_code="ONCE")

        result = _initiate(event, email="second@example.com", coupon_code="ONCE")

        assert result.coupon_error.reason == "usage_limit_reached"
        assert result.registration.expected_amount == Decimal("100.00")


# =============================================================================
# TestCompleteFree
# =============================================================================


@pytest.mark.django_db
class TestCompleteFree:
    def test_free_registration_is_confirmed_immediately(self, event, free_coupon):
        registration = _initiate(event, coupon_code="COMP").registration

        result = CheckoutService.complete(registration)

        assert result.confirmed_now is True
        assert result.checkout_url == ""
        assert result.registration.registration_status == Registration.Status.CONFIRMED
        assert result.registration.payment_status == Registration.PaymentStatus.PAID
        assert result.registration.confirmed_at is not None
        free_coupon.refresh_from_db()
        assert free_coupon.used_count == 1
        assert CouponReservation.objects.confirmed().filter(registration=registration).count() == 1

    def test_completing_twice_is_a_no_op(self, event, free_coupon):
        registration = _initiate(event, coupon_code="COMP").registration
        CheckoutService.complete(registration)

        again = CheckoutService.complete(registration)

        assert again.confirmed_now is False
        free_coupon.refresh_from_db()
        assert free_coupon.used_count == 1

    def test_last_use_goes_to_the_first_to_complete(self, event, free_coupon):
        first = _initiate(event, email="first@example.com", coupon_code="COMP").registration
        second = _initiate(event, email="second@example.com", coupon_code="COMP").registration

        CheckoutService.complete(first)
        with pytest.raises(CouponUsageLimitReached):
            CheckoutService.complete(second)

        second.refresh_from_db()
        assert second.registration_status == Registration.Status.DRAFT
        assert second.open_reservation() is None
        free_coupon.refresh_from_db()
        assert free_coupon.used_count == 1
        assert CouponReservation.objects.confirmed().filter(coupon=free_coupon).count() == 1

    def test_free_event_without_coupon(self, event):
        event.ticket_price = Decimal("0.00")
        event.save()
        registration = _initiate(event).registration

        result = CheckoutService.complete(registration)

        assert result.registration.is_confirmed

    def test_lapsed_hold_is_still_honoured(self, event, free_coupon):
        earlier = timezone.now() - timedelta(hours=2)
        registration = _initiate(event, coupon_code="COMP", now=earlier).registration

        result = CheckoutService.complete(registration)

        assert result.registration.is_confirmed
        free_coupon.refresh_from_db()
        assert free_coupon.used_count == 1


# =============================================================================
# TestCompletePaid
# =============================================================================


@pytest.mark.django_db
class TestCompletePaid:
    def test_paid_registration_starts_a_checkout_session(self, event, gateway, make_coupon):
        make_coupon(code="SAVE20")
        registration = _initiate(event, coupon_code="SAVE20").registration

        result = CheckoutService.complete(
            registration,
            success_url="https://example.com/ok",
            cancel_url="https://example.com/cancel",
            gateway=gateway,
        )

        assert result.confirmed_now is False
        assert result.checkout_url == "https://checkout.stripe.test/cs_test_123"
        assert result.session_id == "cs_test_123"
        assert result.registration.registration_status == Registration.Status.PENDING_PAYMENT
        assert result.registration.stripe_session_id == "cs_test_123"

        call = gateway.calls[0]
        assert call["amount"] == Decimal("80.00")
        assert call["currency"] == "USD"
        assert call["customer_email"] == "ada@example.com"
        assert call["metadata"] == {
            "registration_id": str(registration.pk),
            "event_slug": "summit",
            "coupon_code": "SAVE20",
        }

    def test_coupon_is_not_consumed_before_payment(self, event, gateway, make_coupon):
        coupon = make_coupon(code="SAVE20")
        registration = _initiate(event, coupon_code="SAVE20").registration

        CheckoutService.complete(registration, gateway=gateway)

        coupon.refresh_from_db()
        assert coupon.used_count == 0
        assert registration.open_reservation() is not None

    def test_pending_payment_can_open_a_new_session(self, event, gateway):
        registration = _initiate(event).registration
        CheckoutService.complete(registration, gateway=gateway)

        result = CheckoutService.complete(registration, gateway=gateway)

        assert len(gateway.calls) == 2
        assert result.registration.registration_status == Registration.Status.PENDING_PAYMENT

    def test_gateway_failure_leaves_the_draft(self, event, failing_gateway):
        registration = _initiate(event).registration

        with pytest.raises(PaymentGatewayError):
            CheckoutService.complete(registration, gateway=failing_gateway)

        registration.refresh_from_db()
        assert registration.registration_status == Registration.Status.DRAFT

    def test_event_without_stripe_key(self, event):
        event.stripe_secret_key = None
        event.save()
        registration = _initiate(event).registration

        with pytest.raises(PaymentGatewayError):
            CheckoutService.complete(registration)

    @pytest.mark.parametrize(
        "status",
        [Registration.Status.PAYMENT_PROCESSING, Registration.Status.ABANDONED, Registration.Status.PAYMENT_FAILED],
    )
    def test_other_states_cannot_complete(self, make_registration, gateway, status):
        registration = make_registration(registration_status=status)
        with pytest.raises(InvalidTransition):
            CheckoutService.complete(registration, gateway=gateway)
        assert gateway.calls == []


# =============================================================================
# TestDispatchConfirmation
# =============================================================================


@pytest.mark.django_db
class TestDispatchConfirmation:
    def test_signal_fires_for_fresh_confirmations(self, make_registration, received):
        registration = make_registration()
        CheckoutService.dispatch_confirmation(CompletionResult(registration=registration, confirmed_now=True))
        assert received == [registration]

    def test_signal_skipped_otherwise(self, make_registration, received):
        CheckoutService.dispatch_confirmation(CompletionResult(registration=make_registration()))
        assert received == []

    def test_failing_receiver_is_contained(self, make_registration, received):
        def broken(sender, **kwargs):
            msg = "mail server down"
            raise RuntimeError(msg)

        registration_completed.connect(broken, weak=False)
        try:
            registration = make_registration()
            CheckoutService.dispatch_confirmation(CompletionResult(registration=registration, confirmed_now=True))
        finally:
            registration_completed.disconnect(broken)
        assert received == [registration]


# =============================================================================
# TestCancelAndRefund
# =============================================================================


@pytest.mark.django_db
class TestCancelAndRefund:
    def _confirmed(self, event):
        registration = _initiate(event, coupon_code="COMP").registration
        return CheckoutService.complete(registration).registration

    def test_cancel_before_deadline_returns_the_coupon_use(self, event, free_coupon):
        registration = self._confirmed(event)

        assert CheckoutService.cancel(registration) is True

        free_coupon.refresh_from_db()
        assert free_coupon.used_count == 0
        assert registration.attendance_status == Registration.Attendance.CANCELLED
        assert registration.deleted_at is not None
        assert not Registration.objects.filter(pk=registration.pk).exists()

    def test_cancel_after_deadline_is_a_no_show(self, event, free_coupon):
        registration = self._confirmed(event)
        late = event.event_date - timedelta(hours=1)

        assert CheckoutService.cancel(registration, now=late) is False

        free_coupon.refresh_from_db()
        assert free_coupon.used_count == 1
        assert registration.attendance_status == Registration.Attendance.NO_SHOW
        assert Coupon.objects.get(pk=free_coupon.pk).uses_for_event(event) == 1

    def test_cancel_draft_releases_the_hold(self, event, make_coupon):
        make_coupon(code="SAVE20")
        result = _initiate(event, coupon_code="SAVE20")

        assert CheckoutService.cancel(result.registration) is False

        result.reservation.refresh_from_db()
        assert result.reservation.status == CouponReservation.Status.RELEASED
        assert result.registration.payment_status == Registration.PaymentStatus.CANCELLED

    def test_cancel_twice(self, event, free_coupon):
        registration = self._confirmed(event)
        CheckoutService.cancel(registration)
        assert CheckoutService.cancel(registration) is False
        free_coupon.refresh_from_db()
        assert free_coupon.used_count == 0

    def test_email_can_register_again_after_cancelling(self, event, free_coupon):
        registration = self._confirmed(event)
        CheckoutService.cancel(registration)

        result = _initiate(event)

        assert result.registration.pk != registration.pk

    def test_refund_returns_the_coupon_use_once(self, event, free_coupon):
        registration = self._confirmed(event)

        assert CheckoutService.refund(registration) is True
        assert CheckoutService.refund(registration) is False

        free_coupon.refresh_from_db()
        assert free_coupon.used_count == 0
        assert registration.payment_status == Registration.PaymentStatus.REFUNDED

    def test_refund_moves_the_paid_amount(self, make_registration):
        registration = make_registration(registration_status=Registration.Status.CONFIRMED)
        registration.mark_as_paid(Decimal("100.00"))

        CheckoutService.refund(registration)

        registration.refresh_from_db()
        assert registration.payment_status == Registration.PaymentStatus.REFUNDED
        assert registration.paid_amount == Decimal("0.00")
        assert registration.refunded_amount == Decimal("100.00")
