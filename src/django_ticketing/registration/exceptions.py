"""Exceptions raised by the coupon ledger and the checkout state machine.

User-correctable failures subclass Django's ``ValidationError`` so forms and
views can treat them uniformly. Each carries a machine-readable ``code`` (also
exposed as ``reason``) and the HTTP status the JSON endpoints answer with.
"""

from django.core.exceptions import ValidationError


class CheckoutError(ValidationError):
    """Base class for user-correctable checkout failures."""

    default_code = "checkout_error"
    default_message = "The registration could not be processed."
    status_code = 422

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        super().__init__(message or self.default_message, code=code or self.default_code)

    @property
    def reason(self) -> str:
        """Return the machine-readable failure reason."""
        return self.code

    def __str__(self) -> str:
        return self.message


class CouponValidationError(CheckoutError):
    """A coupon code failed validation."""

    default_code = "invalid_coupon"
    default_message = "This coupon code cannot be used."


class InvalidCouponCode(CouponValidationError):
    default_code = "invalid_code"
    default_message = "Invalid coupon code."


class CouponInactive(CouponValidationError):
    default_code = "inactive"
    default_message = "This coupon code is no longer active."


class CouponExpired(CouponValidationError):
    default_code = "expired"
    default_message = "This coupon code has expired."


class CouponNotYetValid(CouponValidationError):
    default_code = "not_yet_valid"
    default_message = "This coupon code is not yet valid."


class CouponWrongEventScope(CouponValidationError):
    default_code = "wrong_event_scope"
    default_message = "This coupon code is not valid for this event."


class CouponUsageLimitReached(CouponValidationError):
    default_code = "usage_limit_reached"
    default_message = "This coupon code has reached its usage limit."


class RegistrationsClosed(CheckoutError):
    default_code = "registrations_closed"
    default_message = "Registrations are closed for this event."
    status_code = 403


class EventSoldOut(CheckoutError):
    default_code = "sold_out"
    default_message = "This event is sold out."
    status_code = 403


class DuplicateRegistration(CheckoutError):
    default_code = "duplicate_registration"
    default_message = "This email address is already registered for this event."
    status_code = 409


class PaymentInProgress(CheckoutError):
    default_code = "payment_in_progress"
    default_message = "A payment for this registration is already being processed."
    status_code = 409


class InvalidTransition(CheckoutError):
    """The registration is not in a state that allows the requested step."""

    default_code = "invalid_transition"
    default_message = "This registration cannot be completed in its current state."
    status_code = 409


class ReservationError(CheckoutError):
    """A coupon reservation could not be created or confirmed.

    The ``code`` is one of ``active_reservation_exists``, ``not_reserved``
    or ``coupon_mismatch``.
    """

    default_code = "reservation_error"
    default_message = "The coupon reservation is not valid."
    status_code = 409


class PaymentGatewayError(RuntimeError):
    """The payment gateway could not create a checkout session."""


class CRMSyncError(RuntimeError):
    """A call to the CRM API failed."""
