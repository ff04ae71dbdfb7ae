"""JSON checkout endpoints for the registration app.

Scoped to an event via the ``event_slug`` URL kwarg. Every response is JSON
with a ``success`` flag; failures add a machine-readable ``reason`` and a
``message`` the checkout UI can show as is.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from django_ticketing.events.models import Event
from django_ticketing.registration.exceptions import (
    CheckoutError,
    CouponValidationError,
    PaymentGatewayError,
    RegistrationsClosed,
)
from django_ticketing.registration.forms import CompleteForm, CouponValidateForm, InitiateForm
from django_ticketing.registration.models import Registration
from django_ticketing.registration.services.checkout import CheckoutService
from django_ticketing.registration.services.coupons import CouponService

if TYPE_CHECKING:
    from django import forms
    from django.http import HttpRequest, HttpResponse

logger = logging.getLogger(__name__)


class InvalidRequestBody(ValueError):
    """The request body is not a JSON object."""


def _request_data(request: HttpRequest) -> dict[str, object]:
    """Return the submitted fields from a JSON or form-encoded body."""
    if request.content_type == "application/json":
        try:
            data = json.loads(request.body or b"{}")
        except ValueError as exc:
            raise InvalidRequestBody from exc
        if not isinstance(data, dict):
            raise InvalidRequestBody
        return data
    return request.POST.dict()


def _error_response(exc: CheckoutError, **extra: object) -> JsonResponse:
    return JsonResponse(
        {"success": False, "reason": exc.reason, "message": exc.message, **extra},
        status=exc.status_code,
    )


def _form_error_response(form: forms.Form) -> JsonResponse:
    return JsonResponse(
        {
            "success": False,
            "reason": "invalid_request",
            "message": "Please correct the highlighted fields.",
            "errors": form.errors.get_json_data(),
        },
        status=422,
    )


class EventMixin:
    """Resolve the event from the ``event_slug`` URL kwarg into ``self.event``.

    Returns a 404 if no event matches the slug, and a 403 with the
    ``registrations_closed`` reason if the event has been deactivated.
    """

    event: Event
    kwargs: dict[str, str]

    def dispatch(self, request: HttpRequest, *args: str, **kwargs: str) -> HttpResponse:
        self.event = get_object_or_404(Event, slug=kwargs["event_slug"])
        if not self.event.is_active:
            return _error_response(RegistrationsClosed())
        return super().dispatch(request, *args, **kwargs)  # type: ignore[misc]


@method_decorator(csrf_exempt, name="dispatch")
class JsonFormView(EventMixin, View):
    """POST-only view that validates a JSON body with ``form_class``.

    The endpoints are called cross-origin by the public registration front
    end, which holds no Django session, so they are exempt from CSRF checks.
    Completion is guarded by the registration id and email pair instead.
    """

    http_method_names = ["post"]
    form_class: type[forms.Form]

    def post(self, request: HttpRequest, **kwargs: str) -> HttpResponse:  # noqa: ARG002
        try:
            data = _request_data(request)
        except InvalidRequestBody:
            return JsonResponse(
                {"success": False, "reason": "invalid_json", "message": "The request body must be a JSON object."},
                status=400,
            )
        form = self.form_class(data)
        if not form.is_valid():
            return _form_error_response(form)
        return self.form_valid(form)

    def form_valid(self, form: forms.Form) -> HttpResponse:
        raise NotImplementedError


class ValidateCouponView(JsonFormView):
    """Preview the price with a coupon applied. Changes nothing."""

    form_class = CouponValidateForm

    def form_valid(self, form: forms.Form) -> HttpResponse:
        code = form.cleaned_data["coupon_code"]
        try:
            pricing = CheckoutService.validate_coupon(self.event, code)
        except CouponValidationError as exc:
            return _error_response(exc, valid=False, pricing=CouponService.full_price(self.event, exc).as_dict())
        return JsonResponse({"success": True, "valid": True, "pricing": pricing.as_dict()})


class InitiateCheckoutView(JsonFormView):
    """Create or update the attendee's draft registration."""

    form_class = InitiateForm

    def form_valid(self, form: forms.Form) -> HttpResponse:
        try:
            result = CheckoutService.initiate(self.event, **form.cleaned_data)
        except CheckoutError as exc:
            return _error_response(exc)

        coupon_error = None
        if result.coupon_error is not None:
            coupon_error = {"reason": result.coupon_error.reason, "message": result.coupon_error.message}
        registration = result.registration
        return JsonResponse(
            {
                "success": True,
                "registration_id": registration.pk,
                "status": registration.registration_status,
                "pricing": result.pricing.as_dict(),
                "coupon_error": coupon_error,
                "reservation_expires_at": result.reservation.expires_at.isoformat() if result.reservation else None,
            },
        )


class CompleteCheckoutView(JsonFormView):
    """Confirm a free registration or start the hosted payment."""

    form_class = CompleteForm

    def form_valid(self, form: forms.Form) -> HttpResponse:
        registration = get_object_or_404(
            Registration,
            pk=form.cleaned_data["registration_id"],
            event=self.event,
            email=form.cleaned_data["email"],
        )
        fallback_url = self.request.build_absolute_uri("/")
        try:
            result = CheckoutService.complete(
                registration,
                success_url=form.cleaned_data["success_url"] or fallback_url,
                cancel_url=form.cleaned_data["cancel_url"] or fallback_url,
            )
        except CheckoutError as exc:
            return _error_response(exc)
        except PaymentGatewayError:
            logger.exception("Could not start payment for registration %s", registration.pk)
            return JsonResponse(
                {
                    "success": False,
                    "reason": "payment_gateway_error",
                    "message": "We could not reach the payment provider. Please try again shortly.",
                },
                status=500,
            )

        CheckoutService.dispatch_confirmation(result)
        return JsonResponse(
            {
                "success": True,
                "registration_id": result.registration.pk,
                "status": result.registration.registration_status,
                "confirmed": result.registration.is_confirmed,
                "checkout_url": result.checkout_url or None,
                "session_id": result.session_id or None,
            },
        )
