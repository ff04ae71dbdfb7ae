"""URL configuration for the registration app.

Includes the JSON checkout endpoints and the Stripe webhook endpoint. Mount
these at the host project's root (or under any prefix)::

    urlpatterns = [
        path("registration/", include("django_ticketing.registration.urls")),
    ]
"""

from django.urls import path

from django_ticketing.registration.views import (
    CompleteCheckoutView,
    InitiateCheckoutView,
    ValidateCouponView,
)
from django_ticketing.registration.webhooks import payment_webhook

app_name = "registration"

urlpatterns = [
    path("<slug:event_slug>/checkout/validate/", ValidateCouponView.as_view(), name="checkout-validate"),
    path("<slug:event_slug>/checkout/initiate/", InitiateCheckoutView.as_view(), name="checkout-initiate"),
    path("<slug:event_slug>/checkout/complete/", CompleteCheckoutView.as_view(), name="checkout-complete"),
    path("webhooks/payment/<slug:event_slug>/", payment_webhook, name="payment-webhook"),
]
