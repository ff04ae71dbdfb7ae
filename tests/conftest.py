"""Shared fixtures for django-ticketing tests."""

from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from django_ticketing.events.models import Event
from django_ticketing.registration.exceptions import PaymentGatewayError
from django_ticketing.registration.models import Coupon, Registration
from django_ticketing.registration.stripe_client import CheckoutSession


@pytest.fixture
def event(db):
    return Event.objects.create(
        name="Summit",
        slug="summit",
        event_date=timezone.now() + timedelta(days=30),
        ticket_price=Decimal("100.00"),
        currency="USD",
        stripe_secret_key="sk_test_abc123",
        stripe_publishable_key="pk_test_xyz789",
        stripe_webhook_secret="whsec_test_secret",
    )


@pytest.fixture
def make_coupon(db):
    def _make(code="SAVE20", **kwargs):
        defaults = {
            "discount_type": Coupon.DiscountType.PERCENTAGE,
            "discount_value": Decimal("20.00"),
        }
        defaults.update(kwargs)
        return Coupon.objects.create(code=code, **defaults)

    return _make


@pytest.fixture
def make_registration(event):
    def _make(email="ada@example.com", **kwargs):
        defaults = {
            "event": event,
            "name": "Ada",
            "surname": "Lovelace",
            "ticket_price": event.ticket_price,
            "expected_amount": event.ticket_price,
        }
        defaults.update(kwargs)
        return Registration.objects.create(email=email, **defaults)

    return _make


class FakeGateway:
    """Payment gateway double that records create_session calls."""

    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def create_session(self, amount, currency, success_url, cancel_url, metadata, *, customer_email="", description=""):
        self.calls.append(
            {
                "amount": amount,
                "currency": currency,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata,
                "customer_email": customer_email,
                "description": description,
            },
        )
        if self.error is not None:
            raise self.error
        return CheckoutSession(session_id="cs_test_123", url="https://checkout.stripe.test/cs_test_123")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def failing_gateway():
    return FakeGateway(error=PaymentGatewayError("Stripe is unavailable"))
