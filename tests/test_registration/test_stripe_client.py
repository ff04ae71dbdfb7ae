"""Tests for the StripeCheckoutClient wrapper in django_ticketing.registration.stripe_client."""

from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import stripe

from django_ticketing.registration.exceptions import PaymentGatewayError
from django_ticketing.registration.stripe_client import CheckoutSession, StripeCheckoutClient

# -- Fixtures -----------------------------------------------------------------


@pytest.fixture
def mock_stripe_client_cls():
    with patch("django_ticketing.registration.stripe_client.stripe.StripeClient") as mock_cls:
        mock_instance = MagicMock()
        mock_cls.return_value = mock_instance
        yield mock_cls, mock_instance.v1


def _create(client, amount=Decimal("80.00"), currency="USD", **kwargs):
    return client.create_session(
        amount,
        currency,
        "https://example.com/ok",
        "https://example.com/cancel",
        {"registration_id": "7", "event_slug": "summit", "coupon_code": ""},
        **kwargs,
    )


# =============================================================================
# TestInit
# =============================================================================


@pytest.mark.django_db
class TestInit:
    def test_init_raises_on_missing_stripe_key(self, event):
        event.stripe_secret_key = None
        with pytest.raises(ValueError, match="does not have a Stripe secret key"):
            StripeCheckoutClient(event)

    def test_init_uses_event_key_and_configured_api_version(self, event, mock_stripe_client_cls):
        mock_cls, _ = mock_stripe_client_cls
        StripeCheckoutClient(event)
        mock_cls.assert_called_once_with("sk_test_abc123", stripe_version="2024-12-18")


# =============================================================================
# TestCreateSession
# =============================================================================


@pytest.mark.django_db
class TestCreateSession:
    def test_params_sent_to_stripe(self, event, mock_stripe_client_cls):
        _, v1 = mock_stripe_client_cls
        v1.checkout.sessions.create.return_value = MagicMock(id="cs_test_1", url="https://checkout.stripe.com/c/1")

        session = _create(StripeCheckoutClient(event), customer_email="ada@example.com", description="Summit ticket")

        assert session == CheckoutSession(session_id="cs_test_1", url="https://checkout.stripe.com/c/1")
        params = v1.checkout.sessions.create.call_args.kwargs["params"]
        assert params["mode"] == "payment"
        line_item = params["line_items"][0]
        assert line_item["quantity"] == 1
        assert line_item["price_data"]["currency"] == "usd"
        assert line_item["price_data"]["unit_amount"] == 8000
        assert line_item["price_data"]["product_data"] == {"name": "Summit ticket"}
        assert params["metadata"]["registration_id"] == "7"
        assert params["payment_intent_data"] == {"metadata": params["metadata"]}
        assert params["customer_email"] == "ada@example.com"

    def test_zero_decimal_currency(self, event, mock_stripe_client_cls):
        _, v1 = mock_stripe_client_cls
        v1.checkout.sessions.create.return_value = MagicMock(id="cs_test_1", url="https://checkout.stripe.com/c/1")

        _create(StripeCheckoutClient(event), amount=Decimal("5000"), currency="JPY")

        params = v1.checkout.sessions.create.call_args.kwargs["params"]
        assert params["line_items"][0]["price_data"]["unit_amount"] == 5000
        assert "customer_email" not in params

    def test_stripe_error_becomes_gateway_error(self, event, mock_stripe_client_cls):
        _, v1 = mock_stripe_client_cls
        v1.checkout.sessions.create.side_effect = stripe.StripeError("card network down")

        with pytest.raises(PaymentGatewayError, match="card network down"):
            _create(StripeCheckoutClient(event))

    def test_missing_url_is_an_error(self, event, mock_stripe_client_cls):
        _, v1 = mock_stripe_client_cls
        v1.checkout.sessions.create.return_value = MagicMock(id="cs_test_1", url=None)

        with pytest.raises(PaymentGatewayError, match="no checkout URL"):
            _create(StripeCheckoutClient(event))


# =============================================================================
# TestConstructEvent
# =============================================================================


@pytest.mark.django_db
class TestConstructEvent:
    def test_missing_webhook_secret(self, event):
        event.stripe_webhook_secret = None
        with pytest.raises(ValueError, match="webhook secret"):
            StripeCheckoutClient.construct_event(event, b"{}", "t=1,v1=abc")

    def test_delegates_to_stripe_with_tolerance(self, event):
        with patch("django_ticketing.registration.stripe_client.stripe.Webhook.construct_event") as mock_construct:
            StripeCheckoutClient.construct_event(event, b"{}", "t=1,v1=abc")

        mock_construct.assert_called_once_with(b"{}", "t=1,v1=abc", "whsec_test_secret", tolerance=300)
