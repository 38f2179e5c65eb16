"""Tests for credit purchases and the Stripe webhook."""

from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe

from src.config import get_settings
from src.errors import ValidationFailed
from src.models.credit_transaction import CreditTransaction
from src.models.enums import CreditTransactionType
from src.services.credit_ledger import CreditLedger
from src.services.payments import create_checkout_session, get_package, handle_checkout_completed


def _checkout_event(user_id: int, credits: int = 30, payment_intent: str = "pi_123") -> dict:
    return {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_1",
                "payment_intent": payment_intent,
                "metadata": {
                    "user_id": str(user_id),
                    "credits": str(credits),
                    "package_id": "credits_30",
                },
            }
        },
    }


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(get_settings(), "stripe_webhook_secret", "whsec_test")
    return "whsec_test"


class TestStripeWebhook:
    """Tests for POST /api/v1/webhooks/stripe."""

    def test_checkout_completed_adds_credits(self, client, auth_headers, db, webhook_secret):
        """Test that a paid checkout credits the buyer once."""
        event = _checkout_event(auth_headers.user_id)

        with patch("src.api.webhooks.stripe.Webhook.construct_event", return_value=event) as construct:
            response = client.post(
                "/api/v1/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=abc"}
            )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        construct.assert_called_once_with(b"{}", "t=1,v1=abc", webhook_secret)
        assert CreditLedger(db).get_balance(auth_headers.user_id) == 35

        purchase = (
            db.query(CreditTransaction)
            .filter(CreditTransaction.type == CreditTransactionType.PURCHASE)
            .one()
        )
        assert purchase.amount == 30
        assert purchase.external_ref == "pi_123"
        assert purchase.description == "Purchased 30 credits"

    def test_duplicate_event_is_ignored(self, client, auth_headers, db, webhook_secret):
        """Test that redelivered events do not credit twice."""
        event = _checkout_event(auth_headers.user_id)

        with patch("src.api.webhooks.stripe.Webhook.construct_event", return_value=event):
            for _ in range(2):
                response = client.post(
                    "/api/v1/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "sig"}
                )
                assert response.status_code == 200

        assert CreditLedger(db).get_balance(auth_headers.user_id) == 35

    def test_other_events_are_acknowledged(self, client, auth_headers, db, webhook_secret):
        """Test that unrelated event types change nothing."""
        event = {"id": "evt_2", "type": "payment_intent.created", "data": {"object": {}}}

        with patch("src.api.webhooks.stripe.Webhook.construct_event", return_value=event):
            response = client.post(
                "/api/v1/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "sig"}
            )

        assert response.status_code == 200
        assert CreditLedger(db).get_balance(auth_headers.user_id) == 5

    def test_missing_signature(self, client, webhook_secret):
        """Test that unsigned requests are rejected."""
        response = client.post("/api/v1/webhooks/stripe", content=b"{}")

        assert response.status_code == 400
        assert response.json()["detail"] == "No signature"

    def test_invalid_signature(self, client, webhook_secret):
        """Test that a bad signature is rejected."""
        error = stripe.SignatureVerificationError("bad", "sig")

        with patch("src.api.webhooks.stripe.Webhook.construct_event", side_effect=error):
            response = client.post(
                "/api/v1/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "sig"}
            )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid signature"

    def test_unconfigured_secret(self, client, monkeypatch):
        """Test that webhooks fail loudly without a signing secret."""
        monkeypatch.setattr(get_settings(), "stripe_webhook_secret", None)

        response = client.post(
            "/api/v1/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "sig"}
        )

        assert response.status_code == 500


class TestHandleCheckoutCompleted:
    """Tests for handle_checkout_completed."""

    def test_missing_metadata(self, db):
        """Test that sessions without buyer metadata are rejected."""
        with pytest.raises(ValidationFailed):
            handle_checkout_completed(CreditLedger(db), {"id": "cs_1", "metadata": {}})

    def test_unknown_user(self, db):
        """Test that sessions for deleted accounts are rejected."""
        session = _checkout_event(424242)["data"]["object"]
        with pytest.raises(ValidationFailed):
            handle_checkout_completed(CreditLedger(db), session)

    def test_falls_back_to_session_id(self, db, make_user):
        """Test that the session id is the reference when there is no payment intent."""
        user = make_user(credits=0)
        session = _checkout_event(user.id, credits=10, payment_intent=None)["data"]["object"]

        assert handle_checkout_completed(CreditLedger(db), session) is True
        assert handle_checkout_completed(CreditLedger(db), session) is False
        assert CreditLedger(db).get_balance(user.id) == 10


class TestCheckout:
    """Tests for starting a checkout."""

    def test_packages(self):
        """Test package lookup."""
        assert get_package("credits_30").credits == 30
        assert get_package("credits_7") is None

    def test_invalid_package(self, client, auth_headers):
        """Test that unknown packages are rejected."""
        response = client.post(
            "/api/v1/credits/checkout", headers=auth_headers, json={"package_id": "credits_7"}
        )

        assert response.status_code == 400
        assert response.json() == {"error": "validation_error", "message": "Invalid package"}

    def test_payments_not_configured(self, client, auth_headers, monkeypatch):
        """Test that checkout is unavailable without a Stripe key."""
        monkeypatch.setattr(get_settings(), "stripe_secret_key", None)

        response = client.post(
            "/api/v1/credits/checkout", headers=auth_headers, json={"package_id": "credits_10"}
        )

        assert response.status_code == 503
        assert response.json()["error"] == "service_unavailable"

    def test_creates_checkout_session(self, monkeypatch):
        """Test that the session carries the buyer and package in its metadata."""
        monkeypatch.setattr(get_settings(), "stripe_secret_key", "sk_test")
        session = SimpleNamespace(id="cs_1", url="https://checkout.stripe.com/c/pay/cs_1")

        with patch("src.services.payments.stripe.checkout.Session.create", return_value=session) as create:
            url = create_checkout_session(7, "credits_100", "https://app.example.com")

        assert url == session.url
        kwargs = create.call_args.kwargs
        assert kwargs["api_key"] == "sk_test"
        assert kwargs["metadata"] == {"user_id": "7", "credits": "100", "package_id": "credits_100"}
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 999
        assert kwargs["cancel_url"] == "https://app.example.com/credits"
