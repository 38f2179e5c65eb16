"""Credit purchases through Stripe Checkout."""

import logging
from dataclasses import dataclass
from typing import Any

import stripe

from src.config import get_settings
from src.errors import AccountNotFoundError, ServiceUnavailable, ValidationFailed
from src.services.credit_ledger import CreditLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditPackage:
    """A purchasable bundle of credits. ``price`` is in cents (USD)."""

    id: str
    credits: int
    price: int
    label: str
    badge: str | None = None

    @property
    def price_display(self) -> str:
        return f"${self.price / 100:.2f}"


CREDIT_PACKAGES = (
    CreditPackage(id="credits_10", credits=10, price=199, label="10 Credits"),
    CreditPackage(id="credits_30", credits=30, price=499, label="30 Credits", badge="Save 17%"),
    CreditPackage(id="credits_100", credits=100, price=999, label="100 Credits", badge="Best Value"),
)


def get_package(package_id: str) -> CreditPackage | None:
    """Look up a credit package by id."""
    return next((package for package in CREDIT_PACKAGES if package.id == package_id), None)


def create_checkout_session(user_id: int, package_id: str, origin: str) -> str:
    """Start a Stripe Checkout payment for a credit package.

    Returns:
        The hosted checkout URL.
    """
    settings = get_settings()
    package = get_package(package_id)
    if package is None:
        raise ValidationFailed("Invalid package")
    if not settings.stripe_secret_key:
        raise ServiceUnavailable("Payments are not configured")

    try:
        session = stripe.checkout.Session.create(
            api_key=settings.stripe_secret_key,
            mode="payment",
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": "usd",
                        "product_data": {
                            "name": package.label,
                            "description": f"{package.credits} credits for receipt scanning",
                        },
                        "unit_amount": package.price,
                    },
                    "quantity": 1,
                }
            ],
            metadata={
                "user_id": str(user_id),
                "credits": str(package.credits),
                "package_id": package.id,
            },
            success_url=f"{origin}/credits/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{origin}/credits",
        )
    except stripe.StripeError as e:
        logger.error(f"Failed to create checkout session: {e}")
        raise ServiceUnavailable("Failed to create checkout session") from e

    logger.info(f"Created checkout session {session.id} for user {user_id} ({package.id})")
    return session.url


def handle_checkout_completed(ledger: CreditLedger, session: dict[str, Any]) -> bool:
    """Credit the buyer of a completed checkout session.

    Stripe may deliver the same event more than once; a payment already
    recorded in the ledger is not credited again.

    Returns:
        True if credits were added.

    Raises:
        ValidationFailed: the session carries no usable metadata
    """
    metadata = session.get("metadata") or {}
    try:
        user_id = int(metadata.get("user_id", ""))
        credits = int(metadata.get("credits", "0"))
    except ValueError:
        user_id, credits = 0, 0
    if not user_id or credits <= 0:
        logger.error(f"Missing metadata in checkout session {session.get('id')}")
        raise ValidationFailed("Missing metadata")

    payment_intent = session.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get("id")
    external_ref = payment_intent or session.get("id")

    try:
        transaction = ledger.purchase(
            user_id, credits, external_ref, description=f"Purchased {credits} credits"
        )
    except AccountNotFoundError as e:
        logger.error(f"Checkout session {session.get('id')} references unknown user {user_id}")
        raise ValidationFailed("Unknown user") from e
    return transaction is not None
