"""Credit balance and purchase API endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from src.api.dependencies import get_credit_ledger, get_current_user
from src.config import get_settings
from src.models.user import User
from src.schemas.credits import (
    CheckoutRequest,
    CheckoutResponse,
    CreditBalanceResponse,
    CreditPackageResponse,
    CreditTransactionResponse,
)
from src.services.credit_ledger import CreditLedger
from src.services.payments import CREDIT_PACKAGES, create_checkout_session

router = APIRouter(prefix="/api/v1/credits", tags=["credits"])


@router.get("", response_model=CreditBalanceResponse)
def get_balance(
    current_user: Annotated[User, Depends(get_current_user)],
    ledger: Annotated[CreditLedger, Depends(get_credit_ledger)],
):
    """Get the current user's credit balance."""
    return CreditBalanceResponse(credits=ledger.get_balance(current_user.id))


@router.get("/transactions", response_model=list[CreditTransactionResponse])
def list_transactions(
    current_user: Annotated[User, Depends(get_current_user)],
    ledger: Annotated[CreditLedger, Depends(get_credit_ledger)],
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
):
    """Get the current user's credit history, newest first."""
    return ledger.transactions(current_user.id, limit=limit)


@router.get("/packages", response_model=list[CreditPackageResponse])
def list_packages():
    """Get the purchasable credit packages."""
    return [
        CreditPackageResponse(
            id=package.id,
            credits=package.credits,
            price=package.price,
            price_display=package.price_display,
            label=package.label,
            badge=package.badge,
        )
        for package in CREDIT_PACKAGES
    ]


@router.post("/checkout", response_model=CheckoutResponse)
def checkout(
    body: CheckoutRequest,
    request: Request,
    current_user: Annotated[User, Depends(get_current_user)],
):
    """Start a Stripe Checkout session for a credit package."""
    origin = request.headers.get("origin") or get_settings().app_base_url
    url = create_checkout_session(current_user.id, body.package_id, origin)
    return CheckoutResponse(url=url)
