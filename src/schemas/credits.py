"""Credit schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from src.models.enums import CreditTransactionType


class CreditBalanceResponse(BaseModel):
    """Current credit balance."""

    credits: int


class CreditTransactionResponse(BaseModel):
    """Ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: int
    type: CreditTransactionType
    description: str | None
    receipt_id: str | None
    external_ref: str | None
    created_at: datetime


class CreditPackageResponse(BaseModel):
    """Purchasable credit package."""

    id: str
    credits: int
    price: int
    price_display: str
    label: str
    badge: str | None = None


class CheckoutRequest(BaseModel):
    """Checkout request for a credit package."""

    package_id: str


class CheckoutResponse(BaseModel):
    """Hosted checkout page to redirect the user to."""

    url: str
