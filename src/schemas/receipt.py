"""Receipt schemas."""

import datetime as dt
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from src.models.enums import ReceiptStatus

BOX_SCALE = 1000

Currency = Literal["PLN", "USD", "EUR"]


def _check_box(value: list[float]) -> list[float]:
    if any(coord < 0 or coord > BOX_SCALE for coord in value):
        raise ValueError(f"bounding box coordinates must be within 0-{BOX_SCALE}")
    return value


# [ymin, xmin, ymax, xmax] on a 0-1000 scale
BoundingBox = Annotated[
    list[float], Field(min_length=4, max_length=4), AfterValidator(_check_box)
]


def coerce_bounding_box(value: Any) -> list[float] | None:
    """Keep a model-provided box only if it is four in-range numbers."""
    if not isinstance(value, list | tuple) or len(value) != 4:
        return None
    try:
        coords = [float(v) for v in value]
    except (TypeError, ValueError):
        return None
    if any(c < 0 or c > BOX_SCALE for c in coords):
        return None
    return coords


# --- Extraction output ---


class ExtractedItem(BaseModel):
    """A line item as returned by the extraction service."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str = "Unknown item"
    inferred_name: str | None = None
    product_type: str | None = None
    bounding_box: list[float] | None = Field(default=None, alias="box_2d")
    quantity: Decimal = Decimal(1)
    unit_price: Decimal | None = None
    total_price: Decimal = Field(default=Decimal(0), ge=0)
    discount: Decimal | None = None

    @model_validator(mode="before")
    @classmethod
    def negative_price_as_discount(cls, data: Any) -> Any:
        """Discount lines such as "RABAT" come back with a negative price."""
        if not isinstance(data, dict):
            return data
        key = "total_price" if "total_price" in data else "totalPrice"
        try:
            price = Decimal(str(data.get(key)))
        except ArithmeticError:
            return data
        if not price.is_finite() or price >= 0:
            return data
        return {**data, key: Decimal(0), "discount": data.get("discount") or -price}

    @field_validator("name", mode="before")
    @classmethod
    def default_name(cls, value: Any) -> Any:
        return value or "Unknown item"

    @field_validator("bounding_box", mode="before")
    @classmethod
    def lenient_box(cls, value: Any) -> list[float] | None:
        return coerce_bounding_box(value)

    @field_validator("quantity", mode="before")
    @classmethod
    def default_quantity(cls, value: Any) -> Any:
        if value is None:
            return Decimal(1)
        try:
            return value if Decimal(str(value)) > 0 else Decimal(1)
        except ArithmeticError:
            return Decimal(1)

    @field_validator("total_price", mode="before")
    @classmethod
    def default_total_price(cls, value: Any) -> Any:
        return Decimal(0) if value is None else value


class ExtractedReceipt(BaseModel):
    """Structured receipt fields returned by the extraction service."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    store_name: str | None = None
    store_address: str | None = None
    date: dt.date | None = None
    currency: str = "PLN"
    receipt_bounding_box: list[float] | None = None
    items: list[ExtractedItem] = Field(default_factory=list)
    subtotal: Decimal | None = None
    tax: Decimal | None = None
    total: Decimal = Field(default=Decimal(0), ge=0)

    @field_validator("date", mode="before")
    @classmethod
    def lenient_date(cls, value: Any) -> Any:
        if value in (None, ""):
            return None
        if isinstance(value, str):
            try:
                return dt.date.fromisoformat(value[:10])
            except ValueError:
                return None
        return value

    @field_validator("currency", mode="before")
    @classmethod
    def default_currency(cls, value: Any) -> Any:
        return value.upper()[:3] if isinstance(value, str) and value else "PLN"

    @field_validator("receipt_bounding_box", mode="before")
    @classmethod
    def lenient_box(cls, value: Any) -> list[float] | None:
        return coerce_bounding_box(value)

    @field_validator("items", mode="before")
    @classmethod
    def default_items(cls, value: Any) -> Any:
        return value if isinstance(value, list) else []

    @field_validator("total", mode="before")
    @classmethod
    def default_total(cls, value: Any) -> Any:
        return Decimal(0) if value is None else value


# --- Manual edits ---


class ReceiptItemInput(BaseModel):
    """A line item supplied by a manual edit."""

    name: str = Field(..., min_length=1, max_length=200)
    inferred_name: str | None = Field(None, max_length=200)
    product_type: str | None = Field(None, max_length=100)
    bounding_box: BoundingBox | None = None
    quantity: Decimal = Field(Decimal(1), gt=0, le=10000)
    unit_price: Decimal | None = Field(None, ge=0, le=10_000_000)
    total_price: Decimal = Field(..., ge=0, le=10_000_000)
    discount: Decimal | None = Field(None, ge=0, le=10_000_000)


class ReceiptUpdate(BaseModel):
    """Manual edit of a receipt. ``items``, when present, replaces all items."""

    store_name: str | None = Field(None, min_length=1, max_length=200)
    store_address: str | None = Field(None, max_length=500)
    date: dt.date | None = None
    currency: Currency | None = None
    subtotal: Decimal | None = Field(None, ge=0, le=10_000_000)
    tax: Decimal | None = Field(None, ge=0, le=10_000_000)
    total: Decimal | None = Field(None, ge=0, le=10_000_000)
    receipt_bounding_box: BoundingBox | None = None
    notes: str | None = Field(None, max_length=2000)
    items: list[ReceiptItemInput] | None = Field(None, max_length=500)

    @field_validator("date")
    @classmethod
    def not_in_future(cls, value: dt.date | None) -> dt.date | None:
        if value is not None and value > dt.date.today():
            raise ValueError("Date cannot be in the future")
        return value


# --- Responses ---


class ReceiptItemResponse(BaseModel):
    """Receipt line item response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    inferred_name: str | None
    product_type: str | None
    bounding_box: list[float] | None
    quantity: float
    unit_price: float | None
    total_price: float
    discount: float | None
    sort_order: int


class ReceiptResponse(BaseModel):
    """Full receipt response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: int | None
    status: ReceiptStatus
    store_name: str | None
    store_address: str | None
    date: dt.date | None
    currency: str
    subtotal: float | None
    tax: float | None
    total: float
    image_path: str
    receipt_bounding_box: list[float] | None
    notes: str | None
    error_message: str | None
    created_at: dt.datetime
    updated_at: dt.datetime
    items: list[ReceiptItemResponse] = Field(default_factory=list)


class ReceiptListItem(BaseModel):
    """Receipt summary for list views."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    status: ReceiptStatus
    store_name: str | None
    date: dt.date | None
    currency: str
    total: float
    image_path: str
    error_message: str | None
    created_at: dt.datetime


class ReceiptListResponse(BaseModel):
    """Page of receipts."""

    receipts: list[ReceiptListItem]
    next_cursor: dt.datetime | None = None
    has_more: bool = False


class ReceiptStatusInfo(BaseModel):
    """Status snapshot shared by the poll and stream interfaces."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    status: ReceiptStatus
    error_message: str | None
    store_name: str | None
    total: float
    image_path: str


class ReceiptStatusQuery(BaseModel):
    """Poll request body."""

    ids: list[str] = Field(..., min_length=1, max_length=200)


class QueuedReceipt(BaseModel):
    """One receipt accepted by the submission gateway."""

    id: str
    image_path: str
    filename: str


class QueueResponse(BaseModel):
    """Submission gateway response."""

    queued: list[QueuedReceipt]
    message: str


class ReanalyzeResponse(BaseModel):
    """Re-run extraction response."""

    id: str
    status: ReceiptStatus
    job_id: str
    message: str


class PreviewResponse(BaseModel):
    """Data-URL preview of an uploaded image."""

    preview: str
