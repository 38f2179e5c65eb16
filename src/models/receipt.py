"""Receipt and line item models."""

import uuid

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    Date,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from src.database import Base
from src.models.enums import ReceiptStatus, enum_values
from src.models.mixins import TimestampMixin


def new_receipt_id() -> str:
    """Generate an opaque receipt identifier."""
    return str(uuid.uuid4())


class Receipt(Base, TimestampMixin):
    """One photographed transaction and its extraction state."""

    __tablename__ = "receipts"
    __table_args__ = (
        CheckConstraint("total >= 0", name="ck_receipts_total_non_negative"),
        CheckConstraint(
            "(status = 'failed') = (error_message IS NOT NULL)",
            name="ck_receipts_error_message_iff_failed",
        ),
    )

    id = Column(String(36), primary_key=True, default=new_receipt_id)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    status = Column(
        Enum(
            ReceiptStatus,
            name="receipt_status",
            native_enum=False,
            length=20,
            values_callable=enum_values,
        ),
        nullable=False,
        default=ReceiptStatus.PENDING,
        index=True,
    )
    store_name = Column(String(200), nullable=True)
    store_address = Column(String(500), nullable=True)
    date = Column(Date, nullable=True)  # purchase date
    currency = Column(String(3), nullable=False, default="PLN")
    subtotal = Column(Numeric(12, 2), nullable=True)
    tax = Column(Numeric(12, 2), nullable=True)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    image_path = Column(String(512), nullable=False)  # "<bucket>/<key>"
    receipt_bounding_box = Column(JSON, nullable=True)  # [ymin, xmin, ymax, xmax], 0-1000
    notes = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)

    # Relationships
    user = relationship("User", backref="receipts")
    items = relationship(
        "ReceiptItem",
        back_populates="receipt",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ReceiptItem.sort_order",
    )
    jobs = relationship(
        "ReceiptJob",
        back_populates="receipt",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Receipt(id={self.id}, user_id={self.user_id}, status={self.status})>"


class ReceiptItem(Base):
    """A line item owned by exactly one receipt."""

    __tablename__ = "receipt_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_receipt_items_quantity_positive"),
        CheckConstraint("total_price >= 0", name="ck_receipt_items_total_price_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    receipt_id = Column(
        String(36),
        ForeignKey("receipts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(200), nullable=False)  # as printed
    inferred_name = Column(String(200), nullable=True)
    product_type = Column(String(100), nullable=True)
    bounding_box = Column(JSON, nullable=True)
    quantity = Column(Numeric(12, 3), nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=True)
    total_price = Column(Numeric(12, 2), nullable=False)
    discount = Column(Numeric(12, 2), nullable=True)
    sort_order = Column(Integer, nullable=False)

    # Relationships
    receipt = relationship("Receipt", back_populates="items")
