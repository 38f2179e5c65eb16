"""Credit transaction model (append-only ledger)."""

from sqlalchemy import Column, Enum, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import relationship

from src.database import Base
from src.models.enums import CreditTransactionType, enum_values
from src.models.mixins import CreatedAtMixin


class CreditTransaction(Base, CreatedAtMixin):
    """One signed change to a user's credit balance. Never updated or deleted."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        # A payment can be credited only once
        Index(
            "uq_credit_transactions_purchase_ref",
            "external_ref",
            unique=True,
            postgresql_where=text("type = 'purchase'"),
            sqlite_where=text("type = 'purchase'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    type = Column(
        Enum(
            CreditTransactionType,
            name="credit_transaction_type",
            native_enum=False,
            length=20,
            values_callable=enum_values,
        ),
        nullable=False,
    )
    description = Column(String(500), nullable=True)
    receipt_id = Column(
        String(36),
        ForeignKey("receipts.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    external_ref = Column(String(255), nullable=True, index=True)  # e.g. Stripe payment intent id

    # Relationships
    user = relationship("User", backref="credit_transactions")
