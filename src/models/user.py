"""User model."""

from sqlalchemy import CheckConstraint, Column, Integer, String

from src.database import Base
from src.models.mixins import TimestampMixin


class User(Base, TimestampMixin):
    """User account: authentication, ownership and the credit balance.

    ``credits`` is only ever changed by ``CreditLedger`` and always equals the
    sum of the user's credit transactions.
    """

    __tablename__ = "users"
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),)

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    credits = Column(Integer, nullable=False, default=0, server_default="0")
    preferred_currency = Column(String(3), nullable=False, default="PLN", server_default="PLN")
