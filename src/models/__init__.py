"""SQLAlchemy models."""

from src.models.credit_transaction import CreditTransaction
from src.models.receipt import Receipt, ReceiptItem
from src.models.receipt_job import JobStep, ReceiptJob
from src.models.user import User

__all__ = [
    "User",
    "Receipt",
    "ReceiptItem",
    "CreditTransaction",
    "ReceiptJob",
    "JobStep",
]
