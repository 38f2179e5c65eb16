"""Pydantic schemas for API requests and responses."""

from src.schemas.auth import AuthResponse, UserLogin, UserRegister, UserResponse
from src.schemas.credits import CreditBalanceResponse, CreditTransactionResponse
from src.schemas.receipt import (
    ExtractedItem,
    ExtractedReceipt,
    QueuedReceipt,
    QueueResponse,
    ReceiptItemInput,
    ReceiptResponse,
    ReceiptStatusInfo,
    ReceiptUpdate,
)

__all__ = [
    "UserRegister",
    "UserLogin",
    "UserResponse",
    "AuthResponse",
    "CreditBalanceResponse",
    "CreditTransactionResponse",
    "ExtractedItem",
    "ExtractedReceipt",
    "ReceiptItemInput",
    "ReceiptUpdate",
    "ReceiptResponse",
    "ReceiptStatusInfo",
    "QueuedReceipt",
    "QueueResponse",
]
