"""Enums for model fields."""

from enum import Enum
from typing import assert_never


class ReceiptStatus(str, Enum):
    """Processing states for a receipt.

    ``pending`` and ``processing`` are in-flight; ``completed`` and ``failed``
    are terminal and only leave through an explicit re-run.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if no further transition is allowed without a re-run."""
        return self in (ReceiptStatus.COMPLETED, ReceiptStatus.FAILED)


def can_transition(current: ReceiptStatus, target: ReceiptStatus) -> bool:
    """Return whether a job may move a receipt from ``current`` to ``target``."""
    match current:
        case ReceiptStatus.PENDING:
            return target in (ReceiptStatus.PROCESSING, ReceiptStatus.FAILED)
        case ReceiptStatus.PROCESSING:
            return target in (ReceiptStatus.COMPLETED, ReceiptStatus.FAILED)
        case ReceiptStatus.COMPLETED | ReceiptStatus.FAILED:
            return False
        case _:
            assert_never(current)


class CreditTransactionType(str, Enum):
    """Kinds of ledger entries."""

    SIGNUP_BONUS = "signup_bonus"
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"


class JobStatus(str, Enum):
    """Lifecycle of one receipt job instance."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def enum_values(enum_cls: type[Enum]) -> list[str]:
    """Persist enum values (not member names) in string columns."""
    return [member.value for member in enum_cls]
