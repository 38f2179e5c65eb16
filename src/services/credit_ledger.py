"""Credit ledger: per-user balance with an append-only transaction log.

Balance changes are single conditional UPDATE statements, so concurrent
deductions for the same user can never overdraw the account.
"""

import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.errors import AccountNotFoundError, InsufficientCreditsError, LedgerError
from src.models.credit_transaction import CreditTransaction
from src.models.enums import CreditTransactionType
from src.models.user import User

logger = logging.getLogger(__name__)


class CreditLedger:
    """Reads and writes credit balances for one database session."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def _expire_cached_balance(self, user_id: int) -> None:
        user = self.db.identity_map.get(Session.identity_key(User, user_id))
        if user is not None:
            self.db.expire(user, ["credits"])

    def get_balance(self, user_id: int) -> int:
        """Get a user's balance; 0 if the user does not exist."""
        balance = self.db.query(User.credits).filter(User.id == user_id).scalar()
        return balance or 0

    def has_credits(self, user_id: int, amount: int = 1) -> bool:
        """Check whether a user can afford ``amount`` credits."""
        return self.get_balance(user_id) >= amount

    def deduct(
        self,
        user_id: int,
        amount: int,
        receipt_id: str | None = None,
        description: str | None = None,
        commit: bool = True,
    ) -> CreditTransaction:
        """Take ``amount`` credits and log a ``usage`` transaction.

        With ``commit=False`` the caller owns the transaction and can commit
        other writes alongside the deduction. If the usage record cannot be
        written the session is rolled back, which restores the balance along
        with any other uncommitted work in the session.

        Raises:
            InsufficientCreditsError: balance is below ``amount``
            AccountNotFoundError: no such user
            LedgerError: the usage record could not be written
        """
        if amount <= 0:
            raise ValueError("Deduction amount must be positive")

        result = self.db.execute(
            update(User)
            .where(User.id == user_id, User.credits >= amount)
            .values(credits=User.credits - amount)
            .execution_options(synchronize_session=False)
        )
        self._expire_cached_balance(user_id)
        if result.rowcount == 0:
            balance = self.db.query(User.credits).filter(User.id == user_id).scalar()
            if balance is None:
                raise AccountNotFoundError(f"User {user_id} not found")
            raise InsufficientCreditsError(
                required=amount, available=balance, message="Insufficient credits"
            )

        transaction = CreditTransaction(
            user_id=user_id,
            amount=-amount,
            type=CreditTransactionType.USAGE,
            description=description,
            receipt_id=receipt_id,
        )
        try:
            self.db.add(transaction)
            self.db.flush()
            if commit:
                self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to log deduction of {amount} for user {user_id}, balance restored: {e}")
            raise LedgerError(f"Failed to log credit transaction: {e}") from e

        logger.info(f"Deducted {amount} credit(s) from user {user_id} (receipt={receipt_id})")
        return transaction

    def add(
        self,
        user_id: int,
        amount: int,
        type: CreditTransactionType,
        external_ref: str | None = None,
        description: str | None = None,
        receipt_id: str | None = None,
    ) -> CreditTransaction | None:
        """Give ``amount`` credits and log a transaction of ``type``.

        The increment is committed before the log entry is written. A failed
        log write leaves the credits in place and is logged at ERROR level.

        Returns:
            The logged transaction, or None if logging failed.
        """
        if amount <= 0:
            raise ValueError("Credit amount must be positive")

        result = self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(credits=User.credits + amount)
            .execution_options(synchronize_session=False)
        )
        self._expire_cached_balance(user_id)
        if result.rowcount == 0:
            self.db.rollback()
            raise AccountNotFoundError(f"User {user_id} not found")
        self.db.commit()

        transaction = CreditTransaction(
            user_id=user_id,
            amount=amount,
            type=type,
            description=description,
            receipt_id=receipt_id,
            external_ref=external_ref,
        )
        try:
            self.db.add(transaction)
            self.db.flush()
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"Added {amount} credit(s) to user {user_id} ({type.value}) "
                f"but failed to log the transaction: {e}"
            )
            return None

        logger.info(f"Added {amount} credit(s) to user {user_id} ({type.value})")
        return transaction

    def purchase(
        self,
        user_id: int,
        amount: int,
        external_ref: str,
        description: str | None = None,
    ) -> CreditTransaction | None:
        """Credit a payment at most once per ``external_ref``.

        The increment and the ``purchase`` entry commit together; a second
        entry with the same reference violates the unique index and the
        whole purchase is rolled back.

        Returns:
            The logged transaction, or None if the payment was already credited.

        Raises:
            AccountNotFoundError: no such user
            LedgerError: the purchase could not be written
        """
        if amount <= 0:
            raise ValueError("Credit amount must be positive")

        result = self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(credits=User.credits + amount)
            .execution_options(synchronize_session=False)
        )
        self._expire_cached_balance(user_id)
        if result.rowcount == 0:
            self.db.rollback()
            raise AccountNotFoundError(f"User {user_id} not found")

        transaction = CreditTransaction(
            user_id=user_id,
            amount=amount,
            type=CreditTransactionType.PURCHASE,
            description=description,
            external_ref=external_ref,
        )
        try:
            self.db.add(transaction)
            self.db.flush()
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Payment {external_ref} already credited, ignoring")
            return None
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record payment {external_ref} for user {user_id}: {e}")
            raise LedgerError(f"Failed to record purchase: {e}") from e

        logger.info(f"Added {amount} purchased credit(s) to user {user_id} ({external_ref})")
        return transaction

    def transactions(self, user_id: int, limit: int = 50) -> list[CreditTransaction]:
        """Get a user's ledger entries, newest first."""
        return (
            self.db.query(CreditTransaction)
            .filter(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
            .all()
        )
