"""Receipt persistence and the receipt status state machine."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session, selectinload

from src.errors import InvalidReceiptState, InvalidStatusTransition, ReceiptNotFound
from src.models.enums import ReceiptStatus, can_transition
from src.models.receipt import Receipt, ReceiptItem
from src.schemas.receipt import ExtractedItem, ExtractedReceipt, ReceiptItemInput, ReceiptUpdate
from src.services.realtime import ReceiptEventType, ReceiptPublisher, publish_receipt_event

logger = logging.getLogger(__name__)

IN_FLIGHT_STATUSES = (ReceiptStatus.PENDING, ReceiptStatus.PROCESSING)
NON_NULLABLE_FIELDS = frozenset({"total", "currency"})


def _clip(value: str | None, length: int) -> str | None:
    return value[:length] if value else value


class ReceiptStore:
    """Reads and writes receipts for one database session.

    Every status write goes through this class. Change events are queued and
    only published once the session commits, so subscribers never observe a
    status that was rolled back.
    """

    def __init__(self, db: Session, publisher: ReceiptPublisher = publish_receipt_event) -> None:
        self.db = db
        self.publisher = publisher
        self._pending_events: list[tuple[str, ReceiptEventType, str | None, dict | None]] = []

    # --- Unit of work ---

    def commit(self) -> None:
        """Commit the session and publish queued change events."""
        self.db.commit()
        self.publish_pending()

    def rollback(self) -> None:
        """Roll back the session and drop queued change events."""
        self.db.rollback()
        self._pending_events.clear()

    def publish_pending(self) -> None:
        """Publish every queued change event."""
        events, self._pending_events = self._pending_events, []
        for receipt_id, event_type, status, data in events:
            self.publisher(receipt_id, event_type, status, data)

    def queue_event(
        self,
        receipt: Receipt,
        event_type: ReceiptEventType,
        data: dict | None = None,
    ) -> None:
        """Queue an event for ``receipt`` to be published after commit."""
        self._pending_events.append((receipt.id, event_type, receipt.status.value, data))

    def _finish(self, commit: bool) -> None:
        if commit:
            self.commit()

    # --- Reads ---

    def get(self, receipt_id: str) -> Receipt | None:
        """Get a receipt by id regardless of owner."""
        return self.db.query(Receipt).filter(Receipt.id == receipt_id).first()

    def get_for_user(self, receipt_id: str, user_id: int, with_items: bool = False) -> Receipt:
        """Get a receipt owned by ``user_id``.

        Raises:
            ReceiptNotFound: if it does not exist or belongs to someone else
        """
        query = self.db.query(Receipt).filter(Receipt.id == receipt_id, Receipt.user_id == user_id)
        if with_items:
            query = query.options(selectinload(Receipt.items))
        receipt = query.first()
        if receipt is None:
            raise ReceiptNotFound("Receipt not found")
        return receipt

    def statuses(self, user_id: int, receipt_ids: list[str]) -> list[Receipt]:
        """Get the caller's receipts among ``receipt_ids``, in request order.

        Unknown ids and ids owned by other users are omitted.
        """
        unique_ids = list(dict.fromkeys(receipt_ids))
        if not unique_ids:
            return []
        rows = (
            self.db.query(Receipt)
            .filter(Receipt.id.in_(unique_ids), Receipt.user_id == user_id)
            .all()
        )
        by_id = {receipt.id: receipt for receipt in rows}
        return [by_id[receipt_id] for receipt_id in unique_ids if receipt_id in by_id]

    def in_flight_ids(self, user_id: int) -> list[str]:
        """Get ids of the caller's receipts that are not yet terminal."""
        rows = (
            self.db.query(Receipt.id)
            .filter(Receipt.user_id == user_id, Receipt.status.in_(IN_FLIGHT_STATUSES))
            .order_by(Receipt.created_at)
            .all()
        )
        return [receipt_id for (receipt_id,) in rows]

    def list_for_user(
        self, user_id: int, limit: int = 20, cursor: datetime | None = None
    ) -> tuple[list[Receipt], datetime | None]:
        """Get a page of the caller's receipts, newest first.

        Returns:
            (receipts, next_cursor) where next_cursor is None on the last page
        """
        query = self.db.query(Receipt).filter(Receipt.user_id == user_id)
        if cursor is not None:
            query = query.filter(Receipt.created_at < cursor)
        rows = query.order_by(Receipt.created_at.desc(), Receipt.id.desc()).limit(limit + 1).all()
        if len(rows) > limit:
            page = rows[:limit]
            return page, page[-1].created_at
        return rows, None

    # --- Writes ---

    def create_pending(self, user_id: int | None, image_path: str, commit: bool = True) -> Receipt:
        """Create a pending receipt for a freshly stored image."""
        receipt = Receipt(
            user_id=user_id,
            image_path=image_path,
            status=ReceiptStatus.PENDING,
            total=0,
        )
        self.db.add(receipt)
        self.db.flush()
        self._finish(commit)
        return receipt

    def transition(
        self,
        receipt: Receipt,
        target: ReceiptStatus,
        error_message: str | None = None,
        commit: bool = True,
    ) -> bool:
        """Move ``receipt`` to ``target``.

        A write of the current status is a no-op and emits nothing.

        Returns:
            True if the status changed.

        Raises:
            InvalidStatusTransition: if the move is not allowed
        """
        current = receipt.status
        if current == target:
            return False
        if not can_transition(current, target):
            raise InvalidStatusTransition(
                f"Receipt {receipt.id} cannot move from {current.value} to {target.value}"
            )

        if target == ReceiptStatus.FAILED:
            receipt.error_message = error_message or "Processing failed"
        else:
            receipt.error_message = None
        receipt.status = target
        self.queue_event(
            receipt, ReceiptEventType.STATUS_CHANGED, {"error_message": receipt.error_message}
        )
        self._finish(commit)
        logger.info(f"Receipt {receipt.id}: {current.value} -> {target.value}")
        return True

    def mark_failed(self, receipt: Receipt, message: str, commit: bool = True) -> bool:
        """Fail an in-flight receipt; terminal receipts are left alone."""
        if receipt.status.is_terminal:
            logger.warning(
                f"Receipt {receipt.id} already {receipt.status.value}, not marking failed: {message}"
            )
            return False
        return self.transition(receipt, ReceiptStatus.FAILED, error_message=message, commit=commit)

    def apply_extraction(
        self, receipt: Receipt, extracted: ExtractedReceipt, commit: bool = True
    ) -> None:
        """Write extracted fields and replace all line items."""
        receipt.store_name = _clip(extracted.store_name, 200)
        receipt.store_address = _clip(extracted.store_address, 500)
        receipt.date = extracted.date
        receipt.currency = extracted.currency
        receipt.subtotal = extracted.subtotal
        receipt.tax = extracted.tax
        receipt.total = extracted.total
        receipt.receipt_bounding_box = extracted.receipt_bounding_box
        self.replace_items(receipt, extracted.items, commit=False)
        self._finish(commit)

    def replace_items(
        self,
        receipt: Receipt,
        items: list[ExtractedItem] | list[ReceiptItemInput],
        commit: bool = True,
    ) -> None:
        """Swap the receipt's items for ``items`` in one transaction.

        Readers see either the old set or the new set, never a mix.
        """
        receipt.items = [
            ReceiptItem(
                name=_clip(item.name, 200),
                inferred_name=_clip(item.inferred_name, 200),
                product_type=_clip(item.product_type, 100),
                bounding_box=item.bounding_box,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total_price=item.total_price,
                discount=item.discount,
                sort_order=position,
            )
            for position, item in enumerate(items)
        ]
        self._finish(commit)

    def update(self, receipt: Receipt, changes: ReceiptUpdate) -> Receipt:
        """Apply a manual edit; ``items``, when given, replaces all items.

        Raises:
            InvalidReceiptState: if a job is still working on the receipt
        """
        if not receipt.status.is_terminal:
            raise InvalidReceiptState("Receipt is still being processed")
        fields: dict[str, Any] = changes.model_dump(exclude_unset=True, exclude={"items"})
        for field, value in fields.items():
            if value is None and field in NON_NULLABLE_FIELDS:
                continue
            setattr(receipt, field, value)
        if changes.items is not None:
            self.replace_items(receipt, changes.items, commit=False)
        self.queue_event(receipt, ReceiptEventType.UPDATED)
        self.commit()
        self.db.refresh(receipt)
        return receipt

    def reset_for_rerun(self, receipt: Receipt, commit: bool = True) -> None:
        """Start a new cycle on a terminal receipt: back to pending, error cleared.

        Raises:
            InvalidReceiptState: if the receipt is still in flight or has no image
        """
        if not receipt.status.is_terminal:
            raise InvalidReceiptState(
                f"Receipt is {receipt.status.value}; wait for it to finish before re-running"
            )
        if not receipt.image_path:
            raise InvalidReceiptState("Receipt has no image to analyze")

        previous = receipt.status
        receipt.status = ReceiptStatus.PENDING
        receipt.error_message = None
        self.queue_event(receipt, ReceiptEventType.STATUS_CHANGED, {"error_message": None})
        self._finish(commit)
        logger.info(f"Receipt {receipt.id}: {previous.value} -> pending (re-run)")

    def delete(self, receipt: Receipt) -> None:
        """Delete a receipt; items and jobs cascade."""
        self.db.delete(receipt)
        self.db.commit()
