"""Receipt status delivery: pull snapshots and push (server-sent events).

Both modes read the receipt store. Redis events only wake the push loop early;
a missed event is picked up on the next poll.
"""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from src.config import get_settings
from src.models.enums import ReceiptStatus
from src.schemas.receipt import ReceiptStatusInfo
from src.services.realtime import RealtimeService, receipt_channel
from src.services.receipt_store import ReceiptStore

logger = logging.getLogger(__name__)

DONE_FRAME = "data: [DONE]\n\n"


def sse_frame(info: ReceiptStatusInfo) -> str:
    """Format one status snapshot as a server-sent event."""
    return f"data: {info.model_dump_json()}\n\n"


class StatusNotifier:
    """Serves receipt status to pollers and stream subscribers."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        realtime_factory: Callable[[], RealtimeService] = RealtimeService,
        poll_interval: float | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.realtime_factory = realtime_factory
        self.poll_interval = poll_interval or get_settings().status_poll_interval

    def snapshot(self, user_id: int, receipt_ids: list[str]) -> list[ReceiptStatusInfo]:
        """Get current status for the caller's receipts among ``receipt_ids``."""
        db = self.session_factory()
        try:
            receipts = ReceiptStore(db).statuses(user_id, receipt_ids)
            return [ReceiptStatusInfo.model_validate(receipt) for receipt in receipts]
        finally:
            db.close()

    def in_flight_ids(self, user_id: int) -> list[str]:
        """Get ids of the caller's pending and processing receipts."""
        db = self.session_factory()
        try:
            return ReceiptStore(db).in_flight_ids(user_id)
        finally:
            db.close()

    async def stream(
        self,
        user_id: int,
        receipt_ids: list[str] | None,
        is_disconnected: Callable[[], Awaitable[bool]],
    ) -> AsyncIterator[str]:
        """Yield SSE frames until every watched receipt is terminal.

        A frame is emitted only when a receipt's status differs from the last
        one sent on this stream. With no ids, the caller's in-flight receipts
        at connect time are watched.
        """
        if not receipt_ids:
            receipt_ids = await run_in_threadpool(self.in_flight_ids, user_id)

        last_sent: dict[str, ReceiptStatus] = {}
        realtime = self.realtime_factory()
        try:
            if receipt_ids:
                await realtime.subscribe([receipt_channel(rid) for rid in receipt_ids])
            current = await run_in_threadpool(self.snapshot, user_id, receipt_ids)
            watched = [info.id for info in current]

            while True:
                for info in current:
                    if last_sent.get(info.id) != info.status:
                        last_sent[info.id] = info.status
                        yield sse_frame(info)

                if all(info.status.is_terminal for info in current):
                    yield DONE_FRAME
                    return

                if await is_disconnected():
                    logger.debug(f"Status stream for user {user_id} disconnected")
                    return

                await realtime.get_message(timeout=self.poll_interval)
                current = await run_in_threadpool(self.snapshot, user_id, watched)
        finally:
            await realtime.cleanup()
