"""Receipt submission: validate uploads, create pending receipts, start jobs."""

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from src.config import get_settings
from src.errors import (
    InsufficientCreditsError,
    ServiceUnavailable,
    StorageUnavailableError,
    ValidationFailed,
)
from src.models.enums import JobStatus
from src.models.receipt import Receipt
from src.models.receipt_job import ReceiptJob
from src.models.user import User
from src.schemas.receipt import QueuedReceipt, QueueResponse, ReanalyzeResponse
from src.services.credit_ledger import CreditLedger
from src.services.realtime import ReceiptPublisher, publish_receipt_event
from src.services.receipt_store import ReceiptStore
from src.services.storage import MIME_EXTENSIONS, ObjectStore, mime_type_for, upload_key
from src.tasks.receipt_processing import process_receipt_job

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = frozenset(MIME_EXTENSIONS)


@dataclass
class Upload:
    """An uploaded image file."""

    filename: str
    content_type: str | None
    data: bytes

    @property
    def mime_type(self) -> str | None:
        """Declared MIME type, falling back to the file extension."""
        declared = (self.content_type or "").lower()
        if declared in ALLOWED_MIME_TYPES:
            return declared
        if declared in ("", "application/octet-stream"):
            return mime_type_for(self.filename)
        return None


class SubmissionService:
    """Accepts receipt images and fires one extraction job per image."""

    def __init__(
        self,
        db: Session,
        storage: ObjectStore,
        publisher: ReceiptPublisher = publish_receipt_event,
    ) -> None:
        self.db = db
        self.storage = storage
        self.store = ReceiptStore(db, publisher)
        self.ledger = CreditLedger(db)
        self.settings = get_settings()

    def validate(self, uploads: list[Upload]) -> None:
        """Reject malformed batches before anything is stored.

        Raises:
            ValidationFailed: empty or oversized batch, bad file type or size
        """
        if not uploads:
            raise ValidationFailed("No files provided")
        if len(uploads) > self.settings.max_batch_size:
            raise ValidationFailed(
                f"Too many files: {len(uploads)} (maximum {self.settings.max_batch_size})"
            )

        max_mb = self.settings.max_upload_bytes / (1024 * 1024)
        for upload in uploads:
            if upload.mime_type is None:
                raise ValidationFailed(
                    f"Invalid file type for {upload.filename}: {upload.content_type}. "
                    "Allowed: JPEG, PNG, WebP, HEIC"
                )
            if not upload.data:
                raise ValidationFailed(f"File {upload.filename} is empty")
            if len(upload.data) > self.settings.max_upload_bytes:
                raise ValidationFailed(f"File {upload.filename} too large. Maximum {max_mb:g}MB")

    def submit(self, user: User, uploads: list[Upload]) -> QueueResponse:
        """Create a pending receipt and start a job for every upload.

        Raises:
            ValidationFailed: see ``validate``
            InsufficientCreditsError: balance below the number of uploads
            ServiceUnavailable: storage could not accept the images
        """
        self.validate(uploads)

        required = len(uploads)
        available = self.ledger.get_balance(user.id)
        if available < required:
            raise InsufficientCreditsError(required=required, available=available)

        image_paths = self._store_images(uploads)

        pending: list[tuple[Receipt, ReceiptJob, str]] = []
        for upload, image_path in zip(uploads, image_paths, strict=True):
            receipt = self.store.create_pending(user.id, image_path, commit=False)
            job = ReceiptJob(receipt_id=receipt.id)
            self.db.add(job)
            pending.append((receipt, job, upload.filename))
        self.db.flush()
        self.store.commit()

        queued = []
        for receipt, job, filename in pending:
            self._start(receipt, job)
            queued.append(QueuedReceipt(id=receipt.id, image_path=receipt.image_path, filename=filename))

        logger.info(f"User {user.id} queued {len(queued)} receipt(s)")
        return QueueResponse(queued=queued, message=f"{len(queued)} receipt(s) queued for processing")

    def reanalyze(self, user: User, receipt_id: str) -> ReanalyzeResponse:
        """Run extraction again on a finished receipt, reusing its id and image.

        Raises:
            ReceiptNotFound: not the caller's receipt
            InvalidReceiptState: receipt still in flight or has no image
            InsufficientCreditsError: no credit left for the scan
        """
        receipt = self.store.get_for_user(receipt_id, user.id)
        self.store.reset_for_rerun(receipt, commit=False)

        available = self.ledger.get_balance(user.id)
        if available < 1:
            self.store.rollback()
            raise InsufficientCreditsError(
                required=1,
                available=available,
                message="You need at least 1 credit to re-analyze a receipt",
            )

        job = ReceiptJob(receipt_id=receipt.id)
        self.db.add(job)
        self.db.flush()
        self.store.commit()
        self._start(receipt, job)

        return ReanalyzeResponse(
            id=receipt.id,
            status=receipt.status,
            job_id=job.id,
            message="Receipt queued for re-analysis",
        )

    def _store_images(self, uploads: list[Upload]) -> list[str]:
        stored: list[str] = []
        try:
            for upload in uploads:
                key = upload_key(MIME_EXTENSIONS[upload.mime_type])
                stored.append(self.storage.save(key, upload.data))
        except StorageUnavailableError as e:
            logger.error(f"Failed to store upload batch: {e}")
            for image_path in stored:
                self.storage.delete(image_path)
            raise ServiceUnavailable("Failed to upload image, please try again") from e
        return stored

    def _start(self, receipt: Receipt, job: ReceiptJob) -> None:
        """Enqueue a job; a receipt whose job cannot be enqueued fails on its own."""
        try:
            process_receipt_job.delay(job.id)
        except Exception as e:
            logger.error(f"Failed to start job {job.id} for receipt {receipt.id}: {e}")
            message = f"Failed to start processing: {e}"
            job.status = JobStatus.FAILED
            job.error_message = message
            self.store.mark_failed(receipt, message, commit=False)
            self.store.commit()
