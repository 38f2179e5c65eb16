"""The receipt extraction workflow: one job per receipt.

Steps, in order:

1. ``mark_processing``: pending -> processing
2. ``normalize_image``: load the upload, convert HEIC to JPEG
3. ``extract``: call the extraction service
4. ``persist``: write fields and replace line items
5. ``charge``: deduct one credit and mark the receipt completed
6. ``notify_completed``: publish store name, total and currency

Charging and completion share one transaction, so a receipt is never
``completed`` without having been paid for, and a job that fails earlier
leaves the balance untouched.
"""

import asyncio
import logging
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from src.errors import FatalError, InsufficientCreditsError, TransientError
from src.models.enums import JobStatus, ReceiptStatus
from src.models.receipt import Receipt
from src.models.receipt_job import ReceiptJob
from src.schemas.receipt import ExtractedReceipt
from src.services.credit_ledger import CreditLedger
from src.services.extraction import ExtractionClient
from src.services.image_normalizer import normalize_image
from src.services.realtime import ReceiptEventType, ReceiptPublisher, publish_receipt_event
from src.services.receipt_store import ReceiptStore
from src.services.storage import ObjectStore, mime_type_for
from src.services.workflow import Step, StepContext, StepResult, WorkflowExecutor

logger = logging.getLogger(__name__)

SCAN_COST = 1
SCAN_DESCRIPTION = "Receipt scan"


class ReceiptJobRunner:
    """Runs receipt jobs against injected storage, extraction and publisher."""

    def __init__(
        self,
        db: Session,
        storage: ObjectStore,
        extraction_client: ExtractionClient,
        publisher: ReceiptPublisher = publish_receipt_event,
    ) -> None:
        self.db = db
        self.storage = storage
        self.extraction_client = extraction_client
        self.store = ReceiptStore(db, publisher)
        self.ledger = CreditLedger(db)
        self.executor = WorkflowExecutor(
            db,
            [
                Step("mark_processing", self.mark_processing),
                Step("normalize_image", self.normalize_image),
                Step("extract", self.extract),
                Step("persist", self.persist),
                Step("charge", self.charge),
                Step("notify_completed", self.notify_completed),
            ],
            commit=self.store.commit,
            rollback=self.store.rollback,
        )

    def _receipt(self, context: StepContext) -> Receipt:
        return self.db.get(Receipt, context.job.receipt_id)

    # --- Steps ---

    def mark_processing(self, context: StepContext) -> StepResult:
        receipt = self._receipt(context)
        self.store.transition(receipt, ReceiptStatus.PROCESSING, commit=False)
        return {"status": ReceiptStatus.PROCESSING.value}

    def normalize_image(self, context: StepContext) -> StepResult:
        receipt = self._receipt(context)
        data = self.storage.load(receipt.image_path)
        normalized = normalize_image(data, mime_type_for(receipt.image_path), receipt.image_path)

        image_path = receipt.image_path
        if normalized.converted:
            _, _, key = receipt.image_path.partition("/")
            image_path = self.storage.save(f"{key}.jpg", normalized.data)
        return {"image_path": image_path, "mime_type": normalized.mime_type}

    def extract(self, context: StepContext) -> StepResult:
        image = context.results["normalize_image"]
        data = self.storage.load(image["image_path"])
        extracted = asyncio.run(self.extraction_client.extract(data, image["mime_type"]))
        logger.info(
            f"Extracted receipt {context.job.receipt_id}: "
            f"store={extracted.store_name!r} total={extracted.total} items={len(extracted.items)}"
        )
        return extracted.model_dump(mode="json")

    def persist(self, context: StepContext) -> StepResult:
        receipt = self._receipt(context)
        extracted = ExtractedReceipt.model_validate(context.results["extract"])
        self.store.apply_extraction(receipt, extracted, commit=False)
        return {"items": len(extracted.items), "total": str(extracted.total)}

    def charge(self, context: StepContext) -> StepResult:
        receipt = self._receipt(context)
        charged = False
        if receipt.user_id is None:
            logger.warning(f"Receipt {receipt.id} has no owner, skipping credit deduction")
        else:
            self.ledger.deduct(
                receipt.user_id, SCAN_COST, receipt.id, SCAN_DESCRIPTION, commit=False
            )
            charged = True
        self.store.transition(receipt, ReceiptStatus.COMPLETED, commit=False)
        return {"charged": charged}

    def notify_completed(self, context: StepContext) -> StepResult:
        receipt = self._receipt(context)
        self.store.queue_event(
            receipt,
            ReceiptEventType.COMPLETED,
            {
                "store_name": receipt.store_name,
                "total": str(receipt.total),
                "currency": receipt.currency,
            },
        )
        return None

    # --- Job lifecycle ---

    def run(self, job_id: str, final_attempt: bool = True) -> dict:
        """Run (or resume) a job.

        Args:
            job_id: ID of the ReceiptJob to run
            final_attempt: whether a transient failure should end the job
                instead of leaving it for another attempt

        Raises:
            TransientError: on a retryable failure when not the final attempt.
                Every other failure marks the job and receipt failed, then
                re-raises.
        """
        job = self.db.get(ReceiptJob, job_id)
        if job is None:
            logger.error(f"ReceiptJob {job_id} not found")
            return {"error": "Job not found"}
        if job.status != JobStatus.RUNNING:
            logger.info(f"ReceiptJob {job_id} already {job.status.value}, nothing to do")
            return {"status": job.status.value}

        job.attempts += 1
        if job.started_at is None:
            job.started_at = datetime.now(UTC)
        self.db.commit()
        logger.info(f"Processing receipt {job.receipt_id} (job {job_id}, attempt {job.attempts})")

        try:
            results = self.executor.run(job)
        except TransientError as e:
            if not final_attempt:
                logger.warning(f"Job {job_id} attempt {job.attempts} failed, will retry: {e}")
                raise
            logger.error(f"Job {job_id} failed after {job.attempts} attempts: {e}")
            self._fail(job_id, str(e))
            raise
        except (FatalError, InsufficientCreditsError) as e:
            logger.error(f"Job {job_id} failed: {e}")
            self._fail(job_id, str(e))
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in job {job_id}")
            self._fail(job_id, f"Unexpected error: {e}")
            raise

        job.status = JobStatus.COMPLETED
        job.finished_at = datetime.now(UTC)
        self.db.commit()
        logger.info(f"Receipt {job.receipt_id} completed (job {job_id})")
        return {"status": JobStatus.COMPLETED.value, "charged": results["charge"]["charged"]}

    def _fail(self, job_id: str, message: str) -> None:
        self.store.rollback()
        job = self.db.get(ReceiptJob, job_id)
        receipt = self.db.get(Receipt, job.receipt_id)
        job.status = JobStatus.FAILED
        job.error_message = message
        job.finished_at = datetime.now(UTC)
        if receipt is not None:
            self.store.mark_failed(receipt, message, commit=False)
        self.store.commit()
