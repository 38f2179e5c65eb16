"""Celery task for receipt extraction jobs."""

import logging

from src.celery_app import app as celery_app
from src.config import get_settings
from src.database import SessionLocal
from src.errors import TransientError
from src.services.extraction import ExtractionClient
from src.services.receipt_workflow import ReceiptJobRunner
from src.services.storage import get_object_store

logger = logging.getLogger(__name__)
settings = get_settings()


def retry_countdown(retries: int) -> int:
    """Exponential backoff in seconds for the given retry number."""
    return min(settings.retry_backoff_seconds * 2**retries, settings.retry_backoff_max_seconds)


@celery_app.task(bind=True, name="tasks.process_receipt_job", max_retries=settings.job_max_retries)
def process_receipt_job(self, job_id: str) -> dict:
    """Run one receipt job, retrying transient failures with backoff.

    Args:
        job_id: ID of the ReceiptJob to run

    Returns:
        dict with processing result
    """
    db = SessionLocal()
    try:
        runner = ReceiptJobRunner(db, get_object_store(), ExtractionClient())
        final_attempt = self.request.retries >= self.max_retries
        try:
            return runner.run(job_id, final_attempt=final_attempt)
        except TransientError as e:
            if final_attempt:
                return {"error": str(e)}
            countdown = retry_countdown(self.request.retries)
            logger.info(f"Retrying job {job_id} in {countdown}s")
            raise self.retry(exc=e, countdown=countdown) from e
        except Exception as e:
            # Already recorded on the job and receipt
            return {"error": str(e)}
    finally:
        db.close()
