"""Exception hierarchy for the receipt pipeline and its API surface.

Background failures split into two families that the job runtime treats
differently:

- ``FatalError``: retrying cannot help (corrupt image, misconfiguration,
  unparseable model output, missing account). The job stops immediately.
- ``TransientError``: the service or store may recover (timeouts, 5xx,
  connection drops). The job runtime retries with backoff.

``ApiError`` subclasses are raised synchronously by request handlers and
rendered as ``{"error": code, "message": message}``.
"""


class ReceiptPipelineError(Exception):
    """Base exception for receipt pipeline errors."""


class FatalError(ReceiptPipelineError):
    """Non-retryable failure; ends the job as failed."""


class TransientError(ReceiptPipelineError):
    """Retryable failure; eligible for the job runtime's backoff."""


class ImageDecodeError(FatalError):
    """Image bytes could not be decoded."""


class ImageNotFoundError(FatalError):
    """The referenced image does not exist in storage."""


class StorageUnavailableError(TransientError):
    """The object store could not be reached or read."""


class ExtractionConfigError(FatalError):
    """Extraction service is not configured or rejected our credentials."""


class ExtractionParseError(FatalError):
    """Extraction service returned output that cannot be decoded."""


class ExtractionUnavailableError(TransientError):
    """Extraction service call failed in a way that may succeed later."""


class AccountNotFoundError(FatalError):
    """Ledger operation referenced an account that does not exist."""


class LedgerError(TransientError):
    """A ledger write could not be completed; the balance change was undone."""


class InvalidStatusTransition(ReceiptPipelineError):
    """A receipt status change would move backwards or out of a terminal state."""


class ApiError(Exception):
    """Error surfaced synchronously to an API caller."""

    status_code = 400
    code = "bad_request"

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(message)


class ValidationFailed(ApiError):
    """Submission rejected before any record was created."""

    status_code = 400
    code = "validation_error"


class InsufficientCreditsError(ApiError):
    """Account balance does not cover the requested amount."""

    status_code = 402
    code = "insufficient_credits"

    def __init__(self, required: int, available: int | None = None, message: str | None = None):
        self.required = required
        self.available = available
        super().__init__(message or insufficient_credits_message(required))


class ReceiptNotFound(ApiError):
    """Receipt does not exist or is not visible to the caller."""

    status_code = 404
    code = "not_found"


class InvalidReceiptState(ApiError):
    """Receipt is in a state that does not allow the requested operation."""

    status_code = 409
    code = "invalid_state"


def insufficient_credits_message(required: int) -> str:
    """Human-readable message for a batch that needs ``required`` credits."""
    plural = "s" if required > 1 else ""
    return f"You need at least {required} credit{plural} to scan {required} receipt{plural}"


class ServiceUnavailable(ApiError):
    """A backing service needed to accept the request is down."""

    status_code = 503
    code = "service_unavailable"
