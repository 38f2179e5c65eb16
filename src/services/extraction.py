"""Receipt extraction using Claude Vision."""

import base64
import json
import logging

import anthropic
from pydantic import ValidationError

from src.config import get_settings
from src.errors import ExtractionConfigError, ExtractionParseError, ExtractionUnavailableError
from src.schemas.receipt import ExtractedReceipt
from src.services.extraction_prompts import (
    RECEIPT_EXTRACTION_PROMPT,
    RECEIPT_EXTRACTION_SYSTEM_PROMPT,
)

logger = logging.getLogger(__name__)

# Errors that will repeat identically on retry
CONFIG_ERRORS = (
    anthropic.AuthenticationError,
    anthropic.PermissionDeniedError,
    anthropic.BadRequestError,
    anthropic.NotFoundError,
)


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_extraction_response(text: str) -> ExtractedReceipt:
    """Decode the model's answer into an ``ExtractedReceipt``.

    Raises:
        ExtractionParseError: if the answer is not a JSON object matching the
            receipt shape. The service would produce the same answer again, so
            this is not retried.
    """
    cleaned = strip_code_fence(text)
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse extraction response as JSON: {e}")
        logger.debug(f"Response was: {cleaned[:500]}")
        raise ExtractionParseError(f"Failed to parse extraction response: {e}") from e

    if not isinstance(payload, dict):
        raise ExtractionParseError(
            f"Extraction response must be a JSON object, got {type(payload).__name__}"
        )

    try:
        return ExtractedReceipt.model_validate(payload)
    except ValidationError as e:
        raise ExtractionParseError(f"Extraction response has invalid fields: {e}") from e


class ExtractionClient:
    """Wraps the vision model call and classifies its failures."""

    def __init__(self, api_key: str | None = None, model: str | None = None) -> None:
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.anthropic_api_key
        self.model = model or settings.extraction_model
        self.max_tokens = settings.extraction_max_tokens
        self.timeout = settings.extraction_timeout_seconds

    @property
    def is_configured(self) -> bool:
        """Check if the Anthropic API is configured."""
        return bool(self.api_key)

    async def extract(self, image_data: bytes, mime_type: str) -> ExtractedReceipt:
        """Extract structured fields from a receipt image.

        Args:
            image_data: Normalized image bytes
            mime_type: MIME type of ``image_data`` (e.g. "image/jpeg")

        Raises:
            ExtractionConfigError: missing or rejected credentials (fatal)
            ExtractionParseError: undecodable output (fatal)
            ExtractionUnavailableError: timeouts, rate limits, 5xx (transient)
        """
        if not self.is_configured:
            raise ExtractionConfigError("Anthropic API not configured")

        image_base64 = base64.standard_b64encode(image_data).decode("utf-8")
        client = anthropic.AsyncAnthropic(api_key=self.api_key, timeout=self.timeout, max_retries=0)

        try:
            message = await client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=RECEIPT_EXTRACTION_SYSTEM_PROMPT,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "image",
                                "source": {
                                    "type": "base64",
                                    "media_type": mime_type,
                                    "data": image_base64,
                                },
                            },
                            {"type": "text", "text": RECEIPT_EXTRACTION_PROMPT},
                        ],
                    }
                ],
            )
        except CONFIG_ERRORS as e:
            logger.error(f"Extraction request rejected: {e}")
            raise ExtractionConfigError(f"Extraction service rejected the request: {e}") from e
        except anthropic.APIError as e:
            logger.warning(f"Extraction service unavailable: {e}")
            raise ExtractionUnavailableError(f"Extraction service unavailable: {e}") from e
        finally:
            await client.close()

        text = "".join(block.text for block in message.content if block.type == "text")
        if not text:
            raise ExtractionParseError("Extraction response contained no text")
        return parse_extraction_response(text)
