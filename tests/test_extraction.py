"""Tests for receipt extraction and response parsing."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import httpx
import pytest

from src.errors import ExtractionConfigError, ExtractionParseError, ExtractionUnavailableError
from src.services.extraction import ExtractionClient, parse_extraction_response, strip_code_fence

REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")

LIDL_JSON = json.dumps(
    {
        "storeName": "Lidl",
        "storeAddress": "ul. Prosta 1, Warszawa",
        "date": "2025-03-14T18:22:00",
        "currency": "pln",
        "receiptBoundingBox": [12, 40, 980, 960],
        "items": [
            {"name": "MLEKO 2% 1L", "inferredName": "Mleko 2% 1 litr", "box_2d": [100, 50, 120, 900], "totalPrice": 4.30},
            {"name": "CHLEB PSZENNY", "productType": "chleb", "quantity": 1, "totalPrice": 8.00},
        ],
        "total": 12.30,
    }
)


def _status_error(error_cls, status_code: int):
    response = httpx.Response(status_code, request=REQUEST)
    return error_cls("error", response=response, body=None)


class TestStripCodeFence:
    """Tests for strip_code_fence."""

    def test_json_fence(self):
        """Test removal of a ```json fence."""
        assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_plain_fence(self):
        """Test removal of a bare ``` fence."""
        assert strip_code_fence('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_no_fence(self):
        """Test that unfenced text is only trimmed."""
        assert strip_code_fence('  {"a": 1}\n') == '{"a": 1}'


class TestParseExtractionResponse:
    """Tests for parse_extraction_response."""

    def test_parses_full_receipt(self):
        """Test decoding a complete camelCase answer."""
        receipt = parse_extraction_response(f"```json\n{LIDL_JSON}\n```")

        assert receipt.store_name == "Lidl"
        assert receipt.date.isoformat() == "2025-03-14"
        assert receipt.currency == "PLN"
        assert float(receipt.total) == 12.3
        assert receipt.receipt_bounding_box == [12, 40, 980, 960]
        assert [item.name for item in receipt.items] == ["MLEKO 2% 1L", "CHLEB PSZENNY"]
        assert receipt.items[0].inferred_name == "Mleko 2% 1 litr"
        assert receipt.items[0].bounding_box == [100, 50, 120, 900]
        assert receipt.items[1].product_type == "chleb"

    def test_defaults_for_missing_fields(self):
        """Test that sparse answers are filled with defaults."""
        receipt = parse_extraction_response('{"items": [{}]}')

        assert receipt.store_name is None
        assert receipt.currency == "PLN"
        assert receipt.total == 0
        item = receipt.items[0]
        assert item.name == "Unknown item"
        assert item.quantity == 1
        assert item.total_price == 0

    def test_lenient_values(self):
        """Test that unusable values are dropped instead of failing the scan."""
        receipt = parse_extraction_response(
            json.dumps(
                {
                    "date": "yesterday",
                    "currency": None,
                    "receiptBoundingBox": [0, 0, 1200, 10],
                    "items": [{"name": "", "quantity": 0, "box_2d": [1, 2, 3]}],
                }
            )
        )

        assert receipt.date is None
        assert receipt.currency == "PLN"
        assert receipt.receipt_bounding_box is None
        assert receipt.items[0].name == "Unknown item"
        assert receipt.items[0].quantity == 1
        assert receipt.items[0].bounding_box is None

    def test_negative_line_becomes_discount(self):
        """Test that a discount line with a negative price is kept as a discount."""
        receipt = parse_extraction_response(
            json.dumps(
                {
                    "total": 10.0,
                    "items": [
                        {"name": "MLEKO", "totalPrice": 12.0},
                        {"name": "RABAT", "totalPrice": -2.0},
                    ],
                }
            )
        )

        discount_line = receipt.items[1]
        assert discount_line.name == "RABAT"
        assert discount_line.total_price == 0
        assert float(discount_line.discount) == 2.0
        assert receipt.items[0].discount is None

    def test_items_not_a_list(self):
        """Test that a malformed items field yields no items."""
        assert parse_extraction_response('{"items": "none"}').items == []

    def test_invalid_json(self):
        """Test that non-JSON output is a parse error."""
        with pytest.raises(ExtractionParseError):
            parse_extraction_response("I could not read this receipt.")

    def test_non_object(self):
        """Test that JSON other than an object is a parse error."""
        with pytest.raises(ExtractionParseError):
            parse_extraction_response("[1, 2, 3]")

    def test_negative_total(self):
        """Test that impossible totals are a parse error."""
        with pytest.raises(ExtractionParseError):
            parse_extraction_response('{"total": -5}')


def _mock_anthropic(create: AsyncMock) -> MagicMock:
    client = MagicMock()
    client.messages.create = create
    client.close = AsyncMock()
    return client


class TestExtractionClient:
    """Tests for ExtractionClient.extract."""

    @pytest.mark.asyncio
    async def test_not_configured(self):
        """Test that a missing API key is a configuration error."""
        client = ExtractionClient(api_key="")

        assert client.is_configured is False
        with pytest.raises(ExtractionConfigError):
            await client.extract(b"image", "image/jpeg")

    @pytest.mark.asyncio
    async def test_successful_extraction(self):
        """Test that the model's text answer is parsed into a receipt."""
        message = SimpleNamespace(content=[SimpleNamespace(type="text", text=LIDL_JSON)])
        create = AsyncMock(return_value=message)
        mock_client = _mock_anthropic(create)

        with patch("src.services.extraction.anthropic.AsyncAnthropic", return_value=mock_client):
            receipt = await ExtractionClient(api_key="test-key").extract(b"image", "image/png")

        assert receipt.store_name == "Lidl"
        content = create.call_args.kwargs["messages"][0]["content"]
        assert content[0]["source"]["media_type"] == "image/png"
        mock_client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_answer(self):
        """Test that an answer with no text is a parse error."""
        message = SimpleNamespace(content=[])
        mock_client = _mock_anthropic(AsyncMock(return_value=message))

        with (
            patch("src.services.extraction.anthropic.AsyncAnthropic", return_value=mock_client),
            pytest.raises(ExtractionParseError),
        ):
            await ExtractionClient(api_key="test-key").extract(b"image", "image/jpeg")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            _status_error(anthropic.AuthenticationError, 401),
            _status_error(anthropic.BadRequestError, 400),
        ],
    )
    async def test_rejected_request_is_fatal(self, error):
        """Test that credential and request errors are not retried."""
        mock_client = _mock_anthropic(AsyncMock(side_effect=error))

        with (
            patch("src.services.extraction.anthropic.AsyncAnthropic", return_value=mock_client),
            pytest.raises(ExtractionConfigError),
        ):
            await ExtractionClient(api_key="test-key").extract(b"image", "image/jpeg")
        mock_client.close.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            anthropic.APITimeoutError(request=REQUEST),
            anthropic.APIConnectionError(request=REQUEST),
            _status_error(anthropic.RateLimitError, 429),
            _status_error(anthropic.InternalServerError, 529),
        ],
    )
    async def test_service_errors_are_transient(self, error):
        """Test that timeouts, rate limits and overloads are retried."""
        mock_client = _mock_anthropic(AsyncMock(side_effect=error))

        with (
            patch("src.services.extraction.anthropic.AsyncAnthropic", return_value=mock_client),
            pytest.raises(ExtractionUnavailableError),
        ):
            await ExtractionClient(api_key="test-key").extract(b"image", "image/jpeg")
