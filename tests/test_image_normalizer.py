"""Tests for image normalization and previews."""

import base64
from io import BytesIO

import pytest
from PIL import Image

from src.errors import ImageDecodeError
from src.services.image_normalizer import create_preview, is_heic, normalize_image


class TestIsHeic:
    """Tests for HEIC detection."""

    def test_by_mime_type(self):
        """Test detection from the declared MIME type."""
        assert is_heic("image/heic")
        assert is_heic("IMAGE/HEIF")
        assert not is_heic("image/jpeg")

    def test_by_extension(self):
        """Test detection from the file name when the MIME type is unhelpful."""
        assert is_heic("application/octet-stream", "IMG_0001.HEIC")
        assert is_heic(None, "receipts/uploads/x.heif")
        assert not is_heic(None, "receipt.png")
        assert not is_heic()


class TestNormalizeImage:
    """Tests for normalize_image."""

    def test_png_passes_through(self, png_bytes):
        """Test that supported non-HEIC images are not re-encoded."""
        result = normalize_image(png_bytes, "image/png")

        assert result.data == png_bytes
        assert result.mime_type == "image/png"
        assert result.extension == "png"
        assert result.converted is False

    def test_mime_type_from_filename(self, jpeg_bytes):
        """Test that a missing MIME type is inferred from the file name."""
        result = normalize_image(jpeg_bytes, filename="receipt.jpeg")

        assert result.mime_type == "image/jpeg"
        assert result.extension == "jpg"

    def test_heic_converted_to_jpeg(self, png_bytes):
        """Test that HEIC input is re-encoded as JPEG."""
        # Pillow identifies the real content, so any decodable bytes exercise the path
        result = normalize_image(png_bytes, "image/heic", "IMG_0001.heic")

        assert result.converted is True
        assert result.mime_type == "image/jpeg"
        assert result.extension == "jpg"
        with Image.open(BytesIO(result.data)) as img:
            assert img.format == "JPEG"
            assert img.size == (32, 48)

    def test_heic_with_alpha_is_flattened(self):
        """Test that images with transparency convert to RGB JPEG."""
        buffer = BytesIO()
        Image.new("RGBA", (8, 8), color=(0, 0, 0, 0)).save(buffer, format="PNG")

        result = normalize_image(buffer.getvalue(), "image/heif")

        with Image.open(BytesIO(result.data)) as img:
            assert img.mode == "RGB"

    def test_empty_input(self):
        """Test that empty bytes are rejected."""
        with pytest.raises(ImageDecodeError):
            normalize_image(b"", "image/png")

    def test_corrupt_input(self):
        """Test that undecodable bytes are rejected."""
        with pytest.raises(ImageDecodeError):
            normalize_image(b"definitely not an image", "image/jpeg")

    def test_corrupt_heic(self):
        """Test that undecodable HEIC uploads are rejected."""
        with pytest.raises(ImageDecodeError):
            normalize_image(b"definitely not an image", "image/heic")


class TestCreatePreview:
    """Tests for create_preview."""

    def test_returns_jpeg_data_url(self, png_bytes):
        """Test that previews are JPEG data URLs."""
        preview = create_preview(png_bytes, "image/png")

        prefix = "data:image/jpeg;base64,"
        assert preview.startswith(prefix)
        data = base64.b64decode(preview[len(prefix):])
        assert data[:2] == b"\xff\xd8"

    def test_rejects_empty(self):
        """Test that empty uploads cannot be previewed."""
        with pytest.raises(ImageDecodeError):
            create_preview(b"")
