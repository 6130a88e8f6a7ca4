"""Unit tests for image utilities."""

import io

import pytest
from PIL import Image

from genbridge.core.errors import ValidationError
from genbridge.core.models import ImageInput
from genbridge.utils.image_utils import (
    ImageFormat,
    bytes_to_input,
    create_thumbnail,
    detect_mime_type,
    encode_image,
    load_image,
)


class TestImageFormat:
    """Tests for ImageFormat constants."""

    def test_format_constants(self):
        """Test that format constants are defined."""
        assert ImageFormat.PNG == "PNG"
        assert ImageFormat.JPEG == "JPEG"
        assert ImageFormat.WEBP == "WEBP"


class TestDetectMimeType:
    """Tests for magic-byte sniffing."""

    @pytest.mark.parametrize("data,expected", [
        (b"\x89PNG\r\n\x1a\n....", "image/png"),
        (b"\xff\xd8\xff\xe0....", "image/jpeg"),
        (b"RIFF\x00\x00\x00\x00WEBPVP8 ", "image/webp"),
        (b"GIF89a....", "image/gif"),
    ])
    def test_known_formats(self, data, expected):
        assert detect_mime_type(data) == expected

    def test_unknown_uses_default(self):
        assert detect_mime_type(b"????", default="image/jpeg") == "image/jpeg"

    def test_bytes_to_input_sniffs(self, sample_image_bytes):
        assert bytes_to_input(sample_image_bytes).mime_type == "image/png"
        assert bytes_to_input(sample_image_bytes, "image/webp").mime_type == "image/webp"


class TestLoadAndEncode:
    """Tests for decoding and encoding."""

    def test_load_image(self, sample_image):
        image = load_image(sample_image)
        assert image.size == (512, 512)

    def test_load_invalid_bytes(self):
        with pytest.raises(ValidationError, match="Could not decode image"):
            load_image(ImageInput(data=b"not an image"))

    def test_encode_png(self):
        result = encode_image(Image.new("RGB", (10, 10), "green"))

        assert result.mime_type == "image/png"
        assert Image.open(io.BytesIO(result.data)).format == "PNG"

    def test_encode_jpeg_flattens_alpha(self):
        """Test that transparent pixels become white in JPEG output."""
        image = Image.new("RGBA", (10, 10), (255, 0, 0, 0))

        result = encode_image(image, ImageFormat.JPEG)

        decoded = Image.open(io.BytesIO(result.data))
        assert result.mime_type == "image/jpeg"
        assert decoded.mode == "RGB"
        assert all(channel > 240 for channel in decoded.getpixel((5, 5)))

    def test_encode_webp(self):
        result = encode_image(Image.new("RGB", (10, 10)), ImageFormat.WEBP)
        assert result.mime_type == "image/webp"


class TestCreateThumbnail:
    """Tests for thumbnail creation."""

    def test_landscape_downscaled(self, png_factory):
        thumb = create_thumbnail(ImageInput(data=png_factory((1000, 500))))

        decoded = Image.open(io.BytesIO(thumb.data))
        assert decoded.size == (420, 210)
        assert thumb.mime_type == "image/jpeg"

    def test_portrait_downscaled(self, png_factory):
        thumb = create_thumbnail(ImageInput(data=png_factory((300, 900))), max_size=300)

        assert Image.open(io.BytesIO(thumb.data)).size == (100, 300)

    def test_small_image_kept(self, png_factory):
        thumb = create_thumbnail(ImageInput(data=png_factory((100, 80))))

        assert Image.open(io.BytesIO(thumb.data)).size == (100, 80)
