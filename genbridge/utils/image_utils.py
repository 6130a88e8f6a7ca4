"""Image utility functions for decoding, encoding, thumbnails and mime sniffing."""

import io
from typing import Optional

from PIL import Image, UnidentifiedImageError

from genbridge.core.errors import ValidationError
from genbridge.core.models import ImageInput


class ImageFormat:
    """Supported image formats."""
    PNG = "PNG"
    JPEG = "JPEG"
    WEBP = "WEBP"


_FORMAT_MIME = {
    ImageFormat.PNG: "image/png",
    ImageFormat.JPEG: "image/jpeg",
    ImageFormat.WEBP: "image/webp",
}


def detect_mime_type(data: bytes, default: str = "image/png") -> str:
    """Guess an image mime type from its magic bytes."""
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return default


def load_image(image: ImageInput) -> Image.Image:
    """Decode an ImageInput into a fully loaded PIL image.

    Raises:
        ValidationError: If the bytes are not a decodable image
    """
    try:
        pil_image = Image.open(io.BytesIO(image.data))
        pil_image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError(f"Could not decode image ({image.mime_type}): {e}") from e
    return pil_image


def encode_image(
    image: Image.Image,
    format: str = ImageFormat.PNG,
    quality: int = 95
) -> ImageInput:
    """Encode a PIL image into an ImageInput of the requested format."""
    output = io.BytesIO()

    if format == ImageFormat.JPEG:
        # JPEG has no alpha channel, flatten onto white
        if image.mode in ('RGBA', 'LA', 'P'):
            if image.mode == 'P':
                image = image.convert('RGBA')
            rgb_image = Image.new('RGB', image.size, (255, 255, 255))
            rgb_image.paste(image, mask=image.split()[-1])
            image = rgb_image
        elif image.mode != 'RGB':
            image = image.convert('RGB')
        image.save(output, format="JPEG", quality=quality)
    elif format == ImageFormat.WEBP:
        image.save(output, format="WEBP", quality=quality)
    else:
        image.save(output, format="PNG")

    return ImageInput(data=output.getvalue(), mime_type=_FORMAT_MIME[format])


def bytes_to_input(data: bytes, mime_type: Optional[str] = None) -> ImageInput:
    """Wrap raw bytes, sniffing the mime type when none is given."""
    return ImageInput(data=data, mime_type=mime_type or detect_mime_type(data))


def create_thumbnail(image: ImageInput, max_size: int = 420) -> ImageInput:
    """Downscale an image so its longer side is at most ``max_size``.

    Images already within the bound keep their size. Output is JPEG at 0.85.
    """
    pil_image = load_image(image)
    width, height = pil_image.size

    if width > height:
        if width > max_size:
            height = round(height * max_size / width)
            width = max_size
    elif height > max_size:
        width = round(width * max_size / height)
        height = max_size

    thumb = pil_image.resize((max(1, width), max(1, height)), Image.LANCZOS)
    return encode_image(thumb, ImageFormat.JPEG, quality=85)
