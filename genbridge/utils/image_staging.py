"""Prepare in-memory images for each backend's transport.

Some backends take images inline, others only fetch them from a public URL.
Uploads are cached by content hash so one image is uploaded at most once per
service instance. Composite helpers build single-image boards for backends
that accept a single style reference, and close-up patches for the vision
analysis step.
"""

import io
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import replicate
from PIL import Image, ImageDraw, ImageOps
from replicate.exceptions import ReplicateError

from genbridge.core.errors import ConfigurationError, UpstreamError, ValidationError
from genbridge.core.models import ImageInput
from genbridge.utils.image_utils import ImageFormat, encode_image, load_image

logger = logging.getLogger(__name__)

BACKGROUND = (6, 8, 7)
DIVIDER = (21, 23, 22)

MAX_BOARD_IMAGES = 3
MAX_PANEL_IMAGES = 6
MIN_PATCH_SIZE = 64


class ImageTransport(str, Enum):
    """How a backend wants to receive images."""
    INLINE = "inline"
    URL = "url"


class ImageUploader(ABC):
    """Uploads an image somewhere a backend can fetch it from."""

    @abstractmethod
    def upload(self, image: ImageInput) -> str:
        """Upload ``image`` and return a URL the backend can fetch."""


class ReplicateFileUploader(ImageUploader):
    """Uploads images through Replicate's files API.

    Attributes:
        client: Replicate client instance
    """

    def __init__(self, api_token: str, client: Optional[replicate.Client] = None):
        if not api_token:
            raise ConfigurationError("Replicate API token is required")
        self.client = client or replicate.Client(api_token=api_token)

    def upload(self, image: ImageInput) -> str:
        extension = image.mime_type.split("/")[-1] or "png"
        buffer = io.BytesIO(image.data)
        buffer.name = f"input.{extension}"

        try:
            uploaded = self.client.files.create(buffer)
        except ReplicateError as e:
            logger.error(f"Replicate file upload failed: {e}")
            raise UpstreamError(f"Failed to upload image: {e}") from e

        url = (uploaded.urls or {}).get("get")
        if not url:
            raise UpstreamError("Replicate file upload returned no URL")
        return url


class ImageStagingService:
    """Converts images into the transport shape a backend needs.

    Attributes:
        uploader: Uploader used for URL transport (None = inline only)
    """

    def __init__(self, uploader: Optional[ImageUploader] = None):
        self.uploader = uploader
        self._uploaded: Dict[str, str] = {}

    def to_inline(self, image: ImageInput) -> str:
        """Return the image as a base64 data URL."""
        return image.to_data_url()

    def to_public_url(self, image: ImageInput) -> str:
        """Upload the image once and return its public URL.

        Raises:
            ConfigurationError: If no uploader is configured
            UpstreamError: If the upload failed
        """
        key = image.content_key
        cached = self._uploaded.get(key)
        if cached:
            logger.debug(f"Reusing upload for image {key[:12]}")
            return cached

        if self.uploader is None:
            raise ConfigurationError("URL transport requires an image uploader")

        url = self.uploader.upload(image)
        self._uploaded[key] = url
        logger.info(f"Uploaded image {key[:12]} ({len(image.data)} bytes)")
        return url

    def stage(self, image: ImageInput, transport: ImageTransport = ImageTransport.INLINE) -> str:
        """Return the reference a backend expects for ``image``.

        URL transport falls back to inline data when no uploader is set, which
        Replicate accepts for small files.
        """
        if transport == ImageTransport.URL and self.uploader is not None:
            return self.to_public_url(image)
        return self.to_inline(image)

    def build_style_board(self, images: Sequence[ImageInput], size: int = 1024, gutter: int = 8) -> ImageInput:
        """Tile up to three style references into a single PNG.

        One image fills a square canvas, two sit side by side on a 2:1
        canvas, three form an L: a tall tile on the left and two stacked
        tiles on the right. Every tile is cover-cropped.

        Raises:
            ValidationError: If no image was given
        """
        if not images:
            raise ValidationError("At least one style image is required for a style board")
        if len(images) > MAX_BOARD_IMAGES:
            logger.warning(f"Style board takes {MAX_BOARD_IMAGES} images, ignoring {len(images) - MAX_BOARD_IMAGES}")
            images = images[:MAX_BOARD_IMAGES]

        tiles = [load_image(image).convert("RGB") for image in images]
        half = (size - gutter) // 2

        if len(tiles) == 1:
            canvas = Image.new("RGB", (size, size), BACKGROUND)
            layout = [(0, 0, size, size)]
        elif len(tiles) == 2:
            canvas = Image.new("RGB", (size, half), BACKGROUND)
            layout = [(0, 0, half, half), (half + gutter, 0, half, half)]
        else:
            canvas = Image.new("RGB", (size, size), BACKGROUND)
            right = size - half - gutter
            lower = size - half - gutter
            layout = [
                (0, 0, half, size),
                (half + gutter, 0, right, half),
                (half + gutter, half + gutter, right, lower),
            ]

        for tile, (x, y, w, h) in zip(tiles, layout):
            canvas.paste(cover_crop(tile, w, h), (x, y))

        return encode_image(canvas, ImageFormat.PNG)

    def build_reference_composite(
        self,
        references: Sequence[ImageInput],
        styles: Sequence[ImageInput],
        size: int = 1024
    ) -> ImageInput:
        """Lay references out on the left half and styles on the right half.

        Each half holds up to six images in a grid, contain-fitted.
        """
        canvas = Image.new("RGB", (size, size // 2), BACKGROUND)
        panel_width = size // 2

        _draw_panel(canvas, list(references)[:MAX_PANEL_IMAGES], 0, panel_width)
        _draw_panel(canvas, list(styles)[:MAX_PANEL_IMAGES], panel_width, panel_width)

        ImageDraw.Draw(canvas).rectangle(
            [panel_width - 1, 0, panel_width, canvas.height], fill=DIVIDER
        )
        return encode_image(canvas, ImageFormat.PNG)

    def extract_style_patches(self, image: ImageInput) -> List[ImageInput]:
        """Cut five square close-ups: four corners, then the center.

        Each crop's side is half the shorter dimension (at least 64px).
        """
        source = load_image(image).convert("RGB")
        width, height = source.size
        crop = max(MIN_PATCH_SIZE, min(width, height) // 2)

        points = [
            (0, 0),
            (width - crop, 0),
            (0, height - crop),
            (width - crop, height - crop),
            ((width - crop) // 2, (height - crop) // 2),
        ]

        patches = []
        for x, y in points:
            x, y = max(0, x), max(0, y)
            patch = source.crop((x, y, x + crop, y + crop))
            patches.append(encode_image(patch, ImageFormat.JPEG, quality=92))
        return patches


def cover_crop(image: Image.Image, width: int, height: int) -> Image.Image:
    """Scale and center-crop ``image`` so it exactly fills width x height."""
    return ImageOps.fit(image, (width, height), method=Image.LANCZOS, centering=(0.5, 0.5))


def _grid(count: int) -> Tuple[int, int]:
    if count <= 1:
        return 1, 1
    if count == 2:
        return 2, 1
    if count <= 4:
        return 2, 2
    return 3, 2


def _draw_panel(canvas: Image.Image, images: Sequence[ImageInput], x0: int, panel_width: int,
                padding: int = 12, gutter: int = 8) -> None:
    if not images:
        return
    cols, rows = _grid(len(images))
    cell_w = (panel_width - padding * 2 - gutter * (cols - 1)) // cols
    cell_h = (canvas.height - padding * 2 - gutter * (rows - 1)) // rows

    for idx, image in enumerate(images):
        col, row = idx % cols, idx // cols
        tile = ImageOps.contain(load_image(image).convert("RGB"), (cell_w, cell_h), method=Image.LANCZOS)
        x = x0 + padding + col * (cell_w + gutter) + (cell_w - tile.width) // 2
        y = padding + row * (cell_h + gutter) + (cell_h - tile.height) // 2
        canvas.paste(tile, (x, y))
