"""Replicate backend implementation.

Replicate runs every model as a queued job, so all calls here go through the
JobPoller. Input images are passed as URLs or data URIs prepared by the
ImageStagingService.
"""

import logging
from typing import List, Optional, Sequence

import requests

from genbridge.core.base_provider import BaseProvider
from genbridge.core.errors import ValidationError
from genbridge.core.job_poller import (
    EDIT_TIMEOUT,
    REPLICATE_API_BASE,
    STYLE_TRANSFER_TIMEOUT,
    JobPoller,
)
from genbridge.core.models import GenerationResult, ImageInput, ProviderType
from genbridge.utils.image_staging import ImageStagingService, ImageTransport, ReplicateFileUploader

logger = logging.getLogger(__name__)

FLUX_KONTEXT_PRO = "black-forest-labs/flux-kontext-pro"
FLUX_KONTEXT_MULTI_IMAGE = "flux-kontext-apps/multi-image-kontext-pro"
SDXL_STYLE_TRANSFER = (
    "replicategithubwc/pixelwave-sdxl:"
    "c4fc85b7603f36d5bd6e2169e72877ccd0a2b75e9ca64d08b8e4d24d8cd9e36a"
)

DEFAULT_NEGATIVE_PROMPT = "text, watermark, logo, blur, artifacts"


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def run_flux_kontext_edit(
    poller: JobPoller,
    input_image: str,
    prompt: str,
    seed: Optional[int] = None,
    aspect_ratio: Optional[str] = None,
    timeout: float = EDIT_TIMEOUT,
) -> ImageInput:
    """Edit one image with FLUX Kontext Pro and return the output image."""
    job = poller.run(
        FLUX_KONTEXT_PRO,
        {
            "prompt": prompt,
            "input_image": input_image,
            "seed": seed,
            "aspect_ratio": aspect_ratio or "match_input_image",
            "output_format": "png",
            "safety_tolerance": 2,
            "prompt_upsampling": False,
        },
        timeout=timeout,
    )
    return poller.resolve_outputs(job, limit=1)[0]


def run_flux_kontext_multi_image(
    poller: JobPoller,
    image1: str,
    image2: str,
    prompt: str,
    seed: Optional[int] = None,
    aspect_ratio: Optional[str] = None,
    timeout: float = EDIT_TIMEOUT,
) -> ImageInput:
    """Combine two images with the multi-image Kontext model."""
    job = poller.run(
        FLUX_KONTEXT_MULTI_IMAGE,
        {
            "prompt": prompt,
            "input_image_1": image1,
            "input_image_2": image2,
            "seed": seed,
            "aspect_ratio": aspect_ratio or "match_input_image",
            "output_format": "png",
            "safety_tolerance": 2,
        },
        timeout=timeout,
    )
    return poller.resolve_outputs(job, limit=1)[0]


def run_sdxl_style_transfer(
    poller: JobPoller,
    content_image: str,
    style_image: str,
    prompt: str,
    negative_prompt: Optional[str] = None,
    cfg_scale: float = 7.0,
    denoise: float = 0.6,
    steps: int = 30,
    num_outputs: int = 1,
    width: int = 1024,
    height: int = 1024,
    style_only: bool = False,
    seed: Optional[int] = None,
    timeout: float = STYLE_TRANSFER_TIMEOUT,
) -> List[ImageInput]:
    """Run an SDXL image-prompt style transfer producing several outputs in one job.

    Returns:
        One image per output, in the order the backend returned them
    """
    job = poller.run(
        SDXL_STYLE_TRANSFER,
        {
            "prompt": prompt,
            "negative_prompt": negative_prompt or DEFAULT_NEGATIVE_PROMPT,
            "image": content_image,
            "image_prompt": style_image,
            "prompt_mode": "image_prompt",
            "image_prompt_method": "style_only" if style_only else "style_and_layout",
            "guidance_scale": _clamp(cfg_scale, 0.1, 20),
            "prompt_strength": _clamp(denoise, 0.01, 1),
            "num_inference_steps": int(_clamp(round(steps), 1, 150)),
            "num_outputs": int(_clamp(num_outputs, 1, 4)),
            "width": width,
            "height": height,
            "scheduler": "DPMSolverMultistep",
            "seed": seed,
        },
        timeout=timeout,
    )
    return poller.resolve_outputs(job)


class ReplicateProvider(BaseProvider):
    """Provider backed by FLUX Kontext Pro on Replicate.

    Attributes:
        poller: JobPoller used to run predictions
        staging: Service preparing input images, uploading through Replicate's
            files API unless another service is given
        timeout: Ceiling for one edit job in seconds
    """

    provider_type = ProviderType.REPLICATE
    model = FLUX_KONTEXT_PRO

    def __init__(
        self,
        api_key: str,
        session: Optional[requests.Session] = None,
        poller: Optional[JobPoller] = None,
        staging: Optional[ImageStagingService] = None,
        timeout: float = EDIT_TIMEOUT,
    ):
        super().__init__(api_key, session)
        self.poller = poller or JobPoller(self.api_key, session=self.session)
        self.staging = staging or ImageStagingService(ReplicateFileUploader(self.api_key))
        self.timeout = timeout
        logger.info(f"Initialized Replicate provider with model: {self.model}")

    @property
    def models_url(self) -> str:
        return f"{REPLICATE_API_BASE}/models"

    def _auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"}

    def generate_image(
        self,
        images: Sequence[ImageInput],
        prompt: str,
        resolution: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        use_grounding: bool = False,
    ) -> GenerationResult:
        """Edit the first input image with FLUX Kontext Pro.

        Resolution and grounding are not supported and are ignored.

        Raises:
            ValidationError: If no input image was given
            JobTimeoutError: If the job did not finish in time
            UpstreamError: If the job failed
        """
        if not images:
            raise ValidationError("Replicate requires an input image")
        if len(images) > 1:
            logger.warning(f"Replicate edits one image, ignoring {len(images) - 1} reference(s)")

        logger.info(f"Generating with Replicate: {prompt[:50]}...")
        input_image = self.staging.stage(images[0], ImageTransport.URL)
        output = run_flux_kontext_edit(
            self.poller,
            input_image,
            prompt,
            aspect_ratio=aspect_ratio if aspect_ratio and aspect_ratio != "Original" else None,
            timeout=self.timeout,
        )

        return GenerationResult(
            image_data=output.data,
            mime_type=output.mime_type,
            provider=self.name,
            prompt=prompt,
            metadata={"model": self.model, "aspect_ratio": aspect_ratio},
        )

    def enhance_prompt(self, short_prompt: str) -> str:
        return short_prompt
