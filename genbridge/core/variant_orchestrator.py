"""Multi-variant style transfer orchestration.

One request produces K independently tracked variants. Single-output engines
are called sequentially, one variant at a time; multi-output engines get one
batched job whose outputs are mapped back onto the variant tasks. A failure
only ever affects the variant it happened in.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from genbridge.core.base_provider import BaseProvider
from genbridge.core.errors import CredentialError, ValidationError
from genbridge.core.job_poller import EDIT_TIMEOUT, STYLE_TRANSFER_TIMEOUT, JobPoller
from genbridge.core.models import (
    PROVIDER_METADATA,
    AnalysisResult,
    GenerationResult,
    ImageInput,
    ProviderSettings,
    ProviderType,
    StyleTransferEngine,
    StyleTransferRequest,
    VariantTask,
    clamp_strength,
)
from genbridge.core.provider_factory import ProviderFactory
from genbridge.providers.replicate import (
    FLUX_KONTEXT_MULTI_IMAGE,
    SDXL_STYLE_TRANSFER,
    run_flux_kontext_multi_image,
    run_sdxl_style_transfer,
)
from genbridge.utils.image_staging import ImageStagingService, ImageTransport, ReplicateFileUploader
from genbridge.utils.image_utils import create_thumbnail, load_image

logger = logging.getLogger(__name__)

DEFAULT_AVOID = "text, watermark, logo, blur, artifacts"
MAX_OUTPUT_SIDE = 1024

UpdateCallback = Callable[[VariantTask], None]
ActiveCheck = Callable[[], bool]


def build_style_prompt(
    strength: int,
    negative_prompt: Optional[str] = None,
    style_description: Optional[str] = None,
    variant: Optional[int] = None,
    variants: Optional[int] = None,
) -> str:
    """Build the style-transfer instruction sent to every engine.

    Args:
        strength: Style strength 0-100
        negative_prompt: Things to avoid; a generic list is used when empty
        style_description: Analysis notes about B, appended when given
        variant: 1-based variant ordinal
        variants: Total number of variants

    Returns:
        The prompt text
    """
    lines = [
        "Perform a style transfer: A=REFERENCE content, B=STYLE style.",
        "Keep identity, shapes and composition from A (pose, silhouette, perspective).",
        "Apply the visual style of B to A. Take the style directly from image B "
        "(do not describe it in text).",
        f"Style strength: {strength}/100.",
        f"Avoid: {negative_prompt or DEFAULT_AVOID}",
        "Do not render any text.",
    ]
    if style_description:
        lines.append(f"Style notes: {style_description}")
    if variant is not None and variants is not None:
        lines.append(f"Variant: {variant}/{variants}")
    return "\n".join(lines)


def output_size(image: ImageInput, max_side: int = MAX_OUTPUT_SIDE) -> Tuple[int, int]:
    """Output width and height following the content image's aspect ratio.

    The longer side is capped at ``max_side`` and both sides are multiples of 8.
    """
    width, height = load_image(image).size
    scale = min(1.0, max_side / max(width, height))
    return (
        max(64, int(width * scale) // 8 * 8),
        max(64, int(height * scale) // 8 * 8),
    )


class ArchiveSink(ABC):
    """Write-mostly store that receives every successful variant."""

    @abstractmethod
    def save(self, artifact: GenerationResult, thumbnail: ImageInput, metadata: Dict[str, Any]) -> None:
        """Persist one artifact with its thumbnail and metadata."""


class StyleEngine(ABC):
    """One concrete backend strategy for style transfer.

    Attributes:
        multi_output: Whether one call can produce several variants
        uses_style_notes: Whether analysis notes are appended to the prompt
    """

    multi_output = False
    uses_style_notes = True

    @abstractmethod
    def generate(
        self,
        request: StyleTransferRequest,
        prompt: str,
        count: int = 1,
        patches: Sequence[ImageInput] = (),
    ) -> List[GenerationResult]:
        """Produce ``count`` results (always one for single-output engines).

        ``patches`` are the close-up crops of B extracted once per request.
        """


class GeminiStyleEngine(StyleEngine):
    """Sends both images (and optional close-ups of B) to the Gemini image model."""

    uses_style_notes = False

    def __init__(self, provider: BaseProvider):
        self.provider = provider

    def generate(self, request, prompt, count=1, patches=()) -> List[GenerationResult]:
        images = [request.content_image, request.style_image, *patches]
        return [self.provider.generate_image(images, prompt, "1K", "Original", False)]


class FluxKontextStyleEngine(StyleEngine):
    """Two-image FLUX Kontext edit; B becomes a style board when patches are given."""

    def __init__(self, poller: JobPoller, staging: ImageStagingService, timeout: float = EDIT_TIMEOUT):
        self.poller = poller
        self.staging = staging
        self.timeout = timeout
        self._boards: Dict[str, ImageInput] = {}

    def _style_reference(self, style_image: ImageInput, patches: Sequence[ImageInput]) -> ImageInput:
        if not patches:
            return style_image
        key = style_image.content_key
        if key not in self._boards:
            self._boards[key] = self.staging.build_style_board([style_image, *patches[:2]])
        return self._boards[key]

    def generate(self, request, prompt, count=1, patches=()) -> List[GenerationResult]:
        output = run_flux_kontext_multi_image(
            self.poller,
            self.staging.stage(request.content_image, ImageTransport.URL),
            self.staging.stage(self._style_reference(request.style_image, patches), ImageTransport.URL),
            prompt,
            timeout=self.timeout,
        )
        return [GenerationResult(
            image_data=output.data,
            mime_type=output.mime_type,
            provider=PROVIDER_METADATA[ProviderType.REPLICATE].name,
            prompt=prompt,
            metadata={"model": FLUX_KONTEXT_MULTI_IMAGE},
        )]


class SdxlStyleEngine(StyleEngine):
    """SDXL image-prompt adapter; one job returns every variant."""

    multi_output = True

    def __init__(self, poller: JobPoller, staging: ImageStagingService, timeout: float = STYLE_TRANSFER_TIMEOUT):
        self.poller = poller
        self.staging = staging
        self.timeout = timeout

    def generate(self, request, prompt, count=1, patches=()) -> List[GenerationResult]:
        width, height = output_size(request.content_image)
        denoise = min(1.0, max(0.01, request.strength / 100))

        outputs = run_sdxl_style_transfer(
            self.poller,
            self.staging.stage(request.content_image, ImageTransport.URL),
            self.staging.stage(request.style_image, ImageTransport.URL),
            prompt,
            cfg_scale=7.0,
            denoise=denoise,
            steps=30,
            num_outputs=count,
            width=width,
            height=height,
            timeout=self.timeout,
        )
        return [
            GenerationResult(
                image_data=output.data,
                mime_type=output.mime_type,
                provider=PROVIDER_METADATA[ProviderType.REPLICATE].name,
                prompt=prompt,
                metadata={"model": SDXL_STYLE_TRANSFER, "width": width, "height": height},
            )
            for output in outputs
        ]


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__


def _notify(on_update: UpdateCallback, task: VariantTask) -> None:
    """Hand a task change to the consumer; a failing consumer never stops the run."""
    try:
        on_update(task)
    except Exception as e:
        logger.warning(f"Update callback failed for variant {task.index + 1}: {e}")


class VariantOrchestrator:
    """Runs style transfer requests as K independently tracked variants.

    Attributes:
        provider_settings: Read-only credential view
        archive_sink: Optional store receiving successful variants
        thumbnail_size: Longest side of archived thumbnails
        poll_interval: Seconds between polls of a Replicate job
        edit_timeout: Ceiling of one single-output Replicate job
        style_transfer_timeout: Ceiling of one batched Replicate job
    """

    def __init__(
        self,
        provider_settings: ProviderSettings,
        archive_sink: Optional[ArchiveSink] = None,
        staging: Optional[ImageStagingService] = None,
        poller: Optional[JobPoller] = None,
        providers: Optional[Dict[ProviderType, BaseProvider]] = None,
        thumbnail_size: int = 420,
        poll_interval: float = JobPoller.DEFAULT_POLL_INTERVAL,
        edit_timeout: float = EDIT_TIMEOUT,
        style_transfer_timeout: float = STYLE_TRANSFER_TIMEOUT,
    ):
        self.provider_settings = provider_settings
        self.archive_sink = archive_sink
        self.thumbnail_size = thumbnail_size
        self.poll_interval = poll_interval
        self.edit_timeout = edit_timeout
        self.style_transfer_timeout = style_transfer_timeout
        self._staging = staging
        self._poller = poller
        self._providers: Dict[ProviderType, BaseProvider] = dict(providers or {})

    @property
    def staging(self) -> ImageStagingService:
        if self._staging is None:
            token = self.provider_settings.api_key_for(ProviderType.REPLICATE)
            self._staging = ImageStagingService(ReplicateFileUploader(token) if token else None)
        return self._staging

    @property
    def poller(self) -> JobPoller:
        if self._poller is None:
            token = self.provider_settings.api_key_for(ProviderType.REPLICATE)
            if not token:
                raise CredentialError("Replicate API token is required for this style engine")
            self._poller = JobPoller(token, poll_interval=self.poll_interval)
        return self._poller

    def _gemini(self) -> BaseProvider:
        provider = self._providers.get(ProviderType.GEMINI)
        if provider is None:
            key = self.provider_settings.api_key_for(ProviderType.GEMINI)
            if not key:
                raise CredentialError("Gemini API key is required for style transfer")
            provider = ProviderFactory.create_provider(ProviderType.GEMINI, key)
            self._providers[ProviderType.GEMINI] = provider
        return provider

    def engine_for(self, engine: StyleTransferEngine) -> StyleEngine:
        if engine == StyleTransferEngine.GEMINI:
            return GeminiStyleEngine(self._gemini())
        if engine == StyleTransferEngine.REPLICATE_FLUX_KONTEXT_PRO:
            return FluxKontextStyleEngine(self.poller, self.staging, timeout=self.edit_timeout)
        return SdxlStyleEngine(self.poller, self.staging, timeout=self.style_transfer_timeout)

    def style_patches(self, request: StyleTransferRequest) -> List[ImageInput]:
        """Close-up crops of B, or none when the request turned them off."""
        if not request.use_style_patches:
            return []
        return self.staging.extract_style_patches(request.style_image)

    def analyze(
        self,
        request: StyleTransferRequest,
        patches: Optional[Sequence[ImageInput]] = None,
    ) -> AnalysisResult:
        """Ask the vision model for a recommended strength and style notes.

        Raises:
            CredentialError: If no Gemini key is configured or it was rejected
            UpstreamError: If the analysis failed
        """
        if patches is None:
            patches = self.style_patches(request)
        return self._gemini().analyze_style_transfer(request.content_image, request.style_image, patches)

    def run(
        self,
        request: StyleTransferRequest,
        on_update: Optional[UpdateCallback] = None,
        is_active: Optional[ActiveCheck] = None,
    ) -> List[VariantTask]:
        """Produce ``request.variants`` style-transfer variants.

        Args:
            request: The style transfer request
            on_update: Called with a task whenever it changes
            is_active: Returns False once the consumer has gone away; results
                arriving after that are dropped

        Returns:
            One task per variant, in order

        Raises:
            ValidationError: If either image is missing
            CredentialError: If the analysis step has no usable key
            UpstreamError: If the analysis step failed
        """
        if request.content_image is None or request.style_image is None:
            raise ValidationError("Both a reference image and a style image are required")

        on_update = on_update or (lambda task: None)
        is_active = is_active or (lambda: True)

        strength = clamp_strength(request.strength)
        patches = self.style_patches(request)
        analysis: Optional[AnalysisResult] = None
        if request.use_analysis:
            analysis = self.analyze(request, patches)
            strength = analysis.strength_value
            logger.info(f"Using analysed strength {strength} (requested {request.strength})")

        effective = request.model_copy(update={"strength": strength})
        engine = self.engine_for(request.engine)
        count = request.variants

        tasks = [
            VariantTask(
                index=i,
                request=effective,
                parameters=self._task_metadata(effective, analysis, i, count),
            )
            for i in range(count)
        ]
        for task in tasks:
            task.mark_loading()
            _notify(on_update, task)
        logger.info(f"Started {count} {request.engine.value} variant(s) at strength {strength}")

        style_notes = analysis.style_description if analysis and engine.uses_style_notes else None
        negative = analysis.negative_prompt if analysis else None
        prompt_args = (strength, negative, style_notes)

        if engine.multi_output:
            self._run_batched(engine, effective, tasks, prompt_args, patches, on_update, is_active)
        else:
            self._run_sequential(engine, effective, tasks, prompt_args, patches, on_update, is_active)
        return tasks

    def _run_sequential(self, engine, request, tasks, prompt_args, patches, on_update, is_active) -> None:
        count = len(tasks)
        for task in tasks:
            if not is_active():
                logger.info(f"Consumer went away, skipping variants {task.index + 1}-{count}")
                return

            prompt = build_style_prompt(*prompt_args, task.index + 1, count)
            try:
                result = engine.generate(request, prompt, patches=patches)[0]
            except Exception as e:
                logger.error(f"Variant {task.index + 1}/{count} failed: {e}")
                self._commit_error(task, _error_message(e), on_update, is_active)
                continue
            self._commit_success(task, result, on_update, is_active)

    def _run_batched(self, engine, request, tasks, prompt_args, patches, on_update, is_active) -> None:
        count = len(tasks)
        prompt = build_style_prompt(*prompt_args)
        try:
            results = engine.generate(request, prompt, count, patches=patches)
        except Exception as e:
            logger.error(f"Batched style transfer failed: {e}")
            for task in tasks:
                self._commit_error(task, _error_message(e), on_update, is_active)
            return

        if len(results) < count:
            logger.warning(f"Batched job returned {len(results)} of {count} outputs")
        for task in tasks:
            if task.index < len(results):
                self._commit_success(task, results[task.index], on_update, is_active)
            else:
                self._commit_error(
                    task, f"No output returned for variant {task.index + 1}", on_update, is_active
                )

    def _commit_success(self, task: VariantTask, result: GenerationResult, on_update, is_active) -> None:
        if not is_active():
            logger.info(f"Dropping late result for variant {task.index + 1}")
            return
        result.metadata.update(task.parameters)
        task.mark_success(result)
        _notify(on_update, task)
        self._archive(result, task.parameters)

    def _commit_error(self, task: VariantTask, message: str, on_update, is_active) -> None:
        if not is_active():
            logger.info(f"Dropping late error for variant {task.index + 1}")
            return
        task.mark_error(message)
        _notify(on_update, task)

    def _archive(self, result: GenerationResult, metadata: Dict[str, Any]) -> None:
        if self.archive_sink is None:
            return
        try:
            thumbnail = create_thumbnail(
                ImageInput(data=result.image_data, mime_type=result.mime_type), self.thumbnail_size
            )
            self.archive_sink.save(result, thumbnail, dict(metadata))
        except Exception as e:
            # Archival never blocks delivery
            logger.warning(f"Failed to archive variant {metadata.get('variant')}: {e}")

    @staticmethod
    def _task_metadata(
        request: StyleTransferRequest,
        analysis: Optional[AnalysisResult],
        index: int,
        count: int,
    ) -> Dict[str, Any]:
        return {
            "mode": "style-transfer",
            "strength": int(request.strength),
            "engine": request.engine.value,
            "style_description": analysis.style_description if analysis else None,
            "negative_prompt": analysis.negative_prompt if analysis else None,
            "variant": index + 1,
            "variants": count,
        }
