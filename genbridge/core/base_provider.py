"""Abstract base class for image generation providers."""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import requests

from genbridge.core.errors import ConfigurationError, CredentialError, UpstreamError
from genbridge.core.models import (
    PROVIDER_METADATA,
    GenerationRequest,
    GenerationResult,
    ImageInput,
    ProviderDescriptor,
    ProviderType,
)

logger = logging.getLogger(__name__)


class BaseProvider(ABC):
    """Uniform contract every generation backend implements.

    Each adapter owns its wire mapping privately, so callers can swap between
    Gemini, OpenAI, xAI and Replicate without changing their own code.

    Attributes:
        api_key: API key used to authenticate with the backend
        session: HTTP session used for every call to the backend
    """

    provider_type: ProviderType

    def __init__(self, api_key: str, session: Optional[requests.Session] = None):
        """Initialize the provider.

        Args:
            api_key: API key for the backend
            session: Optional pre-configured HTTP session

        Raises:
            ConfigurationError: If the API key is empty
        """
        if not api_key or not api_key.strip():
            raise ConfigurationError(f"API key is required for {self.provider_type.value} provider")
        self.api_key = api_key.strip()
        self.session = session or requests.Session()

    @abstractmethod
    def generate_image(
        self,
        images: Sequence[ImageInput],
        prompt: str,
        resolution: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        use_grounding: bool = False,
    ) -> GenerationResult:
        """Generate or edit an image from input images and a text prompt.

        Args:
            images: Input images; the first one is the image to edit, the
                others serve as references
            prompt: Description of the desired result
            resolution: Target resolution (e.g. "1K", "2K", "4K")
            aspect_ratio: Target aspect ratio (e.g. "1:1", "16:9")
            use_grounding: Whether to use search grounding when supported

        Returns:
            GenerationResult with the image bytes and optional grounding metadata

        Raises:
            CredentialError: If the backend rejected the credential
            ValidationError: If the inputs are unusable for this backend
            UpstreamError: If the backend call failed
        """

    @abstractmethod
    def enhance_prompt(self, short_prompt: str) -> str:
        """Expand a short prompt into a more detailed description.

        Returns the input unchanged when the backend cannot help.
        """

    def generate(self, request: GenerationRequest) -> GenerationResult:
        """Run a GenerationRequest through generate_image.

        Images beyond the provider's limit are dropped, and grounding is only
        requested from providers that support it.
        """
        limit = self.descriptor.max_images
        images = list(request.images)
        if len(images) > limit:
            logger.warning(f"{self.name} accepts {limit} image(s), dropping {len(images) - limit}")
            images = images[:limit]

        use_grounding = request.use_grounding
        if use_grounding and not self.descriptor.supports_grounding:
            logger.warning(f"{self.name} does not support grounding, ignoring it")
            use_grounding = False

        return self.generate_image(
            images,
            request.prompt,
            resolution=request.resolution,
            aspect_ratio=request.aspect_ratio,
            use_grounding=use_grounding,
        )

    def health_check(self) -> bool:
        """Check whether the backend accepts the configured credential.

        Returns:
            True if the model listing endpoint answered with 2xx, False otherwise
        """
        try:
            response = self.session.get(self.models_url, headers=self._auth_headers(), timeout=12)
            return response.ok
        except requests.RequestException as e:
            logger.warning(f"Health check failed for {self.name}: {e}")
            return False

    @property
    def descriptor(self) -> ProviderDescriptor:
        return PROVIDER_METADATA[self.provider_type]

    @property
    def name(self) -> str:
        """Human-readable provider name."""
        return self.descriptor.name

    @property
    @abstractmethod
    def models_url(self) -> str:
        """Endpoint listing the models visible to the credential."""

    @abstractmethod
    def _auth_headers(self) -> dict:
        """Headers authenticating a request to the backend."""

    def _post_json(self, url: str, payload: dict, context: str) -> dict:
        """POST a JSON payload and return the decoded 2xx response.

        Raises:
            UpstreamError: On transport failure, non-2xx status or a non-JSON body
        """
        try:
            response = self.session.post(url, json=payload, headers=self._auth_headers())
        except requests.RequestException as e:
            logger.error(f"{context} request failed: {e}")
            raise UpstreamError(f"{context} request failed: {e}") from e
        return self._decode(response, context)

    def _decode(self, response: requests.Response, context: str) -> dict:
        if not response.ok:
            detail = _error_detail(response)
            logger.error(f"{context} returned {response.status_code}: {detail}")
            if response.status_code == 401:
                raise CredentialError(f"{self.name} rejected the API key: {detail}")
            raise UpstreamError(f"{context} error ({response.status_code}): {detail}", response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(f"{context} returned a non-JSON body") from e

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}')"


def _error_detail(response: requests.Response) -> str:
    """Best human-readable message from an error response."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:500] or response.reason or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if data.get("detail"):
            return str(data["detail"])
    return response.reason or f"HTTP {response.status_code}"
