"""xAI Grok image backend implementation."""

import logging
from typing import Any, Dict, Optional

import requests

from genbridge.core.models import ProviderType
from genbridge.providers.openai_compat import OpenAICompatibleProvider

logger = logging.getLogger(__name__)

XAI_API_BASE = "https://api.x.ai/v1"


class GrokProvider(OpenAICompatibleProvider):
    """Provider backed by xAI's Grok image model.

    The endpoint has no size or quality controls; outputs are JPEG.
    """

    provider_type = ProviderType.GROK

    image_model = "grok-2-image"
    chat_model = "grok-beta"
    vision_model = "grok-2-vision-1212"
    output_mime_type = "image/jpeg"

    def __init__(
        self,
        api_key: str,
        session: Optional[requests.Session] = None,
        base_url: str = XAI_API_BASE
    ):
        super().__init__(api_key, session)
        self.base_url = base_url.rstrip("/")
        logger.info(f"Initialized Grok provider with model: {self.image_model}")

    def _image_payload(
        self,
        prompt: str,
        resolution: Optional[str],
        aspect_ratio: Optional[str]
    ) -> Dict[str, Any]:
        return {
            "model": self.image_model,
            "prompt": prompt,
            "n": 1,
            "response_format": "b64_json",
        }
