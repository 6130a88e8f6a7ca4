"""OpenAI image backend implementation."""

import logging
from typing import Any, Dict, Optional

import requests

from genbridge.core.models import ProviderType
from genbridge.providers.openai_compat import OpenAICompatibleProvider

logger = logging.getLogger(__name__)

OPENAI_API_BASE = "https://api.openai.com/v1"

PORTRAIT_RATIOS = ("9:16", "2:3", "4:5")
LANDSCAPE_RATIOS = ("16:9", "3:2", "5:4")


def map_aspect_ratio_to_size(aspect_ratio: Optional[str]) -> str:
    """Map an aspect ratio onto one of the sizes the image endpoint accepts."""
    if aspect_ratio in PORTRAIT_RATIOS:
        return "1024x1536"
    if aspect_ratio in LANDSCAPE_RATIOS:
        return "1536x1024"
    return "1024x1024"


class ChatGPTProvider(OpenAICompatibleProvider):
    """Provider backed by OpenAI's GPT Image models."""

    provider_type = ProviderType.CHATGPT

    image_model = "gpt-image-1.5"
    chat_model = "gpt-5.2-chat-latest"
    vision_model = "gpt-5.2-chat-latest"
    enhance_temperature = 0.4
    enhance_max_tokens = 350

    def __init__(
        self,
        api_key: str,
        session: Optional[requests.Session] = None,
        base_url: str = OPENAI_API_BASE
    ):
        super().__init__(api_key, session)
        self.base_url = base_url.rstrip("/")
        logger.info(f"Initialized ChatGPT provider with model: {self.image_model}")

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
            "size": map_aspect_ratio_to_size(aspect_ratio),
            "quality": "high",
        }
