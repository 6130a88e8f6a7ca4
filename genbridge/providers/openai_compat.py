"""Shared implementation for providers speaking the OpenAI REST dialect."""

import base64
import binascii
import logging
from abc import abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from genbridge.core.base_provider import BaseProvider
from genbridge.core.errors import GenBridgeError, UpstreamError
from genbridge.core.models import GenerationResult, ImageInput

logger = logging.getLogger(__name__)

ENHANCE_TEMPLATE = (
    "You are a professional prompt engineer. Take the following short image generation "
    "prompt and expand it into a detailed, vivid description that will produce better "
    "AI-generated images.\n\n"
    "Add specific details about visual style and aesthetics, lighting and atmosphere, "
    "colors and textures, composition and perspective.\n\n"
    "Keep the core idea but make it more descriptive and specific. Return ONLY the "
    "enhanced prompt, nothing else.\n\nShort prompt: \"{prompt}\"\n\nEnhanced prompt:"
)

DESCRIBE_TEMPLATE = (
    "The attached images are inputs for an image generator that only accepts text. "
    "Describe them precisely (subject, identity, pose, composition, colors, lighting, "
    "style) and merge that description with the user's request into a single image "
    "generation prompt. Return ONLY the prompt.\n\nUser request: \"{prompt}\""
)


class OpenAICompatibleProvider(BaseProvider):
    """Base for text-only image endpoints with a vision-capable chat endpoint.

    The image endpoint takes a prompt only. When input images are supplied,
    they are first turned into text by the backend's own chat endpoint; if
    that step fails the original prompt is used unchanged.
    """

    base_url: str
    image_model: str
    chat_model: str
    vision_model: str
    output_mime_type = "image/png"
    enhance_temperature = 0.7
    enhance_max_tokens: Optional[int] = None

    @property
    def models_url(self) -> str:
        return f"{self.base_url}/models"

    def _auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"}

    @abstractmethod
    def _image_payload(
        self,
        prompt: str,
        resolution: Optional[str],
        aspect_ratio: Optional[str]
    ) -> Dict[str, Any]:
        """Body for the images/generations endpoint."""

    def generate_image(
        self,
        images: Sequence[ImageInput],
        prompt: str,
        resolution: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        use_grounding: bool = False,
    ) -> GenerationResult:
        """Generate an image from text, describing any input images first.

        ``use_grounding`` is ignored; these backends have no grounding.

        Raises:
            CredentialError: If the key was rejected
            UpstreamError: If generation failed or returned no image
        """
        text_prompt = self._prompt_with_images(images, prompt) if images else prompt
        payload = self._image_payload(text_prompt, resolution, aspect_ratio)

        logger.info(f"Generating with {self.name} ({self.image_model}): {text_prompt[:50]}...")
        data = self._post_json(f"{self.base_url}/images/generations", payload, self.name)

        entry = (data.get("data") or [{}])[0] or {}
        encoded = entry.get("b64_json") or entry.get("b64")
        if not encoded:
            raise UpstreamError(f"No image data returned from {self.name}")
        try:
            image_data = base64.b64decode(encoded)
        except (binascii.Error, ValueError) as e:
            raise UpstreamError(f"{self.name} returned invalid base64 image data") from e

        logger.info(f"{self.name} generated image ({len(image_data)} bytes)")
        return GenerationResult(
            image_data=image_data,
            mime_type=self.output_mime_type,
            provider=self.name,
            prompt=text_prompt,
            metadata={
                "model": self.image_model,
                "original_prompt": prompt,
                "described_images": len(images) if text_prompt != prompt else 0,
                "revised_prompt": entry.get("revised_prompt"),
                **{k: v for k, v in payload.items() if k in ("size", "quality")},
            },
        )

    def enhance_prompt(self, short_prompt: str) -> str:
        try:
            enhanced = self._chat(
                self.chat_model,
                ENHANCE_TEMPLATE.format(prompt=short_prompt),
                temperature=self.enhance_temperature,
                max_tokens=self.enhance_max_tokens,
            )
        except GenBridgeError as e:
            logger.warning(f"{self.name} prompt enhancement failed: {e}")
            return short_prompt

        logger.debug(f"{self.name} enhanced prompt: {enhanced[:80]}")
        return enhanced or short_prompt

    def describe_images(self, images: Sequence[ImageInput], prompt: str) -> str:
        """Turn input images plus the user's request into one text prompt.

        Raises:
            CredentialError: If the key was rejected
            UpstreamError: If the vision call failed
        """
        content: List[Dict[str, Any]] = [
            {"type": "text", "text": DESCRIBE_TEMPLATE.format(prompt=prompt)}
        ]
        content.extend(
            {"type": "image_url", "image_url": {"url": image.to_data_url()}}
            for image in images
        )
        return self._chat(self.vision_model, content, temperature=0.2)

    def _prompt_with_images(self, images: Sequence[ImageInput], prompt: str) -> str:
        try:
            described = self.describe_images(images, prompt)
        except GenBridgeError as e:
            logger.warning(f"{self.name} could not describe input images, using original prompt: {e}")
            return prompt
        if not described:
            logger.warning(f"{self.name} returned an empty image description, using original prompt")
            return prompt
        return described

    def _chat(
        self,
        model: str,
        content: Any,
        temperature: float,
        max_tokens: Optional[int] = None
    ) -> str:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": content}],
            "temperature": temperature,
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens

        data = self._post_json(f"{self.base_url}/chat/completions", payload, f"{self.name} chat")

        choice = (data.get("choices") or [{}])[0] or {}
        message = choice.get("message") or {}
        return str(message.get("content") or "").strip()
