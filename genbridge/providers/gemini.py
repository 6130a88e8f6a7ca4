"""Gemini REST backend implementation."""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

from genbridge.core.base_provider import BaseProvider, _error_detail
from genbridge.core.errors import CredentialError, UpstreamError
from genbridge.core.models import (
    AnalysisResult,
    GenerationResult,
    ImageInput,
    ProviderType,
)

logger = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

# Gemini answers with this when the key's project cannot see the model,
# which in practice means the selected key is wrong.
ENTITY_NOT_FOUND = "Requested entity was not found"

SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_ONLY_HIGH"}
    for category in (
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_HARASSMENT",
    )
]

ENHANCE_INSTRUCTIONS = (
    "You are a professional prompt engineer. Take the following short image generation "
    "prompt and expand it into a detailed, vivid description. Add specific details about "
    "visual style, lighting, colors, textures, and composition. Keep the core idea. "
    "Return ONLY the enhanced prompt.\n\nShort prompt: \"{prompt}\"\n\nEnhanced prompt:"
)

ANALYSIS_INSTRUCTIONS = (
    "You are preparing a style transfer. Image A is the REFERENCE (content to keep), "
    "image B is the STYLE source. Any further images are close-up crops of B.\n"
    "Return JSON with:\n"
    "- recommendedStrength: number 0-100, how strongly B's style can be applied to A "
    "without losing A's identity and composition\n"
    "- styleDescription: concise description of B's medium, palette, brushwork and lighting\n"
    "- negativePrompt: comma separated list of artifacts to avoid"
)

ANALYSIS_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "recommendedStrength": {"type": "NUMBER"},
        "styleDescription": {"type": "STRING"},
        "negativePrompt": {"type": "STRING"},
    },
    "required": ["recommendedStrength", "styleDescription", "negativePrompt"],
}


class GeminiProvider(BaseProvider):
    """Provider backed by Gemini image models.

    Gemini accepts every input image inline, supports search grounding and
    returns the result as inline base64 data.
    """

    provider_type = ProviderType.GEMINI

    IMAGE_MODEL = "gemini-3-pro-image-preview"
    TEXT_MODEL = "gemini-2.5-flash"
    ANALYSIS_MODEL = "gemini-3-pro-preview"

    def __init__(
        self,
        api_key: str,
        session: Optional[requests.Session] = None,
        api_base: str = GEMINI_API_BASE
    ):
        super().__init__(api_key, session)
        self.api_base = api_base.rstrip("/")
        logger.info(f"Initialized Gemini provider with model: {self.IMAGE_MODEL}")

    @property
    def models_url(self) -> str:
        return f"{self.api_base}/models"

    def _auth_headers(self) -> dict:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    def generate_image(
        self,
        images: Sequence[ImageInput],
        prompt: str,
        resolution: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        use_grounding: bool = False,
    ) -> GenerationResult:
        """Generate or edit an image with Gemini.

        The first image is the one to edit; the rest are references.

        Raises:
            CredentialError: If Gemini reports the key's entity as not found
            UpstreamError: If the call failed or returned no image
        """
        logger.info(
            f"Generating with Gemini: {len(images)} image(s), prompt: {prompt[:50]}..."
        )

        parts: List[Dict[str, Any]] = [_inline_part(image) for image in images]
        parts.append({"text": prompt})

        generation_config: Dict[str, Any] = {"responseModalities": ["IMAGE"]}
        image_config: Dict[str, str] = {}
        if resolution:
            image_config["imageSize"] = resolution
        if aspect_ratio and aspect_ratio != "Original":
            image_config["aspectRatio"] = aspect_ratio
        if image_config:
            generation_config["imageConfig"] = image_config

        body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": generation_config,
            "safetySettings": SAFETY_SETTINGS,
        }
        if use_grounding:
            body["tools"] = [{"googleSearch": {}}]

        data = self._generate_content(self.IMAGE_MODEL, body)
        candidate = (data.get("candidates") or [{}])[0] or {}
        inline = _first_inline_data(candidate)

        if not inline:
            finish_reason = candidate.get("finishReason")
            logger.warning(f"Gemini returned no image (finish_reason={finish_reason})")
            message = candidate.get("finishMessage") or "No image data returned from the model."
            if finish_reason and not candidate.get("finishMessage"):
                message = f"No image data returned from the model (finish_reason={finish_reason})"
            raise UpstreamError(message)

        image = ImageInput.from_data_url(
            f"data:{inline.get('mimeType') or 'image/png'};base64,{inline['data']}"
        )
        logger.info(f"Gemini generated image ({len(image.data)} bytes)")

        return GenerationResult(
            image_data=image.data,
            mime_type=image.mime_type,
            grounding_metadata=candidate.get("groundingMetadata"),
            provider=self.name,
            prompt=prompt,
            metadata={
                "model": self.IMAGE_MODEL,
                "resolution": resolution,
                "aspect_ratio": aspect_ratio,
                "use_grounding": use_grounding,
                "finish_reason": candidate.get("finishReason"),
            },
        )

    def enhance_prompt(self, short_prompt: str) -> str:
        body = {
            "contents": [{"role": "user", "parts": [
                {"text": ENHANCE_INSTRUCTIONS.format(prompt=short_prompt)}
            ]}],
            "generationConfig": {"temperature": 0.7},
        }
        try:
            data = self._generate_content(self.TEXT_MODEL, body)
        except (UpstreamError, CredentialError) as e:
            logger.warning(f"Prompt enhancement failed, keeping original prompt: {e}")
            return short_prompt

        enhanced = _first_text(data).strip()
        logger.debug(f"Enhanced prompt: {enhanced[:80]}")
        return enhanced or short_prompt

    def analyze_style_transfer(
        self,
        content_image: ImageInput,
        style_image: ImageInput,
        patches: Sequence[ImageInput] = (),
        high_detail: bool = False
    ) -> AnalysisResult:
        """Ask the vision model how to transfer ``style_image`` onto ``content_image``.

        Args:
            content_image: Reference image A
            style_image: Style image B
            patches: Optional close-up crops of B
            high_detail: Request high media resolution for the inputs

        Returns:
            AnalysisResult with recommended strength, style description and
            things to avoid

        Raises:
            CredentialError: If the key was rejected
            UpstreamError: If the call failed or the answer was not valid JSON
        """
        parts = [{"text": "A (REFERENCE):"}, _inline_part(content_image),
                 {"text": "B (STYLE):"}, _inline_part(style_image)]
        if patches:
            parts.append({"text": "Close-ups of B:"})
            parts.extend(_inline_part(patch) for patch in patches)
        parts.append({"text": ANALYSIS_INSTRUCTIONS})

        generation_config: Dict[str, Any] = {
            "responseMimeType": "application/json",
            "responseSchema": ANALYSIS_SCHEMA,
            "temperature": 0.2,
        }
        if high_detail:
            generation_config["mediaResolution"] = "MEDIA_RESOLUTION_HIGH"

        data = self._generate_content(self.ANALYSIS_MODEL, {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": generation_config,
        })

        text = _first_text(data)
        try:
            payload = json.loads(text)
            result = AnalysisResult(
                recommended_strength=payload["recommendedStrength"],
                style_description=str(payload.get("styleDescription") or "").strip(),
                negative_prompt=str(payload.get("negativePrompt") or "").strip(),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Could not parse style analysis: {text[:200]}")
            raise UpstreamError(f"Style analysis returned an invalid answer: {e}") from e

        logger.info(f"Style analysis recommends strength {result.recommended_strength}")
        return result

    def _generate_content(self, model: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.api_base}/models/{model}:generateContent"
        try:
            response = self.session.post(url, json=body, headers=self._auth_headers())
        except requests.RequestException as e:
            logger.error(f"Gemini request failed: {e}")
            raise UpstreamError(f"Failed to generate image: {e}") from e

        if not response.ok:
            detail = _error_detail(response)
            logger.error(f"Gemini API error {response.status_code}: {detail}")
            if ENTITY_NOT_FOUND in detail or ENTITY_NOT_FOUND in (response.text or ""):
                raise CredentialError(
                    "API_KEY_NOT_FOUND: the selected Gemini key cannot access this model"
                )
            if response.status_code in (401, 403):
                raise CredentialError(f"Gemini rejected the API key: {detail}")
            raise UpstreamError(f"Failed to generate image: {detail}", response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError("Gemini returned a non-JSON body") from e


def _inline_part(image: ImageInput) -> Dict[str, Any]:
    return {"inlineData": {"mimeType": image.mime_type, "data": image.to_base64()}}


def _first_inline_data(candidate: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for part in (candidate.get("content") or {}).get("parts") or []:
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            return inline
    return None


def _first_text(data: Dict[str, Any]) -> str:
    candidate = (data.get("candidates") or [{}])[0] or {}
    texts = [
        part["text"] for part in (candidate.get("content") or {}).get("parts") or []
        if isinstance(part.get("text"), str)
    ]
    return "".join(texts)
