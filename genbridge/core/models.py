"""Core data models for provider orchestration."""

import base64
import hashlib
import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from genbridge.core.errors import ValidationError

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[^;,]+)?(;[^,]*)?;base64,(?P<data>.*)$", re.DOTALL)


class ProviderType(str, Enum):
    """Backends reachable through the uniform generation contract."""
    GEMINI = "gemini"
    CHATGPT = "chatgpt"
    GROK = "grok"
    REPLICATE = "replicate"


class ProviderDescriptor(BaseModel):
    """Static capability metadata for one provider type."""

    model_config = ConfigDict(frozen=True)

    type: ProviderType
    name: str
    requires_api_key: bool = True
    supports_grounding: bool = False
    max_images: int = Field(default=1, ge=0)


PROVIDER_METADATA: Dict[ProviderType, ProviderDescriptor] = {
    ProviderType.GEMINI: ProviderDescriptor(
        type=ProviderType.GEMINI,
        name="Gemini (Nano Banana Pro)",
        supports_grounding=True,
        max_images=10,
    ),
    ProviderType.CHATGPT: ProviderDescriptor(
        type=ProviderType.CHATGPT,
        name="ChatGPT (OpenAI)",
        max_images=1,
    ),
    ProviderType.GROK: ProviderDescriptor(
        type=ProviderType.GROK,
        name="Grok (xAI)",
        max_images=1,
    ),
    ProviderType.REPLICATE: ProviderDescriptor(
        type=ProviderType.REPLICATE,
        name="FLUX (Replicate)",
        max_images=2,
    ),
}


class ProviderConfig(BaseModel):
    """Credential entry for one provider."""
    api_key: str = ""
    enabled: bool = True


class ProviderSettings(BaseModel):
    """Read-only view of the credential store, keyed by provider type."""

    providers: Dict[ProviderType, ProviderConfig] = Field(default_factory=dict)

    def get(self, provider_type: ProviderType) -> Optional[ProviderConfig]:
        return self.providers.get(ProviderType(provider_type))

    def api_key_for(self, provider_type: ProviderType) -> Optional[str]:
        """Return the stripped key for a provider, or None when not configured."""
        config = self.get(provider_type)
        if config is None or not config.enabled:
            return None
        key = (config.api_key or "").strip()
        return key or None


class ImageInput(BaseModel):
    """An in-memory image together with its mime type."""

    model_config = ConfigDict(frozen=True)

    data: bytes = Field(..., min_length=1, description="Raw image bytes")
    mime_type: str = Field(default="image/png", description="Image mime type")

    @classmethod
    def from_data_url(cls, data_url: str) -> "ImageInput":
        """Parse a ``data:<mime>;base64,<payload>`` string.

        Raises:
            ValidationError: If the string is not a base64 data URL
        """
        match = _DATA_URL_RE.match(data_url.strip())
        if not match:
            raise ValidationError("Expected a base64 data URL")
        try:
            payload = base64.b64decode(match.group("data"), validate=True)
        except ValueError as e:
            raise ValidationError(f"Invalid base64 payload in data URL: {e}") from e
        return cls(data=payload, mime_type=match.group("mime") or "image/jpeg")

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"

    @property
    def content_key(self) -> str:
        """Stable hash of the image bytes, used to dedupe uploads."""
        return hashlib.sha256(self.data).hexdigest()


class GenerationRequest(BaseModel):
    """One user generation action, immutable once created.

    Attributes:
        images: Ordered input images; the first one is the image to edit
        prompt: Text description of the desired output
        resolution: Target resolution (e.g. "1K", "2K", "4K")
        aspect_ratio: Target aspect ratio (e.g. "1:1", "16:9", "Original")
        use_grounding: Whether to request search-augmented generation
        provider: Provider selected for this request
    """

    model_config = ConfigDict(frozen=True)

    images: List[ImageInput] = Field(default_factory=list)
    prompt: str = Field(..., min_length=1, description="Text prompt")
    resolution: Optional[str] = None
    aspect_ratio: Optional[str] = None
    use_grounding: bool = False
    provider: ProviderType = ProviderType.GEMINI


class GenerationResult(BaseModel):
    """Output of a single generation call."""

    image_data: bytes = Field(..., description="Primary output image bytes")
    mime_type: str = Field(default="image/png")
    grounding_metadata: Optional[Dict[str, Any]] = None
    additional_images: List[bytes] = Field(
        default_factory=list,
        description="Extra outputs when one job produced several images"
    )
    provider: str = Field(..., description="Name of the provider that produced the image")
    prompt: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)
    success: bool = True

    @property
    def all_images(self) -> List[bytes]:
        return [self.image_data, *self.additional_images]

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.image_data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


class JobStatus(str, Enum):
    """Lifecycle states of a queue-based backend job."""
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED)


class JobUrls(BaseModel):
    model_config = ConfigDict(extra="ignore")

    get: Optional[str] = None
    cancel: Optional[str] = None


class AsyncJob(BaseModel):
    """A queue-based backend's unit of work, as returned by submit and poll."""

    model_config = ConfigDict(extra="ignore")

    id: str
    status: JobStatus = JobStatus.STARTING
    output: Optional[Union[str, List[Optional[str]]]] = None
    error: Optional[str] = None
    urls: JobUrls = Field(default_factory=JobUrls)

    @property
    def poll_url(self) -> Optional[str]:
        return self.urls.get

    def output_urls(self) -> List[str]:
        """Normalize ``output`` to a list of non-empty URL strings."""
        if self.output is None:
            return []
        items = self.output if isinstance(self.output, list) else [self.output]
        return [item for item in items if isinstance(item, str) and item]


class FieldKind(str, Enum):
    """Bucket a schema field is classified into."""
    IMAGE = "image"
    TEXT = "text"
    PARAMETER = "parameter"


class SchemaField(BaseModel):
    """A backend-declared model input together with its classification."""

    name: str
    type: Optional[str] = None
    item_type: Optional[str] = None
    enum: Optional[List[Any]] = None
    format: Optional[str] = None
    required: bool = False
    description: Optional[str] = None
    default: Any = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    classification: FieldKind = FieldKind.PARAMETER

    def to_input_dict(self) -> Dict[str, Any]:
        """Wire shape of an entry in the ``inputs`` list."""
        return {
            "name": self.name,
            "type": self.classification.value,
            "required": self.required,
            "label": self.name.replace("_", " ").title(),
            "description": self.description,
            "is_array": self.type == "array",
        }

    def to_parameter_dict(self) -> Dict[str, Any]:
        """Wire shape of an entry in the ``parameters`` list."""
        data: Dict[str, Any] = {
            "name": self.name,
            "type": self.type or "string",
            "required": self.required,
        }
        for key in ("description", "default", "minimum", "maximum", "enum", "format"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


class ModelSchema(BaseModel):
    """Classified schema of one model."""

    model_config = ConfigDict(protected_namespaces=())

    provider: str
    model_id: str
    inputs: List[SchemaField] = Field(default_factory=list)
    parameters: List[SchemaField] = Field(default_factory=list)
    cached: bool = False

    @property
    def image_inputs(self) -> List[SchemaField]:
        return [f for f in self.inputs if f.classification == FieldKind.IMAGE]

    @property
    def text_inputs(self) -> List[SchemaField]:
        return [f for f in self.inputs if f.classification == FieldKind.TEXT]


class SchemaResponse(BaseModel):
    """Response shape of the schema introspection contract."""

    success: bool
    cached: bool = False
    inputs: List[Dict[str, Any]] = Field(default_factory=list)
    parameters: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None
    status_code: int = 200

    @classmethod
    def from_schema(cls, schema: ModelSchema) -> "SchemaResponse":
        return cls(
            success=True,
            cached=schema.cached,
            inputs=[f.to_input_dict() for f in schema.inputs],
            parameters=[f.to_parameter_dict() for f in schema.parameters],
        )


class AnalysisResult(BaseModel):
    """Vision-model recommendation used to tune a style transfer."""

    recommended_strength: float = Field(..., ge=0.0, le=100.0)
    style_description: str = ""
    negative_prompt: str = ""

    @field_validator("recommended_strength", mode="before")
    @classmethod
    def _clamp_strength(cls, value: Any) -> float:
        return max(0.0, min(100.0, float(value)))

    @property
    def strength_value(self) -> int:
        """Recommended strength rounded half-up and clamped to [0, 100]."""
        return clamp_strength(self.recommended_strength)


def clamp_strength(value: float) -> int:
    """Round a strength to the nearest integer (halves up) within [0, 100]."""
    return max(0, min(100, int(float(value) + 0.5)))


class StyleTransferEngine(str, Enum):
    """Concrete backend strategy for a style transfer."""
    GEMINI = "gemini"
    REPLICATE_FLUX_KONTEXT_PRO = "replicate_flux_kontext_pro"
    REPLICATE_IP_ADAPTER = "replicate_ip_adapter"


class StyleTransferRequest(BaseModel):
    """A user request for K style-transfer variants.

    Attributes:
        content_image: Reference image providing identity and composition
        style_image: Image providing the visual style
        strength: Style strength from 0 to 100
        variants: Number of outputs to produce (1-3)
        engine: Backend strategy used to produce the outputs
        use_analysis: Run the vision analysis pre-step first
        use_style_patches: Send close-up crops of the style image along
    """

    model_config = ConfigDict(frozen=True)

    content_image: Optional[ImageInput] = None
    style_image: Optional[ImageInput] = None
    strength: float = Field(default=60, ge=0, le=100)
    variants: int = Field(default=1, ge=1, le=3)
    engine: StyleTransferEngine = StyleTransferEngine.GEMINI
    use_analysis: bool = False
    use_style_patches: bool = True


class VariantStatus(str, Enum):
    """Status of one variant task."""
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class VariantTask(BaseModel):
    """One of K independently tracked outputs of a single request.

    The status moves idle -> loading -> (success | error) and never back.
    """

    id: str = Field(default_factory=lambda: f"st-{uuid.uuid4().hex}")
    index: int = Field(..., ge=0)
    status: VariantStatus = VariantStatus.IDLE
    result: Optional[GenerationResult] = None
    error: Optional[str] = None
    request: Optional[StyleTransferRequest] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_done(self) -> bool:
        return self.status in (VariantStatus.SUCCESS, VariantStatus.ERROR)

    def mark_loading(self) -> None:
        if self.status != VariantStatus.IDLE:
            raise ValueError(f"Task {self.id} cannot start from status {self.status.value}")
        self.status = VariantStatus.LOADING

    def mark_success(self, result: GenerationResult) -> None:
        self._finish(VariantStatus.SUCCESS)
        self.result = result

    def mark_error(self, message: str) -> None:
        self._finish(VariantStatus.ERROR)
        self.error = message

    def _finish(self, status: VariantStatus) -> None:
        if self.status != VariantStatus.LOADING:
            raise ValueError(
                f"Task {self.id} cannot move to {status.value} from {self.status.value}"
            )
        self.status = status
