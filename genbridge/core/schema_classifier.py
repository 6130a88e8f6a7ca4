"""Model schema introspection and field classification.

Fetches a model's declared input schema from Replicate or fal and partitions
its fields into image inputs, text inputs and plain parameters so a caller can
wire images and prompts into the right slots and render the rest as a form.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import replicate
import requests
from replicate.exceptions import ReplicateError

from genbridge.core.errors import CredentialError, GenBridgeError, UpstreamError, ValidationError
from genbridge.core.models import FieldKind, ModelSchema, SchemaField, SchemaResponse

logger = logging.getLogger(__name__)

FAL_API_BASE = "https://api.fal.ai/v1"

SUPPORTED_SCHEMA_PROVIDERS = ("replicate", "fal")

# Output-shape settings that merely mention an image
EXCLUDED_FIELDS = frozenset({"image_size", "image_resolution", "image_format"})

IMAGE_NAME_PATTERNS = (
    "image_url",
    "image_input",
    "input_image",
    "reference_image",
    "style_image",
    "init_image",
    "control_image",
    "mask_image",
    "image_prompt",
    "first_frame",
    "last_frame",
    "start_image",
    "end_image",
)
IMAGE_NAME_TOKENS = frozenset({"image", "images", "img", "imgs"})

TEXT_NAME_SUFFIX = "_prompt"


def _is_text_like(field_type: Optional[str], item_type: Optional[str]) -> bool:
    if field_type == "string":
        return True
    if field_type == "array":
        return item_type is None or item_type == "string"
    return False


def _matches_image_name(name: str) -> bool:
    if any(pattern in name for pattern in IMAGE_NAME_PATTERNS):
        return True
    return any(token in IMAGE_NAME_TOKENS for token in name.split("_"))


def classify_field(
    name: str,
    field_type: Optional[str],
    item_type: Optional[str] = None,
    has_enum: bool = False,
) -> FieldKind:
    """Classify one schema field. The first matching rule wins.

    Args:
        name: Field name as declared by the backend
        field_type: Declared JSON schema type
        item_type: Declared ``items.type`` for arrays, if any
        has_enum: Whether the field is restricted to a set of choices

    Returns:
        The bucket the field belongs to; unmatched fields are parameters
    """
    key = name.lower()

    if key in EXCLUDED_FIELDS:
        return FieldKind.PARAMETER

    if not _is_text_like(field_type, item_type):
        return FieldKind.PARAMETER

    # A fixed set of choices is a setting, never an image reference
    if not has_enum and _matches_image_name(key):
        return FieldKind.IMAGE

    if key == "prompt" or key.endswith(TEXT_NAME_SUFFIX):
        return FieldKind.TEXT

    return FieldKind.PARAMETER


def _resolve_ref(root: Dict[str, Any], ref: str) -> Dict[str, Any]:
    node: Any = root
    for part in ref.lstrip("#/").split("/"):
        if not isinstance(node, dict):
            return {}
        node = node.get(part)
    return node if isinstance(node, dict) else {}


def _flatten(root: Dict[str, Any], prop: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``$ref`` and ``allOf`` indirections into one property dict."""
    merged = {k: v for k, v in prop.items() if k not in ("$ref", "allOf")}
    targets = []
    if "$ref" in prop:
        targets.append(prop["$ref"])
    for entry in prop.get("allOf") or []:
        if isinstance(entry, dict):
            if "$ref" in entry:
                targets.append(entry["$ref"])
            else:
                for k, v in entry.items():
                    merged.setdefault(k, v)

    for ref in targets:
        for k, v in _resolve_ref(root, ref).items():
            merged.setdefault(k, v)
    return merged


def parse_input_schema(root: Dict[str, Any], schema: Dict[str, Any]) -> Tuple[List[SchemaField], List[SchemaField]]:
    """Turn an OpenAPI object schema into classified inputs and parameters.

    Args:
        root: Whole OpenAPI document, used to resolve references
        schema: The object schema describing the model input

    Returns:
        Tuple of (inputs, parameters), ordered by ``x-order`` when declared
    """
    properties = schema.get("properties") or {}
    required = set(schema.get("required") or [])

    entries = []
    for position, (name, raw) in enumerate(properties.items()):
        prop = _flatten(root, raw if isinstance(raw, dict) else {})
        order = prop.get("x-order", position)
        entries.append((order, position, name, prop))
    entries.sort(key=lambda entry: (entry[0], entry[1]))

    inputs: List[SchemaField] = []
    parameters: List[SchemaField] = []
    for _, _, name, prop in entries:
        items = prop.get("items") if isinstance(prop.get("items"), dict) else {}
        field_type = prop.get("type") or ("string" if "enum" in prop else None)
        item_type = items.get("type")
        enum = prop.get("enum")

        field = SchemaField(
            name=name,
            type=field_type,
            item_type=item_type,
            enum=enum,
            format=prop.get("format") or items.get("format"),
            required=name in required,
            description=prop.get("description"),
            default=prop.get("default"),
            minimum=prop.get("minimum"),
            maximum=prop.get("maximum"),
            classification=classify_field(name, field_type, item_type, has_enum=bool(enum)),
        )
        if field.classification == FieldKind.PARAMETER:
            parameters.append(field)
        else:
            inputs.append(field)

    return inputs, parameters


class SchemaClassifier:
    """Fetches, classifies and caches model input schemas.

    Attributes:
        api_keys: Credential per schema provider ("replicate", "fal")
        session: HTTP session used for the fal REST API
    """

    def __init__(
        self,
        api_keys: Dict[str, Optional[str]],
        session: Optional[requests.Session] = None,
        replicate_client_factory: Optional[Callable[[str], Any]] = None,
    ):
        self.api_keys = {k: (v or "").strip() for k, v in api_keys.items()}
        self.session = session or requests.Session()
        self._replicate_client_factory = replicate_client_factory or (
            lambda token: replicate.Client(api_token=token)
        )
        self._cache: Dict[Tuple[str, str], ModelSchema] = {}

    def clear_cache(self) -> None:
        self._cache.clear()

    def get_model_schema(self, provider: Optional[str], model_id: str) -> ModelSchema:
        """Return the classified schema for a model, from cache when possible.

        Raises:
            ValidationError: If the provider is missing or unsupported
            CredentialError: If no key is configured for the provider
            UpstreamError: If the schema could not be fetched
        """
        provider = (provider or "").strip().lower()
        if provider not in SUPPORTED_SCHEMA_PROVIDERS:
            raise ValidationError(
                f"Invalid or missing provider. Expected one of: {', '.join(SUPPORTED_SCHEMA_PROVIDERS)}"
            )

        cache_key = (provider, model_id)
        cached = self._cache.get(cache_key)
        if cached is not None:
            logger.debug(f"Schema cache hit for {provider}:{model_id}")
            return cached.model_copy(update={"cached": True}, deep=True)

        api_key = self.api_keys.get(provider)
        if not api_key:
            label = "Replicate" if provider == "replicate" else "fal"
            raise CredentialError(f"{label} API key required")

        logger.info(f"Fetching schema for {provider}:{model_id}")
        if provider == "replicate":
            root, input_schema = self._fetch_replicate_schema(api_key, model_id)
        else:
            root, input_schema = self._fetch_fal_schema(api_key, model_id)

        inputs, parameters = parse_input_schema(root, input_schema)
        schema = ModelSchema(provider=provider, model_id=model_id, inputs=inputs, parameters=parameters)
        self._cache[cache_key] = schema
        logger.info(f"Classified {model_id}: {len(inputs)} input(s), {len(parameters)} parameter(s)")
        return schema.model_copy(deep=True)

    def describe_model(self, provider: Optional[str], model_id: str) -> SchemaResponse:
        """Wire-level wrapper around get_model_schema."""
        try:
            return SchemaResponse.from_schema(self.get_model_schema(provider, model_id))
        except ValidationError as e:
            return SchemaResponse(success=False, error=str(e), status_code=400)
        except CredentialError as e:
            return SchemaResponse(success=False, error=str(e), status_code=401)
        except GenBridgeError as e:
            logger.error(f"Schema lookup for {model_id} failed: {e}")
            return SchemaResponse(success=False, error=str(e), status_code=500)

    def _fetch_replicate_schema(self, api_key: str, model_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        name, _, version_id = model_id.partition(":")
        client = self._replicate_client_factory(api_key)
        try:
            model = client.models.get(name)
            version = model.versions.get(version_id) if version_id else model.latest_version
        except ReplicateError as e:
            logger.error(f"Replicate model lookup failed for {model_id}: {e}")
            raise UpstreamError(f"Failed to fetch schema for {model_id}: {e}", getattr(e, "status", None)) from e

        root = getattr(version, "openapi_schema", None) or {}
        input_schema = ((root.get("components") or {}).get("schemas") or {}).get("Input")
        if not isinstance(input_schema, dict):
            raise UpstreamError(f"No input schema published for {model_id}")
        return root, input_schema

    def _fetch_fal_schema(self, api_key: str, model_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        try:
            response = self.session.get(
                f"{FAL_API_BASE}/models",
                params={"endpoint_id": model_id, "expand": "openapi-3.0"},
                headers={"Authorization": f"Key {api_key}"},
            )
        except requests.RequestException as e:
            raise UpstreamError(f"Failed to fetch schema for {model_id}: {e}") from e
        if not response.ok:
            logger.error(f"fal model lookup for {model_id} returned {response.status_code}")
            raise UpstreamError(f"Failed to fetch schema for {model_id} ({response.status_code})", response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(f"fal returned invalid JSON for {model_id}") from e

        models = data.get("models") or []
        root = (models[0].get("openapi") if models else None) or {}
        for path in (root.get("paths") or {}).values():
            post = path.get("post") if isinstance(path, dict) else None
            if not post:
                continue
            content = ((post.get("requestBody") or {}).get("content") or {}).get("application/json") or {}
            schema = content.get("schema") or {}
            if "$ref" in schema:
                schema = _resolve_ref(root, schema["$ref"])
            if schema:
                return root, schema

        raise UpstreamError(f"No input schema published for {model_id}")
