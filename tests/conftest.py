"""Shared test fixtures and configuration."""

import io
from unittest.mock import Mock

import pytest
from PIL import Image

from genbridge.core.models import ImageInput, ProviderConfig, ProviderSettings, ProviderType


def png_bytes(size=(64, 64), color="red") -> bytes:
    """Encode a solid-colour PNG."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color=color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_response(status_code=200, json_data=None, content=b"", headers=None, text=None, reason="OK"):
    """Build a Mock shaped like a requests.Response."""
    response = Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.content = content
    response.headers = headers or {}
    response.reason = reason
    if json_data is None:
        response.json.side_effect = ValueError("No JSON body")
        response.text = text if text is not None else ""
    else:
        response.json.return_value = json_data
        response.text = text if text is not None else str(json_data)
    return response


@pytest.fixture
def response_factory():
    """Return the make_response helper."""
    return make_response


@pytest.fixture
def png_factory():
    """Return the png_bytes helper."""
    return png_bytes


@pytest.fixture
def sample_prompt():
    """Return a sample prompt for testing."""
    return "A beautiful sunset over mountains"


@pytest.fixture
def sample_image_bytes():
    """Return sample image as PNG bytes."""
    return png_bytes((512, 512), "red")


@pytest.fixture
def sample_image(sample_image_bytes):
    """Return the sample image as an ImageInput."""
    return ImageInput(data=sample_image_bytes, mime_type="image/png")


@pytest.fixture
def style_image():
    """Return a landscape style image."""
    return ImageInput(data=png_bytes((300, 200), "blue"), mime_type="image/png")


@pytest.fixture
def mock_session():
    """Return a mocked requests.Session."""
    return Mock()


@pytest.fixture
def provider_settings():
    """Return credentials for every provider."""
    return ProviderSettings(providers={
        ProviderType.GEMINI: ProviderConfig(api_key="AIzaSyTestGeminiKey1234567"),
        ProviderType.CHATGPT: ProviderConfig(api_key="sk-test-openai-key-1234567"),
        ProviderType.GROK: ProviderConfig(api_key="xai-test-key"),
        ProviderType.REPLICATE: ProviderConfig(api_key="r8_test_replicate_token_123"),
    })
