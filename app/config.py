"""Application configuration management."""

import logging
from typing import Dict, Optional

import requests
from pydantic_settings import BaseSettings, SettingsConfigDict

from genbridge.core.base_provider import BaseProvider
from genbridge.core.errors import ConfigurationError
from genbridge.core.models import ProviderConfig, ProviderSettings, ProviderType
from genbridge.core.provider_factory import ProviderFactory
from genbridge.core.variant_orchestrator import ArchiveSink, VariantOrchestrator
from genbridge.providers.replicate import ReplicateProvider

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    These settings are automatically loaded from the .env file or environment variables.
    All sensitive data (API keys) should be stored in environment variables, not hardcoded.

    Attributes:
        gemini_api_key: Google AI Studio key for the Gemini provider
        openai_api_key: OpenAI key for the ChatGPT provider
        xai_api_key: xAI key for the Grok provider
        replicate_api_token: Replicate token for FLUX, uploads and schemas
        fal_key: fal key used for schema introspection
        default_provider: Provider selected when a request names none
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        poll_interval: Seconds between two job polls
        edit_timeout: Ceiling for single-image jobs in seconds
        style_transfer_timeout: Ceiling for multi-variant jobs in seconds
        thumbnail_size: Longest side of archived thumbnails
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore'
    )

    # API Keys
    gemini_api_key: str = ""
    openai_api_key: str = ""
    xai_api_key: str = ""
    replicate_api_token: str = ""
    fal_key: str = ""

    # Application Settings
    default_provider: ProviderType = ProviderType.GEMINI
    log_level: str = "INFO"

    # Job polling
    poll_interval: float = 1.2
    edit_timeout: float = 120.0
    style_transfer_timeout: float = 240.0

    thumbnail_size: int = 420

    def provider_settings(self) -> ProviderSettings:
        """Build the read-only credential view used by the factory and orchestrator."""
        keys = {
            ProviderType.GEMINI: self.gemini_api_key,
            ProviderType.CHATGPT: self.openai_api_key,
            ProviderType.GROK: self.xai_api_key,
            ProviderType.REPLICATE: self.replicate_api_token,
        }
        return ProviderSettings(providers={
            provider: ProviderConfig(api_key=key.strip())
            for provider, key in keys.items()
        })

    def schema_api_keys(self) -> Dict[str, Optional[str]]:
        """Keys for the schema introspection providers."""
        return {
            "replicate": self.replicate_api_token.strip() or None,
            "fal": self.fal_key.strip() or None,
        }

    def create_provider(
        self,
        selected: Optional[ProviderType] = None,
        session: Optional[requests.Session] = None
    ) -> BaseProvider:
        """Build the selected provider (or the fallback) with the job settings applied."""
        provider = ProviderFactory.get_provider(selected or self.default_provider, self.provider_settings(), session)
        if isinstance(provider, ReplicateProvider):
            provider.timeout = self.edit_timeout
            provider.poller.poll_interval = self.poll_interval
        return provider

    def create_orchestrator(self, archive_sink: Optional[ArchiveSink] = None) -> VariantOrchestrator:
        """Build a style transfer orchestrator using these credentials and job settings."""
        return VariantOrchestrator(
            self.provider_settings(),
            archive_sink=archive_sink,
            thumbnail_size=self.thumbnail_size,
            poll_interval=self.poll_interval,
            edit_timeout=self.edit_timeout,
            style_transfer_timeout=self.style_transfer_timeout,
        )

    def setup_logging(self) -> None:
        """Configure logging at the configured level."""
        configure_logging(self.log_level)

    def validate_required_keys(self) -> None:
        """Validate that the default provider, or the fallback, has a key.

        Raises:
            ConfigurationError: If no usable key is configured
        """
        providers = self.provider_settings()
        if providers.api_key_for(self.default_provider):
            return
        if providers.api_key_for(ProviderType.GEMINI):
            return
        raise ConfigurationError(
            f"No API key configured for '{self.default_provider.value}'. "
            "Set the matching key (e.g. GEMINI_API_KEY) in your .env file or environment variables."
        )


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging with the project format."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT
    )
