"""Factory for creating provider instances."""

import logging
from typing import Dict, Optional, Type

import requests

from genbridge.core.base_provider import BaseProvider
from genbridge.core.errors import ConfigurationError, CredentialError
from genbridge.core.models import ProviderSettings, ProviderType
from genbridge.providers.chatgpt import ChatGPTProvider
from genbridge.providers.gemini import GeminiProvider
from genbridge.providers.grok import GrokProvider
from genbridge.providers.replicate import ReplicateProvider

logger = logging.getLogger(__name__)


class ProviderFactory:
    """Factory class for creating provider instances.

    Builds the adapter matching a provider type, picks a same-tier fallback
    when the selected provider has no credential, and pre-validates key
    formats without touching the network.
    """

    DEFAULT_PROVIDER = ProviderType.GEMINI

    _registry: Dict[ProviderType, Type[BaseProvider]] = {
        ProviderType.GEMINI: GeminiProvider,
        ProviderType.CHATGPT: ChatGPTProvider,
        ProviderType.GROK: GrokProvider,
        ProviderType.REPLICATE: ReplicateProvider,
    }

    @classmethod
    def _resolve_type(cls, provider_type) -> ProviderType:
        try:
            return ProviderType(str(getattr(provider_type, "value", provider_type)).lower())
        except ValueError:
            supported = ", ".join(cls.get_supported_providers())
            raise ConfigurationError(
                f"Unknown provider type: '{provider_type}'. Supported providers: {supported}"
            ) from None

    @classmethod
    def create_provider(
        cls,
        provider_type,
        api_key: Optional[str],
        session: Optional[requests.Session] = None
    ) -> BaseProvider:
        """Create a provider instance.

        Args:
            provider_type: ProviderType or its string value (case-insensitive)
            api_key: API key for the provider
            session: Optional HTTP session shared with the provider

        Returns:
            An instance of the requested provider

        Raises:
            ConfigurationError: If the key is empty or the type is unknown
        """
        if not api_key or not api_key.strip():
            raise ConfigurationError(
                f"API key is required for {getattr(provider_type, 'value', provider_type)} provider"
            )

        resolved = cls._resolve_type(provider_type)
        provider_class = cls._registry[resolved]
        logger.info(f"Creating {resolved.value} provider")
        return provider_class(api_key=api_key, session=session)

    @classmethod
    def get_provider(
        cls,
        selected_type,
        settings: ProviderSettings,
        session: Optional[requests.Session] = None
    ) -> BaseProvider:
        """Get the selected provider, falling back to the default provider.

        Args:
            selected_type: Provider the caller asked for
            settings: Per-provider credentials

        Returns:
            The selected provider if it has a key, else the default provider

        Raises:
            CredentialError: If neither provider has a key configured
            ConfigurationError: If the selected type is unknown
        """
        resolved = cls._resolve_type(selected_type)

        api_key = settings.api_key_for(resolved)
        if api_key:
            return cls.create_provider(resolved, api_key, session=session)

        default_key = settings.api_key_for(cls.DEFAULT_PROVIDER)
        if default_key:
            logger.warning(
                f"No API key for {resolved.value}, falling back to {cls.DEFAULT_PROVIDER.value}"
            )
            return cls.create_provider(cls.DEFAULT_PROVIDER, default_key, session=session)

        raise CredentialError("No API key available for any provider")

    @classmethod
    def validate_api_key(cls, provider_type, api_key: Optional[str]) -> bool:
        """Offline, format-only check of an API key.

        Returns:
            True if the key looks plausible for the provider family
        """
        if not api_key or not api_key.strip():
            return False
        key = api_key.strip()

        try:
            resolved = cls._resolve_type(provider_type)
        except ConfigurationError:
            return False

        if resolved == ProviderType.GEMINI:
            return key.startswith("AI") and len(key) > 20
        if resolved == ProviderType.CHATGPT:
            return key.startswith("sk-") and len(key) > 20
        if resolved == ProviderType.GROK:
            return key.startswith("xai-") or len(key) > 20
        if resolved == ProviderType.REPLICATE:
            return key.startswith("r8_") and len(key) > 20
        return False

    @classmethod
    def get_supported_providers(cls) -> list[str]:
        return [provider_type.value for provider_type in cls._registry]

    @classmethod
    def is_supported(cls, provider_type: str) -> bool:
        return str(provider_type).lower() in cls.get_supported_providers()
