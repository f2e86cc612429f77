"""OAuth providers."""

import logging
from typing import Optional, Union

import httpx

from .base import OAuthProvider, RevocationResult, UserInfo, expires_at_from_response
from .google import GoogleOAuthProvider
from .microsoft import MicrosoftOAuthProvider
from .zoom import ZoomOAuthProvider
from ..config import Settings, get_settings
from ..errors import ProviderError, ProviderErrorKind
from ..schemas import Provider

logger = logging.getLogger(__name__)

# Provider registry
PROVIDERS = {
    Provider.GOOGLE: GoogleOAuthProvider,
    Provider.MICROSOFT: MicrosoftOAuthProvider,
    Provider.ZOOM: ZoomOAuthProvider,
}


def parse_provider(provider_name: Union[str, Provider]) -> Provider:
    """Resolve a provider name, raising ``unsupported`` for unknown names."""
    try:
        return Provider(provider_name)
    except ValueError:
        raise ProviderError(
            f"Unknown provider: {provider_name}",
            ProviderErrorKind.UNSUPPORTED,
            provider=str(provider_name),
        ) from None


class ProviderRegistry:
    """Provider -> adapter instance, built once at startup."""

    def __init__(self):
        self._adapters: dict[Provider, OAuthProvider] = {}

    def register(self, adapter: OAuthProvider) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, provider: Union[str, Provider]) -> OAuthProvider:
        provider = parse_provider(provider)
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ProviderError(
                f"Provider {provider.value} has no OAuth adapter",
                ProviderErrorKind.UNSUPPORTED,
                provider=provider.value,
            )
        return adapter

    def names(self) -> list[str]:
        return [provider.value for provider in self._adapters]

    def __contains__(self, provider: Union[str, Provider]) -> bool:
        try:
            return Provider(provider) in self._adapters
        except ValueError:
            return False


def build_registry(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderRegistry:
    """Instantiate every known adapter with shared settings."""
    settings = settings or get_settings()
    registry = ProviderRegistry()
    for provider_class in PROVIDERS.values():
        registry.register(provider_class(settings=settings, transport=transport))
    logger.info(f"Registered OAuth providers: {', '.join(registry.names())}")
    return registry


__all__ = [
    "OAuthProvider",
    "RevocationResult",
    "UserInfo",
    "expires_at_from_response",
    "GoogleOAuthProvider",
    "MicrosoftOAuthProvider",
    "ZoomOAuthProvider",
    "PROVIDERS",
    "ProviderRegistry",
    "build_registry",
    "parse_provider",
]
