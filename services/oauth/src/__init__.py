"""
pharmadoc-oauth

OAuth token lifecycle and webhook security for PharmaDOC calendar integrations.

This package provides:
- Per-integration AES-256-GCM token encryption
- An encrypted token store with a short-lived decrypted cache
- A refresh coordinator with a periodic expiry sweep
- Google, Microsoft and Zoom OAuth adapters
- A staged validator for inbound provider webhooks
"""

from .encryption import TokenCipher
from .errors import (
    ErrorKind,
    IntegrationError,
    ProviderError,
    ProviderErrorKind,
    RefreshError,
    TokenDecryptionError,
    TokenIntegrityError,
    TokenMissingError,
)
from .refresh import RefreshCoordinator, SweepResult
from .schemas import EncryptedTokenBlob, IntegrationStatus, Provider, TokenSet
from .token_store import TokenStore

__version__ = "1.0.0"

__all__ = [
    "TokenCipher",
    "ErrorKind",
    "IntegrationError",
    "ProviderError",
    "ProviderErrorKind",
    "RefreshError",
    "TokenDecryptionError",
    "TokenIntegrityError",
    "TokenMissingError",
    "RefreshCoordinator",
    "SweepResult",
    "EncryptedTokenBlob",
    "IntegrationStatus",
    "Provider",
    "TokenSet",
    "TokenStore",
]
