"""Master secret sources used for token key derivation."""

from abc import ABC, abstractmethod
from typing import Optional

from .config import Settings, get_settings


class SecretNotFoundError(KeyError):
    """Raised when a named secret is not available."""
    pass


class SecretSource(ABC):
    """Provides long-lived secrets by name."""

    @abstractmethod
    def get_secret(self, name: str) -> str:
        """Return the secret stored under ``name``."""
        pass


class SettingsSecretSource(SecretSource):
    """Serves the token master key from service settings."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def get_secret(self, name: str) -> str:
        if name != self.settings.token_master_key_name or not self.settings.token_master_key:
            raise SecretNotFoundError(name)
        return self.settings.token_master_key


class StaticSecretSource(SecretSource):
    """Serves secrets from a fixed mapping."""

    def __init__(self, secrets: dict[str, str]):
        self._secrets = dict(secrets)

    def get_secret(self, name: str) -> str:
        try:
            return self._secrets[name]
        except KeyError:
            raise SecretNotFoundError(name) from None
