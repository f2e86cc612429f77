"""Error taxonomy for token lifecycle and webhook security.

Every exception carries a ``kind`` so callers branch on the kind instead of
matching messages.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Kinds of failures surfaced by the service."""

    DECRYPTION_FAILURE = "decryption_failure"
    INTEGRITY_VIOLATION = "integrity_violation"
    TOKEN_MISSING = "token_missing"
    REFRESH_TERMINAL = "refresh_terminal"
    REFRESH_RETRYABLE = "refresh_retryable"
    WEBHOOK_REJECTED = "webhook_rejected"
    RATE_LIMITED = "rate_limited"
    REPLAY_DETECTED = "replay_detected"
    PROVIDER_ERROR = "provider_error"
    INVALID_STATE = "invalid_state"


class ProviderErrorKind(str, Enum):
    """Classification of a failed call to an OAuth provider."""

    NETWORK = "network"
    PROVIDER_REJECTED = "provider_rejected"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    MALFORMED_RESPONSE = "malformed_response"
    UNSUPPORTED = "unsupported"


class IntegrationError(Exception):
    """Base exception for integration failures."""

    kind: ErrorKind = ErrorKind.PROVIDER_ERROR

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class TokenDecryptionError(IntegrationError):
    """Raised when a stored token blob cannot be decrypted."""

    kind = ErrorKind.DECRYPTION_FAILURE

    def __init__(self, message: str = "Failed to decrypt OAuth token"):
        super().__init__(message)


class TokenIntegrityError(TokenDecryptionError):
    """Raised when the embedded integrity hash does not match the tokens.

    Shares the generic decryption message; only ``kind`` differs.
    """

    kind = ErrorKind.INTEGRITY_VIOLATION


class TokenMissingError(IntegrationError):
    """Raised when a token (or refresh token) is not available."""

    kind = ErrorKind.TOKEN_MISSING


class ProviderError(IntegrationError):
    """Raised when an OAuth provider call fails."""

    kind = ErrorKind.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        provider_kind: ProviderErrorKind,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message)
        self.provider_kind = provider_kind
        self.provider = provider
        self.status_code = status_code
        self.error_code = error_code

    @property
    def retryable(self) -> bool:
        """Network failures and 5xx responses may succeed on a later attempt."""
        return self.provider_kind in (
            ProviderErrorKind.NETWORK,
            ProviderErrorKind.PROVIDER_UNAVAILABLE,
        )

    @property
    def invalid_grant(self) -> bool:
        return (
            self.provider_kind == ProviderErrorKind.PROVIDER_REJECTED
            and self.error_code == "invalid_grant"
        )


class RefreshError(IntegrationError):
    """Raised when refreshing an integration's token fails."""

    def __init__(self, message: str, kind: ErrorKind, cause: Optional[Exception] = None):
        super().__init__(message, kind)
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.REFRESH_RETRYABLE

    @classmethod
    def from_failure(cls, integration_id: str, error: Exception) -> "RefreshError":
        """Classify a refresh failure as retryable or terminal."""
        if isinstance(error, ProviderError) and error.retryable:
            kind = ErrorKind.REFRESH_RETRYABLE
        else:
            kind = ErrorKind.REFRESH_TERMINAL
        return cls(f"Token refresh failed for integration {integration_id}", kind, error)


class OAuthStateError(IntegrationError):
    """Raised when an OAuth callback carries an unknown or expired state."""

    kind = ErrorKind.INVALID_STATE
