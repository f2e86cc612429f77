"""Base OAuth provider class."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
from pydantic import BaseModel

from ..config import Settings, get_settings
from ..errors import ProviderError, ProviderErrorKind
from ..schemas import Provider, TokenSet, utcnow

DEFAULT_EXPIRES_IN = 3600


class UserInfo(BaseModel):
    """User info from OAuth provider."""
    provider_user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    extra_data: Optional[dict] = None


class RevocationResult(BaseModel):
    """Outcome of asking a provider to revoke a token."""
    revoked: bool
    supported: bool = True
    revoked_at: Optional[datetime] = None


def expires_at_from_response(data: dict[str, Any], now: Optional[datetime] = None) -> datetime:
    """Absolute expiry from ``expiry_date`` (epoch ms) or ``expires_in`` (seconds)."""
    now = now or utcnow()
    try:
        if data.get("expiry_date") is not None:
            return datetime.fromtimestamp(int(data["expiry_date"]) / 1000, tz=timezone.utc)
        if data.get("expires_in") is not None:
            return now + timedelta(seconds=int(data["expires_in"]))
    except (TypeError, ValueError):
        raise ProviderError(
            "Token response has an invalid expiry",
            ProviderErrorKind.MALFORMED_RESPONSE,
        ) from None
    return now + timedelta(seconds=DEFAULT_EXPIRES_IN)


class OAuthProvider(ABC):
    """Base class for OAuth providers.

    Subclasses implement the provider's quirks; this class maps transport and
    HTTP failures onto :class:`ProviderErrorKind`. Timeouts surface as
    ``network`` errors and are never retried here.
    """

    name: Provider
    authorization_url: str = ""
    token_url: str = ""
    userinfo_url: str = ""
    revoke_url: str = ""
    scopes: list[str] = []

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport

    @abstractmethod
    def get_authorization_url(self, state: str, redirect_uri: str) -> str:
        """Get the authorization URL for the OAuth flow."""
        pass

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        """Exchange authorization code for tokens."""
        pass

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        """Refresh an access token."""
        pass

    @abstractmethod
    async def get_user_info(self, access_token: str) -> UserInfo:
        """Get user info from the provider."""
        pass

    @abstractmethod
    async def revoke_token(self, token: str) -> RevocationResult:
        """Revoke an access token."""
        pass

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            self.settings.http_request_timeout,
            connect=self.settings.http_connect_timeout,
        )
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def _error(self, message: str, kind: ProviderErrorKind, **kwargs) -> ProviderError:
        return ProviderError(f"{self.name.value}: {message}", kind, provider=self.name.value, **kwargs)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request, raising :class:`ProviderError` on any failure."""
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise self._error(f"request timed out ({type(e).__name__})", ProviderErrorKind.NETWORK) from e
        except httpx.HTTPError as e:
            raise self._error(f"request failed ({type(e).__name__})", ProviderErrorKind.NETWORK) from e

        if response.status_code >= 500:
            raise self._error(
                f"provider unavailable (HTTP {response.status_code})",
                ProviderErrorKind.PROVIDER_UNAVAILABLE,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            error_code, description = self._error_details(response)
            raise self._error(
                f"request rejected (HTTP {response.status_code}): {description or error_code}",
                ProviderErrorKind.PROVIDER_REJECTED,
                status_code=response.status_code,
                error_code=error_code,
            )
        return response

    @staticmethod
    def _error_details(response: httpx.Response) -> tuple[Optional[str], Optional[str]]:
        try:
            data = response.json()
        except ValueError:
            return None, None
        if not isinstance(data, dict):
            return None, None

        error = data.get("error")
        if isinstance(error, dict):
            # Graph style: {"error": {"code": ..., "message": ...}}
            return error.get("code"), error.get("message")
        return error, data.get("error_description") or data.get("reason")

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            raise self._error("response is not JSON", ProviderErrorKind.MALFORMED_RESPONSE) from None
        if not isinstance(data, dict):
            raise self._error("response is not a JSON object", ProviderErrorKind.MALFORMED_RESPONSE)
        return data

    def _token_set(
        self,
        data: dict[str, Any],
        refresh_token: Optional[str] = None,
        default_scope: Optional[list[str]] = None,
    ) -> TokenSet:
        """Map a token endpoint response onto the canonical token tuple."""
        if not data.get("access_token"):
            raise self._error("token response missing access_token", ProviderErrorKind.MALFORMED_RESPONSE)

        try:
            expires_at = expires_at_from_response(data)
        except ProviderError as e:
            raise self._error(str(e), ProviderErrorKind.MALFORMED_RESPONSE) from None

        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or refresh_token,
            expires_at=expires_at,
            scope=data.get("scope") or (default_scope or []),
        )
