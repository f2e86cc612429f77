"""Zoom OAuth provider."""

import base64
from urllib.parse import urlencode

from .base import OAuthProvider, RevocationResult, UserInfo
from ..errors import ProviderErrorKind
from ..schemas import Provider, TokenSet, utcnow


class ZoomOAuthProvider(OAuthProvider):
    """Zoom OAuth provider for meetings."""

    name = Provider.ZOOM
    authorization_url = "https://zoom.us/oauth/authorize"
    token_url = "https://zoom.us/oauth/token"
    userinfo_url = "https://api.zoom.us/v2/users/me"
    revoke_url = "https://zoom.us/oauth/revoke"

    scopes = [
        "user:read",
        "meeting:read",
        "meeting:write",
    ]

    def _get_basic_auth(self) -> str:
        """Get Basic auth header for Zoom."""
        credentials = f"{self.settings.zoom_client_id}:{self.settings.zoom_client_secret}"
        return base64.b64encode(credentials.encode()).decode()

    def _auth_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Basic {self._get_basic_auth()}",
            "Content-Type": "application/x-www-form-urlencoded",
        }

    def get_authorization_url(self, state: str, redirect_uri: str) -> str:
        """Get the Zoom authorization URL."""
        params = {
            "client_id": self.settings.zoom_client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": state,
        }
        return f"{self.authorization_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        """Exchange authorization code for tokens."""
        response = await self._request(
            "POST",
            self.token_url,
            headers=self._auth_headers(),
            data={
                "code": code,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        return self._token_set(self._json(response), default_scope=self.scopes)

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        """Refresh an access token.

        Zoom rotates refresh tokens; the new one replaces the old one when
        present in the response.
        """
        response = await self._request(
            "POST",
            self.token_url,
            headers=self._auth_headers(),
            data={
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        return self._token_set(self._json(response), refresh_token=refresh_token)

    async def get_user_info(self, access_token: str) -> UserInfo:
        """Get user info from Zoom."""
        response = await self._request(
            "GET",
            self.userinfo_url,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        data = self._json(response)
        if not data.get("id"):
            raise self._error("profile response missing id", ProviderErrorKind.MALFORMED_RESPONSE)

        return UserInfo(
            provider_user_id=str(data["id"]),
            email=data.get("email"),
            name=f"{data.get('first_name', '')} {data.get('last_name', '')}".strip() or None,
            extra_data={
                "account_id": data.get("account_id"),
                "pmi": data.get("pmi"),
                "timezone": data.get("timezone"),
            },
        )

    async def revoke_token(self, token: str) -> RevocationResult:
        """Revoke an access token."""
        await self._request(
            "POST",
            self.revoke_url,
            headers=self._auth_headers(),
            params={"token": token},
        )
        return RevocationResult(revoked=True, revoked_at=utcnow())
