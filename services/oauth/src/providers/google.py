"""Google OAuth provider for Calendar and Meet."""

from urllib.parse import urlencode

from .base import OAuthProvider, RevocationResult, UserInfo
from ..errors import ProviderErrorKind
from ..schemas import Provider, TokenSet, utcnow


class GoogleOAuthProvider(OAuthProvider):
    """Google OAuth provider for calendar access."""

    name = Provider.GOOGLE
    authorization_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    userinfo_url = "https://www.googleapis.com/oauth2/v2/userinfo"
    revoke_url = "https://oauth2.googleapis.com/revoke"

    # Scopes for Calendar and Meet links
    scopes = [
        "openid",
        "email",
        "profile",
        "https://www.googleapis.com/auth/calendar",
        "https://www.googleapis.com/auth/calendar.events",
    ]

    def get_authorization_url(self, state: str, redirect_uri: str) -> str:
        """Get the Google authorization URL."""
        params = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            "access_type": "offline",  # To get refresh token
            "prompt": "consent",  # Force consent to always get refresh token
            "include_granted_scopes": "true",
        }
        return f"{self.authorization_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        """Exchange authorization code for tokens."""
        response = await self._request(
            "POST",
            self.token_url,
            data={
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        return self._token_set(self._json(response), default_scope=self.scopes)

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        """Refresh an access token. Google keeps the same refresh token."""
        response = await self._request(
            "POST",
            self.token_url,
            data={
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        return self._token_set(self._json(response), refresh_token=refresh_token)

    async def get_user_info(self, access_token: str) -> UserInfo:
        """Get user info from Google."""
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
            name=data.get("name"),
            extra_data={
                "picture": data.get("picture"),
                "verified_email": data.get("verified_email"),
            },
        )

    async def revoke_token(self, token: str) -> RevocationResult:
        """Revoke an access or refresh token."""
        await self._request(
            "POST",
            self.revoke_url,
            params={"token": token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        return RevocationResult(revoked=True, revoked_at=utcnow())
