"""Microsoft identity platform provider for Outlook calendars and Teams."""

import logging
from urllib.parse import urlencode

from .base import OAuthProvider, RevocationResult, UserInfo
from ..errors import ProviderErrorKind
from ..schemas import Provider, TokenSet

logger = logging.getLogger(__name__)


class MicrosoftOAuthProvider(OAuthProvider):
    """Microsoft OAuth provider using the tenant-scoped v2.0 endpoints."""

    name = Provider.MICROSOFT
    userinfo_url = "https://graph.microsoft.com/v1.0/me"

    scopes = [
        "openid",
        "profile",
        "email",
        "offline_access",
        "User.Read",
        "Calendars.ReadWrite",
        "OnlineMeetings.ReadWrite",
    ]

    @property
    def authority(self) -> str:
        return f"https://login.microsoftonline.com/{self.settings.microsoft_tenant}/oauth2/v2.0"

    @property
    def authorization_url(self) -> str:
        return f"{self.authority}/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.authority}/token"

    def get_authorization_url(self, state: str, redirect_uri: str) -> str:
        """Get the Microsoft authorization URL."""
        params = {
            "client_id": self.settings.microsoft_client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "response_mode": "query",
            "scope": " ".join(self.scopes),
            "state": state,
            "prompt": "select_account",
        }
        return f"{self.authorization_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        """Exchange authorization code for tokens."""
        response = await self._request(
            "POST",
            self.token_url,
            data={
                "client_id": self.settings.microsoft_client_id,
                "client_secret": self.settings.microsoft_client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
                "scope": " ".join(self.scopes),
            },
        )
        return self._token_set(self._json(response), default_scope=self.scopes)

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        """Refresh an access token."""
        response = await self._request(
            "POST",
            self.token_url,
            data={
                "client_id": self.settings.microsoft_client_id,
                "client_secret": self.settings.microsoft_client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
                "scope": " ".join(self.scopes),
            },
        )
        return self._token_set(self._json(response), refresh_token=refresh_token)

    async def get_user_info(self, access_token: str) -> UserInfo:
        """Get the signed-in user's profile from Microsoft Graph."""
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
            email=data.get("mail") or data.get("userPrincipalName"),
            name=data.get("displayName"),
            extra_data={
                "job_title": data.get("jobTitle"),
                "office_location": data.get("officeLocation"),
            },
        )

    async def revoke_token(self, token: str) -> RevocationResult:
        """Microsoft has no token revocation endpoint for this grant.

        Tokens lapse on their own; the caller still clears local state.
        """
        logger.info("Microsoft does not support token revocation; clearing local tokens only")
        return RevocationResult(revoked=False, supported=False)
