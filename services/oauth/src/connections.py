"""OAuth connect flow: state issuance, code exchange and disconnect."""

import logging
import secrets
from datetime import timedelta
from typing import Optional, Union

from .audit import SecurityAuditLogger
from .config import Settings
from .errors import OAuthStateError
from .models import UserIntegration
from .providers import ProviderRegistry, parse_provider
from .schemas import Provider, utcnow
from .storage import IntegrationRepository, OAuthStateRepository
from .token_store import TokenStore

logger = logging.getLogger(__name__)

STATE_TTL = timedelta(minutes=10)


class ConnectionManager:
    """Connects and disconnects a user's provider integrations."""

    def __init__(
        self,
        settings: Settings,
        states: OAuthStateRepository,
        repository: IntegrationRepository,
        token_store: TokenStore,
        providers: ProviderRegistry,
        audit: SecurityAuditLogger,
    ):
        self.settings = settings
        self.states = states
        self.repository = repository
        self.token_store = token_store
        self.providers = providers
        self.audit = audit

    def callback_uri(self, provider: Provider) -> str:
        return f"{self.settings.base_url}/api/oauth/{provider.value}/callback"

    def default_redirect_url(self) -> str:
        return f"{self.settings.frontend_url}/settings/integrations"

    async def begin(
        self,
        provider: Union[str, Provider],
        user_id: str,
        redirect_url: Optional[str] = None,
    ) -> str:
        """Issue a one-time state and return the provider's authorization URL."""
        provider = parse_provider(provider)
        adapter = self.providers.get(provider)

        state = secrets.token_urlsafe(32)
        await self.states.save(
            state=state,
            user_id=user_id,
            provider=provider,
            redirect_url=redirect_url or self.default_redirect_url(),
            expires_at=utcnow() + STATE_TTL,
        )
        return adapter.get_authorization_url(state, self.callback_uri(provider))

    async def complete(
        self,
        provider: Union[str, Provider],
        code: str,
        state: str,
    ) -> tuple[UserIntegration, str]:
        """Finish the OAuth flow.

        Returns the connected integration and the URL the user asked to be
        sent back to.
        """
        provider = parse_provider(provider)
        oauth_state = await self.states.consume(state, provider)
        if oauth_state is None:
            raise OAuthStateError("Invalid or expired OAuth state")

        adapter = self.providers.get(provider)
        tokens = await adapter.exchange_code(code, self.callback_uri(provider))
        user_info = await adapter.get_user_info(tokens.access_token)

        integration = await self.repository.upsert_connection(
            user_id=oauth_state.user_id,
            provider=provider,
            provider_user_id=user_info.provider_user_id,
            provider_email=user_info.email,
            provider_name=user_info.name,
        )
        await self.token_store.store(integration.id, tokens)
        await self.audit.log_token_event(integration.id, "integration_connected", {
            "provider": provider.value,
            "user_id": oauth_state.user_id,
        })
        logger.info(f"Connected {provider.value} integration {integration.id} for user {oauth_state.user_id}")

        return integration, oauth_state.redirect_url or self.default_redirect_url()

    async def disconnect(self, integration_id: str) -> bool:
        """Revoke and clear an integration's tokens. False if it does not exist."""
        return await self.token_store.revoke(integration_id)
