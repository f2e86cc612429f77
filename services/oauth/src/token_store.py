"""Encrypted token storage for user integrations.

Tokens are encrypted per integration before they reach the database. Decrypted
copies are cached briefly, keyed by the blob's auth tag so a rewritten blob is
never served from a stale entry.
"""

import logging
from typing import Optional

from .audit import SecurityAuditLogger
from .cache import TokenCache
from .encryption import TokenCipher
from .errors import IntegrationError, TokenDecryptionError, TokenMissingError
from .locks import IntegrationLocks
from .models import UserIntegration
from .providers import ProviderRegistry
from .schemas import EncryptedTokenBlob, IntegrationStatus, TokenSet
from .storage import IntegrationRepository

logger = logging.getLogger(__name__)


def blob_from_integration(integration: UserIntegration) -> EncryptedTokenBlob:
    return EncryptedTokenBlob(
        ciphertext=integration.token_ciphertext,
        iv=integration.token_iv,
        auth_tag=integration.token_auth_tag,
        version=integration.token_version or "1.0",
    )


class TokenStore:
    """Stores, retrieves and revokes an integration's OAuth tokens."""

    def __init__(
        self,
        repository: IntegrationRepository,
        cipher: TokenCipher,
        cache: TokenCache,
        providers: ProviderRegistry,
        audit: SecurityAuditLogger,
        locks: Optional[IntegrationLocks] = None,
    ):
        self.repository = repository
        self.cipher = cipher
        self.cache = cache
        self.providers = providers
        self.audit = audit
        # Held by revoke here and by the refresh coordinator
        self.locks = locks or IntegrationLocks()

    async def store(self, integration_id: str, tokens: TokenSet) -> EncryptedTokenBlob:
        """Encrypt and persist tokens, replacing any previous blob."""
        try:
            blob = self.cipher.encrypt(tokens, integration_id)
            self.cache.invalidate(integration_id)
            saved = await self.repository.save_tokens(
                integration_id, blob, tokens.expires_at, tokens.scope
            )
            if not saved:
                raise TokenMissingError(f"Integration {integration_id} not found or disconnected")
            # A concurrent retrieve may have cached the old tokens meanwhile
            self.cache.invalidate(integration_id)
        except Exception as e:
            logger.error(f"Failed to store tokens for integration {integration_id}: {type(e).__name__}")
            await self.audit.log_token_event(
                integration_id, "token_store_failed", {"error": type(e).__name__}
            )
            raise

        await self.audit.log_token_event(integration_id, "token_stored", {
            "expires_at": tokens.expires_at.isoformat() if tokens.expires_at else None,
            "scope_count": len(tokens.scope),
            "has_refresh_token": tokens.refresh_token is not None,
        })
        logger.info(f"Stored encrypted tokens for integration {integration_id}")
        return blob

    async def retrieve(self, integration_id: str) -> Optional[TokenSet]:
        """Decrypted tokens, or None when the integration has none stored."""
        integration = await self.repository.get(integration_id)
        if integration is None or not integration.has_tokens:
            return None

        cached = self.cache.get(integration_id, integration.token_auth_tag)
        if cached is not None:
            return cached

        try:
            tokens = self.cipher.decrypt(blob_from_integration(integration), integration_id)
        except TokenDecryptionError as e:
            logger.error(f"Token retrieval failed for integration {integration_id}: {e.kind.value}")
            await self.audit.log_token_event(
                integration_id, "token_retrieval_failed", {"kind": e.kind.value}
            )
            raise

        self.cache.put(integration_id, integration.token_auth_tag, tokens)
        await self.audit.log_token_event(integration_id, "token_retrieved", {
            "provider": integration.provider,
        })
        return tokens

    async def revoke(self, integration_id: str) -> bool:
        """Revoke at the provider (best effort) and clear stored tokens.

        Returns False if the integration does not exist. Waits for an
        in-flight refresh of the same integration to finish first.
        """
        async with self.locks.hold(integration_id):
            return await self._revoke(integration_id)

    async def _revoke(self, integration_id: str) -> bool:
        integration = await self.repository.get(integration_id)
        if integration is None:
            return False

        provider_revoked = False
        if integration.has_tokens:
            try:
                tokens = self.cipher.decrypt(blob_from_integration(integration), integration_id)
                adapter = self.providers.get(integration.provider)
                result = await adapter.revoke_token(tokens.access_token)
                provider_revoked = result.revoked
            except IntegrationError as e:
                logger.warning(
                    f"Provider revocation failed for integration {integration_id} "
                    f"({e.kind.value}); clearing local tokens anyway"
                )

        await self.repository.clear_tokens(integration_id, IntegrationStatus.DISCONNECTED)
        self.cache.invalidate(integration_id)
        await self.audit.log_token_event(integration_id, "token_revoked", {
            "provider": integration.provider,
            "provider_revoked": provider_revoked,
        })
        logger.info(f"Revoked tokens for integration {integration_id}")
        return True
