"""Durable storage for integrations, OAuth states and webhook subscriptions."""

import hashlib
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models import UserIntegration, OAuthState, WebhookSubscription
from .schemas import EncryptedTokenBlob, IntegrationStatus, Provider, utcnow

logger = logging.getLogger(__name__)


class IntegrationRepository:
    """Reads and writes ``user_integrations`` rows by id."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, integration_id: str) -> Optional[UserIntegration]:
        async with self._session_factory() as session:
            return await session.get(UserIntegration, integration_id)

    async def find(self, user_id: str, provider: Provider) -> Optional[UserIntegration]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserIntegration).where(
                    UserIntegration.user_id == user_id,
                    UserIntegration.provider == provider.value,
                )
            )
            return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> list[UserIntegration]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserIntegration).where(UserIntegration.user_id == user_id)
            )
            return list(result.scalars().all())

    async def list_all(self) -> list[UserIntegration]:
        async with self._session_factory() as session:
            result = await session.execute(select(UserIntegration))
            return list(result.scalars().all())

    async def list_by_status(self, status: IntegrationStatus) -> list[UserIntegration]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserIntegration).where(UserIntegration.status == status.value)
            )
            return list(result.scalars().all())

    async def upsert_connection(
        self,
        user_id: str,
        provider: Provider,
        provider_user_id: Optional[str] = None,
        provider_email: Optional[str] = None,
        provider_name: Optional[str] = None,
    ) -> UserIntegration:
        """Create the user's integration for ``provider`` or reconnect it."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserIntegration).where(
                    UserIntegration.user_id == user_id,
                    UserIntegration.provider == provider.value,
                )
            )
            integration = result.scalar_one_or_none()
            if integration is None:
                integration = UserIntegration(user_id=user_id, provider=provider.value)
                session.add(integration)

            integration.status = IntegrationStatus.CONNECTED.value
            integration.provider_user_id = provider_user_id
            integration.provider_email = provider_email
            integration.provider_name = provider_name
            integration.last_error = None
            integration.error_count = 0
            integration.updated_at = utcnow()

            await session.commit()
            await session.refresh(integration)
            return integration

    async def update(self, integration_id: str, *conditions: Any, **fields: Any) -> bool:
        """Update columns of one integration.

        Extra ``conditions`` are added to the WHERE clause. Returns False if no
        row matched.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(UserIntegration)
                .where(UserIntegration.id == integration_id, *conditions)
                .values(**fields, updated_at=utcnow())
            )
            await session.commit()
            return result.rowcount > 0

    async def save_tokens(
        self,
        integration_id: str,
        blob: EncryptedTokenBlob,
        expires_at: Optional[datetime],
        scope: list[str],
    ) -> bool:
        """Write a new token blob and mark the integration connected.

        A disconnected integration is left alone; only a new connect flow
        brings it back.
        """
        return await self.update(
            integration_id,
            UserIntegration.status != IntegrationStatus.DISCONNECTED.value,
            token_ciphertext=blob.ciphertext,
            token_iv=blob.iv,
            token_auth_tag=blob.auth_tag,
            token_version=blob.version,
            token_expires_at=expires_at,
            scope=scope,
            status=IntegrationStatus.CONNECTED.value,
            last_error=None,
            error_count=0,
        )

    async def clear_tokens(self, integration_id: str, status: IntegrationStatus) -> bool:
        return await self.update(
            integration_id,
            token_ciphertext=None,
            token_iv=None,
            token_auth_tag=None,
            token_version=None,
            token_expires_at=None,
            status=status.value,
        )

    async def mark_expired(self, integration_id: str, error: str) -> bool:
        """Returns False if the integration is missing or already disconnected."""
        return await self.update(
            integration_id,
            UserIntegration.status != IntegrationStatus.DISCONNECTED.value,
            status=IntegrationStatus.EXPIRED.value,
            last_error=error,
            error_count=UserIntegration.error_count + 1,
        )


class OAuthStateRepository:
    """One-time OAuth ``state`` values for the connect flow."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def save(
        self,
        state: str,
        user_id: str,
        provider: Provider,
        redirect_url: Optional[str],
        expires_at: datetime,
    ) -> None:
        async with self._session_factory() as session:
            session.add(OAuthState(
                state=state,
                user_id=user_id,
                provider=provider.value,
                redirect_url=redirect_url,
                expires_at=expires_at,
            ))
            await session.commit()

    async def consume(self, state: str, provider: Provider) -> Optional[OAuthState]:
        """Return the matching unexpired state and delete it."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(OAuthState).where(
                    OAuthState.state == state,
                    OAuthState.provider == provider.value,
                    OAuthState.expires_at > utcnow(),
                )
            )
            oauth_state = result.scalar_one_or_none()

            # Used or expired, the state is gone either way
            await session.execute(delete(OAuthState).where(OAuthState.state == state))
            await session.commit()
            return oauth_state


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


class WebhookSubscriptionRepository:
    """Hashed channel tokens / client states for registered webhooks."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def register(
        self,
        provider: Provider,
        external_id: str,
        secret: str,
        integration_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> WebhookSubscription:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookSubscription).where(
                    WebhookSubscription.provider == provider.value,
                    WebhookSubscription.external_id == external_id,
                )
            )
            subscription = result.scalar_one_or_none()
            if subscription is None:
                subscription = WebhookSubscription(provider=provider.value, external_id=external_id)
                session.add(subscription)

            subscription.secret_hash = hash_secret(secret)
            subscription.integration_id = integration_id
            subscription.expires_at = expires_at
            subscription.created_at = utcnow()

            await session.commit()
            await session.refresh(subscription)
            logger.info(f"Registered {provider.value} webhook subscription {external_id}")
            return subscription

    async def get(self, provider: Provider, external_id: str) -> Optional[WebhookSubscription]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookSubscription).where(
                    WebhookSubscription.provider == provider.value,
                    WebhookSubscription.external_id == external_id,
                )
            )
            return result.scalar_one_or_none()
