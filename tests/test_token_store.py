"""Tests for the encrypted token store and its decrypted-token cache."""

from datetime import datetime, timedelta, timezone

import pytest

from pharmadoc_oauth.cache import TokenCache
from pharmadoc_oauth.errors import TokenDecryptionError, TokenMissingError
from pharmadoc_oauth.schemas import IntegrationStatus, Provider, TokenSet, as_utc
from pharmadoc_oauth.token_store import TokenStore

from .helpers import GOOGLE_REVOKE_URL, SecondsClock


def make_tokens(access: str = "access-1", refresh: str = "refresh-1") -> TokenSet:
    return TokenSet(
        access_token=access,
        refresh_token=refresh,
        expires_at=datetime(2026, 5, 1, 10, 0, tzinfo=timezone.utc),
        scope=["openid", "https://www.googleapis.com/auth/calendar"],
    )


async def event_types(audit, integration_id: str) -> list[str]:
    return [event.event_type for event in await audit.token_events(integration_id)]


class TestTokenCache:
    """Tests for the in-memory TTL cache."""

    def test_entries_expire_after_ttl(self) -> None:
        clock = SecondsClock(start=0)
        cache = TokenCache(ttl_seconds=300, clock=clock)
        cache.put("integration-1", "tag-a", make_tokens())

        clock.advance(299)
        assert cache.get("integration-1", "tag-a") is not None

        clock.advance(1)
        assert cache.get("integration-1", "tag-a") is None
        assert len(cache) == 0

    def test_entries_are_keyed_by_auth_tag(self) -> None:
        cache = TokenCache()
        cache.put("integration-1", "tag-a", make_tokens())

        assert cache.get("integration-1", "tag-b") is None

    def test_invalidate_drops_every_tag_for_the_integration(self) -> None:
        cache = TokenCache()
        cache.put("integration-1", "tag-a", make_tokens())
        cache.put("integration-1", "tag-b", make_tokens())
        cache.put("integration-2", "tag-c", make_tokens())

        assert cache.invalidate("integration-1") == 2
        assert cache.get("integration-2", "tag-c") is not None

    def test_returns_copies(self) -> None:
        cache = TokenCache()
        cache.put("integration-1", "tag-a", make_tokens())

        cache.get("integration-1", "tag-a").scope.append("mutated")

        assert "mutated" not in cache.get("integration-1", "tag-a").scope

    def test_cleanup_removes_only_expired_entries(self) -> None:
        clock = SecondsClock(start=0)
        cache = TokenCache(ttl_seconds=60, clock=clock)
        cache.put("old", "tag", make_tokens())
        clock.advance(30)
        cache.put("new", "tag", make_tokens())
        clock.advance(30)

        assert cache.cleanup() == 1
        assert cache.get("new", "tag") is not None


class TestStore:
    """Tests for TokenStore.store."""

    async def test_store_persists_encrypted_blob_and_plaintext_metadata(
        self, token_store: TokenStore, integrations, integration
    ) -> None:
        tokens = make_tokens()

        await token_store.store(integration.id, tokens)

        row = await integrations.get(integration.id)
        assert row.has_tokens
        assert row.token_version == "1.0"
        assert tokens.access_token not in row.token_ciphertext
        assert as_utc(row.token_expires_at) == tokens.expires_at
        assert row.scope == tokens.scope

    async def test_store_for_unknown_integration_fails_and_is_audited(
        self, token_store: TokenStore, audit
    ) -> None:
        with pytest.raises(TokenMissingError):
            await token_store.store("missing-integration", make_tokens())

        assert await event_types(audit, "missing-integration") == ["token_store_failed"]

    async def test_store_is_audited(self, token_store: TokenStore, audit, integration) -> None:
        await token_store.store(integration.id, make_tokens())

        events = await audit.token_events(integration.id)
        assert [e.event_type for e in events] == ["token_stored"]
        assert events[0].event_metadata["has_refresh_token"] is True
        assert "access-1" not in str(events[0].event_metadata)


class TestRetrieve:
    """Tests for TokenStore.retrieve."""

    async def test_retrieve_returns_stored_tokens(self, token_store: TokenStore, integration) -> None:
        tokens = make_tokens()
        await token_store.store(integration.id, tokens)

        assert await token_store.retrieve(integration.id) == tokens

    async def test_retrieve_unknown_integration_returns_none(self, token_store: TokenStore) -> None:
        assert await token_store.retrieve("missing-integration") is None

    async def test_retrieve_without_tokens_returns_none(self, token_store: TokenStore, integration) -> None:
        assert await token_store.retrieve(integration.id) is None

    async def test_second_retrieve_is_served_from_cache(
        self, token_store: TokenStore, integration, monkeypatch
    ) -> None:
        await token_store.store(integration.id, make_tokens())
        first = await token_store.retrieve(integration.id)

        def fail_decrypt(*args, **kwargs):
            raise AssertionError("cache miss")

        monkeypatch.setattr(token_store.cipher, "decrypt", fail_decrypt)

        assert await token_store.retrieve(integration.id) == first

    async def test_store_invalidates_cached_tokens(self, token_store: TokenStore, integration) -> None:
        await token_store.store(integration.id, make_tokens(access="old-access"))
        assert (await token_store.retrieve(integration.id)).access_token == "old-access"

        await token_store.store(integration.id, make_tokens(access="new-access"))

        assert (await token_store.retrieve(integration.id)).access_token == "new-access"

    async def test_tampered_row_fails_and_is_audited(
        self, token_store: TokenStore, integrations, audit, integration
    ) -> None:
        await token_store.store(integration.id, make_tokens())
        row = await integrations.get(integration.id)
        tampered = ("0" if row.token_ciphertext[0] != "0" else "1") + row.token_ciphertext[1:]
        await integrations.update(integration.id, token_ciphertext=tampered)

        with pytest.raises(TokenDecryptionError):
            await token_store.retrieve(integration.id)

        assert (await event_types(audit, integration.id))[-1] == "token_retrieval_failed"

    async def test_cached_copy_is_not_served_for_a_replaced_blob(
        self, token_store: TokenStore, integrations, cipher, integration
    ) -> None:
        await token_store.store(integration.id, make_tokens(access="cached-access"))
        await token_store.retrieve(integration.id)

        # Another instance writes new tokens directly to the database
        blob = cipher.encrypt(make_tokens(access="written-elsewhere"), integration.id)
        await integrations.save_tokens(integration.id, blob, None, [])

        assert (await token_store.retrieve(integration.id)).access_token == "written-elsewhere"


class TestRevoke:
    """Tests for TokenStore.revoke."""

    async def test_revoke_calls_provider_and_clears_tokens(
        self, token_store: TokenStore, integrations, audit, provider_stub, integration
    ) -> None:
        provider_stub.add("POST", GOOGLE_REVOKE_URL, json={})
        await token_store.store(integration.id, make_tokens())
        await token_store.retrieve(integration.id)

        assert await token_store.revoke(integration.id) is True

        revoke_calls = provider_stub.calls("POST", GOOGLE_REVOKE_URL)
        assert len(revoke_calls) == 1
        assert revoke_calls[0].url.params["token"] == "access-1"

        row = await integrations.get(integration.id)
        assert row.status == IntegrationStatus.DISCONNECTED.value
        assert not row.has_tokens
        assert row.token_expires_at is None
        assert await token_store.retrieve(integration.id) is None
        assert (await event_types(audit, integration.id))[-1] == "token_revoked"

    async def test_provider_failure_does_not_block_cleanup(
        self, token_store: TokenStore, integrations, provider_stub, integration
    ) -> None:
        provider_stub.add("POST", GOOGLE_REVOKE_URL, json={"error": "invalid_token"}, status_code=400)
        await token_store.store(integration.id, make_tokens())

        assert await token_store.revoke(integration.id) is True

        row = await integrations.get(integration.id)
        assert row.status == IntegrationStatus.DISCONNECTED.value
        assert not row.has_tokens

    async def test_undecryptable_tokens_are_still_cleared(
        self, token_store: TokenStore, integrations, provider_stub, integration
    ) -> None:
        await token_store.store(integration.id, make_tokens())
        await integrations.update(integration.id, token_auth_tag="00" * 16)

        assert await token_store.revoke(integration.id) is True

        assert provider_stub.requests == []
        assert not (await integrations.get(integration.id)).has_tokens

    async def test_microsoft_revoke_is_local_only(
        self, token_store: TokenStore, integrations, provider_stub
    ) -> None:
        integration = await integrations.upsert_connection("rep-2", Provider.MICROSOFT, "ms-user")
        await token_store.store(integration.id, make_tokens())

        assert await token_store.revoke(integration.id) is True

        assert provider_stub.requests == []
        assert (await integrations.get(integration.id)).status == IntegrationStatus.DISCONNECTED.value

    async def test_revoke_unknown_integration(self, token_store: TokenStore) -> None:
        assert await token_store.revoke("missing-integration") is False

    async def test_revoke_without_tokens_marks_disconnected(
        self, token_store: TokenStore, integrations, provider_stub, integration
    ) -> None:
        assert await token_store.revoke(integration.id) is True

        assert provider_stub.requests == []
        assert (await integrations.get(integration.id)).status == IntegrationStatus.DISCONNECTED.value


class TestRepository:
    """Repository behaviour the token store relies on."""

    async def test_reconnect_reuses_the_integration_row(self, integrations, integration) -> None:
        await integrations.mark_expired(integration.id, "invalid_grant")

        reconnected = await integrations.upsert_connection("rep-1", Provider.GOOGLE, "google-user-1")

        assert reconnected.id == integration.id
        assert reconnected.status == IntegrationStatus.CONNECTED.value
        assert reconnected.last_error is None
        assert reconnected.error_count == 0

    async def test_mark_expired_increments_error_count(self, integrations, integration) -> None:
        await integrations.mark_expired(integration.id, "first")
        await integrations.mark_expired(integration.id, "second")

        row = await integrations.get(integration.id)
        assert row.status == IntegrationStatus.EXPIRED.value
        assert row.last_error == "second"
        assert row.error_count == 2

    async def test_saving_tokens_reconnects_an_expired_integration(
        self, integrations, cipher, integration
    ) -> None:
        await integrations.mark_expired(integration.id, "invalid_grant")

        blob = cipher.encrypt(make_tokens(), integration.id)
        assert await integrations.save_tokens(integration.id, blob, None, []) is True

        row = await integrations.get(integration.id)
        assert row.status == IntegrationStatus.CONNECTED.value
        assert row.last_error is None
        assert row.error_count == 0

    async def test_disconnected_integration_keeps_no_tokens(
        self, integrations, cipher, integration
    ) -> None:
        await integrations.clear_tokens(integration.id, IntegrationStatus.DISCONNECTED)

        blob = cipher.encrypt(make_tokens(), integration.id)
        assert await integrations.save_tokens(integration.id, blob, None, []) is False
        assert await integrations.mark_expired(integration.id, "invalid_grant") is False

        row = await integrations.get(integration.id)
        assert row.status == IntegrationStatus.DISCONNECTED.value
        assert not row.has_tokens
        assert row.error_count == 0

    async def test_store_after_revoke_fails(
        self, token_store: TokenStore, integrations, audit, integration
    ) -> None:
        await token_store.revoke(integration.id)

        with pytest.raises(TokenMissingError):
            await token_store.store(integration.id, make_tokens())

        assert not (await integrations.get(integration.id)).has_tokens
        assert (await event_types(audit, integration.id))[-1] == "token_store_failed"
        assert len(token_store.locks) == 0

    async def test_update_bumps_updated_at(self, integrations, integration) -> None:
        before = as_utc(integration.updated_at)

        await integrations.update(integration.id, provider_name="Renamed")

        row = await integrations.get(integration.id)
        assert row.provider_name == "Renamed"
        assert as_utc(row.updated_at) >= before - timedelta(seconds=1)
