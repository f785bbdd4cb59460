"""Tests for token and pending flow persistence."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from integrate_sdk.errors import TokenStoreError
from integrate_sdk.oauth.store import (
    CallbackTokenStore,
    PendingFlowStore,
    StorageTokenStore,
    maybe_await,
)
from integrate_sdk.oauth.tokens import PENDING_FLOW_TTL, PendingAuthorization, ProviderToken
from integrate_sdk.storage import MemoryStorage


def _pending(state: str = "state-1", age: timedelta = timedelta(0)) -> PendingAuthorization:
    return PendingAuthorization(
        provider="github",
        state=state,
        code_verifier="v" * 64,
        code_challenge="c" * 43,
        scopes=["repo"],
        initiated_at=datetime.now(timezone.utc) - age,
    )


class TestStorageTokenStore:
    """Tests for StorageTokenStore."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, storage, sample_token):
        """Test storing and retrieving a token."""
        store = StorageTokenStore(storage)
        await store.set_provider_token("github", sample_token)

        assert await store.get_provider_token("github") == sample_token

    @pytest.mark.asyncio
    async def test_namespaced_key(self, storage, sample_token):
        """Test that tokens live under integrate_token_<provider>."""
        store = StorageTokenStore(storage)
        await store.set_provider_token("github", sample_token)

        assert store.token_key("github") == "integrate_token_github"
        assert json.loads(storage.get_item("integrate_token_github"))["access_token"] == "gho_test_token"

    @pytest.mark.asyncio
    async def test_missing_token(self, storage):
        """Test reading a provider with no token."""
        assert await StorageTokenStore(storage).get_provider_token("github") is None

    @pytest.mark.asyncio
    async def test_invalid_data_reads_as_absent(self, storage):
        """Test that corrupted entries are treated as missing."""
        storage.set_item("integrate_token_github", "not json")
        assert await StorageTokenStore(storage).get_provider_token("github") is None

    @pytest.mark.asyncio
    async def test_read_failure_reads_as_absent(self):
        """Test that a failing backend is tolerated on read."""
        broken = MagicMock()
        broken.get_item.side_effect = OSError("disk gone")

        assert await StorageTokenStore(broken).get_provider_token("github") is None

    @pytest.mark.asyncio
    async def test_write_failure_raises(self, sample_token):
        """Test that a failing backend is reported on write."""
        broken = MagicMock()
        broken.set_item.side_effect = OSError("quota exceeded")

        with pytest.raises(TokenStoreError, match="quota exceeded"):
            await StorageTokenStore(broken).set_provider_token("github", sample_token)

    @pytest.mark.asyncio
    async def test_no_storage_is_tolerated(self, sample_token):
        """Test that a missing storage makes reads absent and writes no-ops."""
        store = StorageTokenStore(None)
        await store.set_provider_token("github", sample_token)

        assert await store.get_provider_token("github") is None
        await store.clear_provider_token("github")
        await store.clear_all()

    @pytest.mark.asyncio
    async def test_clear_provider_leaves_others(self, storage, sample_token):
        """Test that clearing one provider keeps the rest."""
        store = StorageTokenStore(storage)
        await store.set_provider_token("github", sample_token)
        await store.set_provider_token("gmail", sample_token)

        await store.clear_provider_token("github")

        assert await store.get_provider_token("github") is None
        assert await store.get_provider_token("gmail") is not None

    @pytest.mark.asyncio
    async def test_clear_all_only_removes_tokens(self, storage, sample_token):
        """Test that unrelated keys survive clear_all."""
        store = StorageTokenStore(storage)
        await store.set_provider_token("github", sample_token)
        await store.set_provider_token("gmail", sample_token)
        storage.set_item("integrate_oauth_pending_abc", "{}")
        storage.set_item("app_setting", "x")

        await store.clear_all()

        assert storage.keys() == ["integrate_oauth_pending_abc", "app_setting"]


class TestCallbackTokenStore:
    """Tests for CallbackTokenStore."""

    @pytest.mark.asyncio
    async def test_async_callbacks(self, sample_token):
        """Test async get/set/remove callbacks."""
        get_token = AsyncMock(return_value={"accessToken": "db_token", "expiresIn": 60})
        set_token = AsyncMock()
        remove_token = AsyncMock()
        store = CallbackTokenStore(get_token, set_token, remove_token)

        token = await store.get_provider_token("github")
        assert token is not None
        assert token.access_token == "db_token"

        await store.set_provider_token("gmail", sample_token)
        set_token.assert_awaited_once_with("gmail", sample_token)

        await store.clear_provider_token("github")
        remove_token.assert_awaited_once_with("github")

    @pytest.mark.asyncio
    async def test_sync_callbacks(self, sample_token):
        """Test plain function callbacks."""
        database: dict[str, ProviderToken] = {}
        store = CallbackTokenStore(
            database.get,
            lambda provider, token: database.__setitem__(provider, token),
            lambda provider: database.pop(provider, None),
        )

        await store.set_provider_token("github", sample_token)
        assert database["github"] is sample_token
        assert await store.get_provider_token("github") is sample_token

    @pytest.mark.asyncio
    async def test_read_through_cache(self):
        """Test that successful lookups are cached."""
        get_token = MagicMock(return_value=ProviderToken(access_token="a"))
        store = CallbackTokenStore(get_token)

        await store.get_provider_token("github")
        await store.get_provider_token("github")

        get_token.assert_called_once_with("github")

    @pytest.mark.asyncio
    async def test_get_only_writes_cache(self, sample_token):
        """Test that without set_token, writes stay in memory."""
        store = CallbackTokenStore(MagicMock(return_value=None))
        await store.set_provider_token("github", sample_token)

        assert await store.get_provider_token("github") is sample_token

    @pytest.mark.asyncio
    async def test_lookup_failure_reads_as_absent(self):
        """Test that a failing lookup callback is tolerated."""
        store = CallbackTokenStore(AsyncMock(side_effect=RuntimeError("db down")))
        assert await store.get_provider_token("github") is None

    @pytest.mark.asyncio
    async def test_invalid_lookup_data_reads_as_absent(self):
        """Test that unusable callback data is treated as missing."""
        store = CallbackTokenStore(MagicMock(return_value={"unexpected": True}))
        assert await store.get_provider_token("github") is None

    @pytest.mark.asyncio
    async def test_save_failure_raises(self, sample_token):
        """Test that a failing save callback is reported."""
        store = CallbackTokenStore(MagicMock(return_value=None), AsyncMock(side_effect=RuntimeError("db down")))

        with pytest.raises(TokenStoreError, match="db down"):
            await store.set_provider_token("github", sample_token)

    @pytest.mark.asyncio
    async def test_clear_all_uses_known_providers(self):
        """Test that clear_all removes the providers it is told about."""
        remove_token = MagicMock()
        store = CallbackTokenStore(MagicMock(return_value=None), remove_token=remove_token)

        await store.clear_all(providers=["github", "gmail"])

        assert sorted(c.args[0] for c in remove_token.call_args_list) == ["github", "gmail"]

    def test_is_remote(self):
        """Test that callback stores are remote-backed."""
        assert CallbackTokenStore(MagicMock()).is_remote
        assert not StorageTokenStore(None).is_remote


class TestPendingFlowStore:
    """Tests for PendingFlowStore."""

    def test_save_and_load(self, storage):
        """Test mirroring a pending flow."""
        store = PendingFlowStore(storage)
        pending = _pending()
        store.save(pending)

        assert storage.get_item("integrate_oauth_pending_state-1") is not None
        assert store.load("state-1") == pending

    def test_load_missing(self, storage):
        """Test loading an unknown state."""
        assert PendingFlowStore(storage).load("nope") is None

    def test_load_corrupted(self, storage):
        """Test that unreadable entries load as None."""
        storage.set_item("integrate_oauth_pending_bad", "{")
        assert PendingFlowStore(storage).load("bad") is None

    def test_save_failure_raises(self):
        """Test that a failing backend is reported on save."""
        broken = MagicMock()
        broken.set_item.side_effect = OSError("quota exceeded")

        with pytest.raises(TokenStoreError):
            PendingFlowStore(broken).save(_pending())

    def test_remove_and_states(self, storage):
        """Test listing and removing flows."""
        store = PendingFlowStore(storage)
        store.save(_pending("a"))
        store.save(_pending("b"))
        storage.set_item("integrate_token_github", "{}")

        assert sorted(store.states()) == ["a", "b"]

        store.remove("a")
        assert store.states() == ["b"]

    def test_sweep_expired(self, storage):
        """Test that only flows past the expiry window are swept."""
        store = PendingFlowStore(storage)
        store.save(_pending("fresh"))
        store.save(_pending("stale", age=PENDING_FLOW_TTL + timedelta(seconds=5)))
        storage.set_item("integrate_oauth_pending_garbage", "not json")

        removed = store.sweep_expired()

        assert removed == 2
        assert store.states() == ["fresh"]

    def test_clear_all(self, storage):
        """Test removing every pending flow."""
        store = PendingFlowStore(storage)
        store.save(_pending("a"))
        store.save(_pending("b"))

        store.clear_all()

        assert store.states() == []

    def test_no_storage(self):
        """Test that a missing storage is tolerated."""
        store = PendingFlowStore(None)
        store.save(_pending())

        assert store.load("state-1") is None
        assert store.states() == []
        assert store.sweep_expired() == 0


class TestMaybeAwait:
    """Tests for maybe_await helper."""

    @pytest.mark.asyncio
    async def test_plain_value(self):
        """Test that plain values pass through."""
        assert await maybe_await(5) == 5

    @pytest.mark.asyncio
    async def test_awaitable(self):
        """Test that coroutines are awaited."""

        async def produce() -> int:
            return 7

        assert await maybe_await(produce()) == 7
