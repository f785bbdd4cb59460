"""Tests for the client registry."""

from unittest.mock import AsyncMock

import pytest

from integrate_sdk.client import ClientConfig
from integrate_sdk.integrations import github_integration, gmail_integration
from integrate_sdk.registry import ClientRegistry, cache_key

API_BASE = "https://app.example.com/api/integrate/oauth"


def config(**overrides) -> ClientConfig:
    options = {"oauth_api_base": API_BASE, "integrations": [github_integration()]}
    options.update(overrides)
    return ClientConfig(**options)


class TestCacheKey:
    """Tests for cache_key."""

    def test_equivalent_configs_share_key(self):
        """Test that separately built equal configs produce the same key."""
        assert cache_key(config()) == cache_key(config())

    def test_differences_change_key(self):
        """Test that relevant settings are part of the key."""
        base = cache_key(config())

        assert cache_key(config(server_url="https://tools.example.com")) != base
        assert cache_key(config(integrations=[gmail_integration()])) != base
        assert cache_key(config(headers={"X-App": "demo"})) != base
        assert cache_key(config(timeout=5.0)) != base


class TestClientRegistry:
    """Tests for ClientRegistry."""

    def test_get_or_create_caches(self):
        """Test that equivalent configs return the same client."""
        registry = ClientRegistry()

        first = registry.get_or_create(config())
        second = registry.get_or_create(config())

        assert first is second
        assert len(registry) == 1
        assert cache_key(config()) in registry

    def test_explicit_key(self):
        """Test caching under a caller-chosen key."""
        registry = ClientRegistry()

        client = registry.get_or_create(config(), key="user-42")

        assert registry.get("user-42") is client
        assert registry.get("user-43") is None
        assert registry.get_or_create(config(server_url="https://other.example.com"), key="user-42") is client

    def test_create_is_not_cached(self):
        """Test that create() bypasses the cache."""
        registry = ClientRegistry()

        client = registry.create(config())

        assert client is not registry.create(config())
        assert len(registry) == 0

    def test_registries_are_isolated(self):
        """Test that each registry has its own clients."""
        assert ClientRegistry().get_or_create(config()) is not ClientRegistry().get_or_create(config())

    @pytest.mark.asyncio
    async def test_clear_closes_clients(self):
        """Test that clear() closes and forgets every client."""
        registry = ClientRegistry()
        client = registry.get_or_create(config())
        client.aclose = AsyncMock()  # type: ignore[method-assign]

        await registry.clear()

        client.aclose.assert_awaited_once()
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_clear_continues_after_close_failure(self):
        """Test that one failing client does not stop the others closing."""
        registry = ClientRegistry()
        failing = registry.get_or_create(config(), key="a")
        other = registry.get_or_create(config(), key="b")
        failing.aclose = AsyncMock(side_effect=RuntimeError("boom"))  # type: ignore[method-assign]
        other.aclose = AsyncMock()  # type: ignore[method-assign]

        await registry.clear()

        other.aclose.assert_awaited_once()
        assert len(registry) == 0
