"""Explicit client registry.

Applications that want one client per configuration keep a ClientRegistry
and pass it around, instead of relying on hidden module state. Tests create
their own isolated registries.
"""

import json
import logging
import threading

from .client import ClientConfig, IntegrateClient

logger = logging.getLogger(__name__)


def cache_key(config: ClientConfig) -> str:
    """Stable key identifying equivalent client configurations."""
    parts = [
        config.client_info.get("name", "integrate-sdk"),
        config.client_info.get("version", "0.1.0"),
        config.oauth_api_base,
        config.server_url or "",
        json.dumps([{"id": i.id, "tools": i.tools} for i in config.integrations], sort_keys=True),
        json.dumps(config.headers, sort_keys=True),
        str(config.timeout),
    ]
    return "|".join(parts)


class ClientRegistry:
    """Cache of IntegrateClient instances keyed by configuration."""

    def __init__(self) -> None:
        self._clients: dict[str, IntegrateClient] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, key: object) -> bool:
        return key in self._clients

    def create(self, config: ClientConfig) -> IntegrateClient:
        """Create a fresh client that is not cached."""
        return IntegrateClient(config)

    def get(self, key: str) -> IntegrateClient | None:
        return self._clients.get(key)

    def get_or_create(self, config: ClientConfig, key: str | None = None) -> IntegrateClient:
        """Return the cached client for this configuration, creating it if needed.

        Args:
            config: Client configuration
            key: Explicit cache key (defaults to cache_key(config))
        """
        key = key or cache_key(config)

        with self._lock:
            client = self._clients.get(key)
            if client is None:
                client = IntegrateClient(config)
                self._clients[key] = client
                logger.debug(f"Created client for key {key!r}")
            return client

    async def clear(self) -> None:
        """Close and forget every cached client."""
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()

        for client in clients:
            try:
                await client.aclose()
            except Exception as e:
                logger.warning(f"Error closing client during registry clear: {e}")
