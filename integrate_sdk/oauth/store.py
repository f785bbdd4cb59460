"""Token persistence strategies.

Two interchangeable TokenStore strategies:
- StorageTokenStore: namespaced keys in persistent client-side storage
  (the default). Tolerates storage being unavailable.
- CallbackTokenStore: delegates to caller-supplied, possibly async,
  functions for tokens kept in an external database.

PendingFlowStore mirrors pending authorizations into the same storage so
a full-page redirect can recover them.

Failure policy: backend errors on read are logged and reported as "absent";
errors on write are raised as TokenStoreError.
"""

import inspect
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from ..errors import TokenStoreError
from ..storage import KeyValueStorage
from .tokens import PendingAuthorization, ProviderToken

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "integrate_"
TOKEN_KEY_PREFIX = "token_"
PENDING_KEY_PREFIX = "oauth_pending_"

T = TypeVar("T")

GetTokenCallback = Callable[[str], Awaitable[Any] | Any]
SetTokenCallback = Callable[[str, ProviderToken], Awaitable[None] | None]
RemoveTokenCallback = Callable[[str], Awaitable[None] | None]


async def maybe_await(value: Awaitable[T] | T) -> T:
    if inspect.isawaitable(value):
        return await value  # type: ignore[no-any-return]
    return value  # type: ignore[return-value]


class TokenStore(ABC):
    """Capability contract for provider token persistence."""

    #: True when tokens live outside this process and may be revoked remotely
    is_remote: bool = False

    @abstractmethod
    async def get_provider_token(self, provider: str) -> ProviderToken | None:
        """Get the stored token for a provider, or None."""

    @abstractmethod
    async def set_provider_token(self, provider: str, token: ProviderToken) -> None:
        """Store (overwrite) the token for a provider."""

    @abstractmethod
    async def clear_provider_token(self, provider: str) -> None:
        """Delete the token for a provider."""

    @abstractmethod
    async def clear_all(self, providers: Iterable[str] | None = None) -> None:
        """Delete every stored token.

        Args:
            providers: Providers known to the caller. Strategies that cannot
                enumerate their backend clear exactly these.
        """


class StorageTokenStore(TokenStore):
    """Tokens as JSON values under namespaced keys in client-side storage.

    With storage=None (no persistent storage in this environment) reads
    return None and writes are no-ops.
    """

    def __init__(self, storage: KeyValueStorage | None, namespace: str = DEFAULT_NAMESPACE):
        self.storage = storage
        self.namespace = namespace

    def token_key(self, provider: str) -> str:
        """Storage key for a provider's token."""
        return f"{self.namespace}{TOKEN_KEY_PREFIX}{provider}"

    def read_provider_token(self, provider: str) -> ProviderToken | None:
        """Synchronous read, used to load tokens eagerly at construction."""
        if self.storage is None:
            return None

        try:
            raw = self.storage.get_item(self.token_key(provider))
        except Exception as e:
            logger.warning(f"Failed to read token for {provider} from storage: {e}")
            return None

        if raw is None:
            return None

        try:
            return ProviderToken.from_dict(json.loads(raw))
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Invalid token data for {provider}: {e}")
            return None

    async def get_provider_token(self, provider: str) -> ProviderToken | None:
        return self.read_provider_token(provider)

    async def set_provider_token(self, provider: str, token: ProviderToken) -> None:
        if self.storage is None:
            logger.debug(f"No persistent storage; token for {provider} kept in memory only")
            return

        try:
            self.storage.set_item(self.token_key(provider), json.dumps(token.to_dict()))
        except Exception as e:
            raise TokenStoreError(f"Failed to persist token for {provider}: {e}") from e

        logger.debug(f"Stored token for {provider}")

    async def clear_provider_token(self, provider: str) -> None:
        if self.storage is None:
            return

        try:
            self.storage.remove_item(self.token_key(provider))
        except Exception as e:
            raise TokenStoreError(f"Failed to clear token for {provider}: {e}") from e

        logger.debug(f"Cleared token for {provider}")

    async def clear_all(self, providers: Iterable[str] | None = None) -> None:
        if self.storage is None:
            return

        prefix = f"{self.namespace}{TOKEN_KEY_PREFIX}"
        try:
            keys = [k for k in self.storage.keys() if k.startswith(prefix)]
            for key in keys:
                self.storage.remove_item(key)
        except Exception as e:
            raise TokenStoreError(f"Failed to clear stored tokens: {e}") from e

        logger.debug(f"Cleared {len(keys)} stored token(s)")


class CallbackTokenStore(TokenStore):
    """Tokens held by caller-supplied get/set/remove functions.

    Used for server-side deployments where tokens live in a database. The
    callbacks may be plain functions or coroutines.

    When only get_token is supplied, writes update an in-memory cache but
    are not durable: read-through, write-best-effort.
    """

    is_remote = True

    def __init__(
        self,
        get_token: GetTokenCallback,
        set_token: SetTokenCallback | None = None,
        remove_token: RemoveTokenCallback | None = None,
    ):
        self._get_token = get_token
        self._set_token = set_token
        self._remove_token = remove_token
        self._cache: dict[str, ProviderToken] = {}

    async def get_provider_token(self, provider: str) -> ProviderToken | None:
        if provider in self._cache:
            return self._cache[provider]

        try:
            value = await maybe_await(self._get_token(provider))
        except Exception as e:
            logger.warning(f"Token lookup callback failed for {provider}: {e}")
            return None

        if value is None:
            return None

        try:
            token = value if isinstance(value, ProviderToken) else ProviderToken.from_callback_response(value)
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Token lookup callback returned invalid data for {provider}: {e}")
            return None

        self._cache[provider] = token
        return token

    async def set_provider_token(self, provider: str, token: ProviderToken) -> None:
        self._cache[provider] = token

        if self._set_token is None:
            logger.debug(f"No set_token callback; token for {provider} cached in memory only")
            return

        try:
            await maybe_await(self._set_token(provider, token))
        except Exception as e:
            raise TokenStoreError(f"Token save callback failed for {provider}: {e}") from e

    async def clear_provider_token(self, provider: str) -> None:
        self._cache.pop(provider, None)

        if self._remove_token is None:
            return

        try:
            await maybe_await(self._remove_token(provider))
        except Exception as e:
            raise TokenStoreError(f"Token remove callback failed for {provider}: {e}") from e

    async def clear_all(self, providers: Iterable[str] | None = None) -> None:
        targets = set(self._cache)
        if providers is not None:
            targets.update(providers)

        for provider in sorted(targets):
            await self.clear_provider_token(provider)


class PendingFlowStore:
    """Durable mirror of pending authorizations, keyed by state."""

    def __init__(self, storage: KeyValueStorage | None, namespace: str = DEFAULT_NAMESPACE):
        self.storage = storage
        self.namespace = namespace

    @property
    def prefix(self) -> str:
        return f"{self.namespace}{PENDING_KEY_PREFIX}"

    def pending_key(self, state: str) -> str:
        """Storage key for a pending flow."""
        return f"{self.prefix}{state}"

    def save(self, pending: PendingAuthorization) -> None:
        """Persist a pending flow.

        Raises:
            TokenStoreError: If the storage backend rejects the write
        """
        if self.storage is None:
            logger.debug("No persistent storage; pending flow kept in memory only")
            return

        try:
            self.storage.set_item(self.pending_key(pending.state), json.dumps(pending.to_dict()))
        except Exception as e:
            raise TokenStoreError(f"Failed to persist pending authorization: {e}") from e

        logger.debug(f"Stored pending authorization for {pending.provider}")

    def load(self, state: str) -> PendingAuthorization | None:
        """Load a pending flow by state, or None if absent or unreadable."""
        if self.storage is None:
            return None

        try:
            raw = self.storage.get_item(self.pending_key(state))
            if raw is None:
                return None
            return PendingAuthorization.from_dict(json.loads(raw))
        except Exception as e:
            logger.warning(f"Failed to load pending authorization from storage: {e}")
            return None

    def remove(self, state: str) -> None:
        """Remove a pending flow. Failures are logged."""
        if self.storage is None:
            return

        try:
            self.storage.remove_item(self.pending_key(state))
        except Exception as e:
            logger.warning(f"Failed to remove pending authorization from storage: {e}")

    def states(self) -> list[str]:
        """List the states of all stored pending flows."""
        if self.storage is None:
            return []

        try:
            keys = self.storage.keys()
        except Exception as e:
            logger.warning(f"Failed to list pending authorizations: {e}")
            return []

        return [k[len(self.prefix):] for k in keys if k.startswith(self.prefix)]

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Remove stored pending flows past the expiry window.

        Unreadable entries are removed as well.

        Returns:
            Number of entries removed
        """
        if self.storage is None:
            return 0

        now = now or datetime.now(timezone.utc)
        removed = 0

        for state in self.states():
            try:
                raw = self.storage.get_item(self.pending_key(state))
                expired = raw is None or PendingAuthorization.from_dict(json.loads(raw)).is_expired(now)
            except Exception:
                expired = True

            if expired:
                self.remove(state)
                removed += 1

        if removed:
            logger.debug(f"Swept {removed} expired pending authorization(s)")
        return removed

    def clear_all(self) -> None:
        """Remove every stored pending flow."""
        for state in self.states():
            self.remove(state)
