"""OAuth flow manager.

This module coordinates the authorization flow for every provider a client
knows about:

    idle -> pending -> exchanging -> authenticated
            pending -> failed | expired  (back to idle on the next start)

It generates PKCE values and state, persists pending flows so a full-page
redirect survives, asks the caller-owned backend for the authorization URL,
drives the window orchestrator, validates the callback and exchanges the
code. Provider tokens are cached in memory and written through to the
token store; "authenticated" always means "a token is present".
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable

import httpx

from ..environment import Environment, NullEnvironment
from ..errors import FlowExpiredError, InvalidStateError, OAuthFlowError
from ..events import (
    AUTH_COMPLETE,
    AUTH_DISCONNECT,
    AUTH_ERROR,
    AUTH_LOGOUT,
    AUTH_STARTED,
    EventEmitter,
)
from ..integrations import OAuthConfig
from .callback import CallbackResult
from .flow import (
    OAuthEndpoints,
    exchange_code_for_token,
    fetch_auth_status,
    request_authorization_url,
    revoke_provider,
)
from .pkce import generate_pkce_pair, generate_state, parse_state
from .store import PendingFlowStore, StorageTokenStore, TokenStore, maybe_await
from .tokens import OAuthFlowConfig, PendingAuthorization, ProviderToken, parse_datetime, parse_scopes
from .window import OAuthWindowManager

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 60.0  # seconds


class FlowState(str, Enum):
    """Per-provider authorization flow state."""

    IDLE = "idle"
    PENDING = "pending"
    EXCHANGING = "exchanging"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"
    EXPIRED = "expired"


def _format_timedelta(td: timedelta) -> str:
    """Format a timedelta into a human-readable string.

    Examples:
        - "45 minutes"
        - "2 hours"
        - "3 days"

    Args:
        td: The timedelta to format

    Returns:
        Human-readable string representation
    """
    total_seconds = int(td.total_seconds())

    if total_seconds < 0:
        return "Expired"
    if total_seconds < 60:
        return f"{total_seconds} seconds"

    minutes = total_seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"

    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''}"

    days = hours // 24
    if days < 14:
        return f"{days} day{'s' if days != 1 else ''}"

    weeks = days // 7
    return f"{weeks} week{'s' if weeks != 1 else ''}"


@dataclass
class AuthStatus:
    """Authorization status for a provider.

    Attributes:
        provider: Provider id
        authorized: Whether a valid token is held (and, for remote stores,
            confirmed by the backend)
        scopes: Granted scopes
        expires_at: When the token expires (ISO format string)
        expired: Whether the held token is expired
        expires_in_human: Human-readable time until expiry (e.g. "45 minutes")
        has_refresh_token: Whether a refresh token is available
    """

    provider: str
    authorized: bool = False
    scopes: list[str] | None = None
    expires_at: str | None = None
    expired: bool = False
    expires_in_human: str | None = None
    has_refresh_token: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "provider": self.provider,
            "authorized": self.authorized,
            "scopes": self.scopes,
            "expires_at": self.expires_at,
            "expired": self.expired,
            "expires_in_human": self.expires_in_human,
            "has_refresh_token": self.has_refresh_token,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuthStatus":
        """Deserialize from dictionary."""
        return cls(
            provider=data["provider"],
            authorized=data.get("authorized", False),
            scopes=data.get("scopes"),
            expires_at=data.get("expires_at"),
            expired=data.get("expired", False),
            expires_in_human=data.get("expires_in_human"),
            has_refresh_token=data.get("has_refresh_token", False),
        )

    @classmethod
    def from_token(cls, provider: str, token: ProviderToken) -> "AuthStatus":
        """Build the status implied by a held token."""
        expires_in_human = None
        if token.expires_at:
            expires_at = token.expires_at
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            expires_in_human = _format_timedelta(expires_at - datetime.now(timezone.utc))

        expired = token.is_expired()
        return cls(
            provider=provider,
            authorized=not expired,
            scopes=list(token.scopes) if token.scopes is not None else None,
            expires_at=token.expires_at.isoformat() if token.expires_at else None,
            expired=expired,
            expires_in_human=expires_in_human,
            has_refresh_token=token.has_refresh_token(),
        )


class OAuthManager:
    """Coordinates OAuth flows and provider tokens for one client.

    Usage:
        manager = OAuthManager(
            "https://app.example.com/api/integrate/oauth",
            environment=env,
            flow_config=OAuthFlowConfig(mode="popup"),
            providers=["github"],
        )

        token = await manager.initiate_flow("github", github.oauth)
        status = await manager.check_auth_status("github")
    """

    def __init__(
        self,
        api_base: str | OAuthEndpoints,
        token_store: TokenStore | None = None,
        environment: Environment | None = None,
        flow_config: OAuthFlowConfig | None = None,
        events: EventEmitter | None = None,
        http_client: httpx.AsyncClient | None = None,
        providers: Iterable[str] = (),
        window_manager: OAuthWindowManager | None = None,
    ):
        """Initialize the manager.

        Tokens for the given providers are loaded eagerly when the token
        store can be read synchronously; otherwise load_provider_tokens()
        must be awaited (async operations do so on first use).

        Args:
            api_base: Absolute base URL of the OAuth backend, or endpoints
            token_store: Token persistence (defaults to the environment's storage)
            environment: Runtime environment (defaults to NullEnvironment)
            flow_config: Flow mode, popup geometry and callback interceptor
            events: Emitter for lifecycle notifications
            http_client: Optional HTTP client shared by backend calls
            providers: Provider ids this client knows about
            window_manager: Optional window orchestrator
        """
        self.endpoints = api_base if isinstance(api_base, OAuthEndpoints) else OAuthEndpoints(api_base)
        self.environment = environment or NullEnvironment()
        self.token_store = token_store or StorageTokenStore(self.environment.storage)
        self.flow_config = flow_config or OAuthFlowConfig()
        self.events = events or EventEmitter()
        self.http_client = http_client
        self.window_manager = window_manager or OAuthWindowManager(self.environment)
        self.known_providers: list[str] = list(dict.fromkeys(providers))

        self._pending: dict[str, PendingAuthorization] = {}
        self._pending_store = PendingFlowStore(self.environment.storage)
        self._tokens: dict[str, ProviderToken] = {}
        self._flow_states: dict[str, FlowState] = {}
        self._active_states: dict[str, str] = {}
        self._tokens_loaded = False
        self._sweep_task: asyncio.Task[None] | None = None

        self.sweep_expired_pending()

        if isinstance(self.token_store, StorageTokenStore):
            for provider in self.known_providers:
                token = self.token_store.read_provider_token(provider)
                if token is not None:
                    self._tokens[provider] = token
            self._tokens_loaded = True

    # Flow state

    def get_flow_state(self, provider: str) -> FlowState:
        return self._flow_states.get(provider, FlowState.IDLE)

    def _set_flow_state(self, provider: str, state: FlowState) -> None:
        previous = self.get_flow_state(provider)
        if previous is not state:
            logger.debug(f"Flow state for {provider}: {previous.value} -> {state.value}")
        self._flow_states[provider] = state

    @property
    def pending_authorizations(self) -> dict[str, PendingAuthorization]:
        """In-memory pending flows keyed by state."""
        return dict(self._pending)

    def _remove_pending(self, state: str) -> None:
        self._pending.pop(state, None)
        self._pending_store.remove(state)

    def _fail_flow(self, provider: str, state: str, error: BaseException) -> None:
        """Discard a pending flow after a failure before the code exchange."""
        self._remove_pending(state)

        # A newer flow for the same provider owns the flow state now
        if self._active_states.get(provider) != state:
            logger.debug(f"Superseded authorization for {provider} ended: {error}")
            return

        self._active_states.pop(provider, None)
        self._set_flow_state(provider, FlowState.FAILED)
        self.events.emit(AUTH_ERROR, {"provider": provider, "error": error})

    # Flow

    async def initiate_flow(
        self,
        provider: str,
        config: OAuthConfig,
        return_url: str | None = None,
    ) -> ProviderToken | None:
        """Start an authorization flow for a provider.

        In popup mode this waits until the popup flow completes and returns
        the new token. In redirect mode it returns None as soon as navigation
        begins; the flow completes through handle_callback() or
        complete_redirect_flow() after the page comes back.

        Args:
            provider: Provider id
            config: OAuth configuration (scopes, redirect URI)
            return_url: URL to return to afterwards, bound into the state

        Returns:
            The new token (popup mode) or None (redirect mode)

        Raises:
            OAuthFlowError: If a code exchange for this provider is in progress
            TokenStoreError: If the pending flow cannot be persisted
            TokenExchangeError: If the backend refuses the authorize request
            PopupBlockedError / PopupClosedError / CallbackTimeoutError:
                If the interactive step is abandoned
        """
        current = self.get_flow_state(provider)
        if current is FlowState.EXCHANGING:
            raise OAuthFlowError(f"Authorization for {provider} is already exchanging a code")
        if current is FlowState.PENDING:
            logger.debug(f"Replacing pending authorization for {provider}")
            previous_state = self._active_states.pop(provider, None)
            if previous_state:
                self._remove_pending(previous_state)
            self.window_manager.close()

        pkce = generate_pkce_pair()
        state = generate_state(return_url)
        redirect_uri = config.redirect_uri or self.environment.default_redirect_uri()

        pending = PendingAuthorization(
            provider=provider,
            state=state,
            code_verifier=pkce.verifier,
            code_challenge=pkce.challenge,
            scopes=list(config.scopes),
            redirect_uri=redirect_uri,
        )

        self._pending_store.save(pending)
        self._pending[state] = pending
        self._active_states[provider] = state
        self._set_flow_state(provider, FlowState.PENDING)
        self.events.emit(AUTH_STARTED, {"provider": provider})

        try:
            authorization_url = await request_authorization_url(
                self.endpoints,
                provider,
                pending.scopes,
                state,
                pkce.challenge,
                redirect_uri=redirect_uri,
                http_client=self.http_client,
            )

            if self.flow_config.mode == "redirect":
                self.window_manager.open_redirect(authorization_url)
                return None

            self.window_manager.open_popup(authorization_url, self.flow_config.popup_options)
            result = await self.window_manager.listen_for_callback(
                "popup", timeout=self.flow_config.callback_timeout
            )
        except Exception as e:
            if self.flow_config.mode != "redirect":
                self.window_manager.close()
            self._fail_flow(provider, state, e)
            raise

        return await self._complete_from_result(result, provider, state)

    async def complete_redirect_flow(self, timeout: float | None = None) -> ProviderToken:
        """Wait for redirect-mode callback parameters and complete the flow.

        Args:
            timeout: Seconds to wait (defaults to the configured callback timeout)

        Returns:
            The new token

        Raises:
            CallbackTimeoutError: If no parameters arrive in time
            OAuthFlowError: If the provider reported an error
            InvalidStateError / FlowExpiredError: As for handle_callback
        """
        result = await self.window_manager.listen_for_callback(
            "redirect", timeout=timeout or self.flow_config.callback_timeout
        )
        return await self._complete_from_result(result)

    async def _complete_from_result(
        self,
        result: CallbackResult,
        provider: str | None = None,
        state: str | None = None,
    ) -> ProviderToken:
        if not result.is_success():
            description = f" - {result.error_description}" if result.error_description else ""
            error = OAuthFlowError(f"Authorization failed: {result.error}{description}")
            failed_state = state or result.state
            if failed_state:
                pending = self._pending.get(failed_state) or self._pending_store.load(failed_state)
                failed_provider = provider or (pending.provider if pending else None)
                if failed_provider is None:
                    self._remove_pending(failed_state)
                else:
                    # After a reload nothing is active in memory; the stored flow owns the provider
                    self._active_states.setdefault(failed_provider, failed_state)
                    self._fail_flow(failed_provider, failed_state, error)
            raise error

        try:
            return await self.handle_callback(result.code, result.state)  # type: ignore[arg-type]
        except InvalidStateError as e:
            # Our own flow can no longer complete
            if provider and state and state in self._pending:
                self._fail_flow(provider, state, e)
            raise

    async def handle_callback(self, code: str, state: str) -> ProviderToken:
        """Validate a callback and exchange the code for a token.

        The pending flow is looked up by exact state, in memory first and
        then in durable storage. It is consumed whatever the outcome of the
        exchange.

        Args:
            code: Authorization code from the callback
            state: State parameter from the callback

        Returns:
            The stored ProviderToken

        Raises:
            InvalidStateError: If no pending flow matches state
            FlowExpiredError: If the pending flow is older than five minutes
            TokenExchangeError: If the backend exchange fails
            TokenStoreError: If the token cannot be persisted
        """
        pending = self._pending.get(state)
        if pending is None:
            pending = self._pending_store.load(state)
        if pending is None:
            raise InvalidStateError(
                "Invalid state parameter: no matching pending authorization. "
                "The flow may have expired, been completed already, or been tampered with."
            )

        provider = pending.provider
        owns_state = self._active_states.get(provider) in (None, state)

        if pending.is_expired():
            self._remove_pending(state)
            error = FlowExpiredError(f"Authorization for {provider} expired. Please try again.")
            if owns_state:
                self._active_states.pop(provider, None)
                self._set_flow_state(provider, FlowState.EXPIRED)
            self.events.emit(AUTH_ERROR, {"provider": provider, "error": error})
            raise error

        interceptor = self.flow_config.on_auth_callback
        if interceptor is not None:
            try:
                await maybe_await(interceptor(provider, code, state))
            except Exception as e:
                logger.warning(f"Auth callback interceptor failed for {provider}: {e}")

        # A code is single-use: consume the pending flow before exchanging
        self._remove_pending(state)
        self._active_states.pop(provider, None)
        self._set_flow_state(provider, FlowState.EXCHANGING)

        try:
            token = await exchange_code_for_token(
                self.endpoints,
                provider,
                code,
                pending.code_verifier,
                state,
                http_client=self.http_client,
            )
            await self.set_provider_token(provider, token)
        except Exception as e:
            self._set_flow_state(provider, FlowState.FAILED)
            self.events.emit(AUTH_ERROR, {"provider": provider, "error": e})
            raise

        self._set_flow_state(provider, FlowState.AUTHENTICATED)
        logger.info(f"Authorization complete for {provider}")

        self.events.emit(
            AUTH_COMPLETE,
            {"provider": provider, "token": token, "return_url": parse_state(state).return_url},
        )
        return token

    # Status

    async def check_auth_status(self, provider: str) -> AuthStatus:
        """Report whether a provider is authorized.

        Derived from the held token. When tokens live in a remote-backed
        store the backend is asked to confirm; any failure there means
        "not authorized".
        """
        token = await self.get_provider_token(provider)
        if token is None:
            return AuthStatus(provider=provider, authorized=False)

        status = AuthStatus.from_token(provider, token)
        if not self.token_store.is_remote:
            return status

        data = await fetch_auth_status(self.endpoints, provider, token, http_client=self.http_client)
        if data is None or not data.get("authorized"):
            return AuthStatus(provider=provider, authorized=False)

        remote_scopes = parse_scopes(data.get("scopes"))
        if remote_scopes is not None:
            status.scopes = remote_scopes
        remote_expiry = parse_datetime(data.get("expiresAt") or data.get("expires_at"))
        if remote_expiry is not None:
            status.expires_at = remote_expiry.isoformat()
            status.expires_in_human = _format_timedelta(remote_expiry - datetime.now(timezone.utc))
        return status

    # Provider tokens

    def is_authenticated(self, provider: str) -> bool:
        """Whether a token is held for a provider."""
        return provider in self._tokens

    async def load_provider_tokens(self, providers: Iterable[str] | None = None) -> None:
        """Load tokens for providers from the token store into memory."""
        targets = list(providers) if providers is not None else self.known_providers
        for provider in targets:
            if provider not in self.known_providers:
                self.known_providers.append(provider)
            token = await self.token_store.get_provider_token(provider)
            if token is not None:
                self._tokens[provider] = token
        self._tokens_loaded = True

    async def _ensure_loaded(self) -> None:
        if not self._tokens_loaded:
            await self.load_provider_tokens()

    async def get_provider_token(self, provider: str) -> ProviderToken | None:
        await self._ensure_loaded()

        token = self._tokens.get(provider)
        if token is not None:
            return token

        token = await self.token_store.get_provider_token(provider)
        if token is not None:
            self._tokens[provider] = token
        return token

    async def set_provider_token(self, provider: str, token: ProviderToken) -> None:
        """Store a token for a provider.

        Raises:
            TokenStoreError: If the token store rejects the write
        """
        await self.token_store.set_provider_token(provider, token)
        self._tokens[provider] = token
        if provider not in self.known_providers:
            self.known_providers.append(provider)

    async def get_all_provider_tokens(self) -> dict[str, ProviderToken]:
        await self._ensure_loaded()
        return dict(self._tokens)

    async def clear_provider_token(self, provider: str) -> None:
        await self.token_store.clear_provider_token(provider)
        self._tokens.pop(provider, None)

    async def clear_all_provider_tokens(self) -> None:
        await self.token_store.clear_all(providers=list(self.known_providers))
        self._tokens.clear()

    async def disconnect_provider(self, provider: str) -> None:
        """Disconnect a single provider.

        The backend is asked to revoke the authorization (best-effort), then
        only this provider's token is cleared.
        """
        token = await self.get_provider_token(provider)
        if token is not None:
            await revoke_provider(self.endpoints, provider, token, http_client=self.http_client)

        await self.clear_provider_token(provider)
        self._set_flow_state(provider, FlowState.IDLE)
        logger.info(f"Disconnected {provider}")
        self.events.emit(AUTH_DISCONNECT, {"provider": provider})

    async def logout(self) -> None:
        """Clear every provider token and every pending flow."""
        self.window_manager.close()
        await self.clear_all_provider_tokens()
        self.clear_all_pending()
        self._flow_states.clear()
        self._active_states.clear()
        logger.info("Logged out of all providers")
        self.events.emit(AUTH_LOGOUT, {})

    # Pending flows

    def clear_all_pending(self) -> None:
        self._pending.clear()
        self._pending_store.clear_all()

    def sweep_expired_pending(self) -> int:
        """Remove pending flows past the expiry window from memory and storage.

        Returns:
            Number of stored entries removed
        """
        now = datetime.now(timezone.utc)
        for state, pending in list(self._pending.items()):
            if pending.is_expired(now):
                self._pending.pop(state, None)
        return self._pending_store.sweep_expired(now)

    def start_expiry_sweep(self, interval: float = DEFAULT_SWEEP_INTERVAL) -> asyncio.Task[None]:
        """Sweep expired pending flows periodically until aclose()."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return self._sweep_task

        async def sweep_loop() -> None:
            while True:
                await asyncio.sleep(interval)
                self.sweep_expired_pending()

        self._sweep_task = asyncio.create_task(sweep_loop())
        return self._sweep_task

    # Lifecycle

    def close(self) -> None:
        """Close any open authorization window and cancel its listener."""
        self.window_manager.close()

    async def aclose(self) -> None:
        """Stop the expiry sweep and close windows."""
        self.close()
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def __aenter__(self) -> "OAuthManager":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()
