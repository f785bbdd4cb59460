"""Client facade.

IntegrateClient ties the pieces together for an application: the configured
integrations, the OAuth manager, the re-authentication coordinator and the
tool channel.

Usage:
    config = ClientConfig(
        oauth_api_base="https://app.example.com/api/integrate/oauth",
        server_url="https://tools.example.com/api/v1/mcp",
        integrations=[github_integration(), gmail_integration()],
        on_reauth_required=lambda ctx: prompt_user(ctx.provider),
    )

    async with IntegrateClient(config) as client:
        if not await client.is_authorized("github"):
            await client.authorize("github")
        issues = await client.call_tool("github_list_issues", {"owner": "o", "repo": "r"})
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

from .environment import Environment
from .errors import AuthenticationError, InvalidStateError, IntegrateSDKError, ToolCallError
from .events import AUTH_ERROR, EventEmitter, EventHandler
from .integrations import Integration, LifecycleHook
from .oauth.callback import parse_callback_fragment
from .oauth.manager import AuthStatus, OAuthManager
from .oauth.store import (
    CallbackTokenStore,
    GetTokenCallback,
    RemoveTokenCallback,
    SetTokenCallback,
    TokenStore,
    maybe_await,
)
from .oauth.tokens import OAuthFlowConfig, ProviderToken
from .reauth import DEFAULT_MAX_REAUTH_RETRIES, ReauthCoordinator, ReauthHandler
from .transport import DEFAULT_HTTP_TIMEOUT, HttpToolChannel, ToolChannel

logger = logging.getLogger(__name__)

ConnectionMode = Literal["lazy", "eager", "manual"]

DEFAULT_CLIENT_NAME = "integrate-sdk"
DEFAULT_CLIENT_VERSION = "0.1.0"


@dataclass
class ClientConfig:
    """Configuration for IntegrateClient.

    Attributes:
        oauth_api_base: Absolute base URL of the caller-owned OAuth backend
        integrations: Integrations to enable
        server_url: Tool server URL (omit to use tool_channel or no tools)
        environment: Runtime environment (defaults to NullEnvironment)
        flow: Flow mode, popup geometry and callback interceptor
        token_store: Explicit token store
        get_provider_token: Token lookup callback (selects the callback store)
        set_provider_token: Token save callback
        remove_provider_token: Token removal callback
        on_reauth_required: Re-authentication handler
        max_reauth_retries: Retry ceiling after successful re-authentication
        headers: Extra headers sent with every tool call
        timeout: HTTP timeout in seconds
        client_info: Client name and version
        connection_mode: "lazy" connects on first call, "eager" on entering
            the async context, "manual" only when connect() is called
        http_client: Shared HTTP client
        tool_channel: Explicit tool channel
    """

    oauth_api_base: str
    integrations: list[Integration] = field(default_factory=list)
    server_url: str | None = None
    environment: Environment | None = None
    flow: OAuthFlowConfig = field(default_factory=OAuthFlowConfig)
    token_store: TokenStore | None = None
    get_provider_token: GetTokenCallback | None = None
    set_provider_token: SetTokenCallback | None = None
    remove_provider_token: RemoveTokenCallback | None = None
    on_reauth_required: ReauthHandler | None = None
    max_reauth_retries: int = DEFAULT_MAX_REAUTH_RETRIES
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = DEFAULT_HTTP_TIMEOUT
    client_info: dict[str, str] = field(
        default_factory=lambda: {"name": DEFAULT_CLIENT_NAME, "version": DEFAULT_CLIENT_VERSION}
    )
    connection_mode: ConnectionMode = "lazy"
    http_client: httpx.AsyncClient | None = None
    tool_channel: ToolChannel | None = None

    def build_token_store(self) -> TokenStore | None:
        """The token store selected by this configuration, or None for the default."""
        if self.token_store is not None:
            return self.token_store
        if self.get_provider_token is not None:
            return CallbackTokenStore(
                self.get_provider_token,
                self.set_provider_token,
                self.remove_provider_token,
            )
        return None


@dataclass
class ProviderAuthState:
    """Authentication state of one provider as seen by the client."""

    authenticated: bool = False
    last_error: AuthenticationError | None = None


class IntegrateClient:
    """Application-facing client for authorized tool calls."""

    def __init__(self, config: ClientConfig):
        self.config = config
        self.integrations = list(config.integrations)
        self.events = EventEmitter()

        self._providers: dict[str, Integration] = {}
        self._tool_providers: dict[str, str] = {}
        self.enabled_tools: set[str] = set()
        for integration in self.integrations:
            self.enabled_tools.update(integration.tools)
            if integration.oauth is not None:
                self._providers[integration.oauth.provider] = integration
                for tool in integration.tools:
                    self._tool_providers.setdefault(tool, integration.oauth.provider)

        self.oauth = OAuthManager(
            config.oauth_api_base,
            token_store=config.build_token_store(),
            environment=config.environment,
            flow_config=config.flow,
            events=self.events,
            http_client=config.http_client,
            providers=self.providers,
        )
        self.reauth = ReauthCoordinator(config.on_reauth_required, config.max_reauth_retries)

        self.channel: ToolChannel | None = config.tool_channel
        if self.channel is None and config.server_url:
            self.channel = HttpToolChannel(
                config.server_url,
                headers=config.headers,
                timeout=config.timeout,
                http_client=config.http_client,
            )

        self.available_tools: set[str] | None = None
        self._connected = False
        self._initialized = False

    @property
    def providers(self) -> list[str]:
        """Providers of the configured OAuth integrations."""
        return list(self._providers)

    @property
    def is_connected(self) -> bool:
        return self._connected

    def provider_for_tool(self, tool_name: str) -> str | None:
        return self._tool_providers.get(tool_name)

    def _require_provider(self, provider: str) -> Integration:
        integration = self._providers.get(provider)
        if integration is None:
            raise IntegrateSDKError(f"No OAuth configuration found for provider: {provider}")
        return integration

    # Events

    def on(self, event: str, handler: EventHandler) -> None:
        self.events.on(event, handler)

    def off(self, event: str, handler: EventHandler) -> None:
        self.events.off(event, handler)

    # Authorization

    async def authorize(self, provider: str, return_url: str | None = None) -> ProviderToken | None:
        """Start authorization for a provider.

        Returns:
            The new token in popup mode, None in redirect mode
        """
        try:
            integration = self._require_provider(provider)
        except IntegrateSDKError as e:
            self.events.emit(AUTH_ERROR, {"provider": provider, "error": e})
            raise

        assert integration.oauth is not None
        return await self.oauth.initiate_flow(provider, integration.oauth, return_url)

    async def handle_oauth_callback(self, code: str, state: str) -> ProviderToken:
        """Complete a flow from callback parameters."""
        try:
            return await self.oauth.handle_callback(code, state)
        except InvalidStateError as e:
            self.events.emit(AUTH_ERROR, {"provider": None, "error": e})
            raise

    async def process_callback_url(self, url: str) -> ProviderToken | None:
        """Complete a flow from an #oauth_callback=... URL, if it carries one."""
        result = parse_callback_fragment(url)
        if result is None:
            return None
        return await self.handle_oauth_callback(result.code, result.state)  # type: ignore[arg-type]

    async def complete_redirect_flow(self, timeout: float | None = None) -> ProviderToken:
        return await self.oauth.complete_redirect_flow(timeout)

    async def is_authorized(self, provider: str) -> bool:
        return (await self.oauth.check_auth_status(provider)).authorized

    async def authorized_providers(self) -> list[str]:
        authorized = []
        for provider in self.providers:
            if (await self.oauth.check_auth_status(provider)).authorized:
                authorized.append(provider)
        return authorized

    async def get_authorization_status(self, provider: str) -> AuthStatus:
        return await self.oauth.check_auth_status(provider)

    async def get_provider_token(self, provider: str) -> ProviderToken | None:
        return await self.oauth.get_provider_token(provider)

    async def set_provider_token(self, provider: str, token: ProviderToken) -> None:
        await self.oauth.set_provider_token(provider, token)

    async def get_all_provider_tokens(self) -> dict[str, str]:
        """Access tokens keyed by provider."""
        tokens = await self.oauth.get_all_provider_tokens()
        return {provider: token.access_token for provider, token in tokens.items()}

    def auth_state(self) -> dict[str, ProviderAuthState]:
        """Authentication state of every configured provider.

        Every provider is always present; authenticated means a token is held.
        """
        return {
            provider: ProviderAuthState(
                authenticated=self.oauth.is_authenticated(provider),
                last_error=self.reauth.last_errors.get(provider),
            )
            for provider in self.providers
        }

    async def disconnect_provider(self, provider: str) -> None:
        """Revoke and forget one provider's authorization. Other providers are untouched."""
        self._require_provider(provider)
        try:
            await self.oauth.disconnect_provider(provider)
        except Exception as e:
            self.events.emit(AUTH_ERROR, {"provider": provider, "error": e})
            raise

    async def logout(self) -> None:
        await self.oauth.logout()

    async def reauthenticate(self, provider: str) -> bool:
        """Run the re-authentication handler for a provider.

        The handler is expected to obtain and store a new token (e.g. via
        authorize() or set_provider_token()). A False result leaves the
        current state untouched.
        """
        self._require_provider(provider)
        success = await self.reauth.reauthenticate(provider)

        if success and await self.oauth.get_provider_token(provider) is None:
            logger.warning(f"Re-authentication handler reported success but no token is stored for {provider}")
        return success

    # Tools

    async def connect(self) -> None:
        """Connect to the tool server, running lifecycle hooks."""
        if not self._initialized:
            await self._run_hooks("on_init")
            self._initialized = True

        await self._run_hooks("on_before_connect")

        if self.channel is not None:
            tools = await self.channel.list_tools()
            self.available_tools = set(tools)
            enabled = self.available_tools & self.enabled_tools
            logger.debug(f"Discovered {len(tools)} tools, {len(enabled)} enabled by integrations")

        self._connected = True
        await self._run_hooks("on_after_connect")

    async def disconnect(self) -> None:
        await self._run_hooks("on_disconnect")
        self._connected = False

    async def _ensure_connected(self) -> None:
        if self._connected:
            return
        if self.config.connection_mode == "manual":
            raise IntegrateSDKError("Client not connected. Call connect() first when using manual connection mode.")
        await self.connect()

    async def _run_hooks(self, name: str) -> None:
        for integration in self.integrations:
            if integration.hooks is None:
                continue
            hook: LifecycleHook | None = getattr(integration.hooks, name)
            if hook is not None:
                await maybe_await(hook(self))

    def _check_tool(self, name: str) -> None:
        if self.channel is None:
            raise ToolCallError("No tool server configured", name)
        if self.available_tools is not None and name not in self.available_tools:
            available = ", ".join(sorted(self.available_tools))
            raise ToolCallError(f'Tool "{name}" is not available on the server. Available tools: {available}', name)

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        """Call an integration tool with the owning provider's token.

        Authentication failures trigger the re-authentication handler and a
        bounded retry.
        """
        await self._ensure_connected()

        if name not in self.enabled_tools:
            raise ToolCallError(f'Tool "{name}" is not enabled. Enable it by adding the appropriate integration.', name)
        self._check_tool(name)

        provider = self.provider_for_tool(name)
        channel = self.channel
        assert channel is not None

        async def operation() -> Any:
            headers: dict[str, str] = {}
            if provider is not None:
                token = await self.oauth.get_provider_token(provider)
                if token is not None:
                    headers["Authorization"] = token.get_auth_header()
            return await channel.call_tool(name, arguments, headers)

        return await self.reauth.run(operation, provider=provider, tool_name=name)

    async def call_server_tool(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        """Call a server-level tool that belongs to no integration."""
        await self._ensure_connected()
        self._check_tool(name)
        channel = self.channel
        assert channel is not None

        return await self.reauth.run(lambda: channel.call_tool(name, arguments), tool_name=name)

    # Lifecycle

    async def aclose(self) -> None:
        if self._connected:
            await self.disconnect()
        await self.oauth.aclose()
        if self.channel is not None:
            await self.channel.aclose()

    async def __aenter__(self) -> "IntegrateClient":
        if self.config.connection_mode == "eager":
            await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()
