"""OAuth 2.0 Authorization Code flow with PKCE.

The client never holds provider client secrets: a caller-owned backend adds
them and performs the provider token exchange. This package runs the
browser/desktop side of the flow.

Main Components:
    OAuthManager: Flow state machine and provider token cache
    OAuthWindowManager: Popup/redirect orchestration
    StorageTokenStore / CallbackTokenStore: Token persistence strategies
    ProviderToken / PendingAuthorization: Data structures

Quick Start:
    from integrate_sdk.oauth import OAuthManager, OAuthFlowConfig

    manager = OAuthManager(api_base, environment=env, flow_config=OAuthFlowConfig(mode="popup"))
    token = await manager.initiate_flow("github", github_integration().oauth)
"""

from .callback import (
    CallbackError,
    CallbackResult,
    LocalhostCallbackServer,
    parse_callback_fragment,
    parse_callback_url,
)
from .flow import (
    OAuthEndpoints,
    exchange_code_for_token,
    fetch_auth_status,
    request_authorization_url,
    revoke_provider,
)
from .pkce import (
    ParsedState,
    PKCEPair,
    generate_code_challenge,
    generate_code_verifier,
    generate_pkce_pair,
    generate_state,
    generate_state_with_return_url,
    parse_state,
)
from .store import CallbackTokenStore, PendingFlowStore, StorageTokenStore, TokenStore
from .tokens import OAuthFlowConfig, PendingAuthorization, PopupOptions, ProviderToken

__all__ = [
    # Manager (main entry point)
    "OAuthManager",
    "AuthStatus",
    "FlowState",
    # Windows
    "OAuthWindowManager",
    # Backend endpoints
    "OAuthEndpoints",
    "request_authorization_url",
    "exchange_code_for_token",
    "fetch_auth_status",
    "revoke_provider",
    # Tokens
    "ProviderToken",
    "PendingAuthorization",
    "OAuthFlowConfig",
    "PopupOptions",
    # Storage
    "TokenStore",
    "StorageTokenStore",
    "CallbackTokenStore",
    "PendingFlowStore",
    # PKCE
    "generate_pkce_pair",
    "generate_code_verifier",
    "generate_code_challenge",
    "generate_state",
    "generate_state_with_return_url",
    "parse_state",
    "PKCEPair",
    "ParsedState",
    # Callback
    "LocalhostCallbackServer",
    "CallbackResult",
    "CallbackError",
    "parse_callback_url",
    "parse_callback_fragment",
]


# The manager and window modules depend on integrate_sdk.environment, which
# itself imports this package; load them lazily to avoid the cycle.
def __getattr__(name: str) -> object:
    """Lazy import manager components."""
    if name in ("OAuthManager", "AuthStatus", "FlowState"):
        from . import manager
        return getattr(manager, name)
    elif name == "OAuthWindowManager":
        from .window import OAuthWindowManager
        return OAuthWindowManager
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
