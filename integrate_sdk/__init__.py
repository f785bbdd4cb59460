"""Integrate SDK - OAuth 2.0 authorization with PKCE for provider-backed tools."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("integrate-sdk")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    # Client
    "ClientConfig",
    "IntegrateClient",
    "ClientRegistry",
    # Integrations
    "Integration",
    "OAuthConfig",
    "LifecycleHooks",
    "github_integration",
    "gmail_integration",
    "generic_oauth_integration",
    # Environment and storage
    "DesktopEnvironment",
    "NullEnvironment",
    "MemoryStorage",
    "EncryptedFileStorage",
    # Re-authentication
    "ReauthContext",
    # Errors
    "IntegrateSDKError",
    "AuthenticationError",
    "AuthorizationError",
    "TokenExpiredError",
    "InvalidStateError",
    "FlowExpiredError",
]

_ERRORS = ("IntegrateSDKError", "AuthenticationError", "AuthorizationError", "TokenExpiredError",
           "InvalidStateError", "FlowExpiredError")
_INTEGRATIONS = ("Integration", "OAuthConfig", "LifecycleHooks", "github_integration",
                 "gmail_integration", "generic_oauth_integration")


# Lazy imports to avoid circular dependencies
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("ClientConfig", "IntegrateClient"):
        from .client import ClientConfig, IntegrateClient
        return {"ClientConfig": ClientConfig, "IntegrateClient": IntegrateClient}[name]
    elif name == "ClientRegistry":
        from .registry import ClientRegistry
        return ClientRegistry
    elif name in _INTEGRATIONS:
        from . import integrations
        return getattr(integrations, name)
    elif name in ("DesktopEnvironment", "NullEnvironment"):
        from .environment import DesktopEnvironment, NullEnvironment
        return {"DesktopEnvironment": DesktopEnvironment, "NullEnvironment": NullEnvironment}[name]
    elif name in ("MemoryStorage", "EncryptedFileStorage"):
        from .storage import EncryptedFileStorage, MemoryStorage
        return {"MemoryStorage": MemoryStorage, "EncryptedFileStorage": EncryptedFileStorage}[name]
    elif name == "ReauthContext":
        from .reauth import ReauthContext
        return ReauthContext
    elif name in _ERRORS:
        from . import errors
        return getattr(errors, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
