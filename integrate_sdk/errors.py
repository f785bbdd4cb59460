"""Error types for the Integrate SDK.

Every error raised by the library derives from IntegrateSDKError so that
applications can catch the whole family at their UI layer and offer a retry.
"""

import logging
from typing import Any

logger = logging.getLogger(__name__)

# JSON-RPC error codes used by the tool server
JSONRPC_INVALID_REQUEST = -32600
JSONRPC_METHOD_NOT_FOUND = -32601
JSONRPC_INVALID_PARAMS = -32602
JSONRPC_UNAUTHENTICATED = -32001
JSONRPC_FORBIDDEN = -32002


class IntegrateSDKError(Exception):
    """Base error for all SDK errors."""

    pass


class AuthenticationError(IntegrateSDKError):
    """Authentication failed or the provider token is invalid (401-class).

    Attributes:
        provider: The provider whose token was rejected, when known
        status_code: HTTP status reported by the remote service
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        provider: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider


class TokenExpiredError(AuthenticationError):
    """The provider token expired and must be refreshed or re-authorized."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message, status_code=401, provider=provider)


class AuthorizationError(IntegrateSDKError):
    """Access was forbidden (403-class), typically a missing scope."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        required_scopes: list[str] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.required_scopes = required_scopes


class OAuthFlowError(IntegrateSDKError):
    """Error during an OAuth authorization flow."""

    pass


class InvalidStateError(OAuthFlowError):
    """No pending flow matches the callback state.

    Signals either CSRF tampering or a flow that expired or was already
    consumed. Never silently ignored.
    """

    pass


class FlowExpiredError(OAuthFlowError):
    """The pending flow is older than the pending-flow expiry window."""

    pass


class PopupClosedError(OAuthFlowError):
    """The authorization popup was closed before a callback arrived."""

    pass


class PopupBlockedError(OAuthFlowError):
    """The environment refused to open the authorization popup."""

    pass


class CallbackTimeoutError(OAuthFlowError, TimeoutError):
    """Timeout waiting for the OAuth callback."""

    pass


class FlowCancelledError(OAuthFlowError):
    """The callback listener was cancelled before a result arrived."""

    pass


class TokenExchangeError(OAuthFlowError):
    """A call to the OAuth backend endpoints failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NotInteractiveError(IntegrateSDKError):
    """An interactive operation was attempted outside an interactive environment."""

    pass


class TokenStoreError(IntegrateSDKError):
    """Persisting a token or pending flow failed."""

    pass


class ToolTransportError(IntegrateSDKError):
    """Raw failure reported by the tool channel.

    Carries the HTTP status and the JSON-RPC error object (if any) so that
    parse_server_error can classify it.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        jsonrpc_error: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.jsonrpc_error = jsonrpc_error


class ToolCallError(IntegrateSDKError):
    """A tool call failed for a reason other than authentication."""

    def __init__(self, message: str, tool_name: str, original_error: Any = None):
        super().__init__(message)
        self.tool_name = tool_name
        self.original_error = original_error


def is_auth_error(error: BaseException) -> bool:
    """Check if an error is an authentication error."""
    return isinstance(error, AuthenticationError)


def is_token_expired_error(error: BaseException) -> bool:
    """Check if an error is a token expiry error."""
    return isinstance(error, TokenExpiredError)


def is_authorization_error(error: BaseException) -> bool:
    """Check if an error is an authorization (403) error."""
    return isinstance(error, AuthorizationError)


def _looks_like_expiry(message: str) -> bool:
    lowered = message.lower()
    return "expired" in lowered or "token" in lowered


def _unauthenticated(message: str, provider: str | None) -> AuthenticationError:
    if _looks_like_expiry(message):
        return TokenExpiredError(message, provider=provider)
    return AuthenticationError(message, status_code=401, provider=provider)


def _parse_jsonrpc_error(
    error: dict[str, Any],
    tool_name: str | None,
    provider: str | None,
) -> IntegrateSDKError:
    code = error.get("code")
    message = str(error.get("message") or "Unknown error")

    if code == JSONRPC_INVALID_REQUEST:
        return IntegrateSDKError(f"Invalid request: {message}")
    if code == JSONRPC_METHOD_NOT_FOUND:
        return IntegrateSDKError(f"Method not found: {message}")
    if code == JSONRPC_INVALID_PARAMS:
        return IntegrateSDKError(f"Invalid params: {message}")

    if code in (401, JSONRPC_UNAUTHENTICATED):
        return _unauthenticated(message, provider)

    if code in (403, JSONRPC_FORBIDDEN):
        data = error.get("data")
        scopes = None
        if isinstance(data, dict) and isinstance(data.get("requiredScopes"), list):
            scopes = [str(s) for s in data["requiredScopes"]]
        return AuthorizationError(message, status_code=403, required_scopes=scopes)

    if tool_name:
        return ToolCallError(message, tool_name, error)

    return IntegrateSDKError(message)


def parse_server_error(
    error: Any,
    tool_name: str | None = None,
    provider: str | None = None,
) -> IntegrateSDKError:
    """Convert a raw error from the tool server into the SDK taxonomy.

    Recognizes, in order:
    - Exceptions carrying an attached JSON-RPC error object
    - JSON-RPC error dictionaries ({"code": ..., "message": ...})
    - Exceptions with a status_code attribute (401 / 403)
    - Auth-related message patterns ("401", "Unauthorized", "Forbidden", ...)

    Args:
        error: The raw error (exception or JSON-RPC error dict)
        tool_name: Tool being called, used for ToolCallError
        provider: Provider owning the tool, attached to auth errors

    Returns:
        An IntegrateSDKError subclass instance
    """
    # Already classified errors pass through unchanged
    if isinstance(error, (AuthenticationError, AuthorizationError, ToolCallError)):
        if isinstance(error, AuthenticationError) and error.provider is None:
            error.provider = provider
        return error

    jsonrpc_error = getattr(error, "jsonrpc_error", None)
    if isinstance(jsonrpc_error, dict):
        return _parse_jsonrpc_error(jsonrpc_error, tool_name, provider)

    if isinstance(error, dict) and "code" in error and "message" in error:
        return _parse_jsonrpc_error(error, tool_name, provider)

    if isinstance(error, BaseException):
        message = str(error)
        status_code = getattr(error, "status_code", None)

        if status_code == 401:
            return _unauthenticated(message, provider)
        if status_code == 403:
            return AuthorizationError(message, status_code=403)

        if "401" in message or "Unauthorized" in message or "unauthenticated" in message:
            return _unauthenticated(message, provider)

        # Lowercase "unauthorized" is treated as a permission problem
        if "403" in message or "Forbidden" in message or "unauthorized" in message:
            return AuthorizationError(message, status_code=403)

        if tool_name:
            return ToolCallError(message, tool_name, error)

        if isinstance(error, IntegrateSDKError):
            return error

        return IntegrateSDKError(message)

    return IntegrateSDKError(str(error))
