"""OAuth data structures.

This module provides the records the flow manager works with:
- ProviderToken: a provider's access token with expiry metadata
- PendingAuthorization: an in-flight authorization, keyed by state
- OAuthFlowConfig / PopupOptions: immutable per-client flow settings
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Literal

logger = logging.getLogger(__name__)

# Pending flows older than this are rejected and swept
PENDING_FLOW_TTL = timedelta(minutes=5)

DEFAULT_POPUP_WIDTH = 600
DEFAULT_POPUP_HEIGHT = 700

FlowMode = Literal["popup", "redirect"]

# Interceptor invoked with (provider, code, state) before the code exchange
AuthCallbackInterceptor = Callable[[str, str, str], Awaitable[None] | None]


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO string or epoch value into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        # Epoch milliseconds are what browser-side backends send
        seconds = value / 1000 if value > 1e11 else value
        parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_scopes(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.split()
    return [str(s) for s in value]


@dataclass
class ProviderToken:
    """Access token for one provider.

    The presence of a ProviderToken for a provider is what "authenticated"
    means; there is no separate flag.

    Attributes:
        access_token: The access (or session) token string
        token_type: Token type (typically "Bearer")
        expires_in: Lifetime in seconds as reported by the backend
        expires_at: When the access token expires (UTC datetime)
        refresh_token: Optional refresh token
        scopes: Granted scopes
    """

    access_token: str
    token_type: str = "Bearer"
    expires_in: int | None = None
    expires_at: datetime | None = None
    refresh_token: str | None = None
    scopes: list[str] | None = None

    def is_expired(self, buffer_seconds: int = 30) -> bool:
        """Check if the access token is expired or nearly expired.

        Args:
            buffer_seconds: Consider token expired this many seconds before
                actual expiry to allow for clock skew and request latency.

        Returns:
            True if token is expired or will expire within buffer_seconds
        """
        if self.expires_at is None:
            # No expiry information - the server will return 401 if it is stale
            return False

        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        now = datetime.now(timezone.utc)
        return now >= (expires_at - timedelta(seconds=buffer_seconds))

    def has_refresh_token(self) -> bool:
        """Check if this token has a refresh token."""
        return self.refresh_token is not None and len(self.refresh_token) > 0

    def get_auth_header(self) -> str:
        """Get the Authorization header value for this token."""
        # Always "Bearer" per RFC 6750, whatever casing the backend used
        return f"Bearer {self.access_token}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary for storage."""
        data: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
        }
        if self.expires_in is not None:
            data["expires_in"] = self.expires_in
        if self.expires_at:
            data["expires_at"] = self.expires_at.isoformat()
        if self.refresh_token:
            data["refresh_token"] = self.refresh_token
        if self.scopes is not None:
            data["scopes"] = list(self.scopes)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderToken":
        """Deserialize from a dictionary produced by to_dict."""
        expires_in = data.get("expires_in")
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type", "Bearer"),
            expires_in=int(expires_in) if expires_in is not None else None,
            expires_at=parse_datetime(data.get("expires_at")),
            refresh_token=data.get("refresh_token"),
            scopes=parse_scopes(data.get("scopes")),
        )

    @classmethod
    def from_callback_response(cls, response: dict[str, Any]) -> "ProviderToken":
        """Create a ProviderToken from the backend callback endpoint response.

        The backend may answer with a provider token ({accessToken, tokenType,
        expiresIn, expiresAt, refreshToken, scopes}, camelCase or snake_case)
        or with a session token ({sessionToken, expiresAt}).

        Args:
            response: JSON body returned by the callback endpoint

        Returns:
            ProviderToken instance

        Raises:
            KeyError: If the response carries no token at all
        """

        def pick(*names: str) -> Any:
            for name in names:
                if response.get(name) is not None:
                    return response[name]
            return None

        access_token = pick("accessToken", "access_token", "sessionToken", "session_token")
        if access_token is None:
            raise KeyError("accessToken")

        expires_in = pick("expiresIn", "expires_in")
        expires_at = parse_datetime(pick("expiresAt", "expires_at"))
        if expires_at is None and expires_in is not None:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))

        return cls(
            access_token=str(access_token),
            token_type=pick("tokenType", "token_type") or "Bearer",
            expires_in=int(expires_in) if expires_in is not None else None,
            expires_at=expires_at,
            refresh_token=pick("refreshToken", "refresh_token"),
            scopes=parse_scopes(pick("scopes", "scope")),
        )


@dataclass
class PendingAuthorization:
    """An authorization flow that has been started but not yet completed.

    Exactly one PendingAuthorization exists per state value. It is mirrored
    into durable storage so a full-page redirect can recover it.
    """

    provider: str
    state: str
    code_verifier: str
    code_challenge: str
    scopes: list[str] = field(default_factory=list)
    redirect_uri: str | None = None
    initiated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if this flow is older than the pending-flow TTL."""
        now = now or datetime.now(timezone.utc)
        initiated_at = self.initiated_at
        if initiated_at.tzinfo is None:
            initiated_at = initiated_at.replace(tzinfo=timezone.utc)
        return now - initiated_at > PENDING_FLOW_TTL

    def to_dict(self) -> dict[str, Any]:
        """Serialize for storage."""
        data: dict[str, Any] = {
            "provider": self.provider,
            "state": self.state,
            "code_verifier": self.code_verifier,
            "code_challenge": self.code_challenge,
            "scopes": list(self.scopes),
            "initiated_at": self.initiated_at.isoformat(),
        }
        if self.redirect_uri:
            data["redirect_uri"] = self.redirect_uri
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingAuthorization":
        """Deserialize from storage."""
        initiated_at = parse_datetime(data.get("initiated_at"))
        if initiated_at is None:
            raise ValueError("Pending authorization missing initiated_at")

        return cls(
            provider=data["provider"],
            state=data["state"],
            code_verifier=data["code_verifier"],
            code_challenge=data["code_challenge"],
            scopes=list(data.get("scopes") or []),
            redirect_uri=data.get("redirect_uri"),
            initiated_at=initiated_at,
        )


@dataclass(frozen=True)
class PopupOptions:
    """Popup window dimensions in pixels."""

    width: int = DEFAULT_POPUP_WIDTH
    height: int = DEFAULT_POPUP_HEIGHT


@dataclass(frozen=True)
class OAuthFlowConfig:
    """Immutable per-client flow configuration.

    Attributes:
        mode: "popup" waits for the callback in-process; "redirect" navigates
            away and completes after the callback page hands the parameters back
        popup_options: Popup geometry (popup mode only)
        on_auth_callback: Optional interceptor called with (provider, code,
            state) before the code exchange. Failures are logged, not raised.
        callback_timeout: Seconds to wait for the callback in popup mode
    """

    mode: FlowMode = "redirect"
    popup_options: PopupOptions = field(default_factory=PopupOptions)
    on_auth_callback: AuthCallbackInterceptor | None = None
    callback_timeout: float = 300.0

    def __post_init__(self) -> None:
        if self.mode not in ("popup", "redirect"):
            raise ValueError(f"Invalid flow mode: {self.mode!r} (expected 'popup' or 'redirect')")
