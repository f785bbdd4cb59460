"""Integration definitions.

An Integration is a tagged record: an id, the tool names it enables, and two
independently optional capabilities, OAuth configuration and lifecycle
hooks. Capabilities are checked by presence (``integration.oauth is not
None``), never by type.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

if TYPE_CHECKING:
    from .client import IntegrateClient


LifecycleHook = Callable[["IntegrateClient"], Awaitable[None] | None]

GITHUB_DEFAULT_SCOPES = ["repo", "user"]
GITHUB_API_BASE_URL = "https://api.github.com"

GITHUB_TOOLS = [
    "github_create_issue",
    "github_list_issues",
    "github_get_issue",
    "github_update_issue",
    "github_close_issue",
    "github_create_pull_request",
    "github_list_pull_requests",
    "github_get_pull_request",
    "github_merge_pull_request",
    "github_list_repos",
    "github_list_own_repos",
    "github_get_repo",
    "github_create_repo",
    "github_list_branches",
    "github_create_branch",
    "github_get_user",
    "github_list_commits",
    "github_get_commit",
]

GMAIL_DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.labels",
]

GMAIL_TOOLS = [
    "gmail_send_message",
    "gmail_list_messages",
    "gmail_get_message",
    "gmail_search_messages",
]


@dataclass
class OAuthConfig:
    """OAuth capability of an integration.

    Attributes:
        provider: Provider id (e.g. "github")
        scopes: Scopes to request, in order
        redirect_uri: Redirect URI override for this provider
        client_id: Client id, for server-side backends only
        client_secret: Client secret, for server-side backends only. Never
            sent anywhere by this library.
        config: Provider-specific settings
    """

    provider: str
    scopes: list[str] = field(default_factory=list)
    redirect_uri: str | None = None
    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class LifecycleHooks:
    """Optional callbacks run around the client lifecycle."""

    on_init: LifecycleHook | None = None
    on_before_connect: LifecycleHook | None = None
    on_after_connect: LifecycleHook | None = None
    on_disconnect: LifecycleHook | None = None


@dataclass
class Integration:
    """A set of tools, optionally backed by an OAuth provider."""

    id: str
    tools: list[str] = field(default_factory=list)
    oauth: OAuthConfig | None = None
    hooks: LifecycleHooks | None = None

    @property
    def provider(self) -> str | None:
        return self.oauth.provider if self.oauth else None


def has_oauth(integration: Integration) -> bool:
    """Check whether an integration carries OAuth configuration."""
    return integration.oauth is not None


def github_integration(
    scopes: list[str] | None = None,
    redirect_uri: str | None = None,
    client_id: str | None = None,
    client_secret: str | None = None,
    api_base_url: str = GITHUB_API_BASE_URL,
    tools: list[str] | None = None,
    hooks: LifecycleHooks | None = None,
) -> Integration:
    """GitHub integration (issues, pull requests, repositories, commits)."""
    return Integration(
        id="github",
        tools=list(tools or GITHUB_TOOLS),
        oauth=OAuthConfig(
            provider="github",
            scopes=list(scopes or GITHUB_DEFAULT_SCOPES),
            redirect_uri=redirect_uri,
            client_id=client_id,
            client_secret=client_secret,
            config={"api_base_url": api_base_url},
        ),
        hooks=hooks,
    )


def gmail_integration(
    scopes: list[str] | None = None,
    redirect_uri: str | None = None,
    client_id: str | None = None,
    client_secret: str | None = None,
    tools: list[str] | None = None,
    hooks: LifecycleHooks | None = None,
) -> Integration:
    """Gmail integration (send, list, read and search messages)."""
    return Integration(
        id="gmail",
        tools=list(tools or GMAIL_TOOLS),
        oauth=OAuthConfig(
            provider="gmail",
            scopes=list(scopes or GMAIL_DEFAULT_SCOPES),
            redirect_uri=redirect_uri,
            client_id=client_id,
            client_secret=client_secret,
        ),
        hooks=hooks,
    )


def generic_oauth_integration(
    id: str,
    provider: str,
    scopes: list[str],
    tools: list[str],
    redirect_uri: str | None = None,
    client_id: str | None = None,
    client_secret: str | None = None,
    config: dict[str, Any] | None = None,
    hooks: LifecycleHooks | None = None,
) -> Integration:
    """Integration for any OAuth provider the backend knows about."""
    return Integration(
        id=id,
        tools=list(tools),
        oauth=OAuthConfig(
            provider=provider,
            scopes=list(scopes),
            redirect_uri=redirect_uri,
            client_id=client_id,
            client_secret=client_secret,
            config=dict(config or {}),
        ),
        hooks=hooks,
    )


def simple_integration(id: str, tools: list[str], hooks: LifecycleHooks | None = None) -> Integration:
    """Integration whose tools need no provider authorization."""
    return Integration(id=id, tools=list(tools), hooks=hooks)
