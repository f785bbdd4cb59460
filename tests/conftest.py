"""Shared fixtures and utilities for Integrate SDK tests."""

import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from integrate_sdk.client import ClientConfig, IntegrateClient
from integrate_sdk.environment import Environment, MessageListener, Unsubscribe, WindowHandle
from integrate_sdk.integrations import gmail_integration, github_integration
from integrate_sdk.oauth.tokens import OAuthFlowConfig, ProviderToken
from integrate_sdk.storage import KeyValueStorage, MemoryStorage

API_BASE = "https://app.example.com/api/integrate/oauth"


# ============================================================================
# Fake Environment
# ============================================================================


class FakeEnvironment(Environment):
    """Interactive environment that records windows and lets tests post messages."""

    def __init__(
        self,
        storage: KeyValueStorage | None = None,
        block_popups: bool = False,
        has_storage: bool = True,
    ):
        self._storage = (storage if storage is not None else MemoryStorage()) if has_storage else None
        self.block_popups = block_popups
        self.opened: list[tuple[str, str, str]] = []
        self.navigated: list[str] = []
        self.listeners: list[MessageListener] = []
        self.windows: list[WindowHandle] = []

    def is_interactive(self) -> bool:
        return True

    @property
    def storage(self) -> KeyValueStorage | None:
        return self._storage

    def open_window(self, url: str, name: str, features: str) -> WindowHandle | None:
        self.opened.append((url, name, features))
        if self.block_popups:
            return None
        handle = WindowHandle(url, name)
        self.windows.append(handle)
        return handle

    def navigate(self, url: str) -> None:
        self.navigated.append(url)

    def add_message_listener(self, listener: MessageListener) -> Unsubscribe:
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener) if listener in self.listeners else None

    def post_message(self, message: dict[str, Any]) -> None:
        for listener in list(self.listeners):
            listener(message)


# ============================================================================
# OAuth Backend
# ============================================================================


class FakeBackend:
    """In-process stand-in for the caller-owned OAuth backend."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.authorize_status = 200
        self.callback_status = 200
        self.callback_body: dict[str, Any] = {
            "accessToken": "gho_new_token",
            "tokenType": "Bearer",
            "expiresIn": 3600,
            "scopes": ["repo", "user"],
        }
        self.status_body: dict[str, Any] = {"authorized": True}
        self.disconnect_status = 200

    def json_body(self, index: int = -1) -> dict[str, Any]:
        return json.loads(self.requests[index].content)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/authorize"):
            if self.authorize_status != 200:
                return httpx.Response(self.authorize_status, json={"error": "invalid_request"})
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={"authorizationUrl": f"https://github.com/login/oauth/authorize?state={body['state']}"},
            )
        if path.endswith("/callback"):
            if self.callback_status != 200:
                return httpx.Response(
                    self.callback_status,
                    json={"error": "invalid_grant", "error_description": "Code expired"},
                )
            return httpx.Response(200, json=self.callback_body)
        if path.endswith("/status"):
            return httpx.Response(200, json=self.status_body)
        if path.endswith("/disconnect"):
            return httpx.Response(self.disconnect_status, json={"success": True})
        return httpx.Response(404)


@pytest.fixture
def backend() -> FakeBackend:
    """Create a fake OAuth backend."""
    return FakeBackend()


@pytest.fixture
def http_client(backend: FakeBackend) -> httpx.AsyncClient:
    """Create an HTTP client routed to the fake backend."""
    return httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))


# ============================================================================
# Environment and Storage Fixtures
# ============================================================================


@pytest.fixture
def storage() -> MemoryStorage:
    """Create empty in-memory storage."""
    return MemoryStorage()


@pytest.fixture
def environment(storage: MemoryStorage) -> FakeEnvironment:
    """Create an interactive fake environment."""
    return FakeEnvironment(storage=storage)


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def sample_token() -> ProviderToken:
    """Create a valid provider token."""
    return ProviderToken(
        access_token="gho_test_token",
        token_type="Bearer",
        expires_in=3600,
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        refresh_token="ghr_refresh",
        scopes=["repo", "user"],
    )


@pytest.fixture
def expired_token() -> ProviderToken:
    """Create an expired provider token."""
    return ProviderToken(
        access_token="gho_old_token",
        expires_at=datetime.now(timezone.utc) - timedelta(hours=1),
    )


@pytest.fixture
def make_client(
    environment: FakeEnvironment, http_client: httpx.AsyncClient
) -> Callable[..., IntegrateClient]:
    """Factory for clients with github and gmail wired to the fake backend."""

    def factory(**overrides: Any) -> IntegrateClient:
        options: dict[str, Any] = {
            "oauth_api_base": API_BASE,
            "integrations": [github_integration(), gmail_integration()],
            "environment": environment,
            "flow": OAuthFlowConfig(mode="popup", callback_timeout=5.0),
            "http_client": http_client,
        }
        options.update(overrides)
        return IntegrateClient(ClientConfig(**options))

    return factory


@pytest.fixture
def make_environment() -> Callable[..., FakeEnvironment]:
    """Factory for fake environments with non-default options."""
    return FakeEnvironment
