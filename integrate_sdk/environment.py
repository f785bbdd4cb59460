"""Runtime environment capability.

The flow manager never checks where it is running. Everything that depends
on an interactive user (opening windows, navigating, receiving the callback
page's messages) and on persistent client-side storage goes through an
Environment injected at construction:

- DesktopEnvironment: interactive; the system browser plays the popup and a
  localhost callback server plays the dedicated callback page
- NullEnvironment: non-interactive server deployments; interactive
  operations raise NotInteractiveError
"""

import json
import logging
import webbrowser
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from .errors import NotInteractiveError, OAuthFlowError
from .oauth.callback import (
    CALLBACK_PARAMS_KEY,
    DEFAULT_TIMEOUT,
    CallbackResult,
    LocalhostCallbackServer,
)
from .storage import KeyValueStorage, MemoryStorage

logger = logging.getLogger(__name__)

MessageListener = Callable[[dict[str, Any]], None]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class ScreenGeometry:
    """Available screen area used to centre popups."""

    width: int = 1920
    height: int = 1080
    left: int = 0
    top: int = 0


class WindowHandle:
    """Handle to a window opened by the environment."""

    def __init__(self, url: str, name: str = ""):
        self.url = url
        self.name = name
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True


class Environment(ABC):
    """Capabilities the OAuth flow needs from its host."""

    @abstractmethod
    def is_interactive(self) -> bool:
        """Whether a user can be sent through an authorization page."""

    @property
    @abstractmethod
    def storage(self) -> KeyValueStorage | None:
        """Persistent client-side storage, or None if there is none."""

    @abstractmethod
    def open_window(self, url: str, name: str, features: str) -> WindowHandle | None:
        """Open a new window at url.

        Returns:
            A handle to the window, or None if opening was refused
        """

    @abstractmethod
    def navigate(self, url: str) -> None:
        """Send the current window to url."""

    @abstractmethod
    def add_message_listener(self, listener: MessageListener) -> Unsubscribe:
        """Subscribe to messages posted by the callback page.

        Returns:
            A function that removes the listener
        """

    def screen_geometry(self) -> ScreenGeometry:
        return ScreenGeometry()

    def default_redirect_uri(self) -> str | None:
        """Redirect URI of the callback page this environment provides, if any."""
        return None


class NullEnvironment(Environment):
    """Environment for server deployments with no user at the keyboard."""

    def __init__(self, storage: KeyValueStorage | None = None):
        self._storage = storage

    def is_interactive(self) -> bool:
        return False

    @property
    def storage(self) -> KeyValueStorage | None:
        return self._storage

    def open_window(self, url: str, name: str, features: str) -> WindowHandle | None:
        raise NotInteractiveError("Cannot open an authorization window in a non-interactive environment")

    def navigate(self, url: str) -> None:
        raise NotInteractiveError("Cannot redirect to the authorization page in a non-interactive environment")

    def add_message_listener(self, listener: MessageListener) -> Unsubscribe:
        return lambda: None


class DesktopEnvironment(Environment):
    """Interactive environment for desktop applications and CLIs.

    Authorization pages open in the system browser. The provider redirects
    back to a LocalhostCallbackServer, which delivers each callback once:
    to message listeners when a popup-mode flow is listening, otherwise into
    storage for a redirect-mode flow to pick up.

    The callback server must be running before a flow starts:

        async with DesktopEnvironment(storage=EncryptedFileStorage()) as env:
            manager = OAuthManager(api_base, environment=env, ...)
    """

    def __init__(
        self,
        storage: KeyValueStorage | None = None,
        callback_path: str = "/oauth/callback",
        callback_timeout: float = DEFAULT_TIMEOUT,
        screen: ScreenGeometry | None = None,
        open_browser: Callable[[str], bool] | None = None,
    ):
        """Initialize the environment.

        Args:
            storage: Persistent storage (defaults to in-memory)
            callback_path: Path the callback server answers on
            callback_timeout: Timeout for the callback server's own waiters
            screen: Screen geometry reported to popup positioning
            open_browser: Function opening a URL (defaults to webbrowser.open)
        """
        self._storage: KeyValueStorage = storage if storage is not None else MemoryStorage()
        self._screen = screen or ScreenGeometry()
        self._open_browser = open_browser or webbrowser.open
        self._listeners: list[MessageListener] = []
        self.callback_server = LocalhostCallbackServer(
            timeout=callback_timeout,
            path=callback_path,
            on_callback=self._deliver,
        )

    def is_interactive(self) -> bool:
        return True

    @property
    def storage(self) -> KeyValueStorage:
        return self._storage

    def open_window(self, url: str, name: str, features: str) -> WindowHandle | None:
        if not self.callback_server.is_running:
            logger.warning("Callback server is not running; the authorization callback will not be received")

        logger.debug(f"Opening authorization window '{name}' ({features})")
        if not self._open_browser(url):
            return None
        return WindowHandle(url, name)

    def navigate(self, url: str) -> None:
        if not self._open_browser(url):
            raise OAuthFlowError("Could not open a browser for the authorization page")

    def add_message_listener(self, listener: MessageListener) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def screen_geometry(self) -> ScreenGeometry:
        return self._screen

    def default_redirect_uri(self) -> str | None:
        return self.callback_server.redirect_uri or None

    def _deliver(self, result: CallbackResult) -> None:
        message = result.to_message()

        if self._listeners:
            for listener in list(self._listeners):
                try:
                    listener(message)
                except Exception as e:
                    logger.warning(f"OAuth message listener failed: {e}")
            return

        try:
            self._storage.set_item(CALLBACK_PARAMS_KEY, json.dumps(message))
            logger.debug("Stored OAuth callback parameters for redirect pickup")
        except Exception as e:
            logger.warning(f"Failed to store OAuth callback parameters: {e}")

    async def start(self) -> str:
        """Start the callback server and return its redirect URI."""
        if self.callback_server.is_running:
            return self.callback_server.redirect_uri
        return await self.callback_server.start()

    async def stop(self) -> None:
        await self.callback_server.stop()

    async def __aenter__(self) -> "DesktopEnvironment":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
