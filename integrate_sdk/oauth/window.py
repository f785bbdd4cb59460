"""Authorization window orchestration.

Opens the provider's authorization page as a popup or through a full-page
redirect, then waits for the callback page to hand back {code, state} or
{error}. At most one popup/listener pair is active per manager instance.
"""

import asyncio
import json
import logging
from typing import Callable

from ..environment import Environment, ScreenGeometry, WindowHandle
from ..errors import (
    CallbackTimeoutError,
    FlowCancelledError,
    NotInteractiveError,
    OAuthFlowError,
    PopupBlockedError,
    PopupClosedError,
)
from .callback import CALLBACK_PARAMS_KEY, CallbackResult
from .tokens import FlowMode, PopupOptions

logger = logging.getLogger(__name__)

POPUP_WINDOW_NAME = "oauth_popup"
DEFAULT_POLL_INTERVAL = 0.5  # seconds
DEFAULT_LISTEN_TIMEOUT = 300.0  # seconds


def popup_features(options: PopupOptions | None = None, screen: ScreenGeometry | None = None) -> str:
    """Build the window features string for a popup centred on the screen."""
    options = options or PopupOptions()
    screen = screen or ScreenGeometry()

    left = screen.left + max(0, (screen.width - options.width) // 2)
    top = screen.top + max(0, (screen.height - options.height) // 2)

    return (
        f"width={options.width},height={options.height},left={left},top={top},"
        "toolbar=no,location=no,directories=no,status=no,menubar=no,"
        "scrollbars=yes,resizable=yes,copyhistory=no"
    )


class OAuthWindowManager:
    """Opens authorization windows and listens for the callback."""

    def __init__(self, environment: Environment, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.environment = environment
        self.poll_interval = poll_interval

        self._popup: WindowHandle | None = None
        self._waiter: asyncio.Future[CallbackResult] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def popup(self) -> WindowHandle | None:
        return self._popup

    @property
    def is_listening(self) -> bool:
        return self._waiter is not None and not self._waiter.done()

    def open_popup(self, url: str, options: PopupOptions | None = None) -> WindowHandle:
        """Open the authorization page in a centred popup.

        Any previous popup and listener are closed first.

        Raises:
            NotInteractiveError: Outside an interactive environment
            PopupBlockedError: If the environment refused to open the window
        """
        if not self.environment.is_interactive():
            raise NotInteractiveError("Popup authorization requires an interactive environment")

        self.close()

        features = popup_features(options, self.environment.screen_geometry())
        handle = self.environment.open_window(url, POPUP_WINDOW_NAME, features)
        if handle is None:
            raise PopupBlockedError("Authorization popup was blocked. Allow popups and try again.")

        self._popup = handle
        return handle

    def open_redirect(self, url: str) -> None:
        """Navigate the current window to the authorization page.

        Raises:
            NotInteractiveError: Outside an interactive environment
        """
        if not self.environment.is_interactive():
            raise NotInteractiveError("Redirect authorization requires an interactive environment")

        logger.debug("Redirecting to authorization page")
        self.environment.navigate(url)

    async def listen_for_callback(
        self,
        mode: FlowMode,
        timeout: float = DEFAULT_LISTEN_TIMEOUT,
    ) -> CallbackResult:
        """Wait for the callback page to deliver a result.

        In popup mode the result arrives as a posted message; closing the
        popup first fails the wait. In redirect mode the result is picked up
        (and removed) from storage.

        Args:
            mode: "popup" or "redirect"
            timeout: Seconds to wait

        Returns:
            CallbackResult carrying code/state or error

        Raises:
            PopupClosedError: The popup was closed without a result
            CallbackTimeoutError: No result within timeout
            FlowCancelledError: close() was called while waiting
        """
        if mode not in ("popup", "redirect"):
            raise ValueError(f"Invalid flow mode: {mode!r}")

        self._cancel_listener()

        waiter: asyncio.Future[CallbackResult] = asyncio.get_running_loop().create_future()
        self._waiter = waiter

        if mode == "popup":
            self._unsubscribe = self.environment.add_message_listener(self._on_message)
            self._poll_task = asyncio.create_task(self._watch_popup(waiter))
        else:
            self._poll_task = asyncio.create_task(self._poll_storage(waiter))

        try:
            return await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError:
            raise CallbackTimeoutError(
                f"Timed out waiting for OAuth callback after {timeout} seconds"
            ) from None
        finally:
            self._stop_listening(waiter)

    def close(self) -> None:
        """Close the popup and cancel any pending listener. Idempotent."""
        self._cancel_listener()

        if self._popup is not None:
            if not self._popup.closed:
                self._popup.close()
            self._popup = None

    def _on_message(self, message: dict) -> None:
        result = CallbackResult.from_message(message)
        if result is None:
            return

        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(result)

    async def _watch_popup(self, waiter: asyncio.Future[CallbackResult]) -> None:
        while not waiter.done():
            await asyncio.sleep(self.poll_interval)
            if waiter.done():
                return
            if self._popup is not None and self._popup.closed:
                waiter.set_exception(PopupClosedError("Authorization popup was closed before completing"))
                return

    async def _poll_storage(self, waiter: asyncio.Future[CallbackResult]) -> None:
        storage = self.environment.storage
        if storage is None:
            waiter.set_exception(OAuthFlowError("Redirect authorization requires persistent storage"))
            return

        while not waiter.done():
            try:
                raw = storage.get_item(CALLBACK_PARAMS_KEY)
            except Exception as e:
                logger.warning(f"Failed to read OAuth callback parameters: {e}")
                raw = None

            if raw is not None:
                try:
                    storage.remove_item(CALLBACK_PARAMS_KEY)
                except Exception as e:
                    logger.warning(f"Failed to remove OAuth callback parameters: {e}")

                result = self._parse_stored_params(raw)
                if result is not None and not waiter.done():
                    waiter.set_result(result)
                    return

            await asyncio.sleep(self.poll_interval)

    @staticmethod
    def _parse_stored_params(raw: str) -> CallbackResult | None:
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring malformed stored OAuth callback parameters")
            return None

        if isinstance(data, dict):
            data.setdefault("type", "oauth_callback")
        return CallbackResult.from_message(data)

    def _cancel_listener(self) -> None:
        waiter = self._waiter
        if waiter is not None and not waiter.done():
            waiter.set_exception(FlowCancelledError("OAuth flow was cancelled"))
        if waiter is not None:
            self._stop_listening(waiter)

    def _stop_listening(self, waiter: asyncio.Future[CallbackResult]) -> None:
        if self._waiter is not waiter:
            return

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        self._waiter = None
