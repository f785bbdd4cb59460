"""Lifecycle notifications.

Events emitted by the OAuth layer:
    auth:started     {"provider"}
    auth:complete    {"provider", "token", "return_url"}
    auth:error       {"provider", "error"}
    auth:disconnect  {"provider"}
    auth:logout      {}
"""

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

AUTH_STARTED = "auth:started"
AUTH_COMPLETE = "auth:complete"
AUTH_ERROR = "auth:error"
AUTH_DISCONNECT = "auth:disconnect"
AUTH_LOGOUT = "auth:logout"

EVENT_NAMES = (AUTH_STARTED, AUTH_COMPLETE, AUTH_ERROR, AUTH_DISCONNECT, AUTH_LOGOUT)

EventHandler = Callable[[dict[str, Any]], None]


class EventEmitter:
    """Synchronous event emitter.

    Handlers run in registration order. A handler that raises is logged and
    does not stop the remaining handlers or the operation that emitted.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, payload: dict[str, Any] | None = None) -> None:
        data = payload or {}
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(data)
            except Exception as e:
                logger.warning(f"Error in {event} handler: {e}")

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is None:
            self._handlers.clear()
        else:
            self._handlers.pop(event, None)
