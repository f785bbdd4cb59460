"""OAuth callback page.

The provider redirects the browser to a dedicated callback page that extracts
code/state/error from the URL and hands them back to the waiting flow. This
module provides:
- CallbackResult: the {code, state} or {error, error_description} payload
- parse_callback_url / parse_callback_fragment: URL parsing helpers
- LocalhostCallbackServer: an ephemeral HTTP server acting as the callback
  page for desktop and CLI environments. It delivers each callback exactly
  once, returns a user-friendly HTML page, and ignores favicon requests.
"""

import asyncio
import html
import json
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Callable
from urllib.parse import parse_qs, unquote, urlparse

from ..errors import CallbackTimeoutError, OAuthFlowError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120  # seconds

# Message type posted to the opener window in popup mode
CALLBACK_MESSAGE_TYPE = "oauth_callback"

# Storage key the callback page writes to in redirect mode
CALLBACK_PARAMS_KEY = "integrate_oauth_callback_params"

# Fragment parameter used by server-side redirect handlers
CALLBACK_FRAGMENT_PARAM = "oauth_callback"

# Browsers request this alongside every page; it is never a callback
IGNORED_PATHS = frozenset({"/favicon.ico", "/robots.txt"})


class CallbackError(OAuthFlowError):
    """The localhost callback page could not receive a callback."""

    pass


@dataclass
class CallbackResult:
    """Result delivered by the callback page.

    Attributes:
        code: Authorization code (success only)
        state: State echoed back by the provider
        error: OAuth error code reported by the provider
        error_description: Provider's explanation of the error
    """

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        return self.code is not None and self.error is None

    def to_message(self) -> dict[str, Any]:
        """Serialize as the message posted to the opener window."""
        message: dict[str, Any] = {"type": CALLBACK_MESSAGE_TYPE}
        if self.is_success():
            message["code"] = self.code
            message["state"] = self.state
        else:
            message["error"] = self.error or "unknown_error"
            if self.error_description:
                message["error_description"] = self.error_description
            if self.state:
                message["state"] = self.state
        return message

    @classmethod
    def from_message(cls, message: Any) -> "CallbackResult | None":
        """Parse a posted message, returning None if it is not a callback."""
        if not isinstance(message, dict) or message.get("type") != CALLBACK_MESSAGE_TYPE:
            return None

        result = cls(
            code=message.get("code"),
            state=message.get("state"),
            error=message.get("error"),
            error_description=message.get("error_description"),
        )
        if result.error is None and (result.code is None or result.state is None):
            return None
        return result


PAGE_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>{title}</title>
<style>
  body {{ font-family: system-ui, sans-serif; background: {background}; display: grid;
         place-items: center; min-height: 100vh; margin: 0; }}
  main {{ background: #fff; border-radius: 12px; padding: 32px 48px; max-width: 420px;
          text-align: center; box-shadow: 0 4px 24px rgba(0, 0, 0, 0.1); }}
  h1 {{ font-size: 22px; margin: 0 0 12px; }}
  p {{ color: #555; margin: 0; }}
  code {{ display: block; margin-top: 16px; padding: 10px; border-radius: 6px;
          background: #fdecea; color: #b3261e; }}
</style>
</head>
<body>
<main>
<h1>{title}</h1>
<p>{message}</p>
{detail}
</main>
</body>
</html>"""

# Sent with every HTML page served by the callback server
PAGE_HEADERS = {
    "Cache-Control": "no-store",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Content-Security-Policy": "default-src 'none'; style-src 'unsafe-inline'",
}


def render_callback_page(result: CallbackResult) -> str:
    """Render the page shown in the browser after the provider redirect.

    Provider-supplied error text is HTML-escaped.
    """
    if result.is_success():
        return PAGE_TEMPLATE.format(
            title="Authorization Successful",
            background="#f1f6f2",
            message="This window can be closed. Return to the application to continue.",
            detail="",
        )

    error = html.escape(result.error or "unknown_error")
    description = html.escape(result.error_description or "No description provided")
    return PAGE_TEMPLATE.format(
        title="Authorization Failed",
        background="#fbf1f0",
        message="The provider did not grant access.",
        detail=f"<code>{error}: {description}</code>",
    )


def parse_callback_url(url: str) -> CallbackResult:
    """Parse code, state and error from a callback URL's query string.

    Args:
        url: Absolute callback URL or request target ("/callback?code=...")
    """
    params = {name: values[0] for name, values in parse_qs(urlparse(url).query).items() if values}
    return CallbackResult(
        code=params.get("code"),
        state=params.get("state"),
        error=params.get("error"),
        error_description=params.get("error_description"),
    )


def parse_callback_fragment(url: str) -> CallbackResult | None:
    """Extract callback parameters from an #oauth_callback=<json> fragment.

    Server-side redirect handlers forward code and state to the application
    in the URL fragment so they never reach the application's server logs.

    Args:
        url: Full URL or bare fragment

    Returns:
        CallbackResult if the fragment carries a code and state, else None
    """
    fragment = urlparse(url).fragment if "#" in url else url.lstrip("#")
    if f"{CALLBACK_FRAGMENT_PARAM}=" not in fragment:
        return None

    values = parse_qs(fragment).get(CALLBACK_FRAGMENT_PARAM)
    if not values:
        return None

    try:
        data = json.loads(unquote(values[0]))
    except ValueError:
        logger.warning("Ignoring malformed OAuth callback fragment")
        return None

    if not isinstance(data, dict) or not data.get("code") or not data.get("state"):
        return None

    return CallbackResult(code=str(data["code"]), state=str(data["state"]))


class LocalhostCallbackServer:
    """Ephemeral HTTP server acting as the OAuth callback page.

    Each callback is delivered exactly once per state: to on_callback when
    one is given, and to wait_for_callback(). Repeated requests for the same
    state (browser refresh, prefetch) still get the page but are dropped.

    Usage:
        async with LocalhostCallbackServer(path="/oauth/callback") as server:
            url = await request_authorization_url(..., redirect_uri=server.redirect_uri)
            webbrowser.open(url)
            result = await server.wait_for_callback()
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        path: str = "/callback",
        host: str = "127.0.0.1",
        port: int = 0,
        on_callback: Callable[[CallbackResult], None] | None = None,
    ):
        """Initialize the server (nothing is bound until start()).

        Args:
            timeout: Seconds wait_for_callback() waits
            path: Callback path; other paths get 404
            host: Interface to bind
            port: Port to bind (0 lets the OS choose)
            on_callback: Called once for each new callback result
        """
        self.timeout = timeout
        self.path = path
        self.host = host
        self.port = port
        self.redirect_uri = ""
        self.on_callback = on_callback

        self._server: asyncio.Server | None = None
        self._results: asyncio.Queue[CallbackResult] | None = None
        self._seen: set[str] = set()

    @property
    def is_running(self) -> bool:
        return self._server is not None

    async def start(self) -> str:
        """Bind the server and return its redirect URI."""
        self._results = asyncio.Queue()
        self._server = await asyncio.start_server(self._serve, self.host, self.port)

        if not self._server.sockets:
            raise CallbackError(f"Could not bind callback server on {self.host}")

        self.port = self._server.sockets[0].getsockname()[1]
        self.redirect_uri = f"http://{self.host}:{self.port}{self.path}"
        logger.debug(f"Callback server listening at {self.redirect_uri}")
        return self.redirect_uri

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.debug("Callback server stopped")

    async def wait_for_callback(self) -> CallbackResult:
        """Wait for the next callback not yet consumed.

        Raises:
            CallbackError: If the server was never started
            CallbackTimeoutError: If nothing arrives within the timeout
        """
        if self._results is None:
            raise CallbackError("Callback server not started")

        try:
            return await asyncio.wait_for(self._results.get(), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise CallbackTimeoutError(f"Timeout after {self.timeout} seconds waiting for the OAuth callback") from None

    def _deliver(self, result: CallbackResult) -> None:
        key = result.state or f"error:{result.error}"
        if key in self._seen:
            logger.debug("Dropping repeated OAuth callback")
            return
        self._seen.add(key)

        if self._results is not None:
            self._results.put_nowait(result)

        if self.on_callback is not None:
            try:
                self.on_callback(result)
            except Exception as e:
                logger.warning(f"OAuth callback delivery failed: {e}")

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            request = await self._read_request(reader)
            if request is None:
                await self._respond(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return

            method, target = request
            path = urlparse(target).path
            if path in IGNORED_PATHS or path != self.path:
                await self._respond(writer, HTTPStatus.NOT_FOUND, "Not found")
                return
            if method != "GET":
                await self._respond(writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
                return

            result = parse_callback_url(target)
            await self._respond(writer, HTTPStatus.OK, render_callback_page(result), html_page=True)

            if result.is_success() or result.error is not None:
                self._deliver(result)
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug(f"Callback connection dropped: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    @staticmethod
    async def _read_request(reader: asyncio.StreamReader) -> tuple[str, str] | None:
        """Read the request line ("GET /callback?code=... HTTP/1.1") and skip headers."""
        request_line = (await reader.readline()).decode("latin-1").split()
        while (await reader.readline()).strip():
            pass
        if len(request_line) < 2:
            return None
        return request_line[0], request_line[1]

    @staticmethod
    async def _respond(
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        text: str,
        html_page: bool = False,
    ) -> None:
        body = text.encode("utf-8")
        headers = {
            "Content-Type": "text/html; charset=utf-8" if html_page else "text/plain; charset=utf-8",
            "Content-Length": str(len(body)),
            "Connection": "close",
        }
        if html_page:
            headers.update(PAGE_HEADERS)

        head = [f"HTTP/1.1 {status.value} {status.phrase}"] + [f"{k}: {v}" for k, v in headers.items()]
        writer.write(("\r\n".join(head) + "\r\n\r\n").encode("latin-1") + body)
        await writer.drain()

    async def __aenter__(self) -> "LocalhostCallbackServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
