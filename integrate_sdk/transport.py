"""Tool invocation channel.

The remote tool protocol is treated as an opaque RPC channel: the client
hands it a tool name, arguments and headers, and gets back a result or a
ToolTransportError carrying the HTTP status and any JSON-RPC error object
for parse_server_error to classify.
"""

import itertools
import logging
from typing import Any, Protocol

import httpx

from .errors import ToolTransportError

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 30.0  # seconds
JSONRPC_VERSION = "2.0"


class ToolChannel(Protocol):
    """Anything that can call remote tools."""

    async def list_tools(self) -> list[str]: ...

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any: ...

    async def aclose(self) -> None: ...


class HttpToolChannel:
    """JSON-RPC over HTTP POST."""

    def __init__(
        self,
        server_url: str,
        headers: dict[str, str] | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.server_url = server_url
        self.headers = dict(headers or {})
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None
        self._ids = itertools.count(1)

    async def _request(self, method: str, params: dict[str, Any], headers: dict[str, str] | None) -> Any:
        body = {
            "jsonrpc": JSONRPC_VERSION,
            "id": next(self._ids),
            "method": method,
            "params": params,
        }

        try:
            response = await self._client.post(
                self.server_url,
                json=body,
                headers={**self.headers, **(headers or {})},
            )
        except httpx.RequestError as e:
            raise ToolTransportError(f"Network error calling {method}: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        jsonrpc_error = data.get("error") if isinstance(data, dict) else None

        if response.status_code >= 400 or jsonrpc_error is not None:
            message = f"HTTP {response.status_code}"
            if isinstance(jsonrpc_error, dict) and jsonrpc_error.get("message"):
                message = str(jsonrpc_error["message"])
            raise ToolTransportError(
                message,
                status_code=response.status_code,
                jsonrpc_error=jsonrpc_error if isinstance(jsonrpc_error, dict) else None,
            )

        if not isinstance(data, dict):
            raise ToolTransportError(f"Invalid JSON-RPC response to {method}", status_code=response.status_code)

        return data.get("result")

    async def list_tools(self) -> list[str]:
        result = await self._request("tools/list", {}, None)
        tools = (result or {}).get("tools", []) if isinstance(result, dict) else []
        return [str(tool["name"]) for tool in tools if isinstance(tool, dict) and "name" in tool]

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        logger.debug(f"Calling tool {name}")
        return await self._request("tools/call", {"name": name, "arguments": arguments or {}}, headers)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
