"""HTTP client for the stateless MCP endpoint."""

import itertools
import json
from typing import Any, Callable, Dict, List, Optional
import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger()

RETRY_STATUS_CODES = (429, 503)

ProgressCallback = Callable[[Dict[str, Any]], None]


class ClientError(Exception):
    """Base exception for client errors."""
    pass


class RPCError(ClientError):
    """Raised when the server answers with a JSON-RPC error."""

    def __init__(self, code: int, message: str, data: Optional[Dict[str, Any]] = None):
        super().__init__(f"RPC Error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRY_STATUS_CODES
    return isinstance(exc, httpx.TransportError)


def parse_sse(text: str) -> List[Dict[str, Any]]:
    """Decode the JSON payloads of an event stream body."""
    messages = []
    for block in text.split("\n\n"):
        data = [line[5:].lstrip() for line in block.splitlines() if line.startswith("data:")]
        if data:
            messages.append(json.loads("\n".join(data)))
    return messages


class StatelessClient:
    """Client issuing one independent POST per call.

    The server keeps no session, so there is nothing to establish or tear
    down besides the underlying HTTP connection pool.
    """

    def __init__(
        self,
        base_url: str,
        config: Optional[Dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.config = config or {}
        self._ids = itertools.count(1)

        timeout = httpx.Timeout(
            connect=self.config.get("connect_timeout", 10.0),
            read=self.config.get("read_timeout", 30.0),
            write=self.config.get("write_timeout", 10.0),
            pool=self.config.get("pool_timeout", 10.0),
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json, text/event-stream"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def _post(self, payload: Any) -> httpx.Response:
        response = await self._client.post("/mcp", json=payload)
        if response.status_code in RETRY_STATUS_CODES:
            response.raise_for_status()
        return response

    async def call(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        """Send one request and return its result."""
        request_id = next(self._ids)
        message = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}}

        response = await self._post(message)
        content_type = response.headers.get("content-type", "")

        if content_type.startswith("text/event-stream"):
            final = None
            for event in parse_sse(response.text):
                if "method" in event:
                    if on_progress is not None:
                        on_progress(event.get("params", {}))
                elif event.get("id") == request_id:
                    final = event
            if final is None:
                raise ClientError(f"Stream ended without a response to {method}")
        else:
            try:
                final = response.json()
            except ValueError as e:
                raise ClientError(f"Invalid response body (HTTP {response.status_code})") from e

        if "error" in final:
            error = final["error"]
            raise RPCError(error.get("code"), error.get("message"), error.get("data"))
        if response.status_code >= 400:
            raise ClientError(f"HTTP {response.status_code} without an error body")

        logger.debug("Response received", method=method, request_id=request_id)
        return final.get("result", {})

    async def initialize(self, client_name: str = "calculator-client") -> Dict[str, Any]:
        return await self.call("initialize", {
            "protocolVersion": "2025-03-26",
            "capabilities": {},
            "clientInfo": {"name": client_name, "version": "1.0.0"},
        })

    async def list_tools(self) -> List[Dict[str, Any]]:
        result = await self.call("tools/list")
        return result.get("tools", [])

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        return await self.call(
            "tools/call", {"name": name, "arguments": arguments or {}}, on_progress=on_progress
        )

    async def read_resource(self, uri: str) -> Dict[str, Any]:
        return await self.call("resources/read", {"uri": uri})

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        return await self.call("prompts/get", {"name": name, "arguments": arguments or {}})
