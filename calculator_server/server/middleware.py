"""ASGI middleware guarding the MCP endpoint."""

import math
import threading
import time
from typing import Dict, Optional, Tuple
import structlog
from starlette.datastructures import MutableHeaders
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ..protocol.errors import PayloadTooLargeError, ProtocolFault, RateLimitedError
from ..protocol.messages import MCPResponse

logger = structlog.get_logger()


def fault_response(fault: ProtocolFault, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    payload = MCPResponse(id=None, error=fault.to_error()).to_wire()
    return JSONResponse(payload, status_code=fault.http_status, headers=headers)


class FixedWindowCounter:
    """Per-client request counts over fixed time windows."""

    def __init__(self, max_requests: int, window_ms: int):
        self.max_requests = max_requests
        self.window = window_ms / 1000.0
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def hit(self, client: str, now: Optional[float] = None) -> Tuple[bool, int, float]:
        """Count one request; returns (allowed, remaining, seconds until reset)."""
        now = time.monotonic() if now is None else now
        with self._lock:
            started, count = self._windows.get(client, (now, 0))
            if now - started >= self.window:
                started, count = now, 0
            count += 1
            self._windows[client] = (started, count)
            if len(self._windows) > 10000:
                self._prune(now)
        reset_in = max(0.0, started + self.window - now)
        return count <= self.max_requests, max(0, self.max_requests - count), reset_in

    def _prune(self, now: float) -> None:
        expired = [c for c, (started, _) in self._windows.items() if now - started >= self.window]
        for client in expired:
            del self._windows[client]


class RateLimitMiddleware:
    """Fixed-window rate limit on paths under ``path_prefix``."""

    def __init__(self, app: ASGIApp, max_requests: int, window_ms: int, path_prefix: str = "/mcp") -> None:
        self.app = app
        self.path_prefix = path_prefix
        self.counter = FixedWindowCounter(max_requests, window_ms)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            scope["type"] != "http"
            or scope["method"] == "OPTIONS"
            or not scope["path"].startswith(self.path_prefix)
        ):
            await self.app(scope, receive, send)
            return

        client = scope.get("client")
        client_host = client[0] if client else "unknown"
        allowed, remaining, reset_in = self.counter.hit(client_host)
        reset_seconds = str(math.ceil(reset_in))
        limit_headers = {
            "RateLimit-Limit": str(self.counter.max_requests),
            "RateLimit-Remaining": str(remaining),
            "RateLimit-Reset": reset_seconds,
        }

        if not allowed:
            logger.warning("Rate limit exceeded", client=client_host, path=scope["path"])
            response = fault_response(
                RateLimitedError(), headers={**limit_headers, "Retry-After": reset_seconds}
            )
            await response(scope, receive, send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in limit_headers.items():
                    headers[name] = value
            await send(message)

        await self.app(scope, receive, send_with_headers)


class MaxBodySizeMiddleware:
    """Reject requests whose declared Content-Length exceeds the limit."""

    def __init__(self, app: ASGIApp, max_body_size: int) -> None:
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        for header, value in scope.get("headers", []):
            if header == b"content-length":
                try:
                    size = int(value)
                except ValueError:
                    size = self.max_body_size + 1
                if size > self.max_body_size:
                    logger.warning("Request body too large", size=size, path=scope["path"])
                    fault = PayloadTooLargeError(
                        f"Request too large. Maximum size: {self.max_body_size} bytes"
                    )
                    await fault_response(fault)(scope, receive, send)
                    return

        await self.app(scope, receive, send)
