"""Streamable HTTP transport bound to a single ASGI exchange."""

import asyncio
import json
from typing import Any, Dict, List, Optional, Sequence, Set
from starlette.datastructures import Headers
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

from ..context import RequestContext
from ..protocol.errors import (
    InvalidRequestError,
    ParseError,
    PayloadTooLargeError,
    ProtocolFault,
    ServerError,
)
from ..protocol.messages import MCPError, MCPResponse
from .base import RequestId, Transport

JSON_MEDIA_TYPE = "application/json"
SSE_MEDIA_TYPE = "text/event-stream"
DEFAULT_MAX_BODY_SIZE = 1048576

SSE_HEADERS = [
    (b"content-type", b"text/event-stream"),
    (b"cache-control", b"no-cache"),
    (b"connection", b"keep-alive"),
    (b"x-accel-buffering", b"no"),
]


def media_types(header_value: str) -> Set[str]:
    """Media types named by an Accept or Content-Type header, without parameters."""
    return {
        part.split(";", 1)[0].strip().lower()
        for part in header_value.split(",")
        if part.strip()
    }


def sse_event(message: Dict[str, Any]) -> bytes:
    return f"event: message\ndata: {json.dumps(message)}\n\n".encode("utf-8")


def is_request(message: Any) -> bool:
    return isinstance(message, dict) and "method" in message and "id" in message


class StreamableHttpTransport(Transport):
    """Server side of the Streamable HTTP binding for one request.

    POST carries JSON-RPC messages and is answered with a single JSON body or
    an SSE stream, depending on the Accept header and whether progress was
    requested. GET opens an SSE stream that stays open until the client goes
    away. No session id is ever issued.
    """

    def __init__(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        context: RequestContext,
        allowed_hosts: Optional[Sequence[str]] = None,
        allowed_origins: Optional[Sequence[str]] = None,
        max_body_size: int = DEFAULT_MAX_BODY_SIZE,
    ):
        super().__init__()
        self.method = scope["method"]
        self.headers = Headers(scope=scope)
        self.context = context
        self.allowed_hosts = list(allowed_hosts) if allowed_hosts is not None else None
        self.allowed_origins = list(allowed_origins) if allowed_origins is not None else None
        self.max_body_size = max_body_size

        self._scope = scope
        self._receive = receive
        self._send = send
        self._body: Optional[bytes] = None
        self._headers_sent = False
        self._streaming = False
        self._disconnected = False
        self._send_lock = asyncio.Lock()
        self._closed_event = asyncio.Event()
        self._watcher: Optional[asyncio.Task] = None

    @property
    def streaming(self) -> bool:
        """Whether the response is an open SSE stream."""
        return self._streaming

    def validate(self) -> None:
        """Reject requests whose Host or Origin is not allowed."""
        host = self.headers.get("host", "")
        if self.allowed_hosts is not None and host not in self.allowed_hosts:
            raise ServerError(f"Invalid Host header: {host}", http_status=403)

        origin = self.headers.get("origin")
        if origin and self.allowed_origins is not None and origin not in self.allowed_origins:
            raise ServerError(f"Invalid Origin header: {origin}", http_status=403)

    async def read_body(self) -> bytes:
        """Read the complete request body, enforcing the size limit."""
        if self._body is not None:
            return self._body

        declared = self.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_body_size:
            raise PayloadTooLargeError(
                f"Request too large. Maximum size: {self.max_body_size} bytes"
            )

        chunks: List[bytes] = []
        size = 0
        while True:
            message = await self._receive()
            if message["type"] == "http.disconnect":
                self._disconnected = True
                self.context.logger.info("Client disconnected before the body was read")
                await self.close()
                return b""
            chunk = message.get("body", b"")
            size += len(chunk)
            if size > self.max_body_size:
                raise PayloadTooLargeError(
                    f"Request too large. Maximum size: {self.max_body_size} bytes"
                )
            chunks.append(chunk)
            if not message.get("more_body", False):
                break

        self._body = b"".join(chunks)
        return self._body

    async def handle_request(self, body: Optional[bytes] = None) -> None:
        """Process the exchange.

        Predictable faults raised before any output (bad host, media type or
        JSON) propagate as ``ProtocolFault`` for the caller to answer.
        """
        if self.closed:
            return
        if self.engine is None:
            raise RuntimeError("No engine attached to transport")

        self.validate()
        if self.method == "POST":
            if body is None:
                body = await self.read_body()
                if self.closed:
                    return
            await self._handle_post(body)
        elif self.method == "GET":
            await self._handle_get()
        else:
            raise ServerError("Method not allowed.", http_status=405)

    async def _handle_post(self, body: bytes) -> None:
        accepted = media_types(self.headers.get("accept", ""))
        json_ok = not accepted or bool(accepted & {JSON_MEDIA_TYPE, "application/*", "*/*"})
        sse_ok = SSE_MEDIA_TYPE in accepted
        if not json_ok and not sse_ok:
            raise ServerError(
                "Not Acceptable: Client must accept application/json or text/event-stream",
                http_status=406,
            )

        content_type = media_types(self.headers.get("content-type", ""))
        if content_type and JSON_MEDIA_TYPE not in content_type:
            raise ServerError(
                "Unsupported Media Type: Content-Type must be application/json",
                http_status=415,
            )

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise ParseError("Parse error: request body is not valid JSON") from e

        batch = isinstance(payload, list)
        if batch:
            if not payload:
                raise InvalidRequestError("Invalid request: empty batch")
            messages = payload
        elif isinstance(payload, dict):
            messages = [payload]
        else:
            raise InvalidRequestError("Invalid request: message must be a JSON object")

        engine = self.engine
        log = self.context.logger.bind(batch_size=len(messages))
        if not batch:
            # Checked before any output so the fault still gets a 400 JSON reply.
            engine.parse_message(payload)

        if not any(is_request(m) for m in messages):
            for message in messages:
                await self._dispatch(message, batch)
            log.debug("Notifications accepted")
            await self._respond(Response(status_code=202))
            return

        use_sse = sse_ok and (not json_ok or any(engine.expects_progress(m) for m in messages))
        if use_sse:
            await self._open_stream()
        else:
            self._start_watcher()

        responses: List[Dict[str, Any]] = []
        for message in messages:
            if self.closed:
                log.info("Exchange closed before all messages were dispatched")
                break
            response = await self._dispatch(message, batch)
            if response is None:
                continue
            if use_sse:
                await self.send_message(response)
            else:
                responses.append(response)

        if use_sse:
            await self.close()
        elif not self.closed:
            await self._respond(JSONResponse(responses if batch else responses[0]))

    async def _dispatch(self, message: Any, batch: bool) -> Optional[Dict[str, Any]]:
        request_id = message.get("id") if isinstance(message, dict) else None
        tracked = is_request(message) and self._track(request_id, message.get("method"))
        try:
            response = await self.engine.handle_message(message, self.context)
        except InvalidRequestError as fault:
            if tracked:
                self._untrack(request_id)
            if not batch:
                raise
            reply_id = request_id if isinstance(request_id, (str, int)) else None
            return MCPResponse(id=reply_id, error=fault.to_error()).to_wire()
        # Unexpected failures leave the id tracked so the error reply can echo it.
        if tracked:
            self._untrack(request_id)
        return response

    async def _handle_get(self) -> None:
        if SSE_MEDIA_TYPE not in media_types(self.headers.get("accept", "")):
            raise ServerError(
                "Not Acceptable: Client must accept text/event-stream",
                http_status=406,
            )
        await self._open_stream()
        self.context.logger.info("Event stream opened")
        await self._closed_event.wait()

    async def send_message(self, message: Dict[str, Any]) -> None:
        """Write one SSE event; dropped when no stream is open."""
        async with self._send_lock:
            if self.closed or not self._streaming:
                self.context.logger.debug(
                    "Outbound message dropped", rpc_method=message.get("method")
                )
                return
            await self._write({"type": "http.response.body", "body": sse_event(message), "more_body": True})

    async def send_fault(self, fault: ProtocolFault, request_id: Optional[RequestId] = None) -> None:
        """Answer the exchange with a predictable fault."""
        await self.send_error(fault.http_status, fault.to_error(), request_id)

    async def send_error(self, status_code: int, error: MCPError, request_id: Optional[RequestId] = None) -> None:
        """Answer the exchange with a JSON-RPC error.

        Before any output the error is a JSON body with ``status_code``. On an
        open event stream it becomes the last event and the stream is ended.
        """
        payload = MCPResponse(id=request_id, error=error).to_wire()
        if self._streaming and not self.closed:
            await self.send_message(payload)
            await self.close()
            return
        if self._headers_sent or self.closed:
            self.context.logger.warning(
                "Error not sent, response already started", code=error.code
            )
            return
        await self._respond(JSONResponse(payload, status_code=status_code))

    async def _respond(self, response: Response) -> None:
        if self._headers_sent or self.closed:
            return
        self._headers_sent = True
        try:
            await response(self._scope, self._receive, self._send)
        except OSError as e:
            self._disconnected = True
            self.context.logger.info("Client went away while responding", error=str(e))
        await self.close()

    async def _open_stream(self) -> None:
        self._headers_sent = True
        self._streaming = True
        await self._write({"type": "http.response.start", "status": 200, "headers": SSE_HEADERS})
        self._start_watcher()

    def _start_watcher(self) -> None:
        if self._watcher is None and not self.closed:
            self._watcher = asyncio.create_task(self._watch_disconnect())

    async def _write(self, message: Dict[str, Any]) -> None:
        try:
            await self._send(message)
        except OSError as e:
            self._disconnected = True
            self.context.logger.info("Client went away during write", error=str(e))
            await self.close()

    async def _watch_disconnect(self) -> None:
        while True:
            message = await self._receive()
            if message["type"] == "http.disconnect":
                break
        self._disconnected = True
        if not self.closed:
            self.context.logger.info("Client disconnected")
        await self.close()

    async def _release(self) -> None:
        # An open stream is always finished unless the client is already gone.
        if self._streaming and not self._disconnected:
            async with self._send_lock:
                await self._write({"type": "http.response.body", "body": b"", "more_body": False})
        self._streaming = False
        self._closed_event.set()
        watcher, self._watcher = self._watcher, None
        if watcher is not None and watcher is not asyncio.current_task() and not watcher.done():
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass
