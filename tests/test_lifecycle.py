"""Request lifecycle: cleanup guarantees, error mapping and aborted streams."""

import asyncio
import json

import httpx
import pytest
from unittest.mock import AsyncMock

from calculator_server.client import parse_sse
from calculator_server.metrics import REQUEST_DURATION
from calculator_server.protocol.errors import GENERIC_INTERNAL_MESSAGE, ServerError
from calculator_server.protocol.factory import create_engine
from calculator_server.server.coordinator import RequestLifecycleCoordinator
from calculator_server.transport.http import StreamableHttpTransport

from .conftest import BASE_URL, JSON_HEADERS, rpc


class RecordingFactory:
    """Engine factory that remembers what it built and counts closes."""

    def __init__(self, break_tool=None):
        self.engines = []
        self.close_calls = 0
        self.break_tool = break_tool

    def __call__(self, config, metrics=None):
        engine = create_engine(config, metrics)
        original_close = engine.close

        async def counting_close():
            self.close_calls += 1
            await original_close()

        engine.close = counting_close
        if self.break_tool:
            tool = engine.tool_registry.get_tool(self.break_tool)
            tool.execute = AsyncMock(side_effect=RuntimeError("secret internal detail"))
        self.engines.append(engine)
        return engine


def failing_factory(config, metrics=None):
    raise RuntimeError("factory exploded")


def asgi_scope(method, accept, body=b""):
    headers = [
        (b"host", b"localhost:1071"),
        (b"accept", accept.encode()),
        (b"content-type", b"application/json"),
        (b"content-length", str(len(body)).encode()),
    ]
    return {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": "/mcp",
        "raw_path": b"/mcp",
        "query_string": b"",
        "headers": headers,
        "client": ("127.0.0.1", 50000),
        "server": ("localhost", 1071),
    }


class AbortingClient:
    """ASGI receive/send pair for a client that hangs up on demand."""

    def __init__(self, body=b""):
        self.body = body
        self.body_sent = False
        self.disconnect = asyncio.Event()
        self.started = asyncio.Event()
        self.first_event = asyncio.Event()
        self.waiting = asyncio.Event()
        self.messages = []

    async def receive(self):
        if not self.body_sent:
            self.body_sent = True
            return {"type": "http.request", "body": self.body, "more_body": False}
        self.waiting.set()
        await self.disconnect.wait()
        return {"type": "http.disconnect"}

    async def send(self, message):
        self.messages.append(message)
        if message["type"] == "http.response.start":
            self.started.set()
        elif message.get("body"):
            self.first_event.set()

    def events(self):
        return [m for m in self.messages if m["type"] == "http.response.body" and m.get("body")]

    def decoded_events(self):
        return [event for m in self.events() for event in parse_sse(m["body"].decode())]

    def finished(self):
        last = self.messages[-1]
        return last["type"] == "http.response.body" and not last.get("more_body", False)


def coordinator_client(coordinator):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=coordinator), base_url=BASE_URL)


class TestCleanup:

    @pytest.mark.asyncio
    async def test_cleanup_runs_once_per_request(self, config, metrics):
        factory = RecordingFactory()
        coordinator = RequestLifecycleCoordinator(config, metrics, engine_factory=factory)

        async with coordinator_client(coordinator) as client:
            for request_id in range(3):
                await client.post("/mcp", json=rpc("ping", request_id=request_id), headers=JSON_HEADERS)

        assert len(factory.engines) == 3
        assert len({id(engine) for engine in factory.engines}) == 3
        assert factory.close_calls == 3
        assert metrics.sink.count(REQUEST_DURATION) == 3

    @pytest.mark.asyncio
    async def test_cleanup_after_rejected_request(self, config, metrics):
        factory = RecordingFactory()
        coordinator = RequestLifecycleCoordinator(config, metrics, engine_factory=factory)

        async with coordinator_client(coordinator) as client:
            response = await client.post("/mcp", content=b"[oops", headers=JSON_HEADERS)

        assert response.status_code == 400
        assert factory.close_calls == 1
        assert factory.engines[0].closed
        assert metrics.sink.count(REQUEST_DURATION) == 1


class TestInternalErrors:

    @pytest.mark.asyncio
    async def test_factory_failure(self, config, metrics):
        coordinator = RequestLifecycleCoordinator(config, metrics, engine_factory=failing_factory)

        async with coordinator_client(coordinator) as client:
            response = await client.post("/mcp", json=rpc("ping"), headers=JSON_HEADERS)

        assert response.status_code == 500
        body = response.json()
        assert body["id"] is None
        assert body["error"] == {"code": -32603, "message": GENERIC_INTERNAL_MESSAGE}
        assert metrics.sink.count(REQUEST_DURATION) == 1

    @pytest.mark.asyncio
    async def test_tool_crash_is_generic(self, config, metrics):
        factory = RecordingFactory(break_tool="calculate")
        coordinator = RequestLifecycleCoordinator(config, metrics, engine_factory=factory)
        message = rpc("tools/call", {"name": "calculate", "arguments": {"a": 1, "b": 2, "op": "add"}}, 5)

        async with coordinator_client(coordinator) as client:
            response = await client.post("/mcp", json=message, headers=JSON_HEADERS)

        assert response.status_code == 500
        body = response.json()
        assert body["id"] == 5
        assert body["error"]["message"] == GENERIC_INTERNAL_MESSAGE
        assert "secret" not in response.text
        assert factory.close_calls == 1

    @pytest.mark.asyncio
    async def test_crash_after_stream_started(self, config, metrics):
        """Once the stream is open, the internal error is its last event."""
        factory = RecordingFactory(break_tool="demo_progress")
        coordinator = RequestLifecycleCoordinator(config, metrics, engine_factory=factory)
        body = json.dumps(rpc("tools/call", {"name": "demo_progress"}, 4)).encode()
        peer = AbortingClient(body)

        await coordinator(asgi_scope("POST", "text/event-stream", body), peer.receive, peer.send)

        starts = [m for m in peer.messages if m["type"] == "http.response.start"]
        assert len(starts) == 1
        assert starts[0]["status"] == 200
        assert peer.decoded_events() == [{
            "jsonrpc": "2.0",
            "id": 4,
            "error": {"code": -32603, "message": GENERIC_INTERNAL_MESSAGE},
        }]
        assert peer.finished()
        assert factory.close_calls == 1
        assert metrics.sink.count(REQUEST_DURATION) == 1


class TestAbortedStreams:

    @pytest.mark.asyncio
    async def test_aborted_get_stream(self, config, metrics):
        """Closing a GET stream fires cleanup exactly once and records one sample."""
        factory = RecordingFactory()
        coordinator = RequestLifecycleCoordinator(config, metrics, engine_factory=factory)
        peer = AbortingClient()

        task = asyncio.create_task(
            coordinator(asgi_scope("GET", "text/event-stream"), peer.receive, peer.send)
        )
        await asyncio.wait_for(peer.started.wait(), timeout=5)
        assert metrics.sink.count(REQUEST_DURATION) == 0

        peer.disconnect.set()
        await asyncio.wait_for(task, timeout=5)

        assert peer.messages[0]["status"] == 200
        assert (b"content-type", b"text/event-stream") in peer.messages[0]["headers"]
        assert factory.close_calls == 1
        assert factory.engines[0].closed
        assert metrics.sink.count(REQUEST_DURATION) == 1

    @pytest.mark.asyncio
    async def test_client_aborts_during_progress(self, config, metrics):
        """The tool finishes on its own, but nothing more is written after the abort."""
        slow = config.model_copy(update={"progress_delay_ms": 20})
        factory = RecordingFactory()
        coordinator = RequestLifecycleCoordinator(slow, metrics, engine_factory=factory)
        body = json.dumps(rpc("tools/call", {"name": "demo_progress"})).encode()
        peer = AbortingClient(body)

        task = asyncio.create_task(
            coordinator(asgi_scope("POST", "application/json, text/event-stream", body), peer.receive, peer.send)
        )
        await asyncio.wait_for(peer.first_event.wait(), timeout=5)
        peer.disconnect.set()
        await asyncio.wait_for(task, timeout=5)

        assert 1 <= len(peer.events()) < 6
        assert all(b'"result"' not in m["body"] for m in peer.events())
        assert factory.close_calls == 1
        assert metrics.sink.count(REQUEST_DURATION) == 1
        assert metrics.sink.count("tool:demo_progress") == 1

    @pytest.mark.asyncio
    async def test_client_aborts_json_request(self, config, metrics):
        """A JSON-only exchange notices the abort while the tool is still running."""
        slow = config.model_copy(update={"progress_delay_ms": 200})
        factory = RecordingFactory()
        coordinator = RequestLifecycleCoordinator(slow, metrics, engine_factory=factory)
        body = json.dumps(rpc("tools/call", {"name": "demo_progress"})).encode()
        peer = AbortingClient(body)

        task = asyncio.create_task(
            coordinator(asgi_scope("POST", "application/json", body), peer.receive, peer.send)
        )
        await asyncio.wait_for(peer.waiting.wait(), timeout=5)
        peer.disconnect.set()
        for _ in range(50):
            if factory.close_calls:
                break
            await asyncio.sleep(0.01)

        assert factory.close_calls == 1
        assert metrics.sink.count(REQUEST_DURATION) == 1
        assert not task.done()

        await asyncio.wait_for(task, timeout=5)
        assert peer.messages == []
        assert factory.close_calls == 1
        assert metrics.sink.count(REQUEST_DURATION) == 1
        assert metrics.sink.count("tool:demo_progress") == 1


class TestEnvelopeFaults:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message, accept", [
        (
            {"jsonrpc": "1.0", "id": 7, "method": "tools/call", "params": {"name": "demo_progress"}},
            "application/json, text/event-stream",
        ),
        ({"id": 1, "method": "ping"}, "text/event-stream"),
    ])
    async def test_rejected_before_stream_opens(self, config, metrics, message, accept):
        factory = RecordingFactory()
        coordinator = RequestLifecycleCoordinator(config, metrics, engine_factory=factory)
        body = json.dumps(message).encode()
        peer = AbortingClient(body)

        await coordinator(asgi_scope("POST", accept, body), peer.receive, peer.send)

        start = peer.messages[0]
        assert start["status"] == 400
        assert (b"content-type", b"application/json") in start["headers"]
        assert peer.finished()
        reply = json.loads(peer.messages[-1]["body"])
        assert reply["id"] is None
        assert reply["error"]["code"] == -32600
        assert factory.close_calls == 1

    @pytest.mark.asyncio
    async def test_invalid_batch_entry_is_streamed(self, config, metrics):
        coordinator = RequestLifecycleCoordinator(config, metrics)
        body = json.dumps([
            rpc("tools/call", {"name": "demo_progress"}, 1),
            {"jsonrpc": "1.0", "id": 2, "method": "ping"},
        ]).encode()
        peer = AbortingClient(body)

        await coordinator(asgi_scope("POST", "application/json, text/event-stream", body), peer.receive, peer.send)

        replies = [e for e in peer.decoded_events() if "id" in e]
        assert [r["id"] for r in replies] == [1, 2]
        assert "result" in replies[0]
        assert replies[1]["error"]["code"] == -32600
        assert peer.finished()


def event_stream_transport(engine, context, peer):
    transport = StreamableHttpTransport(
        asgi_scope("GET", "text/event-stream"), peer.receive, peer.send, context
    )
    engine.connect(transport)
    return transport


class TestTransportClose:

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, engine, context):
        peer = AbortingClient()
        transport = event_stream_transport(engine, context, peer)
        closes = []

        async def on_closed():
            closes.append(transport.closed)

        await transport.on_close(on_closed)
        task = asyncio.create_task(transport.handle_request())
        await asyncio.wait_for(peer.waiting.wait(), timeout=5)
        watcher = transport._watcher
        assert transport.streaming
        assert watcher is not None and not watcher.done()

        await transport.close()
        await transport.close()
        await asyncio.wait_for(task, timeout=5)

        assert closes == [True]
        assert watcher.cancelled()
        assert not transport.streaming
        assert peer.finished()

        sent = len(peer.messages)
        await transport.send_message({"jsonrpc": "2.0", "method": "notifications/message", "params": {}})
        assert len(peer.messages) == sent

    @pytest.mark.asyncio
    async def test_on_close_after_close_runs_immediately(self, engine, context):
        transport = event_stream_transport(engine, context, AbortingClient())
        await transport.close()
        late = []

        async def on_closed():
            late.append(True)

        await transport.on_close(on_closed)
        await transport.close()

        assert late == [True]

    @pytest.mark.asyncio
    async def test_error_on_open_stream_is_last_event(self, engine, context):
        peer = AbortingClient()
        transport = event_stream_transport(engine, context, peer)
        task = asyncio.create_task(transport.handle_request())
        await asyncio.wait_for(peer.started.wait(), timeout=5)

        await transport.send_fault(ServerError("Server shutting down", http_status=503), 9)
        await asyncio.wait_for(task, timeout=5)

        assert transport.closed
        assert peer.messages[0]["status"] == 200
        assert peer.decoded_events() == [
            {"jsonrpc": "2.0", "id": 9, "error": {"code": -32000, "message": "Server shutting down"}}
        ]
        assert peer.finished()
