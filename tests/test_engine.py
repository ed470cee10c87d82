"""Tests for the protocol engine and its factory."""

import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from calculator_server.protocol.engine import EngineClosedError, ProtocolEngine
from calculator_server.protocol.errors import InvalidRequestError
from calculator_server.protocol.factory import create_engine
from calculator_server.protocol.messages import MCPMethods
from calculator_server.transport.base import TransportError

from .conftest import rpc


def mock_transport():
    transport = MagicMock()
    transport.send_message = AsyncMock()
    return transport


class TestFactory:

    def test_registers_capability_set(self, engine):
        assert engine.tool_registry.names() == ["calculate", "demo_progress", "echo"]
        uris = [r.uri for r in engine.resource_registry.list_resources()]
        assert uris == [
            "calculator://constants",
            "calculator://stats",
            "formulas://library",
            "request://current",
        ]
        templates = [t.uriTemplate for t in engine.resource_registry.list_templates()]
        assert templates == ["calculator://history/{id}"]
        prompts = [p.name for p in engine.prompt_registry.list_prompts()]
        assert prompts == ["explain-calculation", "generate-problems", "calculator-tutor"]

    def test_sample_tool_optional(self, config):
        plain = config.model_copy(update={"sample_tool_name": None})
        assert create_engine(plain).tool_registry.names() == ["calculate", "demo_progress"]

    def test_fresh_instances(self, config):
        """Two engines share no registries."""
        first = create_engine(config)
        second = create_engine(config)

        assert first is not second
        assert first.tool_registry is not second.tool_registry
        assert first.tool_registry.get_tool("calculate") is not second.tool_registry.get_tool("calculate")


class TestLifecycle:

    def test_connect(self, engine):
        transport = mock_transport()
        engine.connect(transport)

        transport.attach.assert_called_once_with(engine)
        assert engine.connected

    def test_connect_twice(self, engine):
        engine.connect(mock_transport())
        with pytest.raises(RuntimeError):
            engine.connect(mock_transport())

    def test_attach_twice_rejected_by_transport(self, config, context):
        from calculator_server.transport.http import StreamableHttpTransport

        transport = StreamableHttpTransport(
            {"type": "http", "method": "POST", "path": "/mcp", "headers": []},
            AsyncMock(), AsyncMock(), context,
        )
        create_engine(config).connect(transport)
        with pytest.raises(TransportError):
            create_engine(config).connect(transport)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, engine):
        engine.connect(mock_transport())

        await engine.close()
        await engine.close()

        assert engine.closed
        assert not engine.connected
        assert engine.tool_registry.list_tools() == []

    @pytest.mark.asyncio
    async def test_closed_engine_rejects_messages(self, engine, context):
        await engine.close()

        with pytest.raises(EngineClosedError):
            await engine.handle_message(rpc("ping"), context)

        with pytest.raises(EngineClosedError):
            engine.connect(mock_transport())


class TestDispatch:

    @pytest.mark.asyncio
    async def test_initialize(self, engine, context):
        response = await engine.handle_message(rpc("initialize", {
            "protocolVersion": "2024-11-05",
            "capabilities": {},
            "clientInfo": {"name": "test", "version": "1.0"},
        }), context)

        result = response["result"]
        assert result["protocolVersion"] == "2024-11-05"
        assert result["serverInfo"]["name"] == "calculator-learning-demo-stateless"
        assert "tools" in result["capabilities"]

    @pytest.mark.asyncio
    async def test_initialize_unknown_version(self, engine, context):
        response = await engine.handle_message(
            rpc("initialize", {"protocolVersion": "1999-01-01"}), context
        )
        assert response["result"]["protocolVersion"] == "2025-03-26"

    @pytest.mark.asyncio
    async def test_ping(self, engine, context):
        assert await engine.handle_message(rpc("ping", request_id="abc"), context) == {
            "jsonrpc": "2.0", "id": "abc", "result": {},
        }

    @pytest.mark.asyncio
    async def test_tools_list(self, engine, context):
        response = await engine.handle_message(rpc("tools/list"), context)

        tools = {t["name"]: t for t in response["result"]["tools"]}
        assert set(tools["calculate"]["inputSchema"]["required"]) == {"a", "b", "op"}

    @pytest.mark.asyncio
    async def test_tools_call(self, engine, context, metrics):
        response = await engine.handle_message(
            rpc("tools/call", {"name": "calculate", "arguments": {"a": 6, "b": 7, "op": "multiply"}}),
            context,
        )

        assert response["id"] == 1
        assert response["result"]["content"][0]["text"].startswith("MULTIPLY: 6 × 7 = 42")
        assert metrics.sink.count("tool:calculate") == 1

    @pytest.mark.asyncio
    async def test_division_by_zero(self, engine, context, metrics):
        response = await engine.handle_message(
            rpc("tools/call", {"name": "calculate", "arguments": {"a": 1, "b": 0, "op": "divide"}}, 7),
            context,
        )

        assert response["id"] == 7
        assert response["error"]["code"] == -32602
        assert response["error"]["message"] == "Division by zero is not allowed."
        assert metrics.sink.count("tool:calculate") == 1

    @pytest.mark.asyncio
    async def test_unknown_tool(self, engine, context):
        response = await engine.handle_message(rpc("tools/call", {"name": "nope"}), context)

        assert response["error"]["code"] == -32602
        assert "Unknown tool" in response["error"]["message"]

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, engine, context):
        response = await engine.handle_message(
            rpc("tools/call", {"name": "calculate", "arguments": {"a": "x"}}), context
        )

        assert response["error"]["code"] == -32602
        assert response["error"]["data"]["validation_errors"]

    @pytest.mark.asyncio
    async def test_unknown_method(self, engine, context):
        response = await engine.handle_message(rpc("does/not/exist"), context)
        assert response["error"]["code"] == -32601

    @pytest.mark.asyncio
    async def test_progress_notifications(self, engine, context):
        transport = mock_transport()
        engine.connect(transport)

        response = await engine.handle_message(
            rpc("tools/call", {
                "name": "calculate",
                "arguments": {"a": 1, "b": 2, "op": "add"},
                "_meta": {"progressToken": "tok-1"},
            }),
            context,
        )

        sent = [call.args[0] for call in transport.send_message.await_args_list]
        assert [m["method"] for m in sent] == [MCPMethods.PROGRESS, MCPMethods.PROGRESS]
        assert [m["params"]["progress"] for m in sent] == [0.1, 1.0]
        assert {m["params"]["progressToken"] for m in sent} == {"tok-1"}
        assert response["result"]["_meta"] == {"progressToken": "tok-1"}

    @pytest.mark.asyncio
    async def test_stream_argument_assigns_token(self, engine, context):
        transport = mock_transport()
        engine.connect(transport)

        await engine.handle_message(
            rpc("tools/call", {"name": "calculate", "arguments": {"a": 1, "b": 2, "op": "add", "stream": True}}),
            context,
        )

        tokens = {call.args[0]["params"]["progressToken"] for call in transport.send_message.await_args_list}
        assert len(tokens) == 1

    @pytest.mark.asyncio
    async def test_no_progress_without_request(self, engine, context):
        transport = mock_transport()
        engine.connect(transport)

        await engine.handle_message(
            rpc("tools/call", {"name": "calculate", "arguments": {"a": 1, "b": 2, "op": "add"}}), context
        )

        transport.send_message.assert_not_awaited()

    def test_expects_progress(self, engine):
        assert engine.expects_progress(rpc("tools/call", {"name": "demo_progress"}))
        assert engine.expects_progress(
            rpc("tools/call", {"name": "calculate", "arguments": {"stream": True}})
        )
        assert engine.expects_progress(
            rpc("tools/call", {"name": "calculate", "_meta": {"progressToken": 3}})
        )
        assert not engine.expects_progress(rpc("tools/call", {"name": "calculate", "arguments": {}}))
        assert not engine.expects_progress(rpc("ping"))

    @pytest.mark.asyncio
    async def test_resources(self, engine, context):
        listed = await engine.handle_message(rpc("resources/list"), context)
        assert len(listed["result"]["resources"]) == 4

        constants = await engine.handle_message(
            rpc("resources/read", {"uri": "calculator://constants"}), context
        )
        content = constants["result"]["contents"][0]
        assert content["mimeType"] == "application/json"
        assert json.loads(content["text"]) == {"pi": 3.14159, "e": 2.71828}

        formulas = await engine.handle_message(rpc("resources/read", {"uri": "formulas://library"}), context)
        assert len(json.loads(formulas["result"]["contents"][0]["text"])) == 10

    @pytest.mark.asyncio
    async def test_request_info_resource(self, engine, context):
        response = await engine.handle_message(rpc("resources/read", {"uri": "request://current"}), context)

        info = json.loads(response["result"]["contents"][0]["text"])
        assert info["requestId"] == context.request_id
        assert info["serverInfo"]["pattern"] == "stateless"

    @pytest.mark.asyncio
    async def test_history_and_unknown_resource_look_the_same(self, engine, context):
        history = await engine.handle_message(
            rpc("resources/read", {"uri": "calculator://history/42"}), context
        )
        unknown = await engine.handle_message(rpc("resources/read", {"uri": "nope://x"}), context)

        assert history["error"]["code"] == unknown["error"]["code"] == -32004
        assert history["error"]["message"] == "Resource not found: calculator://history/42"
        assert unknown["error"]["message"] == "Resource not found: nope://x"

    @pytest.mark.asyncio
    async def test_templates_list(self, engine, context):
        response = await engine.handle_message(rpc("resources/templates/list"), context)
        assert response["result"]["resourceTemplates"][0]["uriTemplate"] == "calculator://history/{id}"

    @pytest.mark.asyncio
    async def test_prompts(self, engine, context):
        response = await engine.handle_message(
            rpc("prompts/get", {"name": "generate-problems", "arguments": {"topic": "fractions", "count": "50"}}),
            context,
        )
        text = response["result"]["messages"][0]["content"]["text"]
        assert text.startswith('Generate 10 practice problems about "fractions"')

        default = await engine.handle_message(
            rpc("prompts/get", {"name": "generate-problems", "arguments": {"topic": "sets"}}), context
        )
        assert "Generate 5 practice problems" in default["result"]["messages"][0]["content"]["text"]

    @pytest.mark.asyncio
    async def test_prompt_errors(self, engine, context):
        unknown = await engine.handle_message(rpc("prompts/get", {"name": "nope"}), context)
        missing = await engine.handle_message(
            rpc("prompts/get", {"name": "explain-calculation", "arguments": {}}), context
        )

        assert unknown["error"]["code"] == -32602
        assert missing["error"]["code"] == -32602

    @pytest.mark.asyncio
    async def test_set_log_level(self, engine, context):
        ok = await engine.handle_message(rpc("logging/setLevel", {"level": "debug"}), context)
        bad = await engine.handle_message(rpc("logging/setLevel", {"level": "loud"}), context)

        assert ok["result"] == {}
        assert bad["error"]["code"] == -32602

    @pytest.mark.asyncio
    async def test_notifications_return_nothing(self, engine, context):
        for method in (MCPMethods.INITIALIZED, MCPMethods.CANCELLED, "notifications/unknown"):
            assert await engine.handle_message({"jsonrpc": "2.0", "method": method}, context) is None

    @pytest.mark.asyncio
    async def test_client_responses_ignored(self, engine, context):
        assert await engine.handle_message({"jsonrpc": "2.0", "id": 1, "result": {}}, context) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", [
        [],
        "ping",
        {"jsonrpc": "1.0", "id": 1, "method": "ping"},
        {"jsonrpc": "2.0", "id": 1},
        {"jsonrpc": "2.0", "id": None, "method": "ping"},
    ])
    async def test_invalid_envelopes(self, engine, context, message):
        with pytest.raises(InvalidRequestError):
            await engine.handle_message(message, context)

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self, engine, context, metrics):
        tool = engine.tool_registry.get_tool("calculate")
        tool.execute = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await engine.handle_message(
                rpc("tools/call", {"name": "calculate", "arguments": {"a": 1, "b": 2, "op": "add"}}),
                context,
            )

        assert metrics.sink.count("tool:calculate") == 1
        text = metrics.render().decode()
        assert 'mcp_tool_calls_total{status="error",tool="calculate"} 1.0' in text
