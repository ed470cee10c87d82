"""Protocol engine: JSON-RPC routing over one registered capability set."""

import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Union, TYPE_CHECKING
import structlog
from pydantic import ValidationError

from ..context import RequestContext
from ..prompts import PromptRegistry
from ..resources import ResourceRegistry
from ..tools.base import ToolInvocation, ToolRegistry
from .errors import InvalidParamsError, InvalidRequestError, MethodNotFoundError, ProtocolFault
from .messages import (
    MCPMethods,
    MCPNotification,
    MCPRequest,
    MCPResponse,
    PROTOCOL_VERSION,
    SUPPORTED_PROTOCOL_VERSIONS,
    InitializeParams,
    InitializeResult,
    PromptGetParams,
    ResourceReadParams,
    ServerCapabilities,
    ToolCallParams,
)

if TYPE_CHECKING:
    from ..metrics import ServerMetrics
    from ..transport.base import Transport

logger = structlog.get_logger()

RequestHandler = Callable[[Dict[str, Any], RequestContext], Awaitable[Dict[str, Any]]]
NotificationHandler = Callable[[Dict[str, Any], RequestContext], Awaitable[None]]

LOG_LEVELS = ("debug", "info", "notice", "warning", "error", "critical", "alert", "emergency")


class EngineClosedError(RuntimeError):
    """Raised when a closed engine is used again."""


def _validate(model: type, params: Dict[str, Any]) -> Any:
    try:
        return model.model_validate(params)
    except ValidationError as e:
        raise InvalidParamsError(
            "Invalid params",
            data={"validation_errors": [
                {"loc": [str(p) for p in err["loc"]], "msg": err["msg"]} for err in e.errors()
            ]},
        ) from e


class ProtocolEngine:
    """One isolated protocol engine.

    An engine is built for a single HTTP request, connected to exactly one
    transport and closed once when that request ends.
    """

    def __init__(
        self,
        server_info: Dict[str, str],
        metrics: Optional["ServerMetrics"] = None,
    ):
        self.server_info = server_info
        self.metrics = metrics
        self.tool_registry = ToolRegistry()
        self.resource_registry = ResourceRegistry()
        self.prompt_registry = PromptRegistry()
        self._request_handlers: Dict[str, RequestHandler] = {}
        self._notification_handlers: Dict[str, NotificationHandler] = {}
        self._transport: Optional["Transport"] = None
        self._closed = False
        self._capabilities = ServerCapabilities(
            tools={"listChanged": False},
            resources={"listChanged": False},
            prompts={"listChanged": False},
            logging={},
        )

        self._setup_handlers()

    @property
    def connected(self) -> bool:
        return self._transport is not None and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    def _setup_handlers(self) -> None:
        """Setup protocol message handlers."""
        # Core MCP methods
        self.register_request_handler(MCPMethods.INITIALIZE, self._handle_initialize)
        self.register_request_handler(MCPMethods.PING, self._handle_ping)
        self.register_notification_handler(MCPMethods.INITIALIZED, self._ignore_notification)
        self.register_notification_handler(MCPMethods.CANCELLED, self._ignore_notification)

        # Tool methods
        self.register_request_handler(MCPMethods.TOOLS_LIST, self._handle_tools_list)
        self.register_request_handler(MCPMethods.TOOLS_CALL, self._handle_tools_call)

        # Resource methods
        self.register_request_handler(MCPMethods.RESOURCES_LIST, self._handle_resources_list)
        self.register_request_handler(
            MCPMethods.RESOURCES_TEMPLATES_LIST, self._handle_resource_templates_list
        )
        self.register_request_handler(MCPMethods.RESOURCES_READ, self._handle_resources_read)

        # Prompt methods
        self.register_request_handler(MCPMethods.PROMPTS_LIST, self._handle_prompts_list)
        self.register_request_handler(MCPMethods.PROMPTS_GET, self._handle_prompts_get)

        # Logging
        self.register_request_handler(MCPMethods.LOGGING_SET_LEVEL, self._handle_set_log_level)

    def register_request_handler(self, method: str, handler: RequestHandler) -> None:
        """Register a handler for request messages."""
        self._request_handlers[method] = handler

    def register_notification_handler(self, method: str, handler: NotificationHandler) -> None:
        """Register a handler for notification messages."""
        self._notification_handlers[method] = handler

    def connect(self, transport: "Transport") -> None:
        """Register this engine as the transport's message sink."""
        if self._closed:
            raise EngineClosedError("Engine is closed")
        if self._transport is not None:
            raise RuntimeError("Engine is already connected")
        transport.attach(self)
        self._transport = transport

    async def close(self) -> None:
        """Release the capability set. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._transport = None
        self.tool_registry.clear()
        self.resource_registry.clear()
        self.prompt_registry.clear()
        self._request_handlers.clear()
        self._notification_handlers.clear()
        logger.debug("Protocol engine closed")

    async def send_notification(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Push a notification through the connected transport, if any."""
        transport = self._transport
        if transport is None or self._closed:
            return
        notification = MCPNotification(method=method, params=params)
        await transport.send_message(notification.model_dump(exclude_none=True))

    def expects_progress(self, message: Any) -> bool:
        """Whether a message is a tool call that will report progress."""
        if not isinstance(message, dict) or message.get("method") != MCPMethods.TOOLS_CALL:
            return False
        params = message.get("params")
        if not isinstance(params, dict):
            return False
        meta = params.get("_meta")
        if isinstance(meta, dict) and meta.get("progressToken") is not None:
            return True
        tool = self.tool_registry.get_tool(str(params.get("name")))
        arguments = params.get("arguments")
        if tool is None or not isinstance(arguments, (dict, type(None))):
            return False
        return tool.wants_progress(arguments or {})

    async def handle_message(self, raw_message: Any, context: RequestContext) -> Optional[Dict[str, Any]]:
        """Process one decoded message.

        Returns the wire response for requests and ``None`` for notifications.
        Malformed envelopes raise ``InvalidRequestError``; predictable faults
        raised by handlers become error responses; anything else propagates.
        """
        if self._closed:
            raise EngineClosedError("Engine is closed")

        message = self.parse_message(raw_message)
        if isinstance(message, MCPRequest):
            response = await self._handle_request(message, context)
            return response.to_wire()
        if isinstance(message, MCPNotification):
            await self._handle_notification(message, context)
            return None

        context.logger.debug("Ignoring client response", response_id=raw_message.get("id"))
        return None

    def parse_message(self, raw_message: Any) -> Optional[Union[MCPRequest, MCPNotification]]:
        """Check the JSON-RPC envelope of a decoded message.

        Returns the request or notification model, or ``None`` for a client
        response. Raises ``InvalidRequestError`` for anything else.
        """
        if not isinstance(raw_message, dict):
            raise InvalidRequestError("Message must be a JSON object")
        if raw_message.get("jsonrpc") != "2.0":
            raise InvalidRequestError("Invalid JSON-RPC version")

        if "method" in raw_message:
            if "id" in raw_message:
                try:
                    return MCPRequest.model_validate(raw_message)
                except ValidationError as e:
                    raise InvalidRequestError("Invalid request format") from e
            try:
                return MCPNotification.model_validate(raw_message)
            except ValidationError as e:
                raise InvalidRequestError("Invalid notification format") from e

        if "id" in raw_message and ("result" in raw_message or "error" in raw_message):
            return None

        raise InvalidRequestError("Invalid message structure")

    async def _handle_request(self, request: MCPRequest, context: RequestContext) -> MCPResponse:
        log = context.logger.bind(rpc_method=request.method, rpc_id=request.id)
        log.debug("Request received")

        handler = self._request_handlers.get(request.method)
        try:
            if handler is None:
                raise MethodNotFoundError(f"Method '{request.method}' not found")
            result = await handler(request.params or {}, context)
        except ProtocolFault as fault:
            self._count(request.method, "error")
            log.info("Request failed", code=fault.code, error=str(fault))
            return MCPResponse(id=request.id, error=fault.to_error())
        except Exception:
            self._count(request.method, "error")
            raise

        self._count(request.method, "success")
        return MCPResponse(id=request.id, result=result)

    async def _handle_notification(self, notification: MCPNotification, context: RequestContext) -> None:
        handler = self._notification_handlers.get(notification.method)
        if handler is None:
            context.logger.debug("No handler for notification", rpc_method=notification.method)
            return
        await handler(notification.params or {}, context)

    def _count(self, method: str, status: str) -> None:
        if self.metrics is not None:
            self.metrics.request_count.labels(method=method, status=status).inc()

    async def _ignore_notification(self, params: Dict[str, Any], context: RequestContext) -> None:
        return None

    async def _handle_initialize(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        """Handle initialize request."""
        init_params: InitializeParams = _validate(InitializeParams, params)
        requested = init_params.protocolVersion
        version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else PROTOCOL_VERSION

        context.logger.info(
            "Client initializing",
            protocol_version=requested,
            client_info=init_params.clientInfo,
        )

        result = InitializeResult(
            protocol_version=version,
            capabilities=self._capabilities,
            server_info=self.server_info,
        )
        return result.model_dump(exclude_none=True)

    async def _handle_ping(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        return {}

    async def _handle_tools_list(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        """Handle tools list request."""
        return {"tools": [tool.model_dump(exclude_none=True) for tool in self.tool_registry.list_tools()]}

    async def _handle_tools_call(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        """Handle tool call request."""
        call_params: ToolCallParams = _validate(ToolCallParams, params)
        tool_name = call_params.name
        arguments = call_params.arguments or {}

        tool = self.tool_registry.get_tool(tool_name)
        if tool is None:
            raise InvalidParamsError(f"Unknown tool: {tool_name}")

        meta = params.get("_meta") if isinstance(params.get("_meta"), dict) else {}
        progress_token = meta.get("progressToken")
        if progress_token is None and tool.wants_progress(arguments):
            progress_token = uuid.uuid4().hex

        tool_context = context.child(tool=tool_name)
        invocation = ToolInvocation(
            tool_name,
            arguments,
            tool_context,
            progress_token=progress_token,
            notify=self.send_notification,
        )
        tool_context.logger.info("Tool call requested", streaming=invocation.streaming)

        start = time.monotonic()
        status = "error"
        try:
            result = await tool.call(invocation)
            status = "success"
        finally:
            duration_ms = (time.monotonic() - start) * 1000
            if self.metrics is not None:
                self.metrics.record_tool(tool_name, duration_ms, status)
            tool_context.logger.info("Tool call finished", status=status, duration_ms=round(duration_ms, 3))

        payload = result.model_dump()
        if invocation.streaming:
            payload["_meta"] = {"progressToken": progress_token}
        return payload

    async def _handle_resources_list(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        return {
            "resources": [r.model_dump(exclude_none=True) for r in self.resource_registry.list_resources()]
        }

    async def _handle_resource_templates_list(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        return {
            "resourceTemplates": [
                t.model_dump(exclude_none=True) for t in self.resource_registry.list_templates()
            ]
        }

    async def _handle_resources_read(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        read_params: ResourceReadParams = _validate(ResourceReadParams, params)
        return await self.resource_registry.read(read_params.uri, context)

    async def _handle_prompts_list(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        return {"prompts": [p.model_dump(exclude_none=True) for p in self.prompt_registry.list_prompts()]}

    async def _handle_prompts_get(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        get_params: PromptGetParams = _validate(PromptGetParams, params)
        return self.prompt_registry.get(get_params.name, get_params.arguments)

    async def _handle_set_log_level(self, params: Dict[str, Any], context: RequestContext) -> Dict[str, Any]:
        """Accept a log level change.

        Nothing outlives the request, so the level only applies to the engine
        that received it.
        """
        level = params.get("level")
        if level not in LOG_LEVELS:
            raise InvalidParamsError(f"Invalid log level: {level}")
        context.logger.info("Log level change requested", level=level)
        return {}
