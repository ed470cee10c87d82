"""Per-request lifecycle: fresh engine, one transport, one cleanup."""

from typing import Callable, Optional
from starlette.responses import JSONResponse
from starlette.types import Receive, Scope, Send

from ..config import ServerConfig
from ..context import RequestContext
from ..metrics import ServerMetrics
from ..protocol.engine import ProtocolEngine
from ..protocol.errors import ProtocolFault, internal_error
from ..protocol.factory import create_engine
from ..protocol.messages import MCPResponse
from ..transport.http import StreamableHttpTransport

EngineFactory = Callable[[ServerConfig, Optional[ServerMetrics]], ProtocolEngine]


class RequestLifecycleCoordinator:
    """ASGI application serving the MCP endpoint.

    Every invocation builds its own engine and transport, connects them and
    registers a single cleanup action on the transport's close event. The
    cleanup records the request duration and closes both. Because the
    ``finally`` block closes the transport, the close event fires on every
    path, and it fires only once.
    """

    def __init__(
        self,
        config: ServerConfig,
        metrics: Optional[ServerMetrics] = None,
        engine_factory: EngineFactory = create_engine,
    ):
        self.config = config
        self.metrics = metrics
        self.engine_factory = engine_factory

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        context = RequestContext.new(http_method=scope["method"], path=scope["path"])
        log = context.logger
        engine: Optional[ProtocolEngine] = None
        transport: Optional[StreamableHttpTransport] = None

        try:
            engine = self.engine_factory(self.config, self.metrics)
            transport = StreamableHttpTransport(
                scope,
                receive,
                send,
                context,
                allowed_hosts=self.config.allowed_hosts,
                allowed_origins=self.config.allowed_origins,
                max_body_size=self.config.max_request_size,
            )
            engine.connect(transport)
            await transport.on_close(self._cleanup_action(context, engine, transport))

            body = await transport.read_body() if scope["method"] == "POST" else None
            await transport.handle_request(body)

        except ProtocolFault as fault:
            log.info("Request rejected", code=fault.code, status=fault.http_status, error=str(fault))
            if transport is not None:
                await transport.send_fault(fault, transport.current_request_id)

        except Exception as e:
            log.error("Error handling MCP request", error=str(e), exc_info=True)
            if transport is None:
                payload = MCPResponse(id=None, error=internal_error()).to_wire()
                await JSONResponse(payload, status_code=500)(scope, receive, send)
            else:
                await transport.send_error(500, internal_error(), transport.current_request_id)

        finally:
            if transport is not None:
                await transport.close()
            else:
                self._record(context)
                if engine is not None:
                    await engine.close()

    def _cleanup_action(
        self,
        context: RequestContext,
        engine: ProtocolEngine,
        transport: StreamableHttpTransport,
    ):
        async def cleanup() -> None:
            duration_ms = self._record(context)
            context.logger.info("Request closed", duration_ms=round(duration_ms, 3))
            await transport.close()
            await engine.close()

        return cleanup

    def _record(self, context: RequestContext) -> float:
        duration_ms = context.elapsed_ms()
        if self.metrics is not None:
            self.metrics.record_request(duration_ms)
        return duration_ms
