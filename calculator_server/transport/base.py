"""Base transport interface for MCP communication."""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union, TYPE_CHECKING
import structlog

if TYPE_CHECKING:
    from ..protocol.engine import ProtocolEngine

logger = structlog.get_logger()

RequestId = Union[str, int]
CloseCallback = Callable[[], Awaitable[None]]


class TransportError(Exception):
    """Base exception for transport-related errors."""
    pass


class Transport(ABC):
    """Abstract base class for server-side, single-request transports.

    A transport is bound to one HTTP exchange. Its close event fires exactly
    once, when the exchange ends for any reason, and every callback registered
    with ``on_close`` runs at that moment.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self._engine: Optional["ProtocolEngine"] = None
        self._in_flight: Dict[RequestId, str] = {}
        self._close_callbacks: List[CloseCallback] = []
        self._closed = False

    @property
    def connected(self) -> bool:
        """Check if an engine is attached and the exchange is still open."""
        return self._engine is not None and not self._closed

    @property
    def closed(self) -> bool:
        """Check if transport is closed."""
        return self._closed

    @property
    def engine(self) -> Optional["ProtocolEngine"]:
        return self._engine

    @property
    def current_request_id(self) -> Optional[RequestId]:
        """Id of the request being processed, when exactly one is in flight."""
        if len(self._in_flight) == 1:
            return next(iter(self._in_flight))
        return None

    def attach(self, engine: "ProtocolEngine") -> None:
        """Bind the engine that consumes this transport's messages."""
        if self._engine is not None:
            raise TransportError("Transport already has an engine attached")
        self._engine = engine

    def _track(self, request_id: Any, method: Any) -> bool:
        if isinstance(request_id, (str, int)) and not isinstance(request_id, bool):
            self._in_flight[request_id] = str(method)
            return True
        return False

    def _untrack(self, request_id: Any) -> None:
        self._in_flight.pop(request_id, None)

    async def on_close(self, callback: CloseCallback) -> None:
        """Register a callback for the close event.

        Registering after the event already fired runs the callback at once.
        """
        if self._closed:
            await callback()
            return
        self._close_callbacks.append(callback)

    async def close(self) -> None:
        """Fire the close event. Later calls do nothing."""
        if self._closed:
            return
        self._closed = True
        callbacks, self._close_callbacks = self._close_callbacks, []
        self._in_flight.clear()

        for callback in callbacks:
            try:
                await callback()
            except Exception as e:
                logger.error("Close callback failed", error=str(e), exc_info=True)

        await self._release()
        self._engine = None

    async def _release(self) -> None:
        """Free binding-specific resources after the close event."""
        return None

    @abstractmethod
    async def send_message(self, message: Dict[str, Any]) -> None:
        """Send a server-to-client message on the open exchange."""
        pass

    @abstractmethod
    async def handle_request(self, body: Optional[bytes] = None) -> None:
        """Process the exchange, dispatching its messages to the engine."""
        pass

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
