"""Transport layer abstraction for MCP communication."""

from .base import Transport, TransportError
from .http import StreamableHttpTransport

__all__ = ["Transport", "TransportError", "StreamableHttpTransport"]
