"""JSON-RPC 2.0 protocol implementation for MCP."""

from .errors import FaultCategory, ProtocolFault, translate
from .messages import (
    MCPMessage,
    MCPRequest,
    MCPResponse,
    MCPNotification,
    MCPError,
    ErrorCode,
)

__all__ = [
    "FaultCategory",
    "ProtocolFault",
    "translate",
    "MCPMessage",
    "MCPRequest",
    "MCPResponse",
    "MCPNotification",
    "MCPError",
    "ErrorCode",
]
