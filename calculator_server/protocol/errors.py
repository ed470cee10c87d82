"""Protocol fault types and the fault-to-error translation table."""

from enum import Enum
from typing import Any, Dict, NamedTuple, Optional

from .messages import ErrorCode, MCPError


GENERIC_INTERNAL_MESSAGE = "An internal server error occurred."


class FaultCategory(str, Enum):
    """Fault categories visible at the protocol level."""
    PARSE_ERROR = "parse_error"
    INVALID_REQUEST = "invalid_request"
    METHOD_NOT_FOUND = "method_not_found"
    INVALID_PARAMS = "invalid_params"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    SERVER_ERROR = "server_error"
    INTERNAL_ERROR = "internal_error"


class _ErrorSpec(NamedTuple):
    code: ErrorCode
    default_message: str
    http_status: int


# HTTP status applies when the fault ends the HTTP exchange itself; faults
# raised while dispatching a message travel inside a 200 envelope.
_SPECS: Dict[FaultCategory, _ErrorSpec] = {
    FaultCategory.PARSE_ERROR: _ErrorSpec(ErrorCode.PARSE_ERROR, "Parse error", 400),
    FaultCategory.INVALID_REQUEST: _ErrorSpec(ErrorCode.INVALID_REQUEST, "Invalid request", 400),
    FaultCategory.METHOD_NOT_FOUND: _ErrorSpec(ErrorCode.METHOD_NOT_FOUND, "Method not found", 200),
    FaultCategory.INVALID_PARAMS: _ErrorSpec(ErrorCode.INVALID_PARAMS, "Invalid params", 200),
    FaultCategory.NOT_FOUND: _ErrorSpec(ErrorCode.NOT_FOUND, "Not found", 200),
    FaultCategory.RATE_LIMITED: _ErrorSpec(
        ErrorCode.RATE_LIMITED, "Too many requests. Please try again later.", 429
    ),
    FaultCategory.PAYLOAD_TOO_LARGE: _ErrorSpec(
        ErrorCode.PAYLOAD_TOO_LARGE, "Request too large", 413
    ),
    FaultCategory.SERVER_ERROR: _ErrorSpec(ErrorCode.SERVER_ERROR, "Server error", 400),
    FaultCategory.INTERNAL_ERROR: _ErrorSpec(
        ErrorCode.INTERNAL_ERROR, GENERIC_INTERNAL_MESSAGE, 500
    ),
}


class ProtocolFault(Exception):
    """Base class for predictable, client-visible faults."""

    category: FaultCategory = FaultCategory.SERVER_ERROR

    def __init__(
        self,
        message: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message or _SPECS[self.category].default_message)
        self.message = message
        self.data = data
        self._http_status = http_status

    @property
    def code(self) -> int:
        return int(_SPECS[self.category].code)

    @property
    def http_status(self) -> int:
        if self._http_status is not None:
            return self._http_status
        return _SPECS[self.category].http_status

    def to_error(self) -> MCPError:
        return translate(self.category, self.message, self.data)


class ParseError(ProtocolFault):
    """Raised when a request body is not valid JSON."""
    category = FaultCategory.PARSE_ERROR


class InvalidRequestError(ProtocolFault):
    """Raised when a message is not a valid JSON-RPC envelope."""
    category = FaultCategory.INVALID_REQUEST


class MethodNotFoundError(ProtocolFault):
    """Raised when no handler is registered for a method."""
    category = FaultCategory.METHOD_NOT_FOUND


class InvalidParamsError(ProtocolFault):
    """Raised for client-fixable argument problems."""
    category = FaultCategory.INVALID_PARAMS


class NotFoundError(ProtocolFault):
    """Raised when a resource does not exist or is unavailable."""
    category = FaultCategory.NOT_FOUND


class RateLimitedError(ProtocolFault):
    """Raised when a client sent too many requests in the current window."""
    category = FaultCategory.RATE_LIMITED


class PayloadTooLargeError(ProtocolFault):
    """Raised when a request body exceeds the configured limit."""
    category = FaultCategory.PAYLOAD_TOO_LARGE


class ServerError(ProtocolFault):
    """Raised for transport-level refusals (method, media type, host)."""
    category = FaultCategory.SERVER_ERROR


def translate(
    category: FaultCategory,
    detail: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
) -> MCPError:
    """Map a fault category to a protocol error.

    The internal-error category always carries the generic message, whatever
    the detail, so internal exception text never reaches a client.
    """
    spec = _SPECS[category]
    if category is FaultCategory.INTERNAL_ERROR:
        return MCPError(code=int(spec.code), message=spec.default_message)
    return MCPError(code=int(spec.code), message=detail or spec.default_message, data=data)


def http_status_for(category: FaultCategory) -> int:
    """HTTP status used when a fault terminates the whole HTTP exchange."""
    return _SPECS[category].http_status


def fault_to_error(exc: BaseException) -> MCPError:
    """Translate any exception into a protocol error.

    Predictable faults keep their category; everything else is reported as a
    generic internal error.
    """
    if isinstance(exc, ProtocolFault):
        return exc.to_error()
    return translate(FaultCategory.INTERNAL_ERROR)


def internal_error() -> MCPError:
    return translate(FaultCategory.INTERNAL_ERROR)
