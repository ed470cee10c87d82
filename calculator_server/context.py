"""Per-request context passed explicitly through the request handling chain."""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping
import structlog


@dataclass(frozen=True)
class RequestContext:
    """Immutable correlation and logging context for one HTTP request.

    Child contexts (for example one per tool execution) are new values that
    extend the parent's logging fields; the parent is never modified.
    """

    request_id: str
    created_at: datetime
    started: float
    fields: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def new(cls, **fields: Any) -> "RequestContext":
        request_id = uuid.uuid4().hex
        merged = {"request_id": request_id, **fields}
        return cls(
            request_id=request_id,
            created_at=datetime.now(timezone.utc),
            started=time.monotonic(),
            fields=MappingProxyType(merged),
        )

    def child(self, **fields: Any) -> "RequestContext":
        """Return a new context extending this one's logging fields."""
        return RequestContext(
            request_id=self.request_id,
            created_at=self.created_at,
            started=self.started,
            fields=MappingProxyType({**self.fields, **fields}),
        )

    @property
    def logger(self) -> structlog.stdlib.BoundLogger:
        return structlog.get_logger().bind(**self.fields)

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started) * 1000.0
