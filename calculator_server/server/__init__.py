"""HTTP application, request lifecycle and middleware."""

from .app import create_app
from .coordinator import RequestLifecycleCoordinator
from .middleware import MaxBodySizeMiddleware, RateLimitMiddleware

__all__ = [
    "create_app",
    "RequestLifecycleCoordinator",
    "MaxBodySizeMiddleware",
    "RateLimitMiddleware",
]
