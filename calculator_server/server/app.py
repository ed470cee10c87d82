"""Starlette application wiring the MCP endpoint and operational routes."""

import os
import platform
import resource
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import structlog
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from ..config import ServerConfig
from ..metrics import ServerMetrics
from ..protocol.errors import ServerError
from ..protocol.messages import MCPResponse
from .coordinator import RequestLifecycleCoordinator
from .middleware import MaxBodySizeMiddleware, RateLimitMiddleware

logger = structlog.get_logger()

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


def memory_usage() -> Dict[str, Any]:
    usage = resource.getrusage(resource.RUSAGE_SELF)
    # ru_maxrss is kilobytes on Linux and bytes on macOS
    scale = 1 if sys.platform == "darwin" else 1024
    return {"maxRss": usage.ru_maxrss * scale}


def cpu_usage() -> Dict[str, float]:
    usage = resource.getrusage(resource.RUSAGE_SELF)
    return {"user": usage.ru_utime, "system": usage.ru_stime}


def create_app(config: Optional[ServerConfig] = None, metrics: Optional[ServerMetrics] = None) -> Starlette:
    """Create the HTTP application.

    A single ``ServerMetrics`` instance is shared by every request served by
    the returned application; nothing else outlives a request.
    """
    config = config or ServerConfig()
    if metrics is None:
        metrics = ServerMetrics(capacity=config.metrics_capacity)
    started = time.monotonic()
    coordinator = RequestLifecycleCoordinator(config, metrics)

    def uptime() -> float:
        return time.monotonic() - started

    async def delete_mcp(request: Request) -> Response:
        error = ServerError("Method not allowed. No sessions to delete in stateless mode.")
        payload = MCPResponse(id=None, error=error.to_error()).to_wire()
        return JSONResponse(payload, status_code=405, headers={"Allow": "POST, GET"})

    async def health(request: Request) -> Response:
        return JSONResponse({
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "pattern": "stateless",
            "uptime": uptime(),
            "memory": memory_usage(),
            "version": config.server_version,
        })

    async def health_detailed(request: Request) -> Response:
        return JSONResponse({
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "pattern": "stateless",
            "system": {
                "uptime": uptime(),
                "memory": memory_usage(),
                "cpu": cpu_usage(),
                "platform": sys.platform,
                "pythonVersion": platform.python_version(),
                "pid": os.getpid(),
            },
            "application": {
                "name": config.server_name,
                "version": config.server_version,
                "config": {
                    "port": config.port,
                    "rateLimitMax": config.rate_limit_max,
                },
            },
            "characteristics": {
                "persistent": False,
                "sessionManagement": False,
                "resumability": False,
                "memoryModel": "ephemeral",
                "sseSupport": True,
                "scalingModel": "horizontal",
                "deploymentReady": "serverless",
            },
        })

    async def metrics_endpoint(request: Request) -> Response:
        if not config.enable_metrics:
            return JSONResponse({"error": "Metrics are disabled"}, status_code=404)
        return Response(metrics.render(), media_type=PROMETHEUS_CONTENT_TYPE)

    routes = [
        Route("/mcp", endpoint=coordinator, methods=["GET", "POST"]),
        Route("/mcp", endpoint=delete_mcp, methods=["DELETE"]),
        Route("/health", endpoint=health, methods=["GET"]),
        Route("/health/detailed", endpoint=health_detailed, methods=["GET"]),
        Route("/metrics", endpoint=metrics_endpoint, methods=["GET"]),
    ]

    cors_origins = ["*"] if config.allowed_origins is None else config.allowed_origins
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
            allow_headers=[
                "Content-Type",
                "Authorization",
                "Accept",
                "Mcp-Protocol-Version",
                "Mcp-Session-Id",
            ],
            expose_headers=["Mcp-Protocol-Version"],
            max_age=86400,
        ),
        Middleware(
            RateLimitMiddleware,
            max_requests=config.rate_limit_max,
            window_ms=config.rate_limit_window,
        ),
        Middleware(MaxBodySizeMiddleware, max_body_size=config.max_request_size),
    ]

    app = Starlette(debug=config.debug, routes=routes, middleware=middleware)
    app.state.config = config
    app.state.metrics = metrics

    logger.info(
        "Application created",
        server_name=config.server_name,
        metrics_enabled=config.enable_metrics,
    )
    return app
