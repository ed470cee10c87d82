"""Static and computed read-only resources."""

import json
import os
import platform
import re
import sys
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import structlog

from .context import RequestContext
from .protocol.errors import NotFoundError
from .protocol.messages import ResourceDefinition, ResourceTemplateDefinition

logger = structlog.get_logger()

JSON_MIME = "application/json"

MATH_CONSTANTS = {"pi": 3.14159, "e": 2.71828}

FORMULA_LIBRARY = [
    {
        "name": "Quadratic Formula",
        "formula": "x = (-b ± √(b² - 4ac)) / 2a",
        "category": "algebra",
        "description": "Solves quadratic equations of form ax² + bx + c = 0",
    },
    {
        "name": "Pythagorean Theorem",
        "formula": "a² + b² = c²",
        "category": "geometry",
        "description": "Relates sides of a right triangle",
    },
    {
        "name": "Distance Formula",
        "formula": "d = √((x₂-x₁)² + (y₂-y₁)²)",
        "category": "geometry",
        "description": "Calculates distance between two points in 2D space",
    },
    {
        "name": "Compound Interest",
        "formula": "A = P(1 + r/n)^(nt)",
        "category": "finance",
        "description": "Calculates compound interest over time",
    },
    {
        "name": "Area of Circle",
        "formula": "A = πr²",
        "category": "geometry",
        "description": "Calculates area of a circle given radius",
    },
    {
        "name": "Euler's Identity",
        "formula": "e^(iπ) + 1 = 0",
        "category": "complex",
        "description": "Beautiful equation relating fundamental constants",
    },
    {
        "name": "Law of Sines",
        "formula": "a/sin(A) = b/sin(B) = c/sin(C)",
        "category": "trigonometry",
        "description": "Relates sides and angles in any triangle",
    },
    {
        "name": "Law of Cosines",
        "formula": "c² = a² + b² - 2ab·cos(C)",
        "category": "trigonometry",
        "description": "Generalizes Pythagorean theorem for any triangle",
    },
    {
        "name": "Binomial Theorem",
        "formula": "(x+y)^n = Σ(n,k)·x^(n-k)·y^k",
        "category": "algebra",
        "description": "Expands binomial expressions to any power",
    },
    {
        "name": "Derivative Power Rule",
        "formula": "d/dx(x^n) = n·x^(n-1)",
        "category": "calculus",
        "description": "Basic differentiation rule for polynomial terms",
    },
]

_PROCESS_STARTED = time.monotonic()


def json_contents(uri: str, payload: Any) -> Dict[str, Any]:
    return {
        "contents": [
            {"uri": uri, "mimeType": JSON_MIME, "text": json.dumps(payload, indent=2, ensure_ascii=False)}
        ]
    }


def not_found(uri: str) -> NotFoundError:
    # Unavailable and unknown resources share one message.
    return NotFoundError(f"Resource not found: {uri}")


class Resource(ABC):
    """A read-only resource addressed by a fixed URI or a URI template."""

    name: str
    title: str
    description: str
    mime_type: str = JSON_MIME
    uri: Optional[str] = None
    uri_template: Optional[str] = None

    def matches(self, uri: str) -> bool:
        if self.uri is not None:
            return uri == self.uri
        return self._template_pattern().fullmatch(uri) is not None

    def _template_pattern(self) -> "re.Pattern[str]":
        parts = re.split(r"(\{[^}]+\})", self.uri_template or "")
        regex = "".join(
            r"(?P<%s>[^/]+)" % part[1:-1] if part.startswith("{") else re.escape(part)
            for part in parts
        )
        return re.compile(regex)

    @abstractmethod
    async def read(self, uri: str, context: RequestContext) -> Dict[str, Any]:
        pass

    def get_definition(self) -> ResourceDefinition:
        return ResourceDefinition(
            uri=self.uri, name=self.title, description=self.description, mime_type=self.mime_type
        )

    def get_template_definition(self) -> ResourceTemplateDefinition:
        return ResourceTemplateDefinition(
            uri_template=self.uri_template,
            name=self.title,
            description=self.description,
            mime_type=self.mime_type,
        )


class MathConstantsResource(Resource):
    name = "math-constants"
    title = "Mathematical Constants"
    description = "Provides fundamental mathematical constants pi and e"
    uri = "calculator://constants"

    async def read(self, uri: str, context: RequestContext) -> Dict[str, Any]:
        return json_contents(uri, MATH_CONSTANTS)


class CalculatorHistoryResource(Resource):
    """History needs cross-request state, which this server never keeps."""

    name = "calculator-history"
    title = "Calculator History"
    description = "Calculator history (not available in stateless mode)"
    uri_template = "calculator://history/{id}"

    async def read(self, uri: str, context: RequestContext) -> Dict[str, Any]:
        context.logger.debug("History requested in stateless mode", uri=uri)
        raise not_found(uri)


class CalculatorStatsResource(Resource):
    name = "calculator-stats"
    title = "Calculator Statistics"
    description = "Basic server process statistics"
    uri = "calculator://stats"

    async def read(self, uri: str, context: RequestContext) -> Dict[str, Any]:
        return json_contents(uri, {
            "uptimeMs": (time.monotonic() - _PROCESS_STARTED) * 1000,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "pattern": "stateless",
        })


class FormulaLibraryResource(Resource):
    name = "formula-library"
    title = "Mathematical Formula Library"
    description = "Curated collection of mathematical formulas organized by category"
    uri = "formulas://library"

    async def read(self, uri: str, context: RequestContext) -> Dict[str, Any]:
        return json_contents(uri, FORMULA_LIBRARY)


class RequestInfoResource(Resource):
    name = "request-info"
    title = "Current Request Information"
    description = "Metadata about the current stateless request and server instance"
    uri = "request://current"

    def __init__(self, server_info: Dict[str, str], instance_id: str):
        self.server_info = server_info
        self.instance_id = instance_id

    async def read(self, uri: str, context: RequestContext) -> Dict[str, Any]:
        context.logger.debug("Request info resource accessed")
        return json_contents(uri, {
            "requestId": context.request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "serverInfo": {
                **self.server_info,
                "pattern": "stateless",
                "instanceId": self.instance_id,
            },
            "processInfo": {
                "pid": os.getpid(),
                "platform": sys.platform,
                "pythonVersion": platform.python_version(),
                "uptime": time.monotonic() - _PROCESS_STARTED,
            },
        })


class ResourceRegistry:
    """Resources of one engine instance."""

    def __init__(self):
        self._resources: List[Resource] = []

    def register(self, resource: Resource) -> None:
        self._resources.append(resource)
        logger.debug("Resource registered", resource=resource.name)

    def list_resources(self) -> List[ResourceDefinition]:
        return [r.get_definition() for r in self._resources if r.uri is not None]

    def list_templates(self) -> List[ResourceTemplateDefinition]:
        return [r.get_template_definition() for r in self._resources if r.uri_template is not None]

    async def read(self, uri: str, context: RequestContext) -> Dict[str, Any]:
        for resource in self._resources:
            if resource.matches(uri):
                return await resource.read(uri, context.child(resource=resource.name))
        raise not_found(uri)

    def clear(self) -> None:
        self._resources.clear()


def new_instance_id() -> str:
    return uuid.uuid4().hex
