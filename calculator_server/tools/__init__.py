"""Tool implementations for the calculator server."""

from .base import Tool, ToolInvocation, ToolRegistry, ToolValidationError
from .calculator import (
    CalculateTool,
    DemoProgressTool,
    SampleEchoTool,
)

__all__ = [
    "Tool",
    "ToolInvocation",
    "ToolRegistry",
    "ToolValidationError",
    "CalculateTool",
    "DemoProgressTool",
    "SampleEchoTool",
]
