"""Base tool interface, per-call invocation state and registry."""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union
import structlog
from pydantic import BaseModel, ValidationError

from ..context import RequestContext
from ..protocol.errors import InvalidParamsError
from ..protocol.messages import MCPMethods, ProgressNotification, ToolCallResult, ToolDefinition

logger = structlog.get_logger()

NotifyCallback = Callable[[str, Dict[str, Any]], Awaitable[None]]


class ToolValidationError(InvalidParamsError):
    """Raised when tool input validation fails."""
    def __init__(self, tool_name: str, errors: List[Dict[str, Any]]):
        details = [
            {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", "")}
            for error in errors
        ]
        super().__init__(
            f"Invalid arguments for tool {tool_name}",
            data={"validation_errors": details},
        )
        self.errors = details


class ToolInvocation:
    """State of a single tool call.

    Progress is only emitted when the call carries a progress token. Values
    must stay within ``[0, 1]`` and never decrease, and nothing is emitted once
    the invocation has finished.
    """

    def __init__(
        self,
        name: str,
        arguments: Dict[str, Any],
        context: RequestContext,
        progress_token: Optional[Union[str, int]] = None,
        notify: Optional[NotifyCallback] = None,
    ):
        self.name = name
        self.arguments = arguments
        self.context = context
        self.progress_token = progress_token
        self._notify = notify
        self._progress = 0.0
        self._finished = False

    @property
    def streaming(self) -> bool:
        return self.progress_token is not None

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def finished(self) -> bool:
        return self._finished

    async def report_progress(self, progress: float, message: Optional[str] = None) -> None:
        if not 0.0 <= progress <= 1.0:
            raise ValueError(f"progress must be within [0, 1], got {progress}")
        if progress < self._progress:
            raise ValueError(
                f"progress must not decrease ({progress} after {self._progress})"
            )
        if self._finished:
            self.context.logger.debug("Progress after completion dropped", progress=progress)
            return
        self._progress = progress
        if not self.streaming or self._notify is None:
            return

        notification = ProgressNotification(
            progress_token=self.progress_token,
            progress=progress,
            total=1.0,
            message=message,
        )
        await self._notify(MCPMethods.PROGRESS, notification.model_dump(exclude_none=True))

    def finish(self) -> None:
        self._finished = True


class Tool(ABC):
    """Abstract base class for MCP tools."""

    #: Pydantic model validating the call arguments.
    arguments_model: Type[BaseModel]
    #: Tools that always report progress get a token even when not asked.
    streams_progress: bool = False

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}

    @property
    @abstractmethod
    def name(self) -> str:
        """Tool name."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Tool description."""
        pass

    @property
    def input_schema(self) -> Dict[str, Any]:
        """JSON schema for tool input validation."""
        schema = self.arguments_model.model_json_schema()
        schema.pop("title", None)
        return schema

    @abstractmethod
    async def execute(self, arguments: BaseModel, invocation: ToolInvocation) -> ToolCallResult:
        """Execute the tool with validated arguments."""
        pass

    def validate(self, arguments: Dict[str, Any]) -> BaseModel:
        try:
            return self.arguments_model.model_validate(arguments)
        except ValidationError as e:
            raise ToolValidationError(self.name, e.errors()) from e

    def wants_progress(self, arguments: Dict[str, Any]) -> bool:
        return self.streams_progress or arguments.get("stream") is True

    async def call(self, invocation: ToolInvocation) -> ToolCallResult:
        """Validate and execute one invocation.

        Predictable faults propagate as ``ProtocolFault`` subclasses; anything
        else propagates untouched.
        """
        validated = self.validate(invocation.arguments)
        try:
            result = await self.execute(validated, invocation)
        finally:
            invocation.finish()

        invocation.context.logger.debug("Tool executed successfully", tool=self.name)
        return result

    def get_definition(self) -> ToolDefinition:
        """Get tool definition for MCP."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema
        )


class ToolRegistry:
    """Registry of the tools of one engine instance."""

    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool instance."""
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug("Tool registered", tool=tool.name)

    def get_tool(self, name: str) -> Optional[Tool]:
        """Get a tool instance."""
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def list_tools(self) -> List[ToolDefinition]:
        """List all available tools."""
        return [tool.get_definition() for tool in self._tools.values()]

    def clear(self) -> None:
        self._tools.clear()
