"""Calculator tools."""

import asyncio
from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, Field

from ..protocol.errors import InvalidParamsError
from ..protocol.messages import ToolCallResult
from .base import Tool, ToolInvocation

OPERATOR_SYMBOLS = {
    "add": "+",
    "subtract": "-",
    "multiply": "×",
    "divide": "÷",
}


def format_number(value: float) -> str:
    """Render integral floats without a trailing ``.0``."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def text_result(text: str) -> ToolCallResult:
    return ToolCallResult(content=[{"type": "text", "text": text}])


class CalculateArguments(BaseModel):
    a: float = Field(description="First operand for the calculation")
    b: float = Field(description="Second operand for the calculation")
    op: Literal["add", "subtract", "multiply", "divide"] = Field(
        description="Arithmetic operation to perform"
    )
    stream: Optional[bool] = Field(default=None, description="Stream intermediate result chunks")
    precision: int = Field(
        default=2, ge=0, le=15,
        description="Number of decimal places for result (default: 2)",
    )


class CalculateTool(Tool):
    """Basic arithmetic with optional progress streaming."""

    arguments_model = CalculateArguments

    @property
    def name(self) -> str:
        return "calculate"

    @property
    def description(self) -> str:
        return "Performs arithmetic calculations in stateless mode"

    async def execute(self, arguments: CalculateArguments, invocation: ToolInvocation) -> ToolCallResult:
        a, b, op = arguments.a, arguments.b, arguments.op
        log = invocation.context.logger
        log.info("Stateless calculation requested", a=a, b=b, op=op)

        steps = [f"Input: {format_number(a)} {op} {format_number(b)}"]
        await invocation.report_progress(0.1, "Starting calculation")

        if op == "add":
            result = a + b
            steps.append(f"Addition: {format_number(a)} + {format_number(b)} = {format_number(result)}")
        elif op == "subtract":
            result = a - b
            steps.append(f"Subtraction: {format_number(a)} - {format_number(b)} = {format_number(result)}")
        elif op == "multiply":
            result = a * b
            steps.append(f"Multiplication: {format_number(a)} × {format_number(b)} = {format_number(result)}")
        else:
            if b == 0:
                log.warning("Division by zero attempted", a=a, b=b)
                raise InvalidParamsError("Division by zero is not allowed.")
            result = a / b
            steps.append(f"Division: {format_number(a)} ÷ {format_number(b)} = {format_number(result)}")

        result = round(result, arguments.precision)
        steps.append(f"Final result ({arguments.precision} decimal places): {format_number(result)}")

        await invocation.report_progress(1.0, "Calculation completed")

        symbol = OPERATOR_SYMBOLS[op]
        summary = f"{op.upper()}: {format_number(a)} {symbol} {format_number(b)} = {format_number(result)}"
        return text_result(summary + "\n\nSteps:\n" + "\n".join(steps))


class NoArguments(BaseModel):
    pass


class DemoProgressTool(Tool):
    """Emits five evenly spaced progress notifications."""

    arguments_model = NoArguments
    streams_progress = True
    steps = 5

    @property
    def name(self) -> str:
        return "demo_progress"

    @property
    def description(self) -> str:
        return "Demonstrates progress notifications with 5 incremental steps"

    async def execute(self, arguments: NoArguments, invocation: ToolInvocation) -> ToolCallResult:
        delay = self.config.get("progress_delay_ms", 200) / 1000.0
        log = invocation.context.logger
        log.info("Progress demonstration started")

        for i in range(1, self.steps + 1):
            await invocation.report_progress(i / self.steps, f"Progress step {i} of {self.steps}")
            await asyncio.sleep(delay)

        log.info("Progress demonstration completed")
        return text_result(f"Progress demonstration completed with {self.steps} incremental steps")


class EchoArguments(BaseModel):
    message: str = Field(description="Message to echo back")


class SampleEchoTool(Tool):
    """Echo tool registered under a configured name."""

    arguments_model = EchoArguments

    def __init__(self, tool_name: str, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self._tool_name = tool_name

    @property
    def name(self) -> str:
        return self._tool_name

    @property
    def description(self) -> str:
        return "Educational echo tool for learning MCP concepts"

    async def execute(self, arguments: EchoArguments, invocation: ToolInvocation) -> ToolCallResult:
        return text_result(f"test string print: {arguments.message}")
