"""Builds a fresh, fully registered protocol engine for every request."""

from typing import Optional
import structlog

from ..config import ServerConfig
from ..metrics import ServerMetrics
from ..prompts import default_prompts
from ..resources import (
    CalculatorHistoryResource,
    CalculatorStatsResource,
    FormulaLibraryResource,
    MathConstantsResource,
    RequestInfoResource,
    new_instance_id,
)
from ..tools import CalculateTool, DemoProgressTool, SampleEchoTool
from .engine import ProtocolEngine

logger = structlog.get_logger()


def server_info(config: ServerConfig) -> dict:
    return {"name": config.server_name, "version": config.server_version}


def create_engine(config: ServerConfig, metrics: Optional[ServerMetrics] = None) -> ProtocolEngine:
    """Create an engine with every tool, resource and prompt registered.

    Each call returns a new engine that shares nothing with previous ones
    apart from the metrics sink.
    """
    info = server_info(config)
    engine = ProtocolEngine(info, metrics=metrics)
    tool_config = {"progress_delay_ms": config.progress_delay_ms}

    engine.tool_registry.register(CalculateTool(tool_config))
    engine.tool_registry.register(DemoProgressTool(tool_config))
    if config.sample_tool_name:
        engine.tool_registry.register(SampleEchoTool(config.sample_tool_name, tool_config))

    for resource in (
        MathConstantsResource(),
        CalculatorHistoryResource(),
        CalculatorStatsResource(),
        FormulaLibraryResource(),
        RequestInfoResource(info, new_instance_id()),
    ):
        engine.resource_registry.register(resource)

    for prompt in default_prompts():
        engine.prompt_registry.register(prompt)

    logger.debug("Engine created", tools=engine.tool_registry.names())
    return engine
