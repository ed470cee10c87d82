"""Stateless calculator MCP server over Streamable HTTP."""

__version__ = "1.0.0"
