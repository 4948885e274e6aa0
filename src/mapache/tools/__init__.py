"""Tools module - registry snapshot and MCP tool adapters."""

from mapache.tools.base import ToolResult
from mapache.tools.mcp_tool import MCPRemoteTool
from mapache.tools.registry import ToolRegistrySnapshot

__all__ = ["MCPRemoteTool", "ToolRegistrySnapshot", "ToolResult"]
