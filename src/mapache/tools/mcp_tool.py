"""
MCPRemoteTool - expose a tool of a connected MCP session to the agent.
"""

from __future__ import annotations

import asyncio
import re
import time
from typing import Any, Dict, List, Optional, Sequence

from langchain_core.tools import StructuredTool
from loguru import logger
from pydantic import BaseModel, Field, create_model

from mapache.mcp.connection import MCPTransportClient
from mapache.tools.base import ToolResult


def normalize_tool_name(name: str) -> str:
    s = (name or "").strip().lower()
    s = re.sub(r"[^a-z0-9]+", "_", s)
    s = re.sub(r"_+", "_", s).strip("_")
    if not s:
        s = "tool"
    if s[0].isdigit():
        s = "tool_" + s
    return s


def _ensure_object_schema(schema: Any) -> Dict[str, Any]:
    if not isinstance(schema, dict):
        return {"type": "object", "properties": {}}
    if schema.get("type") != "object":
        # Some MCP servers provide only properties/required; normalize.
        if "properties" in schema or "required" in schema:
            schema = {"type": "object", **schema}
        else:
            schema = {"type": "object", "properties": schema}
    schema.setdefault("properties", {})
    return schema


_JSON_TYPES: Dict[str, Any] = {
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list,
    "object": dict,
}


def build_args_model(tool_name: str, schema: Dict[str, Any]) -> Optional[type]:
    props = schema.get("properties", {}) or {}
    required = set(schema.get("required", []) or [])
    fields: Dict[str, Any] = {}

    for prop_name, prop_info in props.items():
        info = prop_info if isinstance(prop_info, dict) else {}
        prop_type: Any = _JSON_TYPES.get(str(info.get("type")), str)
        default_val = info.get("default", ...)
        if prop_name not in required and default_val is ...:
            default_val = None
            prop_type = Optional[prop_type]
        fields[prop_name] = (prop_type, Field(default=default_val, description=str(info.get("description", ""))))

    if not fields:
        return None
    return create_model(f"{tool_name}Args", __base__=BaseModel, **fields)


def _flatten_mcp_content(content: Any) -> str:
    if not content:
        return ""
    parts = []
    for block in list(content):
        text = getattr(block, "text", None)
        if isinstance(text, str) and text.strip():
            parts.append(text.strip())
            continue
        if isinstance(block, dict) and isinstance(block.get("text"), str) and block["text"].strip():
            parts.append(block["text"].strip())
            continue
        parts.append(str(block))
    return "\n".join([p for p in parts if p])


def _payload_indicates_failure(data: Any) -> Optional[str]:
    """
    Some MCP servers return {success: false, message: "..."} without marking the
    call as isError. Treat these as tool failures.
    """
    if not isinstance(data, dict):
        return None
    if data.get("success") is False:
        msg = data.get("message") or data.get("error") or "MCP tool reported success=false"
        return str(msg)
    return None


class MCPRemoteTool:
    def __init__(
        self,
        *,
        client: MCPTransportClient,
        mcp_tool_name: str,
        description: str = "",
        input_schema: Optional[Dict[str, Any]] = None,
        call_timeout_seconds: float = 300.0,
    ) -> None:
        self._client = client
        self._mcp_tool_name = str(mcp_tool_name or "").strip()
        self._call_timeout_seconds = call_timeout_seconds
        self.name = f"{normalize_tool_name(client.name)}__{normalize_tool_name(self._mcp_tool_name)}"
        self.description = description or f"MCP tool '{self._mcp_tool_name}' from {client.name}"
        self.input_schema = _ensure_object_schema(dict(input_schema or {}))

    def _metadata(self) -> Dict[str, Any]:
        return {"server": self._client.name, "mcp_tool_name": self._mcp_tool_name}

    async def execute(self, **kwargs: Any) -> ToolResult:
        started = time.perf_counter()
        try:
            res = await asyncio.wait_for(
                self._client.call_tool(self._mcp_tool_name, dict(kwargs or {})),
                timeout=float(self._call_timeout_seconds),
            )
        except asyncio.TimeoutError:
            return ToolResult(
                success=False,
                error=f"timeout after {self._call_timeout_seconds}s during call_tool",
                metadata=self._metadata(),
            )
        except Exception as e:
            logger.debug(f"MCPRemoteTool execute failed ({self.name}): {e}")
            return ToolResult(success=False, error=str(e), metadata=self._metadata())

        elapsed_ms = (time.perf_counter() - started) * 1000
        content = getattr(res, "content", None)
        if bool(getattr(res, "isError", False)):
            return ToolResult(
                success=False,
                error=_flatten_mcp_content(content) or "MCP tool returned an error",
                execution_time_ms=elapsed_ms,
                metadata=self._metadata(),
            )

        structured = getattr(res, "structuredContent", None)
        data: Any = structured if structured is not None else _flatten_mcp_content(content)
        payload_error = _payload_indicates_failure(data)
        if payload_error:
            return ToolResult(success=False, error=payload_error, execution_time_ms=elapsed_ms, metadata=self._metadata())

        return ToolResult(success=True, data=data, execution_time_ms=elapsed_ms, metadata=self._metadata())

    def as_langchain_tool(self) -> StructuredTool:
        async def executor(**kwargs: Any) -> Any:
            result = await self.execute(**kwargs)
            if result.success:
                return result.data
            return f"Error: {result.error}"

        def sync_executor(**kwargs: Any) -> Any:
            raise RuntimeError("Synchronous MCP tool execution is not supported")

        return StructuredTool.from_function(
            func=sync_executor,
            coroutine=executor,
            name=self.name,
            description=self.description,
            args_schema=build_args_model(self.name, self.input_schema),
        )


def remote_tools_for(client: MCPTransportClient, listed: Sequence[Any]) -> List[MCPRemoteTool]:
    out: List[MCPRemoteTool] = []
    for t in listed:
        mcp_tool_name = getattr(t, "name", None) or ""
        if not str(mcp_tool_name).strip():
            continue
        out.append(
            MCPRemoteTool(
                client=client,
                mcp_tool_name=str(mcp_tool_name),
                description=str(getattr(t, "description", "") or ""),
                input_schema=getattr(t, "inputSchema", None) or {},
            )
        )
    return out
