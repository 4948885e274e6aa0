"""
Mapache MCP Bridge - one agent over HTTP, many MCP tool-providers.

Connects hosted, streamable-HTTP and child-process MCP servers, exposes them to
a single reasoning agent, and performs verified writes against Linear.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

__version__ = "0.1.0"

if TYPE_CHECKING:
    from mapache.core.app import BridgeApp as BridgeApp

__all__ = ["BridgeApp", "__version__"]


def __getattr__(name: str):
    # Lazy import so `mapache.mcp.*` can be used without pulling in the agent stack.
    if name == "BridgeApp":
        from mapache.core.app import BridgeApp  # local import

        return BridgeApp
    raise AttributeError(name)
