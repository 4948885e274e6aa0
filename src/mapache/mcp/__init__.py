"""
MCP runtime - describe, build and connect the configured tool-providers.

Descriptors come from configuration strings, transports are built from
descriptors without I/O, and the bootstrapper connects them one by one.
"""

from __future__ import annotations

from mapache.mcp.bootstrap import (
    BootstrapResult,
    BootstrapTimeouts,
    ConnectionBootstrapper,
    ConnectionState,
    ConnectionStatus,
)
from mapache.mcp.connection import (
    ChildProcessClient,
    HostedMcpTool,
    StreamableSessionClient,
    TransportConnectionError,
    build_transport,
)
from mapache.mcp.descriptors import (
    ChildProcessDescriptor,
    ConfigError,
    HostedRemoteDescriptor,
    StreamableSessionDescriptor,
    TransportKind,
    parse_descriptors,
)

__all__ = [
    "BootstrapResult",
    "BootstrapTimeouts",
    "ChildProcessClient",
    "ChildProcessDescriptor",
    "ConfigError",
    "ConnectionBootstrapper",
    "ConnectionState",
    "ConnectionStatus",
    "HostedMcpTool",
    "HostedRemoteDescriptor",
    "StreamableSessionClient",
    "StreamableSessionDescriptor",
    "TransportConnectionError",
    "TransportKind",
    "build_transport",
    "parse_descriptors",
]
