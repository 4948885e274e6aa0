"""
Tool Registry - read-only view over the last MCP bootstrap.

A snapshot is built whole from one bootstrap result and never mutated after it
is published. Re-bootstrap produces a new snapshot; requests already holding
the old one keep reading it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from mapache.mcp.bootstrap import BootstrapResult, ConnectionState, ConnectionStatus
from mapache.mcp.connection import HostedMcpTool, MCPTransportClient


@dataclass(frozen=True)
class ToolRegistrySnapshot:
    hosted: Tuple[HostedMcpTool, ...] = ()
    states: Tuple[ConnectionState, ...] = ()
    clients: Tuple[MCPTransportClient, ...] = ()
    discovered: Dict[str, Tuple[Any, ...]] = field(default_factory=dict)
    built_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_result(cls, result: BootstrapResult) -> "ToolRegistrySnapshot":
        # States are copied so later mutation of the bootstrapper's records
        # cannot leak into a published snapshot.
        states = tuple(
            ConnectionState(
                name=s.name,
                kind=s.kind,
                locator=s.locator,
                status=s.status,
                last_error=s.last_error,
                tools=list(s.tools),
            )
            for s in result.states
        )
        return cls(
            hosted=tuple(result.hosted),
            states=states,
            clients=tuple(result.clients),
            discovered=dict(result.discovered),
        )

    @property
    def connected(self) -> List[ConnectionState]:
        return [s for s in self.states if s.status is ConnectionStatus.CONNECTED]

    @property
    def failed(self) -> List[ConnectionState]:
        return [s for s in self.states if s.status is ConnectionStatus.FAILED]

    @property
    def count(self) -> int:
        return len(self.hosted) + len(self.connected)

    def get_state(self, name: str) -> Optional[ConnectionState]:
        for s in self.states:
            if s.name == name:
                return s
        return None

    def hosted_declarations(self) -> List[Dict[str, Any]]:
        return [h.to_openai_tool() for h in self.hosted]

    def tools_for(self, client_name: str) -> Tuple[Any, ...]:
        return self.discovered.get(client_name, ())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hosted": [{"name": h.name, "url": h.descriptor.url} for h in self.hosted],
            "streamable": [s.to_dict() for s in self.states],
            "count": self.count,
            "builtAt": self.built_at.isoformat(),
        }
