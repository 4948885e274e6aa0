"""
ConnectionBootstrapper - bring every constructed transport into a connected state.

A failing provider is recorded, never raised: one unreachable endpoint must not
keep the healthy ones (or the rest of the bridge) from starting.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from mapache.mcp.connection import HostedMcpTool, MCPTransportClient, TransportClient
from mapache.mcp.descriptors import TransportKind


class ConnectionStatus(str, Enum):
    PENDING = "pending"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class ConnectionState:
    name: str
    kind: TransportKind
    locator: str
    status: ConnectionStatus = ConnectionStatus.PENDING
    last_error: Optional[str] = None
    tools: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
            "locator": self.locator,
            "status": self.status.value,
            "tools": list(self.tools),
        }
        if self.last_error is not None:
            out["lastError"] = self.last_error
        return out


@dataclass(frozen=True)
class BootstrapTimeouts:
    connect_seconds: float = 30.0
    list_tools_seconds: float = 30.0


@dataclass(frozen=True)
class BootstrapResult:
    hosted: Tuple[HostedMcpTool, ...]
    states: Tuple[ConnectionState, ...]
    clients: Tuple[MCPTransportClient, ...]  # connected only
    discovered: Dict[str, Tuple[Any, ...]] = field(default_factory=dict)


class ConnectionBootstrapper:
    def __init__(self, *, timeouts: Optional[BootstrapTimeouts] = None) -> None:
        self._timeouts = timeouts or BootstrapTimeouts()

    async def _connect_one(self, client: MCPTransportClient, state: ConnectionState) -> Tuple[Any, ...]:
        phase, limit = "connect", float(self._timeouts.connect_seconds)
        try:
            await asyncio.wait_for(client.connect(), timeout=limit)
            phase, limit = "list_tools", float(self._timeouts.list_tools_seconds)
            tools = await asyncio.wait_for(client.list_tools(), timeout=limit)
            state.tools = [str(getattr(t, "name", "") or "") for t in tools if getattr(t, "name", None)]
            state.status = ConnectionStatus.CONNECTED
            logger.info(f"MCP transport {state.name} connected: tools={state.tools}")
            return tuple(tools)
        except asyncio.TimeoutError:
            state.last_error = f"timeout after {limit}s during {phase}"
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                await client.close()
                raise
            # Cancelled from inside the transport: fails this transport only.
            state.last_error = "connect cancelled"
        except Exception as e:
            state.last_error = str(e) or type(e).__name__

        state.status = ConnectionStatus.FAILED
        logger.warning(f"MCP transport {state.name} failed to connect: {state.last_error}")
        try:
            await client.close()
        except Exception as e:
            logger.debug(f"Cleanup after failed connect ({state.name}): {e}")
        return ()

    async def bootstrap(self, transports: Sequence[TransportClient]) -> BootstrapResult:
        """
        Connect every non-hosted transport, one at a time in declaration order.

        Always returns a state for every transport, whatever fails.
        """
        hosted: List[HostedMcpTool] = []
        states: List[ConnectionState] = []
        connected: List[MCPTransportClient] = []
        discovered: Dict[str, Tuple[Any, ...]] = {}

        for transport in transports:
            if isinstance(transport, HostedMcpTool):
                hosted.append(transport)
                continue

            state = ConnectionState(name=transport.name, kind=transport.kind, locator=transport.locator)
            states.append(state)
            tools = await self._connect_one(transport, state)
            if state.status is ConnectionStatus.CONNECTED:
                connected.append(transport)
                discovered[transport.name] = tools

        failed = sum(1 for s in states if s.status is ConnectionStatus.FAILED)
        logger.info(
            f"MCP bootstrap finished: hosted={len(hosted)} connected={len(connected)} failed={failed}"
        )
        return BootstrapResult(
            hosted=tuple(hosted),
            states=tuple(states),
            clients=tuple(connected),
            discovered=discovered,
        )
