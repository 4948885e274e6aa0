"""
MCP transport clients - one variant per transport kind.

Construction never performs I/O. `connect()` opens the MCP session (spawning
the child process or opening the HTTP session), `close()` tears it down.
Hosted-remote providers are declarations only: the reasoning backend calls
them itself, so they have no connect/close.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from loguru import logger
from mcp import ClientSession, StdioServerParameters, stdio_client
from mcp.client.streamable_http import streamable_http_client

from mapache.mcp.descriptors import (
    ChildProcessDescriptor,
    HostedRemoteDescriptor,
    StreamableSessionDescriptor,
    TransportDescriptor,
    TransportKind,
)


class TransportConnectionError(ConnectionError):
    """A transport could not be brought into the connected state."""


@dataclass(frozen=True)
class HostedMcpTool:
    """A hosted-remote provider, declared to the reasoning backend as-is."""

    descriptor: HostedRemoteDescriptor
    require_approval: str = "never"

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def kind(self) -> TransportKind:
        return TransportKind.HOSTED_REMOTE

    def to_openai_tool(self) -> Dict[str, Any]:
        return {
            "type": "mcp",
            "server_label": self.descriptor.name,
            "server_url": self.descriptor.url,
            "require_approval": self.require_approval,
        }


class MCPTransportClient(ABC):
    """
    Session lifecycle shared by the connectable transports.

    The MCP client contexts are entered and exited inside one owner task,
    since anyio cancel scopes may not be exited from a different task than the
    one that entered them.
    """

    def __init__(self, descriptor: TransportDescriptor, *, close_timeout_seconds: float = 5.0) -> None:
        self.descriptor = descriptor
        self._session: Optional[ClientSession] = None
        self._owner: Optional[asyncio.Task] = None
        self._closing: Optional[asyncio.Event] = None
        self._lock = asyncio.Lock()
        self._close_timeout_seconds = close_timeout_seconds

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def kind(self) -> TransportKind:
        return self.descriptor.kind

    @property
    def locator(self) -> str:
        return self.descriptor.locator

    @property
    def is_connected(self) -> bool:
        return self._session is not None

    @abstractmethod
    def _open_streams(self) -> Any:
        """Return an async context manager yielding (read_stream, write_stream)."""

    async def _hold_session(self, ready: asyncio.Future) -> None:
        try:
            async with AsyncExitStack() as stack:
                read_stream, write_stream = await stack.enter_async_context(self._open_streams())
                session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
                await session.initialize()
                self._session = session
                if not ready.done():
                    ready.set_result(None)
                await self._closing.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            else:
                logger.debug(f"MCP session {self.name} ended with error: {e}")
        finally:
            self._session = None

    async def connect(self) -> None:
        if self.is_connected:
            return

        logger.info(f"Connecting MCP transport {self.name} ({self.kind.value}): {self.locator}")
        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        self._closing = asyncio.Event()
        self._owner = asyncio.create_task(self._hold_session(ready), name=f"mcp-session:{self.name}")
        try:
            await ready
        except asyncio.CancelledError:
            await self._stop_owner()
            raise
        except Exception as e:
            await self._stop_owner()
            raise TransportConnectionError(f"{self.name}: {_describe(e)}") from e

    async def _stop_owner(self) -> None:
        owner = self._owner
        self._owner = None
        if owner is None or owner.done():
            return
        owner.cancel()
        try:
            await owner
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"MCP session {self.name} teardown error: {e}")

    async def close(self) -> None:
        owner = self._owner
        if owner is None:
            return
        if self._closing is not None:
            self._closing.set()
        try:
            await asyncio.wait_for(asyncio.shield(owner), timeout=self._close_timeout_seconds)
        except asyncio.TimeoutError:
            logger.debug(f"MCP close timed out for {self.name}, cancelling")
        except Exception as e:
            logger.debug(f"MCP close failed for {self.name}: {e}")
        await self._stop_owner()
        logger.info(f"Closed MCP transport {self.name}")

    async def list_tools(self) -> List[Any]:
        async with self._lock:
            if not self._session:
                raise RuntimeError(f"MCP session {self.name} not connected")
            res = await self._session.list_tools()
            return list(getattr(res, "tools", None) or [])

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        async with self._lock:
            if not self._session:
                raise RuntimeError(f"MCP session {self.name} not connected")
            return await self._session.call_tool(name=name, arguments=arguments or {})


class StreamableSessionClient(MCPTransportClient):
    descriptor: StreamableSessionDescriptor

    @asynccontextmanager
    async def _open_streams(self) -> AsyncIterator[Tuple[Any, Any]]:
        async with streamable_http_client(self.descriptor.url) as (read_stream, write_stream, _session_id):
            yield read_stream, write_stream


class ChildProcessClient(MCPTransportClient):
    descriptor: ChildProcessDescriptor

    def _open_streams(self) -> Any:
        params = StdioServerParameters(
            command=self.descriptor.command,
            args=list(self.descriptor.args),
        )
        return stdio_client(params)


TransportClient = Union[HostedMcpTool, StreamableSessionClient, ChildProcessClient]


def build_transport(descriptor: TransportDescriptor) -> TransportClient:
    """Construct the client for a descriptor. Pure object creation, no I/O."""
    if isinstance(descriptor, HostedRemoteDescriptor):
        return HostedMcpTool(descriptor)
    if isinstance(descriptor, StreamableSessionDescriptor):
        return StreamableSessionClient(descriptor)
    if isinstance(descriptor, ChildProcessDescriptor):
        return ChildProcessClient(descriptor)
    raise TypeError(f"Unsupported transport descriptor: {descriptor!r}")


def _describe(e: BaseException) -> str:
    # anyio task groups wrap the real failure in an ExceptionGroup.
    inner = getattr(e, "exceptions", None)
    if inner:
        return "; ".join(_describe(x) for x in inner)
    return str(e) or type(e).__name__
