"""
Bridge application - owns the process-wide context.

The context (settings, registry snapshot, agent runner, Linear client and
verifier) is built once at startup and handed to request handlers. A
re-bootstrap builds a complete new snapshot first and then replaces the whole
context in one assignment. Requests that leased the old context keep using it
undisturbed; its MCP sessions are closed when the last such lease ends.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import AsyncIterator, Callable, Dict, Optional

from loguru import logger

from mapache.agent.runner import AgentRunner
from mapache.config.settings import BridgeSettings
from mapache.integrations.linear import LinearClient
from mapache.integrations.verifier import MutationVerifier
from mapache.mcp.bootstrap import BootstrapTimeouts, ConnectionBootstrapper
from mapache.mcp.connection import TransportClient, build_transport
from mapache.mcp.descriptors import TransportDescriptor, parse_descriptors
from mapache.tools.registry import ToolRegistrySnapshot


@dataclass(frozen=True)
class BridgeContext:
    settings: BridgeSettings
    agent: AgentRunner
    linear: LinearClient
    verifier: MutationVerifier
    registry: Optional[ToolRegistrySnapshot] = None


class BridgeApp:
    """
    Lifecycle of the bridge process.

    - startup(): first bootstrap of every configured MCP provider
    - ensure_registry(): lazy rebuild when a request finds no usable snapshot
    - lease(): hold a context (and its MCP sessions) for the length of a request
    - rebootstrap(): rebuild from scratch and publish atomically
    - shutdown(): close MCP sessions and HTTP clients
    """

    def __init__(
        self,
        settings: Optional[BridgeSettings] = None,
        *,
        agent: Optional[AgentRunner] = None,
        linear: Optional[LinearClient] = None,
        verifier: Optional[MutationVerifier] = None,
        bootstrapper: Optional[ConnectionBootstrapper] = None,
        transport_builder: Callable[[TransportDescriptor], TransportClient] = build_transport,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = settings or BridgeSettings.from_env()
        linear = linear or LinearClient.from_settings(settings)
        self._bootstrapper = bootstrapper or ConnectionBootstrapper(
            timeouts=BootstrapTimeouts(
                connect_seconds=settings.mcp_connect_timeout_seconds,
                list_tools_seconds=settings.mcp_list_tools_timeout_seconds,
            )
        )
        self._transport_builder = transport_builder
        self._clock = clock
        self._rebuild_lock = asyncio.Lock()
        self._last_build_at: Optional[float] = None
        # id(snapshot) -> number of requests holding it / snapshots awaiting close
        self._leases: Dict[int, int] = {}
        self._retired: Dict[int, ToolRegistrySnapshot] = {}
        self._context = BridgeContext(
            settings=settings,
            agent=agent or AgentRunner(settings),
            linear=linear,
            verifier=verifier
            or MutationVerifier(
                linear,
                window=settings.verify_window,
                attempts=settings.verify_attempts,
                direct_lookup=settings.verify_direct_lookup,
            ),
        )
        logger.info("Bridge application instance created")

    @property
    def context(self) -> BridgeContext:
        return self._context

    @property
    def settings(self) -> BridgeSettings:
        return self._context.settings

    async def build_registry(self) -> ToolRegistrySnapshot:
        s = self.settings
        descriptors = parse_descriptors(s.mcp_hosted, s.mcp_streamable, s.mcp_stdio)
        transports = [self._transport_builder(d) for d in descriptors]
        result = await self._bootstrapper.bootstrap(transports)
        return ToolRegistrySnapshot.from_result(result)

    async def startup(self) -> None:
        logger.info(f"Starting {self.settings.agent_name}...")
        logger.debug(f"Settings: {self.settings.redacted()}")
        await self.rebootstrap()

    async def rebootstrap(self) -> ToolRegistrySnapshot:
        async with self._rebuild_lock:
            return await self._rebuild_locked()

    async def _rebuild_locked(self) -> ToolRegistrySnapshot:
        old = self._context.registry
        self._last_build_at = self._clock()
        snapshot = await self.build_registry()
        self._context = replace(self._context, registry=snapshot)
        if old is not None:
            await self._retire(old)
        return snapshot

    async def _retire(self, snapshot: ToolRegistrySnapshot) -> None:
        if self._leases.get(id(snapshot)):
            logger.debug(f"Deferring close of {len(snapshot.clients)} MCP session(s) until in-flight requests finish")
            self._retired[id(snapshot)] = snapshot
            return
        await self._close_clients(snapshot)

    @staticmethod
    def needs_rebuild(snapshot: Optional[ToolRegistrySnapshot]) -> bool:
        # Absent, or every declared provider failed on the last attempt.
        if snapshot is None:
            return True
        return snapshot.count == 0 and bool(snapshot.failed)

    def _cooling_down(self, snapshot: Optional[ToolRegistrySnapshot]) -> bool:
        if snapshot is None or self._last_build_at is None:
            return False
        return self._clock() - self._last_build_at < self.settings.registry_rebuild_cooldown_seconds

    async def ensure_registry(self) -> BridgeContext:
        """Return a context whose registry is usable, rebuilding it if needed."""
        ctx = self._context
        if not self.needs_rebuild(ctx.registry) or self._cooling_down(ctx.registry):
            return ctx

        async with self._rebuild_lock:
            # Another request may have rebuilt while we waited.
            if self._context.registry is ctx.registry:
                logger.info("Tool registry absent or empty, re-bootstrapping")
                await self._rebuild_locked()
            return self._context

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[BridgeContext]:
        """Yield a usable context whose MCP sessions stay open until the block exits."""
        ctx = await self.ensure_registry()
        key = id(ctx.registry)
        self._leases[key] = self._leases.get(key, 0) + 1
        try:
            yield ctx
        finally:
            remaining = self._leases[key] - 1
            if remaining:
                self._leases[key] = remaining
            else:
                del self._leases[key]
                retired = self._retired.pop(key, None)
                if retired is not None:
                    await self._close_clients(retired)

    async def _close_clients(self, snapshot: ToolRegistrySnapshot) -> None:
        for client in snapshot.clients:
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Failed to close MCP transport {client.name}: {e}")

    async def shutdown(self) -> None:
        logger.info("Shutting down bridge...")
        for snapshot in list(self._retired.values()):
            await self._close_clients(snapshot)
        self._retired.clear()
        snapshot = self._context.registry
        if snapshot is not None:
            await self._close_clients(snapshot)
        await self._context.linear.close()
        logger.info("Bridge shutdown complete")
