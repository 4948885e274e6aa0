"""Core module - application lifecycle and shared context."""

from mapache.core.app import BridgeApp, BridgeContext

__all__ = ["BridgeApp", "BridgeContext"]
