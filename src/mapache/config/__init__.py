"""Configuration module."""

from mapache.config.settings import BridgeSettings

__all__ = ["BridgeSettings"]
