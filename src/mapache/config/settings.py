"""
Bridge Settings - the explicit configuration object.

Every option is read once from the environment (a local `.env` file is loaded
first when present) into an immutable settings object. Missing values fall back
to the documented defaults below; nothing else in the bridge reads the
environment directly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from loguru import logger

DEFAULT_AGENT_NAME = "Mapache MCP Bridge"
DEFAULT_AGENT_INSTRUCTIONS = "Use MCP tools when available. Prefer precise tool calls over guesses."
DEFAULT_LINEAR_API_URL = "https://api.linear.app/graphql"


def _to_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_origins(value: str) -> Tuple[str, ...]:
    return tuple(s.strip() for s in value.split(",") if s.strip())


@dataclass(frozen=True)
class BridgeSettings:
    """
    Bridge configuration.

    Attributes:
        openai_api_key: Credential for the reasoning engine (OPENAI_API_KEY).
        openai_model: Model id used by the agent (OPENAI_MODEL).
        mcp_hosted: Comma-separated ``label=url`` list (MCP_HOSTED_LABELS_URLS).
        mcp_streamable: Comma-separated URL list (MCP_STREAMABLE_URLS).
        mcp_stdio: Comma-separated command-line list (MCP_STDIO_COMMANDS).
        agent_name: Display name (AGENT_NAME).
        agent_instructions: System instructions (AGENT_INSTRUCTIONS).
        linear_api_key: Issue-tracker credential (LINEAR_API_KEY).
        linear_api_url: GraphQL endpoint (LINEAR_API_URL).
        linear_auth_header: Header carrying the credential (LINEAR_AUTH_HEADER).
        linear_auth_scheme: Optional prefix such as ``Bearer`` (LINEAR_AUTH_SCHEME).
        host / port: Listening address (HOST, PORT).
    """

    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4.1-mini"
    mcp_hosted: str = ""
    mcp_streamable: str = ""
    mcp_stdio: str = ""
    agent_name: str = DEFAULT_AGENT_NAME
    agent_instructions: str = DEFAULT_AGENT_INSTRUCTIONS
    agent_recursion_limit: int = 25
    linear_api_key: Optional[str] = None
    linear_api_url: str = DEFAULT_LINEAR_API_URL
    linear_auth_header: str = "Authorization"
    linear_auth_scheme: str = ""
    linear_timeout_seconds: float = 30.0
    host: str = "0.0.0.0"
    port: int = 3000
    mcp_connect_timeout_seconds: float = 30.0
    mcp_list_tools_timeout_seconds: float = 30.0
    registry_rebuild_cooldown_seconds: float = 30.0
    verify_window: int = 20
    verify_attempts: int = 3
    verify_direct_lookup: bool = False
    cors_origins: Tuple[str, ...] = ("*",)
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, *, load_dotenv_file: bool = True) -> "BridgeSettings":
        if environ is None:
            if load_dotenv_file:
                from dotenv import load_dotenv

                load_dotenv()
            environ = os.environ

        values: Dict[str, Any] = {}
        for env_var, (attr, converter) in ENV_MAPPINGS.items():
            raw = environ.get(env_var)
            if raw is None or not str(raw).strip():
                continue
            try:
                values[attr] = converter(str(raw).strip())
            except ValueError as e:
                logger.warning(f"Ignoring invalid {env_var}={raw!r}: {e}")
        return cls(**values)

    def redacted(self) -> Dict[str, Any]:
        """Settings as a dict with credentials masked, for logging."""
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name.endswith("api_key"):
                value = "set" if value else "not set"
            out[f.name] = value
        return out


ENV_MAPPINGS: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "OPENAI_API_KEY": ("openai_api_key", str),
    "OPENAI_MODEL": ("openai_model", str),
    "MCP_HOSTED_LABELS_URLS": ("mcp_hosted", str),
    "MCP_STREAMABLE_URLS": ("mcp_streamable", str),
    "MCP_STDIO_COMMANDS": ("mcp_stdio", str),
    "AGENT_NAME": ("agent_name", str),
    "AGENT_INSTRUCTIONS": ("agent_instructions", str),
    "AGENT_RECURSION_LIMIT": ("agent_recursion_limit", int),
    "LINEAR_API_KEY": ("linear_api_key", str),
    "LINEAR_API_URL": ("linear_api_url", str),
    "LINEAR_AUTH_HEADER": ("linear_auth_header", str),
    "LINEAR_AUTH_SCHEME": ("linear_auth_scheme", str),
    "LINEAR_TIMEOUT_SECONDS": ("linear_timeout_seconds", float),
    "HOST": ("host", str),
    "PORT": ("port", int),
    "MCP_CONNECT_TIMEOUT_SECONDS": ("mcp_connect_timeout_seconds", float),
    "MCP_LIST_TOOLS_TIMEOUT_SECONDS": ("mcp_list_tools_timeout_seconds", float),
    "REGISTRY_REBUILD_COOLDOWN_SECONDS": ("registry_rebuild_cooldown_seconds", float),
    "VERIFY_WINDOW": ("verify_window", int),
    "VERIFY_ATTEMPTS": ("verify_attempts", int),
    "VERIFY_DIRECT_LOOKUP": ("verify_direct_lookup", _to_bool),
    "CORS_ORIGINS": ("cors_origins", _to_origins),
    "LOG_LEVEL": ("log_level", str),
    "LOG_FILE": ("log_file", str),
}
