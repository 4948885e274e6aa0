"""
Transport descriptors - parse MCP provider configuration strings.

Each configured provider becomes one immutable descriptor. The three kinds carry
only the fields valid for them:

- hosted-remote:       label=url       (executed by the reasoning backend)
- streamable-session:  url             (client-initiated HTTP session)
- child-process:       command line    (local subprocess over stdio)
"""

from __future__ import annotations

import itertools
import shlex
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Tuple, Union
from urllib.parse import urlparse

from loguru import logger


class ConfigError(ValueError):
    """Raised for a malformed provider entry. Callers skip the entry."""


class TransportKind(str, Enum):
    HOSTED_REMOTE = "hosted-remote"
    STREAMABLE_SESSION = "streamable-session"
    CHILD_PROCESS = "child-process"


@dataclass(frozen=True)
class HostedRemoteDescriptor:
    name: str
    url: str
    kind: TransportKind = field(default=TransportKind.HOSTED_REMOTE, init=False)

    @property
    def locator(self) -> str:
        return self.url


@dataclass(frozen=True)
class StreamableSessionDescriptor:
    name: str
    url: str
    kind: TransportKind = field(default=TransportKind.STREAMABLE_SESSION, init=False)

    @property
    def locator(self) -> str:
        return self.url


@dataclass(frozen=True)
class ChildProcessDescriptor:
    name: str
    command: str
    args: Tuple[str, ...] = ()
    kind: TransportKind = field(default=TransportKind.CHILD_PROCESS, init=False)

    @property
    def locator(self) -> str:
        return " ".join([self.command, *self.args])


TransportDescriptor = Union[HostedRemoteDescriptor, StreamableSessionDescriptor, ChildProcessDescriptor]

# Process-wide counter; paired with the timestamp so names stay unique even
# when two child processes are declared within the same millisecond.
_stdio_counter = itertools.count(1)


def split_entries(raw: Optional[str]) -> List[str]:
    """Split a comma-separated value, dropping empty and whitespace-only entries."""
    return [s.strip() for s in (raw or "").split(",") if s.strip()]


def parse_hosted_entry(entry: str) -> HostedRemoteDescriptor:
    if "=" not in entry:
        raise ConfigError(f"hosted MCP entry missing '=': {entry!r}")
    label, url = (x.strip() for x in entry.split("=", 1))
    if not label or not url:
        raise ConfigError(f"hosted MCP entry needs both label and url: {entry!r}")
    return HostedRemoteDescriptor(name=label, url=url)


def streamable_name(url: str) -> str:
    host = urlparse(url).hostname
    if not host:
        raise ConfigError(f"streamable MCP url has no host: {url!r}")
    return f"http-{host}"


def parse_streamable_entry(entry: str) -> StreamableSessionDescriptor:
    return StreamableSessionDescriptor(name=streamable_name(entry), url=entry)


def next_stdio_name() -> str:
    return f"stdio-{int(time.time() * 1000)}-{next(_stdio_counter)}"


def parse_stdio_entry(entry: str) -> ChildProcessDescriptor:
    try:
        parts = shlex.split(entry)
    except ValueError as e:
        raise ConfigError(f"unparsable stdio command {entry!r}: {e}") from e
    if not parts:
        raise ConfigError("empty stdio command")
    return ChildProcessDescriptor(name=next_stdio_name(), command=parts[0], args=tuple(parts[1:]))


def _parse_each(raw: Optional[str], parse, what: str) -> List[TransportDescriptor]:
    out: List[TransportDescriptor] = []
    for entry in split_entries(raw):
        try:
            out.append(parse(entry))
        except ConfigError as e:
            logger.warning(f"Skipping {what} MCP entry: {e}")
    return out


def _dedupe_names(descriptors: Iterable[TransportDescriptor]) -> List[TransportDescriptor]:
    seen: dict = {}
    out: List[TransportDescriptor] = []
    for d in descriptors:
        n = seen.get(d.name, 0) + 1
        seen[d.name] = n
        if n > 1:
            renamed = f"{d.name}-{n}"
            logger.debug(f"Duplicate MCP provider name {d.name!r}, using {renamed!r}")
            d = _rename(d, renamed)
        out.append(d)
    return out


def _rename(d: TransportDescriptor, name: str) -> TransportDescriptor:
    if isinstance(d, HostedRemoteDescriptor):
        return HostedRemoteDescriptor(name=name, url=d.url)
    if isinstance(d, StreamableSessionDescriptor):
        return StreamableSessionDescriptor(name=name, url=d.url)
    return ChildProcessDescriptor(name=name, command=d.command, args=d.args)


def parse_descriptors(
    hosted: Optional[str] = None,
    streamable: Optional[str] = None,
    stdio: Optional[str] = None,
) -> List[TransportDescriptor]:
    """
    Parse the three provider lists into descriptors, in declaration order.

    Malformed entries are logged and skipped; they never abort parsing.
    """
    descriptors = (
        _parse_each(hosted, parse_hosted_entry, "hosted")
        + _parse_each(streamable, parse_streamable_entry, "streamable")
        + _parse_each(stdio, parse_stdio_entry, "stdio")
    )
    return _dedupe_names(descriptors)
