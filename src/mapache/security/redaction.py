"""
Secret redaction utilities.

Applied to provider error text before it is logged or returned to HTTP callers,
so credentials echoed back by an upstream never leave the bridge.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional


_STRONG_PATTERNS: list[re.Pattern[str]] = [
    # Linear personal API keys
    re.compile(r"\blin_api_[A-Za-z0-9]{20,}\b"),
    # Linear OAuth tokens
    re.compile(r"\blin_oauth_[A-Za-z0-9]{20,}\b"),
    # OpenAI
    re.compile(r"\bsk-(?:proj-)?[A-Za-z0-9_-]{20,}\b"),
    # GitHub tokens
    re.compile(r"\bghp_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bgithub_pat_[A-Za-z0-9_]{20,}\b"),
]

_BEARER = re.compile(r"(?i)\bbearer\s+(?P<tok>[A-Za-z0-9_.~+/=-]{12,})")


def contains_secret(text: str) -> bool:
    if not text:
        return False
    if _BEARER.search(text):
        return True
    return any(pat.search(text) for pat in _STRONG_PATTERNS)


def redact_secrets(text: str, known: Optional[Iterable[Optional[str]]] = None) -> str:
    """Mask known credential shapes plus any explicitly supplied secret values."""
    if not text:
        return text

    for secret in known or ():
        if secret and len(secret) >= 8:
            text = text.replace(secret, "[REDACTED]")

    text = _BEARER.sub("Bearer [REDACTED]", text)
    for pat in _STRONG_PATTERNS:
        text = pat.sub("[REDACTED]", text)
    return text
