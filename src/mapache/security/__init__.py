"""Security helpers."""

from mapache.security.redaction import contains_secret, redact_secrets

__all__ = ["contains_secret", "redact_secrets"]
