"""Integrations module - external service clients."""

from mapache.integrations.linear import LinearAPIError, LinearClient, LinearConfig, LinearUnavailableError
from mapache.integrations.verifier import (
    MutationRequest,
    MutationVerifier,
    VerificationOutcome,
    VerificationStatus,
)

__all__ = [
    "LinearAPIError",
    "LinearClient",
    "LinearConfig",
    "LinearUnavailableError",
    "MutationRequest",
    "MutationVerifier",
    "VerificationOutcome",
    "VerificationStatus",
]
