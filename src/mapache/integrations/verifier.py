"""
MutationVerifier - create a comment, then prove it is readable.

The provider's success flag may only mean the write reached an intake queue, so
a write is reported as successful only after a read-back of the parent issue
shows the new comment.

    Submitting -> Submitted -> Verifying -> Verified | Unconfirmed
         |             |
         v             v
    TransportError  RejectedByProvider
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from loguru import logger
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_exponential

from mapache.integrations.linear import LinearAPIError, LinearClient, LinearUnavailableError

# Fixed namespace: the same logical request must always map to the same key.
IDEMPOTENCY_NAMESPACE = uuid.UUID("6f1c7d1e-3b8a-5c59-9d0e-4a2f8b6c1e77")


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    UNCONFIRMED = "unconfirmed"
    REJECTED = "rejected"
    TRANSPORT_ERROR = "transport_error"


class MutationError(RuntimeError):
    http_status = 500

    def __init__(self, message: str, outcome: Optional["VerificationOutcome"] = None):
        super().__init__(message)
        self.outcome = outcome


class MutationTransportError(MutationError):
    """The write call itself failed; nothing was verified."""

    http_status = 500


class MutationRejected(MutationError):
    """The provider explicitly reported failure."""

    http_status = 502


class MutationUnconfirmed(MutationError):
    """The provider reported success but the read-back did not show the entity."""

    http_status = 502


@dataclass(frozen=True)
class MutationRequest:
    issue_id: str
    body: str
    idempotency_key: Optional[str] = None


@dataclass
class VerificationOutcome:
    status: VerificationStatus
    mutation_accepted: bool = False
    entity_observed: bool = False
    entity: Optional[Dict[str, Any]] = None
    sample: List[Dict[str, Any]] = field(default_factory=list)
    idempotency_key: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.mutation_accepted and self.entity_observed

    def raise_for_status(self) -> None:
        if self.success:
            return
        if self.status is VerificationStatus.TRANSPORT_ERROR:
            raise MutationTransportError(self.error or "mutation transport failed", self)
        if self.status is VerificationStatus.REJECTED:
            raise MutationRejected(self.error or "mutation rejected by provider", self)
        raise MutationUnconfirmed(self.error or "mutation not observed in read-back", self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "mutationAccepted": self.mutation_accepted,
            "entityObserved": self.entity_observed,
            "entity": self.entity,
            "sample": self.sample,
            "idempotencyKey": self.idempotency_key,
            "error": self.error,
            "attempts": self.attempts,
        }


def derive_idempotency_key(issue_id: str, body: str, key: Optional[str] = None) -> str:
    """
    Return the entity id to send with the mutation.

    A caller key that already is a UUID is forwarded exactly as given. Any other caller
    key, or no key at all, is mapped deterministically from the request so that
    retries of the same logical write converge on the same id.
    """
    key = (key or "").strip()
    if key:
        try:
            uuid.UUID(key)
            return key
        except ValueError:
            return str(uuid.uuid5(IDEMPOTENCY_NAMESPACE, f"{issue_id}\n{key}"))
    return str(uuid.uuid5(IDEMPOTENCY_NAMESPACE, f"{issue_id}\n{body}"))


def _same_id(a: Any, b: Any) -> bool:
    # Linear echoes ids in canonical form; a caller UUID may be upper-case or braced.
    try:
        return uuid.UUID(str(a)) == uuid.UUID(str(b))
    except ValueError:
        return a == b


def _sample_entry(node: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": node.get("id"),
        "createdAt": node.get("createdAt"),
        "body": str(node.get("body") or "")[:80],
    }


class MutationVerifier:
    def __init__(
        self,
        client: LinearClient,
        *,
        window: int = 20,
        attempts: int = 3,
        direct_lookup: bool = False,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._window = max(1, int(window))
        self._attempts = max(1, int(attempts))
        self._direct_lookup = direct_lookup
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep

    async def _read_back(self, issue_id: str, entity_id: str, outcome: VerificationOutcome) -> Optional[Dict[str, Any]]:
        outcome.attempts += 1
        try:
            res = await self._client.issue_comments(issue_id, last=self._window)
        except (LinearAPIError, httpx.HTTPError, ValueError) as e:
            outcome.error = f"read-back failed: {e}"
            logger.warning(f"Verify read-back failed (issue={issue_id}, attempt={outcome.attempts}): {e}")
            return None

        nodes = res.get("comments") or []
        outcome.sample = [_sample_entry(n) for n in nodes]
        for node in nodes:
            if _same_id(node.get("id"), entity_id):
                return node
        return None

    async def _verify(self, issue_id: str, entity_id: str, outcome: VerificationOutcome) -> Optional[Dict[str, Any]]:
        retrying = AsyncRetrying(
            retry=retry_if_result(lambda found: found is None),
            wait=wait_exponential(multiplier=self._backoff_seconds, min=self._backoff_seconds, max=8),
            stop=stop_after_attempt(self._attempts),
            sleep=self._sleep,
            retry_error_callback=lambda state: state.outcome.result(),
        )
        found = await retrying(self._read_back, issue_id, entity_id, outcome)
        if found is not None or not self._direct_lookup:
            return found

        try:
            return await self._client.comment_by_id(entity_id)
        except (LinearAPIError, httpx.HTTPError, ValueError) as e:
            logger.debug(f"Direct comment lookup failed ({entity_id}): {e}")
            return None

    async def _find_replayed(self, issue_id: str, entity_id: str, outcome: VerificationOutcome) -> Optional[Dict[str, Any]]:
        """Look for a comment that an earlier submission with the same id already created."""
        found = await self._read_back(issue_id, entity_id, outcome)
        if found is not None:
            return found
        try:
            return await self._client.comment_by_id(entity_id)
        except (LinearAPIError, httpx.HTTPError, ValueError) as e:
            logger.debug(f"Replay lookup found nothing ({entity_id}): {e}")
            return None

    @staticmethod
    def _mark_verified(outcome: VerificationOutcome, comment: Dict[str, Any], found: Dict[str, Any]) -> VerificationOutcome:
        outcome.status = VerificationStatus.VERIFIED
        outcome.mutation_accepted = True
        outcome.entity_observed = True
        outcome.entity = {**comment, **found}
        outcome.error = None
        return outcome

    async def mutate_and_verify(self, request: MutationRequest) -> VerificationOutcome:
        """Submit the comment and return the verified outcome. Never raises for provider failures."""
        key = derive_idempotency_key(request.issue_id, request.body, request.idempotency_key)

        # Submitting
        try:
            result = await self._client.comment_create(request.issue_id, request.body, comment_id=key)
        except LinearUnavailableError:
            raise
        except LinearAPIError as e:
            status = e.status_code or 0
            if not e.errors or status in (401, 403) or status >= 500:
                logger.error(f"commentCreate transport failure (issue={request.issue_id}): {e}")
                return VerificationOutcome(
                    status=VerificationStatus.TRANSPORT_ERROR, idempotency_key=key, error=str(e)
                )

            # A retry of a write that already landed is refused as a duplicate id.
            outcome = VerificationOutcome(status=VerificationStatus.REJECTED, idempotency_key=key)
            found = await self._find_replayed(request.issue_id, key, outcome)
            if found is not None:
                logger.info(f"commentCreate replay of existing comment {key} on issue {request.issue_id}")
                return self._mark_verified(outcome, {}, found)
            logger.warning(f"commentCreate rejected by provider (issue={request.issue_id}): {e}")
            outcome.error = str(e)
            return outcome
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"commentCreate transport failure (issue={request.issue_id}): {e}")
            return VerificationOutcome(
                status=VerificationStatus.TRANSPORT_ERROR, idempotency_key=key, error=str(e)
            )

        # Submitted
        comment = result.get("comment") or {}
        if not result.get("success"):
            logger.warning(f"commentCreate rejected by provider (issue={request.issue_id})")
            return VerificationOutcome(
                status=VerificationStatus.REJECTED,
                entity=comment or None,
                idempotency_key=key,
                error="provider reported success=false",
            )

        # Verifying
        entity_id = str(comment.get("id") or key)
        outcome = VerificationOutcome(
            status=VerificationStatus.UNCONFIRMED,
            mutation_accepted=True,
            entity=comment or {"id": entity_id},
            idempotency_key=key,
        )
        found = await self._verify(request.issue_id, entity_id, outcome)
        if found is None:
            outcome.error = outcome.error or (
                f"comment {entity_id} not found in the last {self._window} comments "
                f"after {outcome.attempts} read-back attempt(s)"
            )
            logger.warning(f"Unconfirmed write (issue={request.issue_id}, comment={entity_id})")
            return outcome

        self._mark_verified(outcome, comment, found)
        logger.info(f"Verified comment {entity_id} on issue {request.issue_id}")
        return outcome
