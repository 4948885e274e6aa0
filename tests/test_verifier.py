import json
import uuid

import httpx
import pytest

from mapache.integrations.linear import LinearClient, LinearConfig, LinearUnavailableError
from mapache.integrations.verifier import (
    MutationRejected,
    MutationRequest,
    MutationTransportError,
    MutationUnconfirmed,
    MutationVerifier,
    VerificationStatus,
    derive_idempotency_key,
)


async def _no_sleep(_):
    return None


class FakeLinear:
    """In-memory stand-in for the Linear GraphQL endpoint."""

    def __init__(self, *, create=None, visible_after=1, lookup=False, reject_duplicates=False):
        self.comments = []
        self.created_inputs = []
        self.reads = 0
        self.lookups = 0
        self._create = create
        self._visible_after = visible_after
        self._lookup = lookup
        self._reject_duplicates = reject_duplicates

    def handler(self, request):
        body = json.loads(request.content)
        query, variables = body["query"], body["variables"]
        if "commentCreate" in query:
            comment_input = variables["input"]
            self.created_inputs.append(comment_input)
            if self._create is not None:
                return self._create(request, comment_input)
            if self._reject_duplicates and any(c["id"] == comment_input["id"] for c in self.comments):
                return httpx.Response(200, json={"errors": [{"message": "Entity already exists"}]})
            comment = {"id": comment_input["id"], "body": comment_input["body"], "createdAt": "2026-10-19T00:00:00Z"}
            self.comments.append(comment)
            return httpx.Response(200, json={"data": {"commentCreate": {"success": True, "comment": comment}}})
        if "IssueComments" in query:
            self.reads += 1
            nodes = list(self.comments) if self.reads >= self._visible_after else []
            return httpx.Response(
                200,
                json={"data": {"issue": {"id": variables["id"], "comments": {"nodes": nodes[-variables["last"]:]}}}},
            )
        if "query Comment" in query:
            self.lookups += 1
            found = next((c for c in self.comments if c["id"] == variables["id"]), None) if self._lookup else None
            return httpx.Response(200, json={"data": {"comment": found}})
        raise AssertionError(f"unexpected query: {query}")

    def client(self, api_key="lin_api_testkey1234567890abcdef"):
        return LinearClient(LinearConfig(api_key=api_key), transport=httpx.MockTransport(self.handler))


def _verifier(fake, **kwargs):
    kwargs.setdefault("sleep", _no_sleep)
    return MutationVerifier(fake.client(), **kwargs)


@pytest.mark.asyncio
async def test_verified_write_reports_success_with_entity():
    fake = FakeLinear()
    outcome = await _verifier(fake).mutate_and_verify(MutationRequest(issue_id="ISS-1", body="hi"))

    assert outcome.status is VerificationStatus.VERIFIED
    assert outcome.success is True
    assert outcome.entity["body"] == "hi"
    assert outcome.entity["createdAt"]
    assert outcome.entity["id"] == fake.created_inputs[0]["id"]
    outcome.raise_for_status()


@pytest.mark.asyncio
async def test_replica_lag_is_absorbed_by_retries():
    fake = FakeLinear(visible_after=3)
    outcome = await _verifier(fake, attempts=3).mutate_and_verify(MutationRequest(issue_id="ISS-1", body="hi"))
    assert outcome.success is True
    assert outcome.attempts == 3


@pytest.mark.asyncio
async def test_accepted_but_never_visible_is_unconfirmed_not_success():
    fake = FakeLinear(visible_after=99)
    fake.comments.append({"id": "other", "body": "older comment", "createdAt": "t0"})
    outcome = await _verifier(fake, attempts=2).mutate_and_verify(MutationRequest(issue_id="ISS-1", body="hi"))

    assert outcome.status is VerificationStatus.UNCONFIRMED
    assert outcome.mutation_accepted is True
    assert outcome.entity_observed is False
    assert outcome.success is False
    assert outcome.attempts == 2
    assert "not found" in outcome.error
    with pytest.raises(MutationUnconfirmed) as ei:
        outcome.raise_for_status()
    assert ei.value.http_status == 502


@pytest.mark.asyncio
async def test_unconfirmed_outcome_carries_sample():
    fake = FakeLinear()

    def create(request, comment_input):
        # Accepted, but the comment lands nowhere readable.
        comment = {"id": comment_input["id"], "body": comment_input["body"]}
        return httpx.Response(200, json={"data": {"commentCreate": {"success": True, "comment": comment}}})

    fake._create = create
    fake.comments.append({"id": "c-old", "body": "x" * 200, "createdAt": "t0"})
    outcome = await _verifier(fake, attempts=1).mutate_and_verify(MutationRequest(issue_id="ISS-1", body="hi"))

    assert outcome.status is VerificationStatus.UNCONFIRMED
    assert outcome.sample == [{"id": "c-old", "createdAt": "t0", "body": "x" * 80}]


@pytest.mark.asyncio
async def test_direct_lookup_finds_comment_outside_window():
    fake = FakeLinear(visible_after=99, lookup=True)
    outcome = await _verifier(fake, attempts=1, direct_lookup=True).mutate_and_verify(
        MutationRequest(issue_id="ISS-1", body="hi")
    )
    assert outcome.success is True
    assert fake.lookups == 1


@pytest.mark.asyncio
async def test_provider_success_false_is_rejected_without_read_back():
    fake = FakeLinear(
        create=lambda request, _: httpx.Response(200, json={"data": {"commentCreate": {"success": False, "comment": None}}})
    )
    outcome = await _verifier(fake).mutate_and_verify(MutationRequest(issue_id="ISS-1", body="hi"))

    assert outcome.status is VerificationStatus.REJECTED
    assert outcome.success is False
    assert fake.reads == 0
    with pytest.raises(MutationRejected):
        outcome.raise_for_status()


@pytest.mark.asyncio
async def test_graphql_errors_on_mutation_are_rejected():
    fake = FakeLinear(
        create=lambda request, _: httpx.Response(200, json={"errors": [{"message": "Entity not found: Issue"}]})
    )
    outcome = await _verifier(fake).mutate_and_verify(MutationRequest(issue_id="ISS-404", body="hi"))
    assert outcome.status is VerificationStatus.REJECTED
    assert outcome.success is False
    assert "Entity not found" in outcome.error
    # Checked once for an earlier landing of the same id, never retried.
    assert fake.reads == 1
    assert fake.lookups == 1


@pytest.mark.asyncio
async def test_network_failure_is_transport_error_without_read_back():
    def create(request, _):
        raise httpx.ConnectError("connection refused", request=request)

    fake = FakeLinear(create=create)
    outcome = await _verifier(fake).mutate_and_verify(MutationRequest(issue_id="ISS-1", body="hi"))

    assert outcome.status is VerificationStatus.TRANSPORT_ERROR
    assert outcome.mutation_accepted is False
    assert fake.reads == 0
    with pytest.raises(MutationTransportError) as ei:
        outcome.raise_for_status()
    assert ei.value.http_status == 500


@pytest.mark.asyncio
async def test_auth_failure_is_transport_error():
    fake = FakeLinear(
        create=lambda request, _: httpx.Response(401, json={"errors": [{"message": "Authentication required"}]})
    )
    outcome = await _verifier(fake).mutate_and_verify(MutationRequest(issue_id="ISS-1", body="hi"))
    assert outcome.status is VerificationStatus.TRANSPORT_ERROR


@pytest.mark.asyncio
async def test_missing_credential_propagates():
    fake = FakeLinear()
    verifier = MutationVerifier(fake.client(api_key=None), sleep=_no_sleep)
    with pytest.raises(LinearUnavailableError):
        await verifier.mutate_and_verify(MutationRequest(issue_id="ISS-1", body="hi"))
    assert fake.created_inputs == []


@pytest.mark.asyncio
async def test_same_logical_write_sends_same_idempotency_id():
    fake = FakeLinear()
    verifier = _verifier(fake)
    await verifier.mutate_and_verify(MutationRequest(issue_id="ISS-1", body="hi", idempotency_key="retry-42"))
    await verifier.mutate_and_verify(MutationRequest(issue_id="ISS-1", body="hi", idempotency_key="retry-42"))
    ids = [c["id"] for c in fake.created_inputs]
    assert ids[0] == ids[1]


def test_idempotency_key_derivation():
    caller = str(uuid.uuid4())
    assert derive_idempotency_key("ISS-1", "hi", caller) == caller
    assert derive_idempotency_key("ISS-1", "hi") == derive_idempotency_key("ISS-1", "hi")
    assert derive_idempotency_key("ISS-1", "hi") != derive_idempotency_key("ISS-2", "hi")
    assert derive_idempotency_key("ISS-1", "hi", "k") == derive_idempotency_key("ISS-1", "other body", "k")
    # Always a valid UUID, since Linear only accepts UUID entity ids.
    uuid.UUID(derive_idempotency_key("ISS-1", "hi", "not-a-uuid"))


def test_caller_uuid_is_forwarded_exactly_as_given():
    upper = "3F2B8C1E-5D4A-4F6B-9C7E-2A1B0C9D8E7F"
    braced = "{3f2b8c1e-5d4a-4f6b-9c7e-2a1b0c9d8e7f}"
    assert derive_idempotency_key("ISS-1", "hi", upper) == upper
    assert derive_idempotency_key("ISS-1", "hi", braced) == braced


@pytest.mark.asyncio
async def test_retry_of_landed_write_is_verified_when_provider_refuses_duplicate_id():
    fake = FakeLinear(reject_duplicates=True)
    verifier = _verifier(fake)
    request = MutationRequest(issue_id="ISS-1", body="hi", idempotency_key="retry-1")

    first = await verifier.mutate_and_verify(request)
    second = await verifier.mutate_and_verify(request)

    assert first.status is VerificationStatus.VERIFIED
    assert second.status is VerificationStatus.VERIFIED
    assert second.success is True
    assert second.mutation_accepted is True
    assert second.entity["id"] == first.entity["id"]
    assert second.entity["body"] == "hi"
    assert len(fake.comments) == 1
    second.raise_for_status()


@pytest.mark.asyncio
async def test_duplicate_refusal_found_by_direct_lookup_outside_window():
    fake = FakeLinear(reject_duplicates=True, lookup=True, visible_after=99)
    key = str(uuid.uuid4())
    fake.comments.append({"id": key, "body": "hi", "createdAt": "t0"})

    outcome = await _verifier(fake).mutate_and_verify(MutationRequest(issue_id="ISS-1", body="hi", idempotency_key=key))

    assert outcome.status is VerificationStatus.VERIFIED
    assert fake.lookups == 1


@pytest.mark.asyncio
async def test_upper_case_caller_uuid_matches_canonical_read_back():
    upper = "3F2B8C1E-5D4A-4F6B-9C7E-2A1B0C9D8E7F"

    def create(request, comment_input):
        assert comment_input["id"] == upper
        comment = {"id": upper.lower(), "body": comment_input["body"], "createdAt": "t1"}
        fake.comments.append(comment)
        return httpx.Response(200, json={"data": {"commentCreate": {"success": True, "comment": None}}})

    fake = FakeLinear(create=create)
    outcome = await _verifier(fake).mutate_and_verify(MutationRequest(issue_id="ISS-1", body="hi", idempotency_key=upper))
    assert outcome.status is VerificationStatus.VERIFIED


@pytest.mark.asyncio
async def test_server_error_with_graphql_errors_is_transport_error():
    fake = FakeLinear(
        create=lambda request, _: httpx.Response(503, json={"errors": [{"message": "Service unavailable"}]})
    )
    outcome = await _verifier(fake).mutate_and_verify(MutationRequest(issue_id="ISS-1", body="hi"))

    assert outcome.status is VerificationStatus.TRANSPORT_ERROR
    assert fake.reads == 0
    with pytest.raises(MutationTransportError) as ei:
        outcome.raise_for_status()
    assert ei.value.http_status == 500
