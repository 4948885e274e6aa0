import json
from types import SimpleNamespace

import httpx
import pytest

from mapache.agent.runner import RunResult
from mapache.config.settings import BridgeSettings
from mapache.core.app import BridgeApp
from mapache.integrations.linear import LinearClient, LinearConfig
from mapache.integrations.verifier import MutationVerifier
from mapache.mcp.connection import HostedMcpTool, build_transport
from mapache.mcp.descriptors import HostedRemoteDescriptor, TransportKind
from mapache.web.server import WebServer

LINEAR_KEY = "lin_api_testkey1234567890abcdef"


async def _no_sleep(_):
    return None


class FakeSession:
    def __init__(self, descriptor, *, fail=False):
        self.descriptor = descriptor
        self.name = descriptor.name
        self.kind = descriptor.kind
        self.locator = descriptor.locator
        self._fail = fail
        self.closed = False

    async def connect(self):
        if self._fail:
            raise ConnectionError(f"{self.name}: connection refused")

    async def list_tools(self):
        return [SimpleNamespace(name="search", description="", inputSchema={})]

    async def close(self):
        self.closed = True


class FakeAgent:
    def __init__(self, *, error=None):
        self._error = error
        self.prompts = []

    async def run(self, prompt, snapshot):
        self.prompts.append(prompt)
        if self._error:
            raise self._error
        return RunResult(
            output=f"echo: {prompt}",
            tool_events=[{"type": "tool_call", "name": "http_a__search", "args": {}, "id": "1"}],
            citations=[],
        )


class LinearStub:
    def __init__(self, *, create=None, visible=True):
        self.requests = []
        self.comments = []
        self._create = create
        self._visible = visible

    def handler(self, request):
        self.requests.append(request)
        body = json.loads(request.content)
        query, variables = body["query"], body["variables"]
        if "commentCreate" in query:
            if self._create:
                return self._create(request)
            comment_input = variables["input"]
            comment = {"id": comment_input["id"], "body": comment_input["body"], "createdAt": "2026-10-19T00:00:00Z"}
            self.comments.append(comment)
            return httpx.Response(200, json={"data": {"commentCreate": {"success": True, "comment": comment}}})
        nodes = list(self.comments) if self._visible else []
        return httpx.Response(
            200,
            json={"data": {"issue": {"id": variables["id"], "identifier": "MAP-1", "comments": {"nodes": nodes}}}},
        )


def _fake_builder(failing=()):
    def build(descriptor):
        if descriptor.kind is TransportKind.HOSTED_REMOTE:
            return build_transport(descriptor)
        return FakeSession(descriptor, fail=descriptor.name in failing)

    return build


def make_server(
    *,
    linear_key=LINEAR_KEY,
    linear=None,
    agent=None,
    failing=(),
    transport_builder=None,
    **settings_kwargs,
):
    settings = BridgeSettings(linear_api_key=linear_key, **settings_kwargs)
    stub = linear or LinearStub()
    client = LinearClient(LinearConfig(api_key=linear_key), transport=httpx.MockTransport(stub.handler))
    app = BridgeApp(
        settings,
        agent=agent or FakeAgent(),
        linear=client,
        verifier=MutationVerifier(client, attempts=2, sleep=_no_sleep),
        transport_builder=transport_builder or _fake_builder(failing),
    )
    return WebServer(app), stub


def _http(server):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=server.fastapi), base_url="http://test")


@pytest.mark.asyncio
async def test_healthz_ok_even_when_every_provider_is_unreachable():
    server, _ = make_server(
        mcp_streamable="http://127.0.0.1:9/mcp",
        mcp_stdio="definitely-not-a-real-binary-mapache",
        transport_builder=build_transport,
    )
    async with _http(server) as client:
        r = await client.get("/healthz")
    assert r.status_code == 200
    assert r.text == "ok"


@pytest.mark.asyncio
async def test_identity_reports_agent_name():
    server, _ = make_server(agent_name="Test Bridge")
    async with _http(server) as client:
        r = await client.get("/")
    assert r.json() == {"name": "Test Bridge", "ok": True}


@pytest.mark.asyncio
async def test_tools_lists_hosted_and_session_states():
    server, _ = make_server(
        mcp_hosted="docs=https://docs.example/mcp",
        mcp_streamable="https://a.example/mcp,https://b.example/mcp",
        failing=("http-b.example",),
    )
    async with _http(server) as client:
        r = await client.get("/tools")
    body = r.json()
    assert r.status_code == 200
    assert body["hosted"] == [{"name": "docs", "url": "https://docs.example/mcp"}]
    assert body["count"] == 2
    states = {s["name"]: s for s in body["streamable"]}
    assert states["http-a.example"]["status"] == "connected"
    assert states["http-b.example"]["status"] == "failed"
    assert "connection refused" in states["http-b.example"]["lastError"]


@pytest.mark.asyncio
async def test_rebootstrap_replaces_snapshot_and_closes_old_clients():
    server, _ = make_server(mcp_streamable="https://a.example/mcp")
    async with _http(server) as client:
        first = (await client.get("/tools")).json()
        old_clients = server._app.context.registry.clients
        second = (await client.post("/tools/rebootstrap")).json()
    assert first["count"] == second["count"] == 1
    assert first["builtAt"] <= second["builtAt"]
    assert all(c.closed for c in old_clients)
    assert server._app.context.registry.clients[0] is not old_clients[0]


@pytest.mark.asyncio
async def test_run_returns_output_and_trace():
    agent = FakeAgent()
    server, _ = make_server(agent=agent)
    async with _http(server) as client:
        r = await client.post("/run", json={"prompt": "find MAP-1"})
    assert r.status_code == 200
    body = r.json()
    assert body["output"] == "echo: find MAP-1"
    assert body["toolEvents"][0]["name"] == "http_a__search"
    assert body["citations"] == []
    assert agent.prompts == ["find MAP-1"]


@pytest.mark.asyncio
async def test_run_failure_is_500_with_redacted_error():
    server, _ = make_server(
        agent=FakeAgent(error=RuntimeError("upstream said sk-abcdefghijklmnopqrstuvwxyz123456 is invalid")),
    )
    async with _http(server) as client:
        r = await client.post("/run", json={"prompt": "hi"})
    assert r.status_code == 500
    assert "sk-abcdefghijklmnopqrstuvwxyz123456" not in r.json()["error"]
    assert "[REDACTED]" in r.json()["error"]


@pytest.mark.asyncio
async def test_comment_create_verified():
    server, stub = make_server()
    async with _http(server) as client:
        r = await client.post("/linear/commentCreate", json={"issueId": "ISS-1", "body": "hi"})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["comment"]["body"] == "hi"
    assert body["comment"]["id"]
    assert body["comment"]["createdAt"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [{}, {"issueId": "ISS-1"}, {"body": "hi"}, {"issueId": "  ", "body": "hi"}, {"issueId": "ISS-1", "body": 5}],
)
async def test_comment_create_missing_fields_is_400_without_network(payload):
    server, stub = make_server()
    async with _http(server) as client:
        r = await client.post("/linear/commentCreate", json=payload)
    assert r.status_code == 400
    assert stub.requests == []


@pytest.mark.asyncio
async def test_comment_create_without_credential_is_500_without_network():
    server, stub = make_server(linear_key=None)
    async with _http(server) as client:
        r = await client.post("/linear/commentCreate", json={"issueId": "ISS-1", "body": "hi"})
    assert r.status_code == 500
    assert r.json() == {"error": "LINEAR_API_KEY not set"}
    assert stub.requests == []


@pytest.mark.asyncio
async def test_comment_create_unconfirmed_is_502():
    server, _ = make_server(linear=LinearStub(visible=False))
    async with _http(server) as client:
        r = await client.post("/linear/commentCreate", json={"issueId": "ISS-1", "body": "hi"})
    assert r.status_code == 502
    body = r.json()
    assert body["success"] is False
    assert body["status"] == "unconfirmed"
    assert body["verification"]["mutationAccepted"] is True
    assert body["verification"]["entityObserved"] is False


@pytest.mark.asyncio
async def test_comment_create_rejected_is_502():
    stub = LinearStub(
        create=lambda request: httpx.Response(200, json={"data": {"commentCreate": {"success": False, "comment": None}}})
    )
    server, _ = make_server(linear=stub)
    async with _http(server) as client:
        r = await client.post("/linear/commentCreate", json={"issueId": "ISS-1", "body": "hi"})
    assert r.status_code == 502
    assert r.json()["status"] == "rejected"


@pytest.mark.asyncio
async def test_comment_create_transport_error_is_500():
    def create(request):
        raise httpx.ConnectError("connection refused", request=request)

    server, _ = make_server(linear=LinearStub(create=create))
    async with _http(server) as client:
        r = await client.post("/linear/commentCreate", json={"issueId": "ISS-1", "body": "hi"})
    assert r.status_code == 500
    assert r.json()["status"] == "transport_error"


@pytest.mark.asyncio
async def test_comment_create_forwards_idempotency_header():
    key = "3f2b8c1e-5d4a-4f6b-9c7e-2a1b0c9d8e7f"
    server, stub = make_server()
    async with _http(server) as client:
        r = await client.post(
            "/linear/commentCreate",
            json={"issueId": "ISS-1", "body": "hi"},
            headers={"Idempotency-Key": key},
        )
    assert r.status_code == 200
    assert r.json()["comment"]["id"] == key


@pytest.mark.asyncio
async def test_list_comments():
    stub = LinearStub()
    stub.comments.append({"id": "c1", "body": "first", "createdAt": "t1"})
    server, _ = make_server(linear=stub)
    async with _http(server) as client:
        r = await client.get("/linear/comments", params={"issueId": "ISS-1", "last": 5})
        missing = await client.get("/linear/comments")
    assert r.status_code == 200
    assert r.json()["issue"]["identifier"] == "MAP-1"
    assert r.json()["comments"] == [{"id": "c1", "body": "first", "createdAt": "t1"}]
    assert missing.status_code == 400


@pytest.mark.asyncio
async def test_lazy_registry_rebuild_when_all_providers_failed():
    attempts = {"n": 0}

    def build(descriptor):
        attempts["n"] += 1
        return FakeSession(descriptor, fail=attempts["n"] == 1)

    server, _ = make_server(
        mcp_streamable="https://a.example/mcp", transport_builder=build, registry_rebuild_cooldown_seconds=0
    )
    await server._app.startup()
    assert server._app.context.registry.count == 0

    async with _http(server) as client:
        body = (await client.get("/tools")).json()
    assert body["count"] == 1
    assert attempts["n"] == 2


@pytest.mark.asyncio
async def test_hosted_only_registry_counts_declarations():
    server, _ = make_server(mcp_hosted="docs=https://docs.example/mcp")
    async with _http(server) as client:
        body = (await client.get("/tools")).json()
    assert body["count"] == 1
    assert body["streamable"] == []
    assert isinstance(server._app.context.registry.hosted[0], HostedMcpTool)
    assert server._app.context.registry.hosted[0].descriptor == HostedRemoteDescriptor(
        name="docs", url="https://docs.example/mcp"
    )


@pytest.mark.asyncio
async def test_run_keeps_its_sessions_open_across_rebootstrap():
    class RebootstrappingAgent:
        def __init__(self):
            self.app = None
            self.seen_closed = None

        async def run(self, prompt, snapshot):
            await self.app.rebootstrap()
            self.seen_closed = [c.closed for c in snapshot.clients]
            return RunResult(output="ok", tool_events=[], citations=[])

    agent = RebootstrappingAgent()
    server, _ = make_server(agent=agent, mcp_streamable="https://a.example/mcp")
    agent.app = server._app
    await server._app.startup()
    first = server._app.context.registry

    async with _http(server) as client:
        r = await client.post("/run", json={"prompt": "hi"})

    assert r.status_code == 200
    assert agent.seen_closed == [False]
    assert first.clients[0].closed is True
    assert server._app.context.registry is not first
