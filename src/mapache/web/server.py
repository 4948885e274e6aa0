"""
Web Server - FastAPI HTTP surface of the bridge.

Routes:
- GET  /healthz                 liveness
- GET  /                        identity
- GET  /tools                   registry snapshot
- POST /tools/rebootstrap       rebuild the registry from scratch
- POST /run                     run the agent on a prompt
- POST /linear/commentCreate    verified comment creation
- GET  /linear/comments         read-through of an issue's recent comments
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from loguru import logger

from mapache import __version__
from mapache.core.app import BridgeApp
from mapache.integrations.linear import LinearAPIError, LinearUnavailableError
from mapache.integrations.verifier import MutationError, MutationRequest
from mapache.security.redaction import redact_secrets


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _text_field(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ""


class WebServer:
    """
    FastAPI server for the bridge.

    The lifespan hook bootstraps the MCP providers on startup and closes them
    on shutdown. When the app runs without lifespan events (for example under
    an in-process test transport) the registry is built lazily on first use.
    """

    def __init__(self, app: Optional[BridgeApp] = None, host: Optional[str] = None, port: Optional[int] = None):
        self._app = app or BridgeApp()
        settings = self._app.settings
        self.host = host or settings.host
        self.port = port or settings.port

        @asynccontextmanager
        async def lifespan(_: FastAPI):
            await self._app.startup()
            try:
                yield
            finally:
                await self._app.shutdown()

        self.fastapi = FastAPI(
            title=settings.agent_name,
            description="MCP bridge: one agent over HTTP plus verified Linear writes",
            version=__version__,
            lifespan=lifespan,
        )
        self.fastapi.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_origins),
            allow_methods=["*"],
            allow_headers=["*"],
        )
        self._setup_exception_handlers()
        self._setup_routes()

    def _redact(self, text: str) -> str:
        s = self._app.settings
        return redact_secrets(text, [s.openai_api_key, s.linear_api_key])

    def _setup_exception_handlers(self) -> None:
        @self.fastapi.exception_handler(MutationError)
        async def mutation_error(_: Request, exc: MutationError):
            outcome = exc.outcome
            payload: Dict[str, Any] = {"success": False, "error": self._redact(str(exc))}
            if outcome is not None:
                payload["status"] = outcome.status.value
                payload["verification"] = outcome.to_dict()
                if outcome.error:
                    payload["verification"]["error"] = self._redact(outcome.error)
            return JSONResponse(payload, status_code=exc.http_status)

        @self.fastapi.exception_handler(LinearUnavailableError)
        async def linear_unavailable(_: Request, exc: LinearUnavailableError):
            return JSONResponse({"error": str(exc)}, status_code=500)

    def _setup_routes(self) -> None:
        @self.fastapi.get("/healthz", response_class=PlainTextResponse)
        async def healthz():
            return "ok"

        @self.fastapi.get("/")
        async def identity():
            return {"name": self._app.settings.agent_name, "ok": True}

        @self.fastapi.get("/tools")
        async def tools():
            ctx = await self._app.ensure_registry()
            return ctx.registry.to_dict()

        @self.fastapi.post("/tools/rebootstrap")
        async def rebootstrap():
            snapshot = await self._app.rebootstrap()
            return snapshot.to_dict()

        @self.fastapi.post("/run")
        async def run(request: Request):
            data = await _json_body(request)
            prompt = data.get("prompt")
            prompt = prompt if isinstance(prompt, str) else ""
            try:
                async with self._app.lease() as ctx:
                    result = await ctx.agent.run(prompt, ctx.registry)
            except Exception as e:
                logger.exception(f"/run failed: {e}")
                return JSONResponse({"error": self._redact(str(e) or type(e).__name__)}, status_code=500)
            return result.to_dict()

        @self.fastapi.post("/linear/commentCreate")
        async def comment_create(request: Request):
            data = await _json_body(request)
            issue_id = _text_field(data, "issueId")
            body = _text_field(data, "body")
            if not issue_id or not body:
                return JSONResponse({"error": "issueId and body are required"}, status_code=400)

            ctx = self._app.context
            ctx.linear.require_credential()

            key = _text_field(data, "idempotencyKey") or (request.headers.get("Idempotency-Key") or "").strip()
            outcome = await ctx.verifier.mutate_and_verify(
                MutationRequest(issue_id=issue_id, body=body, idempotency_key=key or None)
            )
            outcome.raise_for_status()
            return {"success": True, "comment": outcome.entity}

        @self.fastapi.get("/linear/comments")
        async def comments(issueId: str = "", last: str = "20"):
            issue_id = issueId.strip()
            if not issue_id:
                return JSONResponse({"error": "issueId is required"}, status_code=400)
            try:
                window = max(1, min(int(last), 250))
            except ValueError:
                return JSONResponse({"error": "last must be an integer"}, status_code=400)

            ctx = self._app.context
            ctx.linear.require_credential()
            try:
                res = await ctx.linear.issue_comments(issue_id, last=window)
            except (LinearAPIError, httpx.HTTPError) as e:
                logger.error(f"Linear comments read failed (issue={issue_id}): {e}")
                return JSONResponse({"error": self._redact(str(e))}, status_code=500)
            return {"issue": res["issue"], "comments": res["comments"]}

    async def start(self) -> None:
        """Start the web server."""
        config = uvicorn.Config(self.fastapi, host=self.host, port=self.port, log_level="info")
        server = uvicorn.Server(config)
        logger.info(f"MCP bridge listening on :{self.port}")
        await server.serve()

    def run(self) -> None:
        """Run the web server (blocking)."""
        import asyncio

        asyncio.run(self.start())

