"""
Linear GraphQL integration.

Minimal async client for the issue-tracker calls the bridge makes directly:
create a comment, read an issue's recent comments, look up one comment.

Docs: https://developers.linear.app/docs/graphql/working-with-the-graphql-api
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mapache.config.settings import DEFAULT_LINEAR_API_URL, BridgeSettings
from mapache.security.redaction import redact_secrets


COMMENT_FIELDS = "id body createdAt url"

COMMENT_CREATE_MUTATION = f"""
mutation CommentCreate($input: CommentCreateInput!) {{
  commentCreate(input: $input) {{
    success
    comment {{ {COMMENT_FIELDS} }}
  }}
}}
"""

ISSUE_COMMENTS_QUERY = f"""
query IssueComments($id: String!, $last: Int!) {{
  issue(id: $id) {{
    id
    identifier
    title
    url
    comments(last: $last) {{
      nodes {{ {COMMENT_FIELDS} }}
    }}
  }}
}}
"""

COMMENT_QUERY = f"""
query Comment($id: String!) {{
  comment(id: $id) {{ {COMMENT_FIELDS} }}
}}
"""


class LinearUnavailableError(RuntimeError):
    """Raised when the Linear credential is not configured."""


class LinearAPIError(RuntimeError):
    """Raised when Linear answers with an HTTP error or GraphQL errors."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, errors: Optional[List[Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = list(errors or [])


@dataclass(frozen=True)
class LinearConfig:
    api_key: Optional[str] = field(default=None, repr=False)
    base_url: str = DEFAULT_LINEAR_API_URL
    auth_header: str = "Authorization"
    auth_scheme: str = ""
    timeout_s: float = 30.0

    @property
    def auth_value(self) -> str:
        key = self.api_key or ""
        return f"{self.auth_scheme} {key}" if self.auth_scheme else key


class LinearClient:
    def __init__(self, config: LinearConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._cfg = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: BridgeSettings) -> "LinearClient":
        return cls(
            LinearConfig(
                api_key=settings.linear_api_key,
                base_url=settings.linear_api_url,
                auth_header=settings.linear_auth_header,
                auth_scheme=settings.linear_auth_scheme,
                timeout_s=settings.linear_timeout_seconds,
            )
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._cfg.api_key)

    def require_credential(self) -> None:
        if not self.is_configured:
            raise LinearUnavailableError("LINEAR_API_KEY not set")

    async def _get_client(self) -> httpx.AsyncClient:
        self.require_credential()
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._cfg.timeout_s),
                headers={
                    self._cfg.auth_header: self._cfg.auth_value,
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def execute(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run one GraphQL operation and return its `data` object."""
        client = await self._get_client()
        resp = await client.post(self._cfg.base_url, json={"query": query, "variables": variables or {}})

        if resp.status_code >= 400:
            # Never log API keys; include only status and a small excerpt.
            excerpt = redact_secrets((resp.text or "")[:500], [self._cfg.api_key])
            raise LinearAPIError(
                f"Linear API error (status={resp.status_code}): {excerpt}",
                status_code=resp.status_code,
                errors=_graphql_errors(resp),
            )

        payload = resp.json()
        errors = payload.get("errors") if isinstance(payload, dict) else None
        if errors:
            messages = "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
            raise LinearAPIError(
                f"Linear GraphQL error: {redact_secrets(messages, [self._cfg.api_key])}",
                status_code=resp.status_code,
                errors=errors,
            )

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise LinearAPIError("Invalid Linear response: missing 'data' object", status_code=resp.status_code)
        return data

    @retry(
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _read(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        return await self.execute(query, variables)

    async def comment_create(self, issue_id: str, body: str, *, comment_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Create a comment on an issue.

        `comment_id` is sent as the entity id, so a repeated submission of the
        same logical comment cannot create a second one. Not retried here.

        Returns:
            {"success": bool, "comment": {...} | None}
        """
        comment_input: Dict[str, Any] = {"issueId": issue_id, "body": body}
        if comment_id:
            comment_input["id"] = comment_id

        data = await self.execute(COMMENT_CREATE_MUTATION, {"input": comment_input})
        result = data.get("commentCreate") or {}
        logger.info(f"Linear commentCreate issue={issue_id} success={result.get('success')}")
        return {"success": bool(result.get("success")), "comment": result.get("comment")}

    async def issue_comments(self, issue_id: str, *, last: int = 20) -> Dict[str, Any]:
        """Return {"issue": {...} | None, "comments": [...]} for the issue's most recent comments."""
        data = await self._read(ISSUE_COMMENTS_QUERY, {"id": issue_id, "last": int(last)})
        issue = data.get("issue")
        if not isinstance(issue, dict):
            return {"issue": None, "comments": []}
        nodes = ((issue.get("comments") or {}).get("nodes")) or []
        summary = {k: v for k, v in issue.items() if k != "comments"}
        return {"issue": summary, "comments": [n for n in nodes if isinstance(n, dict)]}

    async def comment_by_id(self, comment_id: str) -> Optional[Dict[str, Any]]:
        data = await self._read(COMMENT_QUERY, {"id": comment_id})
        comment = data.get("comment")
        return comment if isinstance(comment, dict) else None


def _graphql_errors(resp: httpx.Response) -> List[Any]:
    # Linear answers GraphQL validation failures with 400 and an `errors` list.
    try:
        payload = resp.json()
    except ValueError:
        return []
    errors = payload.get("errors") if isinstance(payload, dict) else None
    return list(errors) if isinstance(errors, list) else []
