"""Async HTTP client for the session engine's REST API and event stream.

Every request carries the ``x-opencode-directory`` header so the engine
scopes sessions, providers and MCP servers to the client's workspace.
The underlying aiohttp session is created lazily on first use so the
client can be constructed outside a running event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import aiohttp

from bloxbot.client.sse import iter_sse_data
from bloxbot.core.errors import EngineApiError, EngineUnavailableError
from bloxbot.shared.models.catalog import (
    AgentInfo,
    AuthMethod,
    McpServerStatus,
    OAuthAuthorization,
    ProviderCatalog,
    auth_methods_from_dict,
    split_model_key,
)
from bloxbot.shared.models.message import MessageWithParts
from bloxbot.shared.models.requests import PermissionRequest, QuestionRequest
from bloxbot.shared.models.session import Session, SessionStatus, Todo

logger = logging.getLogger(__name__)

DIRECTORY_HEADER = "x-opencode-directory"


class EngineClient:
    """Async client for one engine instance, scoped to one workspace."""

    def __init__(
        self,
        base_url: str,
        directory: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.directory = directory
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._http: aiohttp.ClientSession | None = None

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            headers = {"Accept": "application/json"}
            if self.directory:
                headers[DIRECTORY_HEADER] = self.directory
            self._http = aiohttp.ClientSession(headers=headers, timeout=self._timeout)
        return self._http

    async def close(self) -> None:
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    async def __aenter__(self) -> EngineClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # --- Sessions ---

    async def list_sessions(self) -> list[Session]:
        data = await self._request("GET", "/session")
        return [Session.from_dict(s) for s in data or ()]

    async def get_session(self, session_id: str) -> Session:
        data = await self._request("GET", f"/session/{session_id}")
        return Session.from_dict(data)

    async def create_session(self, title: str | None = None) -> Session:
        body: dict[str, Any] = {}
        if title:
            body["title"] = title
        data = await self._request("POST", "/session", json=body)
        return Session.from_dict(data)

    async def update_session(self, session_id: str, *, title: str) -> Session:
        data = await self._request("PATCH", f"/session/{session_id}", json={"title": title})
        return Session.from_dict(data)

    async def delete_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/session/{session_id}")

    async def session_messages(self, session_id: str) -> list[MessageWithParts]:
        data = await self._request("GET", f"/session/{session_id}/message")
        return [MessageWithParts.from_dict(m) for m in data or ()]

    async def session_todos(self, session_id: str) -> list[Todo]:
        data = await self._request("GET", f"/session/{session_id}/todo")
        return [Todo.from_dict(t) for t in data or ()]

    async def session_statuses(self) -> dict[str, SessionStatus]:
        data = await self._request("GET", "/session/status")
        return {sid: SessionStatus.from_dict(s) for sid, s in (data or {}).items()}

    async def prompt_async(
        self,
        session_id: str,
        parts: list[dict[str, Any]],
        *,
        model: str | None = None,
        agent: str | None = None,
        variant: str | None = None,
    ) -> None:
        """Queue a prompt. The engine answers immediately; output arrives as events."""
        body: dict[str, Any] = {"parts": parts}
        if model:
            split = split_model_key(model)
            if split is not None:
                body["model"] = {"providerID": split[0], "modelID": split[1]}
        if agent:
            body["agent"] = agent
        if variant:
            body["variant"] = variant
        await self._request("POST", f"/session/{session_id}/prompt_async", json=body)

    async def abort_session(self, session_id: str) -> None:
        await self._request("POST", f"/session/{session_id}/abort")

    # --- Questions / permissions ---

    async def list_questions(self) -> list[QuestionRequest]:
        data = await self._request("GET", "/question")
        return [QuestionRequest.from_dict(q) for q in data or ()]

    async def reply_question(self, request_id: str, answers: list[list[str]]) -> None:
        await self._request("POST", f"/question/{request_id}/reply", json={"answers": answers})

    async def reject_question(self, request_id: str) -> None:
        await self._request("POST", f"/question/{request_id}/reject")

    async def list_permissions(self) -> list[PermissionRequest]:
        data = await self._request("GET", "/permission")
        return [PermissionRequest.from_dict(p) for p in data or ()]

    async def reply_permission(self, request_id: str, reply: str) -> None:
        await self._request("POST", f"/permission/{request_id}/reply", json={"reply": reply})

    # --- Providers / auth ---

    async def list_providers(self) -> ProviderCatalog:
        data = await self._request("GET", "/provider")
        return ProviderCatalog.from_dict(data or {})

    async def provider_auth_methods(self) -> dict[str, tuple[AuthMethod, ...]]:
        data = await self._request("GET", "/provider/auth")
        return auth_methods_from_dict(data or {})

    async def oauth_authorize(self, provider_id: str, method: int) -> OAuthAuthorization | None:
        data = await self._request(
            "POST", f"/provider/{provider_id}/oauth/authorize", json={"method": method},
        )
        if not data:
            return None
        return OAuthAuthorization.from_dict(data)

    async def oauth_callback(
        self, provider_id: str, method: int, code: str | None = None,
    ) -> bool:
        body: dict[str, Any] = {"method": method}
        if code:
            body["code"] = code
        data = await self._request("POST", f"/provider/{provider_id}/oauth/callback", json=body)
        return data is True

    async def set_auth(self, provider_id: str, auth: dict[str, Any]) -> None:
        await self._request("PUT", f"/auth/{provider_id}", json=auth)

    async def remove_auth(self, provider_id: str) -> None:
        await self._request("DELETE", f"/auth/{provider_id}")

    async def dispose_instance(self) -> None:
        """Drop the engine's cached per-directory state (providers, auth)."""
        await self._request("POST", "/instance/dispose")

    async def list_agents(self) -> list[AgentInfo]:
        data = await self._request("GET", "/agent")
        return [AgentInfo.from_dict(a) for a in data or ()]

    # --- MCP ---

    async def mcp_status(self) -> dict[str, McpServerStatus]:
        data = await self._request("GET", "/mcp")
        return {
            name: McpServerStatus.from_dict(name, entry or {})
            for name, entry in (data or {}).items()
        }

    async def mcp_connect(self, name: str) -> None:
        await self._request("POST", f"/mcp/{name}/connect")

    async def mcp_disconnect(self, name: str) -> None:
        await self._request("POST", f"/mcp/{name}/disconnect")

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/global/health") or {}

    # --- Streaming ---

    @contextlib.asynccontextmanager
    async def event_stream(self) -> AsyncIterator[AsyncIterator[dict[str, Any]]]:
        """Open the engine's SSE stream.

        Entering the context means the stream is open (2xx received). The
        yielded iterator produces one ``{"type", "properties"}`` dict per
        event and finishes when the engine closes the stream.
        """
        url = f"{self.base_url}/event"
        try:
            resp = await self._session().get(
                url,
                headers={"Accept": "text/event-stream"},
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self._timeout.total),
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise EngineUnavailableError(self.base_url, str(exc) or type(exc).__name__) from exc
        try:
            if resp.status >= 400:
                body = await resp.text()
                raise EngineApiError(resp.status, body, "/event")
            yield iter_sse_data(resp.content)
        finally:
            resp.release()

    # --- HTTP primitives ---

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self._session().request(method, url, json=json) as resp:
                text = await resp.text()
                return self._handle_response(resp.status, text, path)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise EngineUnavailableError(self.base_url, str(exc) or type(exc).__name__) from exc

    @staticmethod
    def _handle_response(status: int, text: str, path: str) -> Any:
        if status >= 400:
            try:
                body: Any = json.loads(text)
            except ValueError:
                body = text
            raise EngineApiError(status, body, path)
        if status == 204 or not text.strip():
            return None
        try:
            return json.loads(text)
        except ValueError:
            logger.debug("Non-JSON response from %s: %.200s", path, text)
            return text
