from __future__ import annotations

import pytest
from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from bloxbot.client.engine_client import DIRECTORY_HEADER, EngineClient
from bloxbot.client.sse import iter_sse_data
from bloxbot.core.errors import EngineApiError, EngineUnavailableError
from bloxbot.shared.models.message import TextPart
from bloxbot.shared.models.session import SessionStatusType


class FakeEngine:
    """Just enough of the engine's HTTP API to exercise the client."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, str, dict, str | None]] = []
        self.sse_frames: list[str] = []
        self.app = web.Application(middlewares=[self._record])
        r = self.app.router
        r.add_get("/session", self._sessions)
        r.add_post("/session", self._create_session)
        r.add_get("/session/status", self._statuses)
        r.add_get("/session/{id}/message", self._messages)
        r.add_post("/session/{id}/prompt_async", self._no_content)
        r.add_delete("/session/{id}", self._missing)
        r.add_get("/provider", self._providers)
        r.add_post("/provider/{id}/oauth/callback", self._oauth_callback)
        r.add_put("/auth/{id}", self._true)
        r.add_get("/mcp", self._mcp)
        r.add_post("/mcp/{name}/connect", self._true)
        r.add_get("/event", self._events)

    @web.middleware
    async def _record(self, request: web.Request, handler):
        body = await request.json() if request.can_read_body else {}
        self.requests.append((request.method, request.path, body, request.headers.get(DIRECTORY_HEADER)))
        return await handler(request)

    async def _sessions(self, request):
        return web.json_response([
            {"id": "s1", "title": "Build a tower", "time": {"created": 10, "updated": 20}},
            {"id": "s2", "title": "", "parentID": "s1", "time": {"created": 5}},
        ])

    async def _create_session(self, request):
        return web.json_response({"id": "s3", "title": "New session", "time": {"created": 30}})

    async def _statuses(self, request):
        return web.json_response({"s1": {"type": "busy"}, "s2": {"type": "retry", "attempt": 2}})

    async def _messages(self, request):
        return web.json_response([{
            "info": {"id": "m1", "sessionID": request.match_info["id"], "role": "assistant",
                     "modelID": "gpt", "providerID": "openai", "time": {"created": 1}},
            "parts": [{"id": "p1", "messageID": "m1", "sessionID": request.match_info["id"],
                       "type": "text", "text": "Done"}],
        }])

    async def _no_content(self, request):
        return web.Response(status=204)

    async def _missing(self, request):
        return web.json_response({"name": "NotFoundError"}, status=404)

    async def _providers(self, request):
        return web.json_response({
            "all": [{"id": "openai", "name": "OpenAI", "models": {
                "gpt": {"id": "gpt", "name": "GPT", "variants": {"low": {}, "high": {}}},
            }}],
            "connected": ["openai"],
            "default": {"openai": "gpt"},
        })

    async def _oauth_callback(self, request):
        return web.json_response(True)

    async def _true(self, request):
        return web.json_response(True)

    async def _mcp(self, request):
        return web.json_response({
            "roblox-studio": {"status": "failed", "error": "EADDRINUSE"},
            "other": {"status": "connected"},
        })

    async def _events(self, request):
        resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await resp.prepare(request)
        for frame in self.sse_frames:
            await resp.write(frame.encode())
        await resp.write_eof()
        return resp


class TestEngineClient(AioHTTPTestCase):
    async def get_application(self):
        self.engine = FakeEngine()
        return self.engine.app

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.api = EngineClient(str(self.server.make_url("")), directory="/work/space")

    async def asyncTearDown(self):
        await self.api.close()
        await super().asyncTearDown()

    async def test_list_sessions_parses_and_scopes_directory(self):
        sessions = await self.api.list_sessions()
        assert [s.id for s in sessions] == ["s1", "s2"]
        assert sessions[0].updated == 20
        assert sessions[1].updated == 5
        assert sessions[1].parent_id == "s1"
        assert self.engine.requests[0][3] == "/work/space"

    async def test_session_statuses(self):
        statuses = await self.api.session_statuses()
        assert statuses["s1"].is_busy
        assert statuses["s2"].type is SessionStatusType.RETRY
        assert statuses["s2"].attempt == 2

    async def test_session_messages(self):
        messages = await self.api.session_messages("s1")
        assert messages[0].info.model_id == "gpt"
        assert isinstance(messages[0].parts[0], TextPart)
        assert messages[0].parts[0].text == "Done"

    async def test_prompt_async_splits_model_key(self):
        await self.api.prompt_async(
            "s1", [{"type": "text", "text": "hi"}],
            model="openai/gpt", agent="studio", variant="high",
        )
        method, path, body, _ = self.engine.requests[-1]
        assert (method, path) == ("POST", "/session/s1/prompt_async")
        assert body == {
            "parts": [{"type": "text", "text": "hi"}],
            "model": {"providerID": "openai", "modelID": "gpt"},
            "agent": "studio",
            "variant": "high",
        }

    async def test_error_status_raises_api_error(self):
        with self.assertRaises(EngineApiError) as ctx:
            await self.api.delete_session("missing")
        assert ctx.exception.status == 404
        assert ctx.exception.body == {"name": "NotFoundError"}

    async def test_providers_catalog(self):
        catalog = await self.api.list_providers()
        assert catalog.connected == ("openai",)
        assert catalog.defaults == {"openai": "gpt"}
        assert catalog.models[0].key == "openai/gpt"
        assert list(catalog.models[0].variants) == ["low", "high"]

    async def test_oauth_callback_and_set_auth(self):
        assert await self.api.oauth_callback("openai", 0, "abc") is True
        assert self.engine.requests[-1][2] == {"method": 0, "code": "abc"}
        await self.api.set_auth("openai", {"type": "api", "key": "k"})
        assert self.engine.requests[-1][:3] == ("PUT", "/auth/openai", {"type": "api", "key": "k"})

    async def test_mcp_status(self):
        statuses = await self.api.mcp_status()
        assert statuses["roblox-studio"].status == "failed"
        assert statuses["roblox-studio"].error == "EADDRINUSE"
        assert statuses["other"].status == "connected"

    async def test_create_session(self):
        session = await self.api.create_session()
        assert session.id == "s3"
        assert self.engine.requests[-1][:2] == ("POST", "/session")

    async def test_event_stream_yields_frames_and_skips_malformed(self):
        self.engine.sse_frames = [
            ": keepalive\n\n",
            'data: {"type": "session.idle", "properties": {"sessionID": "s1"}}\n\n',
            "data: {not json}\n\n",
            'event: message\ndata: {"type": "todo.updated",\ndata:  "properties": {}}\n\n',
        ]
        async with self.api.event_stream() as events:
            received = [frame async for frame in events]
        assert [f["type"] for f in received] == ["session.idle", "todo.updated"]

    async def test_unreachable_engine_raises_unavailable(self):
        dead = EngineClient("http://127.0.0.1:1", timeout=2)
        try:
            with self.assertRaises(EngineUnavailableError):
                await dead.health()
            with self.assertRaises(EngineUnavailableError):
                async with dead.event_stream():
                    pass
        finally:
            await dead.close()


async def _lines(*chunks: bytes):
    for chunk in chunks:
        yield chunk


@pytest.mark.asyncio
async def test_iter_sse_data_handles_crlf_and_trailing_partial_frame():
    frames = [
        frame async for frame in iter_sse_data(_lines(
            b'data: {"a": 1}\r\n', b"\r\n",
            b"data: [1, 2]\n", b"\n",
            b'data: {"b": 2}\n',
        ))
    ]
    assert frames == [{"a": 1}]
