"""Tests for threadline.engine.agent_client against a local aiohttp backend."""

from __future__ import annotations

from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from threadline.adapters.stream_reader import read_envelopes
from threadline.engine.agent_client import AgentClient
from threadline.engine.errors import AgentClientError, StreamError
from threadline.shared.models.message import MessageRole, SqlData


class FakeBackend:
    """Minimal agent backend recording the requests it receives."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, str, dict, dict]] = []
        self.stream_records: list[bytes] = [
            b'data: {"type": "token", "content": "Hel"}\n',
            b'data: {"type": "token", "content": "lo"}\n',
            b"data: [DONE]\n",
        ]

    async def _record(self, request: web.Request) -> dict:
        body = await request.json() if request.can_read_body else {}
        self.requests.append((request.method, request.path, dict(request.query), body))
        return body

    async def info(self, request: web.Request) -> web.Response:
        await self._record(request)
        return web.json_response({
            "agents": [{"key": "research", "description": "Research agent"}],
            "models": ["gpt-4.1"],
            "default_agent": "research",
            "default_model": "gpt-4.1",
        })

    async def history(self, request: web.Request) -> web.Response:
        body = await self._record(request)
        if body.get("thread_id") == "missing":
            return web.json_response({"detail": "Thread not found"}, status=404)
        return web.json_response({"messages": [
            {"type": "human", "content": "hi"},
            {"type": "tool", "content": "", "tool_call_id": "c1",
             "custom_data": {"tool": "sql", "content": "a;b"}},
            {"type": "ai", "content": "hello", "run_id": "run-1"},
        ]})

    async def stream(self, request: web.Request) -> web.StreamResponse:
        await self._record(request)
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        for record in self.stream_records:
            await response.write(record)
        await response.write_eof()
        return response

    async def broken_stream(self, request: web.Request) -> web.Response:
        await self._record(request)
        return web.json_response({"message": "Agent unavailable"}, status=503)

    async def title(self, request: web.Request) -> web.Response:
        await self._record(request)
        if request.method == "POST":
            return web.json_response({"ok": True})
        return web.json_response({"title": "Quarterly revenue"})

    async def feedback(self, request: web.Request) -> web.Response:
        await self._record(request)
        return web.json_response({})

    async def graph(self, request: web.Request) -> web.Response:
        await self._record(request)
        if request.match_info["graph_id"] == "bad":
            return web.Response(text="boom", status=500)
        return web.json_response({"data": [{"type": "bar"}], "layout": {}})

    async def pdf(self, request: web.Request) -> web.Response:
        await self._record(request)
        return web.Response(body=b"%PDF-1.7 fake", content_type="application/pdf")

    async def annotations(self, request: web.Request) -> web.Response:
        await self._record(request)
        return web.json_response({"annotations": [
            {"page": 1, "x": 10, "y": 20, "width": 100, "height": 30, "color": "#ff0000"},
            {"page": "not-a-number"},
        ]})

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/info", self.info)
        app.router.add_post("/history", self.history)
        app.router.add_post("/stream", self.stream)
        app.router.add_post("/research/stream", self.stream)
        app.router.add_post("/broken/stream", self.broken_stream)
        app.router.add_post("/conversations/{thread_id}/title", self.title)
        app.router.add_get("/conversations/{thread_id}/title", self.title)
        app.router.add_post("/feedback", self.feedback)
        app.router.add_get("/graph/{graph_id}", self.graph)
        app.router.add_get("/rag/pdf_content/{name}", self.pdf)
        app.router.add_post("/rag/annotations", self.annotations)
        app.router.add_post("/rag/debug_blocks", self.annotations)
        return app


class TestAgentClient(AioHTTPTestCase):
    """Exercise every backend call over real HTTP."""

    async def get_application(self):
        self.backend = FakeBackend()
        return self.backend.app()

    def _agent(self, token: str | None = "secret") -> AgentClient:
        return AgentClient(str(self.server.make_url("")), auth_token=token)

    async def test_service_info(self):
        async with self._agent() as client:
            info = await client.get_service_info()
        assert info["default_agent"] == "research"

    async def test_history_is_parsed_into_messages(self):
        async with self._agent() as client:
            messages = await client.get_history("t-1", "user-1")

        assert [m.role for m in messages] == [
            MessageRole.HUMAN, MessageRole.TOOL, MessageRole.ASSISTANT,
        ]
        assert isinstance(messages[1].custom_data, SqlData)
        assert messages[2].run_id == "run-1"
        assert self.backend.requests[-1][3] == {"thread_id": "t-1", "user_id": "user-1"}

    async def test_backend_detail_is_surfaced(self):
        async with self._agent() as client:
            try:
                await client.get_history("missing", "user-1")
            except AgentClientError as exc:
                assert str(exc) == "Thread not found"
                assert exc.status == 404
            else:
                raise AssertionError("expected AgentClientError")

    async def test_stream_yields_chunks_for_the_reader(self):
        payload = {"message": "hi", "thread_id": "t-1", "stream_tokens": True}
        async with self._agent() as client:
            async with client.stream(payload) as chunks:
                envelopes = [env async for env in read_envelopes(chunks)]

        assert envelopes == [
            {"type": "token", "content": "Hel"},
            {"type": "token", "content": "lo"},
        ]
        method, path, _, body = self.backend.requests[-1]
        assert (method, path) == ("POST", "/stream")
        assert body == payload

    async def test_stream_targets_agent_endpoint(self):
        async with self._agent() as client:
            async with client.stream({"message": "x"}, agent="research") as chunks:
                async for _ in read_envelopes(chunks):
                    pass
        assert self.backend.requests[-1][1] == "/research/stream"

    async def test_stream_open_failure_raises_stream_error(self):
        async with self._agent() as client:
            try:
                async with client.stream({"message": "x"}, agent="broken"):
                    raise AssertionError("stream should not open")
            except StreamError as exc:
                assert str(exc) == "Agent unavailable"
                assert exc.status == 503

    async def test_title_round_trip(self):
        async with self._agent() as client:
            await client.set_conversation_title("t 1", "Revenue", "user-1")
            title = await client.get_conversation_title("t 1", "user-1")

        post = self.backend.requests[-2]
        assert post[0] == "POST"
        assert post[2] == {"title": "Revenue", "user_id": "user-1"}
        assert title == "Quarterly revenue"

    async def test_feedback_payload(self):
        async with self._agent() as client:
            await client.create_feedback(
                "run-1", "human-feedback-stars", 0.8, conversation_id="t-1",
            )
        body = self.backend.requests[-1][3]
        assert body["run_id"] == "run-1"
        assert body["score"] == 0.8
        assert body["conversation_id"] == "t-1"
        assert body["kwargs"] == {}

    async def test_graph_fetch(self):
        async with self._agent() as client:
            graph = await client.get_graph("g-1")
        assert graph["data"][0]["type"] == "bar"

    async def test_graph_failure_uses_body_text(self):
        async with self._agent() as client:
            try:
                await client.get_graph("bad")
            except AgentClientError as exc:
                assert exc.status == 500
                assert "boom" in str(exc)
            else:
                raise AssertionError("expected AgentClientError")

    async def test_pdf_passes_token_as_query_parameter(self):
        async with self._agent(token="tok-1") as client:
            data = await client.get_pdf("report.pdf")
        assert data == b"%PDF-1.7 fake"
        assert self.backend.requests[-1][2] == {"token": "tok-1"}

    async def test_annotations_skip_malformed_regions(self):
        async with self._agent() as client:
            regions = await client.get_annotations(
                "report.pdf", [1, 2], keywords=["revenue"], user_id="user-1",
            )
        assert len(regions) == 1
        assert regions[0].y == 20
        assert regions[0].color == "#ff0000"
        assert self.backend.requests[-1][3] == {
            "pdf_file": "report.pdf",
            "block_indices": [1, 2],
            "keywords": ["revenue"],
            "user_id": "user-1",
        }

    async def test_debug_blocks(self):
        async with self._agent() as client:
            regions = await client.debug_pdf_blocks("report.pdf")
        assert len(regions) == 1
        assert self.backend.requests[-1][1] == "/rag/debug_blocks"
        assert self.backend.requests[-1][3] == {"pdf_file": "report.pdf"}

    async def test_connection_failure_is_wrapped(self):
        client = AgentClient("http://127.0.0.1:9", timeout_seconds=2)
        try:
            await client.get_service_info()
        except AgentClientError as exc:
            assert "Failed to load service info" in str(exc)
        else:
            raise AssertionError("expected AgentClientError")
        finally:
            await client.close()


def test_auth_header_only_when_token_set():
    client = AgentClient("http://backend/", auth_token="abc")
    assert client.base_url == "http://backend"
    assert client._headers() == {"Authorization": "Bearer abc"}
    assert AgentClient("http://backend")._headers() == {}
