"""Tests for threadline.engine.reconciler: applying stream events to the log."""

from __future__ import annotations

import asyncio
import json

import pytest

from threadline.adapters.events import (
    ContentDelta,
    FinalContent,
    FinalMessage,
    RawEvent,
    ToolCallBatch,
    ToolResult,
    ToolResultBatch,
)
from threadline.engine.errors import SubFetchError
from threadline.engine.reconciler import (
    ConversationReconciler,
    ToolRouting,
    TurnState,
)
from threadline.shared.models.message import (
    GraphData,
    Message,
    MessageRole,
    PdfData,
    SqlData,
    StatusData,
    ToolCall,
    ToolKind,
)
from threadline.shared.models.session import ConversationLog


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _reconciler(fetch_graph=None, clock=None, **kwargs) -> ConversationReconciler:
    return ConversationReconciler(
        ConversationLog(thread_id="thread-1"),
        fetch_graph=fetch_graph,
        clock=clock or FakeClock(),
        **kwargs,
    )


def _human(text: str = "hi") -> Message:
    return Message(role=MessageRole.HUMAN, content=text)


def _call(call_id: str, name: str) -> ToolCallBatch:
    return ToolCallBatch(calls=[ToolCall(id=call_id, name=name)])


def _result(call_id: str, content) -> ToolResultBatch:
    return ToolResultBatch(results=[ToolResult(
        tool_call_id=call_id, content=content, payload={"tool_call_id": call_id, "content": content},
    )])


def _roles(rec: ConversationReconciler) -> list[MessageRole]:
    return [m.role for m in rec.log.snapshot()]


class TestTurnLifecycle:
    def test_begin_turn_appends_human_and_placeholder(self):
        rec = _reconciler()
        token = rec.begin_turn(_human("question"))

        messages = rec.log.snapshot()
        assert [m.role for m in messages] == [MessageRole.HUMAN, MessageRole.ASSISTANT]
        assert messages[0].content == "question"
        assert messages[1].content == ""
        assert token.thread_id == "thread-1"
        assert token.turn == 1
        assert rec.state is TurnState.OPENED

    def test_turn_counter_increments(self):
        rec = _reconciler()
        first = rec.begin_turn(_human())
        rec.finish_turn()
        second = rec.begin_turn(_human())
        assert second.turn == first.turn + 1
        assert not rec.is_current(first)
        assert rec.is_current(second)

    def test_snapshots_are_immutable_copies(self):
        rec = _reconciler()
        rec.begin_turn(_human())
        before = rec.log.snapshot()
        rec.apply(ContentDelta(text="Hi"))
        after = rec.log.snapshot()

        assert isinstance(before, tuple)
        assert before[-1].content == ""
        assert after[-1].content == "Hi"


class TestContentThrottle:
    def test_deltas_then_final_content_resolve_to_final_text(self):
        clock = FakeClock()
        rec = _reconciler(clock=clock)
        rec.begin_turn(_human())

        rec.apply(ContentDelta(text="Hel"))
        rec.apply(ContentDelta(text="lo"))
        rec.apply(FinalContent(text="Hello"))
        rec.finish_turn()

        assert rec.log.last_assistant().content == "Hello"

    def test_first_delta_flushes_immediately(self):
        rec = _reconciler()
        rec.begin_turn(_human())
        rec.apply(ContentDelta(text="Hel"))
        assert rec.log.last_assistant().content == "Hel"

    def test_deltas_within_interval_are_buffered(self):
        clock = FakeClock()
        rec = _reconciler(clock=clock)
        rec.begin_turn(_human())

        rec.apply(ContentDelta(text="Hel"))
        clock.advance(0.05)
        rec.apply(ContentDelta(text="lo"))

        assert rec.log.last_assistant().content == "Hel"
        assert rec.buffered_text == "Hello"

        clock.advance(0.06)
        rec.apply(ContentDelta(text="!"))
        assert rec.log.last_assistant().content == "Hello!"

    def test_interval_must_be_strictly_exceeded(self):
        clock = FakeClock()
        rec = _reconciler(clock=clock, flush_interval=0.5)
        rec.begin_turn(_human())
        rec.apply(ContentDelta(text="a"))
        clock.advance(0.5)
        rec.apply(ContentDelta(text="b"))
        assert rec.log.last_assistant().content == "a"

    def test_finish_turn_flushes_remaining_buffer(self):
        clock = FakeClock()
        rec = _reconciler(clock=clock)
        rec.begin_turn(_human())
        rec.apply(ContentDelta(text="Hel"))
        rec.apply(ContentDelta(text="lo"))

        rec.finish_turn()

        assert rec.log.last_assistant().content == "Hello"
        assert rec.state is TurnState.FINALIZED

    def test_content_after_finalize_is_ignored(self):
        rec = _reconciler()
        rec.begin_turn(_human())
        rec.apply(FinalMessage(message=Message(role=MessageRole.ASSISTANT, content="Done")))
        rec.apply(ContentDelta(text=" more"))
        rec.finish_turn()

        assert rec.log.last_assistant().content == "Done"


class TestFinalMessage:
    def test_final_message_replaces_placeholder(self):
        rec = _reconciler()
        rec.begin_turn(_human())
        rec.apply(ContentDelta(text="draft"))
        final = Message(role=MessageRole.ASSISTANT, content="Final answer", run_id="run-7")

        rec.apply(FinalMessage(message=final))

        last = rec.log.last_assistant()
        assert last.content == "Final answer"
        assert last.run_id == "run-7"
        assert rec.state is TurnState.FINALIZED
        assert _roles(rec).count(MessageRole.ASSISTANT) == 1

    def test_final_message_appends_when_no_assistant_exists(self):
        rec = _reconciler()
        rec.begin_turn(_human())
        rec.log.replace_all([_human()])
        rec.apply(FinalMessage(message=Message(role=MessageRole.ASSISTANT, content="x")))
        assert _roles(rec) == [MessageRole.HUMAN, MessageRole.ASSISTANT]


class TestToolCorrelation:
    def test_tool_call_appends_status_message(self):
        rec = _reconciler()
        rec.begin_turn(_human())
        rec.apply(_call("c1", "SQL_Executor"))

        status = rec.log.snapshot()[-1]
        assert status.role is MessageRole.TOOL
        assert status.content == "Running tool SQL_Executor"
        assert isinstance(status.custom_data, StatusData)
        assert status.tool_kind is ToolKind.STATUS
        assert "c1" in rec.pending_tool_calls

    def test_call_without_id_is_not_registered(self):
        rec = _reconciler()
        rec.begin_turn(_human())
        rec.apply(ToolCallBatch(calls=[ToolCall(id="", name="Anything")]))

        assert rec.pending_tool_calls == {}
        assert rec.log.snapshot()[-1].content == "Running tool Anything"

    def test_sql_scenario_yields_status_then_sql_payload(self):
        rec = _reconciler()
        rec.begin_turn(_human())
        rec.apply(_call("c1", "SQL_Executor"))
        rec.apply(_result("c1", "a;b\n1;2"))

        status, sql = rec.log.snapshot()[-2:]
        assert isinstance(status.custom_data, StatusData)
        assert isinstance(sql.custom_data, SqlData)
        assert sql.custom_data.content == "a;b\n1;2"
        assert sql.tool_call_id == "c1"

    def test_unknown_call_id_gets_generic_message(self):
        rec = _reconciler()
        rec.begin_turn(_human())
        rec.apply(_result("ghost", "some output"))

        message = rec.log.snapshot()[-1]
        assert message.content == "some output"
        assert message.custom_data is None
        assert message.tool_kind is ToolKind.GENERIC

    def test_non_string_result_is_json_dumped(self):
        rec = _reconciler()
        rec.begin_turn(_human())
        rec.apply(_call("c1", "SQL_Executor"))
        rec.apply(_result("c1", {"rows": 3}))

        message = rec.log.snapshot()[-1]
        assert json.loads(message.content) == {"tool_call_id": "c1", "content": {"rows": 3}}

    def test_citation_result_becomes_pdf_payload(self):
        rec = _reconciler()
        rec.begin_turn(_human())
        rec.apply(_call("c2", "PDF_Viewer"))
        rec.apply(_result("c2", json.dumps([
            {"pdf_file": "report.pdf", "block_indices": [1, 4]},
            {"pdf_file": "debug.pdf", "debug": True},
        ])))

        message = rec.log.snapshot()[-1]
        assert isinstance(message.custom_data, PdfData)
        entries = message.custom_data.entries
        assert [e.pdf_file for e in entries] == ["report.pdf", "debug.pdf"]
        assert entries[0].block_indices == (1, 4)
        assert entries[1].debug is True
        assert message.custom_data.call_id == "c2"

    def test_invalid_citation_json_appends_error_message(self):
        rec = _reconciler()
        rec.begin_turn(_human())
        rec.apply(_call("c2", "PDF_Viewer"))
        rec.apply(_result("c2", "not json"))

        message = rec.log.snapshot()[-1]
        assert message.custom_data is None
        assert message.content.startswith("PDF viewer returned invalid data")

    def test_custom_tool_routing(self):
        rec = _reconciler(tools=ToolRouting(sql=frozenset({"Warehouse"})))
        rec.begin_turn(_human())
        rec.apply(_call("c1", "Warehouse"))
        rec.apply(_result("c1", "x;y"))
        assert isinstance(rec.log.snapshot()[-1].custom_data, SqlData)

    def test_raw_events_do_not_touch_the_log(self):
        rec = _reconciler()
        rec.begin_turn(_human())
        before = rec.log.snapshot()
        rec.apply(RawEvent(data={"type": "ping"}))
        assert rec.log.snapshot() == before


class TestRelocation:
    def test_finish_turn_moves_assistant_behind_tool_output(self):
        rec = _reconciler()
        rec.begin_turn(_human())
        rec.apply(ContentDelta(text="Answer"))
        rec.apply(_call("c1", "SQL_Executor"))
        rec.apply(_result("c1", "a;b"))

        rec.finish_turn()

        assert _roles(rec) == [
            MessageRole.HUMAN, MessageRole.TOOL, MessageRole.TOOL, MessageRole.ASSISTANT,
        ]

    def test_relocation_is_idempotent(self):
        rec = _reconciler()
        rec.begin_turn(_human())
        rec.apply(_call("c1", "SQL_Executor"))
        rec.finish_turn()
        first = rec.log.snapshot()

        assert rec.relocate_assistant() is False
        assert rec.log.snapshot() == first


class TestGraphSubFetch:
    @pytest.mark.asyncio
    async def test_graph_result_fetches_and_appends_graph(self):
        fetched: list[str] = []

        async def fetch_graph(graph_id: str):
            fetched.append(graph_id)
            return json.dumps({"data": [], "layout": {"title": "Sales"}})

        rec = _reconciler(fetch_graph=fetch_graph)
        rec.begin_turn(_human())
        rec.apply(_call("g1", "Graphing_Agent"))
        rec.apply(_result("g1", "  graph-42 \n"))
        await rec.drain()

        message = rec.log.snapshot()[-1]
        assert fetched == ["graph-42"]
        assert isinstance(message.custom_data, GraphData)
        assert message.custom_data.graph_id == "graph-42"
        assert message.custom_data.graph == {"data": [], "layout": {"title": "Sales"}}
        assert message.content == "Graph graph-42 generated"

    @pytest.mark.asyncio
    async def test_graph_fetch_failure_appends_error_message(self):
        async def fetch_graph(graph_id: str):
            raise SubFetchError(f"graph {graph_id}", "HTTP 404")

        rec = _reconciler(fetch_graph=fetch_graph)
        rec.begin_turn(_human())
        rec.apply(_call("g1", "Graphing_Agent"))
        rec.apply(_result("g1", "graph-1"))
        await rec.drain()

        message = rec.log.snapshot()[-1]
        assert message.custom_data is None
        assert message.content == "Failed to fetch graph graph-1: HTTP 404"

    @pytest.mark.asyncio
    async def test_stream_keeps_flowing_while_graph_is_fetched(self):
        release = asyncio.Event()

        async def fetch_graph(graph_id: str):
            await release.wait()
            return {"data": []}

        rec = _reconciler(fetch_graph=fetch_graph)
        rec.begin_turn(_human())
        rec.apply(_call("g1", "Graphing_Agent"))
        rec.apply(_result("g1", "graph-1"))
        rec.apply(_call("c1", "SQL_Executor"))

        assert rec.log.snapshot()[-1].content == "Running tool SQL_Executor"
        release.set()
        await rec.drain()
        assert isinstance(rec.log.snapshot()[-1].custom_data, GraphData)

    @pytest.mark.asyncio
    async def test_late_graph_for_cancelled_turn_is_discarded(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def fetch_graph(graph_id: str):
            started.set()
            await release.wait()
            return {"data": []}

        rec = _reconciler(fetch_graph=fetch_graph)
        rec.begin_turn(_human())
        rec.apply(_call("g1", "Graphing_Agent"))
        rec.apply(_result("g1", "graph-1"))
        await started.wait()

        rec.replace_log([_human("other thread")], thread_id="thread-2")
        release.set()
        await asyncio.sleep(0)
        await rec.drain()

        messages = rec.log.snapshot()
        assert [m.content for m in messages] == ["other thread"]
        assert rec.pending_tool_calls == {}

    @pytest.mark.asyncio
    async def test_events_for_stale_token_are_dropped(self):
        rec = _reconciler()
        old = rec.begin_turn(_human())
        rec.finish_turn()
        rec.begin_turn(_human("second"))

        rec.apply(ContentDelta(text="late"), old)

        assert rec.log.last_assistant().content == ""


class TestConsume:
    @pytest.mark.asyncio
    async def test_consume_applies_envelopes_in_order(self):
        async def envelopes():
            yield {"type": "token", "content": "Hel"}
            yield {"type": "message", "content": {
                "type": "ai", "content": "Hello", "response_metadata": {"finish_reason": "stop"},
            }}

        rec = _reconciler()
        token = rec.begin_turn(_human())
        count = await rec.consume(envelopes(), token)
        rec.finish_turn()

        assert count == 2
        assert rec.log.last_assistant().content == "Hello"

    @pytest.mark.asyncio
    async def test_consume_stops_when_turn_is_cancelled(self):
        rec = _reconciler()
        token = rec.begin_turn(_human())

        async def envelopes():
            yield {"type": "token", "content": "a"}
            rec.cancel_turn()
            yield {"type": "token", "content": "b"}
            yield {"type": "token", "content": "c"}

        count = await rec.consume(envelopes(), token)

        assert count == 1
        assert rec.state is TurnState.IDLE


class TestFailTurn:
    def test_fail_turn_replaces_placeholder_with_error(self):
        rec = _reconciler()
        rec.begin_turn(_human())
        rec.apply(ContentDelta(text="partial"))
        rec.apply(_call("c1", "SQL_Executor"))

        rec.fail_turn("connection reset")

        messages = rec.log.snapshot()
        assert messages[-1].role is MessageRole.ASSISTANT
        assert messages[-1].content == "connection reset"
        assert messages[-1].is_error is True
        assert messages[1].role is MessageRole.TOOL

    @pytest.mark.asyncio
    async def test_graph_finishing_after_failure_stays_above_error(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def fetch_graph(graph_id: str):
            started.set()
            await release.wait()
            return {"data": []}

        rec = _reconciler(fetch_graph=fetch_graph)
        rec.begin_turn(_human())
        rec.apply(_call("g1", "Graphing_Agent"))
        rec.apply(_result("g1", "graph-1"))
        await started.wait()

        rec.fail_turn("Stream interrupted")
        release.set()
        await asyncio.sleep(0)
        await rec.drain()

        messages = rec.log.snapshot()
        assert [(m.role, m.is_error) for m in messages] == [
            (MessageRole.HUMAN, False),
            (MessageRole.TOOL, False),
            (MessageRole.ASSISTANT, True),
        ]
        assert not any(isinstance(m.custom_data, GraphData) for m in messages)


class TestObservers:
    def test_subscribers_receive_snapshots(self):
        rec = _reconciler()
        seen: list[int] = []
        unsubscribe = rec.log.subscribe(lambda snapshot: seen.append(len(snapshot)))

        rec.begin_turn(_human())
        unsubscribe()
        rec.apply(ContentDelta(text="x"))

        assert seen == [1, 2]
