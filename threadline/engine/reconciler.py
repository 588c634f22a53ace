"""Conversation reconciler: the single writer of the message log.

Consumes classified stream events strictly in arrival order and turns them
into appends and patches on a :class:`ConversationLog`:

- content deltas are buffered and flushed to the open assistant
  placeholder at most once per ``flush_interval`` seconds;
- tool-call batches register correlation ids and append status messages;
- tool-result batches are dispatched on the originating tool's name
  (graph sub-fetch, citation list, SQL text, generic);
- a final message replaces the placeholder and closes the turn.

Graph sub-fetches run as tasks so stream consumption continues. Their
appends carry the :class:`TurnToken` that scheduled them and are dropped
when the token is no longer current.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterable, Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from threadline.adapters.events import (
    ContentDelta,
    Envelope,
    FinalContent,
    FinalMessage,
    RawEvent,
    StreamEvent,
    ToolCallBatch,
    ToolResult,
    ToolResultBatch,
    classify,
)
from threadline.engine.config import ClientConfig
from threadline.engine.errors import SubFetchError, ThreadlineError
from threadline.shared.models.document import CitationEntry
from threadline.shared.models.message import (
    GraphData,
    Message,
    MessageRole,
    PdfData,
    SqlData,
    StatusData,
    ToolCall,
)
from threadline.shared.models.session import ConversationLog

logger = logging.getLogger(__name__)

GraphFetcher = Callable[[str], Awaitable[Any]]

# Label used when a result references a call id we never saw.
UNKNOWN_TOOL_NAME = "tool"


class TurnState(Enum):
    IDLE = "idle"
    OPENED = "opened"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class TurnToken:
    """Identifies one turn of one thread; in-flight work is tagged with it."""
    thread_id: str
    turn: int


@dataclass
class ToolRouting:
    """Which tool names get graph, citation or tabular handling."""
    graph: frozenset[str] = frozenset({"Graphing_Agent"})
    citation: frozenset[str] = frozenset({"PDF_Viewer"})
    sql: frozenset[str] = frozenset({"SQL_Executor"})

    @classmethod
    def from_config(cls, config: ClientConfig) -> ToolRouting:
        return cls(
            graph=frozenset(config.graph_tools),
            citation=frozenset(config.citation_tools),
            sql=frozenset(config.sql_tools),
        )


def status_text(call: ToolCall) -> str:
    return f"Running tool {call.name}"


@dataclass
class _TurnBuffer:
    text: str = ""
    last_flush: float | None = None
    tasks: set[asyncio.Task] = field(default_factory=set)


class ConversationReconciler:
    """Applies stream events to a conversation log.

    One instance per conversation view. ``clock`` is injectable so the
    throttle can be driven deterministically.
    """

    def __init__(
        self,
        log: ConversationLog,
        *,
        fetch_graph: GraphFetcher | None = None,
        flush_interval: float = 0.1,
        tools: ToolRouting | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._log = log
        self._fetch_graph = fetch_graph
        self._flush_interval = flush_interval
        self._tools = tools or ToolRouting()
        self._clock = clock

        self._pending_calls: dict[str, ToolCall] = {}
        self._state = TurnState.IDLE
        self._turn_counter = 0
        self._token: TurnToken | None = None
        self._buffer = _TurnBuffer()

    # ── state ────────────────────────────────────────────────────

    @property
    def log(self) -> ConversationLog:
        return self._log

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def pending_tool_calls(self) -> dict[str, ToolCall]:
        return dict(self._pending_calls)

    @property
    def buffered_text(self) -> str:
        return self._buffer.text

    def is_current(self, token: TurnToken | None) -> bool:
        return token is not None and token == self._token

    # ── turn lifecycle ───────────────────────────────────────────

    def begin_turn(self, human: Message) -> TurnToken:
        """Append the user's message and an empty assistant placeholder."""
        if self._state is TurnState.OPENED:
            logger.warning("begin_turn while a turn is open, closing the previous one")
            self.finish_turn()
        self._cancel_tasks()

        self._turn_counter += 1
        self._token = TurnToken(thread_id=self._log.thread_id, turn=self._turn_counter)
        self._buffer = _TurnBuffer()
        self._state = TurnState.OPENED

        self._log.add_message(human)
        self._log.add_message(Message(role=MessageRole.ASSISTANT, content=""))
        logger.debug("Turn %d opened on thread %s", self._token.turn, self._token.thread_id)
        return self._token

    def finish_turn(self) -> None:
        """Close the turn at end of stream.

        Flushes any throttled text unless a final message already closed the
        turn, then moves the assistant message behind the turn's tool output.
        """
        if self._state is TurnState.OPENED and self._buffer.text:
            self._log.update_last_assistant(self._buffer.text)
        self._state = TurnState.FINALIZED
        self.relocate_assistant()

    def fail_turn(self, error_text: str) -> None:
        """Close the turn as a single assistant error message."""
        self._cancel_tasks()
        self._buffer.text = ""
        self._log.replace_last_assistant(
            Message(role=MessageRole.ASSISTANT, content=error_text, is_error=True)
        )
        self._state = TurnState.FINALIZED
        self.relocate_assistant()

    def relocate_assistant(self) -> bool:
        """Move the latest assistant message to the end of the log. Idempotent."""
        return self._log.move_last_assistant_to_end()

    def cancel_turn(self) -> None:
        """Abandon the active turn; late results for it are discarded."""
        if self._token is not None:
            logger.info("Turn %d on thread %s cancelled", self._token.turn, self._token.thread_id)
        self._cancel_tasks()
        self._token = None
        self._buffer = _TurnBuffer()
        self._state = TurnState.IDLE

    def replace_log(self, messages: Iterable[Message], thread_id: str | None = None) -> None:
        """Swap in another conversation's history."""
        self.cancel_turn()
        self._pending_calls.clear()
        self._log.replace_all(messages, thread_id=thread_id)

    def reset(self, thread_id: str | None = None) -> None:
        """Start an empty conversation, dropping all turn and correlation state."""
        self.cancel_turn()
        self._pending_calls.clear()
        self._log.reset(thread_id)

    async def drain(self) -> None:
        """Wait for outstanding sub-fetches of the current turn."""
        while self._buffer.tasks:
            await asyncio.gather(*list(self._buffer.tasks), return_exceptions=True)

    def _cancel_tasks(self) -> None:
        for task in list(self._buffer.tasks):
            task.cancel()
        self._buffer.tasks.clear()

    # ── event application ────────────────────────────────────────

    async def consume(
        self,
        envelopes: AsyncIterable[Envelope],
        token: TurnToken | None = None,
    ) -> int:
        """Classify and apply envelopes until the stream ends.

        Stops early when *token* stops being the active turn. Returns the
        number of envelopes applied.
        """
        token = token or self._token
        count = 0
        async for envelope in envelopes:
            if not self.is_current(token):
                logger.info("Turn superseded, abandoning stream after %d envelopes", count)
                break
            for event in classify(envelope):
                self.apply(event, token)
            count += 1
        return count

    def apply(self, event: StreamEvent, token: TurnToken | None = None) -> None:
        """Apply one classified event to the log."""
        token = token or self._token
        if not self.is_current(token):
            logger.debug("Dropping %s for stale turn %s", event.event_type, token)
            return

        if isinstance(event, ContentDelta):
            self._on_content(event.text)
        elif isinstance(event, FinalContent):
            self._on_final_content(event.text)
        elif isinstance(event, ToolCallBatch):
            self._on_tool_calls(event.calls)
        elif isinstance(event, ToolResultBatch):
            for result in event.results:
                self._on_tool_result(result, token)
        elif isinstance(event, FinalMessage):
            self._on_final_message(event.message)
        elif isinstance(event, RawEvent):
            logger.debug("Unclassified stream envelope: %.200r", event.data)

    def _on_content(self, text: str) -> None:
        if self._state is not TurnState.OPENED:
            logger.debug("Ignoring content after the turn was finalized")
            return
        self._buffer.text += text
        now = self._clock()
        last = self._buffer.last_flush
        if last is None or now - last > self._flush_interval:
            self._log.update_last_assistant(self._buffer.text)
            self._buffer.last_flush = now

    def _on_final_content(self, text: str) -> None:
        if self._state is not TurnState.OPENED:
            logger.debug("Ignoring final content after the turn was finalized")
            return
        self._buffer.text = text
        self._log.update_last_assistant(text)
        self._buffer.last_flush = self._clock()

    def _on_final_message(self, message: Message | None) -> None:
        if message is None:
            return
        if self._state is not TurnState.OPENED:
            logger.debug("Ignoring duplicate final message")
            return
        self._log.replace_last_assistant(message)
        self._buffer.text = message.content
        self._state = TurnState.FINALIZED

    def _on_tool_calls(self, calls: list[ToolCall]) -> None:
        for call in calls:
            if call.id:
                self._pending_calls[call.id] = call
            self._log.add_message(Message(
                role=MessageRole.TOOL,
                content=status_text(call),
                tool_call_id=call.id or None,
                custom_data=StatusData(call=call),
            ))

    def _on_tool_result(self, result: ToolResult, token: TurnToken) -> None:
        call = self._pending_calls.get(result.tool_call_id)
        if call is None:
            logger.warning("Tool result for unknown call id %r", result.tool_call_id)
        name = call.name if call is not None else UNKNOWN_TOOL_NAME
        content = result.content
        call_id = result.tool_call_id or None

        if isinstance(content, str):
            if name in self._tools.graph:
                self._schedule_graph(content, call_id, token)
                return
            if name in self._tools.citation:
                self._log.add_message(_citation_message(content, call_id))
                return
            if name in self._tools.sql:
                self._log.add_message(Message(
                    role=MessageRole.TOOL,
                    content="",
                    tool_call_id=call_id,
                    custom_data=SqlData(content=content),
                ))
                return

        text = content if isinstance(content, str) else json.dumps(result.payload, indent=2, default=str)
        self._log.add_message(Message(role=MessageRole.TOOL, content=text, tool_call_id=call_id))

    # ── sub-fetches ──────────────────────────────────────────────

    def _schedule_graph(self, raw_id: str, call_id: str | None, token: TurnToken) -> None:
        async def _run() -> None:
            message = await self._graph_message(raw_id, call_id)
            if not self.is_current(token):
                logger.info("Discarding late graph output for stale turn %s", token)
                return
            self._log.add_message(message)

        task = asyncio.get_running_loop().create_task(_run())
        tasks = self._buffer.tasks
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    async def _graph_message(self, raw_id: str, call_id: str | None) -> Message:
        graph_id = raw_id.strip()
        try:
            if self._fetch_graph is None:
                raise ThreadlineError("no graph fetcher configured")
            graph = await self._fetch_graph(graph_id)
            if isinstance(graph, str):
                graph = json.loads(graph)
        except (ThreadlineError, ValueError) as exc:
            logger.warning("Graph %s could not be retrieved: %s", graph_id, exc)
            text = str(exc) if isinstance(exc, SubFetchError) else f"Failed to fetch graph: {exc}"
            return Message(
                role=MessageRole.TOOL,
                content=text,
                tool_call_id=call_id,
            )
        return Message(
            role=MessageRole.TOOL,
            content=f"Graph {graph_id} generated",
            tool_call_id=call_id,
            custom_data=GraphData(graph_id=graph_id, graph=graph),
        )


def _citation_message(content: str, call_id: str | None) -> Message:
    try:
        parsed = json.loads(content)
        if isinstance(parsed, dict):
            parsed = [parsed]
        if not isinstance(parsed, list):
            raise ValueError(f"expected a list of citations, got {type(parsed).__name__}")
        entries = tuple(CitationEntry.from_dict(item) for item in parsed)
    except (ValueError, TypeError) as exc:
        return Message(
            role=MessageRole.TOOL,
            content=f"PDF viewer returned invalid data: {exc}",
            tool_call_id=call_id,
        )
    return Message(
        role=MessageRole.TOOL,
        content="",
        tool_call_id=call_id,
        custom_data=PdfData(entries=entries, call_id=call_id or ""),
    )
