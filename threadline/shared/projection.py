"""Grouping projector: flat message log to display sequence.

The projection is recomputed from scratch on every log mutation. It holds
the latest assistant message back until the next conversational boundary so
that citation results logged after it are shown directly beneath it, while
graph results are shown directly above it.
"""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Union

from threadline.shared.models.message import Message, MessageRole, ToolKind

# Streaming placeholder some backends emit before the real answer.
PLACEHOLDER_CONTENT = "**"


@dataclass(frozen=True)
class ToolGroup:
    """Consecutive tool messages collapsed into one display block."""
    messages: tuple[Message, ...]

    def __len__(self) -> int:
        return len(self.messages)


RenderItem = Union[Message, ToolGroup]


def is_hidden_assistant(message: Message) -> bool:
    """True for assistant messages with nothing worth showing yet."""
    if message.role is not MessageRole.ASSISTANT:
        return False
    content = (message.content or "").strip()
    return not content or content == PLACEHOLDER_CONTENT


class _Projection:
    def __init__(self) -> None:
        self.items: list[RenderItem] = []
        self.tools: list[Message] = []
        self.graphs: list[Message] = []
        self.citations: list[Message] = []
        self.pending_ai: Message | None = None

    def flush_tools(self) -> None:
        if self.tools:
            self.items.append(ToolGroup(tuple(self.tools)))
            self.tools = []

    def flush_graphs(self) -> None:
        self.items.extend(self.graphs)
        self.graphs = []

    def flush_citations(self) -> None:
        self.items.extend(self.citations)
        self.citations = []

    def flush_pending_ai(self) -> None:
        if self.pending_ai is not None:
            self.items.append(self.pending_ai)
            self.pending_ai = None
            self.flush_citations()

    def on_tool(self, message: Message) -> None:
        kind = message.tool_kind
        if kind is ToolKind.PDF:
            self.citations.append(message)
        elif kind is ToolKind.GRAPH:
            self.graphs.append(message)
        else:
            self.tools.append(message)

    def on_assistant(self, message: Message) -> None:
        self.flush_tools()
        self.flush_graphs()
        self.flush_pending_ai()
        self.pending_ai = message

    def on_boundary(self, message: Message) -> None:
        self.flush_tools()
        self.flush_graphs()
        self.flush_pending_ai()
        self.flush_citations()
        if message.role is not MessageRole.SYSTEM:
            self.items.append(message)

    def finish(self) -> list[RenderItem]:
        self.flush_tools()
        self.flush_graphs()
        self.flush_pending_ai()
        self.flush_citations()
        return self.items


def project(messages: Sequence[Message] | Iterable[Message]) -> list[RenderItem]:
    """Project a message log into singletons and :class:`ToolGroup` blocks.

    Rules, applied in one left-to-right pass:

    - status, SQL and generic tool messages accumulate into a running group
      that closes at the next non-tool message;
    - graph results are held and emitted just before the next assistant
      message (or the next boundary);
    - citation results are held and emitted right after the pending
      assistant message, or at the next boundary when none is pending;
    - system messages close open groups but are never emitted;
    - an empty or placeholder assistant message is skipped unless it is
      the last message of the log.
    """
    messages = list(messages)
    state = _Projection()
    last = len(messages) - 1
    for index, message in enumerate(messages):
        if message.role is MessageRole.ASSISTANT:
            if is_hidden_assistant(message) and index != last:
                continue
            state.on_assistant(message)
        elif message.role is MessageRole.TOOL:
            state.on_tool(message)
        else:
            state.on_boundary(message)
    return state.finish()
