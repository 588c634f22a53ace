"""Semantic stream events and the envelope classifier.

The backend streams small JSON envelopes. ``classify`` maps each envelope
onto typed event dataclasses that the reconciler consumes in order.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from threadline.shared.models.message import Message, ToolCall

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamEvent:
    """Base classified stream event."""
    event_type: str = ""


@dataclass(frozen=True)
class ContentDelta(StreamEvent):
    event_type: str = "content"
    text: str = ""


@dataclass(frozen=True)
class FinalContent(StreamEvent):
    event_type: str = "final_content"
    text: str = ""


@dataclass(frozen=True)
class ToolCallBatch(StreamEvent):
    event_type: str = "tool_calls"
    calls: list[ToolCall] = field(default_factory=list)


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    content: Any = None
    # The full result object, dumped verbatim for non-string content.
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultBatch(StreamEvent):
    event_type: str = "tool_results"
    results: list[ToolResult] = field(default_factory=list)


@dataclass(frozen=True)
class FinalMessage(StreamEvent):
    event_type: str = "final_message"
    message: Message | None = None


@dataclass(frozen=True)
class RawEvent(StreamEvent):
    event_type: str = "raw"
    data: Any = None


@dataclass(frozen=True)
class RawEnvelope:
    """A record whose payload could not be parsed as JSON."""
    text: str
    error: str = ""


Envelope = dict[str, Any] | RawEnvelope


def _tool_calls(raw: Any) -> list[ToolCall]:
    if not isinstance(raw, list):
        return []
    return [ToolCall.from_dict(c) for c in raw if isinstance(c, dict)]


def _tool_results(raw: Any) -> list[ToolResult]:
    if not isinstance(raw, list):
        return []
    results: list[ToolResult] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        results.append(ToolResult(
            tool_call_id=str(item.get("tool_call_id") or ""),
            content=item.get("content"),
            payload=dict(item),
        ))
    return results


def _single_result(data: dict[str, Any]) -> ToolResultBatch:
    return ToolResultBatch(results=[ToolResult(
        tool_call_id=str(data["tool_call_id"]),
        content=data.get("content"),
        payload={"tool_call_id": data["tool_call_id"], "content": data.get("content")},
    )])


def _text(value: Any) -> str:
    return value if isinstance(value, str) else str(value)


def _classify_message(message: dict[str, Any]) -> list[StreamEvent]:
    """Classify the ``content`` object of a ``{type: "message"}`` envelope."""
    kind = message.get("type")
    content = message.get("content")

    if kind == "ai":
        events: list[StreamEvent] = []
        calls = _tool_calls(message.get("tool_calls"))
        # Tool calls first so correlation state exists before dependent content.
        if calls:
            events.append(ToolCallBatch(calls=calls))
        if content:
            metadata = message.get("response_metadata") or {}
            if isinstance(metadata, dict) and metadata.get("finish_reason"):
                events.append(FinalContent(text=_text(content)))
                events.append(FinalMessage(message=Message.from_wire(message)))
            else:
                events.append(ContentDelta(text=_text(content)))
        return events

    if kind == "tool" and message.get("tool_call_id"):
        return [_single_result(message)]

    if content:
        return [ContentDelta(text=_text(content))]
    return []


def classify(envelope: Envelope) -> list[StreamEvent]:
    """Map one envelope onto zero or more stream events.

    First matching rule wins. An ``ai`` message that also finishes the turn
    yields ``FinalContent`` followed by ``FinalMessage``.
    """
    if isinstance(envelope, RawEnvelope):
        return [RawEvent(data=envelope.text)]
    if not isinstance(envelope, dict):
        return [RawEvent(data=envelope)]

    env_type = envelope.get("type")
    content = envelope.get("content")

    if env_type == "token" and content:
        return [ContentDelta(text=_text(content))]

    if env_type == "message" and content:
        if isinstance(content, dict):
            return _classify_message(content)
        return [ContentDelta(text=_text(content))]

    if env_type == "tool" and envelope.get("tool_call_id"):
        return [_single_result(envelope)]

    if envelope.get("tool_calls"):
        return [ToolCallBatch(calls=_tool_calls(envelope["tool_calls"]))]

    if envelope.get("tool_results"):
        return [ToolResultBatch(results=_tool_results(envelope["tool_results"]))]

    if content:
        return [ContentDelta(text=_text(content))]

    return [RawEvent(data=envelope)]

