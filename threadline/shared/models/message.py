"""Message, tool call and tool payload models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import json
from typing import Any, ClassVar, Union
import uuid

from threadline.shared.models.document import CitationEntry


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())[:8]


class MessageRole(Enum):
    HUMAN = "human"
    ASSISTANT = "ai"
    TOOL = "tool"
    SYSTEM = "system"
    CUSTOM = "custom"


class ToolKind(Enum):
    """Discriminant of the structured payload carried by a tool message."""
    STATUS = "status"
    GRAPH = "graph"
    PDF = "pdf"
    SQL = "sql"
    GENERIC = "generic"


# Older backends tag payloads with the tool's own name.
_TOOL_KIND_ALIASES: dict[str, ToolKind] = {
    "graphing_agent": ToolKind.GRAPH,
    "pdf_viewer": ToolKind.PDF,
    "sql_executor": ToolKind.SQL,
}


def parse_tool_kind(value: Any) -> ToolKind:
    if isinstance(value, str):
        lowered = value.lower()
        if lowered in _TOOL_KIND_ALIASES:
            return _TOOL_KIND_ALIASES[lowered]
        try:
            return ToolKind(lowered)
        except ValueError:
            pass
    return ToolKind.GENERIC


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        args = data.get("args")
        if isinstance(args, str):
            try:
                args = json.loads(args)
            except json.JSONDecodeError:
                args = {"_raw": args}
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or "tool"),
            args=args if isinstance(args, dict) else {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "args": dict(self.args)}


# ── Tool payloads ──


@dataclass(frozen=True)
class StatusData:
    call: ToolCall
    tool: ClassVar[ToolKind] = ToolKind.STATUS


@dataclass(frozen=True)
class GraphData:
    graph_id: str
    graph: Any
    tool: ClassVar[ToolKind] = ToolKind.GRAPH


@dataclass(frozen=True)
class PdfData:
    entries: tuple[CitationEntry, ...]
    call_id: str = ""
    tool: ClassVar[ToolKind] = ToolKind.PDF


@dataclass(frozen=True)
class SqlData:
    content: str
    tool: ClassVar[ToolKind] = ToolKind.SQL


@dataclass(frozen=True)
class GenericData:
    payload: dict[str, Any] = field(default_factory=dict)
    tool: ClassVar[ToolKind] = ToolKind.GENERIC


CustomData = Union[StatusData, GraphData, PdfData, SqlData, GenericData]


def custom_data_from_dict(data: Any) -> CustomData | None:
    """Parse the wire ``custom_data`` object into its tagged variant."""
    if not isinstance(data, dict):
        return None
    kind = parse_tool_kind(data.get("tool"))
    if kind is ToolKind.STATUS and isinstance(data.get("call"), dict):
        return StatusData(call=ToolCall.from_dict(data["call"]))
    if kind is ToolKind.GRAPH and "graph" in data:
        return GraphData(graph_id=str(data.get("graphId") or ""), graph=data["graph"])
    if kind is ToolKind.PDF and isinstance(data.get("entries"), list):
        entries = []
        for raw in data["entries"]:
            try:
                entries.append(CitationEntry.from_dict(raw))
            except ValueError:
                continue
        return PdfData(entries=tuple(entries), call_id=str(data.get("callId") or ""))
    if kind is ToolKind.SQL and isinstance(data.get("content"), str):
        return SqlData(content=data["content"])
    return GenericData(payload=dict(data))


def custom_data_to_dict(data: CustomData) -> dict[str, Any]:
    if isinstance(data, StatusData):
        return {"tool": data.tool.value, "call": data.call.to_dict()}
    if isinstance(data, GraphData):
        return {"tool": data.tool.value, "graphId": data.graph_id, "graph": data.graph}
    if isinstance(data, PdfData):
        return {
            "tool": data.tool.value,
            "entries": [entry.to_dict() for entry in data.entries],
            "callId": data.call_id,
        }
    if isinstance(data, SqlData):
        return {"tool": data.tool.value, "content": data.content}
    return dict(data.payload)


# ── Messages ──


@dataclass
class Message:
    role: MessageRole
    content: str = ""
    tool_call_id: str | None = None
    run_id: str | None = None
    custom_data: CustomData | None = None
    attached_files: list[str] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    response_metadata: dict[str, Any] = field(default_factory=dict)
    # Set when a transport failure closed the turn instead of the backend.
    is_error: bool = False
    id: str = field(default_factory=_gen_id)
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def tool_kind(self) -> ToolKind | None:
        """Payload kind for tool messages, ``None`` for every other role."""
        if self.role is not MessageRole.TOOL:
            return None
        if self.custom_data is None:
            return ToolKind.GENERIC
        return self.custom_data.tool

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Message:
        """Build a message from the backend's chat message object."""
        try:
            role = MessageRole(data.get("type", "ai"))
        except ValueError:
            role = MessageRole.CUSTOM
        content = data.get("content", "")
        if not isinstance(content, str):
            content = json.dumps(content)
        calls = data.get("tool_calls") or []
        metadata = data.get("response_metadata")
        return cls(
            role=role,
            content=content,
            tool_call_id=data.get("tool_call_id") or None,
            run_id=data.get("run_id") or None,
            custom_data=custom_data_from_dict(data.get("custom_data")),
            attached_files=[str(f) for f in data.get("attached_files") or []],
            tool_calls=[ToolCall.from_dict(c) for c in calls if isinstance(c, dict)],
            response_metadata=metadata if isinstance(metadata, dict) else {},
        )

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.role.value, "content": self.content}
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.run_id:
            data["run_id"] = self.run_id
        if self.custom_data is not None:
            data["custom_data"] = custom_data_to_dict(self.custom_data)
        if self.attached_files:
            data["attached_files"] = list(self.attached_files)
        if self.tool_calls:
            data["tool_calls"] = [c.to_dict() for c in self.tool_calls]
        if self.response_metadata:
            data["response_metadata"] = dict(self.response_metadata)
        return data
