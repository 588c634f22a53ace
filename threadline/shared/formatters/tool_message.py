"""Tool message formatting with per-payload rendering.

Tool messages are turned into a structured intermediate representation
(:class:`FormattedToolMessage`) by a formatter registered for their
:class:`ToolKind`. Renderers then convert the IR to Rich markup for the
terminal.

Adding a new payload kind requires only a single decorated function:

    @tool_formatter(ToolKind.MY_KIND)
    def _format_my_kind(message):
        return FormattedToolMessage(icon="🔧", label=..., sections=[...])
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable

from threadline.shared.formatters.sql_table import comment_text, parse_sql_content
from threadline.shared.models.message import (
    GenericData,
    GraphData,
    Message,
    PdfData,
    SqlData,
    StatusData,
    ToolKind,
)


# ── Intermediate Representation ──


@dataclass
class Section:
    """A typed content section in the expanded tool message view.

    Supported kinds:
        "kv"        → content: dict[str, str]
        "plain"     → content: str
        "code"      → content: {"language": str, "text": str}
        "table"     → content: {"columns": list[str], "rows": list[list[str]]}
        "notes"     → content: list[{"text": str, "level": "error"|"warning"|"info"}]
        "citations" → content: list[{"pdf_file": str, "blocks": str, "debug": bool}]
    """

    kind: str
    title: str = ""
    content: Any = None


@dataclass
class FormattedToolMessage:
    """Structured representation of a formatted tool message."""

    icon: str = ""
    label: str = ""
    summary: str = ""
    status: str = "done"
    sections: list[Section] = field(default_factory=list)


# ── Formatter Registry ──

_FORMATTERS: dict[ToolKind, Callable[[Message], FormattedToolMessage]] = {}


def tool_formatter(kind: ToolKind):
    """Decorator to register a formatter for a payload kind."""

    def decorator(fn: Callable[[Message], FormattedToolMessage]):
        _FORMATTERS[kind] = fn
        return fn

    return decorator


def format_tool_message(message: Message) -> FormattedToolMessage:
    """Dispatch on the message's payload kind, falling back to generic."""
    kind = message.tool_kind or ToolKind.GENERIC
    formatter = _FORMATTERS.get(kind, _format_generic)
    return formatter(message)


# ── Helpers ──


def _trunc(text: str, length: int = 60) -> str:
    """Truncate text with ellipsis."""
    if not text:
        return ""
    if len(text) <= length:
        return text
    return text[: length - 3] + "..."


def _first_line(text: str) -> str:
    for line in (text or "").splitlines():
        if line.strip():
            return line.strip()
    return ""


def _is_failure(text: str) -> bool:
    lowered = (text or "").lower()
    return lowered.startswith("failed") or "returned invalid data" in lowered


# ── Formatters ──


@tool_formatter(ToolKind.STATUS)
def _format_status(message: Message) -> FormattedToolMessage:
    data = message.custom_data
    assert isinstance(data, StatusData)
    args = {k: _trunc(str(v), 80) for k, v in data.call.args.items() if not k.startswith("_")}
    raw = data.call.args.get("_raw", "")
    sections: list[Section] = []
    if args:
        sections.append(Section(kind="kv", title="Arguments", content=args))
    elif raw:
        sections.append(Section(kind="plain", title="Arguments", content=raw))
    return FormattedToolMessage(
        icon="⚙",
        label=data.call.name,
        summary=_trunc(", ".join(f"{k}={v}" for k, v in args.items()), 50),
        status="pending",
        sections=sections,
    )


@tool_formatter(ToolKind.GRAPH)
def _format_graph(message: Message) -> FormattedToolMessage:
    data = message.custom_data
    assert isinstance(data, GraphData)
    graph = data.graph if isinstance(data.graph, dict) else {}
    layout = graph.get("layout") if isinstance(graph.get("layout"), dict) else {}
    title = layout.get("title")
    if isinstance(title, dict):
        title = title.get("text")
    traces = graph.get("data") if isinstance(graph.get("data"), list) else []
    details = {"graph": data.graph_id, "traces": str(len(traces))}
    if title:
        details["title"] = str(title)
    return FormattedToolMessage(
        icon="\U0001f4ca",
        label="Graph",
        summary=_trunc(str(title or data.graph_id), 50),
        sections=[Section(kind="kv", content=details)],
    )


@tool_formatter(ToolKind.PDF)
def _format_pdf(message: Message) -> FormattedToolMessage:
    data = message.custom_data
    assert isinstance(data, PdfData)
    items = []
    for entry in data.entries:
        blocks = ", ".join(str(i) for i in entry.block_indices or ())
        items.append({"pdf_file": entry.pdf_file, "blocks": blocks, "debug": entry.debug})
    count = len(data.entries)
    return FormattedToolMessage(
        icon="\U0001f4c4",
        label="Sources",
        summary=f"{count} document{'s' if count != 1 else ''}",
        sections=[Section(kind="citations", content=items)] if items else [],
    )


@tool_formatter(ToolKind.SQL)
def _format_sql(message: Message) -> FormattedToolMessage:
    data = message.custom_data
    assert isinstance(data, SqlData)
    parsed = parse_sql_content(data.content)
    notes = (
        [{"text": comment_text(line), "level": "error"} for line in parsed.errors]
        + [{"text": comment_text(line), "level": "warning"} for line in parsed.warnings]
        + [{"text": comment_text(line), "level": "info"} for line in parsed.notes]
    )
    sections: list[Section] = []
    if notes:
        sections.append(Section(kind="notes", title="Query Information", content=notes))
    if parsed.has_table:
        sections.append(Section(
            kind="table",
            content={"columns": parsed.columns, "rows": parsed.data},
        ))
    elif not notes:
        sections.append(Section(kind="plain", content="No results"))
    rows = len(parsed.data)
    return FormattedToolMessage(
        icon="\U0001f5c3",
        label="SQL",
        summary=f"{rows} row{'s' if rows != 1 else ''}",
        status="error" if parsed.errors else "done",
        sections=sections,
    )


@tool_formatter(ToolKind.GENERIC)
def _format_generic(message: Message) -> FormattedToolMessage:
    """Fallback formatter for plain tool output."""
    text = message.content or ""
    payload = message.custom_data.payload if isinstance(message.custom_data, GenericData) else {}
    sections: list[Section] = []
    if text:
        try:
            parsed = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            parsed = None
        if isinstance(parsed, (dict, list)):
            sections.append(Section(kind="code", content={"language": "json", "text": text}))
        else:
            sections.append(Section(kind="plain", content=text))
    if payload:
        sections.append(Section(
            kind="code",
            title="Data",
            content={"language": "json", "text": json.dumps(payload, indent=2, default=str)},
        ))
    return FormattedToolMessage(
        icon="\U0001f527",
        label="Tool",
        summary=_trunc(_first_line(text), 50),
        status="error" if _is_failure(text) else "done",
        sections=sections,
    )


# ── Rich Markup Renderer ──


def _esc(text: str) -> str:
    """Escape Rich markup characters."""
    return text.replace("[", "\\[")


_STATUS_MARKUP = {
    "pending": "[yellow]\\[pending][/yellow]",
    "done": "[green]done[/green]",
    "error": "[red]error[/red]",
}


def render_collapsed_rich(fmt: FormattedToolMessage) -> str:
    """Render a collapsed one-liner as a Rich markup string."""
    parts = ["[dim]▶[/dim]"]
    if fmt.icon:
        parts.append(fmt.icon)
    parts.append(f"[cyan]{_esc(fmt.label)}[/cyan]")
    if fmt.summary:
        parts.append(f"[dim]{_esc(fmt.summary)}[/dim]")
    parts.append(_STATUS_MARKUP.get(fmt.status, f"[dim]{_esc(fmt.status)}[/dim]"))
    return "  ".join(parts)


def render_expanded_rich(fmt: FormattedToolMessage, timestamp: str = "") -> str:
    """Render the full expanded view as a Rich markup string.

    Args:
        fmt: The formatted tool message IR.
        timestamp: Optional HH:MM:SS timestamp.
    """
    header_parts = ["[dim]▼[/dim]"]
    if timestamp:
        header_parts.append(f"[dim]{timestamp}[/dim]")
    if fmt.icon:
        header_parts.append(fmt.icon)
    header_parts.append(f"[bold cyan]{_esc(fmt.label)}[/bold cyan]")
    header_parts.append(_STATUS_MARKUP.get(fmt.status, ""))
    lines = ["  ".join(p for p in header_parts if p)]

    for section in fmt.sections:
        if section.title:
            lines.append(f"  [bold dim]{_esc(section.title)}[/bold dim]")
        lines.extend(_render_section_rich(section))

    return "\n".join(lines)


def _render_section_rich(section: Section) -> list[str]:
    """Render a single section to Rich markup lines."""
    lines: list[str] = []

    if section.kind == "kv":
        kv = section.content or {}
        for key, value in kv.items():
            lines.append(f"  [bold]{_esc(str(key))}:[/bold] {_esc(str(value))}")

    elif section.kind == "code":
        content = section.content or {}
        code_lines = str(content.get("text", "")).splitlines()
        for code_line in code_lines[:40]:
            lines.append(f"  {_esc(code_line)}")
        if len(code_lines) > 40:
            lines.append(f"  [dim]... {len(code_lines) - 40} more lines[/dim]")

    elif section.kind == "table":
        content = section.content or {}
        columns = [str(c) for c in content.get("columns", [])]
        rows = [[str(c) for c in row] for row in content.get("rows", [])]
        widths = [len(c) for c in columns]
        for row in rows:
            for i, cell in enumerate(row[: len(widths)]):
                widths[i] = min(max(widths[i], len(cell)), 30)
        header = " │ ".join(_esc(_trunc(c, 30).ljust(w)) for c, w in zip(columns, widths))
        lines.append(f"  [bold]{header}[/bold]")
        lines.append("  [dim]" + "─┼─".join("─" * w for w in widths) + "[/dim]")
        for row in rows[:50]:
            cells = [_trunc(c, 30).ljust(w) for c, w in zip(row, widths)]
            lines.append("  " + " │ ".join(_esc(c) for c in cells))
        if len(rows) > 50:
            lines.append(f"  [dim]... {len(rows) - 50} more rows[/dim]")

    elif section.kind == "notes":
        styles = {"error": "red", "warning": "yellow", "info": "dim"}
        for note in section.content or []:
            style = styles.get(note.get("level"), "dim")
            lines.append(f"  [{style}]{_esc(note.get('text', ''))}[/{style}]")

    elif section.kind == "citations":
        for item in section.content or []:
            line = f"  [underline]{_esc(item.get('pdf_file', ''))}[/underline]"
            if item.get("blocks"):
                line += f" [dim]blocks {_esc(item['blocks'])}[/dim]"
            if item.get("debug"):
                line += " [magenta]debug[/magenta]"
            lines.append(line)

    elif section.kind == "plain":
        text_lines = str(section.content or "").splitlines()
        for text_line in text_lines[:20]:
            lines.append(f"  {_esc(text_line)}")
        if len(text_lines) > 20:
            lines.append(f"  [dim]... {len(text_lines) - 20} more lines[/dim]")

    return lines
