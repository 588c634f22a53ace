"""Render a projected conversation as Rich markup for the terminal."""

from __future__ import annotations

from collections.abc import Iterable

from rich.markup import escape

from threadline.shared.formatters.tool_message import (
    format_tool_message,
    render_collapsed_rich,
    render_expanded_rich,
)
from threadline.shared.models.message import Message, MessageRole
from threadline.shared.projection import RenderItem, ToolGroup

THINKING_MARKUP = "[dim italic]thinking…[/dim italic]"

_ROLE_HEADERS = {
    MessageRole.HUMAN: "[bold green]You[/bold green]",
    MessageRole.ASSISTANT: "[bold cyan]Assistant[/bold cyan]",
    MessageRole.CUSTOM: "[bold magenta]Notice[/bold magenta]",
}


def _timestamp(message: Message) -> str:
    return message.timestamp.astimezone().strftime("%H:%M:%S")


def render_message(message: Message, expand_tools: bool = True) -> str:
    if message.role is MessageRole.TOOL:
        fmt = format_tool_message(message)
        if expand_tools:
            return render_expanded_rich(fmt, _timestamp(message))
        return render_collapsed_rich(fmt)

    header = _ROLE_HEADERS.get(message.role, f"[bold]{escape(message.role.value)}[/bold]")
    header += f"  [dim]{_timestamp(message)}[/dim]"
    if message.attached_files:
        header += "  [dim]📎 " + escape(", ".join(message.attached_files)) + "[/dim]"

    body = message.content.strip()
    if message.is_error:
        body = f"[red]{escape(body)}[/red]"
    elif not body:
        body = THINKING_MARKUP
    else:
        body = escape(body)
    return f"{header}\n{body}"


def render_group(group: ToolGroup, expand: bool = False) -> str:
    lines = [f"[dim]── {len(group)} tool step{'s' if len(group) != 1 else ''} ──[/dim]"]
    for message in group.messages:
        fmt = format_tool_message(message)
        lines.append(render_expanded_rich(fmt) if expand else render_collapsed_rich(fmt))
    return "\n".join(lines)


def render_conversation(items: Iterable[RenderItem], expand_groups: bool = False) -> str:
    """Render projected items, separated by blank lines.

    Tool groups are collapsed to one line per step unless ``expand_groups``;
    standalone graph and citation messages are always expanded.
    """
    blocks: list[str] = []
    for item in items:
        if isinstance(item, ToolGroup):
            blocks.append(render_group(item, expand=expand_groups))
        else:
            blocks.append(render_message(item))
    return "\n\n".join(blocks)
