"""threadline CLI: main application entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler

from rich.console import Console
from rich.live import Live
from rich.text import Text

from threadline.engine.agent_client import AgentClient
from threadline.engine.chat_session import ChatSession
from threadline.engine.config import ClientConfig
from threadline.engine.errors import ThreadlineError
from threadline.engine.yaml_config import load_yaml_config
from threadline.shared.formatters.conversation import render_conversation
from threadline.shared.models.document import CitationEntry
from threadline.shared.services.annotation import load_highlighted_document, parse_color

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def _configure_logging(level: str, verbose: bool = False) -> Path:
    """Log to a rotating file under ~/.threadline/logs and to stderr.

    Stderr only carries warnings and errors unless *verbose* is set.
    """
    log_dir = Path.home() / ".threadline" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "threadline.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    if not verbose:
        stream_handler.setLevel(logging.WARNING)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _load_config(path: str | None) -> ClientConfig:
    if path:
        return load_yaml_config(path)
    default = Path.home() / ".threadline" / "config.yaml"
    if default.exists():
        return load_yaml_config(default)
    return ClientConfig.from_env()


# ── commands ─────────────────────────────────────────────────────


async def _run_chat(client: AgentClient, config: ClientConfig, console: Console, thread_id: str | None) -> None:
    session = ChatSession(client, config)
    if thread_id:
        await session.load_history(thread_id)
        console.print(render_conversation(session.render()))
    console.print(f"[dim]thread {session.thread_id} · /new, /rate N [comment], /quit[/dim]")

    while True:
        try:
            line = await asyncio.to_thread(console.input, "[bold green]> [/bold green]")
        except (EOFError, KeyboardInterrupt):
            break
        text = line.strip()
        if not text:
            continue
        if text in ("/quit", "/exit"):
            break
        if text == "/new":
            session.new_conversation()
            console.print(f"[dim]new conversation {session.thread_id}[/dim]")
            continue
        if text.startswith("/rate"):
            await _rate_last(session, text, console)
            continue

        with Live(console=console, refresh_per_second=8, transient=True) as live:
            unsubscribe = session.log.subscribe(
                lambda _snapshot: live.update(Text.from_markup(render_conversation(session.render())))
            )
            try:
                await session.start(text)
            except ThreadlineError as exc:
                logger.warning("Turn failed: %s", exc)
            finally:
                unsubscribe()
        console.print(render_conversation(session.render()))
        console.print(f"[dim]{session.title}[/dim]")


async def _rate_last(session: ChatSession, command: str, console: Console) -> None:
    parts = command.split(maxsplit=2)
    last = session.log.last_assistant()
    if last is None or not last.run_id:
        console.print("[yellow]No rated reply available[/yellow]")
        return
    try:
        stars = int(parts[1])
        await session.submit_feedback(
            last.run_id,
            stars / 5,
            comment=parts[2] if len(parts) > 2 else None,
            message_text=last.content,
        )
    except (IndexError, ValueError) as exc:
        console.print(f"[yellow]Usage: /rate 0-5 [comment] ({exc})[/yellow]")
    except ThreadlineError as exc:
        console.print(f"[red]{exc}[/red]")
    else:
        console.print("[green]Feedback saved[/green]")


async def _run_history(client: AgentClient, config: ClientConfig, console: Console, thread_id: str) -> None:
    session = ChatSession(client, config)
    await session.load_history(thread_id)
    console.print(f"[bold]{session.title}[/bold]")
    console.print(render_conversation(session.render(), expand_groups=True))


async def _run_pdf(client: AgentClient, config: ClientConfig, console: Console, args) -> None:
    entry = CitationEntry(
        pdf_file=args.name,
        block_indices=tuple(args.blocks) if args.blocks else None,
        debug=args.debug,
        keywords=tuple(args.keywords) if args.keywords else None,
    )
    document = await load_highlighted_document(
        client,
        entry,
        user_id=config.user_id,
        color=parse_color(config.highlight_color),
        opacity=config.highlight_opacity,
    )
    out = Path(args.out or Path(args.name).name)
    out.write_bytes(document.content)
    console.print(f"Wrote {out} ({len(document.regions)} highlighted regions)")


async def _run_info(client: AgentClient, console: Console) -> None:
    info = await client.get_service_info()
    console.print(f"[bold]Default agent:[/bold] {info.get('default_agent', '')}")
    console.print(f"[bold]Default model:[/bold] {info.get('default_model', '')}")
    for agent in info.get("agents", []):
        if isinstance(agent, dict):
            console.print(f"  [cyan]{agent.get('key', '')}[/cyan] {agent.get('description', '')}")
        else:
            console.print(f"  [cyan]{agent}[/cyan]")
    models = info.get("models", [])
    if models:
        console.print("[bold]Models:[/bold] " + ", ".join(str(m) for m in models))


async def _dispatch(args, config: ClientConfig, console: Console) -> None:
    async with AgentClient.from_config(config) as client:
        if args.command == "history":
            await _run_history(client, config, console, args.thread_id)
        elif args.command == "pdf":
            await _run_pdf(client, config, console, args)
        elif args.command == "info":
            await _run_info(client, console)
        else:
            await _run_chat(client, config, console, getattr(args, "thread", None))


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="threadline",
        description="threadline: terminal client for streaming AI agents",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ~/.threadline/config.yaml if present)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Write all log levels to stderr, not just warnings",
    )
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Interactive chat (default)")
    chat.add_argument("--thread", metavar="THREAD_ID", help="Continue a stored conversation")
    chat.add_argument("--model", help="Model to request")

    history = subparsers.add_parser("history", help="Print a stored conversation")
    history.add_argument("thread_id", metavar="THREAD_ID")

    pdf = subparsers.add_parser("pdf", help="Download a document with highlights burned in")
    pdf.add_argument("name", metavar="NAME")
    pdf.add_argument("--blocks", type=int, nargs="+", metavar="N", help="Block indices to highlight")
    pdf.add_argument("--keywords", nargs="+", metavar="WORD", help="Keywords to highlight")
    pdf.add_argument("--debug", action="store_true", help="Highlight every layout block")
    pdf.add_argument("--out", metavar="FILE", help="Output path (default: NAME in cwd)")

    subparsers.add_parser("info", help="Show available agents and models")

    args = parser.parse_args()

    try:
        config = _load_config(args.config)
    except ThreadlineError as exc:
        print(f"threadline: {exc}", file=sys.stderr)
        sys.exit(2)
    if getattr(args, "model", None):
        config.model = args.model

    log_file = _configure_logging(os.getenv("THREADLINE_LOG_LEVEL", config.log_level), args.verbose)
    logger.info(
        "Starting threadline command=%s base_url=%s config=%s log=%s",
        args.command or "chat", config.base_url, args.config or "<none>", log_file,
    )

    console = Console()
    try:
        asyncio.run(_dispatch(args, config, console))
    except KeyboardInterrupt:
        pass
    except ThreadlineError as exc:
        logger.error("Command failed: %s", exc)
        console.print(f"[red]{exc}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
