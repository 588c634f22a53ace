"""Chat session: one conversation view wired to the agent backend.

Owns the conversation log, its reconciler and the HTTP client, and runs a
turn end to end: open the stream, feed envelopes through the reconciler,
wait for graph sub-fetches, close the turn and name the conversation.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from contextlib import aclosing
from typing import Any

from threadline.adapters.stream_reader import read_envelopes
from threadline.engine.agent_client import AgentClient
from threadline.engine.config import ClientConfig
from threadline.engine.errors import AgentClientError, SubFetchError
from threadline.engine.reconciler import ConversationReconciler, ToolRouting
from threadline.shared.models.document import CitationEntry
from threadline.shared.models.message import Message, MessageRole
from threadline.shared.models.session import DEFAULT_TITLE, ConversationLog
from threadline.shared.projection import RenderItem, project
from threadline.shared.services.annotation import (
    HighlightedDocument,
    load_highlighted_document,
    parse_color,
)
from threadline.shared.services.session_naming import derive_title

logger = logging.getLogger(__name__)

FEEDBACK_KEY_STARS = "human-feedback-stars"
FEEDBACK_KEY_COMMENT = "human-feedback-with-comment"


class ChatSession:
    """A single conversation with the agent backend."""

    def __init__(
        self,
        client: AgentClient,
        config: ClientConfig | None = None,
        *,
        log: ConversationLog | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._config = config or ClientConfig()
        self.log = log or ConversationLog()
        self.model = self._config.model
        self.reconciler = ConversationReconciler(
            self.log,
            fetch_graph=self._fetch_graph,
            flush_interval=self._config.flush_interval_seconds,
            tools=ToolRouting.from_config(self._config),
            clock=clock,
        )
        self._turn_task: asyncio.Task | None = None

    @property
    def thread_id(self) -> str:
        return self.log.thread_id

    @property
    def title(self) -> str:
        return self.log.title

    @property
    def is_streaming(self) -> bool:
        return self._turn_task is not None and not self._turn_task.done()

    def render(self) -> list[RenderItem]:
        return project(self.log.snapshot())

    # ── turns ────────────────────────────────────────────────────

    async def send(
        self,
        text: str,
        *,
        attached_files: Sequence[str] = (),
        file_ids: Sequence[str] = (),
    ) -> Message | None:
        """Send a user message and apply the streamed reply.

        Returns the final assistant message, or ``None`` when the turn was
        superseded before it completed. Transport failures close the turn
        as an error message and are re-raised.
        """
        task = self._turn_task = asyncio.current_task()
        try:
            return await self._run_turn(text, attached_files, file_ids)
        finally:
            if self._turn_task is task:
                self._turn_task = None

    def start(
        self,
        text: str,
        *,
        attached_files: Sequence[str] = (),
        file_ids: Sequence[str] = (),
    ) -> asyncio.Task:
        """Run :meth:`send` as its own task so it can be cancelled."""
        return asyncio.get_running_loop().create_task(
            self.send(text, attached_files=attached_files, file_ids=file_ids),
        )

    async def _run_turn(
        self,
        text: str,
        attached_files: Sequence[str],
        file_ids: Sequence[str],
    ) -> Message | None:
        human = Message(role=MessageRole.HUMAN, content=text, attached_files=list(attached_files))
        token = self.reconciler.begin_turn(human)
        payload: dict[str, Any] = {
            "message": text,
            "model": self.model,
            "thread_id": self.thread_id,
            "file_ids": list(file_ids),
            "user_id": self._config.user_id,
            "stream_tokens": True,
        }

        try:
            async with self._client.stream(payload, self._config.agent or None) as chunks:
                async with aclosing(read_envelopes(chunks)) as envelopes:
                    count = await self.reconciler.consume(envelopes, token)
        except AgentClientError as exc:
            logger.error("Turn %d on thread %s failed: %s", token.turn, token.thread_id, exc)
            if self.reconciler.is_current(token):
                self.reconciler.fail_turn(str(exc))
            raise

        if not self.reconciler.is_current(token):
            return None
        await self.reconciler.drain()
        if not self.reconciler.is_current(token):
            return None
        self.reconciler.finish_turn()
        logger.info("Turn %d on thread %s complete (%d envelopes)", token.turn, token.thread_id, count)

        await self._name_conversation(text)
        return self.log.last_assistant()

    async def _name_conversation(self, text: str) -> None:
        if self.log.title != DEFAULT_TITLE:
            return
        title = derive_title(text)
        try:
            await self._client.set_conversation_title(self.thread_id, title, self._config.user_id)
            self.log.title = title
        except AgentClientError as exc:
            logger.warning("Failed to save conversation title: %s", exc)
            # Persisting any title keeps the conversation listed.
            try:
                await self._client.set_conversation_title(
                    self.thread_id, DEFAULT_TITLE, self._config.user_id,
                )
            except AgentClientError as fallback_exc:
                logger.warning("Failed to save default conversation title: %s", fallback_exc)

    def _cancel_turn_task(self) -> None:
        task = self._turn_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._turn_task = None

    # ── conversations ────────────────────────────────────────────

    def new_conversation(self, thread_id: str | None = None) -> str:
        """Abandon any active turn and start an empty conversation."""
        self._cancel_turn_task()
        self.reconciler.reset(thread_id)
        logger.info("Started conversation %s", self.thread_id)
        return self.thread_id

    async def load_history(self, thread_id: str) -> tuple[Message, ...]:
        """Replace the log with a stored conversation's history."""
        messages = await self._client.get_history(thread_id, self._config.user_id)
        self._cancel_turn_task()
        self.reconciler.replace_log(messages, thread_id=thread_id)
        try:
            title = await self._client.get_conversation_title(thread_id, self._config.user_id)
        except AgentClientError as exc:
            logger.warning("Failed to load title for %s: %s", thread_id, exc)
            title = ""
        self.log.title = title or DEFAULT_TITLE
        logger.info("Loaded %d messages for thread %s", len(messages), thread_id)
        return self.log.snapshot()

    async def submit_feedback(
        self,
        run_id: str,
        score: float,
        *,
        comment: str | None = None,
        message_text: str | None = None,
    ) -> None:
        """Record a 0..1 rating for the run that produced a reply."""
        if not 0.0 <= score <= 1.0:
            raise ValueError(f"score must be between 0 and 1, got {score}")
        await self._client.create_feedback(
            run_id,
            FEEDBACK_KEY_COMMENT if comment else FEEDBACK_KEY_STARS,
            score,
            conversation_id=self.thread_id,
            commented_message_text=message_text,
            kwargs={"comment": comment} if comment else {},
        )

    # ── tool resources ───────────────────────────────────────────

    async def _fetch_graph(self, graph_id: str) -> Any:
        try:
            return await self._client.get_graph(graph_id)
        except AgentClientError as exc:
            raise SubFetchError(f"graph {graph_id}", str(exc)) from exc

    async def open_citation(self, entry: CitationEntry) -> HighlightedDocument:
        """Fetch a cited document with its highlights burned in."""
        try:
            return await load_highlighted_document(
                self._client,
                entry,
                user_id=self._config.user_id,
                color=parse_color(self._config.highlight_color),
                opacity=self._config.highlight_opacity,
            )
        except AgentClientError as exc:
            raise SubFetchError(f"document {entry.pdf_file}", str(exc)) from exc
