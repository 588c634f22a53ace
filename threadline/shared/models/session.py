"""Conversation state: the ordered message log of one thread."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Iterable
import uuid

from threadline.shared.models.message import Message, MessageRole

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Conversation"

LogListener = Callable[[tuple[Message, ...]], None]


def _new_thread_id() -> str:
    return str(uuid.uuid4())


class ConversationLog:
    """Holds the append-and-patch message history for a single thread.

    Messages are never edited in place: a patch swaps in a copy, so a
    snapshot handed to a reader stays consistent after later mutations.
    Listeners receive a fresh snapshot after every mutation.
    """

    def __init__(self, thread_id: str | None = None, title: str = DEFAULT_TITLE) -> None:
        self.thread_id: str = thread_id or _new_thread_id()
        self.title: str = title or DEFAULT_TITLE
        self._messages: list[Message] = []
        self._listeners: list[LogListener] = []

    # ── observation ──

    def subscribe(self, listener: LogListener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Conversation log listener failed")

    def snapshot(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def message_count(self) -> int:
        return len(self._messages)

    # ── mutation ──

    def add_message(self, message: Message) -> Message:
        self._messages.append(message)
        self._notify()
        return message

    def last_assistant_index(self) -> int | None:
        for index in range(len(self._messages) - 1, -1, -1):
            if self._messages[index].role is MessageRole.ASSISTANT:
                return index
        return None

    def last_assistant(self) -> Message | None:
        index = self.last_assistant_index()
        return None if index is None else self._messages[index]

    def update_last_assistant(self, content: str) -> bool:
        """Set the content of the most recent assistant message."""
        index = self.last_assistant_index()
        if index is None:
            return False
        current = self._messages[index]
        if current.content == content:
            return True
        self._messages[index] = dataclasses.replace(current, content=content)
        self._notify()
        return True

    def replace_last_assistant(self, message: Message) -> None:
        """Swap the most recent assistant message for ``message``.

        Appends ``message`` when the log holds no assistant message.
        """
        index = self.last_assistant_index()
        if index is None:
            self._messages.append(message)
        else:
            self._messages[index] = message
        self._notify()

    def move_last_assistant_to_end(self) -> bool:
        """Relocate the most recent assistant message to the end of the log.

        Returns ``True`` when the log changed. A no-op when the assistant
        message is already last or there is none.
        """
        index = self.last_assistant_index()
        if index is None or index == len(self._messages) - 1:
            return False
        message = self._messages.pop(index)
        self._messages.append(message)
        self._notify()
        return True

    def replace_all(self, messages: Iterable[Message], thread_id: str | None = None) -> None:
        """Replace the whole history, e.g. when switching conversations."""
        if thread_id is not None:
            self.thread_id = thread_id
        self._messages = list(messages)
        self._notify()

    def reset(self, thread_id: str | None = None) -> None:
        """Start a fresh conversation with a new (or given) thread id."""
        self.thread_id = thread_id or _new_thread_id()
        self.title = DEFAULT_TITLE
        self._messages = []
        self._notify()
