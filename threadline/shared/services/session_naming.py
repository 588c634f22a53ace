"""Derive conversation titles from the user's first message.

Titles are computed locally; nothing is sent to a model.
"""
from __future__ import annotations

from threadline.shared.models.session import DEFAULT_TITLE

TITLE_MAX_CHARS = 40
# A mid-word cut backs up to the last space only when it sits past this index.
TITLE_MIN_WORD_CUT = 20


def derive_title(user_message: str, default: str = DEFAULT_TITLE) -> str:
    """Return a short title for a conversation started by *user_message*.

    Newlines are collapsed, the text is cut to ``TITLE_MAX_CHARS`` and, when
    the cut lands inside a word, trimmed back to the last space past
    ``TITLE_MIN_WORD_CUT``.
    """
    text = (user_message or "").replace("\r", " ").replace("\n", " ")
    title = text.strip()[:TITLE_MAX_CHARS]

    if len(user_message or "") > TITLE_MAX_CHARS and not title.endswith(" "):
        last_space = title.rfind(" ")
        if last_space > TITLE_MIN_WORD_CUT:
            title = title[:last_space]

    return title.strip() or default
