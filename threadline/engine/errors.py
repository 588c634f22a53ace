"""Exception hierarchy for the chat client.

Only transport failures end a turn. Sub-fetch and overlay failures are
caught where they happen and rendered inline or degraded gracefully.
"""
from __future__ import annotations


class ThreadlineError(Exception):
    """Base exception for all client errors."""


class AgentClientError(ThreadlineError):
    """An HTTP call to the agent backend failed."""
    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class StreamError(AgentClientError):
    """The turn stream could not be opened or broke while reading."""


class SubFetchError(ThreadlineError):
    """A graph or document retrieval triggered by a tool result failed."""
    def __init__(self, resource: str, reason: str):
        self.resource = resource
        self.reason = reason
        super().__init__(f"Failed to fetch {resource}: {reason}")


class OverlayError(ThreadlineError):
    """Highlights could not be drawn onto a document."""


class ConfigError(ThreadlineError):
    """Configuration file is missing or malformed."""
