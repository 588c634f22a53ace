"""Adapters package - Bridge between the agent transport and the engine.

This package contains the stream reader that turns response bytes into
envelopes and the classifier that turns envelopes into stream events.
"""
from __future__ import annotations

__all__ = [
    "classify",
    "read_envelopes",
    "RawEnvelope",
    "StreamEvent",
]

from threadline.adapters.events import RawEnvelope, StreamEvent, classify
from threadline.adapters.stream_reader import read_envelopes
