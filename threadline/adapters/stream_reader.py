"""Transport reader for the backend's line-oriented event stream.

Records look like ``data: {json}\\n``. The stream ends with ``data: [DONE]``
or when the connection closes. Chunk boundaries never line up with record
boundaries, so partial lines are buffered until their newline arrives.
"""
from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator

from threadline.adapters.events import Envelope, RawEnvelope

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


class _Done(Exception):
    """Internal marker: the sentinel record was seen."""


def _parse_line(line: str) -> Envelope | None:
    """Return the envelope carried by ``line``; ``None`` for non-data lines."""
    line = line.rstrip("\r")
    if not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX):]
    if not payload:
        return None
    if payload == DONE_SENTINEL:
        raise _Done
    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        logger.warning("Stream parse error: %s (payload=%.200r)", exc, payload)
        return RawEnvelope(text=payload, error=str(exc))


async def read_envelopes(chunks: AsyncIterable[bytes]) -> AsyncIterator[Envelope]:
    """Yield parsed envelopes from an async iterable of byte chunks.

    Single pass and forward only. Terminates on the ``[DONE]`` sentinel or
    when ``chunks`` is exhausted. Malformed payloads come out as
    :class:`RawEnvelope` instead of aborting the stream. Text left in the
    buffer at close is yielded as a bare ``{"content": ...}`` envelope.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    iterator = chunks.__aiter__()
    try:
        async for chunk in iterator:
            buffer += decoder.decode(chunk)
            lines = buffer.split("\n")
            buffer = lines.pop()
            for line in lines:
                envelope = _parse_line(line)
                if envelope is not None:
                    yield envelope
        buffer += decoder.decode(b"", final=True)
    except _Done:
        logger.debug("Stream sentinel received")
        return
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    leftover = buffer.strip()
    if leftover:
        try:
            envelope = _parse_line(leftover)
        except _Done:
            return
        if envelope is None:
            envelope = {"content": leftover}
        yield envelope
