"""
Server-sent event relay.

Re-frames an upstream byte stream of blank-line separated events into
complete events for the client. Physical reads can end anywhere, including
inside a multi-byte UTF-8 character or between the two line breaks of a
separator, so decoding and event splitting both keep state across chunks:

    chunk 1: b'data: {"a"'          ->  (nothing emitted, buffered)
    chunk 2: b':1}\\n\\ndata: {"b"'   ->  'data: {"a":1}\\n\\n'
    end of stream                   ->  'data: {"b"\\n\\n', 'data: [DONE]\\n\\n'
"""

from __future__ import annotations

import codecs
import logging
from collections.abc import AsyncGenerator, AsyncIterable, Awaitable, Callable

logger = logging.getLogger(__name__)

EVENT_SEPARATOR = "\n\n"
DONE_MARKER = "[DONE]"
SENTINEL_EVENT = f"data: {DONE_MARKER}\n\n"

# Line prefixes that already make a line a valid SSE field
SSE_FIELD_PREFIXES = ("data:", "event:", "id:", "retry:", ":")
# A field name alone on its line is a field with an empty value
SSE_FIELD_NAMES = ("data", "event", "id", "retry")

EVENT_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class EventStreamBuffer:
    """
    Decoder state plus accumulation buffer for one upstream stream.

    Owned by a single request. ``feed`` returns every event completed by the
    new bytes; anything after the last separator stays buffered until more
    bytes arrive or ``flush`` is called at end of stream.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Decoded text not yet terminated by a separator."""
        return self._buffer

    def feed(self, chunk: bytes) -> list[str]:
        """Decode a chunk and return the events it completes (trimmed)."""
        return self._append(self._decoder.decode(chunk))

    def flush(self) -> list[str]:
        """Finish decoding and return remaining events, including a trailing fragment."""
        events = self._append(self._decoder.decode(b"", final=True))
        trailing = self._buffer.strip()
        self._buffer = ""
        if trailing:
            events.append(trailing)
        return events

    def _append(self, text: str) -> list[str]:
        # A CR at the end of one chunk pairs with an LF at the start of the
        # next, so normalize the whole buffer rather than the new text only.
        self._buffer = (self._buffer + text).replace("\r\n", "\n")

        events = []
        while True:
            end = self._buffer.find(EVENT_SEPARATOR)
            if end == -1:
                break
            event = self._buffer[:end].strip()
            self._buffer = self._buffer[end + len(EVENT_SEPARATOR) :]
            if event:
                events.append(event)
        return events


def is_done_event(event: str) -> bool:
    """Check whether an event is the end-of-stream marker."""
    if not event.startswith("data:") or "\n" in event:
        return False
    return event[len("data:") :].strip() == DONE_MARKER


def format_event(event: str) -> str:
    """Wrap a trimmed event for the client, terminated by a blank line.

    Lines that already are SSE fields are sent as they are. Any other line
    (bare JSON, for instance) is sent as a ``data:`` line.
    """
    lines = [
        line if is_field_line(line) else f"data: {line}"
        for line in event.split("\n")
    ]
    return "\n".join(lines) + EVENT_SEPARATOR


def is_field_line(line: str) -> bool:
    """Check whether a line is an SSE field, with or without a value."""
    return line.startswith(SSE_FIELD_PREFIXES) or line in SSE_FIELD_NAMES


async def relay_event_stream(
    chunks: AsyncIterable[bytes],
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    log_prefix: str = "",
) -> AsyncGenerator[str, None]:
    """
    Relay upstream bytes to the client as complete events.

    Events are yielded in arrival order. An upstream end-of-stream marker is
    not forwarded; exactly one sentinel event is yielded once the upstream is
    exhausted. If the client goes away, reading stops without a sentinel.

    Args:
        chunks: Raw upstream body, in arbitrarily sized pieces
        is_disconnected: Optional check for a vanished client, awaited after
            each chunk before reading the next one
        log_prefix: Prefix for log lines (request id)
    """
    buffer = EventStreamBuffer()
    relayed = 0

    async for chunk in chunks:
        for event in buffer.feed(chunk):
            if is_done_event(event):
                continue
            logger.debug(f"{log_prefix}Relaying event: {event[:200]}")
            relayed += 1
            yield format_event(event)

        if is_disconnected is not None and await is_disconnected():
            logger.info(f"{log_prefix}Client disconnected, stopping relay after {relayed} event(s)")
            return

    for event in buffer.flush():
        if is_done_event(event):
            continue
        logger.debug(f"{log_prefix}Relaying final event: {event[:200]}")
        relayed += 1
        yield format_event(event)

    logger.info(f"{log_prefix}Upstream stream ended, relayed {relayed} event(s)")
    yield SENTINEL_EVENT
