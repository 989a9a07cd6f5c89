"""Incremental line-delimited JSON decoder for backend stdout.

Bytes go in via ``feed`` in whatever chunks the pipe delivers; complete
lines come out as ``RawEvent`` objects in exactly input order. Partial
trailing lines stay buffered until the next chunk or ``flush``.

Lines longer than ``max_line_bytes`` are cut at the limit and the rest
of the line is discarded as it arrives, so memory stays bounded no
matter how large a single backend line gets.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINE_BYTES = 8 * 1024 * 1024
TRUNCATION_MARKER = "...[truncated {dropped} bytes]"


@dataclass
class RawEvent:
    """One decoded backend line.

    ``data`` holds the parsed JSON document. Lines that are not valid
    JSON (banners, warnings printed to stdout, truncated lines) carry
    ``data=None`` and their text in ``diagnostic``.
    """
    line_no: int
    data: Any = None
    diagnostic: str | None = None
    truncated: bool = False

    @property
    def is_diagnostic(self) -> bool:
        return self.diagnostic is not None


class StreamDecoder:
    """Split a byte stream on newlines and parse each line as JSON."""

    def __init__(self, max_line_bytes: int = DEFAULT_MAX_LINE_BYTES):
        if max_line_bytes <= 0:
            raise ValueError("max_line_bytes must be positive")
        self.max_line_bytes = max_line_bytes
        self._buffer = bytearray()
        # Bytes thrown away from the current oversized line.
        self._dropped = 0
        self._line_no = 0

    @property
    def lines_seen(self) -> int:
        return self._line_no

    def feed(self, chunk: bytes) -> list[RawEvent]:
        """Consume ``chunk`` and return every event it completed."""
        events: list[RawEvent] = []
        start = 0
        while True:
            nl = chunk.find(b"\n", start)
            if nl < 0:
                self._append(chunk[start:])
                break
            self._append(chunk[start:nl])
            event = self._finish_line()
            if event is not None:
                events.append(event)
            start = nl + 1
        return events

    def flush(self) -> list[RawEvent]:
        """Emit the buffered partial line at end-of-stream, if any."""
        if not self._buffer and not self._dropped:
            return []
        event = self._finish_line()
        return [event] if event is not None else []

    def _append(self, data: bytes) -> None:
        if not data:
            return
        room = self.max_line_bytes - len(self._buffer)
        if room >= len(data):
            self._buffer.extend(data)
            return
        if room > 0:
            self._buffer.extend(data[:room])
        self._dropped += len(data) - max(room, 0)

    def _finish_line(self) -> RawEvent | None:
        raw = bytes(self._buffer)
        dropped = self._dropped
        self._buffer.clear()
        self._dropped = 0
        self._line_no += 1

        if raw.endswith(b"\r"):
            raw = raw[:-1]
        text = raw.decode("utf-8", errors="replace")

        if dropped:
            logger.warning(
                "Line %d exceeded %d bytes, truncated (%d bytes dropped)",
                self._line_no, self.max_line_bytes, dropped,
            )
            return RawEvent(
                line_no=self._line_no,
                diagnostic=text + TRUNCATION_MARKER.format(dropped=dropped),
                truncated=True,
            )

        if not text.strip():
            return None

        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.debug("Line %d is not JSON: %.200s", self._line_no, text)
            return RawEvent(line_no=self._line_no, diagnostic=text)
        return RawEvent(line_no=self._line_no, data=data)
