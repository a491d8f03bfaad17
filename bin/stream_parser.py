"""Client-side decoding of the relay's event stream.

Bytes arrive in arbitrary pieces: a record may be split across reads (even
inside a multi-byte UTF-8 sequence), several records may share one read, and
the last record may still be waiting for its terminating blank line.  The
parser buffers text until a blank line closes a record, then decodes it.

A malformed record is logged and skipped; the stream carries on.  End of
stream is a normal completion whether or not the final record was terminated.
"""

from __future__ import annotations

import codecs
import json
from typing import Iterable, Iterator, List, Optional

from models import WireEvent


class EventParser:
    """Incremental ``data: <json>`` record decoder for one turn."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending_cr = ""
        self.decoded = 0
        self.skipped = 0
        self._closed = False

    def feed(self, data: bytes) -> List[WireEvent]:
        """Consume one piece of the byte stream; return the events it completes."""
        if self._closed:
            raise RuntimeError("parser already closed")
        text = self._pending_cr + self._decoder.decode(data)
        self._pending_cr = ""
        if text.endswith("\r"):
            # "\r\n" may straddle two reads.
            text, self._pending_cr = text[:-1], "\r"
        start = max(len(self._buffer) - 1, 0)
        self._buffer += text.replace("\r\n", "\n")
        events = []
        while True:
            end = self._buffer.find("\n\n", start)
            if end < 0:
                break
            block, self._buffer = self._buffer[:end], self._buffer[end + 2:]
            start = 0
            event = self._decode_block(block)
            if event is not None:
                events.append(event)
        return events

    def close(self) -> List[WireEvent]:
        """Flush at end of stream, decoding a trailing unterminated record."""
        if self._closed:
            return []
        events = self.feed(b"")
        self._buffer += self._decoder.decode(b"", final=True) + self._pending_cr
        self._pending_cr = ""
        self._closed = True
        block, self._buffer = self._buffer.strip("\r\n"), ""
        if block:
            event = self._decode_block(block)
            if event is not None:
                events.append(event)
        return events

    def _decode_block(self, block: str) -> Optional[WireEvent]:
        data_lines = []
        for line in block.split("\n"):
            line = line.rstrip("\r")
            if not line or line.startswith(":"):
                continue  # keep-alive / comment
            if line.startswith("data:"):
                value = line[5:]
                data_lines.append(value[1:] if value.startswith(" ") else value)
        if not data_lines:
            return None
        payload = "\n".join(data_lines)
        try:
            event = WireEvent.from_dict(json.loads(payload))
        except (ValueError, TypeError, AttributeError) as exc:
            self.skipped += 1
            preview = payload[:120] + ("..." if len(payload) > 120 else "")
            print(f"[BiblioAI] Skipping malformed stream record ({exc}): {preview}")
            return None
        self.decoded += 1
        return event


def iter_events(byte_chunks: Iterable[bytes], parser: EventParser | None = None) -> Iterator[WireEvent]:
    """Lazily decode an iterable of byte pieces into WireEvents."""
    parser = parser or EventParser()
    for piece in byte_chunks:
        if piece:
            yield from parser.feed(piece)
    yield from parser.close()
