"""Event framing: one backend chunk in, one newline-delimited wire record out.

Records use the server-sent-events shape ``data: <json>\\n\\n`` with the JSON
kept on a single line, so a record is self-delimiting on the wire.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import replace
from typing import Any, Callable, Iterator, Mapping, Optional

import config as config_mod
from models import WireEvent, backend_citations, citation_pairs


RELAY_FAILURE_TEXT = (
    "Ne pare rău, răspunsul a fost întrerupt de o problemă de conexiune. "
    "Vă rugăm să încercați din nou."
)

SourceFilter = Callable[[str, str], bool]


def event_from_chunk(chunk: Mapping[str, Any]) -> WireEvent:
    """Build a WireEvent field by field from one raw backend chunk.

    Text comes from ``candidates[0].content.parts[].text`` (thought parts are
    skipped); citations from ``candidates[0].groundingMetadata.groundingChunks``.
    """
    if not isinstance(chunk, Mapping):
        raise ValueError(f"Backend chunk must be an object, got {type(chunk).__name__}")
    text_parts = []
    candidates = chunk.get("candidates") or []
    if candidates:
        content = candidates[0].get("content") or {}
        for part in content.get("parts") or []:
            if part.get("thought"):
                continue
            text = part.get("text")
            if text is None:
                continue
            if not isinstance(text, str):
                raise ValueError("Backend part text must be a string")
            text_parts.append(text)
    return WireEvent(text="".join(text_parts), sources=citation_pairs(backend_citations(chunk)))


def encode_record(event: WireEvent) -> str:
    """Serialise one event as a ``data: <json>\\n\\n`` record."""
    record = "data: " + json.dumps(event.to_dict(), ensure_ascii=False) + "\n\n"
    # Fails here (not later inside the HTTP server) on unencodable text.
    record.encode("utf-8")
    return record


class BufferedSink:
    """In-memory record sink drained by a pull-style consumer."""

    def __init__(self) -> None:
        self._records: deque = deque()
        self.closed = False

    def write(self, record: str) -> None:
        if self.closed:
            raise RuntimeError("write to closed sink")
        self._records.append(record)

    def close(self) -> None:
        self.closed = True

    def drain(self) -> Iterator[str]:
        while self._records:
            yield self._records.popleft()


class EventFramer:
    """Frames backend chunks onto a sink, in arrival order, without buffering.

    A chunk that cannot be framed is replaced by a single error record and the
    sink is closed; nothing is emitted after that.
    """

    def __init__(self, sink, source_filter: Optional[SourceFilter] = None) -> None:
        self.sink = sink
        self.source_filter = source_filter
        self.emitted = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, chunk: Mapping[str, Any]) -> bool:
        """Frame and write one chunk.  Returns False if nothing normal was written."""
        if self._closed:
            return False
        try:
            event = event_from_chunk(chunk)
            if self.source_filter is not None and event.sources:
                kept = tuple(pair for pair in event.sources if self.source_filter(*pair))
                event = replace(event, sources=kept)
            record = encode_record(event)
        except (AttributeError, TypeError, ValueError) as exc:
            print(f"[BiblioAI] Could not frame backend chunk: {exc}")
            self.emit_error(RELAY_FAILURE_TEXT)
            return False
        if config_mod.DEBUG_MODE:
            print(f"[DEBUG] Frame #{self.emitted}: {len(event.text)} chars, {len(event.sources)} sources")
        self.sink.write(record)
        self.emitted += 1
        return True

    def emit_error(self, text: str) -> None:
        """Write the closing error record and close the sink."""
        if self._closed:
            return
        self.sink.write(encode_record(WireEvent(text=text, error=True)))
        self.close()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self.sink.close()
