"""BiblioAI data model: message and source records plus the wire event.

``Message`` and ``Source`` are the two records handed to UI collaborators.
``WireEvent`` is the unit that crosses the relay boundary; it is always built
field by field from plain data and never from an opaque backend object.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Tuple


class Role(str, Enum):
    """Author of a message, as seen by the client."""
    USER = "user"
    MODEL = "model"


@dataclass(frozen=True)
class Source:
    """A citation attached to assistant output.  Identity is the uri alone."""
    uri: str
    title: str = field(default="", compare=False)

    @classmethod
    def from_raw(cls, raw: Any) -> "Source":
        """Build from a ``{"uri", "title"}`` mapping or a ``(uri, title)`` pair."""
        if isinstance(raw, Mapping):
            uri, title = raw.get("uri"), raw.get("title")
        elif isinstance(raw, (list, tuple)) and len(raw) == 2:
            uri, title = raw
        else:
            raise ValueError(f"Unsupported source entry: {raw!r}")
        uri = "" if uri is None else str(uri)
        title = uri if title in (None, "") else str(title)
        return cls(uri=uri, title=title)

    def to_dict(self) -> Dict[str, str]:
        return {"uri": self.uri, "title": self.title}


@dataclass(frozen=True)
class Message:
    """Immutable snapshot of one chat message.

    The controller publishes a new snapshot for every change; ``id`` stays
    stable for the lifetime of the message so renderers update by id.
    """
    id: str
    role: Role
    text: str = ""
    sources: Tuple[Source, ...] = ()

    @classmethod
    def create(cls, role: Role, text: str = "") -> "Message":
        """Allocate a message with a fresh, never reused id."""
        return cls(id=f"{role.value}-{uuid.uuid4().hex}", role=role, text=text)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "text": self.text,
            "sources": [s.to_dict() for s in self.sources],
        }


@dataclass(frozen=True)
class WireEvent:
    """One discrete unit of the streamed wire protocol.

    Fields:
        text:    text fragment, possibly empty
        sources: raw (uri, title) citation pairs in arrival order, not deduplicated
        error:   marks the synthetic closing event of a failed stream
    """
    text: str = ""
    sources: Tuple[Tuple[str, str], ...] = ()
    error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "sources": [{"uri": uri, "title": title} for uri, title in self.sources],
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "WireEvent":
        """Decode one wire record payload.

        Accepts the relay's own ``{text, sources, error}`` shape, and raw
        backend chunks (``candidates[0].groundingMetadata``) as forwarded by
        older relays.  Raises ValueError for anything else.
        """
        if not isinstance(data, dict):
            raise ValueError("Wire record must be a JSON object")
        text = data.get("text")
        if text is None:
            text = ""
        if not isinstance(text, str):
            raise ValueError("Wire record text must be a string")

        if "sources" in data:
            raw_sources = data.get("sources") or []
        else:
            raw_sources = backend_citations(data)
        if not isinstance(raw_sources, list):
            raise ValueError("Wire record sources must be a list")
        return cls(text=text, sources=citation_pairs(raw_sources), error=bool(data.get("error", False)))


def backend_citations(chunk: Mapping[str, Any]) -> list:
    """Extract ``{uri, title}`` entries from a raw backend chunk, if any."""
    candidates = chunk.get("candidates") or []
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], Mapping):
        return []
    grounding = candidates[0].get("groundingMetadata") or {}
    if not isinstance(grounding, Mapping):
        raise ValueError("groundingMetadata must be an object")
    gchunks = grounding.get("groundingChunks") or []
    if not isinstance(gchunks, list):
        raise ValueError("groundingChunks must be a list")
    result = []
    for gchunk in gchunks:
        web = gchunk.get("web") if isinstance(gchunk, Mapping) else None
        if isinstance(web, Mapping):
            result.append({"uri": web.get("uri", ""), "title": web.get("title", "")})
    return result


def citation_pairs(entries: Iterable[Any]) -> Tuple[Tuple[str, str], ...]:
    """Normalise ``{uri, title}`` mappings or pairs to raw string pairs."""
    pairs = []
    for entry in entries:
        source = Source.from_raw(entry)
        pairs.append((source.uri, source.title))
    return tuple(pairs)
