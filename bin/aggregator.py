"""Folding wire events into one running assistant message.

States: EMPTY -> ACCUMULATING -> FINALIZED.  Text fragments are appended
verbatim.  Sources are keyed by exact uri string (no normalisation: casing,
trailing slashes and query order all make distinct sources); the first title
seen for a uri wins and arrival order is preserved.  An error event replaces
the text, drops the sources, and closes the turn.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable

from models import Message, Role, Source, WireEvent


class AggregatorState(str, Enum):
    EMPTY = "empty"
    ACCUMULATING = "accumulating"
    FINALIZED = "finalized"


@dataclass
class TurnState:
    """Transient accumulation for exactly one in-flight turn."""
    text: str = ""
    sources: Dict[str, Source] = field(default_factory=dict)  # uri -> Source, insertion ordered
    is_open: bool = True
    events: int = 0
    failed: bool = False


class Aggregator:
    """Pure fold over WireEvents into a TurnState."""

    def __init__(self) -> None:
        self.turn = TurnState()
        self.state = AggregatorState.EMPTY

    @property
    def finalized(self) -> bool:
        return self.state is AggregatorState.FINALIZED

    def fold(self, event: WireEvent) -> AggregatorState:
        if self.finalized:
            print("[BiblioAI] Ignoring event received after turn was finalized")
            return self.state
        turn = self.turn
        turn.events += 1
        self.state = AggregatorState.ACCUMULATING

        if event.error:
            turn.text = event.text
            turn.sources = {}
            turn.failed = True
            return self.finalize()

        turn.text += event.text
        for uri, title in event.sources:
            if uri and uri not in turn.sources:
                turn.sources[uri] = Source(uri=uri, title=title or uri)
        return self.state

    def fold_all(self, events: Iterable[WireEvent]) -> AggregatorState:
        for event in events:
            if self.fold(event) is AggregatorState.FINALIZED:
                break
        return self.finalize()

    def finalize(self) -> AggregatorState:
        """Close the turn (stream end or error).  Idempotent."""
        self.turn.is_open = False
        self.state = AggregatorState.FINALIZED
        return self.state

    def snapshot(self, message_id: str) -> Message:
        """Current state as an immutable model Message under *message_id*."""
        return Message(
            id=message_id,
            role=Role.MODEL,
            text=self.turn.text,
            sources=tuple(self.turn.sources.values()),
        )
