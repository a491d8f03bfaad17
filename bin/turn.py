"""BiblioAI turn controller: one request/response turn seen from the client.

The controller posts the user's message to the relay, pulls wire events from
the response body one at a time, folds them into the running assistant
message, and publishes an immutable snapshot after every event.  Snapshots
are keyed by the message id; ``messages`` is the id-ordered view a renderer
redraws from.

Every submitted turn ends with a published, non-empty assistant message.
Failures show one of the fixed fallback texts below, never exception text.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Callable, Dict, Iterator, List, Optional

import requests

import config as config_mod
from aggregator import Aggregator
from models import Message, Role, WireEvent
from stream_parser import iter_events


WELCOME_ID = "initial-message"
WELCOME_TEXT = (
    "Bun venit la asistentul AI al Bibliotecii Naționale a României! Cum vă pot ajuta "
    "astăzi? Voi încerca să răspund la întrebările dumneavoastră folosind informații "
    "de pe domeniul bibnat.ro."
)
FALLBACK_ERROR_TEXT = "Ne pare rău, a apărut o eroare. Vă rugăm să încercați din nou mai târziu."
CONNECTION_ERROR_TEXT = "Scuze, a apărut o problemă de conexiune. Vă rugăm reîncercați."


class TransportError(Exception):
    """The chat request could not be completed."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


# ---------------------------------------------------------------------------
# HTTP transport to the relay
# ---------------------------------------------------------------------------
class ChatTransport:
    """POSTs one message to the relay's chat endpoint and streams the body."""

    def __init__(self, url: str, timeout_s: float = 120.0) -> None:
        self.url = url
        self.timeout_s = timeout_s

    def open(self, text: str) -> requests.Response:
        try:
            resp = requests.post(self.url, json={"message": text},
                                 headers={"Accept": "text/event-stream"},
                                 timeout=self.timeout_s, stream=True)
        except requests.RequestException as exc:
            raise TransportError(f"Chat request failed: {exc}") from exc
        if not resp.ok:
            try:
                detail = resp.json().get("error", "")
            except ValueError:
                detail = ""
            resp.close()
            raise TransportError(detail or f"Request failed with status {resp.status_code}",
                                 status=resp.status_code)
        return resp

    def iter_bytes(self, resp: requests.Response) -> Iterator[bytes]:
        """Body pieces as they arrive (no re-chunking)."""
        try:
            for piece in resp.iter_content(chunk_size=None):
                yield piece
        except requests.RequestException as exc:
            raise TransportError(f"Chat stream interrupted: {exc}") from exc


# ---------------------------------------------------------------------------
# Turn controller
# ---------------------------------------------------------------------------
class TurnController:
    """Runs turns sequentially for one conversation.

    ``on_update`` receives each published Message snapshot.  The controller is
    the only writer of ``messages``; callers read.
    """

    def __init__(self, transport: ChatTransport,
                 on_update: Optional[Callable[[Message], None]] = None) -> None:
        self.transport = transport
        self.on_update = on_update
        self.messages: Dict[str, Message] = {}
        self._lock = threading.Lock()
        self._open = False
        self._cancelled = False
        self._response: Optional[requests.Response] = None
        self._publish(Message(id=WELCOME_ID, role=Role.MODEL, text=WELCOME_TEXT))

    @property
    def is_open(self) -> bool:
        return self._open

    def conversation(self) -> List[Message]:
        return list(self.messages.values())

    def _publish(self, message: Message) -> None:
        self.messages[message.id] = message
        if self.on_update is not None:
            self.on_update(message)

    def submit_turn(self, user_text: str) -> Optional[Message]:
        """Run one turn to completion and return the final assistant message.

        Returns None without side effects for blank text or while another
        turn is open.
        """
        text = user_text.strip() if isinstance(user_text, str) else ""
        if not text:
            return None
        with self._lock:
            if self._open:
                print("[BiblioAI] Turn rejected: another turn is still open")
                return None
            self._open = True
            self._cancelled = False
        try:
            return self._run_turn(text)
        finally:
            with self._lock:
                self._open = False
                self._response = None

    def cancel(self) -> None:
        """Close the in-flight response; the turn finalizes with what it has."""
        with self._lock:
            if not self._open:
                return
            self._cancelled = True
            response = self._response
        if response is not None:
            response.close()

    def _run_turn(self, text: str) -> Message:
        self._publish(Message.create(Role.USER, text))
        placeholder = Message.create(Role.MODEL)
        self._publish(placeholder)

        aggregator = Aggregator()
        failed = False
        response = None
        try:
            response = self.transport.open(text)
            with self._lock:
                self._response = response
                cancelled = self._cancelled
            if not cancelled:
                for event in iter_events(self.transport.iter_bytes(response)):
                    aggregator.fold(event)
                    self._publish(aggregator.snapshot(placeholder.id))
                    if aggregator.finalized:
                        break
        except Exception as exc:
            if not self._cancelled:
                failed = True
                print(f"[BiblioAI] Turn failed after {aggregator.turn.events} events: {exc}")
        finally:
            if response is not None:
                response.close()

        if failed and aggregator.turn.events and not aggregator.finalized:
            aggregator.fold(WireEvent(text=CONNECTION_ERROR_TEXT, error=True))
        aggregator.finalize()

        final = aggregator.snapshot(placeholder.id)
        if not final.text:
            # Citation-only turns keep their sources under the fallback text.
            final = replace(final, text=FALLBACK_ERROR_TEXT)
        if config_mod.DEBUG_MODE:
            print(f"[DEBUG] Turn {placeholder.id} finalized: {len(final.text)} chars, "
                  f"{len(final.sources)} sources, {aggregator.turn.events} events")
        self._publish(final)
        return final
