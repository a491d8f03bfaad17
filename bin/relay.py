"""BiblioAI relay pipe: one user message in, a stream of wire records out.

The relay issues exactly one streaming request to the Gemini API per turn
(persona system instruction, domain-restriction hint, Google Search
grounding enabled) and pumps every backend chunk through the EventFramer.

Failure paths are kept apart:
  - before the stream exists, ``open`` raises BackendError and the HTTP layer
    answers with a structured status + ``{error}`` body;
  - once streaming, any exception becomes one closing error record and the
    stream ends cleanly.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterator, Optional
from urllib.parse import urlparse

import requests

import config as config_mod
from config import Config
from framer import RELAY_FAILURE_TEXT, BufferedSink, EventFramer, SourceFilter


DOMAIN_HINT = "Folosește exclusiv informații de pe domeniul {domain} (site:{domain})."


class BackendError(Exception):
    """The backend refused or broke the request."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


# ---------------------------------------------------------------------------
# Gemini streaming client
# ---------------------------------------------------------------------------
class GeminiBackend:
    """Thin client for ``models/{model}:streamGenerateContent`` (SSE mode).

    No session is kept: every turn opens and owns its own connection.
    """

    def __init__(self, api_key: str, model: str = "gemini-2.5-flash",
                 base_url: str = "https://generativelanguage.googleapis.com/v1beta/models",
                 timeout_s: float = 120.0) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    @property
    def stream_url(self) -> str:
        return f"{self.base_url}/{self.model}:streamGenerateContent?alt=sse"

    def open_stream(self, payload: Dict[str, Any]) -> requests.Response:
        """POST the payload and return the open streaming response."""
        headers = {"Content-Type": "application/json", "x-goog-api-key": self.api_key}
        if config_mod.DEBUG_MODE:
            print(f"[DEBUG] Gemini → {self.stream_url}")
        try:
            resp = requests.post(self.stream_url, json=payload, headers=headers,
                                 timeout=self.timeout_s, stream=True)
        except requests.RequestException as exc:
            raise BackendError(f"Gemini request failed: {exc}") from exc
        if resp.status_code >= 400:
            detail = resp.text[:500]
            resp.close()
            raise BackendError(f"Gemini HTTP {resp.status_code}: {detail}", status=resp.status_code)
        # SSE bodies often omit a charset; Gemini always sends UTF-8.
        resp.encoding = "utf-8"
        return resp

    def iter_chunks(self, resp: requests.Response) -> Iterator[Dict[str, Any]]:
        """Yield decoded JSON chunks from the backend's SSE body."""
        for line in resp.iter_lines(decode_unicode=True):
            if not line or not line.startswith("data:"):
                continue
            try:
                data = json.loads(line[5:].strip())
            except json.JSONDecodeError:
                print(f"[BiblioAI] Skipping undecodable backend line ({len(line)} chars)")
                continue
            if isinstance(data, dict) and "error" in data:
                err = data["error"] if isinstance(data["error"], dict) else {}
                raise BackendError(f"Gemini stream error: {err.get('message', data['error'])}",
                                   status=err.get("code"))
            yield data


def domain_filter(domain: str) -> SourceFilter:
    """Citation filter keeping sources whose host (or title) is within *domain*."""
    domain = domain.lower().strip(".")

    def _within(name: str) -> bool:
        name = (name or "").lower().strip(".")
        return name == domain or name.endswith("." + domain)

    def _allowed(uri: str, title: str) -> bool:
        host = urlparse(uri).hostname or ""
        # Grounding uris may be redirect links; the title then carries the site.
        return _within(host) or _within(title)

    return _allowed


# ---------------------------------------------------------------------------
# Relay pipe
# ---------------------------------------------------------------------------
class RelayPipe:
    """Turns one user message into a stream of framed wire records."""

    def __init__(self, backend: GeminiBackend, cfg: Config) -> None:
        self.backend = backend
        self.cfg = cfg

    def build_payload(self, message: str) -> Dict[str, Any]:
        """Construct the single streaming generateContent request for a turn."""
        query = message
        if self.cfg.domain_policy != "off":
            query = f"{message}\n\n{DOMAIN_HINT.format(domain=self.cfg.domain)}"
        return {
            "contents": [{"role": "user", "parts": [{"text": query}]}],
            "system_instruction": {"parts": [{"text": self.cfg.persona_instruction()}]},
            "tools": [{"google_search": {}}],
            "generationConfig": {"temperature": self.cfg.temperature},
        }

    def source_filter(self) -> Optional[SourceFilter]:
        if self.cfg.domain_policy == "filter":
            return domain_filter(self.cfg.domain)
        return None

    def open(self, message: str) -> requests.Response:
        """Issue the backend request.  Raises BackendError before any stream exists."""
        if not isinstance(message, str) or not message.strip():
            raise ValueError("message must be a non-empty string")
        return self.backend.open_stream(self.build_payload(message))

    def iter_records(self, resp: requests.Response) -> Iterator[str]:
        """Pump backend chunks through the framer, yielding each record as it is framed.

        Always terminates cleanly: an exception while iterating yields one
        closing error record.  The backend response is closed on every exit,
        including consumer disconnect.
        """
        sink = BufferedSink()
        framer = EventFramer(sink, source_filter=self.source_filter())
        try:
            for chunk in self.backend.iter_chunks(resp):
                framer.emit(chunk)
                yield from sink.drain()
                if framer.closed:
                    return
        except Exception as exc:
            print(f"[BiblioAI] Relay stream failed after {framer.emitted} events: {exc}")
            framer.emit_error(RELAY_FAILURE_TEXT)
            yield from sink.drain()
        finally:
            framer.close()
            resp.close()
        if config_mod.DEBUG_MODE:
            print(f"[DEBUG] Relay stream complete ({framer.emitted} events)")

    def stream(self, message: str) -> Iterator[str]:
        """``open`` followed by ``iter_records``."""
        return self.iter_records(self.open(message))
