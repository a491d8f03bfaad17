#!/usr/bin/env python3
"""BiblioAI streaming relay.

Flask server that relays one chat message per request to the Gemini API
(with Google Search grounding) and streams the answer back as
server-sent events, plus a terminal client that renders a streamed turn.

Usage:
    # Server mode (default)
    export GEMINI_API_KEY="..."
    python bin/biblioai.py

    # Ask a running server one question
    python bin/biblioai.py ask "Care este programul sălii de lectură?"
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

from flask import Flask, Response, jsonify, request as flask_request

# Ensure bin/ is on the path so sibling modules are importable
sys.path.insert(0, str(Path(__file__).resolve().parent))

import config as config_mod
from config import Config, _env_bool, init_backend, load_config, parse_args
from models import Message, Role
from relay import BackendError, RelayPipe
from turn import ChatTransport, TurnController


# ---------------------------------------------------------------------------
# Flask app factory
# ---------------------------------------------------------------------------
def create_app(cfg: Config, relay: Optional[RelayPipe], url_prefix: str | None = None) -> Flask:
    """Create the relay Flask application.

    *relay* is None when the process is not configured; chat requests then
    fail with 500 instead of opening a stream.
    """
    app = Flask(__name__, static_folder=None)
    if url_prefix is None:
        url_prefix = cfg.url_prefix

    @app.after_request
    def add_cors_headers(response):
        """Allow the embedding page's origin to call the chat endpoint."""
        origin = flask_request.headers.get("Origin", "")
        if origin and origin in cfg.allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "POST, OPTIONS"
        return response

    @app.errorhandler(405)
    def method_not_allowed(_exc):
        return jsonify({"error": "Method not allowed"}), 405

    @app.route(url_prefix + "/health", methods=["GET"])
    def health():
        """Simple liveness endpoint for local health checks."""
        return jsonify({"ok": True})

    @app.route(url_prefix + "/server_info", methods=["GET"])
    def server_info():
        """Expose non-secret relay settings."""
        return jsonify({
            "persona": "BiblioAI",
            "model": cfg.model,
            "domain": cfg.domain,
            "domain_policy": cfg.domain_policy,
            "configured": relay is not None,
        })

    @app.route(url_prefix + "/api/chat", methods=["POST", "OPTIONS"])
    def chat():
        """Relay one message and stream the answer as server-sent events."""
        if flask_request.method == "OPTIONS":
            return ("", 204)

        body = flask_request.get_json(force=True, silent=True)
        message = body.get("message") if isinstance(body, dict) else None
        if not isinstance(message, str) or not message.strip():
            return jsonify({"error": "Message is required"}), 400

        if relay is None:
            return jsonify({"error": "Server is not configured"}), 500

        try:
            upstream = relay.open(message)
        except BackendError as exc:
            print(f"[BiblioAI] Upstream request failed: {exc}")
            return jsonify({"error": "Upstream request failed"}), 502
        except Exception as exc:
            print(f"[BiblioAI] Error in chat route: {exc}")
            return jsonify({"error": "Internal Server Error"}), 500

        if config_mod.DEBUG_MODE:
            print(f"[DEBUG] Streaming answer for message ({len(message)} chars)")
        return Response(
            relay.iter_records(upstream),
            mimetype="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    return app


# ---------------------------------------------------------------------------
# Terminal renderer for `ask`
# ---------------------------------------------------------------------------
class TerminalView:
    """Redraws the streaming model message in place, keyed by message id."""

    def __init__(self, out=None) -> None:
        self.out = out or sys.stdout
        self._shown: dict = {}

    def update(self, message: Message) -> None:
        if message.role is Role.USER:
            self.out.write(f"> {message.text}\n")
            self.out.flush()
            return
        previous = self._shown.get(message.id, "")
        if message.text.startswith(previous):
            self.out.write(message.text[len(previous):])
        else:
            # Replaced text (error or fallback): restart the line.
            self.out.write("\n" + message.text)
        self._shown[message.id] = message.text
        self.out.flush()

    def finish(self, message: Message) -> None:
        self.out.write("\n")
        if message.sources:
            self.out.write("\nSurse:\n")
            for source in message.sources:
                self.out.write(f"  - {source.title}: {source.uri}\n")
        self.out.flush()


def run_ask(cfg: Config, text: str, url: str | None = None) -> int:
    """Run one streamed turn against a relay and render it on stdout."""
    url = url or f"http://{cfg.bind_host}:{cfg.bind_port}{cfg.url_prefix}/api/chat"
    view = TerminalView()
    controller = TurnController(ChatTransport(url, timeout_s=cfg.timeout_s))
    controller.on_update = view.update
    try:
        final = controller.submit_turn(text)
    except KeyboardInterrupt:
        controller.cancel()
        return 130
    if final is None:
        print("[BiblioAI] Nothing to send.")
        return 2
    view.finish(final)
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main(argv: list | None = None) -> int:
    """Entrypoint for server startup and the one-shot `ask` client."""
    args = parse_args(argv)
    config_mod.DEBUG_MODE = args.debug or _env_bool("BIBLIOAI_DEBUG", False)
    cfg = load_config()
    if args.url_prefix is not None:
        cfg.url_prefix = args.url_prefix.strip().rstrip("/")

    if args.cmd == "ask":
        return run_ask(cfg, args.text, args.url)

    # Default: serve.  Fail fast when unconfigured.
    backend, error = init_backend(cfg)
    if error:
        print(f"[BiblioAI] Configuration error: {error}", file=sys.stderr)
        return 2
    relay = RelayPipe(backend, cfg)

    print(f"\n{'='*60}")
    print(f"  BiblioAI Relay")
    print(f"{'='*60}")
    print(f"  Bind       : {cfg.bind_host}:{cfg.bind_port}")
    print(f"  Endpoint   : {cfg.url_prefix}/api/chat")
    print(f"  Model      : {cfg.model}")
    print(f"  Domain     : {cfg.domain} (policy: {cfg.domain_policy})")
    print(f"  Config YAML: {config_mod._CONFIG_YAML_STATUS}")
    print(f"  Debug      : {'ON' if config_mod.DEBUG_MODE else 'off'}")
    print(f"{'='*60}\n")

    app = create_app(cfg, relay)
    app.run(host=cfg.bind_host, port=cfg.bind_port, debug=False, threaded=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
