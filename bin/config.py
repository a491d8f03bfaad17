"""BiblioAI configuration: config.yaml loading, environment overrides, backend init, CLI args."""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple


# ---------------------------------------------------------------------------
# Persona defaults
# ---------------------------------------------------------------------------
DEFAULT_DOMAIN = "bibnat.ro"

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are an expert reference librarian for the National Library of Romania "
    "(Biblioteca Națională a României). Your name is 'BiblioAI'. You must answer "
    "questions based exclusively on information found on the {domain} domain. "
    "Always be helpful, polite, and professional. If you cannot find an answer "
    "within the {domain} domain, state that your knowledge is limited to that "
    "source and you cannot answer the question. Respond in Romanian, as your "
    "primary users are Romanian speakers."
)

DOMAIN_POLICIES = ("hint", "filter", "off")


# ---------------------------------------------------------------------------
# Configuration dataclass
# ---------------------------------------------------------------------------
@dataclass
class Config:
    """Runtime configuration for the relay process."""

    api_key: str = ""  # Backend credential; required to serve.
    model: str = "gemini-2.5-flash"  # Backend model name.
    base_url: str = "https://generativelanguage.googleapis.com/v1beta/models"
    timeout_s: float = 120.0  # Network timeout for backend requests.
    temperature: float = 0.7
    domain: str = DEFAULT_DOMAIN  # Grounding domain the persona is restricted to.
    domain_policy: str = "hint"  # "hint" | "filter" | "off"
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    bind_host: str = "127.0.0.1"
    bind_port: int = 8787
    url_prefix: str = ""  # Path prefix for reverse-proxy deployments.
    allowed_origins: set = field(default_factory=set)

    def persona_instruction(self) -> str:
        """System instruction with the grounding domain filled in."""
        return self.system_instruction.replace("{domain}", self.domain)


def _env_bool(name: str, default: bool) -> bool:
    """Read a permissive boolean env var with a default fallback."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# ---------------------------------------------------------------------------
# config.yaml loader
# ---------------------------------------------------------------------------
_CONFIG_YAML_STATUS = ""  # human-readable load status for startup banner


def _load_config_yaml(project_root: Path | None = None) -> Dict[str, Any]:
    """Load config.yaml from the project directory.

    *project_root* defaults to the parent of the bin/ directory (i.e. the
    repo root).  A missing or unparseable file yields an empty dict.
    """
    global _CONFIG_YAML_STATUS
    import yaml

    if project_root is None:
        project_root = Path(__file__).resolve().parent.parent
    cfg_path = project_root / "config.yaml"
    if not cfg_path.exists():
        _CONFIG_YAML_STATUS = f"not found at {cfg_path}"
        return {}
    try:
        with open(cfg_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        _CONFIG_YAML_STATUS = f"parse error: {exc}"
        return {}
    if not isinstance(data, dict):
        _CONFIG_YAML_STATUS = f"not a mapping at {cfg_path}"
        return {}
    _CONFIG_YAML_STATUS = f"loaded ({len(data)} keys) from {cfg_path}"
    return data


def load_config(yaml_data: Dict[str, Any] | None = None) -> Config:
    """Build Config from config.yaml values overridden by environment variables."""
    if yaml_data is None:
        yaml_data = _load_config_yaml()
    backend = yaml_data.get("backend", {}) or {}
    persona = yaml_data.get("persona", {}) or {}
    server = yaml_data.get("server", {}) or {}
    defaults = Config()

    port = int(os.environ.get("BIBLIOAI_BIND_PORT", server.get("port", defaults.bind_port)))
    origins_raw = os.environ.get("BIBLIOAI_ALLOWED_ORIGINS")
    if origins_raw is None:
        origins = server.get("allowed_origins", []) or []
    else:
        origins = origins_raw.split(",")
    allowed_origins = {str(v).strip() for v in origins if str(v).strip()}

    api_key = (
        os.environ.get("GEMINI_API_KEY")
        or os.environ.get("API_KEY")
        or backend.get("api_key", "")
    )

    return Config(
        api_key=str(api_key or "").strip(),
        model=os.environ.get("BIBLIOAI_MODEL", backend.get("model", defaults.model)),
        base_url=os.environ.get("BIBLIOAI_BASE_URL", backend.get("url", defaults.base_url)).rstrip("/"),
        timeout_s=float(os.environ.get("BIBLIOAI_TIMEOUT_S", backend.get("timeout_s", defaults.timeout_s))),
        temperature=float(os.environ.get("BIBLIOAI_TEMPERATURE", backend.get("temperature", defaults.temperature))),
        domain=os.environ.get("BIBLIOAI_DOMAIN", persona.get("domain", defaults.domain)).strip(),
        domain_policy=os.environ.get(
            "BIBLIOAI_DOMAIN_POLICY", persona.get("domain_policy", defaults.domain_policy)
        ).strip().lower(),
        system_instruction=persona.get("system_instruction") or defaults.system_instruction,
        bind_host=os.environ.get("BIBLIOAI_BIND_HOST", server.get("host", defaults.bind_host)),
        bind_port=port,
        url_prefix=os.environ.get("BIBLIOAI_URL_PREFIX", server.get("url_prefix", "")).strip().rstrip("/"),
        allowed_origins=allowed_origins,
    )


# ---------------------------------------------------------------------------
# Backend initialisation (once, at process start)
# ---------------------------------------------------------------------------
def init_backend(cfg: Config) -> Tuple[Optional[Any], Optional[str]]:
    """Validate configuration and construct the backend client.

    Returns ``(backend, None)`` on success or ``(None, error)`` when the
    process is not configured to serve.  Never raises for configuration
    faults so main() can report and exit.
    """
    from relay import GeminiBackend

    if not cfg.api_key:
        return None, "GEMINI_API_KEY (or API_KEY) environment variable not set"
    if cfg.domain_policy not in DOMAIN_POLICIES:
        return None, (f"Unknown domain policy '{cfg.domain_policy}' "
                      f"(expected one of: {', '.join(DOMAIN_POLICIES)})")
    if cfg.domain_policy != "off" and not cfg.domain:
        return None, "A grounding domain is required unless domain_policy is 'off'"
    return GeminiBackend(
        api_key=cfg.api_key,
        model=cfg.model,
        base_url=cfg.base_url,
        timeout_s=cfg.timeout_s,
    ), None


# ---------------------------------------------------------------------------
# Module-level mode flags (set by main() at startup)
# ---------------------------------------------------------------------------
DEBUG_MODE: bool = False


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------
def parse_args(argv: list | None = None) -> argparse.Namespace:
    """Parse command-line arguments for serve/ask execution modes."""
    parser = argparse.ArgumentParser(description="BiblioAI streaming chat relay")
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug logging")
    parser.add_argument("--url-prefix", default=None,
                        help="URL path prefix (e.g. /chat) for reverse-proxy deployments")
    sub = parser.add_subparsers(dest="cmd")
    sub.add_parser("serve", help="Run the Flask relay server (default)")
    ask_parser = sub.add_parser("ask", help="Send one message to a running relay and stream the answer")
    ask_parser.add_argument("text", help="question to ask")
    ask_parser.add_argument("--url", default=None,
                            help="chat endpoint (default: http://<bind_host>:<bind_port><prefix>/api/chat)")
    return parser.parse_args(argv)
