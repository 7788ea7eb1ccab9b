"""
Application configuration.

Responsibilities:
- Read environment variables
- Provide a typed, immutable config object

Non-responsibilities:
- No engine logic
- No behavioral constants (see constants.py)
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from kairo_sync.constants import (
    DEFAULT_API_BASE_URL,
    DEFAULT_HTTP_TIMEOUT_S,
    DEFAULT_MEDIA_AGENT_NAME,
    DEFAULT_PERSONA_HINT,
)

_TRUE = ("1", "true", "yes", "on")


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in _TRUE


def derive_ws_url(api_base_url: str) -> str:
    """
    Channel URL for an API base URL.

    The channel lives at the server root: a trailing /api is dropped and
    http(s) becomes ws(s).
    """
    parts = urlsplit(api_base_url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    path = parts.path.rstrip("/")
    if path.endswith("/api"):
        path = path[: -len("/api")]
    return urlunsplit((scheme, parts.netloc, path or "/", "", ""))


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup and passed to the engine.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    enable_json_logs: bool

    # ------------------------------------------------------------------
    # Backend
    # ------------------------------------------------------------------

    api_base_url: str
    ws_url: str
    http_timeout_s: float
    legacy_event_names: bool

    # ------------------------------------------------------------------
    # Client state
    # ------------------------------------------------------------------

    state_path: Path
    allow_demo_token: bool
    persona_hint: str

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    media_agent_name: str | None

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ValueError if KAIRO_HTTP_TIMEOUT_S is not a number.
        """
        api_base_url = os.environ.get("KAIRO_API_BASE_URL", DEFAULT_API_BASE_URL)
        state_path = os.environ.get(
            "KAIRO_STATE_PATH",
            str(Path.home() / ".kairo-sync" / "state.json"),
        )
        return AppConfig(
            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",

            api_base_url=api_base_url,
            ws_url=os.environ.get("KAIRO_WS_URL") or derive_ws_url(api_base_url),
            http_timeout_s=float(os.environ.get("KAIRO_HTTP_TIMEOUT_S", DEFAULT_HTTP_TIMEOUT_S)),
            legacy_event_names=_flag("KAIRO_LEGACY_EVENT_NAMES", "0"),

            state_path=Path(state_path).expanduser(),
            allow_demo_token=_flag("KAIRO_ALLOW_DEMO_TOKEN", "1"),
            persona_hint=os.environ.get("KAIRO_PERSONA_HINT", DEFAULT_PERSONA_HINT),

            media_agent_name=os.environ.get("KAIRO_MEDIA_AGENT_NAME", DEFAULT_MEDIA_AGENT_NAME) or None,
        )
