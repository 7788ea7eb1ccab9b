"""
Persisted client credentials.

Holds two opaque values that must survive a restart:
- the auth token
- the session identifier, one per role

Stored as a small JSON document. Writes go through a temp file and
os.replace so a crash never leaves a truncated file behind.
"""

from __future__ import annotations

import base64
import json
import os
import time
from pathlib import Path
from typing import Any

from kairo_sync.observability.logger import log_event


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def make_demo_token(now_ms: int | None = None) -> str:
    """Development token the demo backend accepts in place of a login."""
    payload = {"userId": f"demo-user-{now_ms if now_ms is not None else _now_ms()}", "demo": True}
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


class CredentialStore:
    """File-backed store for the auth token and per-role session ids."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._data: dict[str, Any] = self._load()

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Auth token
    # ------------------------------------------------------------------

    def auth_token(self) -> str | None:
        token = self._data.get("auth_token")
        return token if isinstance(token, str) and token else None

    def set_auth_token(self, token: str | None) -> None:
        if token is None:
            self._data.pop("auth_token", None)
        else:
            self._data["auth_token"] = token
        self._save()

    def ensure_auth_token(self, *, allow_demo: bool) -> str | None:
        """
        Return the stored token, creating a demo token when allowed.
        """
        token = self.auth_token()
        if token is None and allow_demo:
            token = make_demo_token()
            self.set_auth_token(token)
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "DEMO_TOKEN_CREATED",
            })
        return token

    # ------------------------------------------------------------------
    # Session ids
    # ------------------------------------------------------------------

    def session_id(self, role: str) -> str | None:
        sessions = self._data.get("sessions")
        if not isinstance(sessions, dict):
            return None
        value = sessions.get(role)
        return value if isinstance(value, str) and value else None

    def set_session_id(self, role: str, session_id: str) -> None:
        sessions = self._data.setdefault("sessions", {})
        sessions[role] = session_id
        self._save()

    def clear_session_id(self, role: str) -> None:
        sessions = self._data.get("sessions")
        if isinstance(sessions, dict) and role in sessions:
            del sessions[role]
            self._save()

    def clear(self) -> None:
        """Logout: forget everything."""
        self._data = {}
        self._save()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "CREDENTIAL_STORE_CORRUPT",
                "path": str(self._path),
                "error": str(e),
            })
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps(self._data, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self._path)
