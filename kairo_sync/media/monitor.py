"""
Media transport monitor.

Tracks the out-of-band audio/video session that runs next to the text
channel: whether it is connected, who is in it, and the transcript
segments it delivers. The media client library itself is not part of
this package; its callbacks are forwarded into the on_* methods.

Agent presence is a heuristic on participant identities. It is
advisory only: nothing in the engine gates on it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable

from kairo_sync.constants import DEFAULT_MEDIA_AGENT_NAME, MEDIA_AGENT_IDENTITY_HINTS
from kairo_sync.observability.logger import log_event
from kairo_sync.session.backend import BackendClient

MediaListener = Callable[["MediaSessionMonitor"], None]


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass(frozen=True)
class TranscriptSegment:
    """One transcription segment; interim text is replaced until final."""
    segment_id: str
    participant: str
    text: str
    final: bool
    ts_ms: int


def looks_like_agent(identity: str, hints: tuple[str, ...] = MEDIA_AGENT_IDENTITY_HINTS) -> bool:
    lowered = identity.lower()
    return any(hint in lowered for hint in hints)


class MediaSessionMonitor:
    def __init__(
        self,
        *,
        backend: BackendClient,
        agent_name: str | None = DEFAULT_MEDIA_AGENT_NAME,
        identity_hints: tuple[str, ...] = MEDIA_AGENT_IDENTITY_HINTS,
    ) -> None:
        self._backend = backend
        self._agent_name = agent_name
        self._hints = identity_hints

        self._connected = False
        self._participants: list[str] = []
        self._segments: list[TranscriptSegment] = []
        self._listeners: list[MediaListener] = []

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def participants(self) -> tuple[str, ...]:
        return tuple(self._participants)

    @property
    def transcript(self) -> tuple[TranscriptSegment, ...]:
        return tuple(self._segments)

    @property
    def agent_present(self) -> bool:
        return any(looks_like_agent(p, self._hints) for p in self._participants)

    def subscribe(self, listener: MediaListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Backend
    # ------------------------------------------------------------------

    async def fetch_connection_details(self) -> dict[str, Any]:
        """
        Ask the backend for a media server URL and participant token.

        Raises:
            BackendError if the backend refuses.
        """
        details = await self._backend.media_connection_details(self._agent_name)
        self._log(
            "MEDIA_CONNECTION_DETAILS",
            server_url=details.get("serverUrl"),
            room=details.get("roomName"),
        )
        return details

    # ------------------------------------------------------------------
    # Media client callbacks
    # ------------------------------------------------------------------

    def on_connected(self) -> None:
        if self._connected:
            return
        self._connected = True
        self._log("MEDIA_CONNECTED")
        self._notify()

    def on_disconnected(self, reason: str | None = None) -> None:
        if not self._connected and not self._participants:
            return
        self._connected = False
        self._participants.clear()
        self._log("MEDIA_DISCONNECTED", reason=reason)
        self._notify()

    def on_participant_joined(self, identity: str) -> None:
        if identity in self._participants:
            return
        self._participants.append(identity)
        self._log("MEDIA_PARTICIPANT_JOINED", identity=identity, agent=looks_like_agent(identity, self._hints))
        self._notify()

    def on_participant_left(self, identity: str) -> None:
        if identity not in self._participants:
            return
        self._participants.remove(identity)
        self._log("MEDIA_PARTICIPANT_LEFT", identity=identity)
        self._notify()

    def on_transcript(
        self,
        segment_id: str,
        participant: str,
        text: str,
        *,
        final: bool,
        ts_ms: int | None = None,
    ) -> TranscriptSegment:
        """Insert or update a segment. A final segment is never reopened."""
        for i, existing in enumerate(self._segments):
            if existing.segment_id != segment_id:
                continue
            if existing.final:
                return existing
            segment = TranscriptSegment(
                segment_id=segment_id,
                participant=participant,
                text=text,
                final=final,
                ts_ms=existing.ts_ms,
            )
            self._segments[i] = segment
            self._notify()
            return segment

        segment = TranscriptSegment(
            segment_id=segment_id,
            participant=participant,
            text=text,
            final=final,
            ts_ms=ts_ms if ts_ms is not None else _now_ms(),
        )
        self._segments.append(segment)
        self._notify()
        return segment

    def reset(self) -> None:
        self._connected = False
        self._participants.clear()
        self._segments.clear()
        self._notify()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _notify(self) -> None:
        for listener in tuple(self._listeners):
            listener(self)

    def _log(self, event_type: str, **details: Any) -> None:
        log_event({"ts_ms": _now_ms(), "event_type": event_type, **details})
