"""
Conversation engine (composition root).

Responsibilities:
- Build and own one supervisor, session controller, dispatcher,
  conversation log and media monitor
- Route every event through a single entry point (handle_event)
- Connect the channel once a session is ACTIVE, or when the
  dispatcher rejoins a persisted session

Still NOT responsible for:
- Log decisions (assembler)
- Retry policy (supervisor)
- Send gating (dispatcher)
- Rendering
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from kairo_sync.channel.status import ChannelState
from kairo_sync.channel.supervisor import ConnectionSupervisor
from kairo_sync.channel.transport import ChannelTransport, WebSocketTransport
from kairo_sync.constants import MSG_RECONNECT_FAILED
from kairo_sync.conversation.log import ConversationLog
from kairo_sync.conversation.records import MessageRecord
from kairo_sync.dispatch.outbound import DispatchOutcome, OutboundDispatcher
from kairo_sync.events import (
    ChannelConnected,
    ChannelDisconnected,
    ChannelFailed,
    ChannelTransportError,
    Event,
    EventType,
    SystemNotice,
)
from kairo_sync.media.monitor import MediaSessionMonitor
from kairo_sync.observability.logger import log_event
from kairo_sync.session.backend import BackendClient
from kairo_sync.session.lifecycle import SessionLifecycleController
from kairo_sync.session.models import Session, SessionState
from kairo_sync.session.store import CredentialStore

if TYPE_CHECKING:
    from kairo_sync.config import AppConfig


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class ConversationEngine:
    """
    One engine == one user's conversation surface.

    Collaborators can be injected (tests pass fakes); by default the
    websockets transport, the httpx backend client and the file-backed
    credential store are built from the config.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        transport: ChannelTransport | None = None,
        backend: BackendClient | None = None,
        store: CredentialStore | None = None,
    ) -> None:
        self._config = config
        self._store = store or CredentialStore(config.state_path)
        self._backend = backend or BackendClient(
            base_url=config.api_base_url,
            token_provider=self._store.auth_token,
            timeout_s=config.http_timeout_s,
        )

        self._sessions = SessionLifecycleController(
            backend=self._backend,
            store=self._store,
            emit_event=self.handle_event,
            persona_hint=config.persona_hint,
        )
        self._log = ConversationLog(session_id=self._current_session_id)
        self._supervisor = ConnectionSupervisor(
            transport=transport or WebSocketTransport(),
            url=config.ws_url,
            emit_event=self.handle_event,
            legacy_event_names=config.legacy_event_names,
        )
        self._dispatcher = OutboundDispatcher(
            supervisor=self._supervisor,
            sessions=self._sessions,
            emit_event=self.handle_event,
            persona_hint=config.persona_hint,
            connect_channel=self._connect_channel,
        )
        self._media = MediaSessionMonitor(
            backend=self._backend,
            agent_name=config.media_agent_name,
        )

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def log(self) -> ConversationLog:
        return self._log

    @property
    def records(self) -> tuple[MessageRecord, ...]:
        return self._log.records

    @property
    def channel_state(self) -> ChannelState:
        return self._supervisor.state

    @property
    def session_state(self) -> SessionState:
        return self._sessions.state

    @property
    def session(self) -> Session | None:
        return self._sessions.session

    @property
    def sessions(self) -> SessionLifecycleController:
        return self._sessions

    @property
    def supervisor(self) -> ConnectionSupervisor:
        return self._supervisor

    @property
    def media(self) -> MediaSessionMonitor:
        return self._media

    # ------------------------------------------------------------------
    # Event entry point
    # ------------------------------------------------------------------

    async def handle_event(self, event: Event) -> None:
        """
        Single entry for every event from every component.

        Channel lifecycle events only reach the log as no-ops; the
        terminal failure is turned into a system notice here.
        """
        if isinstance(event, ChannelFailed):
            log_event({
                "ts_ms": event.ts_ms,
                "event_type": "ENGINE_CHANNEL_FAILED",
                "session_id": self._current_session_id(),
                "reason": event.reason,
                "attempts": event.attempts,
            })
            self._log.apply(
                SystemNotice(
                    event_type=EventType.SYSTEM_NOTICE,
                    ts_ms=event.ts_ms,
                    text=MSG_RECONNECT_FAILED,
                )
            )
            return

        if isinstance(event, (ChannelConnected, ChannelDisconnected, ChannelTransportError)):
            log_event({
                "ts_ms": event.ts_ms,
                "event_type": f"ENGINE_{event.event_type.value}",
                "session_id": self._current_session_id(),
            })

        self._log.apply(event)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start(self, role: str) -> Session | None:
        """Start or resume the session for role, then connect the channel."""
        token = self._store.ensure_auth_token(allow_demo=self._config.allow_demo_token)
        session = await self._sessions.start(role)
        if session is not None and self._sessions.state is SessionState.ACTIVE:
            await self._supervisor.connect(session.session_id, token)
        return session

    async def send(self, text: str) -> DispatchOutcome:
        return await self._dispatcher.send(text)

    async def end_simulation(self) -> dict | None:
        """Evaluate and end the session. Returns the backend report, if any."""
        self._dispatcher.dispose()
        report = await self._sessions.end(evaluate=True)
        await self._supervisor.disconnect()
        self._media.reset()
        return report

    async def logout(self) -> None:
        self._dispatcher.dispose()
        await self._sessions.logout()
        await self._supervisor.disconnect()
        self._media.reset()

    async def dispose(self) -> None:
        """Cancel every pending wait and close network resources."""
        self._dispatcher.dispose()
        await self._supervisor.aclose()
        await self._backend.aclose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _connect_channel(self, session_id: str) -> None:
        await self._supervisor.connect(session_id, self._store.auth_token())

    def _current_session_id(self) -> str | None:
        session = self._sessions.session
        return session.session_id if session is not None else None
