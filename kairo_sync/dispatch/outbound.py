"""
Outbound dispatcher.

Turns a user's text into exactly one send-turn on the channel, or into
exactly one user-visible diagnostic. Never raises.

Gate order:
    (a) non-empty text
    (b) single-flight (one send in progress at a time)
    (c) channel CONNECTED, waiting a bounded time while it connects;
        a dropped channel is reconnected only for an ACTIVE session, and
        with no session the persisted one is rejoined and connected
    (d) session ACTIVE, with one rejoin attempt via the persisted id

The user's text is NOT appended to the conversation log here; the
backend echoes it back and the log is built from that echo.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable

from kairo_sync.channel.codec import SendTurn
from kairo_sync.channel.status import ChannelState
from kairo_sync.channel.supervisor import ChannelNotReadyError, ConnectionSupervisor
from kairo_sync.channel.transport import ChannelClosed
from kairo_sync.constants import (
    CONNECT_WAIT_TIMEOUT_MS,
    DEFAULT_PERSONA_HINT,
    MSG_CONNECTION_TIMEOUT,
    MSG_NOT_CONNECTED,
    MSG_SEND_FAILED,
    MSG_SESSION_NOT_FOUND,
    MSG_SESSION_STARTING,
    RESUMED_CONNECT_WAIT_TIMEOUT_MS,
    SEND_WAIT_POLL_MS,
    SESSION_REJOIN_DELAY_MS,
    SESSION_REJOIN_RETRIES,
)
from kairo_sync.events import Event, EventType, SystemNotice
from kairo_sync.observability.logger import log_event
from kairo_sync.session.lifecycle import SessionLifecycleController
from kairo_sync.session.models import SessionState
from kairo_sync.tasks import TaskSlots

EventSink = Callable[[Event], Awaitable[None]]
ChannelConnector = Callable[[str], Awaitable[None]]

SLOT_SEND_WAIT = "send_wait"


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class DispatchOutcome(str, Enum):
    SENT = "sent"
    EMPTY = "empty"
    BUSY = "busy"
    CONNECTION_TIMEOUT = "connection_timeout"
    NOT_CONNECTED = "not_connected"
    SESSION_STARTING = "session_starting"
    SESSION_NOT_FOUND = "session_not_found"
    SEND_FAILED = "send_failed"
    CANCELLED = "cancelled"


# Outcomes that are silent rejections rather than failures.
_SILENT: frozenset[DispatchOutcome] = frozenset({
    DispatchOutcome.SENT,
    DispatchOutcome.EMPTY,
    DispatchOutcome.BUSY,
    DispatchOutcome.CANCELLED,
})


class OutboundDispatcher:
    def __init__(
        self,
        *,
        supervisor: ConnectionSupervisor,
        sessions: SessionLifecycleController,
        emit_event: EventSink,
        persona_hint: str = DEFAULT_PERSONA_HINT,
        poll_ms: int = SEND_WAIT_POLL_MS,
        connect_timeout_ms: int = CONNECT_WAIT_TIMEOUT_MS,
        resumed_connect_timeout_ms: int = RESUMED_CONNECT_WAIT_TIMEOUT_MS,
        rejoin_delay_ms: int = SESSION_REJOIN_DELAY_MS,
        rejoin_retries: int = SESSION_REJOIN_RETRIES,
        connect_channel: ChannelConnector | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._connect_channel = connect_channel or self._connect_without_token
        self._sessions = sessions
        self._emit_event = emit_event
        self._persona_hint = persona_hint

        self._poll_ms = poll_ms
        self._connect_timeout_ms = connect_timeout_ms
        self._resumed_connect_timeout_ms = resumed_connect_timeout_ms
        self._rejoin_delay_ms = rejoin_delay_ms
        self._rejoin_retries = rejoin_retries

        self._in_flight = False
        self._last_error: str | None = None
        self._tasks = TaskSlots()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def send(self, text: str) -> DispatchOutcome:
        body = text.strip()
        if not body:
            return DispatchOutcome.EMPTY

        if self._in_flight:
            self._log("SEND_REJECTED_BUSY")
            return DispatchOutcome.BUSY

        # Claimed before the first await; released only after the
        # emission (or its diagnostic) is done.
        self._in_flight = True
        try:
            task = self._tasks.start(SLOT_SEND_WAIT, self._dispatch(body))
            try:
                await asyncio.wait({task})
            except asyncio.CancelledError:
                self._tasks.cancel(SLOT_SEND_WAIT)
                raise

            if task.cancelled():
                self._log("SEND_CANCELLED")
                return DispatchOutcome.CANCELLED
            return task.result()
        finally:
            self._in_flight = False

    def dispose(self) -> None:
        """Cancel a pending wait; the pending send reports CANCELLED."""
        self._tasks.clear_all()

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    async def _dispatch(self, text: str) -> DispatchOutcome:
        outcome = await self._await_channel()
        if outcome is None:
            outcome = await self._await_session()
        if outcome is None:
            outcome = await self._emit(text)

        if outcome not in _SILENT:
            await self._notify(outcome)
        self._log("SEND_RESULT", outcome=outcome.value)
        return outcome

    async def _await_channel(self) -> DispatchOutcome | None:
        session = self._sessions.session
        timeout_ms = (
            self._resumed_connect_timeout_ms
            if session is not None and session.is_resumed
            else self._connect_timeout_ms
        )

        waited_ms = 0
        rejoined = False
        while self._supervisor.state is not ChannelState.CONNECTED:
            if self._supervisor.state is ChannelState.DISCONNECTED:
                if self._sessions.state is SessionState.ACTIVE and not rejoined:
                    restarted = self._supervisor.reconnect()
                    self._log("SEND_CHANNEL_DISCONNECTED", reconnect_started=restarted)
                    return DispatchOutcome.NOT_CONNECTED

                session_id = None
                if self._sessions.state is SessionState.UNINITIALIZED and not rejoined:
                    session_id = self._sessions.rejoin()
                if session_id is None:
                    self._log("SEND_CHANNEL_DISCONNECTED", reconnect_started=False)
                    return DispatchOutcome.NOT_CONNECTED

                # No live session, but a persisted one: bind the channel to it.
                rejoined = True
                timeout_ms = self._resumed_connect_timeout_ms
                self._log("SEND_REJOIN", rejoin_session_id=session_id)
                await self._connect_channel(session_id)
                continue
            if waited_ms >= timeout_ms:
                self._log("SEND_CONNECTION_TIMEOUT", waited_ms=waited_ms)
                return DispatchOutcome.CONNECTION_TIMEOUT
            await asyncio.sleep(self._poll_ms / 1000.0)
            waited_ms += self._poll_ms

        return None

    async def _await_session(self) -> DispatchOutcome | None:
        if self._sessions.state is SessionState.ACTIVE:
            return None
        if self._sessions.state is SessionState.PENDING:
            return DispatchOutcome.SESSION_STARTING

        for _ in range(self._rejoin_retries):
            session_id = self._sessions.rejoin()
            if session_id is None:
                break
            self._log("SEND_REJOIN", rejoin_session_id=session_id)
            try:
                await self._supervisor.join_session(session_id)
            except ChannelClosed as e:
                self._log("SEND_REJOIN_FAILED", error=e.reason)
            await asyncio.sleep(self._rejoin_delay_ms / 1000.0)
            if self._sessions.state is SessionState.ACTIVE:
                return None

        return DispatchOutcome.SESSION_NOT_FOUND

    async def _emit(self, text: str) -> DispatchOutcome:
        try:
            await self._supervisor.emit(SendTurn(text=text, persona_hint=self._persona_hint))
        except ChannelNotReadyError:
            return DispatchOutcome.NOT_CONNECTED
        except ChannelClosed as e:
            self._last_error = e.reason
            return DispatchOutcome.SEND_FAILED
        return DispatchOutcome.SENT

    async def _connect_without_token(self, session_id: str) -> None:
        await self._supervisor.connect(session_id, None)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def _notify(self, outcome: DispatchOutcome) -> None:
        if outcome is DispatchOutcome.CONNECTION_TIMEOUT:
            text = MSG_CONNECTION_TIMEOUT
        elif outcome is DispatchOutcome.NOT_CONNECTED:
            text = MSG_NOT_CONNECTED
        elif outcome is DispatchOutcome.SESSION_STARTING:
            text = MSG_SESSION_STARTING
        elif outcome is DispatchOutcome.SESSION_NOT_FOUND:
            text = MSG_SESSION_NOT_FOUND
        else:
            text = MSG_SEND_FAILED.format(reason=self._last_error or "unknown error")

        await self._emit_event(
            SystemNotice(
                event_type=EventType.SYSTEM_NOTICE,
                ts_ms=_now_ms(),
                text=text,
            )
        )

    def _log(self, event_type: str, **details) -> None:
        session = self._sessions.session
        log_event({
            "ts_ms": _now_ms(),
            "event_type": event_type,
            "session_id": session.session_id if session is not None else None,
            **details,
        })
