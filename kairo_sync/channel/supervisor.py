"""
Connection supervisor.

Responsibilities:
- Own the single physical channel to the backend and its ChannelState
- Open the channel with the session's credentials
- Bind the channel to the session (join-session) on every (re)connect,
  before the channel is reported CONNECTED
- Classify channel losses and retry with bounded exponential backoff
- Decode inbound frames and forward events in delivery order

Non-responsibilities:
- NO conversation log decisions (events go to the sink)
- NO session lifecycle decisions
- NO send gating beyond "is the channel CONNECTED"
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

from kairo_sync.channel.backoff import (
    FailureType,
    ReconnectPolicy,
    consumes_attempt,
    get_retry_delay_ms,
    next_attempt,
    reset_attempt,
    should_retry,
)
from kairo_sync.channel.codec import (
    ControlMessage,
    JoinSession,
    ProtocolDecodeError,
    UnknownEventError,
    control_name,
    decode_frame,
    encode_control,
)
from kairo_sync.channel.status import ChannelState
from kairo_sync.channel.transport import (
    ChannelClosed,
    ChannelConnection,
    ChannelOpenError,
    ChannelTransport,
)
from kairo_sync.events import (
    ChannelConnected,
    ChannelDisconnected,
    ChannelFailed,
    ChannelTransportError,
    Event,
    EventType,
)
from kairo_sync.observability.logger import log_event
from kairo_sync.tasks import TaskSlots

EventSink = Callable[[Event], Awaitable[None]]
StateListener = Callable[[ChannelState], None]

SLOT_CONNECTION = "channel_connection"


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class ChannelNotReadyError(Exception):
    """A send was attempted while the channel is not CONNECTED."""

    def __init__(self, state: ChannelState) -> None:
        super().__init__(f"channel not ready: {state.value}")
        self.state = state


class ConnectionSupervisor:
    """
    One supervisor == one channel for the active session.

    Lifecycle:
    1. connect(session_id, token) starts the supervised connection task
    2. The task opens the channel, sends join-session, enters CONNECTED
    3. Inbound frames are decoded and forwarded to the event sink
    4a. Server closes deliberately -> fresh connect, no backoff, unless
        the server keeps closing before sending anything (base delay,
        same attempt ceiling)
    4b. Unexpected drop / failed open -> RECONNECTING with backoff
    4c. Attempt ceiling exceeded -> DISCONNECTED + ChannelFailed
    5. disconnect() cancels the task, closes the channel and forgets
       the session binding
    """

    def __init__(
        self,
        *,
        transport: ChannelTransport,
        url: str,
        emit_event: EventSink,
        policy: ReconnectPolicy | None = None,
        legacy_event_names: bool = False,
    ) -> None:
        self._transport = transport
        self._url = url
        self._emit_event = emit_event
        self._policy = policy or ReconnectPolicy()
        self._legacy = legacy_event_names

        self._state = ChannelState.DISCONNECTED
        self._conn: ChannelConnection | None = None
        self._session_id: str | None = None
        self._auth_token: str | None = None
        self._inbound_frames = 0

        self._tasks = TaskSlots()
        self._listeners: list[StateListener] = []

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def session_id(self) -> str | None:
        return self._session_id

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def connect(self, session_id: str, auth_token: str | None) -> None:
        """
        Start supervising a channel bound to session_id.

        Idempotent while a supervised connection for the same session
        is alive. A different session tears the old channel down first.
        """
        if self._session_id == session_id and self._tasks.running(SLOT_CONNECTION):
            return

        if self._tasks.running(SLOT_CONNECTION) or self._conn is not None:
            self._tasks.cancel(SLOT_CONNECTION)
            await self._close_connection()

        self._session_id = session_id
        self._auth_token = auth_token
        self._set_state(ChannelState.CONNECTING)
        self._tasks.start(SLOT_CONNECTION, self._run())

    async def disconnect(self, reason: str = "client disconnect") -> None:
        """
        Deliberate teardown. Never retried.

        The session binding and token are dropped, so reconnect() has
        nothing to resume until the next connect().
        """
        was_active = self._state is not ChannelState.DISCONNECTED
        session_id = self._session_id
        self._tasks.cancel(SLOT_CONNECTION)
        await self._close_connection()
        self._session_id = None
        self._auth_token = None
        self._set_state(ChannelState.DISCONNECTED)

        if was_active:
            await self._emit_event(
                ChannelDisconnected(
                    event_type=EventType.CHANNEL_DISCONNECTED,
                    ts_ms=_now_ms(),
                    session_id=session_id,
                    reason=reason,
                )
            )

    def reconnect(self) -> bool:
        """
        Restart supervision after a terminal failure.

        Returns False when there is nothing to reconnect to or a
        supervised connection is already running.
        """
        if self._session_id is None or self._tasks.running(SLOT_CONNECTION):
            return False
        self._set_state(ChannelState.CONNECTING)
        self._tasks.start(SLOT_CONNECTION, self._run())
        return True

    async def join_session(self, session_id: str) -> None:
        """Re-bind the channel; sent immediately when CONNECTED."""
        self._session_id = session_id
        conn = self._conn
        if self._state is ChannelState.CONNECTED and conn is not None:
            await self._send_on(conn, JoinSession(session_id=session_id))

    async def emit(self, message: ControlMessage) -> None:
        """
        Send a control message.

        Raises:
            ChannelNotReadyError unless CONNECTED.
            ChannelClosed if the channel died during the send.
        """
        conn = self._conn
        if self._state is not ChannelState.CONNECTED or conn is None:
            raise ChannelNotReadyError(self._state)
        await self._send_on(conn, message)

    async def aclose(self) -> None:
        """Dispose: cancel supervision and wait for it to stop."""
        await self._tasks.aclose()
        await self._close_connection()
        self._session_id = None
        self._auth_token = None
        self._set_state(ChannelState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Supervision loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        """
        Supervision task body.

        A crash inside the loop must not leave the channel reported as
        CONNECTED with nobody reading it: the channel is closed, the
        state drops to DISCONNECTED and ChannelFailed is emitted, so a
        later send can request reconnect().
        """
        try:
            await self._supervise()
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "CHANNEL_SUPERVISION_CRASHED",
                "session_id": self._session_id,
                "error": f"{type(e).__name__}: {e}",
            })
            await self._close_connection()
            self._set_state(ChannelState.DISCONNECTED)
            await self._emit_event(
                ChannelFailed(
                    event_type=EventType.CHANNEL_FAILED,
                    ts_ms=_now_ms(),
                    reason=str(e),
                    attempts=0,
                )
            )

    async def _supervise(self) -> None:
        attempt = reset_attempt()
        # Consecutive server closes with no inbound frame in between.
        bare_closes = reset_attempt()
        has_connected = False

        while True:
            failure: FailureType
            reason: str

            try:
                conn = await self._transport.open(self._url, self._auth_token)
            except ChannelOpenError as exc:
                failure = FailureType.HANDSHAKE_ERROR
                reason = str(exc)
                await self._emit_event(
                    ChannelTransportError(
                        event_type=EventType.CHANNEL_TRANSPORT_ERROR,
                        ts_ms=_now_ms(),
                        reason=reason,
                        attempt=attempt.attempt,
                    )
                )
            else:
                try:
                    await self._bind(conn, reconnect=has_connected)
                    has_connected = True
                    attempt = reset_attempt()
                    await self._receive_loop(conn)
                except ChannelClosed as closed:
                    self._conn = None
                    failure = (
                        FailureType.SERVER_CLOSED
                        if closed.server_initiated
                        else FailureType.UNEXPECTED_DROP
                    )
                    reason = closed.reason
                    await self._emit_event(
                        ChannelDisconnected(
                            event_type=EventType.CHANNEL_DISCONNECTED,
                            ts_ms=_now_ms(),
                            session_id=self._session_id,
                            reason=reason,
                        )
                    )

            log_event({
                "ts_ms": _now_ms(),
                "event_type": "CHANNEL_LOST",
                "session_id": self._session_id,
                "failure": failure.value,
                "reason": reason,
                "attempt": attempt.attempt,
            })

            if not consumes_attempt(failure):
                # Server closed on purpose: start over with a fresh connect.
                if self._inbound_frames > 0:
                    bare_closes = reset_attempt()
                    self._set_state(ChannelState.CONNECTING)
                    continue

                # Closed again before saying anything: throttle and cap.
                if not should_retry(policy=self._policy, attempt=bare_closes):
                    await self._fail(reason, bare_closes.attempt)
                    return
                self._set_state(ChannelState.CONNECTING)
                await asyncio.sleep(self._policy.base_delay_ms / 1000.0)
                bare_closes = next_attempt(bare_closes)
                continue

            if not should_retry(policy=self._policy, attempt=attempt):
                await self._fail(reason, attempt.attempt)
                return

            self._set_state(ChannelState.RECONNECTING)
            delay_ms = get_retry_delay_ms(policy=self._policy, attempt=attempt)
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "CHANNEL_RETRY_SCHEDULED",
                "session_id": self._session_id,
                "attempt": attempt.attempt + 1,
                "delay_ms": delay_ms,
            })
            await asyncio.sleep(delay_ms / 1000.0)
            attempt = next_attempt(attempt)

    async def _bind(self, conn: ChannelConnection, *, reconnect: bool) -> None:
        """
        Make the channel usable for the session.

        join-session is written before the state flips to CONNECTED, so
        no send-turn can reach the server ahead of the session binding.
        """
        self._conn = conn
        self._inbound_frames = 0
        session_id = self._session_id
        assert session_id is not None, "connect() always sets a session id"

        await self._send_on(conn, JoinSession(session_id=session_id))
        self._set_state(ChannelState.CONNECTED)

        await self._emit_event(
            ChannelConnected(
                event_type=EventType.CHANNEL_CONNECTED,
                ts_ms=_now_ms(),
                session_id=session_id,
                reconnect=reconnect,
            )
        )

    async def _receive_loop(self, conn: ChannelConnection) -> None:
        while True:
            raw = await conn.recv()
            ts_ms = _now_ms()
            self._inbound_frames += 1

            try:
                event = decode_frame(raw, ts_ms=ts_ms)
            except UnknownEventError as e:
                log_event({
                    "ts_ms": ts_ms,
                    "event_type": "UNKNOWN_CHANNEL_EVENT",
                    "session_id": self._session_id,
                    "error": str(e),
                })
                continue
            except ProtocolDecodeError as e:
                log_event({
                    "ts_ms": ts_ms,
                    "event_type": "CHANNEL_DECODE_ERROR",
                    "session_id": self._session_id,
                    "error": str(e),
                    "payload_preview": str(raw)[:100],
                })
                continue
            except Exception as e:  # pylint: disable=broad-exception-caught
                # Codec bug: drop the frame, keep the channel.
                log_event({
                    "ts_ms": ts_ms,
                    "event_type": "CHANNEL_DECODE_UNEXPECTED_ERROR",
                    "session_id": self._session_id,
                    "error": f"{type(e).__name__}: {e}",
                    "payload_preview": str(raw)[:100],
                })
                continue

            await self._emit_event(event)

    async def _fail(self, reason: str, attempts: int) -> None:
        self._set_state(ChannelState.DISCONNECTED)
        await self._emit_event(
            ChannelFailed(
                event_type=EventType.CHANNEL_FAILED,
                ts_ms=_now_ms(),
                reason=reason,
                attempts=attempts,
            )
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _send_on(self, conn: ChannelConnection, message: ControlMessage) -> None:
        await conn.send(encode_control(message, legacy=self._legacy))
        log_event({
            "ts_ms": _now_ms(),
            "event_type": "CONTROL_SENT",
            "session_id": self._session_id,
            "control": control_name(message),
        })

    async def _close_connection(self) -> None:
        conn = self._conn
        self._conn = None
        if conn is None:
            return
        try:
            await conn.close()
        except (ChannelClosed, OSError) as e:
            log_event({
                "ts_ms": _now_ms(),
                "event_type": "CHANNEL_CLOSE_ERROR",
                "session_id": self._session_id,
                "error": str(e),
            })

    def _set_state(self, new_state: ChannelState) -> None:
        if new_state is self._state:
            return
        prev = self._state
        self._state = new_state
        log_event({
            "ts_ms": _now_ms(),
            "event_type": "CHANNEL_STATE_CHANGED",
            "session_id": self._session_id,
            "from_state": prev.value,
            "to_state": new_state.value,
        })
        for listener in tuple(self._listeners):
            listener(new_state)
