# pylint: disable=missing-module-docstring,missing-function-docstring
import asyncio
import json
from typing import Any, Callable

import pytest

from kairo_sync.channel import supervisor as supervisor_mod
from kairo_sync.channel.backoff import ReconnectPolicy
from kairo_sync.channel.codec import SendTurn
from kairo_sync.channel.status import ChannelState
from kairo_sync.channel.supervisor import ChannelNotReadyError, ConnectionSupervisor
from kairo_sync.channel.transport import ChannelClosed, ChannelOpenError
from kairo_sync.events import (
    ChannelConnected,
    ChannelDisconnected,
    ChannelFailed,
    ChannelTransportError,
    Event,
    TurnPersisted,
    TurnStart,
)


# ---------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------

class FakeConnection:
    def __init__(self, timeline: list[tuple[str, Any]]) -> None:
        self.timeline = timeline
        self.sent: list[dict[str, Any]] = []
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, frame: str) -> None:
        decoded = json.loads(frame)
        self.sent.append(decoded)
        self.timeline.append(("send", decoded["event"]))

    async def recv(self):
        item = await self.inbound.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class FakeTransport:
    """Returns scripted results in order; blocks forever once exhausted."""

    def __init__(self, script: list[Any]) -> None:
        self.script = list(script)
        self.opens: list[tuple[str, str | None]] = []

    async def open(self, url: str, auth_token: str | None):
        self.opens.append((url, auth_token))
        if not self.script:
            await asyncio.Event().wait()
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def fast_policy(max_attempts: int = 2) -> ReconnectPolicy:
    return ReconnectPolicy(base_delay_ms=1, max_delay_ms=1, max_attempts=max_attempts)


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


def build(transport: FakeTransport, policy: ReconnectPolicy | None = None):
    events: list[Event] = []
    timeline: list[tuple[str, Any]] = []

    async def sink(event: Event) -> None:
        events.append(event)

    sup = ConnectionSupervisor(
        transport=transport,
        url="ws://test",
        emit_event=sink,
        policy=policy or fast_policy(),
    )
    sup.subscribe(lambda state: timeline.append(("state", state)))
    return sup, events, timeline


@pytest.fixture(autouse=True)
def quiet_logs(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    captured: list[dict[str, Any]] = []
    monkeypatch.setattr(supervisor_mod, "log_event", captured.append)
    return captured


# ---------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------

def test_join_is_sent_before_connected():
    async def scenario():
        transport = FakeTransport([])
        sup, events, states = build(transport)
        conn = FakeConnection(states)
        transport.script.append(conn)

        await sup.connect("s1", "tok")
        await wait_for(lambda: sup.state is ChannelState.CONNECTED)

        join_idx = states.index(("send", "join-session"))
        connected_idx = states.index(("state", ChannelState.CONNECTED))
        assert join_idx < connected_idx
        assert conn.sent[0] == {"event": "join-session", "data": {"sessionId": "s1"}}
        assert isinstance(events[0], ChannelConnected)
        assert events[0].reconnect is False
        await sup.aclose()

    asyncio.run(scenario())


def test_inbound_frames_forwarded_in_order_and_garbage_skipped(quiet_logs):
    async def scenario():
        conn = FakeConnection([])
        sup, events, _ = build(FakeTransport([conn]))

        await sup.connect("s1", None)
        await wait_for(lambda: sup.state is ChannelState.CONNECTED)

        conn.inbound.put_nowait(json.dumps({"event": "turn-start", "data": {"id": "a"}}))
        conn.inbound.put_nowait("garbage")
        conn.inbound.put_nowait(json.dumps({"event": "mystery", "data": {}}))
        conn.inbound.put_nowait(json.dumps({"event": "turn-start", "data": {"id": "b"}}))
        await wait_for(lambda: sum(isinstance(e, TurnStart) for e in events) == 2)

        starts = [e.turn_id for e in events if isinstance(e, TurnStart)]
        assert starts == ["a", "b"]
        await sup.aclose()

    asyncio.run(scenario())
    logged = {e["event_type"] for e in quiet_logs}
    assert "CHANNEL_DECODE_ERROR" in logged
    assert "UNKNOWN_CHANNEL_EVENT" in logged


def test_unexpected_drop_reconnects_and_rejoins():
    async def scenario():
        first = FakeConnection([])
        second = FakeConnection([])
        transport = FakeTransport([first, second])
        sup, events, timeline = build(transport)

        await sup.connect("s1", "tok")
        await wait_for(lambda: sup.state is ChannelState.CONNECTED)
        first.inbound.put_nowait(ChannelClosed("transport close: reset"))

        await wait_for(lambda: len(second.sent) == 1 and sup.state is ChannelState.CONNECTED)

        assert ("state", ChannelState.RECONNECTING) in timeline
        assert second.sent[0]["event"] == "join-session"
        connected = [e for e in events if isinstance(e, ChannelConnected)]
        assert [c.reconnect for c in connected] == [False, True]
        assert any(isinstance(e, ChannelDisconnected) for e in events)
        await sup.aclose()

    asyncio.run(scenario())


def test_attempt_ceiling_surfaces_terminal_failure():
    async def scenario():
        transport = FakeTransport([ChannelOpenError("refused")] * 3)
        sup, events, _ = build(transport, fast_policy(max_attempts=2))

        await sup.connect("s1", None)
        await wait_for(lambda: any(isinstance(e, ChannelFailed) for e in events))

        assert sup.state is ChannelState.DISCONNECTED
        assert len(transport.opens) == 3
        assert sum(isinstance(e, ChannelTransportError) for e in events) == 3
        failed = [e for e in events if isinstance(e, ChannelFailed)][0]
        assert failed.attempts == 2

    asyncio.run(scenario())


def test_server_close_reconnects_without_consuming_attempts():
    async def scenario():
        first = FakeConnection([])
        second = FakeConnection([])
        # Zero retries allowed: only a free reconnect can reach the second connection.
        sup, events, timeline = build(FakeTransport([first, second]), fast_policy(max_attempts=0))

        await sup.connect("s1", None)
        await wait_for(lambda: sup.state is ChannelState.CONNECTED)
        first.inbound.put_nowait(json.dumps({"event": "turn-start", "data": {"id": "a"}}))
        first.inbound.put_nowait(ChannelClosed("io server disconnect", server_initiated=True))

        await wait_for(lambda: len(second.sent) == 1 and sup.state is ChannelState.CONNECTED)

        assert not any(isinstance(e, ChannelFailed) for e in events)
        assert ("state", ChannelState.RECONNECTING) not in timeline
        await sup.aclose()

    asyncio.run(scenario())


def test_disconnect_closes_and_reports():
    async def scenario():
        conn = FakeConnection([])
        sup, events, _ = build(FakeTransport([conn]))

        await sup.connect("s1", None)
        await wait_for(lambda: sup.state is ChannelState.CONNECTED)
        await sup.disconnect()

        assert sup.state is ChannelState.DISCONNECTED
        assert conn.closed is True
        assert isinstance(events[-1], ChannelDisconnected)
        assert events[-1].reason == "client disconnect"

    asyncio.run(scenario())


def test_emit_requires_connected_channel():
    async def scenario():
        sup, _, _ = build(FakeTransport([]))
        with pytest.raises(ChannelNotReadyError):
            await sup.emit(SendTurn(text="hi", persona_hint="Manager"))

    asyncio.run(scenario())


def test_connect_is_idempotent_for_same_session():
    async def scenario():
        conn = FakeConnection([])
        transport = FakeTransport([conn])
        sup, _, _ = build(transport)

        await sup.connect("s1", None)
        await wait_for(lambda: sup.state is ChannelState.CONNECTED)
        await sup.connect("s1", None)

        assert len(transport.opens) == 1
        await sup.aclose()

    asyncio.run(scenario())


def test_repeated_server_close_before_any_frame_gives_up():
    async def scenario():
        conns = []
        for _ in range(20):
            conn = FakeConnection([])
            conn.inbound.put_nowait(ChannelClosed("io server disconnect", server_initiated=True))
            conns.append(conn)
        transport = FakeTransport(conns)
        sup, events, _ = build(transport, fast_policy(max_attempts=3))

        await sup.connect("s1", None)
        await wait_for(lambda: any(isinstance(e, ChannelFailed) for e in events))
        return sup, events, transport

    sup, events, transport = asyncio.run(scenario())

    assert sup.state is ChannelState.DISCONNECTED
    # First close plus three throttled retries.
    assert len(transport.opens) == 4
    failed = [e for e in events if isinstance(e, ChannelFailed)]
    assert len(failed) == 1
    assert failed[0].reason == "io server disconnect"


def test_non_finite_timestamp_does_not_stop_receiving():
    async def scenario():
        conn = FakeConnection([])
        sup, events, _ = build(FakeTransport([conn]))

        await sup.connect("s1", None)
        await wait_for(lambda: sup.state is ChannelState.CONNECTED)

        conn.inbound.put_nowait('{"event": "turn-persisted", "data": {"id": "db1", "timestamp": NaN}}')
        conn.inbound.put_nowait(json.dumps({"event": "turn-start", "data": {"id": "a"}}))
        await wait_for(lambda: any(isinstance(e, TurnStart) for e in events))

        state = sup.state
        await sup.aclose()
        return state, events

    state, events = asyncio.run(scenario())

    assert state is ChannelState.CONNECTED
    assert isinstance(events[1], TurnPersisted)
    assert isinstance(events[2], TurnStart)


def test_crashed_supervision_drops_to_disconnected(quiet_logs):
    async def scenario():
        conn = FakeConnection([])
        sup, events, _ = build(FakeTransport([conn]))

        await sup.connect("s1", None)
        await wait_for(lambda: sup.state is ChannelState.CONNECTED)
        conn.inbound.put_nowait(RuntimeError("boom"))
        await wait_for(lambda: any(isinstance(e, ChannelFailed) for e in events))
        return sup, conn, events

    sup, conn, events = asyncio.run(scenario())

    assert sup.state is ChannelState.DISCONNECTED
    assert conn.closed is True
    assert sup.session_id == "s1"
    assert "CHANNEL_SUPERVISION_CRASHED" in {e["event_type"] for e in quiet_logs}


def test_disconnect_forgets_session_so_reconnect_is_refused():
    async def scenario():
        conn = FakeConnection([])
        transport = FakeTransport([conn])
        sup, _, _ = build(transport)

        await sup.connect("s1", "tok")
        await wait_for(lambda: sup.state is ChannelState.CONNECTED)
        await sup.disconnect()

        return sup, sup.reconnect(), transport

    sup, restarted, transport = asyncio.run(scenario())

    assert restarted is False
    assert sup.session_id is None
    assert sup.state is ChannelState.DISCONNECTED
    assert len(transport.opens) == 1
