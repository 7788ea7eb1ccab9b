# pylint: disable=missing-module-docstring,missing-function-docstring
from typing import Any

import pytest

from kairo_sync.conversation import log as log_mod
from kairo_sync.conversation.log import ConversationLog
from kairo_sync.events import EventType, TurnChunk, TurnStart


@pytest.fixture
def emitted(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    captured: list[dict[str, Any]] = []
    monkeypatch.setattr(log_mod, "log_event", captured.append)
    return captured


def test_apply_writes_decisions_with_session_id(emitted):
    log = ConversationLog(session_id=lambda: "s1")

    log.apply(TurnStart(event_type=EventType.TURN_START, ts_ms=1, turn_id="t1"))

    assert emitted[0]["decision"] == "turn_opened"
    assert emitted[0]["session_id"] == "s1"
    assert log.records[0].id == "t1"


def test_listeners_fire_only_on_change(emitted):
    log = ConversationLog()
    changes = []
    unsubscribe = log.subscribe(lambda prev, new: changes.append((len(prev.records), len(new.records))))

    start = TurnStart(event_type=EventType.TURN_START, ts_ms=1, turn_id="t1")
    log.apply(start)
    log.apply(start)  # duplicate, ignored
    assert changes == [(0, 1)]

    unsubscribe()
    log.apply(TurnChunk(event_type=EventType.TURN_CHUNK, ts_ms=2, turn_id="t1", text="x"))
    assert changes == [(0, 1)]
    assert log.state.records[0].content == "x"
