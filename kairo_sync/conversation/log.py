"""
Conversation log owner.

Holds the authoritative LogState and is the only place it is replaced.
Every change goes through the pure assembler; consumers read the
immutable snapshot or subscribe to changes.
"""

from __future__ import annotations

from typing import Callable

from kairo_sync.conversation.assembler import reduce
from kairo_sync.conversation.commands import LogEvent
from kairo_sync.conversation.records import LogState, MessageRecord
from kairo_sync.events import Event
from kairo_sync.observability.logger import log_event

LogListener = Callable[[LogState, LogState], None]


class ConversationLog:
    """
    Single source of truth rendered by the UI.

    apply() is serialized by the event loop: it never awaits, so a
    reducer step can never interleave with another.
    """

    def __init__(self, *, session_id: Callable[[], str | None] | None = None) -> None:
        self._state = LogState()
        self._listeners: list[LogListener] = []
        self._session_id = session_id or (lambda: None)

    @property
    def state(self) -> LogState:
        """Current immutable snapshot. Never mutate; it is replaced on change."""
        return self._state

    @property
    def records(self) -> tuple[MessageRecord, ...]:
        return self._state.records

    def apply(self, event: Event) -> LogState:
        prev = self._state
        new_state, commands = reduce(prev, event)
        self._state = new_state

        for cmd in commands:
            if isinstance(cmd, LogEvent):
                log_event({**cmd.event, "session_id": self._session_id()})

        if new_state is not prev:
            for listener in tuple(self._listeners):
                listener(prev, new_state)

        return new_state

    def subscribe(self, listener: LogListener) -> Callable[[], None]:
        """Register a change listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe
