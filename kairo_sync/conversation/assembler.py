"""
Pure stream assembler.

(log_state, event) -> (new_log_state, commands)

Rules:
- Pure: no side effects, no IO, no clocks.
- Deterministic: output depends only on inputs.
- Total: every event type is handled or explicitly ignored (logged).
- Records are appended or replaced in place; never reordered.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from kairo_sync.constants import FALLBACK_DEDUP_WINDOW_MS, MSG_CHANNEL_ERROR, USER_SENDER_LABEL
from kairo_sync.conversation.commands import Command, LogEvent
from kairo_sync.conversation.records import LogState, MessageRecord, Role
from kairo_sync.events import (
    ChannelConnected,
    ChannelDisconnected,
    ChannelErrorReported,
    ChannelFailed,
    ChannelTransportError,
    Event,
    HistoryHydrated,
    LogReset,
    MessageFallback,
    SystemNotice,
    TurnChunk,
    TurnComplete,
    TurnPersisted,
    TurnStart,
    TypingIndicator,
    WelcomeSeeded,
)

Result = tuple[LogState, tuple[Command, ...]]


# =============================================================================
# Small helpers
# =============================================================================

def _log(
    state: LogState,
    event: Event,
    decision: str,
    details: dict[str, Any] | None = None,
) -> LogEvent:
    return LogEvent(
        event={
            "ts_ms": event.ts_ms,
            "event_type": event.event_type.value,
            "decision": decision,
            "record_count": len(state.records),
            "streaming_id": state.streaming_id,
            "details": details or {},
        }
    )


def _ignore(state: LogState, event: Event, reason: str, **details: Any) -> Result:
    return state, (_log(state, event, "ignore", {"reason": reason, **details}),)


def _replace_at(state: LogState, idx: int, record: MessageRecord) -> tuple[MessageRecord, ...]:
    records = list(state.records)
    records[idx] = record
    return tuple(records)


def _append(state: LogState, record: MessageRecord) -> tuple[MessageRecord, ...]:
    return state.records + (record,)


def _system_record(state: LogState, event: Event, text: str) -> MessageRecord:
    return MessageRecord(
        id=f"system-{event.ts_ms}-{len(state.records)}",
        role=Role.SYSTEM,
        content=text,
        created_at_ms=event.ts_ms,
    )


# =============================================================================
# Streamed turns
# =============================================================================

def _on_turn_start(state: LogState, event: TurnStart) -> Result:
    if state.index_of(event.turn_id) is not None:
        return _ignore(state, event, "duplicate_turn_start", turn_id=event.turn_id)

    record = MessageRecord(
        id=event.turn_id,
        role=event.role,
        content="",
        created_at_ms=event.ts_ms,
        sender_label=event.sender_label,
        closed=False,
    )
    new_state = replace(
        state,
        records=_append(state, record),
        streaming_id=event.turn_id,
    )
    return new_state, (_log(new_state, event, "turn_opened", {"turn_id": event.turn_id}),)


def _on_turn_chunk(state: LogState, event: TurnChunk) -> Result:
    idx = state.index_of(event.turn_id)
    decision = "chunk_appended"

    if idx is None:
        # Best-effort recovery for a reordered or missed turn-start:
        # only the latest agent record, and only while it is still open.
        idx = state.last_index_of_role(Role.AGENT)
        if idx is None or state.records[idx].closed:
            return _ignore(
                state,
                event,
                "chunk_without_open_turn",
                turn_id=event.turn_id,
                chunk_len=len(event.text),
            )
        decision = "chunk_appended_fallback"

    target = state.records[idx]
    updated = replace(target, content=target.content + event.text)
    new_state = replace(state, records=_replace_at(state, idx, updated))
    return new_state, (
        _log(
            new_state,
            event,
            decision,
            {"turn_id": event.turn_id, "target_id": target.id, "chunk_len": len(event.text)},
        ),
    )


def _on_turn_complete(state: LogState, event: TurnComplete) -> Result:
    idx = state.index_of(event.turn_id)
    if idx is None:
        return _ignore(state, event, "complete_for_unknown_turn", turn_id=event.turn_id)

    target = state.records[idx]
    if target.closed:
        return _ignore(state, event, "turn_already_closed", turn_id=event.turn_id)

    new_state = replace(state, records=_replace_at(state, idx, replace(target, closed=True)))
    return new_state, (
        _log(new_state, event, "turn_closed", {"turn_id": event.turn_id, "content_len": len(target.content)}),
    )


def _on_turn_persisted(state: LogState, event: TurnPersisted) -> Result:
    turn_id = event.turn_id if event.turn_id is not None else state.streaming_id
    if turn_id is None:
        return _ignore(state, event, "persisted_without_turn", persisted_id=event.persisted_id)

    idx = state.index_of(turn_id)
    if idx is None:
        # Already rewritten (replay of the same confirmation) or unknown.
        return _ignore(
            state,
            event,
            "persisted_turn_not_found",
            turn_id=turn_id,
            persisted_id=event.persisted_id,
        )

    holder = state.index_of(event.persisted_id)
    if holder is not None and holder != idx:
        return _ignore(
            state,
            event,
            "persisted_id_already_taken",
            turn_id=turn_id,
            persisted_id=event.persisted_id,
        )

    target = state.records[idx]
    updated = replace(
        target,
        id=event.persisted_id,
        created_at_ms=event.server_ts_ms,
        persisted=True,
    )
    if updated == target:
        return _ignore(state, event, "persisted_noop", turn_id=turn_id)

    streaming_id = None if state.streaming_id == turn_id else state.streaming_id
    new_state = replace(
        state,
        records=_replace_at(state, idx, updated),
        streaming_id=streaming_id,
    )
    return new_state, (
        _log(
            new_state,
            event,
            "identity_rewritten",
            {"turn_id": turn_id, "persisted_id": event.persisted_id, "position": idx},
        ),
    )


# =============================================================================
# Auxiliary protocol events
# =============================================================================

def _is_echo(state: LogState, event: MessageFallback) -> bool:
    for record in state.records:
        if (
            record.role is Role.USER
            and record.content == event.text
            and abs(record.created_at_ms - event.ts_ms) < FALLBACK_DEDUP_WINDOW_MS
        ):
            return True
    return False


def _on_message_fallback(state: LogState, event: MessageFallback) -> Result:
    if event.role is not Role.USER:
        # Agent replies always arrive through the streaming path.
        return _ignore(state, event, "fallback_non_user", role=event.role.value)

    if event.message_id is not None and state.index_of(event.message_id) is not None:
        return _ignore(state, event, "fallback_duplicate_id", message_id=event.message_id)

    if _is_echo(state, event):
        return _ignore(state, event, "fallback_duplicate_content")

    record = MessageRecord(
        id=event.message_id or f"user-{event.ts_ms}-{len(state.records)}",
        role=Role.USER,
        content=event.text,
        created_at_ms=event.ts_ms,
        sender_label=event.sender_label or USER_SENDER_LABEL,
        persisted=event.message_id is not None,
    )
    new_state = replace(state, records=_append(state, record), agent_typing=False)
    return new_state, (_log(new_state, event, "user_message_inserted", {"record_id": record.id}),)


def _on_typing(state: LogState, event: TypingIndicator) -> Result:
    if state.agent_typing == event.is_typing:
        return state, ()
    new_state = replace(state, agent_typing=event.is_typing)
    return new_state, (_log(new_state, event, "typing_changed", {"is_typing": event.is_typing}),)


def _on_channel_error(state: LogState, event: ChannelErrorReported) -> Result:
    if not event.message:
        return _ignore(state, event, "channel_error_without_message")
    record = _system_record(state, event, MSG_CHANNEL_ERROR.format(reason=event.message))
    new_state = replace(state, records=_append(state, record), agent_typing=False)
    return new_state, (_log(new_state, event, "channel_error_surfaced", {"message": event.message}),)


# =============================================================================
# Log control events
# =============================================================================

def _on_history(state: LogState, event: HistoryHydrated) -> Result:
    if state.hydrated:
        return _ignore(state, event, "already_hydrated")

    present = {record.id for record in state.records}
    history: list[MessageRecord] = []
    for record in event.records:
        if record.id in present:
            continue
        present.add(record.id)
        history.append(replace(record, closed=True))

    # History is older than anything that may already be in the log.
    new_state = replace(state, records=tuple(history) + state.records, hydrated=True)
    return new_state, (_log(new_state, event, "history_hydrated", {"history_len": len(history)}),)


def _on_welcome(state: LogState, event: WelcomeSeeded) -> Result:
    if state.welcomed:
        return _ignore(state, event, "already_welcomed")
    new_state = replace(state, records=_append(state, event.record), welcomed=True)
    return new_state, (_log(new_state, event, "welcome_seeded", {"record_id": event.record.id}),)


def _on_system_notice(state: LogState, event: SystemNotice) -> Result:
    record = _system_record(state, event, event.text)
    new_state = replace(state, records=_append(state, record))
    return new_state, (_log(new_state, event, "system_notice", {"text": event.text}),)


# =============================================================================
# Entry point
# =============================================================================

def reduce(state: LogState, event: Event) -> Result:
    """
    Fold one event into the conversation log.

    Returns the new state (the same object when nothing changed) and
    diagnostic commands for the caller to execute.
    """
    if isinstance(event, TurnStart):
        return _on_turn_start(state, event)
    if isinstance(event, TurnChunk):
        return _on_turn_chunk(state, event)
    if isinstance(event, TurnComplete):
        return _on_turn_complete(state, event)
    if isinstance(event, TurnPersisted):
        return _on_turn_persisted(state, event)
    if isinstance(event, MessageFallback):
        return _on_message_fallback(state, event)
    if isinstance(event, TypingIndicator):
        return _on_typing(state, event)
    if isinstance(event, ChannelErrorReported):
        return _on_channel_error(state, event)
    if isinstance(event, HistoryHydrated):
        return _on_history(state, event)
    if isinstance(event, WelcomeSeeded):
        return _on_welcome(state, event)
    if isinstance(event, SystemNotice):
        return _on_system_notice(state, event)
    if isinstance(event, LogReset):
        new_state = LogState()
        return new_state, (_log(state, event, "log_reset", {"dropped": len(state.records)}),)
    if isinstance(
        event,
        (ChannelConnected, ChannelDisconnected, ChannelTransportError, ChannelFailed),
    ):
        # Supervisor lifecycle; rendered through SystemNotice by the engine.
        return state, ()

    return _ignore(state, event, "unhandled_event_type")
