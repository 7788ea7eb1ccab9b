"""
Channel wire codec.

Frames are JSON text:
    {"event": "<name>", "data": {...}}
A two-element array ["<name>", {...}] is accepted as well.

Inbound names:
    turn-start, turn-chunk, turn-complete, turn-persisted,
    message-fallback, typing-indicator, channel-error
plus the legacy aliases the first backend emitted
(message_start, message_chunk, message_complete, message_saved,
new_message, persona_typing, error).

Outbound control messages:
    join-session(sessionId), send-turn(text, personaHint)
or, in legacy mode, join_simulation / send_message.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from kairo_sync.constants import DEFAULT_AGENT_LABEL, PERSONA_LABELS
from kairo_sync.conversation.records import Role
from kairo_sync.events import (
    ChannelErrorReported,
    Event,
    EventType,
    MessageFallback,
    TurnChunk,
    TurnComplete,
    TurnPersisted,
    TurnStart,
    TypingIndicator,
)


class ProtocolDecodeError(Exception):
    """Inbound frame could not be turned into an event."""


class UnknownEventError(ProtocolDecodeError):
    """Frame was well-formed but names an event we do not consume."""


# =============================================================================
# Outbound control messages
# =============================================================================

@dataclass(frozen=True)
class JoinSession:
    """Bind the physical channel to a session."""
    session_id: str


@dataclass(frozen=True)
class SendTurn:
    """One user turn."""
    text: str
    persona_hint: str


ControlMessage = JoinSession | SendTurn


def encode_control(message: ControlMessage, *, legacy: bool = False) -> str:
    if isinstance(message, JoinSession):
        if legacy:
            return _dumps("join_simulation", message.session_id)
        return _dumps("join-session", {"sessionId": message.session_id})

    if isinstance(message, SendTurn):
        if legacy:
            return _dumps("send_message", {"message": message.text, "persona": message.persona_hint})
        return _dumps("send-turn", {"text": message.text, "personaHint": message.persona_hint})

    raise TypeError(f"unsupported control message: {type(message).__name__}")


def control_name(message: ControlMessage) -> str:
    return "join-session" if isinstance(message, JoinSession) else "send-turn"


def _dumps(name: str, data: Any) -> str:
    return json.dumps({"event": name, "data": data}, ensure_ascii=False, separators=(",", ":"))


# =============================================================================
# Field helpers
# =============================================================================

_ALIASES: dict[str, EventType] = {
    "message_start": EventType.TURN_START,
    "message_chunk": EventType.TURN_CHUNK,
    "message_complete": EventType.TURN_COMPLETE,
    "message_saved": EventType.TURN_PERSISTED,
    "new_message": EventType.MESSAGE_FALLBACK,
    "persona_typing": EventType.TYPING_INDICATOR,
    "error": EventType.CHANNEL_ERROR,
}

_ROLE_ALIASES: dict[str, Role] = {
    "user": Role.USER,
    "system": Role.SYSTEM,
    "agent": Role.AGENT,
    "ai": Role.AGENT,
    "assistant": Role.AGENT,
    "persona": Role.AGENT,
}


def parse_timestamp_ms(value: Any, default: int) -> int:
    """
    Accepts epoch milliseconds or an ISO-8601 string.

    Anything unparseable (including NaN and infinities, which json
    accepts) falls back to default (the receive time).
    """
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else default
    if isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return default
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return default


def parse_role(value: Any, default: Role = Role.AGENT) -> Role:
    if isinstance(value, str):
        return _ROLE_ALIASES.get(value.strip().lower(), default)
    return default


def persona_label(persona: Any) -> str:
    """Display label for a persona name (e.g. Manager -> Sarah (Manager))."""
    if not isinstance(persona, str) or not persona:
        return DEFAULT_AGENT_LABEL
    return PERSONA_LABELS.get(persona, persona)


def _required_str(data: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value) != "":
            return str(value)
    raise ProtocolDecodeError(f"missing field: {'/'.join(keys)}")


def _optional_str(data: dict[str, Any], *keys: str) -> str | None:
    try:
        return _required_str(data, *keys)
    except ProtocolDecodeError:
        return None


def _text(data: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str):
            return value
    raise ProtocolDecodeError(f"missing text field: {'/'.join(keys)}")


# =============================================================================
# Inbound decoding
# =============================================================================

def split_frame(raw: str | bytes) -> tuple[str, Any]:
    """Return (event name, data) of a raw frame."""
    try:
        decoded = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolDecodeError(f"invalid json: {e}") from e

    if isinstance(decoded, list) and len(decoded) in (1, 2) and isinstance(decoded[0], str):
        return decoded[0], decoded[1] if len(decoded) == 2 else {}

    if isinstance(decoded, dict):
        name = decoded.get("event", decoded.get("type"))
        if isinstance(name, str):
            return name, decoded.get("data", {})

    raise ProtocolDecodeError("frame has no event name")


def decode_frame(raw: str | bytes, *, ts_ms: int) -> Event:
    """
    Decode one inbound frame into an event.

    Raises:
        UnknownEventError for well-formed frames we do not consume.
        ProtocolDecodeError for anything malformed.
    """
    name, data = split_frame(raw)

    try:
        event_type = _ALIASES.get(name) or EventType(name)
    except ValueError as e:
        raise UnknownEventError(f"unknown event: {name}") from e

    if not isinstance(data, dict):
        if event_type is EventType.CHANNEL_ERROR and isinstance(data, str):
            data = {"message": data}
        else:
            raise ProtocolDecodeError(f"{name}: payload is not an object")

    if event_type is EventType.TURN_START:
        label = _optional_str(data, "senderLabel", "sender")
        return TurnStart(
            event_type=event_type,
            ts_ms=ts_ms,
            turn_id=_required_str(data, "id", "turnId"),
            role=parse_role(data.get("role")),
            sender_label=label or persona_label(data.get("persona")),
        )

    if event_type is EventType.TURN_CHUNK:
        return TurnChunk(
            event_type=event_type,
            ts_ms=ts_ms,
            turn_id=_required_str(data, "id", "turnId"),
            text=_text(data, "text", "chunk"),
        )

    if event_type is EventType.TURN_COMPLETE:
        return TurnComplete(
            event_type=event_type,
            ts_ms=ts_ms,
            turn_id=_required_str(data, "id", "turnId"),
        )

    if event_type is EventType.TURN_PERSISTED:
        if "persistedId" in data:
            persisted_id = _required_str(data, "persistedId")
            turn_id = _optional_str(data, "id", "turnId", "tempId")
        else:
            # Legacy shape: {"id": <storage id>, "timestamp": ...}
            persisted_id = _required_str(data, "id")
            turn_id = _optional_str(data, "tempId", "provisionalId")
        return TurnPersisted(
            event_type=event_type,
            ts_ms=ts_ms,
            turn_id=turn_id,
            persisted_id=persisted_id,
            server_ts_ms=parse_timestamp_ms(data.get("timestamp"), ts_ms),
        )

    if event_type is EventType.MESSAGE_FALLBACK:
        return MessageFallback(
            event_type=event_type,
            ts_ms=parse_timestamp_ms(data.get("timestamp"), ts_ms),
            role=parse_role(data.get("role", data.get("sender"))),
            text=_text(data, "text", "content", "message"),
            message_id=_optional_str(data, "id"),
            sender_label=_optional_str(data, "senderLabel"),
        )

    if event_type is EventType.TYPING_INDICATOR:
        return TypingIndicator(
            event_type=event_type,
            ts_ms=ts_ms,
            is_typing=bool(data.get("isTyping", False)),
        )

    if event_type is EventType.CHANNEL_ERROR:
        message = data.get("message")
        return ChannelErrorReported(
            event_type=event_type,
            ts_ms=ts_ms,
            message=message if isinstance(message, str) else "",
        )

    # Lifecycle/control types are never accepted from the wire
    raise UnknownEventError(f"event not accepted from channel: {name}")
