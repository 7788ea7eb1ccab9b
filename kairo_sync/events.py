"""
Unified event definitions for the sync engine.

Rules:
- Events describe facts that have occurred.
- Events carry data only (no behavior).
- All conversation log decisions are based on these events.
- No clocks, no timers, no async, no side effects.

Event sources:
- Channel protocol events are decoded from inbound frames by the codec.
- Channel lifecycle events are emitted by the ConnectionSupervisor.
- Log control events are emitted by the session controller and dispatcher.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from kairo_sync.conversation.records import MessageRecord, Role


# =============================================================================
# Event Type Enumeration
# =============================================================================

class EventType(str, Enum):
    """
    Canonical event types understood by the engine.

    Every event type must be explicitly handled or explicitly
    ignored by the stream assembler.
    """

    # ------------------------------------------------------------------
    # Streamed turns (backend protocol)
    # ------------------------------------------------------------------
    TURN_START = "turn-start"
    TURN_CHUNK = "turn-chunk"
    TURN_COMPLETE = "turn-complete"
    TURN_PERSISTED = "turn-persisted"

    # ------------------------------------------------------------------
    # Non-streamed / auxiliary protocol events
    # ------------------------------------------------------------------
    MESSAGE_FALLBACK = "message-fallback"
    TYPING_INDICATOR = "typing-indicator"
    CHANNEL_ERROR = "channel-error"

    # ------------------------------------------------------------------
    # Channel lifecycle (supervisor)
    # ------------------------------------------------------------------
    CHANNEL_CONNECTED = "CHANNEL_CONNECTED"
    CHANNEL_DISCONNECTED = "CHANNEL_DISCONNECTED"
    CHANNEL_TRANSPORT_ERROR = "CHANNEL_TRANSPORT_ERROR"
    CHANNEL_FAILED = "CHANNEL_FAILED"

    # ------------------------------------------------------------------
    # Log control (session controller / dispatcher)
    # ------------------------------------------------------------------
    HISTORY_HYDRATED = "HISTORY_HYDRATED"
    WELCOME_SEEDED = "WELCOME_SEEDED"
    SYSTEM_NOTICE = "SYSTEM_NOTICE"
    LOG_RESET = "LOG_RESET"


# =============================================================================
# Base Event
# =============================================================================

@dataclass(frozen=True)
class Event:
    """
    Base event type.

    All events must specify:
    - event_type: discriminant
    - ts_ms: timestamp provided by the source (or fake in tests)
    """

    event_type: EventType
    ts_ms: int


# =============================================================================
# Streamed Turn Events
# =============================================================================

@dataclass(frozen=True)
class TurnStart(Event):
    """A streamed reply began under a provisional id."""
    turn_id: str
    role: Role = Role.AGENT
    sender_label: str | None = None


@dataclass(frozen=True)
class TurnChunk(Event):
    """A text fragment of a streamed reply."""
    turn_id: str
    text: str


@dataclass(frozen=True)
class TurnComplete(Event):
    """The backend finished streaming a reply. Informational only."""
    turn_id: str


@dataclass(frozen=True)
class TurnPersisted(Event):
    """
    Backend confirmed durable storage of a turn.

    turn_id may be None when the backend omits the provisional id;
    the assembler then targets the turn currently streaming.
    """
    turn_id: str | None
    persisted_id: str
    server_ts_ms: int


# =============================================================================
# Auxiliary Protocol Events
# =============================================================================

@dataclass(frozen=True)
class MessageFallback(Event):
    """
    Complete, non-streamed message (compatibility path).

    Only user-authored messages are admitted to the log.
    """
    role: Role
    text: str
    message_id: str | None = None
    sender_label: str | None = None


@dataclass(frozen=True)
class TypingIndicator(Event):
    """Persona typing state changed."""
    is_typing: bool


@dataclass(frozen=True)
class ChannelErrorReported(Event):
    """Backend reported an error over the channel."""
    message: str


# =============================================================================
# Channel Lifecycle Events
# =============================================================================

@dataclass(frozen=True)
class ChannelConnected(Event):
    """Channel open and join-session already sent."""
    session_id: str
    reconnect: bool = False


@dataclass(frozen=True)
class ChannelDisconnected(Event):
    """Channel lost (any cause)."""
    session_id: str | None
    reason: str | None = None


@dataclass(frozen=True)
class ChannelTransportError(Event):
    """A single connect attempt failed; retry policy still applies."""
    reason: str
    attempt: int


@dataclass(frozen=True)
class ChannelFailed(Event):
    """Reconnect ceiling exceeded. Terminal until the user refreshes."""
    reason: str
    attempts: int


# =============================================================================
# Log Control Events
# =============================================================================

@dataclass(frozen=True)
class HistoryHydrated(Event):
    """Bulk replay of a resumed session's conversation."""
    records: tuple[MessageRecord, ...]


@dataclass(frozen=True)
class WelcomeSeeded(Event):
    """Welcome record for a freshly created session."""
    record: MessageRecord


@dataclass(frozen=True)
class SystemNotice(Event):
    """User-visible diagnostic."""
    text: str


@dataclass(frozen=True)
class LogReset(Event):
    """Session ended; conversation log cleared."""


PROTOCOL_EVENTS: frozenset[EventType] = frozenset({
    EventType.TURN_START,
    EventType.TURN_CHUNK,
    EventType.TURN_COMPLETE,
    EventType.TURN_PERSISTED,
    EventType.MESSAGE_FALLBACK,
    EventType.TYPING_INDICATOR,
    EventType.CHANNEL_ERROR,
})
