"""
Side-effect command definitions emitted by the stream assembler.

Rules:
- Commands are declarative requests for side effects.
- Commands are emitted by the reducer and executed by ConversationLog.
- No behavior, no async, no I/O, no clocks.
Invariant:
    - All concrete Command subclasses MUST be frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class CommandType(str, Enum):
    """Stable discriminants used for logging and dispatch."""

    LOG_EVENT = "LOG_EVENT"


class Command:
    """
    Base command type.

    command_type is an explicit discriminant and must never be inferred
    from Python type identity.
    """

    command_type: CommandType


@dataclass(frozen=True)
class LogEvent(Command):
    """Request to emit a structured observability event."""
    event: dict[str, Any]
    command_type: CommandType = CommandType.LOG_EVENT
