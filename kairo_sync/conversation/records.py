"""
Conversation log data model.

Rules:
- Pure data, no behavior beyond lookup helpers.
- Records are immutable; the assembler replaces them.
- Position in LogState.records is the display order and never changes
  once a record is inserted.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    """Author of a message record."""

    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


@dataclass(frozen=True)
class MessageRecord:
    """
    Single conversation log entry.

    id:
        Provisional (assigned at turn-start) until persisted is True,
        then the backend's storage id.
    closed:
        False while a streamed turn is still receiving chunks.
    """

    id: str
    role: Role
    content: str
    created_at_ms: int
    sender_label: str | None = None
    closed: bool = True
    persisted: bool = False


@dataclass(frozen=True)
class LogState:
    """Immutable snapshot of the conversation log."""

    records: tuple[MessageRecord, ...] = ()

    # Latest turn opened by turn-start whose persisted id has not arrived yet
    streaming_id: str | None = None

    agent_typing: bool = False

    # Bulk history replay and welcome seeding happen at most once
    hydrated: bool = False
    welcomed: bool = False

    def index_of(self, record_id: str) -> int | None:
        for idx, record in enumerate(self.records):
            if record.id == record_id:
                return idx
        return None

    def last_index_of_role(self, role: Role) -> int | None:
        for idx in range(len(self.records) - 1, -1, -1):
            if self.records[idx].role is role:
                return idx
        return None
