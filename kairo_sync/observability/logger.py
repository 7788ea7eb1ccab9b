"""
JSONL event logger.

- Write one JSON object per line
- Output to stdout by default
- No buffering, no batching
- No side effects beyond logging
"""

from __future__ import annotations

import json
import sys
from typing import Any, Mapping, Callable


# ------------------------------------------------------------------
# Explicit output sink (patchable in tests, swappable by the CLI)
# ------------------------------------------------------------------

def _stdout_print(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()

_print: Callable[[str], None] = _stdout_print
_enabled: bool = True


def configure(*, enabled: bool = True, sink: Callable[[str], None] | None = None) -> None:
    """
    Enable/disable JSONL output and optionally replace the line sink.

    Called once by the entry point from AppConfig.
    """
    global _print, _enabled  # pylint: disable=global-statement
    _enabled = enabled
    if sink is not None:
        _print = sink


def log_event(event: Mapping[str, Any]) -> None:
    """
    Write a single JSONL event.

    The caller is responsible for:
    - Supplying a fully-formed event dict
    - Including ts_ms, session_id, etc. where known

    This function:
    - Serializes to JSON
    - Writes exactly one line
    - Flushes immediately (no buffering)
    - Never raises
    """
    if not _enabled:
        return

    try:
        line = json.dumps(event, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        # Last-resort fallback: logging must never crash the engine
        fallback: dict[str, Any] = {
            "ts_ms": event.get("ts_ms"),
            "event_type": "LOGGER_SERIALIZATION_ERROR",
            "error": str(e),
            "original_event_repr": repr(event),
        }
        line = json.dumps(fallback, ensure_ascii=False, separators=(",", ":"))

    _print(line)
