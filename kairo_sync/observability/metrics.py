"""
Timing helpers for observability.

- Measure durations using monotonic time (immune to clock changes)
- Emit metrics as JSONL events via observability.logger
- Never aggregate: one metric = one log event
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator

from kairo_sync.observability.logger import log_event


@contextmanager
def timed(
    name: str,
    *,
    session_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> Iterator[dict[str, Any]]:
    """
    Context manager for measuring durations safely.

    Guarantees:
    - Metric is emitted exactly once
    - Exceptions inside the block do NOT suppress timing

    The yielded dict may be filled by the block with extra details
    (e.g. HTTP status) before the metric is written.

    Usage:
        with timed("session_start", details={"role": role}) as extra:
            resp = await client.post(...)
            extra["status"] = resp.status_code
    """
    extra: dict[str, Any] = {}
    start_ns = time.monotonic_ns()
    ok = False
    try:
        yield extra
        ok = True
    finally:
        duration_ms = (time.monotonic_ns() - start_ns) // 1_000_000
        log_event({
            # Wall-clock timestamp for log correlation / readability
            "ts_ms": int(time.time() * 1000),
            "event_type": "METRIC_TIMER",
            "metric": name,
            "value_ms": duration_ms,
            "ok": ok,
            "session_id": session_id,
            "details": {**(details or {}), **extra},
        })
