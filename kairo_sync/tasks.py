"""
Named cancellable task slots.

Every wait in the engine (reconnect backoff, send wait, rejoin delay)
runs as an asyncio task stored under a slot name owned by exactly one
component. The owner cancels slots on teardown so nothing acts on a
stale session after disposal.

This module is infrastructure only:
- NO retry decisions
- NO state machine logic
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Coroutine, TypeVar

from kairo_sync.observability.logger import log_event

T = TypeVar("T")


class TaskSlots:
    """
    Arena of asyncio tasks keyed by slot name.

    - start() replaces (cancels) whatever was running in the slot
    - cancel() is idempotent
    - clear_all() is used on component teardown
    - a task that dies with an exception is logged as TASK_FAILED
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def start(self, slot: str, coro: Coroutine[Any, Any, T]) -> asyncio.Task[T]:
        self.cancel(slot)
        task = asyncio.create_task(coro, name=slot)
        self._tasks[slot] = task

        def _cleanup(done: asyncio.Task[Any]) -> None:
            if self._tasks.get(slot) is done:
                self._tasks.pop(slot, None)
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                log_event({
                    "ts_ms": time.time_ns() // 1_000_000,
                    "event_type": "TASK_FAILED",
                    "slot": slot,
                    "error": f"{type(exc).__name__}: {exc}",
                })

        task.add_done_callback(_cleanup)
        return task

    def get(self, slot: str) -> asyncio.Task[Any] | None:
        return self._tasks.get(slot)

    def running(self, slot: str) -> bool:
        task = self._tasks.get(slot)
        return task is not None and not task.done()

    def cancel(self, slot: str) -> None:
        task = self._tasks.pop(slot, None)
        if task is not None and not task.done():
            task.cancel()

    def clear_all(self) -> None:
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        self._tasks.clear()

    async def aclose(self) -> None:
        """Cancel every slot and wait until the tasks acknowledge it."""
        tasks = [t for t in self._tasks.values() if t is not asyncio.current_task()]
        self.clear_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
