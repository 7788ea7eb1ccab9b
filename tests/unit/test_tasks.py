# pylint: disable=missing-module-docstring,missing-function-docstring
import asyncio
from typing import Any

import pytest

from kairo_sync import tasks as tasks_mod
from kairo_sync.tasks import TaskSlots


@pytest.fixture
def emitted(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    captured: list[dict[str, Any]] = []
    monkeypatch.setattr(tasks_mod, "log_event", captured.append)
    return captured


def test_start_replaces_previous_task_in_slot():
    async def scenario():
        slots = TaskSlots()
        first = slots.start("wait", asyncio.sleep(10))
        second = slots.start("wait", asyncio.sleep(10))
        await asyncio.gather(first, return_exceptions=True)

        assert first.cancelled()
        assert slots.get("wait") is second
        await slots.aclose()
        return second

    second = asyncio.run(scenario())
    assert second.cancelled()


def test_finished_task_leaves_its_slot():
    async def scenario():
        slots = TaskSlots()
        task = slots.start("quick", asyncio.sleep(0))
        await task
        await asyncio.sleep(0)
        return slots

    slots = asyncio.run(scenario())
    assert slots.get("quick") is None
    assert slots.running("quick") is False


def test_cancel_is_idempotent():
    async def scenario():
        slots = TaskSlots()
        slots.start("a", asyncio.sleep(10))
        slots.cancel("a")
        slots.cancel("a")
        slots.cancel("never-started")
        return slots.running("a")

    assert asyncio.run(scenario()) is False


def test_crashed_task_is_logged(emitted):
    async def boom():
        raise RuntimeError("kaput")

    async def scenario():
        slots = TaskSlots()
        task = slots.start("worker", boom())
        await asyncio.gather(task, return_exceptions=True)
        await asyncio.sleep(0)

    asyncio.run(scenario())

    assert emitted[-1]["event_type"] == "TASK_FAILED"
    assert emitted[-1]["slot"] == "worker"
    assert emitted[-1]["error"] == "RuntimeError: kaput"


def test_cancelled_task_is_not_logged(emitted):
    async def scenario():
        slots = TaskSlots()
        slots.start("wait", asyncio.sleep(10))
        await slots.aclose()

    asyncio.run(scenario())

    assert emitted == []
