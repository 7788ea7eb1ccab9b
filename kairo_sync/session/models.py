"""
Session and task data model.

Rules:
- Pure data; transitions live in SessionLifecycleController.
- Task status/priority values match the backend's wire strings.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SessionState(str, Enum):
    """
    Session lifecycle.

    UNINITIALIZED -> PENDING -> ACTIVE; ACTIVE -> UNINITIALIZED only on
    explicit end/logout. A failed start goes back to UNINITIALIZED.
    """

    UNINITIALIZED = "UNINITIALIZED"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Allowed explicit status changes; completed tasks are final.
TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.PENDING, TaskStatus.COMPLETED}),
    TaskStatus.COMPLETED: frozenset(),
}


@dataclass(frozen=True)
class Task:
    """Unit of work assigned during a simulation."""
    id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM


@dataclass(frozen=True)
class ScenarioContext:
    """Background of the role-play, as supplied by the backend."""
    role: str
    department: str = ""
    current_scenario: str = ""
    objectives: tuple[str, ...] = ()


@dataclass(frozen=True)
class Session:
    """
    One conversation session.

    Created exactly once per role selection; resumed (is_resumed=True)
    when a persisted id from an earlier run is reused.
    """
    session_id: str
    role: str
    is_resumed: bool
    tasks: tuple[Task, ...] = ()
    context: ScenarioContext | None = None

    def task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None
