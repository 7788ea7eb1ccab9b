"""
REST client for the backend task/session service.

Endpoints (relative to the API base URL):
    POST /simulation/start                     role -> session grant
    POST /simulation/tasks/{task_id}/submit    task submission
    POST /upload                               multipart file upload
    POST /simulation/evaluate                  opaque performance report
    POST /mock-interview/connection-details    media session token

All failures surface as BackendError carrying the HTTP status when
there was one. Every call is timed through observability.metrics.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import httpx

from kairo_sync.channel.codec import parse_role, parse_timestamp_ms
from kairo_sync.constants import DEFAULT_HTTP_TIMEOUT_S
from kairo_sync.conversation.records import MessageRecord, Role
from kairo_sync.observability.metrics import timed
from kairo_sync.session.models import ScenarioContext, Task, TaskPriority, TaskStatus


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class BackendError(Exception):
    """A backend request failed or returned an unusable payload."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def session_gone(self) -> bool:
        """The backend no longer knows the session we asked for."""
        return self.status_code in (404, 410)


@dataclass(frozen=True)
class SessionGrant:
    """Backend answer to a session start (new or resumed)."""
    session_id: str
    is_resumed: bool
    context: ScenarioContext | None = None
    welcome: MessageRecord | None = None
    history: tuple[MessageRecord, ...] = ()
    tasks: tuple[Task, ...] = ()


# ---------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------

def parse_message(data: dict[str, Any], *, default_ts_ms: int, index: int = 0) -> MessageRecord:
    role = parse_role(data.get("type", data.get("role")))
    content = data.get("content", data.get("text", ""))
    created_at_ms = parse_timestamp_ms(data.get("timestamp"), default_ts_ms)
    record_id = data.get("id")
    label = data.get("sender")
    return MessageRecord(
        id=str(record_id) if record_id not in (None, "") else f"history-{created_at_ms}-{index}",
        role=role,
        content=content if isinstance(content, str) else str(content),
        created_at_ms=created_at_ms,
        sender_label=label if isinstance(label, str) and label else None,
        closed=True,
        persisted=record_id not in (None, ""),
    )


def parse_task(data: dict[str, Any]) -> Task:
    try:
        status = TaskStatus(data.get("status", TaskStatus.PENDING.value))
    except ValueError:
        status = TaskStatus.PENDING
    try:
        priority = TaskPriority(data.get("priority", TaskPriority.MEDIUM.value))
    except ValueError:
        priority = TaskPriority.MEDIUM
    return Task(
        id=str(data["id"]),
        title=str(data.get("title", "")),
        description=str(data.get("description", "")),
        status=status,
        priority=priority,
    )


def _list_field(data: dict[str, Any], key: str) -> list[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise BackendError(f"{key} is not a list")
    return value


def parse_context(data: Any) -> ScenarioContext | None:
    if not isinstance(data, dict):
        return None
    objectives = _list_field(data, "objectives")
    return ScenarioContext(
        role=str(data.get("role", "")),
        department=str(data.get("department", "")),
        current_scenario=str(data.get("currentScenario", "")),
        objectives=tuple(str(o) for o in objectives),
    )


def parse_grant(data: Any, *, requested_resume: str | None) -> SessionGrant:
    if not isinstance(data, dict) or not data.get("sessionId"):
        raise BackendError("session start response has no sessionId")

    now = _now_ms()
    session_id = str(data["sessionId"])
    is_resumed = bool(data.get("isResumed", requested_resume is not None and requested_resume == session_id))

    welcome = None
    initial = data.get("initialMessage")
    if isinstance(initial, dict):
        welcome = parse_message({"type": Role.AGENT.value, **initial}, default_ts_ms=now)

    history = tuple(
        parse_message(item, default_ts_ms=now, index=i)
        for i, item in enumerate(_list_field(data, "history"))
        if isinstance(item, dict)
    )

    try:
        tasks = tuple(parse_task(t) for t in _list_field(data, "tasks") if isinstance(t, dict))
    except KeyError as e:
        raise BackendError(f"task without {e}") from e

    return SessionGrant(
        session_id=session_id,
        is_resumed=is_resumed,
        context=parse_context(data.get("context")),
        welcome=welcome,
        history=history,
        tasks=tasks,
    )


# ---------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------

class BackendClient:
    """Authenticated JSON client; one instance per engine."""

    def __init__(
        self,
        *,
        base_url: str,
        token_provider: Callable[[], str | None],
        timeout_s: float = DEFAULT_HTTP_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_s,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def start_session(self, role: str, *, resume_session_id: str | None = None) -> SessionGrant:
        body: dict[str, Any] = {"role": role}
        if resume_session_id is not None:
            body["sessionId"] = resume_session_id
        data = await self._request(
            "POST",
            "/simulation/start",
            metric="session_start",
            details={"role": role, "resume": resume_session_id is not None},
            json=body,
        )
        return parse_grant(data, requested_resume=resume_session_id)

    async def submit_task(
        self,
        session_id: str,
        task_id: str,
        *,
        content: str,
        file_url: str | None = None,
    ) -> Task | None:
        body: dict[str, Any] = {"sessionId": session_id, "content": content}
        if file_url is not None:
            body["fileUrl"] = file_url
        data = await self._request(
            "POST",
            f"/simulation/tasks/{task_id}/submit",
            metric="task_submit",
            details={"task_id": task_id},
            json=body,
        )
        task = data.get("task") if isinstance(data, dict) else None
        if isinstance(task, dict) and "id" in task:
            return parse_task(task)
        return None

    async def upload_file(self, path: Path) -> str:
        with path.open("rb") as fh:
            data = await self._request(
                "POST",
                "/upload",
                metric="file_upload",
                details={"name": path.name},
                files={"file": (path.name, fh)},
            )
        url = data.get("url", data.get("fileUrl")) if isinstance(data, dict) else None
        if not isinstance(url, str) or not url:
            raise BackendError("upload response has no url")
        return url

    async def evaluate(self, session_id: str) -> dict[str, Any]:
        data = await self._request(
            "POST",
            "/simulation/evaluate",
            metric="evaluate",
            json={"sessionId": session_id},
        )
        if not isinstance(data, dict):
            raise BackendError("evaluation response is not an object")
        return data

    async def media_connection_details(self, agent_name: str | None) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if agent_name:
            body["room_config"] = {"agents": [{"agent_name": agent_name}]}
        data = await self._request(
            "POST",
            "/mock-interview/connection-details",
            metric="media_connection_details",
            json=body,
        )
        if not isinstance(data, dict):
            raise BackendError("connection details response is not an object")
        return data

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        metric: str,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> Any:
        headers: dict[str, str] = {}
        token = self._token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        with timed(metric, details=details) as extra:
            try:
                response = await self._client.request(method, path, headers=headers, **kwargs)
            except httpx.HTTPError as e:
                raise BackendError(f"{type(e).__name__}: {e}") from e
            extra["status"] = response.status_code

        if response.is_error:
            raise BackendError(_error_message(response), status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise BackendError("response is not json", status_code=response.status_code) from e


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return "Request failed"
    if isinstance(body, dict):
        for key in ("message", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return "Request failed"
