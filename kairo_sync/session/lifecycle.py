"""
Session lifecycle controller.

Responsibilities:
- Own Session and SessionState (UNINITIALIZED -> PENDING -> ACTIVE)
- Decide new vs resumed session from the credential store
- Seed the conversation log: history for a resume, a welcome otherwise
- Task status changes and submissions

Non-responsibilities:
- NO channel handling (the engine connects once a session is ACTIVE)
- NO conversation log mutation except through emitted events
"""

from __future__ import annotations

import time
from dataclasses import replace
from pathlib import Path
from typing import Awaitable, Callable

from kairo_sync.channel.codec import persona_label
from kairo_sync.constants import (
    DEFAULT_PERSONA_HINT,
    DEFAULT_WELCOME_TEXT,
    MSG_SESSION_START_FAILED,
    MSG_TASK_SUBMIT_FAILED,
)
from kairo_sync.conversation.records import MessageRecord, Role
from kairo_sync.events import (
    Event,
    EventType,
    HistoryHydrated,
    LogReset,
    SystemNotice,
    WelcomeSeeded,
)
from kairo_sync.observability.logger import log_event
from kairo_sync.session.backend import BackendClient, BackendError, SessionGrant
from kairo_sync.session.models import (
    TASK_TRANSITIONS,
    Session,
    SessionState,
    Task,
    TaskStatus,
)
from kairo_sync.session.store import CredentialStore

EventSink = Callable[[Event], Awaitable[None]]
SessionListener = Callable[[SessionState, "Session | None"], None]


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class SessionLifecycleController:
    """
    Single owner of the current session.

    start() is re-entrant: asking for the role that is already pending
    or active does nothing. Every await inside start() is followed by
    an epoch check, so an end() or logout() issued meanwhile wins and
    the late backend answer is dropped.
    """

    def __init__(
        self,
        *,
        backend: BackendClient,
        store: CredentialStore,
        emit_event: EventSink,
        persona_hint: str = DEFAULT_PERSONA_HINT,
    ) -> None:
        self._backend = backend
        self._store = store
        self._emit_event = emit_event
        self._persona_hint = persona_hint

        self._state = SessionState.UNINITIALIZED
        self._session: Session | None = None
        # Last requested role; survives a failed start so rejoin() can use it.
        self._role: str | None = None
        self._epoch = 0

        self._listeners: list[SessionListener] = []

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def role(self) -> str | None:
        return self._role

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, role: str) -> Session | None:
        """
        Start (or resume) the session for role.

        Returns the active session, or None when the start failed or
        was superseded. Failures are reported as one system notice.
        """
        if self._state is not SessionState.UNINITIALIZED:
            if self._role == role:
                self._log("SESSION_START_IGNORED", role=role, state=self._state.value)
                return self._session
            await self.end()

        self._epoch += 1
        epoch = self._epoch
        self._role = role
        self._set_state(SessionState.PENDING, None)

        try:
            return await self._start(role, epoch)
        finally:
            # Whatever escaped, a start never stays PENDING.
            if epoch == self._epoch and self._state is SessionState.PENDING:
                self._set_state(SessionState.UNINITIALIZED, None)

    async def _start(self, role: str, epoch: int) -> Session | None:
        stored_id = self._store.session_id(role)
        try:
            grant = await self._request_grant(role, stored_id)
        except BackendError as e:
            if epoch == self._epoch:
                await self._fail(role, e.message, e.status_code)
            return None
        except OSError as e:
            if epoch == self._epoch:
                await self._fail(role, str(e), None)
            return None

        if epoch != self._epoch:
            self._log("SESSION_START_SUPERSEDED", role=role, session_id=grant.session_id)
            return None

        resumed = stored_id is not None and grant.is_resumed
        try:
            if stored_id is not None and not resumed:
                self._log("SESSION_NOT_RESUMABLE", role=role, stored_session_id=stored_id)
                self._store.clear_session_id(role)
            if self._store.session_id(role) != grant.session_id:
                self._store.set_session_id(role, grant.session_id)
        except OSError as e:
            await self._fail(role, str(e), None)
            return None

        if resumed:
            await self._emit_event(
                HistoryHydrated(
                    event_type=EventType.HISTORY_HYDRATED,
                    ts_ms=_now_ms(),
                    records=grant.history,
                )
            )
        else:
            await self._emit_event(
                WelcomeSeeded(
                    event_type=EventType.WELCOME_SEEDED,
                    ts_ms=_now_ms(),
                    record=self._welcome_record(grant),
                )
            )

        session = Session(
            session_id=grant.session_id,
            role=role,
            is_resumed=resumed,
            tasks=grant.tasks,
            context=grant.context,
        )
        self._set_state(SessionState.ACTIVE, session)
        self._log(
            "SESSION_STARTED",
            role=role,
            session_id=session.session_id,
            is_resumed=resumed,
            history=len(grant.history),
            tasks=len(grant.tasks),
        )
        return session

    async def end(self, *, evaluate: bool = False) -> dict | None:
        """
        End the simulation.

        The stored session id for the role is dropped so the next start
        creates a fresh session. With evaluate=True the backend report
        is fetched first; a failing evaluation does not block the end.
        """
        report = None
        session = self._session

        if evaluate and session is not None:
            try:
                report = await self._backend.evaluate(session.session_id)
            except BackendError as e:
                self._log("EVALUATION_FAILED", session_id=session.session_id, error=e.message)

        if self._role is not None:
            self._store.clear_session_id(self._role)
        await self._reset()
        return report

    async def logout(self) -> None:
        """End the session and forget every stored credential."""
        self._store.clear()
        await self._reset()

    def rejoin(self) -> str | None:
        """
        Adopt the persisted session id as an active resumed session.

        No history is replayed. Returns the session id, or None when
        there is nothing to rejoin.
        """
        if self._state is SessionState.ACTIVE and self._session is not None:
            return self._session.session_id
        if self._state is SessionState.PENDING or self._role is None:
            return None

        stored_id = self._store.session_id(self._role)
        if stored_id is None:
            return None

        self._epoch += 1
        session = Session(session_id=stored_id, role=self._role, is_resumed=True)
        self._set_state(SessionState.ACTIVE, session)
        self._log("SESSION_REJOINED", role=self._role, session_id=stored_id)
        return stored_id

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def set_task_status(self, task_id: str, status: TaskStatus) -> Task | None:
        session = self._session
        task = session.task(task_id) if session is not None else None
        if session is None or task is None:
            self._log("TASK_NOT_FOUND", task_id=task_id)
            return None

        if status is task.status:
            return task
        if status not in TASK_TRANSITIONS[task.status]:
            self._log(
                "TASK_TRANSITION_REJECTED",
                task_id=task_id,
                from_status=task.status.value,
                to_status=status.value,
            )
            return None

        updated = replace(task, status=status)
        self._replace_task(session, updated)
        return updated

    async def submit_task(
        self,
        task_id: str,
        content: str,
        attachment: Path | None = None,
    ) -> Task | None:
        """
        Upload the attachment (if any), then submit the task.

        The backend response decides the resulting status; a response
        without a task marks it completed.
        """
        session = self._session
        if self._state is not SessionState.ACTIVE or session is None or session.task(task_id) is None:
            self._log("TASK_NOT_FOUND", task_id=task_id)
            return None
        epoch = self._epoch

        try:
            file_url = await self._backend.upload_file(attachment) if attachment is not None else None
            returned = await self._backend.submit_task(
                session.session_id, task_id, content=content, file_url=file_url,
            )
        except BackendError as e:
            await self._emit_event(
                SystemNotice(
                    event_type=EventType.SYSTEM_NOTICE,
                    ts_ms=_now_ms(),
                    text=MSG_TASK_SUBMIT_FAILED.format(reason=e.message),
                )
            )
            return None

        current = self._session
        if epoch != self._epoch or current is None:
            return None
        task = current.task(task_id)
        if task is None:
            return None

        if returned is not None and returned.id == task_id:
            updated = returned
        else:
            updated = replace(task, status=TaskStatus.COMPLETED)
        self._replace_task(current, updated)
        return updated

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _request_grant(self, role: str, stored_id: str | None) -> SessionGrant:
        try:
            return await self._backend.start_session(role, resume_session_id=stored_id)
        except BackendError as e:
            if stored_id is None or not e.session_gone:
                raise
            self._log("SESSION_NOT_RESUMABLE", role=role, stored_session_id=stored_id, status=e.status_code)
            self._store.clear_session_id(role)
            return await self._backend.start_session(role)

    async def _fail(self, role: str, reason: str, status: int | None) -> None:
        self._set_state(SessionState.UNINITIALIZED, None)
        self._log("SESSION_START_FAILED", role=role, error=reason, status=status)
        await self._emit_event(
            SystemNotice(
                event_type=EventType.SYSTEM_NOTICE,
                ts_ms=_now_ms(),
                text=MSG_SESSION_START_FAILED.format(reason=reason),
            )
        )

    async def _reset(self) -> None:
        self._epoch += 1
        self._role = None
        self._set_state(SessionState.UNINITIALIZED, None)
        await self._emit_event(LogReset(event_type=EventType.LOG_RESET, ts_ms=_now_ms()))

    def _welcome_record(self, grant: SessionGrant) -> MessageRecord:
        if grant.welcome is not None:
            welcome = grant.welcome
            if welcome.sender_label is None:
                welcome = replace(welcome, sender_label=persona_label(self._persona_hint))
            return welcome
        return MessageRecord(
            id=f"welcome-{grant.session_id}",
            role=Role.AGENT,
            content=DEFAULT_WELCOME_TEXT,
            created_at_ms=_now_ms(),
            sender_label=persona_label(self._persona_hint),
        )

    def _replace_task(self, session: Session, task: Task) -> None:
        tasks = tuple(task if t.id == task.id else t for t in session.tasks)
        self._set_state(self._state, replace(session, tasks=tasks))
        self._log("TASK_STATUS_CHANGED", task_id=task.id, status=task.status.value)

    def _set_state(self, state: SessionState, session: Session | None) -> None:
        prev = self._state
        self._state = state
        self._session = session
        if prev is not state:
            self._log("SESSION_STATE_CHANGED", from_state=prev.value, to_state=state.value)
        for listener in tuple(self._listeners):
            listener(state, session)

    def _log(self, event_type: str, **details) -> None:
        session_id = self._session.session_id if self._session is not None else None
        log_event({
            "ts_ms": _now_ms(),
            "event_type": event_type,
            "session_id": details.pop("session_id", session_id),
            **details,
        })
