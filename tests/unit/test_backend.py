# pylint: disable=missing-module-docstring,missing-function-docstring
import asyncio
import json

import httpx
import pytest

from kairo_sync.conversation.records import Role
from kairo_sync.observability import metrics
from kairo_sync.session.backend import BackendClient, BackendError
from kairo_sync.session.models import TaskPriority, TaskStatus


@pytest.fixture(autouse=True)
def captured_metrics(monkeypatch: pytest.MonkeyPatch) -> list[dict]:
    captured: list[dict] = []
    monkeypatch.setattr(metrics, "log_event", captured.append)
    return captured


def client_for(handler, token: str | None = "tok") -> BackendClient:
    return BackendClient(
        base_url="http://backend.test/api",
        token_provider=lambda: token,
        transport=httpx.MockTransport(handler),
    )


def run(coro_factory, handler, token: str | None = "tok"):
    async def scenario():
        client = client_for(handler, token)
        try:
            return await coro_factory(client)
        finally:
            await client.aclose()

    return asyncio.run(scenario())


START_PAYLOAD = {
    "sessionId": "s1",
    "isResumed": True,
    "context": {
        "role": "HR Executive",
        "department": "People",
        "currentScenario": "Onboarding",
        "objectives": ["Welcome the hire"],
    },
    "history": [
        {"id": "m1", "type": "user", "content": "hi", "timestamp": "2024-01-01T00:00:00Z"},
        {"id": "m2", "type": "ai", "content": "hello", "timestamp": 1704067201000, "sender": "Sarah (Manager)"},
    ],
    "tasks": [
        {"id": "t1", "title": "Review", "status": "in-progress", "priority": "high"},
        {"id": "t2", "title": "Odd", "status": "weird", "priority": "??"},
    ],
}


def test_start_session_sends_role_resume_id_and_bearer():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=START_PAYLOAD)

    grant = run(lambda c: c.start_session("HR Executive", resume_session_id="s1"), handler)

    assert seen == {
        "path": "/api/simulation/start",
        "auth": "Bearer tok",
        "body": {"role": "HR Executive", "sessionId": "s1"},
    }
    assert grant.session_id == "s1"
    assert grant.is_resumed is True
    assert grant.context.current_scenario == "Onboarding"
    assert grant.context.objectives == ("Welcome the hire",)
    assert [r.id for r in grant.history] == ["m1", "m2"]
    assert grant.history[0].role is Role.USER
    assert grant.history[0].created_at_ms == 1_704_067_200_000
    assert grant.history[1].role is Role.AGENT
    assert grant.history[1].sender_label == "Sarah (Manager)"
    assert grant.tasks[0].status is TaskStatus.IN_PROGRESS
    assert grant.tasks[0].priority is TaskPriority.HIGH
    assert grant.tasks[1].status is TaskStatus.PENDING
    assert grant.tasks[1].priority is TaskPriority.MEDIUM


def test_new_session_parses_initial_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "sessionId": "s2",
            "initialMessage": {"id": "w1", "content": "Welcome aboard", "timestamp": 5},
        })

    grant = run(lambda c: c.start_session("HR"), handler)

    assert grant.is_resumed is False
    assert grant.welcome is not None
    assert grant.welcome.content == "Welcome aboard"
    assert grant.welcome.role is Role.AGENT


def test_error_status_carries_message_and_code(captured_metrics):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "Session not found"})

    with pytest.raises(BackendError) as info:
        run(lambda c: c.start_session("HR", resume_session_id="gone"), handler)

    assert info.value.status_code == 404
    assert info.value.message == "Session not found"
    assert info.value.session_gone is True
    assert captured_metrics[0]["metric"] == "session_start"
    assert captured_metrics[0]["details"]["status"] == 404


def test_error_without_json_body_uses_generic_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="oops")

    with pytest.raises(BackendError) as info:
        run(lambda c: c.evaluate("s1"), handler)

    assert info.value.message == "Request failed"
    assert info.value.session_gone is False


def test_transport_failure_becomes_backend_error(captured_metrics):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(BackendError):
        run(lambda c: c.start_session("HR"), handler)

    assert captured_metrics[0]["ok"] is False


def test_missing_session_id_is_rejected():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"hello": "world"})

    with pytest.raises(BackendError):
        run(lambda c: c.start_session("HR"), handler)


@pytest.mark.parametrize("field", ["history", "tasks"])
def test_non_list_collections_are_rejected(field):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"sessionId": "s1", field: 5})

    with pytest.raises(BackendError, match=f"{field} is not a list"):
        run(lambda c: c.start_session("HR"), handler)


def test_non_list_objectives_are_rejected():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"sessionId": "s1", "context": {"objectives": "be nice"}})

    with pytest.raises(BackendError, match="objectives is not a list"):
        run(lambda c: c.start_session("HR"), handler)


def test_submit_task_and_upload(tmp_path):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path.endswith("/upload"):
            return httpx.Response(200, json={"url": "https://files/1"})
        return httpx.Response(200, json={"task": {"id": "t1", "title": "Review", "status": "completed"}})

    attachment = tmp_path / "memo.txt"
    attachment.write_text("memo")

    async def flow(client: BackendClient):
        url = await client.upload_file(attachment)
        task = await client.submit_task("s1", "t1", content="done", file_url=url)
        return url, task

    url, task = run(flow, handler)

    assert url == "https://files/1"
    assert task.status is TaskStatus.COMPLETED
    assert requests[0].url.path == "/api/upload"
    assert b"memo.txt" in requests[0].content
    assert requests[1].url.path == "/api/simulation/tasks/t1/submit"
    assert json.loads(requests[1].content) == {"sessionId": "s1", "content": "done", "fileUrl": "https://files/1"}


def test_media_connection_details_requests_agent():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"serverUrl": "wss://media", "participantToken": "pt"})

    details = run(lambda c: c.media_connection_details("Drew_2a0"), handler, token=None)

    assert details["participantToken"] == "pt"
    assert seen["body"] == {"room_config": {"agents": [{"agent_name": "Drew_2a0"}]}}
