"""Tests for the Todoist REST client."""

import json

import httpx
import pytest

from todo_sync.adapters.todoist_adapter import TodoistTaskService
from todo_sync.models import Duration, DurationUnit
from todo_sync.sync.services import (
    AuthenticationError,
    RateLimitError,
    SyncError,
    TransientServiceError,
)


TASK_PAYLOAD = {
    "id": "2995104339",
    "content": "Buy Milk",
    "description": "Whole milk",
    "priority": 4,
    "due": {
        "date": "2024-05-26",
        "string": "every week",
        "is_recurring": True,
        "datetime": None,
        "timezone": None,
    },
    "duration": {"amount": 15, "unit": "minute"},
    "labels": ["Food", "Shopping"],
    "project_id": "2203306141",
    "section_id": "7025",
    "parent_id": None,
    "order": 1,
    "is_completed": False,
    "created_at": "2024-01-02T12:00:00.000000Z",
    "creator_id": "2671355",
    "assignee_id": "2671362",
    "assigner_id": "2671355",
    "comment_count": 10,
    "url": "https://todoist.com/showTask?id=2995104339",
    "deadline": None,
}


def make_service(handler, token="secret-token"):
    requests = []

    def record(request):
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    return TodoistTaskService(token, client=client), requests


@pytest.mark.asyncio
class TestRequests:
    """Test request construction and status handling."""

    async def test_fetch_tasks(self):
        service, requests = make_service(lambda request: httpx.Response(200, json=[TASK_PAYLOAD]))

        tasks = await service.fetch_all()

        assert requests[0].method == "GET"
        assert str(requests[0].url) == "https://api.todoist.com/rest/v2/tasks"
        assert requests[0].headers["Authorization"] == "Bearer secret-token"
        task = tasks[0]
        assert task.id == "2995104339"
        assert task.priority == 4
        assert task.is_recurring
        assert task.due.string == "every week"
        assert task.duration == Duration(15, DurationUnit.MINUTE)
        assert task.label_names == ["Food", "Shopping"]
        assert task.assignee_id == "2671362"
        assert task.comment_count == 10
        assert task.created_at.year == 2024
        assert task.extra == {"deadline": None}
        await service.aclose()

    async def test_labels_are_resolved_after_fetch(self):
        def handler(request):
            if request.url.path.endswith("/labels"):
                return httpx.Response(200, json=[{"id": "100", "name": "Food", "color": "red"}])
            return httpx.Response(200, json=[TASK_PAYLOAD])

        service, _ = make_service(handler)

        labels = await service.fetch_labels()
        tasks = await service.fetch_all()

        assert labels[0].id == "100"
        food = next(label for label in tasks[0].labels if label.name == "Food")
        assert food.id == "100"
        assert food.color == "red"

    async def test_projects_and_sections(self):
        def handler(request):
            if request.url.path.endswith("/projects"):
                return httpx.Response(200, json=[
                    {"id": "1", "name": "Inbox", "is_inbox_project": True, "order": 0},
                    {"id": "2", "name": "Work", "parent_id": None, "order": 1},
                ])
            return httpx.Response(200, json=[{"id": "7", "name": "Next", "project_id": "2", "order": 1}])

        service, _ = make_service(handler)

        projects = await service.fetch_projects()
        sections = await service.fetch_sections()

        assert [p.name for p in projects] == ["Inbox", "Work"]
        assert projects[0].is_inbox
        assert sections[0].project_id == "2"

    async def test_close_update_delete(self):
        service, requests = make_service(
            lambda request: httpx.Response(204) if request.method != "POST" or "close" in request.url.path
            else httpx.Response(200, json={**TASK_PAYLOAD, "priority": 3})
        )

        assert await service.close("42") is True
        updated = await service.update("42", {"priority": 3})
        assert await service.delete("42") is True

        assert [(r.method, r.url.path) for r in requests] == [
            ("POST", "/rest/v2/tasks/42/close"),
            ("POST", "/rest/v2/tasks/42"),
            ("DELETE", "/rest/v2/tasks/42"),
        ]
        assert json.loads(requests[1].content) == {"priority": 3}
        assert updated.priority == 3

    async def test_create_payload(self):
        service, requests = make_service(lambda request: httpx.Response(200, json=TASK_PAYLOAD))

        await service.create("Buy Milk", {
            "project_id": "2203306141",
            "priority": 4,
            "due_date": "2024-05-26",
            "labels": ["Food"],
            "description": None,
            "duration": Duration(2, DurationUnit.DAY),
            "unknown": "ignored",
        })

        body = json.loads(requests[0].content)
        assert body == {
            "content": "Buy Milk",
            "project_id": "2203306141",
            "priority": 4,
            "due_date": "2024-05-26",
            "labels": ["Food"],
            "duration": 2,
            "duration_unit": "day",
        }

    @pytest.mark.parametrize("status,error", [
        (401, AuthenticationError),
        (403, AuthenticationError),
        (429, RateLimitError),
        (500, TransientServiceError),
        (503, TransientServiceError),
        (400, SyncError),
        (404, SyncError),
    ])
    async def test_status_mapping(self, status, error):
        service, _ = make_service(lambda request: httpx.Response(status, text="nope"))

        with pytest.raises(error):
            await service.fetch_all()

    async def test_client_errors_are_not_transient(self):
        service, _ = make_service(lambda request: httpx.Response(400, text="bad"))

        with pytest.raises(SyncError) as exc_info:
            await service.close("1")

        assert not isinstance(exc_info.value, TransientServiceError)

    async def test_network_errors_are_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        service, _ = make_service(handler)

        with pytest.raises(TransientServiceError):
            await service.fetch_projects()

    async def test_timeouts_are_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        service, _ = make_service(handler)

        with pytest.raises(TransientServiceError):
            await service.fetch_all()

    async def test_readiness(self):
        service, _ = make_service(lambda request: httpx.Response(200, json=[]))
        missing, _ = make_service(lambda request: httpx.Response(200, json=[]), token=None)

        assert await service.is_ready()
        assert not await missing.is_ready()

        async with service:
            pass
        assert not await service.is_ready()
