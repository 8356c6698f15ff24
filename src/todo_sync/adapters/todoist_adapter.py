"""Todoist REST client implementing the remote task service.

Only the endpoints the sync needs are covered: listing tasks, projects,
sections and labels, and the partial task mutations the safe-write filter
emits.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import httpx

from ..models import Duration, Label, Project, Section, Task
from ..sync.services import (
    AuthenticationError,
    RateLimitError,
    RemoteTaskService,
    SyncError,
    TransientServiceError,
)


logger = logging.getLogger(__name__)

# Option names accepted by create(); anything else is ignored.
CREATE_OPTIONS = ("description", "project_id", "section_id", "parent_id", "order",
                  "priority", "due_date", "due_string", "labels")


class TodoistTaskService(RemoteTaskService):
    """Todoist REST v2 client."""

    BASE_URL = "https://api.todoist.com/rest/v2/"

    def __init__(self, api_token: Optional[str], timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        """Initialize Todoist API client.

        Args:
            api_token: Todoist API token
            timeout: Per-request timeout in seconds
            client: Pre-built client (tests pass one with a mock transport)
        """
        self.api_token = api_token
        self.headers = {
            "Authorization": f"Bearer {api_token}",
            "Content-Type": "application/json",
        }
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.logger = logging.getLogger(__name__)
        self._labels_by_name: Dict[str, Label] = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        await self.client.aclose()

    async def _make_request(self, method: str, endpoint: str,
                            data: Optional[Dict[str, Any]] = None) -> Any:
        """Make HTTP request to the Todoist API.

        Args:
            method: HTTP method
            endpoint: API endpoint relative to the REST base URL
            data: Query parameters (GET) or JSON body

        Returns:
            Decoded JSON response, or an empty dict for 204

        Raises:
            AuthenticationError: If authentication fails
            RateLimitError: If rate limit is exceeded
            TransientServiceError: On timeouts, network errors and 5xx responses
            SyncError: On other rejected requests
        """
        url = urljoin(self.BASE_URL, endpoint)

        try:
            if method == "GET":
                response = await self.client.get(url, headers=self.headers, params=data)
            elif method == "POST":
                response = await self.client.post(url, headers=self.headers, json=data)
            elif method == "DELETE":
                response = await self.client.delete(url, headers=self.headers)
            else:
                raise ValueError(f"Unsupported HTTP method: {method}")
        except httpx.TimeoutException as e:
            raise TransientServiceError("Todoist API request timed out") from e
        except httpx.RequestError as e:
            raise TransientServiceError(f"Todoist API request failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError("Invalid Todoist API token")
        elif response.status_code == 429:
            raise RateLimitError("Todoist API rate limit exceeded")
        elif response.status_code >= 500:
            raise TransientServiceError(f"Todoist API error {response.status_code}: {response.text}")
        elif response.status_code >= 400:
            raise SyncError(f"Todoist API rejected request {response.status_code}: {response.text}")

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    # Readiness

    async def is_ready(self) -> bool:
        return bool(self.api_token) and not self.client.is_closed

    # Reads

    async def fetch_all(self) -> List[Task]:
        data = await self._make_request("GET", "tasks")
        tasks = [self._task_from_api(item) for item in data]
        self.logger.debug(f"Fetched {len(tasks)} tasks from Todoist")
        return tasks

    async def fetch_projects(self) -> List[Project]:
        data = await self._make_request("GET", "projects")
        # Todoist flags the inbox as is_inbox_project
        return [
            Project.from_dict({**item, "is_inbox": item.get("is_inbox_project", item.get("is_inbox", False))})
            for item in data
        ]

    async def fetch_sections(self) -> List[Section]:
        data = await self._make_request("GET", "sections")
        return [Section.from_dict(item) for item in data]

    async def fetch_labels(self) -> List[Label]:
        data = await self._make_request("GET", "labels")
        labels = [Label.from_dict(item) for item in data]
        self._labels_by_name = {label.name: label for label in labels}
        return labels

    # Writes

    async def close(self, task_id: str) -> bool:
        await self._make_request("POST", f"tasks/{task_id}/close")
        return True

    async def create(self, content: str, options: Optional[Dict[str, Any]] = None) -> Task:
        payload: Dict[str, Any] = {"content": content}
        for key, value in (options or {}).items():
            if key in CREATE_OPTIONS and value not in (None, [], ""):
                payload[key] = value
        duration = (options or {}).get("duration")
        if isinstance(duration, Duration):
            payload["duration"] = duration.amount
            payload["duration_unit"] = duration.unit.value

        data = await self._make_request("POST", "tasks", payload)
        return self._task_from_api(data)

    async def update(self, task_id: str, fields: Dict[str, Any]) -> Task:
        data = await self._make_request("POST", f"tasks/{task_id}", dict(fields))
        return self._task_from_api(data)

    async def delete(self, task_id: str) -> bool:
        await self._make_request("DELETE", f"tasks/{task_id}")
        return True

    # Mapping

    def _task_from_api(self, data: Dict[str, Any]) -> Task:
        """Map a Todoist task payload onto a Task, keeping unknown fields in ``extra``."""
        known = {
            "id", "content", "description", "priority", "due", "duration", "labels",
            "project_id", "section_id", "parent_id", "order", "is_completed", "created_at",
            "creator_id", "assignee_id", "assigner_id", "comment_count", "url",
        }
        item = {key: value for key, value in data.items() if key in known}
        item["labels"] = [
            (self._labels_by_name.get(name) or Label(name=name)).to_dict()
            for name in data.get("labels") or []
        ]
        item["extra"] = {key: value for key, value in data.items() if key not in known}
        return Task.from_dict(item)
