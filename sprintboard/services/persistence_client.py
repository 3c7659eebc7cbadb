"""HTTP client for the persistence service that owns stories, tasks, and sprints."""

from __future__ import annotations

from typing import Any

import httpx
from pydantic import ValidationError

from sprintboard.core.config import settings
from sprintboard.core.logging import get_logger
from sprintboard.models.sprints import Sprint
from sprintboard.models.stories import Story
from sprintboard.models.tasks import Task, TaskAction

logger = get_logger(__name__)

_CONFLICT_STATUS_CODES = frozenset({400, 409, 422})


class PersistenceError(Exception):
    """Base error for persistence service calls."""

    retryable = False


class TaskConflictError(PersistenceError):
    """The service refused a lifecycle change because its precondition no longer holds."""

    def __init__(self, message: str, *, current: Task | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.current = current


class TaskNotFoundError(PersistenceError):
    """The task no longer exists upstream."""


class PersistenceTransportError(PersistenceError):
    """Request failed, timed out, or returned an unusable response."""

    retryable = True


# action -> (HTTP method, path template)
_ACTION_ROUTES: dict[TaskAction, tuple[str, str]] = {
    TaskAction.CLAIM: ("PUT", "/tasks/{task_id}/ownership"),
    TaskAction.RELEASE: ("DELETE", "/tasks/{task_id}/ownership"),
    TaskAction.START: ("POST", "/tasks/{task_id}/work/start"),
    TaskAction.COMPLETE: ("POST", "/tasks/{task_id}/work/complete"),
}


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return str(value["message"])
    return response.reason_phrase


def _current_task_from_error(response: httpx.Response) -> Task | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    raw = body.get("task") or body.get("current")
    if not isinstance(raw, dict):
        return None
    try:
        return Task.model_validate(raw)
    except ValidationError:
        return None


def _unwrap_task(body: Any) -> dict[str, Any]:
    # Ownership endpoints answer either with the task itself or `{"task": {...}}`.
    if isinstance(body, dict) and isinstance(body.get("task"), dict):
        return body["task"]
    if isinstance(body, dict):
        return body
    msg = "Expected a task object"
    raise PersistenceTransportError(msg)


class PersistenceClient:
    """Async REST wrapper with one call per operation.

    Lifecycle calls return the updated task or raise `TaskConflictError`,
    `TaskNotFoundError`, or `PersistenceTransportError`.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        token = settings.persistence_api_token if api_token is None else api_token
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.persistence_base_url).rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout or settings.fetch_timeout_seconds),
            transport=transport,
        )

    @property
    def http(self) -> httpx.AsyncClient:
        return self._client

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        acting_user_id: str | None = None,
        timeout: float | None = None,
    ) -> Any:
        headers = {"X-User-Id": acting_user_id} if acting_user_id else None
        try:
            response = await self._client.request(
                method,
                path,
                headers=headers,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as exc:
            logger.warning(
                "persistence.request.timeout",
                extra={"method": method, "path": path, "error": str(exc)},
            )
            msg = f"Persistence service timed out on {method} {path}"
            raise PersistenceTransportError(msg) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "persistence.request.failed",
                extra={"method": method, "path": path, "error": str(exc)},
            )
            msg = f"Persistence service unreachable on {method} {path}"
            raise PersistenceTransportError(msg) from exc

        if response.status_code == 404:
            raise TaskNotFoundError(_error_message(response))
        if response.status_code in _CONFLICT_STATUS_CODES:
            raise TaskConflictError(
                _error_message(response),
                current=_current_task_from_error(response),
            )
        if response.status_code >= 400:
            logger.warning(
                "persistence.request.error_status",
                extra={"method": method, "path": path, "status_code": response.status_code},
            )
            msg = f"Persistence service returned {response.status_code} on {method} {path}"
            raise PersistenceTransportError(msg)
        try:
            return response.json()
        except ValueError as exc:
            msg = f"Persistence service returned a non-JSON body on {method} {path}"
            raise PersistenceTransportError(msg) from exc

    async def fetch_sprint(self, sprint_id: str) -> Sprint:
        body = await self._request("GET", f"/sprints/{sprint_id}")
        return self._validate(Sprint, body)

    async def fetch_stories(self, sprint_id: str) -> list[Story]:
        body = await self._request("GET", f"/sprints/{sprint_id}/stories")
        return [self._validate(Story, item) for item in self._as_list(body, "stories")]

    async def fetch_tasks(self, sprint_id: str) -> list[Task]:
        body = await self._request("GET", f"/sprints/{sprint_id}/tasks")
        tasks: list[Task] = []
        for item in self._as_list(body, "tasks"):
            try:
                tasks.append(Task.model_validate(item))
            except ValidationError as exc:
                # One malformed record should not hide the rest of the sprint.
                logger.warning(
                    "persistence.task.malformed",
                    extra={"sprint_id": sprint_id, "error": str(exc)},
                )
        return tasks

    async def transition(
        self,
        action: TaskAction,
        task_id: str,
        *,
        acting_user_id: str,
        timeout: float | None = None,
    ) -> Task:
        method, template = _ACTION_ROUTES[action]
        body = await self._request(
            method,
            template.format(task_id=task_id),
            acting_user_id=acting_user_id,
            timeout=timeout,
        )
        return self._validate(Task, _unwrap_task(body))

    async def claim(self, task_id: str, *, acting_user_id: str) -> Task:
        return await self.transition(TaskAction.CLAIM, task_id, acting_user_id=acting_user_id)

    async def release(self, task_id: str, *, acting_user_id: str) -> Task:
        return await self.transition(TaskAction.RELEASE, task_id, acting_user_id=acting_user_id)

    async def start(self, task_id: str, *, acting_user_id: str) -> Task:
        return await self.transition(TaskAction.START, task_id, acting_user_id=acting_user_id)

    async def complete(self, task_id: str, *, acting_user_id: str) -> Task:
        return await self.transition(TaskAction.COMPLETE, task_id, acting_user_id=acting_user_id)

    @staticmethod
    def _as_list(body: Any, key: str) -> list[Any]:
        if isinstance(body, list):
            return body
        if isinstance(body, dict) and isinstance(body.get(key), list):
            return body[key]
        msg = f"Expected a list of {key}"
        raise PersistenceTransportError(msg)

    @staticmethod
    def _validate(model: type[Any], body: Any) -> Any:
        try:
            return model.model_validate(body)
        except ValidationError as exc:
            msg = f"Malformed {model.__name__} payload from persistence service"
            raise PersistenceTransportError(msg) from exc
