# src/taskkeep/sync/remote_client.py

"""
HTTP client for the versioned Remote Task Service.

Contract:
- GET  tasks?since=<cursor>  -> {"tasks": [...], "cursor": "..."}
- POST task                  -> created task (with version)
- PUT  task/{id}             -> body includes "expectedVersion"; 200 + new version,
                                409 on version mismatch (body may carry the current task)
- GET  task/{id}             -> task, 404 if unknown
- GET  health                -> 2xx when reachable

Error mapping:
- 409                                  -> SyncConflictError
- transport errors, 408/425/429, 5xx   -> TransientNetworkError
- any other 4xx / malformed payloads   -> RemoteRejectedError
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..core.errors import CorruptedStateError, RemoteRejectedError, SyncConflictError, TransientNetworkError
from ..tasks.task_models import Task
from .sync_models import RemoteChanges

logger = logging.getLogger(__name__)

_TRANSIENT_STATUSES = frozenset({408, 425, 429})


def _make_timeout(connect_s: float, read_s: float) -> httpx.Timeout:
    return httpx.Timeout(connect=connect_s, read=read_s, write=10.0, pool=connect_s)


def _parse_task(data: Any, *, context: str) -> Task:
    if isinstance(data, dict) and isinstance(data.get("task"), dict):
        data = data["task"]
    try:
        return Task.from_dict(data)
    except CorruptedStateError as e:
        raise RemoteRejectedError(f"{context}: malformed task payload ({e})") from e


class HttpRemoteTaskService:
    def __init__(
        self,
        base_url: str,
        *,
        api_token: str | None = None,
        connect_timeout_seconds: float = 5.0,
        read_timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url or not base_url.strip():
            raise ValueError("Remote base URL is not set. Set TASKKEEP_REMOTE_BASE_URL in your .env.")

        headers = {"Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            headers=headers,
            timeout=_make_timeout(connect_timeout_seconds, read_timeout_seconds),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ---- low-level helpers ----

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method} {url} timed out") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} {url} failed: {e.__class__.__name__}") from e

        status = resp.status_code
        if status >= 500 or status in _TRANSIENT_STATUSES:
            raise TransientNetworkError(f"{method} {url} -> HTTP {status}")
        return resp

    @staticmethod
    def _json(resp: httpx.Response, *, context: str) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise RemoteRejectedError(f"{context}: response is not JSON", resp.status_code) from e

    @staticmethod
    def _reject(resp: httpx.Response, context: str) -> RemoteRejectedError:
        return RemoteRejectedError(f"{context} -> HTTP {resp.status_code}", resp.status_code)

    async def _conflict(self, resp: httpx.Response, task_id: str, expected_version: int | None) -> SyncConflictError:
        remote_task: Task | None = None
        remote_version: int | None = None
        try:
            body = resp.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            raw_task = body.get("task") if isinstance(body.get("task"), dict) else body.get("current")
            if isinstance(raw_task, dict):
                try:
                    remote_task = Task.from_dict(raw_task)
                except CorruptedStateError:
                    logger.debug("409 body carried an unreadable task id=%s", task_id)
            raw_version = body.get("version", body.get("currentVersion"))
            if isinstance(raw_version, int) and not isinstance(raw_version, bool):
                remote_version = raw_version

        if remote_task is None:
            # Best effort: the conflict is still reported if this lookup fails.
            try:
                remote_task = await self.get_task(task_id)
            except (TransientNetworkError, RemoteRejectedError):
                logger.warning("Could not fetch remote copy for conflicting task id=%s", task_id)

        if remote_task is not None and remote_version is None:
            remote_version = remote_task.version

        return SyncConflictError(
            task_id,
            expected_version=expected_version,
            remote_version=remote_version,
            remote_task=remote_task,
        )

    # ---- RemoteTaskService ----

    async def fetch_changes(self, since: str | None) -> RemoteChanges:
        params = {"since": since} if since else None
        resp = await self._request("GET", "tasks", params=params)
        if resp.status_code != 200:
            raise self._reject(resp, "GET tasks")
        body = self._json(resp, context="GET tasks")

        raw_tasks = body.get("tasks") if isinstance(body, dict) else body
        if not isinstance(raw_tasks, list):
            raise RemoteRejectedError("GET tasks: expected a list of tasks", resp.status_code)

        tasks: list[Task] = []
        for item in raw_tasks:
            try:
                tasks.append(Task.from_dict(item))
            except CorruptedStateError as e:
                logger.warning("Skipping malformed remote task: %s", e)

        cursor = body.get("cursor") if isinstance(body, dict) else None
        logger.debug("Fetched %d remote change(s) since=%s", len(tasks), since)
        return RemoteChanges(tasks=tasks, cursor=cursor if isinstance(cursor, str) else since)

    async def create_task(self, task: Task) -> Task:
        resp = await self._request("POST", "task", json=task.to_dict())
        if resp.status_code == 409:
            raise await self._conflict(resp, task.id, None)
        if resp.status_code not in (200, 201):
            raise self._reject(resp, "POST task")
        return _parse_task(self._json(resp, context="POST task"), context="POST task")

    async def update_task(self, task: Task, expected_version: int) -> Task:
        body = task.to_dict()
        body["expectedVersion"] = int(expected_version)
        url = f"task/{task.id}"
        resp = await self._request("PUT", url, json=body)
        if resp.status_code == 409:
            raise await self._conflict(resp, task.id, expected_version)
        if resp.status_code != 200:
            raise self._reject(resp, f"PUT {url}")
        return _parse_task(self._json(resp, context=f"PUT {url}"), context=f"PUT {url}")

    async def get_task(self, task_id: str) -> Task | None:
        url = f"task/{task_id}"
        resp = await self._request("GET", url)
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise self._reject(resp, f"GET {url}")
        return _parse_task(self._json(resp, context=f"GET {url}"), context=f"GET {url}")

    async def ping(self) -> bool:
        try:
            resp = await self._request("GET", "health")
        except TransientNetworkError:
            return False
        return resp.is_success
