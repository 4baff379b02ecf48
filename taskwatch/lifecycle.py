from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol

from .errors import TaskNotFoundError
from .models import TaskPatch, TaskSource, TaskStatus
from .store import TaskStore

logger = logging.getLogger("taskwatch.lifecycle")

CANCELLED_MESSAGE = "cancelled by user"


class CancelEndpoint(Protocol):
    async def cancel_task(self, task_id: str, *, client_id: str | None = None) -> dict[str, Any]: ...


class TaskLifecycleController:
    """Client-authoritative cancellation.

    The local ``cancelled`` state is written before the remote command is
    awaited and is never rolled back if that command fails.
    """

    def __init__(
        self,
        store: TaskStore,
        api: CancelEndpoint,
        *,
        client_id: str | Callable[[], str | None] | None = None,
    ) -> None:
        self._store = store
        self._api = api
        self._client_id = client_id

    def _resolve_client_id(self) -> str | None:
        if callable(self._client_id):
            return self._client_id()
        return self._client_id

    async def cancel(self, task_id: str) -> dict[str, Any]:
        if task_id not in self._store:
            raise TaskNotFoundError(task_id)
        self._store.apply_update(
            task_id,
            TaskPatch(status=TaskStatus.CANCELLED, message=CANCELLED_MESSAGE),
            source=TaskSource.OPTIMISTIC,
        )
        try:
            response = await self._api.cancel_task(task_id, client_id=self._resolve_client_id())
        except Exception as exc:
            logger.warning("task_cancel_failed", extra={"task_id": task_id, "error": str(exc)})
            raise
        logger.info("task_cancelled", extra={"task_id": task_id})
        return response


__all__ = ["CANCELLED_MESSAGE", "CancelEndpoint", "TaskLifecycleController"]
