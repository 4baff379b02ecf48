"""Interval-driven HTTP status polling feeding the task store."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any, Protocol

from .models import TaskPatch, TaskSource, TaskStatus
from .store import TaskStore

logger = logging.getLogger("taskwatch.polling")

POLL_ERROR_MESSAGE = "Failed to get task status"


class StatusSource(Protocol):
    async def get_status(self, task_id: str, *, client_id: str | None = None) -> dict[str, Any]: ...


class PollingFallback:
    """One polling loop per task id, stopped once the stored task is terminal."""

    def __init__(
        self,
        store: TaskStore,
        api: StatusSource,
        *,
        interval_s: float = 1.0,
        client_id: str | Callable[[], str | None] | None = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self._store = store
        self._api = api
        self._interval_s = interval_s
        self._client_id = client_id
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def start(self, task_id: str, interval_s: float | None = None, *, stop_on_error: bool = True) -> asyncio.Task[None]:
        """Begin polling ``task_id``; an existing loop for the id is reused."""
        existing = self._tasks.get(task_id)
        if existing is not None and not existing.done():
            return existing
        interval = self._interval_s if interval_s is None else interval_s
        if interval <= 0:
            raise ValueError("interval_s must be > 0")
        task = asyncio.create_task(self._run(task_id, interval, stop_on_error), name=f"taskwatch-poll-{task_id}")
        self._tasks[task_id] = task
        task.add_done_callback(lambda finished: self._forget(task_id, finished))
        logger.debug("polling_started", extra={"task_id": task_id, "interval_s": interval})
        return task

    def is_polling(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        return task is not None and not task.done()

    @property
    def polling(self) -> list[str]:
        return [task_id for task_id, task in self._tasks.items() if not task.done()]

    async def stop(self, task_id: str) -> None:
        task = self._tasks.pop(task_id, None)
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def stop_all(self) -> None:
        for task_id in list(self._tasks):
            await self.stop(task_id)

    async def poll_once(self, task_id: str, *, stop_on_error: bool = True) -> bool:
        """Fetch and merge one status; returns ``True`` when polling should stop."""
        if task_id not in self._store:
            return True
        try:
            client_id = self._client_id() if callable(self._client_id) else self._client_id
            payload = await self._api.get_status(task_id, client_id=client_id)
        except Exception as exc:
            return self._record_failure(task_id, exc, stop_on_error=stop_on_error)

        patch = TaskPatch.from_status_payload(payload, default_status=TaskStatus.PROCESSING)
        current = self._store.get(task_id)
        if current is not None and current.metadata.get("poll_error"):
            merged = dict(patch.metadata or {})
            merged["poll_error"] = None
            patch = patch.model_copy(update={"metadata": merged})
        self._store.apply_update(task_id, patch, source=TaskSource.POLL)
        state = self._store.get(task_id)
        return state is None or state.is_terminal

    def _record_failure(self, task_id: str, exc: Exception, *, stop_on_error: bool) -> bool:
        logger.warning(
            "status_poll_failed",
            extra={"task_id": task_id, "error": str(exc), "stop_on_error": stop_on_error},
        )
        if stop_on_error:
            self._store.apply_update(
                task_id,
                TaskPatch(status=TaskStatus.ERROR, error=POLL_ERROR_MESSAGE),
                source=TaskSource.POLL,
            )
            return True
        current = self._store.get(task_id)
        if current is not None and not current.metadata.get("poll_error"):
            self._store.apply_update(
                task_id,
                TaskPatch(metadata={"poll_error": f"{POLL_ERROR_MESSAGE}: {exc}"}),
                source=TaskSource.POLL,
            )
        return current is None or current.is_terminal

    async def _run(self, task_id: str, interval_s: float, stop_on_error: bool) -> None:
        while True:
            if await self.poll_once(task_id, stop_on_error=stop_on_error):
                logger.debug("polling_stopped", extra={"task_id": task_id})
                return
            await asyncio.sleep(interval_s)

    def _forget(self, task_id: str, finished: asyncio.Task[None]) -> None:
        if self._tasks.get(task_id) is finished:
            self._tasks.pop(task_id, None)
        if not finished.cancelled() and finished.exception() is not None:
            logger.error("polling_crashed", exc_info=finished.exception(), extra={"task_id": task_id})


__all__ = ["POLL_ERROR_MESSAGE", "PollingFallback", "StatusSource"]
