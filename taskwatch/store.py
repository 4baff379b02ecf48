"""Canonical task-state store with a terminal-gated merge policy."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import ValidationError

from .errors import TaskNotFoundError
from .models import ERROR_STATUSES, TaskPatch, TaskSource, TaskState, TaskStatus
from .storage import ACTIVE_TASKS_KEY, InMemoryStorage, Storage

logger = logging.getLogger("taskwatch.store")

Clock = Callable[[], datetime]
TaskObserver = Callable[[str, TaskState | None], None]

DEFAULT_RETENTION = timedelta(hours=24)
DEFAULT_MESSAGE = "Processing..."
STALE_MESSAGE = "No status update received"

_STATE_FIELDS = frozenset(TaskState.model_fields)
_REGISTER_FIELDS = frozenset({"message", "title", "type", "metadata"})


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _as_patch(patch: TaskPatch | Mapping[str, Any]) -> TaskPatch:
    if isinstance(patch, TaskPatch):
        return patch
    return TaskPatch.model_validate(dict(patch))


class TaskStore:
    """Single source of truth for every tracked task.

    Updates are merged last-applied-wins, gated by one rule: once a task
    is terminal, non-terminal updates are dropped and its status may only
    move between ``failed`` and ``error``. A report repeating the terminal
    status may still refresh message or metadata. Every mutation is written through to
    ``storage`` under :data:`ACTIVE_TASKS_KEY`.
    """

    def __init__(
        self,
        *,
        storage: Storage | None = None,
        clock: Clock | None = None,
        retention: timedelta = DEFAULT_RETENTION,
        completed_retention_s: float | None = 30.0,
    ) -> None:
        self._storage: Storage = storage if storage is not None else InMemoryStorage()
        self._clock: Clock = clock or _utc_now
        self._retention = retention
        self._completed_retention_s = completed_retention_s
        self._tasks: dict[str, TaskState] = {}
        self._observers: list[TaskObserver] = []
        self._removal_handles: dict[str, asyncio.TimerHandle] = {}
        self._initialized = False
        # Persisted payload as it was before the first write that preceded restore().
        self._unrestored: str | None = None
        self._unrestored_captured = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def restore(self) -> int:
        """Load persisted tasks, dropping entries older than the retention window.

        Tasks registered before the restore are kept as they are; a persisted
        entry never replaces a live one.
        """
        restored: dict[str, TaskState] = {}
        raw = self._unrestored if self._unrestored_captured else self._storage.get(ACTIVE_TASKS_KEY)
        self._unrestored = None
        self._unrestored_captured = False
        dropped = 0
        if raw:
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("persisted_tasks_unreadable", extra={"key": ACTIVE_TASKS_KEY})
                payload = {}
            if not isinstance(payload, dict):
                payload = {}
            cutoff = self._clock() - self._retention
            for task_id, entry in payload.items():
                try:
                    state = TaskState.model_validate(entry)
                except ValidationError:
                    logger.warning("persisted_task_invalid", extra={"task_id": task_id})
                    dropped += 1
                    continue
                started = state.started if state.started.tzinfo else state.started.replace(tzinfo=UTC)
                if started <= cutoff:
                    dropped += 1
                    continue
                if state.id not in self._tasks:
                    restored[state.id] = state
        self._tasks = {**restored, **self._tasks}
        self._initialized = True
        if dropped:
            logger.info("persisted_tasks_pruned", extra={"dropped": dropped, "kept": len(self._tasks)})
        self._persist()
        return len(self._tasks)

    def register(self, task_id: str, initial: Mapping[str, Any] | None = None) -> TaskState:
        """Start tracking ``task_id``; re-registering never resets status or progress."""
        if not task_id:
            raise ValueError("task_id must be non-empty")
        initial = dict(initial or {})
        existing = self._tasks.get(task_id)
        if existing is not None:
            changes = {key: initial[key] for key in _REGISTER_FIELDS if initial.get(key) is not None}
            if "metadata" in changes:
                changes["metadata"] = {**existing.metadata, **dict(changes["metadata"])}
            if not changes:
                return existing.model_copy(deep=True)
            state = TaskState.model_validate({**existing.model_dump(), **changes})
            self._tasks[task_id] = state
            self._commit(task_id, state)
            return state.model_copy(deep=True)

        now = self._clock()
        fields: dict[str, Any] = {
            "id": task_id,
            "status": TaskStatus.PROCESSING,
            "progress": 0,
            "message": DEFAULT_MESSAGE,
            "started": now,
            "updated": now,
        }
        metadata = dict(initial.pop("metadata", None) or {})
        status = TaskStatus.parse(initial.pop("status", None))
        if status is not None and status.is_active:
            fields["status"] = status
        for key in ("id", "progress", "started", "updated", "source", "error"):
            initial.pop(key, None)
        for key, value in initial.items():
            if key in _STATE_FIELDS:
                if value is not None:
                    fields[key] = value
            else:
                metadata[key] = value
        fields["metadata"] = metadata
        state = TaskState.model_validate(fields)
        self._tasks[task_id] = state
        logger.debug("task_registered", extra={"task_id": task_id})
        self._commit(task_id, state)
        return state.model_copy(deep=True)

    def apply_update(
        self,
        task_id: str,
        patch: TaskPatch | Mapping[str, Any],
        *,
        source: TaskSource | None = None,
    ) -> TaskState | None:
        """Merge ``patch`` into the task; returns the new state or ``None`` if rejected."""
        current = self._tasks.get(task_id)
        if current is None:
            logger.debug("update_for_unknown_task", extra={"task_id": task_id})
            return None
        patch = _as_patch(patch)
        provided = patch.model_fields_set
        changes: dict[str, Any] = {}

        if current.is_terminal:
            if patch.status is not None and not patch.status.is_terminal:
                logger.debug(
                    "stale_update_rejected",
                    extra={"task_id": task_id, "status": current.status.value, "incoming": patch.status.value},
                )
                return None
            if (
                patch.status is not None
                and patch.status != current.status
                and not (current.status in ERROR_STATUSES and patch.status in ERROR_STATUSES)
            ):
                logger.debug(
                    "terminal_transition_rejected",
                    extra={"task_id": task_id, "status": current.status.value, "incoming": patch.status.value},
                )
                return None
            provided = provided - {"progress"}

        for key in ("status", "progress", "message", "error", "type", "title"):
            value = getattr(patch, key)
            if key in provided and value is not None:
                changes[key] = value
        if "metadata" in provided and patch.metadata:
            changes["metadata"] = {**current.metadata, **patch.metadata}

        status = changes.get("status", current.status)
        if status not in ERROR_STATUSES:
            changes["error"] = None
        changes["updated"] = self._clock()
        if source is not None:
            changes["source"] = source

        state = current.model_copy(update=changes)
        self._tasks[task_id] = state
        self._commit(task_id, state)
        if state.status is not TaskStatus.COMPLETED:
            self._cancel_removal(task_id)
        elif current.status is not TaskStatus.COMPLETED:
            self._schedule_removal(task_id)
        return state.model_copy(deep=True)

    def remove(self, task_id: str) -> bool:
        self._cancel_removal(task_id)
        if self._tasks.pop(task_id, None) is None:
            return False
        logger.debug("task_removed", extra={"task_id": task_id})
        self._persist()
        self._notify(task_id, None)
        return True

    def get(self, task_id: str) -> TaskState | None:
        state = self._tasks.get(task_id)
        return None if state is None else state.model_copy(deep=True)

    def require(self, task_id: str) -> TaskState:
        state = self.get(task_id)
        if state is None:
            raise TaskNotFoundError(task_id)
        return state

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def snapshot_all(self) -> dict[str, TaskState]:
        return {task_id: state.model_copy(deep=True) for task_id, state in self._tasks.items()}

    def snapshot_active(self) -> dict[str, TaskState]:
        return {task_id: state.model_copy(deep=True) for task_id, state in self._tasks.items() if state.is_active}

    def expire_stale(self, max_idle_s: float) -> list[str]:
        """Mark active tasks without an update for ``max_idle_s`` as ``error``."""
        cutoff = self._clock() - timedelta(seconds=max_idle_s)
        expired: list[str] = []
        for task_id, state in list(self._tasks.items()):
            if state.is_active and state.updated <= cutoff:
                patch = TaskPatch(status=TaskStatus.ERROR, error=f"{STALE_MESSAGE} for {max_idle_s:g}s")
                if self.apply_update(task_id, patch) is not None:
                    expired.append(task_id)
        if expired:
            logger.warning("stale_tasks_expired", extra={"task_ids": expired})
        return expired

    def watch(self, observer: TaskObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def _unwatch() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unwatch

    async def wait_for_terminal(self, task_id: str, timeout: float | None = None) -> TaskState:
        """Resolve once ``task_id`` reaches a terminal status."""
        state = self.require(task_id)
        if state.is_terminal:
            return state
        loop = asyncio.get_running_loop()
        future: asyncio.Future[TaskState] = loop.create_future()

        def _observe(changed_id: str, changed: TaskState | None) -> None:
            if changed_id != task_id or future.done():
                return
            if changed is None:
                future.set_exception(TaskNotFoundError(task_id))
            elif changed.is_terminal:
                future.set_result(changed)

        unwatch = self.watch(_observe)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            unwatch()

    def close(self) -> None:
        for handle in self._removal_handles.values():
            handle.cancel()
        self._removal_handles.clear()

    def _schedule_removal(self, task_id: str) -> None:
        if self._completed_retention_s is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cancel_removal(task_id)

        def _expire() -> None:
            self._removal_handles.pop(task_id, None)
            self.remove(task_id)

        self._removal_handles[task_id] = loop.call_later(self._completed_retention_s, _expire)

    def _cancel_removal(self, task_id: str) -> None:
        handle = self._removal_handles.pop(task_id, None)
        if handle is not None:
            handle.cancel()

    def _commit(self, task_id: str, state: TaskState) -> None:
        self._persist()
        self._notify(task_id, state)

    def _persist(self) -> None:
        if not self._initialized and not self._unrestored_captured:
            self._unrestored = self._storage.get(ACTIVE_TASKS_KEY)
            self._unrestored_captured = True
        payload = {task_id: state.model_dump(mode="json") for task_id, state in self._tasks.items()}
        self._storage.set(ACTIVE_TASKS_KEY, json.dumps(payload, ensure_ascii=False, separators=(",", ":")))

    def _notify(self, task_id: str, state: TaskState | None) -> None:
        for observer in list(self._observers):
            try:
                observer(task_id, None if state is None else state.model_copy(deep=True))
            except Exception:
                logger.exception("task_observer_failed", extra={"task_id": task_id})


__all__ = ["Clock", "DEFAULT_MESSAGE", "TaskObserver", "TaskStore"]
