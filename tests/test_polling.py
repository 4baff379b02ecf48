import asyncio
from typing import Any

import httpx
import pytest

from taskwatch.models import TaskSource, TaskState, TaskStatus
from taskwatch.polling import POLL_ERROR_MESSAGE, PollingFallback
from taskwatch.store import TaskStore


class ScriptedStatus:
    """Returns queued responses in order; exceptions are raised."""

    def __init__(self, *responses: Any) -> None:
        self._responses = list(responses)
        self.calls: list[tuple[str, str | None]] = []

    async def get_status(self, task_id: str, *, client_id: str | None = None) -> dict[str, Any]:
        self.calls.append((task_id, client_id))
        response = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.mark.asyncio
async def test_polling_follows_counters_until_completed() -> None:
    store = TaskStore()
    store.register("t3")
    seen: list[TaskState] = []
    store.watch(lambda _task_id, state: seen.append(state) if state is not None else None)
    api = ScriptedStatus({"current": 1, "total": 4}, {"current": 2, "total": 4}, {"status": "completed"})
    poller = PollingFallback(store, api, interval_s=0.01, client_id="client_abc")

    await asyncio.wait_for(poller.start("t3"), timeout=1.0)

    assert [state.progress for state in seen] == [25, 50, 50]
    assert seen[-1].status is TaskStatus.COMPLETED
    assert all(state.source is TaskSource.POLL for state in seen)
    assert api.calls == [("t3", "client_abc")] * 3
    assert not poller.is_polling("t3")
    store.close()


@pytest.mark.asyncio
async def test_poll_failure_marks_task_error_and_stops() -> None:
    store = TaskStore()
    store.register("t1")
    poller = PollingFallback(store, ScriptedStatus(httpx.ConnectError("refused")), interval_s=0.01)

    await asyncio.wait_for(poller.start("t1"), timeout=1.0)

    state = store.require("t1")
    assert state.status is TaskStatus.ERROR
    assert state.error == POLL_ERROR_MESSAGE


@pytest.mark.asyncio
async def test_lenient_polling_records_one_error_per_streak() -> None:
    store = TaskStore()
    store.register("t1")
    updates: list[TaskState] = []
    store.watch(lambda _task_id, state: updates.append(state) if state is not None else None)
    api = ScriptedStatus(
        httpx.ReadTimeout("slow"),
        httpx.ReadTimeout("slow"),
        {"status": "processing", "percentage": 60},
    )
    poller = PollingFallback(store, api)

    assert await poller.poll_once("t1", stop_on_error=False) is False
    assert await poller.poll_once("t1", stop_on_error=False) is False
    assert len(updates) == 1
    assert store.require("t1").metadata["poll_error"].startswith(POLL_ERROR_MESSAGE)
    assert store.require("t1").status is TaskStatus.PROCESSING

    assert await poller.poll_once("t1", stop_on_error=False) is False
    state = store.require("t1")
    assert state.progress == 60
    assert not state.metadata.get("poll_error")


@pytest.mark.asyncio
async def test_polling_stops_for_unknown_or_terminal_tasks() -> None:
    store = TaskStore()
    api = ScriptedStatus({"status": "processing"})
    poller = PollingFallback(store, api)
    assert await poller.poll_once("ghost") is True
    assert api.calls == []

    store.register("t1")
    store.apply_update("t1", {"status": "cancelled"})
    assert await poller.poll_once("t1") is True
    assert store.require("t1").status is TaskStatus.CANCELLED


@pytest.mark.asyncio
async def test_start_reuses_running_loop_and_stop_cancels() -> None:
    store = TaskStore()
    store.register("t1")
    poller = PollingFallback(store, ScriptedStatus({"status": "processing"}), interval_s=0.01)

    first = poller.start("t1")
    assert poller.start("t1") is first
    assert poller.polling == ["t1"]

    await poller.stop("t1")
    assert first.cancelled()
    assert not poller.is_polling("t1")
    await poller.stop("t1")


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        PollingFallback(TaskStore(), ScriptedStatus({}), interval_s=0)
