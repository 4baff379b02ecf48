import asyncio
import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from taskwatch.channels import ChannelCallbacks
from taskwatch.config import TaskwatchConfig
from taskwatch.connection import ConnectionState
from taskwatch.errors import ConnectionFailedError
from taskwatch.identity import ClientIdentity
from taskwatch.models import EventEnvelope, TaskSource, TaskState, TaskStatus
from taskwatch.storage import ACTIVE_TASKS_KEY, InMemoryStorage
from taskwatch.tracker import TaskTracker, TrackingStrategy


class FakeChannel:
    def __init__(self, callbacks: ChannelCallbacks, *, fail: bool = False) -> None:
        self.url = "fake://channel"
        self.callbacks = callbacks
        self.fail = fail
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        if self.fail:
            raise ConnectionFailedError(self.url, "refused")
        self._open = True

    async def close(self) -> None:
        self._open = False

    async def send(self, payload) -> None:
        return None

    def push(self, **fields) -> None:
        self.callbacks.on_message(EventEnvelope(**fields))

    def drop(self) -> None:
        self._open = False
        self.callbacks.on_close()


class Backend:
    """Status/cancel endpoints backed by a list of scripted status bodies."""

    def __init__(self, *statuses: dict) -> None:
        self.statuses = list(statuses) or [{"status": "processing"}]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "DELETE":
            return httpx.Response(200, json={"status": "cancelled"})
        body = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(200, json=body)


def _config(**overrides) -> TaskwatchConfig:
    overrides.setdefault("api_url", "http://backend/api")
    overrides.setdefault("poll_interval_s", 0.01)
    overrides.setdefault("heartbeat_interval_s", None)
    overrides.setdefault("auto_reconnect", False)
    return TaskwatchConfig(**overrides)


@pytest.mark.asyncio
async def test_poll_strategy_tracks_until_terminal() -> None:
    backend = Backend({"current": 1, "total": 2}, {"status": "completed", "percentage": 100})
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        async with TaskTracker(_config(), http_client=client) as tracker:
            state = await tracker.register_task("t1", {"title": "Report"})
            assert state.title == "Report"
            final = await tracker.wait_for("t1", timeout=1.0)

    assert final.status is TaskStatus.COMPLETED
    assert final.progress == 100
    assert final.source is TaskSource.POLL
    assert backend.requests[0].url.params["client_id"] == tracker.identity.client_id


@pytest.mark.asyncio
async def test_push_strategy_applies_socket_updates() -> None:
    channels: list[FakeChannel] = []

    def factory(_identity: ClientIdentity, callbacks: ChannelCallbacks) -> FakeChannel:
        channels.append(FakeChannel(callbacks))
        return channels[-1]

    backend = Backend()
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        async with TaskTracker(_config(), http_client=client, channel_factory=factory) as tracker:
            await tracker.enable_push(ClientIdentity("client_push"))
            await tracker.register_task("t1", strategy="push")
            assert not tracker.polling.is_polling("t1")

            channels[0].push(type="upload_progress", task_id="t1", status="processing", progress=40)
            channels[0].push(type="upload_progress", task_id="other", progress=90)
            state = tracker.get("t1")
            assert state is not None
            assert state.progress == 40
            assert state.source is TaskSource.PUSH

            channels[0].push(type="error", task_id="t1", status="failed", error="corrupt file")
            state = tracker.get("t1")
            assert state is not None
            assert state.status is TaskStatus.FAILED
            assert state.error == "corrupt file"

    assert backend.requests == []


@pytest.mark.asyncio
async def test_push_strategy_falls_back_to_polling_when_socket_drops() -> None:
    channels: list[FakeChannel] = []

    def factory(_identity: ClientIdentity, callbacks: ChannelCallbacks) -> FakeChannel:
        channels.append(FakeChannel(callbacks))
        return channels[-1]

    backend = Backend({"status": "processing", "percentage": 70})
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        async with TaskTracker(_config(), http_client=client, channel_factory=factory) as tracker:
            await tracker.enable_push()
            await tracker.register_task("t1", strategy=TrackingStrategy.PUSH)
            channels[0].drop()

            assert tracker.connection.state is ConnectionState.CLOSED
            assert tracker.polling.is_polling("t1")
            await asyncio.sleep(0.03)
            state = tracker.get("t1")
            assert state is not None
            assert state.progress == 70


@pytest.mark.asyncio
async def test_push_strategy_polls_without_connection() -> None:
    backend = Backend()
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        async with TaskTracker(_config(), http_client=client) as tracker:
            await tracker.register_task("t1", strategy="push")
            assert tracker.polling.is_polling("t1")


@pytest.mark.asyncio
async def test_store_stays_bound_after_disable_push() -> None:
    def factory(_identity: ClientIdentity, callbacks: ChannelCallbacks) -> FakeChannel:
        return FakeChannel(callbacks)

    async with httpx.AsyncClient(transport=httpx.MockTransport(Backend())) as client:
        async with TaskTracker(_config(), http_client=client, channel_factory=factory) as tracker:
            await tracker.enable_push()
            await tracker.disable_push()
            tracker.store.register("t1")
            tracker.dispatcher.dispatch(EventEnvelope(type="upload_progress", task_id="t1", progress=33))
            state = tracker.get("t1")
            assert state is not None
            assert state.progress == 33


@pytest.mark.asyncio
async def test_stream_strategy_falls_back_when_stream_unavailable() -> None:
    def stream_factory(_identity: ClientIdentity, _task_id: str, callbacks: ChannelCallbacks) -> FakeChannel:
        return FakeChannel(callbacks, fail=True)

    backend = Backend({"status": "completed"})
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        async with TaskTracker(_config(), http_client=client, stream_factory=stream_factory) as tracker:
            await tracker.register_task("t1", strategy="stream")
            final = await tracker.wait_for("t1", timeout=1.0)
    assert final.status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_stream_error_event_switches_to_polling() -> None:
    streams: list[FakeChannel] = []

    def stream_factory(_identity: ClientIdentity, _task_id: str, callbacks: ChannelCallbacks) -> FakeChannel:
        streams.append(FakeChannel(callbacks))
        return streams[-1]

    backend = Backend({"status": "completed", "percentage": 100})
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        async with TaskTracker(_config(), http_client=client, stream_factory=stream_factory) as tracker:
            await tracker.register_task("t1", strategy="stream")
            streams[0].push(type="upload_progress", task_id="t1", progress=20)
            assert not tracker.polling.is_polling("t1")

            streams[0].push(type="error", task_id="t1", error="Failed to fetch task status")
            streams[0].drop()
            final = await tracker.wait_for("t1", timeout=1.0)
    assert final.status is TaskStatus.COMPLETED
    assert final.error is None


@pytest.mark.asyncio
async def test_cancel_and_unregister() -> None:
    backend = Backend()
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        async with TaskTracker(_config(), http_client=client) as tracker:
            await tracker.register_task("t1")
            response = await tracker.cancel("t1")
            assert response == {"status": "cancelled"}
            assert tracker.get("t1").status is TaskStatus.CANCELLED  # type: ignore[union-attr]
            assert tracker.active_tasks() == {}

            await tracker.register_task("t2")
            assert await tracker.unregister_task("t2") is True
            assert not tracker.polling.is_polling("t2")
            assert "t2" not in tracker.tasks()

    delete = next(request for request in backend.requests if request.method == "DELETE")
    assert json.loads(delete.content) == {"client_id": tracker.identity.client_id}


@pytest.mark.asyncio
async def test_start_restores_persisted_tasks() -> None:
    now = datetime.now(UTC)
    persisted = {
        "recent": TaskState(id="recent", progress=10, started=now - timedelta(hours=1)).model_dump(mode="json"),
        "ancient": TaskState(id="ancient", started=now - timedelta(days=2)).model_dump(mode="json"),
    }
    storage = InMemoryStorage({ACTIVE_TASKS_KEY: json.dumps(persisted)})
    async with httpx.AsyncClient(transport=httpx.MockTransport(Backend())) as client:
        async with TaskTracker(_config(), http_client=client, storage=storage) as tracker:
            assert set(tracker.tasks()) == {"recent"}
            assert tracker.get("recent").progress == 10  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_stale_watchdog_expires_silent_tasks() -> None:
    def factory(_identity: ClientIdentity, callbacks: ChannelCallbacks) -> FakeChannel:
        return FakeChannel(callbacks)

    async with httpx.AsyncClient(transport=httpx.MockTransport(Backend())) as client:
        config = _config(stale_after_s=0.05)
        async with TaskTracker(config, http_client=client, channel_factory=factory) as tracker:
            await tracker.enable_push()
            await tracker.register_task("t1", strategy="push")
            final = await tracker.wait_for("t1", timeout=1.0)
    assert final.status is TaskStatus.ERROR
    assert final.error is not None
