"""Application-level facade wiring the synchronization components together."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Mapping
from datetime import timedelta
from enum import Enum
from typing import Any

import httpx

from .api import TaskApiClient
from .channels import ChannelCallbacks, PersistentSocketChannel, ServerStreamChannel, TransportChannel
from .config import TaskwatchConfig
from .connection import ChannelFactory, ConnectionManager, ConnectionState
from .dispatcher import EventDispatcher, Unsubscribe
from .errors import ConnectionFailedError
from .identity import ClientIdentity
from .lifecycle import TaskLifecycleController
from .models import EventEnvelope, EventType, TaskSource, TaskState
from .polling import PollingFallback
from .storage import InMemoryStorage, Storage
from .store import Clock, TaskStore

logger = logging.getLogger("taskwatch.tracker")

StreamFactory = Callable[[ClientIdentity, str, ChannelCallbacks], TransportChannel]


class TrackingStrategy(str, Enum):
    POLL = "poll"
    PUSH = "push"
    STREAM = "stream"


class TaskTracker:
    """One instance per application: registers tasks and keeps them current.

    Tasks are supplied by polling, by the shared push socket, or by a
    per-task server stream. Whatever the source, every update flows through
    the same :class:`TaskStore` merge.
    """

    def __init__(
        self,
        config: TaskwatchConfig | None = None,
        *,
        identity: ClientIdentity | None = None,
        storage: Storage | None = None,
        api: TaskApiClient | None = None,
        http_client: httpx.AsyncClient | None = None,
        channel_factory: ChannelFactory | None = None,
        stream_factory: StreamFactory | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or TaskwatchConfig()
        self.identity = identity or ClientIdentity.generate()
        self._owns_http_client = http_client is None and api is None
        self._http_client = http_client
        if api is None:
            if self._http_client is None:
                self._http_client = httpx.AsyncClient(timeout=self.config.request_timeout_s)
            api = TaskApiClient(
                base_url=self.config.api_url,
                headers=dict(self.config.headers),
                timeout_s=self.config.request_timeout_s,
                client=self._http_client,
            )
        self.api = api
        self.dispatcher = EventDispatcher()
        self.store = TaskStore(
            storage=storage if storage is not None else InMemoryStorage(),
            clock=clock,
            retention=timedelta(seconds=self.config.persistence_ttl_s),
            completed_retention_s=self.config.completed_retention_s,
        )
        self.polling = PollingFallback(
            self.store,
            self.api,
            interval_s=self.config.poll_interval_s,
            client_id=lambda: self.identity.client_id,
        )
        self.lifecycle = TaskLifecycleController(self.store, self.api, client_id=lambda: self.identity.client_id)
        self.connection = ConnectionManager(
            channel_factory or self._default_channel_factory,
            self.dispatcher,
            auto_reconnect=self.config.auto_reconnect,
            reconnect_delay_s=self.config.reconnect_delay_s,
            reconnect_backoff=self.config.reconnect_backoff,
            reconnect_max_delay_s=self.config.reconnect_max_delay_s,
            max_attempts=self.config.max_reconnect_attempts,
            heartbeat_interval_s=self.config.heartbeat_interval_s,
        )
        self.connection.add_state_listener(self._on_connection_state)
        self._stream_factory = stream_factory or self._default_stream_factory
        self._strategies: dict[str, TrackingStrategy] = {}
        self._streams: dict[str, TransportChannel] = {}
        self._store_binding: Unsubscribe | None = None
        self._watchdog: asyncio.Task[None] | None = None
        self._bind_store()

    def _default_channel_factory(self, identity: ClientIdentity, callbacks: ChannelCallbacks) -> TransportChannel:
        assert self.config.ws_url is not None
        return PersistentSocketChannel(self.config.ws_url, identity, callbacks)

    def _default_stream_factory(
        self, identity: ClientIdentity, task_id: str, callbacks: ChannelCallbacks
    ) -> TransportChannel:
        assert self.config.stream_url is not None
        return ServerStreamChannel(
            self.config.stream_url,
            identity,
            task_id,
            callbacks,
            headers=self.config.headers,
        )

    async def start(self) -> None:
        restored = self.store.restore()
        logger.info("tracker_started", extra={"restored": restored, "client_id": self.identity.client_id})
        if self.config.stale_after_s is not None and self._watchdog is None:
            self._watchdog = asyncio.create_task(self._watch_stale(self.config.stale_after_s))

    async def aclose(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watchdog
            self._watchdog = None
        # Dropping the socket may start fallback pollers, so polling stops last.
        await self.disable_push()
        for task_id in list(self._streams):
            await self._close_stream(task_id)
        await self.polling.stop_all()
        self.store.close()
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()

    async def __aenter__(self) -> TaskTracker:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def register_task(
        self,
        task_id: str,
        initial: Mapping[str, Any] | None = None,
        *,
        strategy: TrackingStrategy | str = TrackingStrategy.POLL,
        interval_s: float | None = None,
    ) -> TaskState:
        strategy = TrackingStrategy(strategy)
        state = self.store.register(task_id, initial)
        self._strategies[task_id] = strategy
        if state.is_terminal:
            return state
        if strategy is TrackingStrategy.PUSH:
            if not self.connection.is_connected:
                self.polling.start(task_id, interval_s)
        elif strategy is TrackingStrategy.STREAM:
            await self._open_stream(task_id, interval_s)
        else:
            self.polling.start(task_id, interval_s)
        return state

    async def unregister_task(self, task_id: str) -> bool:
        self._strategies.pop(task_id, None)
        await self.polling.stop(task_id)
        await self._close_stream(task_id)
        return self.store.remove(task_id)

    async def cancel(self, task_id: str) -> dict[str, Any]:
        return await self.lifecycle.cancel(task_id)

    def get(self, task_id: str) -> TaskState | None:
        return self.store.get(task_id)

    def tasks(self) -> dict[str, TaskState]:
        return self.store.snapshot_all()

    def active_tasks(self) -> dict[str, TaskState]:
        return self.store.snapshot_active()

    async def wait_for(self, task_id: str, timeout: float | None = None) -> TaskState:
        return await self.store.wait_for_terminal(task_id, timeout)

    async def enable_push(self, identity: ClientIdentity | None = None) -> ClientIdentity:
        if identity is not None:
            self.identity = identity
        self.identity = await self.connection.connect(self.identity)
        return self.identity

    async def disable_push(self) -> None:
        if self.connection.state in {ConnectionState.IDLE, ConnectionState.CLOSED}:
            return
        await self.connection.disconnect()
        self._bind_store()

    def _bind_store(self) -> None:
        # disconnect() clears every dispatcher listener, so rebinding must be safe to repeat.
        if self._store_binding is not None:
            self._store_binding()
        self._store_binding = self.dispatcher.subscribe(EventType.ALL, self._apply_envelope)

    def _apply_envelope(self, envelope: EventEnvelope) -> None:
        task_id = envelope.task_id
        if task_id is None or task_id not in self.store:
            return
        kind = envelope.kind
        if kind is EventType.UPLOAD_PROGRESS or (kind is EventType.ERROR and envelope.status is not None):
            self.store.apply_update(task_id, envelope.to_patch(), source=TaskSource.PUSH)
        elif kind is EventType.ERROR:
            logger.warning("task_stream_error", extra={"task_id": task_id, "error": envelope.error})
            self._fall_back_to_polling(task_id)

    def _on_connection_state(self, previous: ConnectionState, state: ConnectionState) -> None:
        if state is ConnectionState.CLOSED:
            self._bind_store()
        if previous is ConnectionState.OPEN and state is not ConnectionState.OPEN:
            for task_id, strategy in list(self._strategies.items()):
                if strategy is TrackingStrategy.PUSH:
                    self._fall_back_to_polling(task_id)

    def _fall_back_to_polling(self, task_id: str) -> None:
        state = self.store.get(task_id)
        if state is None or state.is_terminal or self.polling.is_polling(task_id):
            return
        logger.info("polling_fallback", extra={"task_id": task_id})
        self.polling.start(task_id)

    async def _open_stream(self, task_id: str, interval_s: float | None) -> None:
        if task_id in self._streams:
            return

        def _on_message(envelope: EventEnvelope) -> None:
            self.dispatcher.dispatch(envelope)

        def _on_close() -> None:
            self._streams.pop(task_id, None)
            self._fall_back_to_polling(task_id)

        callbacks = ChannelCallbacks(on_message=_on_message, on_close=_on_close)
        channel = self._stream_factory(self.identity, task_id, callbacks)
        try:
            await channel.open()
        except ConnectionFailedError as exc:
            logger.warning("task_stream_unavailable", extra={"task_id": task_id, "error": str(exc)})
            self.polling.start(task_id, interval_s)
            return
        self._streams[task_id] = channel

    async def _close_stream(self, task_id: str) -> None:
        channel = self._streams.pop(task_id, None)
        if channel is not None:
            await channel.close()

    async def _watch_stale(self, max_idle_s: float) -> None:
        interval = max(min(max_idle_s / 2, 60.0), 0.01)
        while True:
            await asyncio.sleep(interval)
            self.store.expire_stale(max_idle_s)


__all__ = ["StreamFactory", "TaskTracker", "TrackingStrategy"]
