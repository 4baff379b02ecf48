"""Lifecycle management for the single active realtime channel."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

from .channels import ChannelCallbacks, TransportChannel
from .dispatcher import EventDispatcher
from .errors import ChannelNotOpenError, ConnectionFailedError
from .identity import ClientIdentity
from .models import EventEnvelope, EventType

logger = logging.getLogger("taskwatch.connection")

ChannelFactory = Callable[[ClientIdentity, ChannelCallbacks], TransportChannel]
StateListener = Callable[["ConnectionState", "ConnectionState"], None]


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


def reconnect_delay(attempt: int, *, base_s: float = 3.0, backoff: float = 1.0, max_s: float = 30.0) -> float:
    """Delay before reconnect ``attempt`` (1-based), capped at ``max_s``."""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return min(base_s * backoff ** (attempt - 1), max_s)


class ConnectionManager:
    """Owns at most one live :class:`TransportChannel` and hides reconnects.

    Every envelope the channel produces is forwarded to ``dispatcher``.
    An unexpected close schedules reconnect attempts until one succeeds,
    ``max_attempts`` is exhausted, or :meth:`disconnect` is called.
    """

    def __init__(
        self,
        channel_factory: ChannelFactory,
        dispatcher: EventDispatcher,
        *,
        auto_reconnect: bool = True,
        reconnect_delay_s: float = 3.0,
        reconnect_backoff: float = 1.0,
        reconnect_max_delay_s: float = 30.0,
        max_attempts: int | None = None,
        heartbeat_interval_s: float | None = 30.0,
    ) -> None:
        self._factory = channel_factory
        self._dispatcher = dispatcher
        self.auto_reconnect = auto_reconnect
        self._reconnect_delay_s = reconnect_delay_s
        self._reconnect_backoff = reconnect_backoff
        self._reconnect_max_delay_s = reconnect_max_delay_s
        self._max_attempts = max_attempts
        self._heartbeat_interval_s = heartbeat_interval_s
        self._state = ConnectionState.IDLE
        self._identity: ClientIdentity | None = None
        self._channel: TransportChannel | None = None
        self._attempt = 0
        self._intentional_close = False
        self._lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._state_listeners: list[StateListener] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def identity(self) -> ClientIdentity | None:
        return self._identity

    @property
    def reconnect_attempts(self) -> int:
        return self._attempt

    @property
    def dispatcher(self) -> EventDispatcher:
        return self._dispatcher

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        self._state_listeners.append(listener)

        def _remove() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return _remove

    async def connect(self, identity: ClientIdentity | None = None) -> ClientIdentity:
        """Open the channel; resolves immediately if it is already open."""
        async with self._lock:
            if self._state is ConnectionState.OPEN and self._identity is not None:
                return self._identity
            self._intentional_close = False
            await self._cancel_reconnect()
            self._attempt = 0
            self._identity = identity or self._identity or ClientIdentity.generate()
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self._open_channel(self._identity)
            except ConnectionFailedError:
                if self.auto_reconnect:
                    self._schedule_reconnect()
                else:
                    self._set_state(ConnectionState.CLOSED)
                raise
            return self._identity

    async def disconnect(self) -> None:
        """Close intentionally: no reconnect, and all dispatcher listeners are cleared."""
        self._intentional_close = True
        await self._cancel_reconnect()
        async with self._lock:
            await self._stop_heartbeat()
            channel, self._channel = self._channel, None
            if channel is not None:
                await channel.close()
            self._attempt = 0
            self._dispatcher.clear()
            self._set_state(ConnectionState.CLOSED)

    async def reconnect(self) -> ClientIdentity:
        identity = self._identity
        await self.disconnect()
        return await self.connect(identity)

    async def send(self, payload: EventEnvelope | Mapping[str, Any]) -> None:
        channel = self._channel
        if channel is None or not channel.is_open:
            raise ChannelNotOpenError("No open channel")
        send = getattr(channel, "send", None)
        if send is None:
            raise ChannelNotOpenError("Channel does not accept outbound messages")
        await send(payload)

    async def _open_channel(self, identity: ClientIdentity) -> None:
        callbacks = ChannelCallbacks(
            on_message=self._handle_envelope,
            on_error=self._handle_channel_error,
            on_close=self._handle_channel_closed,
        )
        channel = self._factory(identity, callbacks)
        try:
            await channel.open()
        except ConnectionFailedError:
            raise
        except Exception as exc:
            raise ConnectionFailedError(channel.url, str(exc) or type(exc).__name__) from exc
        self._channel = channel
        self._attempt = 0
        self._set_state(ConnectionState.OPEN)
        logger.info("channel_open", extra={"client_id": identity.client_id, "url": channel.url})
        self._start_heartbeat()
        self._dispatcher.dispatch(EventEnvelope(type=EventType.CONNECTED.value, metadata={"connected": True}))

    def _handle_envelope(self, envelope: EventEnvelope) -> None:
        if envelope.kind is EventType.PONG:
            self._attempt = 0
        self._dispatcher.dispatch(envelope)

    def _handle_channel_error(self, exc: BaseException) -> None:
        logger.warning("channel_error", extra={"error": str(exc) or type(exc).__name__})

    def _handle_channel_closed(self) -> None:
        self._channel = None
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        self._dispatcher.dispatch(EventEnvelope(type=EventType.DISCONNECTED.value, metadata={"connected": False}))
        if self._intentional_close or not self.auto_reconnect:
            self._set_state(ConnectionState.CLOSED)
            return
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        self._set_state(ConnectionState.RECONNECTING)
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop(), name="taskwatch-reconnect")

    async def _reconnect_loop(self) -> None:
        while not self._intentional_close:
            self._attempt += 1
            if self._max_attempts is not None and self._attempt > self._max_attempts:
                logger.error("reconnect_attempts_exhausted", extra={"attempts": self._attempt - 1})
                self._set_state(ConnectionState.CLOSED)
                return
            delay = reconnect_delay(
                self._attempt,
                base_s=self._reconnect_delay_s,
                backoff=self._reconnect_backoff,
                max_s=self._reconnect_max_delay_s,
            )
            logger.info("reconnect_scheduled", extra={"attempt": self._attempt, "delay_s": delay})
            await asyncio.sleep(delay)
            if self._intentional_close or self._identity is None:
                return
            async with self._lock:
                if self._state is ConnectionState.OPEN or self._intentional_close:
                    return
                try:
                    attempt = self._attempt
                    await self._open_channel(self._identity)
                    logger.info("reconnected", extra={"attempt": attempt})
                    return
                except ConnectionFailedError as exc:
                    logger.warning("reconnect_failed", extra={"attempt": self._attempt, "error": str(exc)})

    async def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _start_heartbeat(self) -> None:
        if self._heartbeat_interval_s is None:
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat(), name="taskwatch-heartbeat")

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _heartbeat(self) -> None:
        assert self._heartbeat_interval_s is not None
        while True:
            await asyncio.sleep(self._heartbeat_interval_s)
            try:
                await self.send({"type": EventType.PING.value})
            except Exception as exc:
                logger.debug("heartbeat_failed", extra={"error": str(exc)})

    def _set_state(self, state: ConnectionState) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(previous, state)
            except Exception:
                logger.exception("state_listener_failed", extra={"state": state.value})


__all__ = [
    "ChannelFactory",
    "ConnectionManager",
    "ConnectionState",
    "StateListener",
    "reconnect_delay",
]
