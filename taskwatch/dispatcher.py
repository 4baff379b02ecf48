"""Typed publish/subscribe routing for inbound event envelopes."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .models import EventEnvelope, EventType

logger = logging.getLogger("taskwatch.dispatch")

EnvelopeHandler = Callable[[EventEnvelope], Awaitable[None] | None]
Unsubscribe = Callable[[], None]


class EventDispatcher:
    """Fan out envelopes to handlers keyed by :class:`EventType`.

    Handlers registered under ``EventType.ALL`` receive every envelope.
    A failing handler is logged and never prevents delivery to the others.
    Coroutine handlers are scheduled on the running loop.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[EnvelopeHandler]] = {}
        self._pending: set[asyncio.Task[Any]] = set()

    def subscribe(self, event_type: EventType | str, handler: EnvelopeHandler) -> Unsubscribe:
        kind = event_type if isinstance(event_type, EventType) else EventType(event_type)
        handlers = self._handlers.setdefault(kind, [])
        handlers.append(handler)

        def _unsubscribe() -> None:
            current = self._handlers.get(kind)
            if current is None:
                return
            try:
                current.remove(handler)
            except ValueError:
                return
            if not current:
                self._handlers.pop(kind, None)

        return _unsubscribe

    def subscribe_to_task(self, task_id: str, handler: EnvelopeHandler) -> Unsubscribe:
        if not task_id:
            raise ValueError("task_id must be non-empty")

        def _filtered(envelope: EventEnvelope) -> Awaitable[None] | None:
            if envelope.task_id != task_id:
                return None
            return handler(envelope)

        return self.subscribe(EventType.ALL, _filtered)

    def subscriber_count(self, event_type: EventType | None = None) -> int:
        if event_type is None:
            return sum(len(handlers) for handlers in self._handlers.values())
        return len(self._handlers.get(event_type, ()))

    def clear(self) -> None:
        self._handlers.clear()

    def dispatch(self, envelope: EventEnvelope) -> int:
        """Deliver ``envelope``; returns the number of handlers invoked."""
        kind = envelope.kind
        targets = list(self._handlers.get(kind, ()))
        targets.extend(self._handlers.get(EventType.ALL, ()))
        for handler in targets:
            try:
                result = handler(envelope)
            except Exception:
                logger.exception(
                    "event_handler_failed",
                    extra={"event_type": kind.value, "task_id": envelope.task_id},
                )
                continue
            if inspect.isawaitable(result):
                self._schedule(result, kind, envelope.task_id)
        return len(targets)

    def _schedule(self, awaitable: Awaitable[Any], kind: EventType, task_id: str | None) -> None:
        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._pending.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.error(
                    "event_handler_failed",
                    exc_info=exc,
                    extra={"event_type": kind.value, "task_id": task_id},
                )

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for coroutine handlers scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = ["EnvelopeHandler", "EventDispatcher", "Unsubscribe"]
