"""Realtime transport channels normalizing inbound frames to envelopes."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ValidationError
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from .errors import ChannelNotOpenError, ConnectionFailedError, MalformedFrameError
from .identity import ClientIdentity
from .models import EventEnvelope, EventType

logger = logging.getLogger("taskwatch.channels")

UPSTREAM_ERROR_MESSAGE = "Failed to fetch task status"

SocketConnect = Callable[[str], Awaitable[Any]]


def _utc_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _ignore_error(_exc: BaseException) -> None:
    return None


def _ignore_close() -> None:
    return None


@dataclass(slots=True)
class ChannelCallbacks:
    on_message: Callable[[EventEnvelope], None]
    on_error: Callable[[BaseException], None] = _ignore_error
    on_close: Callable[[], None] = _ignore_close


class TransportChannel(Protocol):
    @property
    def url(self) -> str: ...

    @property
    def is_open(self) -> bool: ...

    async def open(self) -> None: ...

    async def close(self) -> None: ...


def _envelope_from_mapping(payload: Any, *, frame: Any) -> EventEnvelope:
    if not isinstance(payload, Mapping):
        raise MalformedFrameError("frame is not a JSON object", frame=frame)
    try:
        return EventEnvelope.model_validate(dict(payload))
    except ValidationError as exc:
        raise MalformedFrameError(f"frame does not match envelope: {exc}", frame=frame) from exc


def decode_frame(frame: str | bytes) -> EventEnvelope:
    """Decode one socket frame into an :class:`EventEnvelope`."""
    if isinstance(frame, bytes):
        try:
            frame = frame.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedFrameError("frame is not valid UTF-8", frame=frame) from exc
    try:
        payload = json.loads(frame)
    except json.JSONDecodeError as exc:
        raise MalformedFrameError("frame is not valid JSON", frame=frame) from exc
    return _envelope_from_mapping(payload, frame=frame)


def encode_frame(payload: EventEnvelope | Mapping[str, Any]) -> str:
    if isinstance(payload, BaseModel):
        data = payload.model_dump(mode="json", exclude_none=True)
    else:
        data = dict(payload)
    data.setdefault("timestamp", _utc_iso())
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


@dataclass(slots=True)
class SSEEvent:
    event: str = "message"
    data: str = ""
    id: str | None = None


@dataclass(slots=True)
class SSEDecoder:
    """Incremental decoder for ``text/event-stream`` lines."""

    _event: str | None = None
    _data: list[str] = field(default_factory=list)
    _id: str | None = None

    def feed(self, line: str) -> SSEEvent | None:
        if not line:
            return self.flush()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._id = value
        return None

    def flush(self) -> SSEEvent | None:
        if not self._data:
            self._event = None
            return None
        event = SSEEvent(event=self._event or "message", data="\n".join(self._data), id=self._id)
        self._event = None
        self._data = []
        return event


def envelope_from_sse(event: SSEEvent, *, task_id: str) -> EventEnvelope:
    """Normalize a relay stream event for ``task_id`` into an envelope."""
    try:
        payload = json.loads(event.data)
    except json.JSONDecodeError as exc:
        raise MalformedFrameError("event data is not valid JSON", frame=event.data) from exc
    if not isinstance(payload, Mapping):
        raise MalformedFrameError("event data is not a JSON object", frame=event.data)
    data = dict(payload)
    if event.event in {"progress", "message"}:
        data["type"] = EventType.UPLOAD_PROGRESS.value
    elif event.event == "error":
        data["type"] = EventType.ERROR.value
        data["error"] = data.get("error") or data.get("details") or UPSTREAM_ERROR_MESSAGE
    else:
        data["type"] = event.event
    data.setdefault("task_id", task_id)
    return _envelope_from_mapping(data, frame=event.data)


class PersistentSocketChannel:
    """Bidirectional socket addressed by the client identity."""

    def __init__(
        self,
        base_url: str,
        identity: ClientIdentity,
        callbacks: ChannelCallbacks,
        *,
        connect: SocketConnect | None = None,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/client/{identity.client_id}"
        self._identity = identity
        self._callbacks = callbacks
        self._connect: SocketConnect = connect or ws_connect
        self._socket: Any | None = None
        self._reader: asyncio.Task[None] | None = None
        self._open = False
        self._closing = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def identity(self) -> ClientIdentity:
        return self._identity

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        if self._open:
            return
        self._closing = False
        try:
            self._socket = await self._connect(self._url)
        except Exception as exc:
            raise ConnectionFailedError(self._url, str(exc) or type(exc).__name__) from exc
        self._open = True
        self._reader = asyncio.create_task(self._read(), name=f"taskwatch-socket-{self._identity.client_id}")

    async def send(self, payload: EventEnvelope | Mapping[str, Any]) -> None:
        if not self._open or self._socket is None:
            raise ChannelNotOpenError("Socket channel is not open")
        await self._socket.send(encode_frame(payload))

    async def close(self) -> None:
        self._closing = True
        self._open = False
        reader, self._reader = self._reader, None
        socket, self._socket = self._socket, None
        if socket is not None:
            with contextlib.suppress(Exception):
                await socket.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

    def _handle_frame(self, frame: str | bytes) -> None:
        try:
            envelope = decode_frame(frame)
        except MalformedFrameError as exc:
            logger.warning(
                "malformed_frame_dropped",
                extra={"client_id": self._identity.client_id, "error": str(exc)},
            )
            return
        self._callbacks.on_message(envelope)

    async def _read(self) -> None:
        error: BaseException | None = None
        socket = self._socket
        try:
            async for frame in socket:
                self._handle_frame(frame)
        except ConnectionClosed as exc:
            error = exc
        except Exception as exc:
            error = exc
            logger.warning("socket_read_failed", extra={"client_id": self._identity.client_id, "error": str(exc)})
        finally:
            self._open = False
        if self._closing:
            return
        self._socket = None
        if error is not None:
            self._callbacks.on_error(error)
        self._callbacks.on_close()


class ServerStreamChannel:
    """Server-to-client event stream proxying one task's updates."""

    def __init__(
        self,
        base_url: str,
        identity: ClientIdentity,
        task_id: str,
        callbacks: ChannelCallbacks,
        *,
        client: httpx.AsyncClient | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/uploads/sse/progress/{identity.client_id}/{task_id}"
        self._identity = identity
        self._task_id = task_id
        self._callbacks = callbacks
        self._client = client
        self._owns_client = client is None
        self._headers = dict(headers or {})
        self._response: httpx.Response | None = None
        self._reader: asyncio.Task[None] | None = None
        self._open = False
        self._closing = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def task_id(self) -> str:
        return self._task_id

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        if self._open:
            return
        self._closing = False
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=None)
            self._owns_client = True
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        headers.update(self._headers)
        request = self._client.build_request("GET", self._url, headers=headers)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            await self._release_client()
            raise ConnectionFailedError(self._url, str(exc) or type(exc).__name__) from exc
        if response.status_code >= 400:
            await response.aread()
            await response.aclose()
            await self._release_client()
            raise ConnectionFailedError(self._url, f"status {response.status_code}")
        self._response = response
        self._open = True
        self._reader = asyncio.create_task(self._read(response), name=f"taskwatch-stream-{self._task_id}")

    async def close(self) -> None:
        self._closing = True
        self._open = False
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        response, self._response = self._response, None
        if response is not None:
            await response.aclose()
        await self._release_client()

    async def _release_client(self) -> None:
        if self._owns_client and self._client is not None:
            client, self._client = self._client, None
            await client.aclose()

    def _handle_event(self, event: SSEEvent) -> None:
        try:
            envelope = envelope_from_sse(event, task_id=self._task_id)
        except MalformedFrameError as exc:
            logger.warning("malformed_frame_dropped", extra={"task_id": self._task_id, "error": str(exc)})
            return
        self._callbacks.on_message(envelope)

    async def _read(self, response: httpx.Response) -> None:
        decoder = SSEDecoder()
        error: BaseException | None = None
        try:
            async for line in response.aiter_lines():
                event = decoder.feed(line)
                if event is not None:
                    self._handle_event(event)
            tail = decoder.flush()
            if tail is not None:
                self._handle_event(tail)
        except Exception as exc:
            error = exc
            logger.warning("stream_read_failed", extra={"task_id": self._task_id, "error": str(exc)})
        finally:
            self._open = False
        if self._closing:
            return
        self._response = None
        await response.aclose()
        await self._release_client()
        if error is not None:
            self._callbacks.on_message(
                EventEnvelope(
                    type=EventType.ERROR.value,
                    task_id=self._task_id,
                    error=UPSTREAM_ERROR_MESSAGE,
                    metadata={"details": str(error) or type(error).__name__},
                    timestamp=_utc_iso(),
                )
            )
            self._callbacks.on_error(error)
        self._callbacks.on_close()


__all__ = [
    "ChannelCallbacks",
    "PersistentSocketChannel",
    "SSEDecoder",
    "SSEEvent",
    "ServerStreamChannel",
    "TransportChannel",
    "UPSTREAM_ERROR_MESSAGE",
    "decode_frame",
    "encode_frame",
    "envelope_from_sse",
]
