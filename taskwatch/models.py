"""Task state and event envelope models."""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utc_now() -> datetime:
    return datetime.now(UTC)


class TaskStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @classmethod
    def parse(cls, value: Any) -> TaskStatus | None:
        """Return the matching status, or ``None`` for unknown values."""
        if isinstance(value, TaskStatus):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.ERROR, TaskStatus.CANCELLED}
)
ACTIVE_STATUSES = frozenset({TaskStatus.QUEUED, TaskStatus.PROCESSING})
ERROR_STATUSES = frozenset({TaskStatus.FAILED, TaskStatus.ERROR})


class TaskSource(str, Enum):
    PUSH = "push"
    POLL = "poll"
    OPTIMISTIC = "optimistic"


class EventType(str, Enum):
    """Kinds of envelope the dispatcher knows how to route."""

    ALL = "*"
    UPLOAD_PROGRESS = "upload_progress"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    PING = "ping"
    PONG = "pong"
    ERROR = "error"
    MESSAGE = "message"

    @classmethod
    def parse(cls, value: Any) -> EventType:
        if isinstance(value, EventType):
            return value
        try:
            kind = cls(str(value))
        except ValueError:
            return cls.MESSAGE
        # The wildcard is a subscription key, never an inbound kind.
        return cls.MESSAGE if kind is cls.ALL else kind


def clamp_progress(value: Any) -> int | None:
    """Coerce ``value`` to an int in [0, 100]; ``None`` if it is not numeric."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    if number == math.inf:
        return 100
    if number == -math.inf:
        return 0
    return max(0, min(100, int(number)))


def compute_progress(payload: Mapping[str, Any]) -> int | None:
    """Derive a percentage from a status payload.

    A reported ``percentage`` (or ``progress``) wins; otherwise
    ``floor(current / total * 100)`` when both counters are present.
    Returns ``None`` when the payload carries neither.
    """
    for key in ("percentage", "progress"):
        if payload.get(key) is not None:
            return clamp_progress(payload[key])
    current = payload.get("current")
    total = payload.get("total")
    if not current or not total:
        return None
    try:
        return clamp_progress(math.floor(float(current) / float(total) * 100))
    except (TypeError, ValueError, ZeroDivisionError):
        return None


class TaskState(BaseModel):
    model_config = ConfigDict(use_enum_values=False)

    id: str
    status: TaskStatus = TaskStatus.PROCESSING
    progress: int = 0
    message: str = ""
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    type: str = "upload"
    title: str = "Task"
    started: datetime = Field(default_factory=_utc_now)
    updated: datetime = Field(default_factory=_utc_now)
    source: TaskSource | None = None

    @field_validator("progress", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> int:
        clamped = clamp_progress(value)
        return 0 if clamped is None else clamped

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_active(self) -> bool:
        return self.status.is_active


class TaskPatch(BaseModel):
    """Partial update merged into a :class:`TaskState`.

    Only fields explicitly set on the patch are applied.
    """

    model_config = ConfigDict(extra="ignore")

    status: TaskStatus | None = None
    progress: int | None = None
    message: str | None = None
    error: str | None = None
    metadata: dict[str, Any] | None = None
    type: str | None = None
    title: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value: Any) -> TaskStatus | None:
        return TaskStatus.parse(value)

    @field_validator("progress", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> int | None:
        return clamp_progress(value)

    @field_validator("message", "error", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str | None:
        if value is None:
            return None
        return value if isinstance(value, str) else str(value)

    @classmethod
    def from_status_payload(cls, payload: Mapping[str, Any], *, default_status: TaskStatus | None = None) -> TaskPatch:
        """Build a patch from a status endpoint response body."""
        data: dict[str, Any] = {}
        status = payload.get("status")
        if status is None and default_status is not None:
            status = default_status
        if status is not None:
            data["status"] = status
        progress = compute_progress(payload)
        if progress is not None:
            data["progress"] = progress
        for key in ("message", "error"):
            if payload.get(key):
                data[key] = payload[key]
        metadata = payload.get("metadata")
        if isinstance(metadata, Mapping):
            data["metadata"] = dict(metadata)
        return cls.model_validate(data)


class EventEnvelope(BaseModel):
    """Transport-independent shape of one inbound realtime message."""

    model_config = ConfigDict(extra="allow")

    type: str = EventType.MESSAGE.value
    task_id: str | None = None
    status: str | None = None
    progress: int | None = None
    percentage: int | None = None
    message: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: str | None = None

    @field_validator("progress", "percentage", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> int | None:
        return clamp_progress(value)

    @field_validator("task_id", mode="before")
    @classmethod
    def _task_id(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        return str(value)

    @field_validator("message", "error", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str | None:
        if value is None:
            return None
        return value if isinstance(value, str) else str(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata(cls, value: Any) -> dict[str, Any]:
        return dict(value) if isinstance(value, Mapping) else {}

    @property
    def kind(self) -> EventType:
        return EventType.parse(self.type)

    def to_patch(self) -> TaskPatch:
        data: dict[str, Any] = self.model_dump(exclude_none=True)
        return TaskPatch.from_status_payload(data)


__all__ = [
    "ACTIVE_STATUSES",
    "ERROR_STATUSES",
    "EventEnvelope",
    "EventType",
    "TERMINAL_STATUSES",
    "TaskPatch",
    "TaskSource",
    "TaskState",
    "TaskStatus",
    "clamp_progress",
    "compute_progress",
]
