from __future__ import annotations

from typing import Any


class TaskwatchError(Exception):
    """Base class for every error raised by taskwatch."""


class TaskNotFoundError(TaskwatchError, KeyError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"No such task: '{task_id}'")
        self.task_id = task_id

    def __str__(self) -> str:
        return self.args[0]


class ChannelNotOpenError(TaskwatchError):
    def __init__(self, detail: str = "Channel is not open") -> None:
        super().__init__(detail)


class ConnectionFailedError(TaskwatchError):
    def __init__(self, url: str, detail: str | None = None) -> None:
        message = f"Could not open channel to {url}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.url = url


class MalformedFrameError(TaskwatchError):
    def __init__(self, detail: str, *, frame: Any = None) -> None:
        super().__init__(detail)
        self.frame = frame


class TaskRequestError(TaskwatchError):
    def __init__(self, *, status_code: int, url: str, detail: str | None = None) -> None:
        detail_text = f": {detail}" if detail else ""
        super().__init__(f"Request failed ({status_code}){detail_text}")
        self.status_code = status_code
        self.url = url
        self.detail = detail


__all__ = [
    "ChannelNotOpenError",
    "ConnectionFailedError",
    "MalformedFrameError",
    "TaskNotFoundError",
    "TaskRequestError",
    "TaskwatchError",
]
