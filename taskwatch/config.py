from __future__ import annotations

import os
import urllib.parse
from collections.abc import Mapping
from dataclasses import dataclass, field

DEFAULT_API_URL = "http://localhost:8000/api"


def _derive_ws_url(api_url: str) -> str:
    parsed = urllib.parse.urlsplit(api_url)
    scheme = "wss" if parsed.scheme == "https" else "ws"
    return urllib.parse.urlunsplit((scheme, parsed.netloc, parsed.path.rstrip("/") + "/ws", "", ""))


def _env_float(name: str) -> float | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    return float(raw)


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    return int(raw)


@dataclass(slots=True)
class TaskwatchConfig:
    api_url: str = DEFAULT_API_URL
    ws_url: str | None = None
    stream_url: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    poll_interval_s: float = 1.0
    auto_reconnect: bool = True
    reconnect_delay_s: float = 3.0
    reconnect_backoff: float = 1.0
    reconnect_max_delay_s: float = 30.0
    max_reconnect_attempts: int | None = None
    heartbeat_interval_s: float | None = 30.0
    completed_retention_s: float | None = 30.0
    persistence_ttl_s: float = 24 * 60 * 60
    stale_after_s: float | None = None
    request_timeout_s: float | None = None

    def __post_init__(self) -> None:
        self.api_url = self.api_url.rstrip("/")
        if not self.api_url:
            raise ValueError("api_url must be non-empty")
        if self.ws_url is None:
            self.ws_url = _derive_ws_url(self.api_url)
        self.ws_url = self.ws_url.rstrip("/")
        if self.stream_url is None:
            self.stream_url = self.api_url
        self.stream_url = self.stream_url.rstrip("/")
        if self.poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")
        if self.reconnect_delay_s < 0:
            raise ValueError("reconnect_delay_s must be >= 0")
        if self.reconnect_backoff < 1:
            raise ValueError("reconnect_backoff must be >= 1")
        if self.reconnect_max_delay_s < self.reconnect_delay_s:
            raise ValueError("reconnect_max_delay_s must be >= reconnect_delay_s")
        if self.max_reconnect_attempts is not None and self.max_reconnect_attempts < 1:
            raise ValueError("max_reconnect_attempts must be >= 1 or None")
        if self.heartbeat_interval_s is not None and self.heartbeat_interval_s <= 0:
            raise ValueError("heartbeat_interval_s must be > 0 or None")
        if self.persistence_ttl_s <= 0:
            raise ValueError("persistence_ttl_s must be > 0")
        if self.stale_after_s is not None and self.stale_after_s <= 0:
            raise ValueError("stale_after_s must be > 0 or None")

    @classmethod
    def from_env(cls, **overrides) -> TaskwatchConfig:
        values: dict[str, object] = {}
        for key, env in (
            ("api_url", "TASKWATCH_API_URL"),
            ("ws_url", "TASKWATCH_WS_URL"),
            ("stream_url", "TASKWATCH_STREAM_URL"),
        ):
            if os.environ.get(env):
                values[key] = os.environ[env]
        for key, env in (
            ("poll_interval_s", "TASKWATCH_POLL_INTERVAL"),
            ("reconnect_delay_s", "TASKWATCH_RECONNECT_DELAY"),
            ("stale_after_s", "TASKWATCH_STALE_AFTER"),
        ):
            number = _env_float(env)
            if number is not None:
                values[key] = number
        attempts = _env_int("TASKWATCH_MAX_RECONNECT_ATTEMPTS")
        if attempts is not None:
            values["max_reconnect_attempts"] = attempts
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)  # type: ignore[arg-type]


__all__ = ["DEFAULT_API_URL", "TaskwatchConfig"]
