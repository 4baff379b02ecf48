from __future__ import annotations

import os
from dataclasses import dataclass

from taskwatch.config import DEFAULT_API_URL


@dataclass(slots=True)
class RelayConfig:
    backend_url: str = DEFAULT_API_URL
    poll_interval_s: float = 1.0
    close_delay_s: float = 1.0
    request_timeout_s: float | None = 10.0

    def __post_init__(self) -> None:
        self.backend_url = self.backend_url.rstrip("/")
        if not self.backend_url:
            raise ValueError("backend_url must be non-empty")
        if self.poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")
        if self.close_delay_s < 0:
            raise ValueError("close_delay_s must be >= 0")

    @classmethod
    def from_env(cls, **overrides) -> RelayConfig:
        values: dict[str, object] = {}
        backend = os.environ.get("TASKWATCH_RELAY_BACKEND_URL") or os.environ.get("TASKWATCH_API_URL")
        if backend:
            values["backend_url"] = backend
        for key, env in (
            ("poll_interval_s", "TASKWATCH_RELAY_POLL_INTERVAL"),
            ("close_delay_s", "TASKWATCH_RELAY_CLOSE_DELAY"),
        ):
            raw = os.environ.get(env)
            if raw and raw.strip():
                values[key] = float(raw)
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)  # type: ignore[arg-type]


__all__ = ["RelayConfig"]
