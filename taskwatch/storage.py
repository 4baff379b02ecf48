"""Client-local durable key/value storage."""

from __future__ import annotations

import json
import sqlite3
import time
from pathlib import Path
from typing import Protocol

ACTIVE_TASKS_KEY = "activeTasks"
TASK_MANAGER_VISIBLE_KEY = "taskManagerVisible"
TASK_MANAGER_COLLAPSED_KEY = "taskManagerCollapsed"


class Storage(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class InMemoryStorage:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value


class SQLiteStorage:
    """Key/value pairs in a single SQLite table."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()
        self._schema_ready = False

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self._path) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
        self._schema_ready = True

    def get(self, key: str) -> str | None:
        self._ensure_schema()
        with sqlite3.connect(self._path) as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return None if row is None else str(row[0])

    def set(self, key: str, value: str) -> None:
        self._ensure_schema()
        with sqlite3.connect(self._path) as conn:
            conn.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, int(time.time())),
            )


def _read_flag(storage: Storage, key: str, default: bool) -> bool:
    raw = storage.get(key)
    if raw is None:
        return default
    try:
        return bool(json.loads(raw))
    except json.JSONDecodeError:
        return default


def read_task_manager_prefs(storage: Storage) -> dict[str, bool]:
    return {
        "visible": _read_flag(storage, TASK_MANAGER_VISIBLE_KEY, False),
        "collapsed": _read_flag(storage, TASK_MANAGER_COLLAPSED_KEY, False),
    }


def write_task_manager_prefs(storage: Storage, *, visible: bool | None = None, collapsed: bool | None = None) -> None:
    if visible is not None:
        storage.set(TASK_MANAGER_VISIBLE_KEY, json.dumps(bool(visible)))
    if collapsed is not None:
        storage.set(TASK_MANAGER_COLLAPSED_KEY, json.dumps(bool(collapsed)))


__all__ = [
    "ACTIVE_TASKS_KEY",
    "InMemoryStorage",
    "SQLiteStorage",
    "Storage",
    "TASK_MANAGER_COLLAPSED_KEY",
    "TASK_MANAGER_VISIBLE_KEY",
    "read_task_manager_prefs",
    "write_task_manager_prefs",
]
