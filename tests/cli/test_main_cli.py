"""Tests for the taskwatch CLI commands."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from click.testing import CliRunner

from taskwatch.cli import app
from taskwatch.config import TaskwatchConfig
from taskwatch.identity import ClientIdentity
from taskwatch.storage import InMemoryStorage, SQLiteStorage
from taskwatch.store import TaskStore
from taskwatch.tracker import TaskTracker


def _patch_tracker(monkeypatch: pytest.MonkeyPatch, handler) -> list[TaskwatchConfig]:
    configs: list[TaskwatchConfig] = []

    def build(config: TaskwatchConfig, *, state: str | None = None, identity: ClientIdentity | None = None):
        configs.append(config)
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        fast = TaskwatchConfig(api_url=config.api_url, poll_interval_s=0.01, heartbeat_interval_s=None)
        storage = SQLiteStorage(state) if state else InMemoryStorage()
        return TaskTracker(fast, identity=identity, storage=storage, http_client=client)

    monkeypatch.setattr("taskwatch.cli.main._build_tracker", build)
    return configs


class TestWatchCommand:
    def test_exits_zero_on_completion(self, monkeypatch: pytest.MonkeyPatch) -> None:
        responses = [{"current": 1, "total": 2}, {"status": "completed", "percentage": 100}]

        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=responses.pop(0) if len(responses) > 1 else responses[0])

        configs = _patch_tracker(monkeypatch, handler)
        result = CliRunner().invoke(app, ["--api-url", "http://backend/api", "watch", "t1", "--interval", "0.01"])

        assert result.exit_code == 0, result.output
        assert "t1 processing 50%" in result.output
        assert "t1 completed 100%" in result.output
        assert configs[0].api_url == "http://backend/api"

    def test_exits_one_on_failure(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "failed", "error": "bad input"})

        _patch_tracker(monkeypatch, handler)
        result = CliRunner().invoke(app, ["watch", "t1"])

        assert result.exit_code == 1
        assert "t1 failed" in result.output
        assert "bad input" in result.output


class TestCancelCommand:
    def test_unknown_task_fails_without_request(self, monkeypatch: pytest.MonkeyPatch) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={})

        _patch_tracker(monkeypatch, handler)
        result = CliRunner().invoke(app, ["cancel", "t2"])

        assert result.exit_code == 1
        assert "No such task" in result.output
        assert requests == []

    def test_cancels_persisted_task(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        state = tmp_path / "state.db"
        seed = TaskStore(storage=SQLiteStorage(state))
        seed.register("t9", {"title": "Upload"})
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"status": "cancelled"})

        _patch_tracker(monkeypatch, handler)
        result = CliRunner().invoke(app, ["cancel", "t9", "--client-id", "abc", "--state", str(state)])

        assert result.exit_code == 0, result.output
        assert "t9 cancelled" in result.output
        assert requests[0].method == "DELETE"
        assert b"client_abc" in requests[0].content


class TestTasksCommand:
    def test_lists_persisted_tasks(self, tmp_path: Path) -> None:
        state = tmp_path / "state.db"
        seed = TaskStore(storage=SQLiteStorage(state))
        seed.register("a1")
        seed.register("b2")
        seed.apply_update("b2", {"status": "failed", "error": "boom"})

        runner = CliRunner()
        result = runner.invoke(app, ["tasks", "--state", str(state)])
        assert result.exit_code == 0
        assert "a1 processing 0%" in result.output
        assert "b2 failed" in result.output

        active = runner.invoke(app, ["tasks", "--state", str(state), "--active"])
        assert "a1" in active.output
        assert "b2" not in active.output

    def test_missing_state_file(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(app, ["tasks", "--state", str(tmp_path / "none.db")])
        assert result.exit_code == 0
        assert "No tracked tasks." in result.output


class TestRelayCommand:
    def test_serves_relay_with_uvicorn(self, monkeypatch: pytest.MonkeyPatch) -> None:
        calls: list[dict] = []

        def fake_run(app_obj, **kwargs) -> None:
            calls.append({"app": app_obj, **kwargs})

        monkeypatch.setattr("uvicorn.run", fake_run)
        result = CliRunner().invoke(app, ["relay", "--backend-url", "http://b/api", "--port", "4000"])

        assert result.exit_code == 0, result.output
        assert calls[0]["port"] == 4000
        assert calls[0]["host"] == "127.0.0.1"
