"""taskwatch command-line interface."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
import httpx

from ..config import TaskwatchConfig
from ..errors import ConnectionFailedError, TaskwatchError
from ..identity import ClientIdentity
from ..models import TaskState, TaskStatus
from ..storage import InMemoryStorage, SQLiteStorage, Storage
from ..store import TaskStore
from ..tracker import TaskTracker, TrackingStrategy

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def _storage(state: str | None) -> Storage:
    return SQLiteStorage(state) if state else InMemoryStorage()


def _build_tracker(
    config: TaskwatchConfig,
    *,
    state: str | None = None,
    identity: ClientIdentity | None = None,
) -> TaskTracker:
    return TaskTracker(config, identity=identity, storage=_storage(state))


def _format_state(state: TaskState) -> str:
    line = f"{state.id} {state.status.value} {state.progress}%"
    if state.message:
        line = f"{line} {state.message}"
    if state.error:
        line = f"{line} ({state.error})"
    return line


@click.group()
@click.version_option(package_name="taskwatch")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
@click.option("--api-url", envvar="TASKWATCH_API_URL", default=None, help="Base URL of the task API.")
@click.pass_context
def app(ctx: click.Context, log_level: str, api_url: str | None) -> None:
    """taskwatch CLI - follow and cancel long-running backend tasks."""
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)
    ctx.ensure_object(dict)
    ctx.obj["api_url"] = api_url


def _config(ctx: click.Context, **overrides) -> TaskwatchConfig:
    try:
        return TaskwatchConfig.from_env(api_url=ctx.obj.get("api_url"), **overrides)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


async def _watch(tracker: TaskTracker, task_id: str, strategy: TrackingStrategy, interval: float | None) -> TaskState:
    async with tracker:
        if strategy is TrackingStrategy.PUSH:
            try:
                await tracker.enable_push()
            except ConnectionFailedError as exc:
                click.echo(f"! {exc}; polling instead", err=True)

        def _print(changed_id: str, changed: TaskState | None) -> None:
            if changed_id == task_id and changed is not None:
                click.echo(_format_state(changed))

        unwatch = tracker.store.watch(_print)
        try:
            await tracker.register_task(task_id, strategy=strategy, interval_s=interval)
            return await tracker.wait_for(task_id)
        finally:
            unwatch()


@app.command()
@click.argument("task_id")
@click.option(
    "--strategy",
    type=click.Choice([item.value for item in TrackingStrategy]),
    default=TrackingStrategy.POLL.value,
    show_default=True,
    help="How status updates are delivered.",
)
@click.option("--interval", type=float, default=None, help="Polling interval in seconds.")
@click.option("--state", type=click.Path(dir_okay=False, path_type=str), default=None, help="SQLite state file.")
@click.pass_context
def watch(ctx: click.Context, task_id: str, strategy: str, interval: float | None, state: str | None) -> None:
    """Follow TASK_ID until it reaches a terminal status."""
    tracker = _build_tracker(_config(ctx), state=state)
    try:
        final = asyncio.run(_watch(tracker, task_id, TrackingStrategy(strategy), interval))
    except (TaskwatchError, ValueError) as exc:
        click.echo(f"✗ {exc}", err=True)
        sys.exit(1)
    if final.status is not TaskStatus.COMPLETED:
        sys.exit(1)


async def _cancel(tracker: TaskTracker, task_id: str) -> TaskState:
    async with tracker:
        await tracker.cancel(task_id)
        return tracker.store.require(task_id)


@app.command()
@click.argument("task_id")
@click.option("--client-id", default=None, help="Client id reported to the backend.")
@click.option("--state", type=click.Path(dir_okay=False, path_type=str), default=None, help="SQLite state file.")
@click.pass_context
def cancel(ctx: click.Context, task_id: str, client_id: str | None, state: str | None) -> None:
    """Cancel TASK_ID locally and on the backend."""
    identity = ClientIdentity(client_id) if client_id else None
    tracker = _build_tracker(_config(ctx), state=state, identity=identity)
    try:
        final = asyncio.run(_cancel(tracker, task_id))
    except (TaskwatchError, httpx.HTTPError) as exc:
        click.echo(f"✗ {exc}", err=True)
        sys.exit(1)
    click.echo(_format_state(final))


@app.command()
@click.option("--state", type=click.Path(dir_okay=False, path_type=str), required=True, help="SQLite state file.")
@click.option("--active", is_flag=True, help="Only list queued or processing tasks.")
def tasks(state: str, active: bool) -> None:
    """List tasks persisted in the state file."""
    if not Path(state).exists():
        click.echo("No tracked tasks.")
        return
    store = TaskStore(storage=SQLiteStorage(state))
    store.restore()
    snapshot = store.snapshot_active() if active else store.snapshot_all()
    if not snapshot:
        click.echo("No tracked tasks.")
        return
    for task in sorted(snapshot.values(), key=lambda item: item.started):
        click.echo(_format_state(task))


@app.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=3000, show_default=True)
@click.option("--backend-url", envvar="TASKWATCH_RELAY_BACKEND_URL", default=None, help="Backend task API URL.")
@click.option("--poll-interval", type=float, default=None, help="Seconds between backend status fetches.")
@click.pass_context
def relay(ctx: click.Context, host: str, port: int, backend_url: str | None, poll_interval: float | None) -> None:
    """Serve the task event-stream relay."""
    import uvicorn

    from taskwatch_relay import RelayConfig, create_relay_app

    config = RelayConfig.from_env(backend_url=backend_url or ctx.obj.get("api_url"), poll_interval_s=poll_interval)
    uvicorn.run(create_relay_app(config), host=host, port=port)


__all__ = ["app"]
