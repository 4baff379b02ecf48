"""HTTP relay turning backend status polling into a per-task event stream."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from taskwatch.api import TaskApiClient
from taskwatch.channels import UPSTREAM_ERROR_MESSAGE
from taskwatch.errors import TaskRequestError
from taskwatch.models import TaskStatus

from .config import RelayConfig
from .sse import SSE_HEADERS, format_sse

logger = logging.getLogger("taskwatch.relay")

BACKEND_UNREACHABLE_MESSAGE = "Could not connect to backend server"
CONNECTED_MESSAGE = "SSE connection established"


def _utc_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _forward_auth(request: Request) -> dict[str, str]:
    """Authorization header for the backend: header first, then cookie, then ``?token``."""
    header = request.headers.get("authorization")
    if header:
        return {"Authorization": header}
    token = request.cookies.get("access_token") or request.query_params.get("token")
    if token:
        return {"Authorization": f"Bearer {token}"}
    return {}


def create_relay_app(config: RelayConfig | None = None, *, client: httpx.AsyncClient | None = None) -> FastAPI:
    config = config or RelayConfig()
    owns_client = client is None
    holder: dict[str, httpx.AsyncClient | None] = {"client": client}

    def _client() -> httpx.AsyncClient:
        current = holder["client"]
        if current is None:
            current = httpx.AsyncClient(timeout=config.request_timeout_s)
            holder["client"] = current
        return current

    @asynccontextmanager
    async def _lifespan(_app: FastAPI):
        try:
            yield
        finally:
            current = holder["client"]
            if owns_client and current is not None:
                holder["client"] = None
                await current.aclose()

    app = FastAPI(title="taskwatch relay", docs_url=None, redoc_url=None, openapi_url=None, lifespan=_lifespan)

    async def _relay(api: TaskApiClient, client_id: str, task_id: str) -> AsyncIterator[bytes]:
        yield format_sse(
            "connected",
            {"clientId": client_id, "taskId": task_id, "timestamp": _utc_iso(), "message": CONNECTED_MESSAGE},
        )
        logger.info("relay_stream_opened", extra={"client_id": client_id, "task_id": task_id})
        try:
            while True:
                await asyncio.sleep(config.poll_interval_s)
                try:
                    payload = await api.get_status(task_id, client_id=client_id)
                except (httpx.HTTPError, TaskRequestError, ValueError) as exc:
                    logger.warning("relay_status_failed", extra={"task_id": task_id, "error": str(exc)})
                    yield format_sse("error", {"error": UPSTREAM_ERROR_MESSAGE, "details": str(exc)})
                    await asyncio.sleep(config.close_delay_s)
                    return
                yield format_sse("progress", payload)
                status = TaskStatus.parse(payload.get("status"))
                if status is not None and status.is_terminal:
                    await asyncio.sleep(config.close_delay_s)
                    return
        finally:
            logger.info("relay_stream_closed", extra={"client_id": client_id, "task_id": task_id})

    @app.get("/uploads/sse/progress/{client_id}/{task_id}")
    async def stream_progress(client_id: str, task_id: str, request: Request):
        api = TaskApiClient(base_url=config.backend_url, headers=_forward_auth(request), client=_client())
        return StreamingResponse(
            _relay(api, client_id, task_id),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.post("/uploads/cancel/{task_id}")
    async def cancel_task(task_id: str, request: Request):
        try:
            body: Any = await request.json()
        except ValueError:
            body = {}
        client_id = body.get("client_id") if isinstance(body, dict) else None
        api = TaskApiClient(base_url=config.backend_url, client=_client())
        url = api.cancel_url(task_id)
        headers = {"Content-Type": "application/json"}
        headers.update(_forward_auth(request))
        try:
            response = await _client().request(
                "DELETE",
                url,
                json={"client_id": client_id} if client_id else None,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            logger.warning("relay_cancel_unreachable", extra={"task_id": task_id, "url": url, "error": str(exc)})
            return JSONResponse(
                status_code=503,
                content={"error": BACKEND_UNREACHABLE_MESSAGE, "details": str(exc), "url": url},
            )
        try:
            content = response.json() if response.content else {}
        except ValueError:
            content = {"error": response.text}
        logger.info("relay_cancel_forwarded", extra={"task_id": task_id, "status_code": response.status_code})
        return JSONResponse(status_code=response.status_code, content=content)

    return app


__all__ = ["BACKEND_UNREACHABLE_MESSAGE", "CONNECTED_MESSAGE", "create_relay_app"]
