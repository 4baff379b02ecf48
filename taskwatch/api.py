from __future__ import annotations

import json
from collections.abc import Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import httpx

from .errors import TaskRequestError


def _normalize_base_url(url: str) -> str:
    return url.rstrip("/")


def _error_detail(body: str | None) -> str | None:
    if not body:
        return None
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, Mapping):
        return None
    for key in ("detail", "message", "error"):
        value = payload.get(key)
        if value:
            return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    return None


def raise_for_status(response: httpx.Response, *, body: str | None = None) -> None:
    if 200 <= response.status_code < 300:
        return
    raise TaskRequestError(
        status_code=response.status_code,
        url=str(response.request.url),
        detail=_error_detail(body),
    )


def _decode_json(response: httpx.Response) -> dict[str, Any]:
    if response.status_code == 204 or not response.content:
        return {}
    data = response.json()
    return dict(data) if isinstance(data, Mapping) else {"data": data}


@dataclass(slots=True)
class TaskApiClient:
    """HTTP client for the task status and cancel endpoints."""

    base_url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    timeout_s: float | None = None
    client: httpx.AsyncClient | None = None

    @asynccontextmanager
    async def _client_context(self):
        if self.client is not None:
            yield self.client
            return
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            yield client

    def _base_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        headers.update(self.headers)
        return headers

    def status_url(self, task_id: str) -> str:
        return f"{_normalize_base_url(self.base_url)}/uploads/status/{task_id}"

    def cancel_url(self, task_id: str) -> str:
        return f"{_normalize_base_url(self.base_url)}/uploads/task/{task_id}"

    async def get_status(self, task_id: str, *, client_id: str | None = None) -> dict[str, Any]:
        params = {"client_id": client_id} if client_id else None
        async with self._client_context() as client:
            response = await client.get(self.status_url(task_id), params=params, headers=self._base_headers())
            raise_for_status(response, body=response.text)
            return _decode_json(response)

    async def cancel_task(self, task_id: str, *, client_id: str | None = None) -> dict[str, Any]:
        payload = {"client_id": client_id} if client_id else None
        headers = self._base_headers()
        headers["Content-Type"] = "application/json"
        async with self._client_context() as client:
            response = await client.request("DELETE", self.cancel_url(task_id), json=payload, headers=headers)
            raise_for_status(response, body=response.text)
            return _decode_json(response)


__all__ = ["TaskApiClient", "raise_for_status"]
