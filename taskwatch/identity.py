from __future__ import annotations

import uuid
from dataclasses import dataclass

CLIENT_ID_PREFIX = "client_"


def normalize_client_id(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("client id must be non-empty")
    if not value.startswith(CLIENT_ID_PREFIX):
        value = f"{CLIENT_ID_PREFIX}{value}"
    return value


@dataclass(frozen=True, slots=True)
class ClientIdentity:
    """Stable opaque id correlating push events with this client session."""

    client_id: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "client_id", normalize_client_id(self.client_id))

    @classmethod
    def generate(cls) -> ClientIdentity:
        return cls(f"{CLIENT_ID_PREFIX}{uuid.uuid4().hex}")

    def __str__(self) -> str:
        return self.client_id


__all__ = ["CLIENT_ID_PREFIX", "ClientIdentity", "normalize_client_id"]
