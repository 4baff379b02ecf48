"""Public package surface for taskwatch."""

from __future__ import annotations

from .api import TaskApiClient
from .channels import ChannelCallbacks, PersistentSocketChannel, ServerStreamChannel, TransportChannel
from .config import TaskwatchConfig
from .connection import ConnectionManager, ConnectionState, reconnect_delay
from .dispatcher import EventDispatcher
from .errors import (
    ChannelNotOpenError,
    ConnectionFailedError,
    MalformedFrameError,
    TaskNotFoundError,
    TaskRequestError,
    TaskwatchError,
)
from .identity import ClientIdentity
from .lifecycle import TaskLifecycleController
from .models import EventEnvelope, EventType, TaskPatch, TaskSource, TaskState, TaskStatus
from .polling import PollingFallback
from .storage import InMemoryStorage, SQLiteStorage, Storage
from .store import TaskStore
from .tracker import TaskTracker, TrackingStrategy

__all__ = [
    "__version__",
    "ChannelCallbacks",
    "ChannelNotOpenError",
    "ClientIdentity",
    "ConnectionFailedError",
    "ConnectionManager",
    "ConnectionState",
    "EventDispatcher",
    "EventEnvelope",
    "EventType",
    "InMemoryStorage",
    "MalformedFrameError",
    "PersistentSocketChannel",
    "PollingFallback",
    "SQLiteStorage",
    "ServerStreamChannel",
    "Storage",
    "TaskApiClient",
    "TaskLifecycleController",
    "TaskNotFoundError",
    "TaskPatch",
    "TaskRequestError",
    "TaskSource",
    "TaskState",
    "TaskStatus",
    "TaskStore",
    "TaskTracker",
    "TaskwatchConfig",
    "TaskwatchError",
    "TrackingStrategy",
    "TransportChannel",
    "reconnect_delay",
]

__version__ = "0.1.0"
