"""Server-side stream relay for taskwatch clients."""

from .app import create_relay_app
from .config import RelayConfig
from .sse import format_sse

__all__ = ["RelayConfig", "create_relay_app", "format_sse"]
