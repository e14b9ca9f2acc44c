"""Realtime session messaging: connection health, sequencing, dispatch."""

from termbridge.realtime.client import ROLE_LOCAL, ROLE_REMOTE, RealtimeClient
from termbridge.realtime.connection import (
    CONNECTED,
    CONNECTING,
    DISCONNECTED,
    RECONNECTING,
    ConnectionConfig,
    ConnectionManager,
    MaxRetriesExceeded,
    ReconnectAttempt,
    StateChange,
    compute_backoff,
)
from termbridge.realtime.handlers import MessageDispatcher

__all__ = [
    "CONNECTED",
    "CONNECTING",
    "DISCONNECTED",
    "RECONNECTING",
    "ROLE_LOCAL",
    "ROLE_REMOTE",
    "ConnectionConfig",
    "ConnectionManager",
    "MaxRetriesExceeded",
    "MessageDispatcher",
    "RealtimeClient",
    "ReconnectAttempt",
    "StateChange",
    "compute_backoff",
]
