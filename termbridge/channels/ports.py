"""Ports for pub/sub channel adapters.

The realtime client and connection manager depend on these contracts, not on
a concrete transport. Adapters know nothing about message types: payloads
are opaque JSON objects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from termbridge.models import now_ms

PayloadCallback = Callable[[dict[str, Any]], None]


@dataclass(frozen=True)
class ChannelHandle:
    channel: str
    token: int


@dataclass(frozen=True)
class BroadcastAck:
    channel: str
    at_ms: int = field(default_factory=now_ms)


class ChannelAdapter(Protocol):
    async def subscribe(self, channel: str, on_payload: PayloadCallback) -> ChannelHandle:
        """Join `channel`; raises ChannelError if the transport refuses."""
        ...

    async def broadcast(self, channel: str, payload: dict[str, Any]) -> BroadcastAck:
        """Publish once. Errors are raised as ChannelError, never retried here."""
        ...

    async def unsubscribe(self, handle: ChannelHandle) -> None: ...

    async def ping(self) -> None:
        """Transport-level liveness probe; raises ChannelError when the link is dead."""
        ...

    def set_transport_lost_callback(self, callback: Callable[[], None] | None) -> None: ...
