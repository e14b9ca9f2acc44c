"""In-process pub/sub hub.

Used by `--loopback` runs and by tests. One hub stands in for the hosted
service; every adapter attached to it is one client.
"""

from __future__ import annotations

import itertools
import json
import logging
from collections import deque
from typing import Any, Callable

from termbridge.channels.ports import BroadcastAck, ChannelHandle, PayloadCallback
from termbridge.errors import ChannelError

log = logging.getLogger("channels")


class MemoryHub:
    """Fan-out of payloads to all subscribers of a channel name."""

    def __init__(self, *, history_limit: int = 1000):
        self._subs: dict[str, dict[int, tuple["MemoryChannelAdapter", PayloadCallback]]] = {}
        self._tokens = itertools.count(1)
        # Most recent payloads, newest last. history_limit=0 keeps none.
        self.published: deque[tuple[str, dict[str, Any]]] = deque(maxlen=history_limit)

    def attach(self) -> "MemoryChannelAdapter":
        return MemoryChannelAdapter(self)

    def _add(self, channel: str, owner: "MemoryChannelAdapter", cb: PayloadCallback) -> int:
        token = next(self._tokens)
        self._subs.setdefault(channel, {})[token] = (owner, cb)
        return token

    def _remove(self, channel: str, token: int) -> None:
        subs = self._subs.get(channel)
        if not subs:
            return
        subs.pop(token, None)
        if not subs:
            self._subs.pop(channel, None)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subs.get(channel, {}))

    def publish(self, channel: str, payload: dict[str, Any], *, sender: object = None) -> None:
        # JSON copy: receivers never share the sender's object.
        raw = json.dumps(payload)
        if self.published.maxlen:
            self.published.append((channel, json.loads(raw)))
        for owner, cb in list(self._subs.get(channel, {}).values()):
            if owner is sender:
                continue
            try:
                cb(json.loads(raw))
            except Exception:
                log.exception("Subscriber callback failed on %s", channel)


class MemoryChannelAdapter:
    """ChannelAdapter backed by a MemoryHub."""

    def __init__(self, hub: MemoryHub):
        self.hub = hub
        self.online = True
        self._handles: set[ChannelHandle] = set()
        self._on_transport_lost: Callable[[], None] | None = None

    def set_transport_lost_callback(self, callback: Callable[[], None] | None) -> None:
        self._on_transport_lost = callback

    def drop_link(self) -> None:
        """Simulate the network going away under us."""
        self.online = False
        if self._on_transport_lost:
            self._on_transport_lost()

    def restore_link(self) -> None:
        self.online = True

    async def subscribe(self, channel: str, on_payload: PayloadCallback) -> ChannelHandle:
        if not self.online:
            raise ChannelError("hub unreachable", channel=channel)
        token = self.hub._add(channel, self, on_payload)
        handle = ChannelHandle(channel=channel, token=token)
        self._handles.add(handle)
        return handle

    async def broadcast(self, channel: str, payload: dict[str, Any]) -> BroadcastAck:
        if not self.online:
            raise ChannelError("hub unreachable", channel=channel)
        self.hub.publish(channel, payload, sender=self)
        return BroadcastAck(channel=channel)

    async def ping(self) -> None:
        if not self.online:
            raise ChannelError("hub unreachable")

    async def unsubscribe(self, handle: ChannelHandle) -> None:
        self._handles.discard(handle)
        self.hub._remove(handle.channel, handle.token)
