"""Type-keyed dispatch of inbound realtime messages."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Union

from termbridge.models import RealtimeMessage

log = logging.getLogger("realtime")

HandlerCallback = Callable[[RealtimeMessage], Union[None, Awaitable[None]]]


class MessageDispatcher:
    """Routes a message to the handlers registered for its `type`.

    Types with no handler are dropped without error so newer peers can add
    message types freely.
    """

    def __init__(self):
        self._handlers: dict[str, list[HandlerCallback]] = {}

    def register(self, msg_type: str, callback: HandlerCallback) -> None:
        self._handlers.setdefault(msg_type, []).append(callback)

    def remove(self, msg_type: str, callback: HandlerCallback) -> None:
        existing = self._handlers.get(msg_type)
        if existing and callback in existing:
            existing.remove(callback)

    def clear(self, msg_type: str | None = None) -> None:
        if msg_type:
            self._handlers.pop(msg_type, None)
        else:
            self._handlers.clear()

    def has_handlers(self, msg_type: str) -> bool:
        return bool(self._handlers.get(msg_type))

    async def dispatch(self, message: RealtimeMessage) -> bool:
        handlers = self._handlers.get(message.type)
        if not handlers:
            log.debug("No handler for %r; dropping", message.type)
            return False
        for handler in list(handlers):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Handler for %r failed", message.type)
        return True
