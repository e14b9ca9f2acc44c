"""Cooperative cancellation for one unit of work."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

log = logging.getLogger(__name__)


@dataclass
class CancelToken:
    """Cancellation token shared between the session and a running runner."""

    reason: str | None = None
    cancelled_at: datetime | None = None
    _cancelled: bool = False
    _callbacks: list[Callable[[], None]] = field(default_factory=list, repr=False)

    def cancel(self, reason: str = "requested") -> None:
        """Mark token as cancelled (idempotent) and fire callbacks once."""
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        self.cancelled_at = datetime.now(timezone.utc)
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                log.exception("Cancel callback failed")

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register `callback`; runs immediately if already cancelled.

        Returns a function that unregisters it.
        """
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _remove
