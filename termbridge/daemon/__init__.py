"""Session daemon and push-notification triggers."""

from termbridge.daemon.daemon import Daemon, StartedEvent, model_switched_notice
from termbridge.daemon.notifications import (
    HttpNotificationDispatcher,
    build_payload,
    detect_triggers,
)

__all__ = [
    "Daemon",
    "HttpNotificationDispatcher",
    "StartedEvent",
    "build_payload",
    "detect_triggers",
    "model_switched_notice",
]
