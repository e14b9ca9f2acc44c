"""Process session and command catalog."""

from termbridge.core.process_session import (
    BUSY_NOTICE,
    CANCELLED_NOTICE,
    ProcessSession,
    SessionError,
)

__all__ = ["BUSY_NOTICE", "CANCELLED_NOTICE", "ProcessSession", "SessionError"]
