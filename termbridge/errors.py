"""TermBridge exceptions.

These exception types let the daemon and its callers tell transport
failures, registration failures and malformed payloads apart without
scraping strings.
"""

from __future__ import annotations


class TermBridgeError(RuntimeError):
    """Base class for TermBridge errors."""


class ChannelError(TermBridgeError):
    """A pub/sub channel could not be opened, subscribed or written to."""

    def __init__(self, message: str, *, channel: str | None = None):
        self.message = message
        self.channel = channel
        super().__init__(self.__str__())

    def __str__(self) -> str:
        if self.channel:
            return f"Channel {self.channel}: {self.message}"
        return self.message


class MessageDecodeError(TermBridgeError):
    """Malformed/invalid realtime message payload."""

    def __init__(self, message: str, *, payload_preview: str | None = None):
        self.message = message
        self.payload_preview = payload_preview
        super().__init__(self.__str__())

    def __str__(self) -> str:
        if self.payload_preview:
            return f"Invalid realtime message: {self.message} (payload={self.payload_preview!r})"
        return f"Invalid realtime message: {self.message}"


class RegistrationError(TermBridgeError):
    """Machine or session record could not be created."""


class DaemonStateError(TermBridgeError):
    """Daemon lifecycle method called in the wrong state."""


class RegistryHTTPError(TermBridgeError):
    """HTTP error from the hosted registry API."""

    def __init__(
        self,
        status: int,
        *,
        method: str,
        url: str,
        detail: str | None = None,
    ):
        self.status = int(status)
        self.method = method
        self.url = url
        self.detail = detail
        super().__init__(self.__str__())

    def __str__(self) -> str:
        detail = (self.detail or "").strip()
        if detail:
            return f"Registry HTTP {self.status} {self.method} {self.url}: {detail}"
        return f"Registry HTTP {self.status} {self.method} {self.url}"
