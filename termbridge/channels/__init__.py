"""Pub/sub channel adapters."""

from termbridge.channels.memory import MemoryChannelAdapter, MemoryHub
from termbridge.channels.ports import (
    BroadcastAck,
    ChannelAdapter,
    ChannelHandle,
    PayloadCallback,
)

__all__ = [
    "BroadcastAck",
    "ChannelAdapter",
    "ChannelHandle",
    "MemoryChannelAdapter",
    "MemoryHub",
    "PayloadCallback",
]
