"""Ports (interfaces) for runner implementations.

The process session and the daemon depend on these contracts rather than on
concrete runner implementations.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncGenerator, Protocol, Sequence

from termbridge.models import ImageAttachment
from termbridge.runners.cancellation import CancelToken

# Kinds: session_id, text, tool, init, result, error.
RunnerEvent = tuple[str, object]


@dataclass(frozen=True)
class RunOptions:
    """Per-run settings snapshotted when a unit of work starts."""

    permission_mode: str = "bypassPermissions"
    model: str = "default"
    resume_token: str | None = None


class Runner(Protocol):
    """A streaming runner (engine adapter)."""

    def run(
        self,
        prompt: str,
        *,
        attachments: Sequence[ImageAttachment] = (),
        options: RunOptions | None = None,
        cancel: CancelToken | None = None,
    ) -> AsyncGenerator[RunnerEvent, None]:
        ...
