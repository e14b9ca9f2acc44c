"""Ports for the external collaborators the daemon talks to.

The daemon and realtime client depend on these contracts rather than on the
SQLite or REST implementations.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from termbridge.models import Machine, Session


class MessageStorePort(Protocol):
    async def append_message(
        self, session_id: str, msg_type: str, content: str | None, seq: int
    ) -> None: ...


class RegistryPort(MessageStorePort, Protocol):
    async def upsert_machine(self, machine: Machine) -> Machine: ...

    async def get_machine(self, machine_id: str) -> Machine | None: ...

    async def update_machine_status(self, machine_id: str, status: str) -> None: ...

    async def touch_machine(self, machine_id: str) -> None: ...

    async def create_session(
        self, machine_id: str, working_directory: str | None, model: str | None = None
    ) -> Session: ...

    async def get_session(self, session_id: str) -> Session | None: ...

    async def end_session(self, session_id: str) -> bool: ...

    async def update_session_status(self, session_id: str, status: str) -> None: ...

    async def update_session_model(self, session_id: str, model: str) -> None: ...

    async def update_session_resume_token(self, session_id: str, token: str) -> None: ...


@dataclass(frozen=True)
class NotificationPayload:
    owner_id: str
    kind: str
    title: str
    body: str
    session_id: str


class NotificationDispatcherPort(Protocol):
    async def dispatch(self, payload: NotificationPayload) -> None: ...
