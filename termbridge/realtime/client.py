"""Per-session typed messaging over two channels.

`session:<id>:output` carries data toward the mobile side and
`session:<id>:input` carries data toward the local side. A client in the
"local" role broadcasts on output and listens on input; the "remote" role is
the mirror image (used by loopback peers and tests).

Every outbound message on a client shares one `seq` counter. The counter only
advances when the adapter accepted the broadcast, so successfully sent
messages carry gap-free, strictly increasing values. Messages produced while
the connection is down wait in a bounded outbox and are flushed in order once
the connection manager reports `connected` again.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Sequence

from termbridge.channels.ports import ChannelAdapter, ChannelHandle
from termbridge.errors import MessageDecodeError
from termbridge.models import (
    MSG_COMMANDS,
    MSG_ERROR,
    MSG_MODE,
    MSG_MODEL,
    MSG_MODELS,
    MSG_OUTPUT,
    MSG_PING,
    MSG_PONG,
    MSG_SYSTEM,
    ImageAttachment,
    ModelInfo,
    RealtimeMessage,
    SlashCommand,
    now_ms,
    session_input_channel,
    session_output_channel,
)
from termbridge.ports import MessageStorePort
from termbridge.realtime.connection import (
    CONNECTED,
    ConnectionConfig,
    ConnectionManager,
    StateChange,
)
from termbridge.realtime.handlers import HandlerCallback, MessageDispatcher
from termbridge.utils import spawn_guarded

log = logging.getLogger("realtime")

ROLE_LOCAL = "local"
ROLE_REMOTE = "remote"

PERSISTED_TYPES = frozenset({MSG_OUTPUT, MSG_SYSTEM})
UNQUEUED_TYPES = frozenset({MSG_PING, MSG_PONG})


@dataclass(frozen=True)
class _Draft:
    """A message waiting for its sequence number."""

    type: str
    fields: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)

    def build(self, seq: int) -> RealtimeMessage:
        return RealtimeMessage(type=self.type, seq=seq, timestamp=self.timestamp, **self.fields)


class _ChannelLink:
    """ConnectionLink over the client's two channel subscriptions."""

    def __init__(self, client: "RealtimeClient"):
        self._client = client

    async def open(self) -> None:
        await self._client._subscribe()

    async def close(self) -> None:
        await self._client._unsubscribe()

    async def ping(self) -> None:
        await self._client._heartbeat_ping()


class RealtimeClient:
    def __init__(
        self,
        adapter: ChannelAdapter,
        session_id: str,
        *,
        config: ConnectionConfig | None = None,
        messages: MessageStorePort | None = None,
        outbox_limit: int = 100,
        role: str = ROLE_LOCAL,
        connection: ConnectionManager | None = None,
    ):
        if role not in (ROLE_LOCAL, ROLE_REMOTE):
            raise ValueError(f"Unknown role: {role}")
        self.session_id = session_id
        self.role = role
        self.output_channel = session_output_channel(session_id)
        self.input_channel = session_input_channel(session_id)
        if role == ROLE_LOCAL:
            self.send_channel, self.receive_channel = self.output_channel, self.input_channel
        else:
            self.send_channel, self.receive_channel = self.input_channel, self.output_channel

        self._adapter = adapter
        self._messages = messages
        self.outbox_limit = outbox_limit

        self.connection = connection or ConnectionManager(_ChannelLink(self), config)
        self.connection.on_state_change(self._on_state_change)
        adapter.set_transport_lost_callback(self.connection.notify_transport_lost)

        self.dispatcher = MessageDispatcher()
        self._handles: list[ChannelHandle] = []
        self._seq = 0
        self._send_lock = asyncio.Lock()
        self._outbox: deque[_Draft] = deque()
        self.dropped_count = 0

        self.last_inbound_seq: int | None = None
        self.inbound_gaps = 0
        self._gap_listeners: list[Callable[[int, int], None]] = []

        self._inbound: asyncio.Queue[RealtimeMessage] = asyncio.Queue()
        self._dispatch_task: asyncio.Task | None = None
        self._flush_task: asyncio.Task | None = None
        self._closed = False

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    @property
    def seq(self) -> int:
        """Sequence number of the last successfully sent message."""
        return self._seq

    @property
    def state(self) -> str:
        return self.connection.state

    @property
    def pending(self) -> int:
        return len(self._outbox)

    def is_connected(self) -> bool:
        return self.connection.state == CONNECTED

    def on(self, msg_type: str, callback: HandlerCallback) -> None:
        """Register a handler for inbound messages of `msg_type`."""
        self.dispatcher.register(msg_type, callback)

    def on_gap(self, callback: Callable[[int, int], None]) -> None:
        """`callback(expected, received)` for every inbound sequence gap."""
        self._gap_listeners.append(callback)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> str:
        """Subscribe both channels; returns once connected or definitively failed."""
        if self._closed:
            return self.connection.state
        if self._dispatch_task is None or self._dispatch_task.done():
            self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        await self.connection.start()
        state = await self.connection.wait_settled()
        if state != CONNECTED:
            log.warning("Realtime connect settled in %s", state)
        return state

    async def disconnect(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.connection.stop()
        current = asyncio.current_task()
        for task in (self._flush_task, self._dispatch_task):
            if task and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._flush_task = None
        self._dispatch_task = None
        self._adapter.set_transport_lost_callback(None)
        if self._outbox:
            log.warning("Discarding %d unsent message(s) on disconnect", len(self._outbox))
            self._outbox.clear()

    async def _subscribe(self) -> None:
        await self._unsubscribe()
        handles = []
        try:
            handles.append(await self._adapter.subscribe(self.send_channel, self._ignore_own_direction))
            handles.append(await self._adapter.subscribe(self.receive_channel, self._on_payload))
        except Exception:
            for handle in handles:
                await self._safe_unsubscribe(handle)
            raise
        self._handles = handles

    async def _unsubscribe(self) -> None:
        handles, self._handles = self._handles, []
        for handle in handles:
            await self._safe_unsubscribe(handle)

    async def _safe_unsubscribe(self, handle: ChannelHandle) -> None:
        try:
            await self._adapter.unsubscribe(handle)
        except Exception:
            log.warning("Unsubscribe from %s failed", handle.channel, exc_info=True)

    async def _heartbeat_ping(self) -> None:
        await self._adapter.ping()
        self.connection.on_pong()

    def _on_state_change(self, change: StateChange) -> None:
        if change.current != CONNECTED or not self._outbox or self._closed:
            return
        if self._flush_task and not self._flush_task.done():
            return
        self._flush_task = asyncio.create_task(self._flush())

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    def _enqueue(self, draft: _Draft, *, front: bool = False) -> None:
        if draft.type in UNQUEUED_TYPES:
            return
        if front:
            self._outbox.appendleft(draft)
        else:
            self._outbox.append(draft)
        while len(self._outbox) > self.outbox_limit:
            dropped = self._outbox.popleft()
            self.dropped_count += 1
            log.warning("Outbox full; dropped oldest %s message", dropped.type)

    async def _transmit(self, draft: _Draft) -> RealtimeMessage | None:
        seq = self._seq + 1
        message = draft.build(seq)
        try:
            await self._adapter.broadcast(self.send_channel, message.to_payload())
        except Exception as exc:
            log.warning("Broadcast of %s failed: %s", draft.type, exc)
            return None
        self._seq = seq
        return message

    async def _after_send(self, message: RealtimeMessage) -> None:
        if self._messages is None or message.type not in PERSISTED_TYPES:
            return
        try:
            await self._messages.append_message(
                self.session_id, message.type, message.content, message.seq
            )
        except Exception:
            log.warning("Failed to persist %s message %d", message.type, message.seq, exc_info=True)

    async def send(self, msg_type: str, **fields: Any) -> RealtimeMessage | None:
        """Broadcast one message; returns it if sent now, None if held or dropped.

        Transport failures never propagate to the caller.
        """
        if self._closed:
            log.debug("Dropping %s; client closed", msg_type)
            return None
        draft = _Draft(type=msg_type, fields=fields)
        async with self._send_lock:
            if not self.is_connected() or self._outbox:
                self._enqueue(draft)
                return None
            message = await self._transmit(draft)
            if message is None:
                self._enqueue(draft, front=True)
                self.connection.notify_transport_lost()
                return None
            await self._after_send(message)
            return message

    async def _flush(self) -> None:
        async with self._send_lock:
            sent = 0
            while self._outbox and self.is_connected():
                message = await self._transmit(self._outbox[0])
                if message is None:
                    self.connection.notify_transport_lost()
                    break
                self._outbox.popleft()
                sent += 1
                await self._after_send(message)
            if sent:
                log.info("Flushed %d queued message(s)", sent)

    async def send_output(self, content: str) -> RealtimeMessage | None:
        return await self.send(MSG_OUTPUT, content=content)

    async def send_system(self, content: str) -> RealtimeMessage | None:
        return await self.send(MSG_SYSTEM, content=content)

    async def send_error(self, content: str) -> RealtimeMessage | None:
        return await self.send(MSG_ERROR, content=content)

    async def send_mode(self, mode: str) -> RealtimeMessage | None:
        return await self.send(MSG_MODE, permission_mode=mode)

    async def send_model(self, model: str) -> RealtimeMessage | None:
        return await self.send(MSG_MODEL, model=model)

    async def send_models(self, models: Iterable[ModelInfo]) -> RealtimeMessage | None:
        return await self.send(MSG_MODELS, available_models=tuple(models))

    async def send_commands(self, commands: Iterable[SlashCommand]) -> RealtimeMessage | None:
        return await self.send(MSG_COMMANDS, commands=tuple(commands))

    async def send_input(
        self, content: str, attachments: Sequence[ImageAttachment] = ()
    ) -> RealtimeMessage | None:
        fields: dict[str, Any] = {"content": content}
        if attachments:
            fields["attachments"] = tuple(attachments)
        return await self.send("input", **fields)

    async def send_ping(self) -> RealtimeMessage | None:
        return await self.send(MSG_PING)

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    def _ignore_own_direction(self, payload: dict[str, Any]) -> None:
        return None

    def _on_payload(self, payload: dict[str, Any]) -> None:
        try:
            message = RealtimeMessage.from_payload(payload)
        except MessageDecodeError as exc:
            log.warning("Dropping malformed message: %s (%s)", exc, exc.payload_preview)
            return

        self._track_seq(message.seq)

        if message.type == MSG_PONG:
            self.connection.on_pong()
            return
        if message.type == MSG_PING:
            self.connection.on_pong()
            spawn_guarded(self.send(MSG_PONG), context="pong", log=log)
            return
        self._inbound.put_nowait(message)

    def _track_seq(self, seq: int) -> None:
        previous = self.last_inbound_seq
        self.last_inbound_seq = seq
        if previous is None or seq == previous + 1:
            return
        expected = previous + 1
        self.inbound_gaps += 1
        log.warning(
            "Inbound seq gap on %s: expected %d, got %d", self.receive_channel, expected, seq
        )
        for cb in list(self._gap_listeners):
            try:
                cb(expected, seq)
            except Exception:
                log.exception("Gap listener failed")

    async def _dispatch_loop(self) -> None:
        while True:
            message = await self._inbound.get()
            try:
                await self.dispatcher.dispatch(message)
            finally:
                self._inbound.task_done()

    async def drain(self) -> None:
        """Wait until every inbound message received so far has been handled."""
        await self._inbound.join()
