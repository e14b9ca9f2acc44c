"""Session daemon.

Orchestrates one bridged session end to end:

    idle --start()--> running --stop()--> idle (terminal)

`start()` registers the machine, opens a session record, connects a realtime
client for it and wires the process session both ways. Any failing step
rolls back what was already done and propagates. `stop()` is idempotent.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from termbridge.channels.ports import ChannelAdapter
from termbridge.core.commands import model_display_name
from termbridge.core.process_session import ProcessSession, SessionError
from termbridge.daemon.notifications import build_payload, detect_triggers
from termbridge.errors import ChannelError, DaemonStateError, RegistrationError
from termbridge.models import (
    MACHINE_OFFLINE,
    MACHINE_ONLINE,
    MSG_CANCEL,
    MSG_COMMANDS_REQUEST,
    MSG_INPUT,
    MSG_MODE_CHANGE,
    MSG_MODEL_CHANGE,
    MSG_MODELS_REQUEST,
    PERMISSION_MODES,
    Machine,
    NotificationTrigger,
    RealtimeMessage,
    Session,
)
from termbridge.ports import NotificationDispatcherPort, RegistryPort
from termbridge.realtime.client import RealtimeClient
from termbridge.realtime.connection import CONNECTED, ConnectionConfig, MaxRetriesExceeded
from termbridge.utils import spawn_guarded

log = logging.getLogger("daemon")

IDLE = "idle"
RUNNING = "running"


def model_switched_notice(model: str) -> str:
    return f"\n[Model switched to {model_display_name(model)}]\n"


@dataclass(frozen=True)
class StartedEvent:
    machine: Machine
    session: Session


class Daemon:
    def __init__(
        self,
        *,
        registry: RegistryPort,
        adapter: ChannelAdapter,
        session: ProcessSession,
        owner_id: str,
        machine_id: str,
        machine_name: str | None = None,
        working_dir: str | None = None,
        connection_config: ConnectionConfig | None = None,
        outbox_limit: int = 100,
        notifier: NotificationDispatcherPort | None = None,
        local_sink: Callable[[str], None] | None = None,
        client_factory: Callable[[str], RealtimeClient] | None = None,
    ):
        self._registry = registry
        self._adapter = adapter
        self._session = session
        self.owner_id = owner_id
        self.machine_id = machine_id
        self.hostname = socket.gethostname()
        self.machine_name = machine_name or self.hostname
        self.working_dir = working_dir or session.working_dir
        self.connection_config = connection_config or ConnectionConfig()
        self._outbox_limit = outbox_limit
        self._notifier = notifier
        self._local_sink = local_sink
        self._client_factory = client_factory or self._default_client

        self.state = IDLE
        self._starting = False
        self._finished = False
        self.machine: Machine | None = None
        self.session: Session | None = None
        self.client: RealtimeClient | None = None

        self._commands_sent_on_input = False
        self._commands_sent_on_complete = False
        self._heartbeat_task: asyncio.Task | None = None
        self._notify_tasks: set[asyncio.Task] = set()

        self._started_listeners: list[Callable[[StartedEvent], None]] = []
        self._stopped_listeners: list[Callable[[], None]] = []
        self._error_listeners: list[Callable[[BaseException | SessionError], None]] = []
        self._notification_listeners: list[Callable[[NotificationTrigger], None]] = []
        self._link_exhausted_listeners: list[Callable[[MaxRetriesExceeded], None]] = []

        # Process session -> realtime client. Registered once; they no-op
        # while there is no client.
        session.on_output(self._on_output)
        session.on_error(self._on_session_error)
        session.on_complete(self._on_complete)
        session.on_session_token(self._on_session_token)
        session.on_commands_updated(self._on_commands_updated)
        session.on_permission_mode(self._on_permission_mode)
        session.on_model(self._on_model)

    @property
    def process_session(self) -> ProcessSession:
        return self._session

    @property
    def adapter(self) -> ChannelAdapter:
        return self._adapter

    def is_running(self) -> bool:
        return self.state == RUNNING

    # -------------------------------------------------------------------------
    # Listener registration
    # -------------------------------------------------------------------------

    def on_started(self, cb: Callable[[StartedEvent], None]) -> None:
        self._started_listeners.append(cb)

    def on_stopped(self, cb: Callable[[], None]) -> None:
        self._stopped_listeners.append(cb)

    def on_error(self, cb: Callable[[BaseException | SessionError], None]) -> None:
        self._error_listeners.append(cb)

    def on_notification(self, cb: Callable[[NotificationTrigger], None]) -> None:
        self._notification_listeners.append(cb)

    def on_link_exhausted(self, cb: Callable[[MaxRetriesExceeded], None]) -> None:
        """The realtime link gave up reconnecting. Only `reconnect()` resumes it."""
        self._link_exhausted_listeners.append(cb)

    def _notify(self, listeners: list, *args) -> None:
        for cb in list(listeners):
            try:
                cb(*args)
            except Exception:
                log.exception("Daemon listener failed")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _default_client(self, session_id: str) -> RealtimeClient:
        return RealtimeClient(
            self._adapter,
            session_id,
            config=self.connection_config,
            messages=self._registry,
            outbox_limit=self._outbox_limit,
        )

    async def start(self) -> StartedEvent:
        if self.state == RUNNING or self._starting:
            raise DaemonStateError("Daemon is already running")
        if self._finished:
            raise DaemonStateError("Daemon was stopped; create a new instance")

        self._starting = True
        try:
            # 1. machine record, online
            try:
                self.machine = await self._registry.upsert_machine(
                    Machine(
                        id=self.machine_id,
                        owner_id=self.owner_id,
                        name=self.machine_name,
                        hostname=self.hostname,
                        status=MACHINE_ONLINE,
                        created_at=datetime.now(timezone.utc).isoformat(),
                    )
                )
            except RegistrationError:
                raise
            except Exception as exc:
                raise RegistrationError(f"Failed to register machine: {exc}") from exc

            # 2. session record
            try:
                self.session = await self._registry.create_session(
                    self.machine.id, self.working_dir, self._session.model
                )
            except RegistrationError:
                raise
            except Exception as exc:
                raise RegistrationError(f"Failed to create session: {exc}") from exc
            log.info("Session %s on machine %s", self.session.id, self.machine.id)

            # 3-4. realtime client, inbound wiring
            self.client = self._client_factory(self.session.id)
            self._wire_inbound(self.client)
            self.client.connection.on_max_retries_exceeded(self._on_link_exhausted)

            # 5. connect
            state = await self.client.connect()
            if state != CONNECTED:
                raise ChannelError(f"realtime connection failed ({state})")

            # 6. initial state for the remote side
            await self.client.send_mode(self._session.permission_mode)
            await self._broadcast_commands()
            await self._broadcast_models()
            await self.client.send_model(self._session.model)
        except BaseException as exc:
            log.error("Daemon start failed: %s", exc)
            await self._rollback()
            raise
        finally:
            self._starting = False

        # 7. running
        self.state = RUNNING
        self._heartbeat_task = asyncio.create_task(self._machine_heartbeat())
        event = StartedEvent(machine=self.machine, session=self.session)
        self._notify(self._started_listeners, event)
        return event

    async def _rollback(self) -> None:
        client, self.client = self.client, None
        session, self.session = self.session, None
        machine, self.machine = self.machine, None
        if client is not None:
            try:
                await client.disconnect()
            except Exception:
                log.warning("Rollback: disconnect failed", exc_info=True)
        if session is not None:
            try:
                await self._registry.end_session(session.id)
            except Exception:
                log.warning("Rollback: end session failed", exc_info=True)
        if machine is not None:
            try:
                await self._registry.update_machine_status(machine.id, MACHINE_OFFLINE)
            except Exception:
                log.warning("Rollback: machine offline failed", exc_info=True)

    async def stop(self) -> None:
        if self.state != RUNNING:
            return
        self.state = IDLE
        self._finished = True
        log.info("Stopping daemon")

        heartbeat, self._heartbeat_task = self._heartbeat_task, None
        if heartbeat and not heartbeat.done():
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

        await self._session.close()

        if self.session is not None:
            try:
                await self._registry.end_session(self.session.id)
            except Exception as exc:
                log.warning("Failed to end session %s", self.session.id, exc_info=True)
                self._notify(self._error_listeners, exc)

        if self.machine is not None:
            try:
                await self._registry.update_machine_status(self.machine.id, MACHINE_OFFLINE)
            except Exception as exc:
                log.warning("Failed to mark machine %s offline", self.machine.id, exc_info=True)
                self._notify(self._error_listeners, exc)

        if self.client is not None:
            await self.client.disconnect()

        for task in list(self._notify_tasks):
            task.cancel()
        self._notify_tasks.clear()

        self._notify(self._stopped_listeners)

    async def reconnect(self) -> str:
        """Restart the realtime link after it gave up; returns the settled state."""
        if self.state != RUNNING or self.client is None:
            raise DaemonStateError("Daemon is not running")
        log.info("Reconnecting realtime link")
        return await self.client.connect()

    async def send_prompt(self, prompt: str, attachments=()) -> bool:
        """Local input path (stdin in hybrid mode)."""
        return await self._session.send(prompt, attachments)

    def _on_link_exhausted(self, event: MaxRetriesExceeded) -> None:
        if self.state != RUNNING:
            # start() reports this itself.
            return
        log.error("Realtime link gave up after %d attempts", event.attempts)
        self._notify(self._link_exhausted_listeners, event)

    async def _machine_heartbeat(self) -> None:
        interval = self.connection_config.heartbeat_interval_s
        while self.state == RUNNING and self.machine is not None:
            await asyncio.sleep(interval)
            try:
                await self._registry.touch_machine(self.machine.id)
            except Exception:
                log.warning("Machine heartbeat failed", exc_info=True)

    # -------------------------------------------------------------------------
    # Outbound: process session -> remote
    # -------------------------------------------------------------------------

    async def _on_output(self, text: str) -> None:
        if self._local_sink is not None:
            try:
                self._local_sink(text)
            except Exception:
                log.warning("Local sink failed", exc_info=True)

        if self.client is not None:
            try:
                await self.client.send_output(text)
            except Exception:
                log.warning("Output broadcast failed", exc_info=True)

        self._check_notification_triggers(text)

    def _check_notification_triggers(self, text: str) -> None:
        for trigger in detect_triggers(text):
            log.debug("Notification: %s - %s", trigger.kind, trigger.message)
            self._notify(self._notification_listeners, trigger)
            if self._notifier is None or self.session is None:
                continue
            payload = build_payload(
                trigger, owner_id=self.owner_id, session_id=self.session.id, chunk=text
            )
            task = spawn_guarded(
                self._notifier.dispatch(payload), context="notification", log=log
            )
            self._notify_tasks.add(task)
            task.add_done_callback(self._notify_tasks.discard)

    def _on_session_error(self, err: SessionError) -> None:
        if err.cancelled:
            log.info("Request cancelled")
            return
        self._notify(self._error_listeners, err)

    async def _on_complete(self) -> None:
        if self._commands_sent_on_complete or self.client is None:
            return
        self._commands_sent_on_complete = True
        await self._broadcast_commands()

    async def _on_session_token(self, token: str) -> None:
        if self.session is None:
            return
        try:
            await self._registry.update_session_resume_token(self.session.id, token)
        except Exception:
            log.warning("Failed to persist resume token", exc_info=True)

    async def _on_commands_updated(self, _commands) -> None:
        await self._broadcast_commands()

    async def _on_permission_mode(self, mode: str) -> None:
        if self.client is not None:
            await self.client.send_mode(mode)

    async def _on_model(self, model: str) -> None:
        if self.client is not None:
            await self.client.send_model(model)
        if self.session is not None:
            try:
                await self._registry.update_session_model(self.session.id, model)
            except Exception:
                log.warning("Failed to persist model", exc_info=True)

    async def _broadcast_commands(self) -> None:
        if self.client is None:
            return
        try:
            await self.client.send_commands(self._session.get_commands())
        except Exception:
            log.warning("Commands broadcast failed", exc_info=True)

    async def _broadcast_models(self) -> None:
        if self.client is None:
            return
        try:
            await self.client.send_models(self._session.get_models())
        except Exception:
            log.warning("Models broadcast failed", exc_info=True)

    # -------------------------------------------------------------------------
    # Inbound: remote -> process session
    # -------------------------------------------------------------------------

    def _wire_inbound(self, client: RealtimeClient) -> None:
        handlers = {
            MSG_INPUT: self._handle_input,
            MSG_MODE_CHANGE: self._handle_mode_change,
            MSG_MODEL_CHANGE: self._handle_model_change,
            MSG_COMMANDS_REQUEST: self._handle_commands_request,
            MSG_MODELS_REQUEST: self._handle_models_request,
            MSG_CANCEL: self._handle_cancel,
        }
        for msg_type, handler in handlers.items():
            client.on(msg_type, self._first_inbound(handler))

    def _first_inbound(self, handler):
        async def wrapped(message: RealtimeMessage) -> None:
            if not self._commands_sent_on_input:
                self._commands_sent_on_input = True
                await self._broadcast_commands()
            await handler(message)

        return wrapped

    async def _handle_input(self, message: RealtimeMessage) -> None:
        prompt = (message.content or "").rstrip("\r\n")
        attachments = message.attachments or ()
        if prompt.strip() or attachments:
            await self._session.send(prompt, attachments)

    async def _handle_mode_change(self, message: RealtimeMessage) -> None:
        mode = message.permission_mode
        if mode not in PERMISSION_MODES:
            log.warning("Ignoring mode-change to unknown mode %r", mode)
            return
        await self._session.set_permission_mode(mode)

    async def _handle_model_change(self, message: RealtimeMessage) -> None:
        if not message.model:
            return
        if not await self._session.set_model(message.model):
            return
        notice = model_switched_notice(message.model)
        if self._local_sink is not None:
            self._local_sink(notice)
        if self.client is not None:
            await self.client.send_system(notice)

    async def _handle_commands_request(self, message: RealtimeMessage) -> None:
        await self._broadcast_commands()

    async def _handle_models_request(self, message: RealtimeMessage) -> None:
        await self._broadcast_models()

    async def _handle_cancel(self, message: RealtimeMessage) -> None:
        self._session.cancel()
