"""Connection health for one logical realtime link.

The manager knows nothing about message content. It drives a `ConnectionLink`
(open/close/ping) through the states

    disconnected -> connecting -> connected -> reconnecting -> connected

and converts every transport failure into a state transition. The heartbeat
task and the retry task are the only background timers; `stop()` cancels
both and waits for them.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Protocol

log = logging.getLogger("connection")

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"
RECONNECTING = "reconnecting"

JITTER_RATIO = 0.2


@dataclass(frozen=True)
class ConnectionConfig:
    heartbeat_interval_s: float = 15.0
    heartbeat_timeout_s: float = 30.0
    max_retries: int = 10
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0


@dataclass(frozen=True)
class StateChange:
    previous: str
    current: str
    attempt: int | None = None  # set when current == reconnecting


@dataclass(frozen=True)
class ReconnectAttempt:
    attempt: int
    delay_s: float


@dataclass(frozen=True)
class MaxRetriesExceeded:
    attempts: int


class ConnectionLink(Protocol):
    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> None: ...


def compute_backoff(
    attempt: int,
    *,
    base_s: float,
    max_s: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff with +/-20% multiplicative jitter applied after the cap."""
    exponential = min(base_s * (2**attempt), max_s)
    jitter = exponential * JITTER_RATIO * (rand() * 2 - 1)
    return exponential + jitter


class ConnectionManager:
    def __init__(
        self,
        link: ConnectionLink,
        config: ConnectionConfig | None = None,
        *,
        rand: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._link = link
        self.config = config or ConnectionConfig()
        self._rand = rand
        self._clock = clock

        self._state = DISCONNECTED
        self._attempt = 0
        self._stopped = False
        self._exhausted = False
        self._last_pong_at = 0.0
        self._settled = asyncio.Event()

        self._heartbeat_task: asyncio.Task | None = None
        self._retry_task: asyncio.Task | None = None

        self._state_listeners: list[Callable[[StateChange], None]] = []
        self._attempt_listeners: list[Callable[[ReconnectAttempt], None]] = []
        self._exhausted_listeners: list[Callable[[MaxRetriesExceeded], None]] = []

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    @property
    def state(self) -> str:
        return self._state

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def exhausted(self) -> bool:
        """True once retries gave up; only an explicit start() resumes."""
        return self._exhausted

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def last_pong_at(self) -> float:
        return self._last_pong_at

    def on_state_change(self, callback: Callable[[StateChange], None]) -> None:
        self._state_listeners.append(callback)

    def on_reconnect_attempt(self, callback: Callable[[ReconnectAttempt], None]) -> None:
        self._attempt_listeners.append(callback)

    def on_max_retries_exceeded(self, callback: Callable[[MaxRetriesExceeded], None]) -> None:
        self._exhausted_listeners.append(callback)

    def _notify(self, listeners: list, event: object) -> None:
        for cb in list(listeners):
            try:
                cb(event)
            except Exception:
                log.exception("Connection listener failed")

    def _set_state(self, new_state: str, *, attempt: int | None = None) -> None:
        previous = self._state
        if previous == new_state:
            return
        self._state = new_state
        if new_state in (CONNECTED, DISCONNECTED):
            self._settled.set()
        else:
            self._settled.clear()
        log.info("Connection %s -> %s", previous, new_state)
        self._notify(self._state_listeners, StateChange(previous, new_state, attempt))

    async def wait_settled(self) -> str:
        """Wait until connected, or until the manager definitively failed/stopped."""
        await self._settled.wait()
        return self._state

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._stopped:
            log.debug("start() after stop(); manager is terminal")
            return
        if self._state != DISCONNECTED:
            return

        self._exhausted = False
        self._attempt = 0
        self._set_state(CONNECTING)
        try:
            await self._link.open()
        except Exception as exc:
            if self._stopped:
                return
            log.warning("Connection open failed: %s", exc)
            self._begin_reconnect()
            return

        if self._stopped:
            await self._close_link()
            return
        self._on_opened()

    async def stop(self) -> None:
        self._stopped = True
        current = asyncio.current_task()
        tasks = [t for t in (self._heartbeat_task, self._retry_task) if t]
        self._heartbeat_task = None
        self._retry_task = None
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                log.exception("Connection timer ended with error")

        self._set_state(DISCONNECTED)
        self._settled.set()
        await self._close_link()

    def on_pong(self) -> None:
        self._last_pong_at = self._clock()

    def notify_transport_lost(self) -> None:
        """The transport reported a dropped link; treat as a heartbeat timeout."""
        if self._state == CONNECTED and not self._stopped:
            self._begin_reconnect()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _on_opened(self) -> None:
        self._attempt = 0
        self._last_pong_at = self._clock()
        self._set_state(CONNECTED)
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def _cancel_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _begin_reconnect(self) -> None:
        if self._stopped:
            return
        if self._retry_task and not self._retry_task.done():
            return
        self._cancel_heartbeat()
        self._set_state(RECONNECTING, attempt=self._attempt)
        self._retry_task = asyncio.create_task(self._retry_loop())

    async def _close_link(self) -> None:
        try:
            await self._link.close()
        except Exception:
            log.warning("Connection close failed", exc_info=True)

    async def _heartbeat_loop(self) -> None:
        cfg = self.config
        try:
            while self._state == CONNECTED and not self._stopped:
                await asyncio.sleep(cfg.heartbeat_interval_s)
                if self._state != CONNECTED or self._stopped:
                    return
                try:
                    await self._link.ping()
                except Exception:
                    log.warning("Heartbeat ping failed", exc_info=True)
                silent_for = self._clock() - self._last_pong_at
                if silent_for > cfg.heartbeat_timeout_s:
                    log.warning("No pong for %.1fs; connection presumed dead", silent_for)
                    self._heartbeat_task = None
                    self._begin_reconnect()
                    return
        except asyncio.CancelledError:
            return

    async def _retry_loop(self) -> None:
        cfg = self.config
        try:
            while self._attempt < cfg.max_retries:
                delay = compute_backoff(
                    self._attempt,
                    base_s=cfg.base_delay_s,
                    max_s=cfg.max_delay_s,
                    rand=self._rand,
                )
                self._attempt += 1
                log.warning(
                    "Reconnecting (attempt %d/%d) in %.2fs...",
                    self._attempt,
                    cfg.max_retries,
                    delay,
                )
                self._notify(self._attempt_listeners, ReconnectAttempt(self._attempt, delay))
                await asyncio.sleep(delay)
                if self._stopped:
                    return

                await self._close_link()
                try:
                    await self._link.open()
                except Exception as exc:
                    log.warning("Reconnect attempt %d failed: %s", self._attempt, exc)
                    continue

                if self._stopped:
                    await self._close_link()
                    return
                self._retry_task = None
                self._on_opened()
                log.info("Reconnected")
                return

            attempts = self._attempt
            self._retry_task = None
            self._exhausted = True
            self._set_state(DISCONNECTED)
            log.error("Giving up reconnect after %d attempts", attempts)
            self._notify(self._exhausted_listeners, MaxRetriesExceeded(attempts))
        except asyncio.CancelledError:
            return
