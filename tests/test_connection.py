"""Tests for connection health, backoff and reconnect policy."""

from __future__ import annotations

import asyncio

import pytest

from fakes import FakeClock, wait_until
from termbridge.realtime.connection import (
    CONNECTED,
    CONNECTING,
    DISCONNECTED,
    RECONNECTING,
    ConnectionConfig,
    ConnectionManager,
    compute_backoff,
)


class FakeLink:
    def __init__(self, *, fail_opens: int = 0, always_fail: bool = False):
        self.fail_opens = fail_opens
        self.always_fail = always_fail
        self.opens = 0
        self.closes = 0
        self.pings = 0

    async def open(self) -> None:
        self.opens += 1
        if self.always_fail or self.opens <= self.fail_opens:
            raise ConnectionError("refused")

    async def close(self) -> None:
        self.closes += 1

    async def ping(self) -> None:
        self.pings += 1


FAST = ConnectionConfig(
    heartbeat_interval_s=0.01,
    heartbeat_timeout_s=30.0,
    max_retries=10,
    base_delay_s=0.001,
    max_delay_s=0.004,
)


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


def test_backoff_without_jitter_doubles_until_cap():
    delays = [compute_backoff(n, base_s=1.0, max_s=30.0, rand=lambda: 0.5) for n in range(8)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]


@pytest.mark.parametrize("attempt", [0, 3, 6, 9])
def test_backoff_stays_within_jitter_band(attempt):
    nominal = min(1.0 * 2**attempt, 30.0)
    low = compute_backoff(attempt, base_s=1.0, max_s=30.0, rand=lambda: 0.0)
    high = compute_backoff(attempt, base_s=1.0, max_s=30.0, rand=lambda: 1.0)
    assert low == pytest.approx(nominal * 0.8)
    assert high == pytest.approx(nominal * 1.2)


def test_backoff_jitter_applies_after_cap():
    assert compute_backoff(20, base_s=1.0, max_s=30.0, rand=lambda: 1.0) == pytest.approx(36.0)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_connects_and_reports_transitions():
    link = FakeLink()
    manager = ConnectionManager(link, FAST)
    changes = []
    manager.on_state_change(changes.append)

    await manager.start()

    assert manager.state == CONNECTED
    assert [(c.previous, c.current) for c in changes] == [
        (DISCONNECTED, CONNECTING),
        (CONNECTING, CONNECTED),
    ]
    await manager.stop()


@pytest.mark.asyncio
async def test_start_is_idempotent_while_connected():
    link = FakeLink()
    manager = ConnectionManager(link, FAST)

    await manager.start()
    await manager.start()

    assert link.opens == 1
    await manager.stop()


@pytest.mark.asyncio
async def test_reconnects_after_failed_opens():
    link = FakeLink(fail_opens=2)
    manager = ConnectionManager(link, FAST, rand=lambda: 0.5)
    attempts = []
    manager.on_reconnect_attempt(attempts.append)

    await manager.start()
    state = await asyncio.wait_for(manager.wait_settled(), timeout=2)

    assert state == CONNECTED
    assert [a.attempt for a in attempts] == [1, 2]
    assert [a.delay_s for a in attempts] == [0.001, 0.002]
    assert manager.attempt == 0
    await manager.stop()


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    link = FakeLink(always_fail=True)
    manager = ConnectionManager(link, FAST)
    attempts = []
    exceeded = []
    manager.on_reconnect_attempt(attempts.append)
    manager.on_max_retries_exceeded(exceeded.append)

    await manager.start()
    state = await asyncio.wait_for(manager.wait_settled(), timeout=2)

    assert state == DISCONNECTED
    assert manager.exhausted
    assert [a.attempt for a in attempts] == list(range(1, 11))
    assert len(exceeded) == 1
    assert exceeded[0].attempts == 10
    # initial open plus one per retry, and nothing afterwards
    assert link.opens == 11
    await asyncio.sleep(0.02)
    assert link.opens == 11


@pytest.mark.asyncio
async def test_explicit_start_resumes_after_exhaustion():
    link = FakeLink(always_fail=True)
    manager = ConnectionManager(link, ConnectionConfig(max_retries=1, base_delay_s=0.001))

    await manager.start()
    assert await asyncio.wait_for(manager.wait_settled(), timeout=2) == DISCONNECTED

    link.always_fail = False
    await manager.start()

    assert manager.state == CONNECTED
    assert not manager.exhausted
    await manager.stop()


@pytest.mark.asyncio
async def test_heartbeat_silence_triggers_reconnect():
    clock = FakeClock(100.0)
    link = FakeLink()
    manager = ConnectionManager(link, FAST, clock=clock)
    states = []
    manager.on_state_change(lambda c: states.append(c.current))

    await manager.start()
    await wait_until(lambda: link.pings >= 1)

    clock.now += 31.0
    await wait_until(lambda: link.opens >= 2)
    await wait_until(lambda: manager.state == CONNECTED)

    assert RECONNECTING in states
    assert states[-1] == CONNECTED
    await manager.stop()


@pytest.mark.asyncio
async def test_pongs_keep_connection_alive():
    clock = FakeClock(100.0)
    link = FakeLink()
    manager = ConnectionManager(link, FAST, clock=clock)

    await manager.start()
    for _ in range(5):
        clock.now += 20.0
        manager.on_pong()
        await asyncio.sleep(0.015)

    assert manager.state == CONNECTED
    assert link.opens == 1
    await manager.stop()


@pytest.mark.asyncio
async def test_transport_lost_moves_to_reconnecting():
    link = FakeLink()
    config = ConnectionConfig(base_delay_s=5.0, max_delay_s=5.0)
    manager = ConnectionManager(link, config)

    await manager.start()
    manager.notify_transport_lost()

    assert manager.state == RECONNECTING
    await manager.stop()


@pytest.mark.asyncio
async def test_stop_cancels_timers_and_is_terminal():
    link = FakeLink(always_fail=True)
    config = ConnectionConfig(base_delay_s=5.0, max_delay_s=5.0)
    manager = ConnectionManager(link, config)

    await manager.start()
    assert manager.state == RECONNECTING

    await asyncio.wait_for(manager.stop(), timeout=1)

    assert manager.state == DISCONNECTED
    assert manager.stopped
    assert link.closes >= 1
    opens = link.opens

    await manager.start()
    assert manager.state == DISCONNECTED
    assert link.opens == opens


@pytest.mark.asyncio
async def test_stop_while_connected_closes_link():
    link = FakeLink()
    manager = ConnectionManager(link, FAST)

    await manager.start()
    await manager.stop()
    pings = link.pings
    await asyncio.sleep(0.03)

    assert manager.state == DISCONNECTED
    assert link.closes == 1
    assert link.pings == pings
