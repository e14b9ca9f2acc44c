"""Tests for the in-process channel hub."""

from __future__ import annotations

import pytest

from termbridge.channels.memory import MemoryHub
from termbridge.errors import ChannelError


@pytest.mark.asyncio
async def test_broadcast_reaches_other_subscribers_only():
    hub = MemoryHub()
    a, b = hub.attach(), hub.attach()
    got_a, got_b = [], []
    await a.subscribe("room", got_a.append)
    await b.subscribe("room", got_b.append)

    await a.broadcast("room", {"type": "output", "seq": 1})

    assert got_a == []
    assert got_b == [{"type": "output", "seq": 1}]


@pytest.mark.asyncio
async def test_receivers_get_independent_copies():
    hub = MemoryHub()
    a, b, c = hub.attach(), hub.attach(), hub.attach()
    got_b, got_c = [], []
    await b.subscribe("room", got_b.append)
    await c.subscribe("room", got_c.append)

    await a.broadcast("room", {"items": [1]})
    got_b[0]["items"].append(2)

    assert got_c[0] == {"items": [1]}


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    hub = MemoryHub()
    a, b = hub.attach(), hub.attach()
    got = []
    handle = await b.subscribe("room", got.append)

    await b.unsubscribe(handle)
    await a.broadcast("room", {"n": 1})

    assert got == []
    assert hub.subscriber_count("room") == 0


@pytest.mark.asyncio
async def test_offline_adapter_raises_and_reports_loss():
    hub = MemoryHub()
    adapter = hub.attach()
    lost = []
    adapter.set_transport_lost_callback(lambda: lost.append(True))

    adapter.drop_link()

    assert lost == [True]
    with pytest.raises(ChannelError):
        await adapter.broadcast("room", {})
    with pytest.raises(ChannelError):
        await adapter.subscribe("room", lambda p: None)
    with pytest.raises(ChannelError):
        await adapter.ping()

    adapter.restore_link()
    await adapter.ping()


@pytest.mark.asyncio
async def test_history_keeps_only_the_newest_payloads():
    hub = MemoryHub(history_limit=2)
    a = hub.attach()
    for n in range(5):
        await a.broadcast("room", {"n": n})

    assert [p["n"] for _, p in hub.published] == [3, 4]


@pytest.mark.asyncio
async def test_history_disabled_still_delivers():
    hub = MemoryHub(history_limit=0)
    a, b = hub.attach(), hub.attach()
    got = []
    await b.subscribe("room", got.append)

    await a.broadcast("room", {"n": 1})

    assert got == [{"n": 1}]
    assert len(hub.published) == 0
