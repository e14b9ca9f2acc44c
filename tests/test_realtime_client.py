"""Tests for RealtimeClient sequencing, dispatch, outbox and persistence."""

from __future__ import annotations

import pytest

from fakes import RecordingStore, wait_until
from termbridge.channels.memory import MemoryChannelAdapter, MemoryHub
from termbridge.errors import ChannelError
from termbridge.models import (
    MSG_MODE,
    MSG_OUTPUT,
    MSG_PONG,
    ImageAttachment,
    session_input_channel,
    session_output_channel,
)
from termbridge.realtime.client import ROLE_REMOTE, RealtimeClient
from termbridge.realtime.connection import CONNECTED, ConnectionConfig

FAST = ConnectionConfig(
    heartbeat_interval_s=5.0,
    heartbeat_timeout_s=30.0,
    max_retries=50,
    base_delay_s=0.001,
    max_delay_s=0.004,
)


class _FailOnceAdapter(MemoryChannelAdapter):
    """Hub adapter whose next broadcast fails while the link stays up."""

    def __init__(self, hub):
        super().__init__(hub)
        self.fail_next = False

    async def broadcast(self, channel, payload):
        if self.fail_next:
            self.fail_next = False
            raise ChannelError("send timed out", channel=channel)
        return await super().broadcast(channel, payload)


async def _pair(session_id="s-1", *, messages=None):
    hub = MemoryHub()
    local_adapter = hub.attach()
    local = RealtimeClient(local_adapter, session_id, config=FAST, messages=messages)
    remote = RealtimeClient(hub.attach(), session_id, config=FAST, role=ROLE_REMOTE)
    assert await local.connect() == CONNECTED
    assert await remote.connect() == CONNECTED
    return hub, local_adapter, local, remote


def _published(hub, channel, msg_type=None):
    return [p for c, p in hub.published if c == channel and (msg_type is None or p["type"] == msg_type)]


@pytest.mark.asyncio
async def test_outbound_seq_increments_by_one():
    hub, _, local, remote = await _pair()
    received = []
    remote.on(MSG_OUTPUT, received.append)

    await local.send_output("a")
    await local.send_mode("plan")
    await local.send_output("b")
    await remote.drain()

    payloads = _published(hub, session_output_channel("s-1"))
    assert [p["seq"] for p in payloads] == [1, 2, 3]
    assert [m.content for m in received] == ["a", "b"]
    assert local.seq == 3
    await local.disconnect()
    await remote.disconnect()


@pytest.mark.asyncio
async def test_failed_broadcast_does_not_consume_a_seq():
    hub = MemoryHub()
    adapter = _FailOnceAdapter(hub)
    local = RealtimeClient(adapter, "s-1", config=FAST)
    assert await local.connect() == CONNECTED
    channel = session_output_channel("s-1")

    await local.send_output("a")
    adapter.fail_next = True
    assert await local.send_output("b") is None
    await local.send_output("c")
    await wait_until(lambda: len(_published(hub, channel)) == 3)

    payloads = _published(hub, channel)
    assert [(p["seq"], p["content"]) for p in payloads] == [(1, "a"), (2, "b"), (3, "c")]
    assert local.seq == 3
    await local.disconnect()


@pytest.mark.asyncio
async def test_roles_use_opposite_channels():
    hub, _, local, remote = await _pair("abc")
    inputs = []
    local.on("input", inputs.append)

    await remote.send_input("ls\n", [ImageAttachment("image/png", "AAAA")])
    await local.drain()

    assert _published(hub, session_input_channel("abc"), "input")
    assert inputs[0].content == "ls\n"
    assert inputs[0].attachments == (ImageAttachment("image/png", "AAAA"),)
    await local.disconnect()
    await remote.disconnect()


@pytest.mark.asyncio
async def test_inbound_gap_is_counted_and_reported():
    _, _, local, remote = await _pair()
    gaps = []
    local.on_gap(lambda expected, got: gaps.append((expected, got)))

    for seq in (1, 2, 5):
        local._on_payload({"type": "input", "seq": seq, "timestamp": 0, "content": "x"})

    assert gaps == [(3, 5)]
    assert local.inbound_gaps == 1
    await local.disconnect()
    await remote.disconnect()


@pytest.mark.asyncio
async def test_unknown_type_is_dropped_without_error():
    _, _, local, remote = await _pair()
    inputs = []
    local.on("input", inputs.append)

    await remote.send("telemetry", content="{}")
    await remote.send_input("after")
    await local.drain()

    assert [m.content for m in inputs] == ["after"]
    await local.disconnect()
    await remote.disconnect()


@pytest.mark.asyncio
async def test_malformed_payload_is_dropped():
    _, _, local, remote = await _pair()
    inputs = []
    local.on("input", inputs.append)

    local._on_payload({"type": "input", "content": "no seq"})
    local._on_payload(["not", "an", "object"])
    await local.drain()

    assert inputs == []
    assert local.last_inbound_seq is None
    await local.disconnect()
    await remote.disconnect()


@pytest.mark.asyncio
async def test_inbound_ping_is_answered_with_pong():
    hub, _, local, remote = await _pair()

    await remote.send_ping()
    await wait_until(lambda: _published(hub, session_output_channel("s-1"), MSG_PONG))

    assert local.seq == 1
    await local.disconnect()
    await remote.disconnect()


@pytest.mark.asyncio
async def test_messages_queue_while_disconnected_and_flush_in_order():
    hub, adapter, local, remote = await _pair()
    received = []
    remote.on(MSG_OUTPUT, received.append)
    await local.send_output("before")

    adapter.drop_link()
    assert local.state != CONNECTED
    await local.send_output("queued-1")
    await local.send_output("queued-2")
    await local.send_ping()
    assert local.pending == 2

    adapter.restore_link()
    await wait_until(lambda: local.pending == 0 and local.is_connected())
    await remote.drain()

    assert [m.content for m in received] == ["before", "queued-1", "queued-2"]
    assert [m.seq for m in received] == [1, 2, 3]
    await local.disconnect()
    await remote.disconnect()


@pytest.mark.asyncio
async def test_outbox_drops_oldest_when_full():
    hub = MemoryHub()
    adapter = hub.attach()
    local = RealtimeClient(adapter, "s-1", config=FAST, outbox_limit=2)

    for text in ("one", "two", "three"):
        await local.send_output(text)

    assert local.pending == 2
    assert local.dropped_count == 1
    assert [d.fields["content"] for d in local._outbox] == ["two", "three"]
    await local.disconnect()


@pytest.mark.asyncio
async def test_output_and_system_are_persisted_with_seq():
    store = RecordingStore()
    _, _, local, remote = await _pair(messages=store)

    await local.send_output("hello")
    await local.send_mode("plan")
    await local.send_system("[Model switched to Opus 4]")

    assert store.rows == [
        ("s-1", MSG_OUTPUT, "hello", 1),
        ("s-1", "system", "[Model switched to Opus 4]", 3),
    ]
    assert MSG_MODE not in [row[1] for row in store.rows]
    await local.disconnect()
    await remote.disconnect()


@pytest.mark.asyncio
async def test_disconnect_is_idempotent_and_stops_sending():
    hub, _, local, remote = await _pair()

    await local.disconnect()
    await local.disconnect()

    assert await local.send_output("late") is None
    assert hub.subscriber_count(session_output_channel("s-1")) == 1
    await remote.disconnect()
