"""End-to-end tests for the session daemon over an in-process hub."""

from __future__ import annotations

from pathlib import Path

import pytest

from fakes import RecordingNotifier, ScriptedRunner, wait_until
from termbridge.channels.memory import MemoryHub
from termbridge.core.process_session import CANCELLED_NOTICE, ProcessSession
from termbridge.daemon.daemon import Daemon
from termbridge.db import SqliteRegistry
from termbridge.errors import ChannelError, DaemonStateError, RegistrationError
from termbridge.models import (
    MACHINE_OFFLINE,
    MACHINE_ONLINE,
    SESSION_ACTIVE,
    SESSION_ENDED,
    TRIGGER_TASK_COMPLETE,
    session_output_channel,
)
from termbridge.realtime.client import ROLE_REMOTE, RealtimeClient
from termbridge.realtime.connection import CONNECTED, DISCONNECTED, ConnectionConfig

FAST = ConnectionConfig(
    heartbeat_interval_s=5.0,
    heartbeat_timeout_s=30.0,
    max_retries=2,
    base_delay_s=0.001,
    max_delay_s=0.002,
)


class _FailingSessionRegistry(SqliteRegistry):
    async def create_session(self, machine_id, working_directory, model=None):
        raise RegistrationError("sessions table unavailable")


def _build(tmp_path, runner, *, registry=None, notifier=None, sink=None):
    hub = MemoryHub()
    registry = registry or SqliteRegistry.open(Path(":memory:"))
    session = ProcessSession(runner, working_dir=str(tmp_path), commands_home=tmp_path)
    daemon = Daemon(
        registry=registry,
        adapter=hub.attach(),
        session=session,
        owner_id="owner-1",
        machine_id="machine-1",
        machine_name="laptop",
        connection_config=FAST,
        notifier=notifier,
        local_sink=sink,
    )
    return hub, registry, daemon


async def _remote(hub, session_id) -> RealtimeClient:
    remote = RealtimeClient(hub.attach(), session_id, config=FAST, role=ROLE_REMOTE)
    await remote.connect()
    return remote


def _outbound(hub, session_id, msg_type=None):
    channel = session_output_channel(session_id)
    return [p for c, p in hub.published if c == channel and (msg_type is None or p["type"] == msg_type)]


@pytest.mark.asyncio
async def test_start_registers_and_broadcasts_initial_state(tmp_path):
    hub, registry, daemon = _build(tmp_path, ScriptedRunner())

    started = await daemon.start()

    assert daemon.is_running()
    machine = await registry.get_machine("machine-1")
    assert machine.status == MACHINE_ONLINE
    assert machine.owner_id == "owner-1"
    record = await registry.get_session(started.session.id)
    assert record.status == SESSION_ACTIVE
    assert record.working_directory == str(tmp_path)

    initial = _outbound(hub, started.session.id)
    assert [p["type"] for p in initial] == ["mode", "commands", "models", "model"]
    assert [p["seq"] for p in initial] == [1, 2, 3, 4]
    assert initial[0]["permissionMode"] == "bypassPermissions"
    await daemon.stop()


@pytest.mark.asyncio
async def test_input_runs_prompt_and_streams_output(tmp_path):
    runner = ScriptedRunner([("session_id", "tok-7"), ("text", "hello from agent")])
    local = []
    hub, registry, daemon = _build(tmp_path, runner, sink=local.append)
    started = await daemon.start()
    sid = started.session.id
    remote = await _remote(hub, sid)
    outputs = []
    remote.on("output", lambda m: outputs.append(m.content))

    await remote.send_input("echo hi\r\n")
    await wait_until(lambda: "hello from agent" in outputs)
    await daemon.process_session.wait_idle()

    assert runner.calls[0][0] == "echo hi"
    assert "hello from agent" in local
    record = await registry.get_session(sid)
    assert record.resume_token == "tok-7"
    stored = registry.messages.list_recent(sid)
    assert ("output", "hello from agent") in [(t, c) for _, t, c in stored]
    await remote.disconnect()
    await daemon.stop()


@pytest.mark.asyncio
async def test_mode_change_is_applied_and_echoed(tmp_path):
    hub, _, daemon = _build(tmp_path, ScriptedRunner())
    started = await daemon.start()
    sid = started.session.id
    remote = await _remote(hub, sid)

    await remote.send("mode-change", permission_mode="plan")
    await wait_until(lambda: any(p.get("permissionMode") == "plan" for p in _outbound(hub, sid, "mode")))

    assert daemon.process_session.permission_mode == "plan"
    # first inbound message triggers one extra commands broadcast
    assert len(_outbound(hub, sid, "commands")) == 2
    await remote.disconnect()
    await daemon.stop()


@pytest.mark.asyncio
async def test_model_change_confirms_and_persists(tmp_path):
    local = []
    hub, registry, daemon = _build(tmp_path, ScriptedRunner(), sink=local.append)
    started = await daemon.start()
    sid = started.session.id
    remote = await _remote(hub, sid)

    await remote.send("model-change", model="opus")
    await wait_until(lambda: _outbound(hub, sid, "system"))

    assert _outbound(hub, sid, "system")[0]["content"] == "\n[Model switched to Opus 4]\n"
    assert _outbound(hub, sid, "model")[-1]["model"] == "opus"
    assert local == ["\n[Model switched to Opus 4]\n"]
    assert (await registry.get_session(sid)).model == "opus"
    await remote.disconnect()
    await daemon.stop()


@pytest.mark.asyncio
async def test_requests_are_answered(tmp_path):
    hub, _, daemon = _build(tmp_path, ScriptedRunner())
    started = await daemon.start()
    sid = started.session.id
    remote = await _remote(hub, sid)

    await remote.send("models-request")
    await wait_until(lambda: len(_outbound(hub, sid, "models")) == 2)
    await remote.send("commands-request")
    await wait_until(lambda: len(_outbound(hub, sid, "commands")) == 3)

    values = [m["value"] for m in _outbound(hub, sid, "models")[-1]["availableModels"]]
    assert values == ["default", "sonnet", "opus", "haiku"]
    await remote.disconnect()
    await daemon.stop()


@pytest.mark.asyncio
async def test_remote_cancel_interrupts_work(tmp_path):
    runner = ScriptedRunner([("text", "working")], hold=True)
    hub, _, daemon = _build(tmp_path, runner)
    errors = []
    daemon.on_error(errors.append)
    started = await daemon.start()
    sid = started.session.id
    remote = await _remote(hub, sid)
    outputs = []
    remote.on("output", lambda m: outputs.append(m.content))

    await remote.send_input("long task")
    await wait_until(lambda: "working" in outputs)
    await remote.send("cancel")
    await wait_until(lambda: CANCELLED_NOTICE in outputs)

    assert not daemon.process_session.busy
    assert errors == []
    await remote.disconnect()
    await daemon.stop()


@pytest.mark.asyncio
async def test_output_keywords_raise_notifications(tmp_path):
    runner = ScriptedRunner([("text", "Build finished successfully")])
    notifier = RecordingNotifier()
    hub, _, daemon = _build(tmp_path, runner, notifier=notifier)
    seen = []
    daemon.on_notification(seen.append)
    started = await daemon.start()

    await daemon.send_prompt("make")
    await daemon.process_session.wait_idle()
    await wait_until(lambda: notifier.payloads)

    assert [t.kind for t in seen] == [TRIGGER_TASK_COMPLETE]
    payload = notifier.payloads[0]
    assert payload.owner_id == "owner-1"
    assert payload.session_id == started.session.id
    await daemon.stop()


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_terminal(tmp_path):
    hub, registry, daemon = _build(tmp_path, ScriptedRunner())
    stopped = []
    daemon.on_stopped(lambda: stopped.append(True))
    started = await daemon.start()

    await daemon.stop()
    await daemon.stop()

    assert not daemon.is_running()
    assert stopped == [True]
    assert (await registry.get_session(started.session.id)).status == SESSION_ENDED
    assert (await registry.get_machine("machine-1")).status == MACHINE_OFFLINE
    assert hub.subscriber_count(session_output_channel(started.session.id)) == 0
    with pytest.raises(DaemonStateError):
        await daemon.start()


@pytest.mark.asyncio
async def test_start_twice_is_rejected(tmp_path):
    _, _, daemon = _build(tmp_path, ScriptedRunner())
    await daemon.start()

    with pytest.raises(DaemonStateError):
        await daemon.start()
    await daemon.stop()


@pytest.mark.asyncio
async def test_session_registration_failure_rolls_back(tmp_path):
    registry = _FailingSessionRegistry(SqliteRegistry.open(Path(":memory:")).conn)
    _, _, daemon = _build(tmp_path, ScriptedRunner(), registry=registry)

    with pytest.raises(RegistrationError):
        await daemon.start()

    assert daemon.state == "idle"
    assert daemon.session is None
    assert (await registry.get_machine("machine-1")).status == MACHINE_OFFLINE


@pytest.mark.asyncio
async def test_unreachable_channel_fails_start_and_ends_session(tmp_path):
    hub, registry, daemon = _build(tmp_path, ScriptedRunner())
    daemon._adapter.online = False

    with pytest.raises(ChannelError):
        await daemon.start()

    assert daemon.state == "idle"
    rows = registry.conn.execute("SELECT status FROM sessions").fetchall()
    assert [row["status"] for row in rows] == [SESSION_ENDED]
    assert (await registry.get_machine("machine-1")).status == MACHINE_OFFLINE


@pytest.mark.asyncio
async def test_exhausted_link_is_reported_and_can_be_resumed(tmp_path):
    hub, registry, daemon = _build(tmp_path, ScriptedRunner())
    exhausted = []
    errors = []
    daemon.on_link_exhausted(exhausted.append)
    daemon.on_error(errors.append)
    started = await daemon.start()

    daemon.adapter.drop_link()
    await wait_until(lambda: exhausted)

    assert exhausted[0].attempts == FAST.max_retries
    assert daemon.client.state == DISCONNECTED
    assert daemon.is_running()
    assert errors == []

    daemon.adapter.restore_link()
    assert await daemon.reconnect() == CONNECTED
    await daemon.client.send_system("back")
    assert _outbound(hub, started.session.id, "system")[-1]["content"] == "back"
    await daemon.stop()


@pytest.mark.asyncio
async def test_reconnect_requires_a_running_daemon(tmp_path):
    _, _, daemon = _build(tmp_path, ScriptedRunner())

    with pytest.raises(DaemonStateError):
        await daemon.reconnect()
