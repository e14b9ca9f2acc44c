"""Tests for configuration, local state and the task error boundary."""

from __future__ import annotations

import asyncio
import logging
import os

import pytest

from termbridge.utils import (
    LocalState,
    get_api_config,
    get_bridge_config,
    guard,
    load_env,
    parse_bool,
    spawn_guarded,
)


@pytest.mark.parametrize(
    "value,expected",
    [("1", True), ("yes", True), ("On", True), ("0", False), ("no", False), ("", True), (None, True)],
)
def test_parse_bool(value, expected):
    assert parse_bool(value, default=True) is expected


def test_load_env_reads_quoted_values(tmp_path, monkeypatch):
    env = tmp_path / ".env"
    env.write_text('# comment\nTERMBRIDGE_OWNER_ID="user-42"\nTERMBRIDGE_MODEL = \'opus\'\n')
    monkeypatch.setenv("TERMBRIDGE_OWNER_ID", "placeholder")
    monkeypatch.setenv("TERMBRIDGE_MODEL", "placeholder")

    load_env(env)

    assert os.environ["TERMBRIDGE_OWNER_ID"] == "user-42"
    assert os.environ["TERMBRIDGE_MODEL"] == "opus"


def test_bridge_config_defaults_and_fallbacks(tmp_path, monkeypatch, caplog):
    monkeypatch.setenv("TERMBRIDGE_STATE_DIR", str(tmp_path))
    monkeypatch.setenv("TERMBRIDGE_TRANSPORT", "loopback")
    monkeypatch.setenv("TERMBRIDGE_PERMISSION_MODE", "sudo")
    monkeypatch.setenv("TERMBRIDGE_MAX_RETRIES", "many")
    monkeypatch.setenv("TERMBRIDGE_HEARTBEAT_INTERVAL_S", "5")
    monkeypatch.delenv("TERMBRIDGE_API_URL", raising=False)
    monkeypatch.delenv("TERMBRIDGE_DB_PATH", raising=False)

    with caplog.at_level(logging.WARNING):
        cfg = get_bridge_config()

    assert cfg.transport == "loopback"
    assert cfg.xmpp is None
    assert cfg.api is None
    assert cfg.permission_mode == "bypassPermissions"
    assert cfg.max_retries == 10
    assert cfg.heartbeat_interval_s == 5.0
    assert cfg.db_path == tmp_path / "termbridge.db"
    assert "TERMBRIDGE_PERMISSION_MODE" in caplog.text


def test_api_config_requires_url(monkeypatch):
    monkeypatch.setenv("TERMBRIDGE_API_URL", "https://api.example.com/")
    monkeypatch.setenv("TERMBRIDGE_API_KEY", "anon")
    monkeypatch.setenv("TERMBRIDGE_NOTIFY_ENABLE", "0")

    api = get_api_config()

    assert api.url == "https://api.example.com"
    assert api.api_key == "anon"
    assert api.notify_enabled is False
    monkeypatch.setenv("TERMBRIDGE_API_URL", "")
    assert get_api_config() is None


def test_machine_id_is_stable_across_runs(tmp_path):
    first = LocalState(tmp_path).ensure_machine_id()
    second = LocalState(tmp_path).ensure_machine_id()

    assert first == second
    assert '"machineId"' in (tmp_path / "config.json").read_text()


def test_corrupt_state_file_is_replaced(tmp_path):
    (tmp_path / "config.json").write_text("{not json")

    machine_id = LocalState(tmp_path).ensure_machine_id()

    assert LocalState(tmp_path).machine_id == machine_id


@pytest.mark.asyncio
async def test_guard_logs_and_swallows_errors(caplog):
    async def boom():
        raise RuntimeError("kaboom")

    with caplog.at_level(logging.ERROR):
        result = await guard(boom(), context="unit")

    assert result is None
    assert "Unhandled error (unit)" in caplog.text


@pytest.mark.asyncio
async def test_spawn_guarded_returns_result():
    async def value():
        return 7

    assert await spawn_guarded(value()) == 7


@pytest.mark.asyncio
async def test_guard_propagates_cancellation():
    task = spawn_guarded(asyncio.sleep(10))
    await asyncio.sleep(0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
