"""
TermBridge - bridge a local agent or shell session to a remote client.

One process, one session:
- registers this machine and opens a session record
- joins the session's output/input channels (XMPP rooms, or an in-process hub
  with --loopback)
- runs prompts through the selected engine and streams output both to the
  terminal (hybrid mode) and to the remote side
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Iterable

from termbridge.channels.memory import MemoryHub
from termbridge.core.process_session import ProcessSession
from termbridge.daemon.daemon import Daemon
from termbridge.daemon.notifications import HttpNotificationDispatcher
from termbridge.db import SqliteRegistry
from termbridge.errors import TermBridgeError
from termbridge.realtime.connection import ConnectionConfig
from termbridge.rest import RestClient, RestRegistry
from termbridge.runners.registry import create_runner
from termbridge.utils import (
    ENGINES,
    BridgeConfig,
    LocalState,
    get_bridge_config,
    load_env,
    spawn_guarded,
)

log = logging.getLogger("bridge")

READY_BANNER = "\n[TermBridge] Ready for input.\n> "
PROMPT = "\n> "


def _configure_logging(verbose: bool) -> None:
    if verbose:
        level = logging.DEBUG
    else:
        name = (os.getenv("TERMBRIDGE_LOG_LEVEL") or "INFO").strip().upper()
        level = logging.getLevelName(name)
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # slixmpp is chatty at INFO.
    xmpp_level = level if verbose else logging.WARNING
    logging.getLogger("slixmpp").setLevel(xmpp_level)
    logging.getLogger("slixmpp.xmlstream").setLevel(xmpp_level)


def _parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="TermBridge session daemon")
    parser.add_argument("--loopback", action="store_true", help="Use an in-process hub")
    parser.add_argument("--engine", choices=ENGINES, default=None)
    parser.add_argument("--cwd", default=None, help="Working directory for the session")
    parser.add_argument("--no-hybrid", action="store_true", help="Remote input only")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(list(argv))


def _write_local(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


def _build_registry(cfg: BridgeConfig):
    if cfg.registry == "rest":
        if cfg.api is None:
            raise TermBridgeError("TERMBRIDGE_REGISTRY=rest requires TERMBRIDGE_API_URL")
        return RestRegistry(RestClient(cfg.api))
    return SqliteRegistry.open(cfg.db_path)


def _build_adapter(cfg: BridgeConfig, loopback: bool):
    if loopback or cfg.transport == "loopback":
        return MemoryHub(history_limit=0).attach()

    from termbridge.channels.xmpp import XmppChannelAdapter

    xmpp = cfg.xmpp
    if xmpp is None:
        raise TermBridgeError("XMPP transport selected but not configured")
    return XmppChannelAdapter(
        xmpp.jid,
        xmpp.password,
        server=xmpp.server,
        muc_service=xmpp.muc_service,
        port=xmpp.port,
        use_tls=xmpp.use_tls,
    )


def _attach_stdin(daemon: Daemon, stop: asyncio.Event) -> bool:
    """Feed stdin lines to the daemon as prompts. EOF stops the bridge."""
    loop = asyncio.get_running_loop()
    fd = sys.stdin.fileno()

    def on_readable() -> None:
        line = sys.stdin.readline()
        if not line:
            log.info("stdin closed")
            loop.remove_reader(fd)
            stop.set()
            return
        prompt = line.rstrip("\r\n")
        if prompt.strip():
            spawn_guarded(daemon.send_prompt(prompt), context="stdin prompt", log=log)

    try:
        loop.add_reader(fd, on_readable)
    except (NotImplementedError, PermissionError, OSError):
        log.warning("stdin is not pollable; local input disabled")
        return False
    return True


async def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    load_env()
    _configure_logging(args.verbose)
    cfg = get_bridge_config()

    working_dir = Path(args.cwd).expanduser() if args.cwd else cfg.working_dir
    engine = args.engine or cfg.engine
    hybrid = cfg.hybrid and not args.no_hybrid

    if not cfg.owner_id:
        log.error("TERMBRIDGE_OWNER_ID is not set")
        return 1

    machine_id = LocalState(cfg.state_dir).ensure_machine_id()
    registry = _build_registry(cfg)
    adapter = _build_adapter(cfg, args.loopback)

    runner = create_runner(
        engine,
        working_dir=str(working_dir),
        output_dir=cfg.output_dir,
        session_name=cfg.machine_name,
    )
    session = ProcessSession(
        runner,
        working_dir=str(working_dir),
        permission_mode=cfg.permission_mode,
        model=cfg.model,
    )
    if hybrid:
        session.on_complete(lambda: _write_local(PROMPT))

    notifier = None
    if cfg.api is not None and cfg.api.notify_enabled:
        notifier = HttpNotificationDispatcher(RestClient(cfg.api))

    daemon = Daemon(
        registry=registry,
        adapter=adapter,
        session=session,
        owner_id=cfg.owner_id,
        machine_id=machine_id,
        machine_name=cfg.machine_name,
        working_dir=str(working_dir),
        connection_config=ConnectionConfig(
            heartbeat_interval_s=cfg.heartbeat_interval_s,
            heartbeat_timeout_s=cfg.heartbeat_timeout_s,
            max_retries=cfg.max_retries,
            base_delay_s=cfg.retry_base_delay_s,
            max_delay_s=cfg.retry_max_delay_s,
        ),
        outbox_limit=cfg.outbox_limit,
        notifier=notifier,
        local_sink=_write_local if hybrid else None,
    )
    daemon.on_error(lambda err: log.error("Session error: %s", getattr(err, "message", err)))

    stop = asyncio.Event()
    exit_code = 0

    def on_link_exhausted(event) -> None:
        nonlocal exit_code
        log.error(
            "Realtime link lost after %d reconnect attempts; shutting down", event.attempts
        )
        exit_code = 2
        stop.set()

    daemon.on_link_exhausted(on_link_exhausted)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    try:
        started = await daemon.start()
    except TermBridgeError as exc:
        log.error("Failed to start: %s", exc)
        await _close_resources(registry, notifier)
        return 1

    log.info(
        "Bridging session %s (%s, engine=%s, cwd=%s)",
        started.session.id,
        daemon.machine_name,
        engine,
        working_dir,
    )

    stdin_attached = False
    if hybrid:
        _write_local(READY_BANNER)
        stdin_attached = _attach_stdin(daemon, stop)

    try:
        await stop.wait()
    finally:
        log.info("Shutting down...")
        if stdin_attached:
            loop.remove_reader(sys.stdin.fileno())
        await daemon.stop()
        await _close_resources(registry, notifier)
    return exit_code


async def _close_resources(registry, notifier) -> None:
    close = getattr(registry, "close", None)
    if close is not None:
        result = close()
        if asyncio.iscoroutine(result):
            await result
    if notifier is not None:
        await notifier.client.close()


def run() -> None:
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        log.info("Shutting down...")


if __name__ == "__main__":
    run()
