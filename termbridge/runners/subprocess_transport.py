"""Child-process handling for runners: spawn, feed stdin, stop.

Each child runs in its own session, so its pid is also its process group id.
Stopping signals the whole group: a shell's grandchildren would otherwise keep
the stdout pipe open after the shell itself is gone.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal

log = logging.getLogger("runner.process")


class SubprocessTransport:
    """One child process group per unit of work, stdout and stderr merged."""

    def __init__(self, *, kill_grace_s: float = 5.0):
        self.process: asyncio.subprocess.Process | None = None
        self.kill_grace_s = kill_grace_s
        self._cancelled = False
        self._kill_timer: asyncio.TimerHandle | None = None

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def start(
        self,
        cmd: list[str],
        *,
        cwd: str,
        stdout_limit: int,
        with_stdin: bool = False,
    ) -> asyncio.StreamReader:
        stdin = asyncio.subprocess.PIPE if with_stdin else asyncio.subprocess.DEVNULL
        self.process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=cwd,
            limit=stdout_limit,
            start_new_session=True,
        )
        log.debug("Spawned %s (pid %s)", cmd[0], self.process.pid)
        if self.process.stdout is None:
            raise RuntimeError("Subprocess stdout missing")
        return self.process.stdout

    async def write_stdin(self, data: bytes, *, close: bool = True) -> None:
        stdin = self.process.stdin if self.process else None
        if stdin is None:
            raise RuntimeError("Subprocess stdin missing")
        stdin.write(data)
        await stdin.drain()
        if close:
            stdin.close()

    async def wait(self) -> int:
        if self.process is None:
            return 0
        return int(await self.process.wait() or 0)

    def _signal_group(self, sig: int) -> bool:
        """Signal the child's process group. False if nothing is left to signal."""
        if self.process is None:
            return False
        try:
            os.killpg(self.process.pid, sig)
        except (ProcessLookupError, PermissionError):
            return False
        return True

    def cancel(self) -> None:
        """SIGTERM the group now and SIGKILL whatever is left after the grace period."""
        if self.process is None or self._cancelled:
            return
        self._cancelled = True
        if self._signal_group(signal.SIGTERM):
            loop = asyncio.get_running_loop()
            self._kill_timer = loop.call_later(
                self.kill_grace_s, self._signal_group, signal.SIGKILL
            )

    async def cancel_and_kill(self) -> None:
        """Stop the child if it is still running and clear out a cancelled group."""
        proc = self.process
        if proc is None:
            return
        if proc.returncode is None and self._signal_group(signal.SIGTERM):
            self._cancelled = True
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_s)
            except asyncio.TimeoutError:
                log.warning("Process %s ignored SIGTERM, sending SIGKILL", proc.pid)
                self._signal_group(signal.SIGKILL)
                await proc.wait()
        if self._cancelled:
            # Stragglers from a cancelled run are not waited for.
            self._signal_group(signal.SIGKILL)
        if self._kill_timer is not None:
            self._kill_timer.cancel()
            self._kill_timer = None
