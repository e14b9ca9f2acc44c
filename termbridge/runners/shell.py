"""Shell runner: one command line per unit of work."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import AsyncIterator, Sequence

from termbridge.models import ImageAttachment
from termbridge.runners.base import BaseRunner
from termbridge.runners.cancellation import CancelToken
from termbridge.runners.pipeline import iter_text_chunks
from termbridge.runners.ports import RunnerEvent, RunOptions
from termbridge.runners.subprocess_transport import SubprocessTransport

log = logging.getLogger("shell")


class ShellRunner(BaseRunner):
    """Runs `/bin/sh -c <prompt>` and streams merged stdout/stderr."""

    engine = "shell"

    def __init__(
        self,
        working_dir: str,
        output_dir: Path | None = None,
        session_name: str | None = None,
        *,
        shell: str = "/bin/sh",
    ):
        super().__init__(working_dir, output_dir, session_name)
        self.shell = shell

    async def run(
        self,
        prompt: str,
        *,
        attachments: Sequence[ImageAttachment] = (),
        options: RunOptions | None = None,
        cancel: CancelToken | None = None,
    ) -> AsyncIterator[RunnerEvent]:
        cancel = cancel or CancelToken()
        if attachments:
            log.warning("Shell runner ignores %d attachment(s)", len(attachments))
        command = prompt.strip()
        if not command or cancel.cancelled:
            return

        log.info("Shell: %s", command[:80])
        self._log_prompt(command)
        transport = SubprocessTransport()
        unregister = cancel.add_callback(transport.cancel)
        collected: list[str] = []
        try:
            stdout = await transport.start(
                [self.shell, "-c", command],
                cwd=self.working_dir,
                stdout_limit=1024 * 1024,
            )
            if cancel.cancelled:
                return
            async for chunk in iter_text_chunks(stdout):
                if cancel.cancelled:
                    break
                collected.append(chunk)
                yield ("text", chunk)

            returncode = await transport.wait()
            if cancel.cancelled:
                return
            self._log_response("".join(collected))
            if returncode != 0:
                yield ("error", f"command exited with status {returncode}")
            else:
                yield ("result", {"exit_code": 0})
        except Exception as e:
            if cancel.cancelled:
                return
            log.exception("Shell runner error")
            yield ("error", str(e))
        finally:
            unregister()
            await transport.cancel_and_kill()
