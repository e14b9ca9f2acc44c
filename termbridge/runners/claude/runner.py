"""Claude Code CLI runner."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import AsyncIterator, Sequence

from termbridge.models import ImageAttachment
from termbridge.runners.base import BaseRunner, RunState
from termbridge.runners.cancellation import CancelToken
from termbridge.runners.claude.processor import ClaudeEventProcessor
from termbridge.runners.pipeline import JSONLineStats, iter_json_lines
from termbridge.runners.ports import RunnerEvent, RunOptions
from termbridge.runners.subprocess_transport import SubprocessTransport

log = logging.getLogger("claude")

Event = RunnerEvent


def build_user_message(
    prompt: str, attachments: Sequence[ImageAttachment], session_id: str | None
) -> dict:
    """stream-json user message: images first, then the text block."""
    blocks: list[dict] = [
        {
            "type": "image",
            "source": {"type": "base64", "media_type": a.media_type, "data": a.data},
        }
        for a in attachments
    ]
    if prompt.strip():
        blocks.append({"type": "text", "text": prompt})
    return {
        "type": "user",
        "message": {"role": "user", "content": blocks},
        "parent_tool_use_id": None,
        "session_id": session_id or "",
    }


class ClaudeRunner(BaseRunner):
    """Runs Claude Code and streams parsed events."""

    engine = "claude"

    def __init__(
        self,
        working_dir: str,
        output_dir: Path | None = None,
        session_name: str | None = None,
        *,
        executable: str = "claude",
    ):
        super().__init__(working_dir, output_dir, session_name)
        self.executable = executable
        self._processor = ClaudeEventProcessor(
            log_to_file=self._log_to_file,
            log_response=self._log_response,
        )

    def _build_command(
        self,
        prompt: str,
        options: RunOptions,
        *,
        stream_input: bool,
    ) -> list[str]:
        """Build the claude command line."""
        cmd = [self.executable, "-p"]
        if stream_input:
            cmd.extend(["--input-format", "stream-json"])
        else:
            cmd.append(prompt)
        cmd.extend([
            "--output-format", "stream-json",
            "--verbose",
            "--permission-mode", options.permission_mode,
        ])

        if options.model and options.model != "default":
            cmd.extend(["--model", options.model])

        if options.resume_token:
            cmd.extend(["--resume", options.resume_token])
        return cmd

    async def run(
        self,
        prompt: str,
        *,
        attachments: Sequence[ImageAttachment] = (),
        options: RunOptions | None = None,
        cancel: CancelToken | None = None,
    ) -> AsyncIterator[Event]:
        """Run Claude, yielding (event_type, content) tuples.

        Events:
            ("session_id", str) - Resume token for continuity
            ("init", dict) - slash_commands / permission_mode / model
            ("text", str) - Response text
            ("tool", str) - Tool invocation note
            ("result", ClaudeResult) - Final result stats
            ("error", str) - Error message
        """
        options = options or RunOptions()
        cancel = cancel or CancelToken()
        log.info("Claude: %s...", prompt[:50])
        self._log_prompt(prompt)

        if cancel.cancelled:
            return

        stream_input = bool(attachments)
        cmd = self._build_command(prompt, options, stream_input=stream_input)
        state = RunState()
        stats = JSONLineStats()
        transport = SubprocessTransport()
        unregister = cancel.add_callback(transport.cancel)

        try:
            stdout = await transport.start(
                cmd,
                cwd=self.working_dir,
                stdout_limit=10 * 1024 * 1024,
                with_stdin=stream_input,
            )
            if cancel.cancelled:
                return
            if stream_input:
                message = build_user_message(prompt, attachments, options.resume_token)
                await transport.write_stdin((json.dumps(message) + "\n").encode())

            async for result in iter_json_lines(
                byte_stream=stdout,
                state=state,
                parse_event=self._processor.parse_event,
                stats=stats,
            ):
                if cancel.cancelled:
                    break
                yield result

            returncode = await transport.wait()
            if cancel.cancelled:
                return

            # If we got nothing at all, surface the raw output.
            if not stats.emitted_any and stats.non_json_lines:
                yield ("error", "Claude runner produced no JSON events:\n" + "\n".join(stats.non_json_lines))
            elif returncode != 0 and not state.saw_result:
                yield ("error", f"claude exited with status {returncode}")

        except Exception as e:
            if cancel.cancelled:
                return
            log.exception("Claude runner error")
            yield ("error", str(e))
        finally:
            unregister()
            await transport.cancel_and_kill()
