"""ProcessSession.

Owns one external computation at a time and presents it as a stream of
typed events:
- serialization (one unit of work in flight, no queue)
- cancellation (a CancelToken per unit of work)
- resumability (captures the runner's resume token, reuses it next time)

It depends only on the Runner port.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Sequence, Union

from termbridge.core.commands import (
    AVAILABLE_MODELS,
    FALLBACK_COMMANDS,
    merge_commands,
    parse_reported_commands,
    scan_custom_commands,
)
from termbridge.models import PERMISSION_MODES, ImageAttachment, ModelInfo, SlashCommand
from termbridge.runners.cancellation import CancelToken
from termbridge.runners.ports import Runner, RunOptions

log = logging.getLogger("session")

BUSY_NOTICE = "\n[TermBridge] Previous request still processing...\n"
CANCELLED_NOTICE = "\n[Cancelled]\n"


def error_notice(message: str) -> str:
    return f"\n[Error: {message}]\n"


@dataclass(frozen=True)
class SessionError:
    message: str
    cancelled: bool = False


Listener = Callable[..., Union[None, Awaitable[None]]]


class ProcessSession:
    def __init__(
        self,
        runner: Runner,
        *,
        working_dir: str,
        permission_mode: str = "bypassPermissions",
        model: str = "default",
        resume_token: str | None = None,
        commands_home: Path | None = None,
    ):
        if permission_mode not in PERMISSION_MODES:
            raise ValueError(f"Unknown permission mode: {permission_mode}")
        self._runner = runner
        self.working_dir = working_dir
        self.permission_mode = permission_mode
        self.model = model
        self.resume_token = resume_token
        self._commands_home = commands_home

        self._busy = False
        self._token: CancelToken | None = None
        self._task: asyncio.Task | None = None
        self._reported_commands: list[SlashCommand] = []

        self._listeners: dict[str, list[Listener]] = {
            "output": [],
            "complete": [],
            "error": [],
            "session_token": [],
            "commands_updated": [],
            "permission_mode": [],
            "model": [],
        }

    # -------------------------------------------------------------------------
    # Listener registration
    # -------------------------------------------------------------------------

    def on_output(self, cb: Callable[[str], object]) -> None:
        self._listeners["output"].append(cb)

    def on_complete(self, cb: Callable[[], object]) -> None:
        self._listeners["complete"].append(cb)

    def on_error(self, cb: Callable[[SessionError], object]) -> None:
        self._listeners["error"].append(cb)

    def on_session_token(self, cb: Callable[[str], object]) -> None:
        self._listeners["session_token"].append(cb)

    def on_commands_updated(self, cb: Callable[[list[SlashCommand]], object]) -> None:
        self._listeners["commands_updated"].append(cb)

    def on_permission_mode(self, cb: Callable[[str], object]) -> None:
        self._listeners["permission_mode"].append(cb)

    def on_model(self, cb: Callable[[str], object]) -> None:
        self._listeners["model"].append(cb)

    async def _emit(self, name: str, *args) -> None:
        for cb in list(self._listeners[name]):
            try:
                result = cb(*args)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Session %s listener failed", name)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._busy

    async def set_permission_mode(self, mode: str) -> None:
        """Applies to the next unit of work; in-flight work is untouched."""
        if mode not in PERMISSION_MODES:
            raise ValueError(f"Unknown permission mode: {mode}")
        self.permission_mode = mode
        await self._emit("permission_mode", mode)

    async def set_model(self, model: str) -> bool:
        """Returns True when the active model actually changed."""
        model = (model or "").strip()
        if not model or model == self.model:
            return False
        self.model = model
        await self._emit("model", model)
        return True

    def get_commands(self) -> list[SlashCommand]:
        return merge_commands(
            scan_custom_commands(self.working_dir, home=self._commands_home),
            self._reported_commands,
            FALLBACK_COMMANDS,
        )

    def get_models(self) -> list[ModelInfo]:
        return list(AVAILABLE_MODELS)

    # -------------------------------------------------------------------------
    # Work
    # -------------------------------------------------------------------------

    async def send(self, prompt: str, attachments: Sequence[ImageAttachment] = ()) -> bool:
        """Start one unit of work. Returns False (after a busy notice) if one is in flight."""
        if self._busy:
            log.info("Rejecting prompt; previous request still running")
            await self._emit("output", BUSY_NOTICE)
            return False

        token = CancelToken()
        self._busy = True
        self._token = token
        self._task = asyncio.create_task(self._run(prompt, tuple(attachments), token))
        return True

    def cancel(self) -> bool:
        """Cancel the unit of work active right now. No-op when idle."""
        token = self._token
        if token is None:
            return False
        log.info("Cancelling in-flight request")
        token.cancel("user")
        return True

    async def wait_idle(self) -> None:
        task = self._task
        if task is not None:
            await asyncio.wait({task})

    async def close(self, timeout: float = 10.0) -> None:
        self.cancel()
        task = self._task
        if task is None:
            return
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            log.warning("Runner did not settle after cancel; cancelling task")
            task.cancel()
            await asyncio.wait({task})

    async def _run(
        self,
        prompt: str,
        attachments: tuple[ImageAttachment, ...],
        token: CancelToken,
    ) -> None:
        options = RunOptions(
            permission_mode=self.permission_mode,
            model=self.model,
            resume_token=self.resume_token,
        )
        failed = False
        try:
            events = self._runner.run(
                prompt, attachments=attachments, options=options, cancel=token
            )
            async with aclosing(events):
                async for kind, content in events:
                    if token.cancelled:
                        break
                    if kind == "error":
                        failed = True
                        await self._fail(str(content))
                        continue
                    await self._handle_event(kind, content)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not token.cancelled:
                log.exception("Runner failed")
                failed = True
                await self._fail(str(exc) or type(exc).__name__)
        finally:
            if self._token is token:
                self._token = None
                self._busy = False
                self._task = None

        if token.cancelled:
            await self._emit("output", CANCELLED_NOTICE)
            await self._emit("error", SessionError("cancelled", cancelled=True))
        elif not failed:
            await self._emit("complete")

    async def _fail(self, message: str) -> None:
        await self._emit("output", error_notice(message))
        await self._emit("error", SessionError(message))

    async def _handle_event(self, kind: str, content: object) -> None:
        if kind == "session_id":
            token = str(content)
            if token and token != self.resume_token:
                self.resume_token = token
                await self._emit("session_token", token)
        elif kind == "init":
            reported = content.get("slash_commands") if isinstance(content, dict) else None
            if reported is not None:
                self._reported_commands = parse_reported_commands(reported)
                await self._emit("commands_updated", self.get_commands())
        elif kind == "text":
            await self._emit("output", str(content))
        elif kind == "tool":
            await self._emit("output", f"\n{content}\n")
        elif kind == "result":
            log.debug("Run finished: %s", content)
