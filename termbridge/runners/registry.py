"""Runner registry.

This provides a single place to map an engine name to its concrete runner
implementation. Callers should depend on the `Runner` port.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from termbridge.runners.ports import Runner


def create_runner(
    engine: str,
    *,
    working_dir: str,
    output_dir: Path | None = None,
    session_name: str | None = None,
) -> Runner:
    engine = (engine or "").strip().lower()

    if engine == "claude":
        from termbridge.runners.claude.runner import ClaudeRunner

        return ClaudeRunner(working_dir, output_dir, session_name)

    if engine == "shell":
        from termbridge.runners.shell import ShellRunner

        return ShellRunner(working_dir, output_dir, session_name)

    raise ValueError(f"Unknown engine: {engine}")
