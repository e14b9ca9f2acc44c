"""Shared runner plumbing: per-run state and the on-disk transcript."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path


@dataclass
class RunState:
    """What a single unit of work has produced so far."""

    start_time: datetime = field(default_factory=datetime.now)
    # Resume token reported by the agent, if any.
    session_id: str | None = None
    text: str = ""
    tool_count: int = 0
    cost: float = 0.0
    saw_result: bool = False
    saw_error: bool = False

    @property
    def duration_s(self) -> float:
        return (datetime.now() - self.start_time).total_seconds()


class BaseRunner:
    """Base class for runners that spawn a local process per unit of work.

    When both `output_dir` and `session_name` are given, prompts and responses
    are appended to `<output_dir>/<session_name>.log`.
    """

    engine = "base"

    def __init__(
        self,
        working_dir: str,
        output_dir: Path | None = None,
        session_name: str | None = None,
    ):
        self.working_dir = working_dir
        self.session_name = session_name
        self.output_file: Path | None = None
        if session_name and output_dir is not None:
            output_dir.mkdir(parents=True, exist_ok=True)
            self.output_file = output_dir / f"{session_name}.log"

    def _log_to_file(self, content: str) -> None:
        if self.output_file is None:
            return
        with self.output_file.open("a", encoding="utf-8") as f:
            f.write(content)

    def _append_entry(self, label: str, body: str) -> None:
        stamp = datetime.now().strftime("%H:%M:%S")
        self._log_to_file(f"\n[{stamp}] {self.engine} {label}:\n{body}\n")

    def _log_prompt(self, prompt: str) -> None:
        self._append_entry("prompt", prompt)

    def _log_response(self, text: str) -> None:
        self._append_entry("response", text)
