"""Claude stream-json event processing.

Separates parsing/logging concerns from the subprocess orchestration in
`termbridge/runners/claude/runner.py`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from termbridge.runners.base import RunState
from termbridge.runners.ports import RunnerEvent

Event = RunnerEvent


@dataclass
class ClaudeResult:
    """Final result from a Claude run."""

    text: str
    session_id: str | None
    cost: float
    turns: int
    tool_count: int
    total_tokens: int
    duration_s: float


def tool_note(name: str) -> str:
    return f"[Using tool: {name}]"


class ClaudeEventProcessor:
    def __init__(
        self,
        *,
        log_to_file: Callable[[str], None],
        log_response: Callable[[str], None],
    ):
        self._log_to_file = log_to_file
        self._log_response = log_response

    def _handle_system_init(self, event: dict, state: RunState) -> list[Event]:
        if event.get("subtype") != "init":
            return []
        events: list[Event] = []
        session_id = event.get("session_id")
        if isinstance(session_id, str) and session_id:
            state.session_id = session_id
            events.append(("session_id", session_id))

        init: dict[str, object] = {}
        commands = event.get("slash_commands")
        if isinstance(commands, list):
            init["slash_commands"] = commands
        mode = event.get("permissionMode")
        if isinstance(mode, str) and mode:
            init["permission_mode"] = mode
        model = event.get("model")
        if isinstance(model, str) and model:
            init["model"] = model
        if init:
            events.append(("init", init))
        return events

    def _handle_assistant_text(self, block: dict, state: RunState) -> Event | None:
        text = block.get("text", "")
        if not isinstance(text, str) or not text.strip():
            return None
        state.text = text
        self._log_response(text)
        return ("text", text)

    def _handle_assistant_tool(self, block: dict, state: RunState) -> Event:
        state.tool_count += 1
        name = str(block.get("name") or "?")
        note = tool_note(name)
        self._log_to_file(f"{note}\n")
        return ("tool", note)

    def _handle_assistant(self, event: dict, state: RunState) -> list[Event]:
        events: list[Event] = []
        message = event.get("message")
        content = message.get("content", []) if isinstance(message, dict) else []

        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                result = self._handle_assistant_text(block, state)
                if result:
                    events.append(result)
            elif block_type == "tool_use":
                events.append(self._handle_assistant_tool(block, state))

        return events

    def _handle_result(self, event: dict, state: RunState) -> Event:
        state.saw_result = True

        if event.get("is_error"):
            state.saw_error = True
            return ("error", str(event.get("result") or "Unknown error"))

        cost = float(event.get("total_cost_usd", 0) or 0)
        state.cost = cost
        usage = event.get("usage", {}) or {}
        total_tokens = (
            usage.get("input_tokens", 0)
            + usage.get("cache_creation_input_tokens", 0)
            + usage.get("cache_read_input_tokens", 0)
            + usage.get("output_tokens", 0)
        )
        result = ClaudeResult(
            text=state.text,
            session_id=state.session_id,
            cost=cost,
            turns=int(event.get("num_turns", 0) or 0),
            tool_count=state.tool_count,
            total_tokens=int(total_tokens),
            duration_s=(event.get("duration_ms", 0) or 0) / 1000,
        )
        return ("result", result)

    def parse_event(self, event: dict, state: RunState) -> list[Event]:
        event_type = event.get("type")

        if event_type == "system":
            return self._handle_system_init(event, state)
        if event_type == "assistant":
            return self._handle_assistant(event, state)
        if event_type == "result":
            return [self._handle_result(event, state)]

        return []
