"""Runners for external agents and shell commands."""

from termbridge.runners.cancellation import CancelToken
from termbridge.runners.claude import ClaudeRunner
from termbridge.runners.ports import Runner, RunnerEvent, RunOptions
from termbridge.runners.registry import create_runner
from termbridge.runners.shell import ShellRunner

__all__ = [
    "CancelToken",
    "ClaudeRunner",
    "Runner",
    "RunnerEvent",
    "RunOptions",
    "ShellRunner",
    "create_runner",
]
