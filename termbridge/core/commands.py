"""Slash-command discovery and the model catalog offered to remote clients."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from termbridge.models import ModelInfo, SlashCommand

log = logging.getLogger(__name__)

AVAILABLE_MODELS: tuple[ModelInfo, ...] = (
    ModelInfo("default", "Sonnet 4", "Default model"),
    ModelInfo("sonnet", "Sonnet 4", "Fast and capable"),
    ModelInfo("opus", "Opus 4", "Most capable"),
    ModelInfo("haiku", "Haiku 3.5", "Fastest"),
)


def model_display_name(model: str) -> str:
    for info in AVAILABLE_MODELS:
        if info.value == model:
            return info.display_name
    return model


def _cmd(name: str, description: str, argument_hint: str = "") -> SlashCommand:
    return SlashCommand(name=name, description=description, argument_hint=argument_hint)


# Known Claude Code built-ins, used when the agent has not reported its own list.
FALLBACK_COMMANDS: tuple[SlashCommand, ...] = (
    _cmd("help", "Show all commands and custom slash commands"),
    _cmd("clear", "Clear the conversation history"),
    _cmd("compact", "Compress conversation by summarizing older messages"),
    _cmd("rewind", "Go back to a previous message in the session"),
    _cmd("context", "Check context and excluded skills"),
    _cmd("config", "Configure settings interactively"),
    _cmd("permissions", "View or update tool permissions"),
    _cmd("allowed-tools", "Configure tool permissions interactively"),
    _cmd("model", "Change the AI model"),
    _cmd("vim", "Enable vim-style editing mode"),
    _cmd("hooks", "Configure hooks"),
    _cmd("mcp", "Manage MCP servers"),
    _cmd("agents", "Manage subagents (create, edit, list)"),
    _cmd("terminal-setup", "Install terminal shortcuts for iTerm2/VS Code"),
    _cmd("install-github-app", "Set up GitHub Actions integration"),
    _cmd("ide", "Open in IDE or configure IDE integration"),
    _cmd("init", "Initialize the project and generate CLAUDE.md"),
    _cmd("memory", "Edit CLAUDE.md memory file"),
    _cmd("add-dir", "Add a directory to the context", "<path>"),
    _cmd("commit", "Commit changes to git with a generated message"),
    _cmd("review", "Review code changes"),
    _cmd("review-pr", "Review a GitHub pull request", "<pr-url>"),
    _cmd("pr-comments", "Get comments from a GitHub pull request"),
    _cmd("release-notes", "Generate release notes"),
    _cmd("security-review", "Perform a security review"),
    _cmd("login", "Log in to your Anthropic account"),
    _cmd("logout", "Log out of your Anthropic account"),
    _cmd("doctor", "Check installation health and configuration"),
    _cmd("bug", "Report a bug"),
    _cmd("cost", "Show token usage and cost"),
    _cmd("status", "Show current session status"),
    _cmd("keybindings-help", "Show keyboard shortcuts"),
)


def extract_description(path: Path) -> str:
    """Front-matter `description:`, else the first heading or non-empty line."""
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").split("\n")
    except OSError:
        return ""

    if lines and lines[0].strip() == "---":
        for line in lines[1:]:
            if not line:
                continue
            if line.strip() == "---":
                break
            if line.startswith("description:"):
                return line[len("description:"):].strip().strip("\"'")

    for line in lines:
        stripped = line.strip()
        if stripped.startswith("# "):
            return stripped[2:]
        if stripped and not stripped.startswith("---"):
            return stripped[:100]
    return ""


def scan_command_dir(directory: Path) -> list[SlashCommand]:
    """`*.md` files become commands; one level of subdirectory is a namespace."""
    if not directory.is_dir():
        return []
    commands: list[SlashCommand] = []
    try:
        entries = sorted(directory.iterdir())
    except OSError:
        log.warning("Could not scan %s", directory, exc_info=True)
        return []

    for entry in entries:
        if entry.is_dir():
            try:
                files = sorted(entry.glob("*.md"))
            except OSError:
                log.warning("Could not scan %s", entry, exc_info=True)
                continue
            for f in files:
                commands.append(_cmd(f"{entry.name}:{f.stem}", extract_description(f)))
        elif entry.is_file() and entry.suffix == ".md":
            commands.append(_cmd(entry.stem, extract_description(entry)))
    return commands


def scan_custom_commands(working_dir: str | Path, home: Path | None = None) -> list[SlashCommand]:
    home = home if home is not None else Path.home()
    dirs = (
        home / ".claude" / "commands",
        Path(working_dir) / ".claude" / "commands",
    )
    found: list[SlashCommand] = []
    for d in dirs:
        found.extend(scan_command_dir(d))
    log.debug("Found %d custom commands", len(found))
    return found


def merge_commands(*groups: Iterable[SlashCommand]) -> list[SlashCommand]:
    """Concatenate groups, keeping the first command seen for each name."""
    seen: set[str] = set()
    merged: list[SlashCommand] = []
    for group in groups:
        for cmd in group:
            if not cmd.name or cmd.name in seen:
                continue
            seen.add(cmd.name)
            merged.append(cmd)
    return merged


def parse_reported_commands(raw: object) -> list[SlashCommand]:
    """Agent init reports commands as strings or {name, description, argumentHint}."""
    if not isinstance(raw, list):
        return []
    out: list[SlashCommand] = []
    for item in raw:
        if isinstance(item, str):
            out.append(_cmd(item.lstrip("/"), ""))
        elif isinstance(item, dict) and item.get("name"):
            out.append(
                _cmd(
                    str(item["name"]).lstrip("/"),
                    str(item.get("description") or ""),
                    str(item.get("argumentHint") or ""),
                )
            )
    return out
