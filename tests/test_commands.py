"""Tests for slash-command discovery and the model catalog."""

from __future__ import annotations

from termbridge.core.commands import (
    FALLBACK_COMMANDS,
    extract_description,
    merge_commands,
    model_display_name,
    parse_reported_commands,
    scan_custom_commands,
)
from termbridge.models import SlashCommand


def test_description_prefers_front_matter(tmp_path):
    path = tmp_path / "deploy.md"
    path.write_text('---\ndescription: "Ship it"\n---\n# Deploy\n')

    assert extract_description(path) == "Ship it"


def test_description_falls_back_to_heading_then_text(tmp_path):
    heading = tmp_path / "a.md"
    heading.write_text("\n# Run the tests\nbody\n")
    plain = tmp_path / "b.md"
    plain.write_text("Just do the thing\n")

    assert extract_description(heading) == "Run the tests"
    assert extract_description(plain) == "Just do the thing"


def test_scan_finds_project_user_and_namespaced_commands(tmp_path):
    home = tmp_path / "home"
    project = tmp_path / "project"
    (home / ".claude" / "commands").mkdir(parents=True)
    (home / ".claude" / "commands" / "standup.md").write_text("# Standup notes\n")
    ns = project / ".claude" / "commands" / "git"
    ns.mkdir(parents=True)
    (ns / "squash.md").write_text("Squash commits\n")
    (project / ".claude" / "commands" / "notes.txt").write_text("ignored")

    found = scan_custom_commands(project, home=home)

    assert [(c.name, c.description) for c in found] == [
        ("standup", "Standup notes"),
        ("git:squash", "Squash commits"),
    ]


def test_merge_keeps_first_occurrence():
    custom = [SlashCommand("review", "Custom review")]

    merged = merge_commands(custom, FALLBACK_COMMANDS)

    reviews = [c for c in merged if c.name == "review"]
    assert reviews == [SlashCommand("review", "Custom review")]
    assert len(merged) == len(FALLBACK_COMMANDS)


def test_parse_reported_commands_strips_slashes():
    parsed = parse_reported_commands(["/compact", {"name": "/todo", "argumentHint": "<item>"}, 3])

    assert [c.name for c in parsed] == ["compact", "todo"]
    assert parsed[1].argument_hint == "<item>"
    assert parse_reported_commands(None) == []


def test_model_display_names():
    assert model_display_name("opus") == "Opus 4"
    assert model_display_name("custom-model") == "custom-model"
