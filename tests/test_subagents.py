"""Subagent definition parsing, discovery precedence and selection."""

from __future__ import annotations

from pathlib import Path

import pytest

from wavecore.engine.errors import SubagentNotFoundError, SubagentParseError
from wavecore.engine.models import SubagentConfiguration
from wavecore.engine.subagents import (
    SubagentRegistry,
    parse_subagent_text,
    scan_subagent_directory,
)

REVIEWER = """---
name: reviewer
description: Expert code reviewer. Use proactively after code changes.
tools: Read, Grep, Bash
model: inherit
---
You review code.
"""


def _write_agent(directory: Path, filename: str, text: str) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / filename).write_text(text)


def test_parse_definition() -> None:
    config = parse_subagent_text(REVIEWER, "reviewer.md", "project")
    assert config.name == "reviewer"
    assert config.tools == ["Read", "Grep", "Bash"]
    assert config.model == "inherit"
    assert config.system_prompt == "You review code."
    assert config.scope == "project"
    assert config.priority == 1


def test_parse_tools_as_yaml_list() -> None:
    text = "---\nname: lister\ndescription: Lists\ntools: [Read, LS]\n---\nList things.\n"
    assert parse_subagent_text(text, "l.md", "user").tools == ["Read", "LS"]


@pytest.mark.parametrize(
    "text",
    [
        "no front matter at all",
        "---\nname: x\n---\nbody\n",
        "---\nname: 1bad\ndescription: d\n---\nbody\n",
        "---\nname: empty\ndescription: d\n---\n\n",
        "---\nname: [unclosed\ndescription: d\n---\nbody\n",
    ],
)
def test_invalid_definitions_raise(text: str) -> None:
    with pytest.raises(SubagentParseError):
        parse_subagent_text(text, "bad.md", "project")


def test_scan_skips_invalid_files(tmp_path: Path) -> None:
    _write_agent(tmp_path, "reviewer.md", REVIEWER)
    _write_agent(tmp_path, "broken.md", "nothing here")
    _write_agent(tmp_path, "notes.txt", REVIEWER)
    configs = scan_subagent_directory(tmp_path, "project")
    assert [c.name for c in configs] == ["reviewer"]


def test_project_overrides_user_and_builtin(tmp_path: Path) -> None:
    home = tmp_path / "home"
    work = tmp_path / "work"
    _write_agent(home / ".wave" / "agents", "reviewer.md", REVIEWER.replace("You review code.", "user prompt"))
    _write_agent(work / ".wave" / "agents", "reviewer.md", REVIEWER.replace("You review code.", "project prompt"))

    registry = SubagentRegistry(work, home)
    assert registry.names == ["reviewer", "general-purpose"]
    reviewer = registry.get("reviewer")
    assert reviewer.system_prompt == "project prompt"
    assert reviewer.scope == "project"


def test_unknown_subagent_lists_available(tmp_path: Path) -> None:
    registry = SubagentRegistry(tmp_path, tmp_path / "home")
    with pytest.raises(SubagentNotFoundError) as exc_info:
        registry.get("missing")
    assert "general-purpose" in str(exc_info.value)
    assert exc_info.value.available == ["general-purpose"]


def test_select_by_description_is_deterministic(tmp_path: Path) -> None:
    registry = SubagentRegistry(tmp_path, tmp_path / "home", include_builtin=False)
    registry.register(SubagentConfiguration(
        name="test-runner",
        description="Runs the test suite and reports failures",
        system_prompt="run tests",
    ))
    registry.register(SubagentConfiguration(
        name="doc-writer", description="Writes documentation", system_prompt="docs",
    ))
    assert registry.select(None, "run the failing test suite").name == "test-runner"
    assert registry.select("doc-writer").name == "doc-writer"
    with pytest.raises(SubagentNotFoundError):
        registry.select(None, "deploy kubernetes cluster")


def test_select_tie_prefers_priority_then_name(tmp_path: Path) -> None:
    registry = SubagentRegistry(tmp_path, tmp_path / "home", include_builtin=False)
    for name, priority in (("beta-helper", 2), ("alpha-helper", 2), ("gamma-helper", 1)):
        registry.register(SubagentConfiguration(
            name=name, description="helps with tasks", system_prompt="x", priority=priority,
        ))
    assert registry.select(None, "helps").name == "gamma-helper"
    registry = SubagentRegistry(tmp_path, tmp_path / "home", include_builtin=False)
    for name in ("beta-helper", "alpha-helper"):
        registry.register(SubagentConfiguration(
            name=name, description="helps with tasks", system_prompt="x", priority=2,
        ))
    assert registry.select(None, "helps").name == "alpha-helper"
