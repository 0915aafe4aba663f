"""Subagent definitions: discovery, parsing and selection.

Definitions are markdown files with a YAML front matter header::

    ---
    name: code-reviewer
    description: Expert reviewer. Use proactively after code changes.
    tools: Read, Grep, Bash
    model: inherit
    ---
    You are a senior reviewer...

Project definitions (``<workdir>/.wave/agents``) shadow user definitions
(``~/.wave/agents``), which shadow the built-in ones.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml

from .errors import SubagentNotFoundError, SubagentParseError
from .models import SubagentConfiguration

logger = logging.getLogger(__name__)

AGENTS_DIRNAME = "agents"
NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9-]*$")
SCOPE_PRIORITY = {"project": 1, "user": 2, "builtin": 3}
EMPHASIS_KEYWORDS = ("must", "proactively", "always", "expert", "specialist", "only")

_FRONT_MATTER = re.compile(r"^---\s*\n(.*?)\n---\s*\n?(.*)$", re.DOTALL)
_WORD = re.compile(r"[a-z0-9]+")
_STOPWORDS = frozenset({
    "the", "and", "for", "with", "that", "this", "you", "are", "use", "when",
    "from", "into", "any", "all", "can", "will", "your", "not", "but", "have",
})

GENERAL_PURPOSE_PROMPT = """You are an agent. Given the user's message, use the tools available to complete the task. Do what has been asked; nothing more, nothing less. When you complete the task, respond with a detailed writeup.

Guidelines:
- For file searches, search broadly first and narrow down.
- Be thorough: check multiple locations and naming conventions.
- Never create files unless they are necessary for the goal. Prefer editing an existing file.
- In your final response share relevant file names and code snippets. File paths must be absolute."""


def builtin_subagents() -> list[SubagentConfiguration]:
    return [
        SubagentConfiguration(
            name="general-purpose",
            description=(
                "General-purpose agent for researching complex questions, searching "
                "for code, and executing multi-step tasks."
            ),
            system_prompt=GENERAL_PURPOSE_PROMPT,
            file_path="<builtin:general-purpose>",
            scope="builtin",
            priority=SCOPE_PRIORITY["builtin"],
        ),
    ]


def _parse_tools(value: Any, file_path: str) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("[") and text.endswith("]"):
            text = text[1:-1]
        return [t.strip().strip("\"'") for t in text.split(",") if t.strip()]
    if isinstance(value, list) and all(isinstance(t, str) for t in value):
        return [t.strip() for t in value if t.strip()]
    raise SubagentParseError(file_path, "'tools' must be a list or a comma-separated string")


def parse_subagent_text(text: str, file_path: str, scope: str) -> SubagentConfiguration:
    """Parse one definition. Raises SubagentParseError."""
    match = _FRONT_MATTER.match(text)
    if match is None:
        raise SubagentParseError(file_path, "missing YAML front matter")
    try:
        header = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as exc:
        raise SubagentParseError(file_path, f"invalid YAML front matter: {exc}") from exc
    if not isinstance(header, dict):
        raise SubagentParseError(file_path, "front matter must be a mapping")

    name = header.get("name")
    description = header.get("description")
    if not name or not isinstance(name, str):
        raise SubagentParseError(file_path, "missing required field 'name'")
    if not description or not isinstance(description, str):
        raise SubagentParseError(file_path, "missing required field 'description'")
    if not NAME_PATTERN.match(name):
        raise SubagentParseError(
            file_path,
            f"invalid subagent name '{name}': must start with a letter and contain "
            "only letters, numbers, and hyphens",
        )
    model = header.get("model")
    if model is not None and not isinstance(model, str):
        raise SubagentParseError(file_path, f"invalid model '{model}': must be a string")

    body = match.group(2).strip()
    if not body:
        raise SubagentParseError(file_path, "empty system prompt")

    return SubagentConfiguration(
        name=name,
        description=description.strip(),
        system_prompt=body,
        tools=_parse_tools(header.get("tools"), file_path),
        model=model.strip() if model else None,
        file_path=file_path,
        scope=scope,
        priority=SCOPE_PRIORITY[scope],
    )


def parse_subagent_file(path: Path, scope: str) -> SubagentConfiguration:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SubagentParseError(str(path), str(exc)) from exc
    return parse_subagent_text(text, str(path), scope)


def scan_subagent_directory(directory: Path, scope: str) -> list[SubagentConfiguration]:
    """Parse every ``*.md`` file; invalid files are logged and skipped."""
    if not directory.is_dir():
        return []
    configurations: list[SubagentConfiguration] = []
    for path in sorted(directory.glob("*.md")):
        if not path.is_file():
            continue
        try:
            configurations.append(parse_subagent_file(path, scope))
        except SubagentParseError as exc:
            logger.warning("Skipping subagent definition: %s", exc)
    return configurations


def load_subagent_configurations(
    workdir: str | Path,
    home_dir: str | Path,
    *,
    include_builtin: bool = True,
) -> list[SubagentConfiguration]:
    """All definitions, project over user over builtin, ordered by priority then name."""
    by_name: dict[str, SubagentConfiguration] = {}
    sources = [
        builtin_subagents() if include_builtin else [],
        scan_subagent_directory(Path(home_dir) / ".wave" / AGENTS_DIRNAME, "user"),
        scan_subagent_directory(Path(workdir) / ".wave" / AGENTS_DIRNAME, "project"),
    ]
    for configs in sources:
        for config in configs:
            by_name[config.name] = config
    return sorted(by_name.values(), key=lambda c: (c.priority, c.name))


def _words(text: str) -> set[str]:
    return {w for w in _WORD.findall(text.lower()) if len(w) > 2 and w not in _STOPWORDS}


def specificity_score(config: SubagentConfiguration, task_description: str) -> float:
    """How well ``config`` fits a task. Zero means no overlap at all."""
    task_words = _words(task_description)
    candidate_words = _words(config.description) | _words(config.name.replace("-", " "))
    overlap = len(task_words & candidate_words)
    if overlap == 0:
        return 0.0
    description = config.description.lower()
    emphasis = sum(1 for kw in EMPHASIS_KEYWORDS if re.search(rf"\b{kw}\b", description))
    detail = min(len(candidate_words), 60) / 20
    return overlap * 10 + emphasis * 2 + detail


class SubagentRegistry:
    """Loaded subagent definitions for one working directory."""

    def __init__(
        self,
        workdir: str | Path,
        home_dir: str | Path,
        *,
        include_builtin: bool = True,
    ) -> None:
        self._workdir = workdir
        self._home_dir = home_dir
        self._include_builtin = include_builtin
        self._configurations: list[SubagentConfiguration] | None = None

    def load(self) -> list[SubagentConfiguration]:
        self._configurations = load_subagent_configurations(
            self._workdir, self._home_dir, include_builtin=self._include_builtin,
        )
        logger.info(
            "Subagents loaded: %s",
            ", ".join(c.name for c in self._configurations) or "none",
        )
        return list(self._configurations)

    @property
    def configurations(self) -> list[SubagentConfiguration]:
        if self._configurations is None:
            self.load()
        return list(self._configurations or [])

    @property
    def names(self) -> list[str]:
        return [c.name for c in self.configurations]

    def register(self, config: SubagentConfiguration) -> None:
        """Add or replace a definition without touching the filesystem."""
        configs = [c for c in self.configurations if c.name != config.name]
        configs.append(config)
        self._configurations = sorted(configs, key=lambda c: (c.priority, c.name))
        logger.info("Subagent registered: %s (%s)", config.name, config.scope)

    def find(self, name: str) -> SubagentConfiguration | None:
        return next((c for c in self.configurations if c.name == name), None)

    def get(self, name: str) -> SubagentConfiguration:
        """Raises SubagentNotFoundError listing every known name."""
        config = self.find(name)
        if config is None:
            raise SubagentNotFoundError(name, self.names)
        return config

    def select(
        self, subagent_type: str | None = None, description: str = "",
    ) -> SubagentConfiguration:
        """Pick a subagent by exact name, or else by best description match.

        Deterministic: the highest score wins, ties go to lower priority
        value and then to the alphabetically first name.
        """
        if subagent_type:
            return self.get(subagent_type)
        scored = [
            (specificity_score(c, description), c) for c in self.configurations
        ]
        candidates = [(s, c) for s, c in scored if s > 0]
        if not candidates:
            raise SubagentNotFoundError(description or "<empty>", self.names)
        candidates.sort(key=lambda sc: (-sc[0], sc[1].priority, sc[1].name))
        return candidates[0][1]
