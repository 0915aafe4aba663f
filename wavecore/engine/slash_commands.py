"""Slash commands: the built-in ``/clear`` and markdown commands on disk.

Custom commands are markdown files with an optional YAML front matter
header::

    ---
    description: Create a commit from the staged changes
    model: gemini-2.5-flash
    allowed-tools: Bash(git add:*), Bash(git commit:*)
    ---
    Current status: !`git status --short`

    Commit the staged changes with message: $ARGUMENTS

Files live in ``<workdir>/.wave/commands`` (project) and
``~/.wave/commands`` (user); project commands shadow user commands with
the same id. ``review.md`` is ``/review``; one directory level namespaces
a command, so ``api/deploy.md`` is ``/api:deploy``. Deeper files are
ignored.

Running a command substitutes ``$ARGUMENTS`` and ``$1``..``$N``, replaces
every ``!`cmd``` with the command's output, appends the result as the
user's turn and runs the loop. ``allowed-tools`` limits the tools offered
to the model and is granted as temporary permission rules for the run.
"""
from __future__ import annotations

import asyncio
import logging
import re
import shutil
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from wavecore.shared.services.process_groups import (
    signal_process_group,
    terminate_process_group,
)

from .errors import SlashCommandParseError

if TYPE_CHECKING:
    from .loop_driver import LoopDriver
    from .message_state import MessageState
    from .permissions import PermissionEngine

logger = logging.getLogger(__name__)

COMMANDS_DIRNAME = "commands"
BASH_TIMEOUT_SECONDS = 30.0

_FRONT_MATTER = re.compile(r"^---\s*\n(.*?)\n---\s*\n?(.*)$", re.DOTALL)
_PLACEHOLDER = re.compile(r"\$(ARGUMENTS|\d+)")
_BASH_COMMAND = re.compile(r"!`([^`]+)`")
_ARGUMENT = re.compile(r'"((?:\\.|[^"\\])*)"|\'([^\']*)\'|(\S+)')
_RULE_TOOL = re.compile(r"^\s*([A-Za-z0-9_-]+)")


@dataclass
class CustomCommandConfig:
    description: str | None = None
    model: str | None = None
    allowed_tools: list[str] | None = None


@dataclass
class SlashCommand:
    """A registered command. Built-ins have no ``content``."""
    id: str
    name: str
    description: str
    content: str | None = None
    config: CustomCommandConfig = field(default_factory=CustomCommandConfig)
    file_path: str | None = None
    scope: str = "builtin"
    namespace: str | None = None
    segments: list[str] = field(default_factory=list)

    @property
    def is_custom(self) -> bool:
        return self.content is not None

    @property
    def is_nested(self) -> bool:
        return self.namespace is not None


@dataclass
class ParsedSlashCommand:
    is_valid: bool
    command_id: str | None = None
    args: str | None = None


@dataclass
class BashCommandResult:
    command: str
    output: str
    exit_code: int


# ── Arguments ──


def parse_command_arguments(text: str) -> list[str]:
    """Split on whitespace; single and double quotes group words."""
    arguments: list[str] = []
    for match in _ARGUMENT.finditer(text):
        double, single, bare = match.groups()
        if double is not None:
            arguments.append(double.replace('\\"', '"'))
        elif single is not None:
            arguments.append(single)
        else:
            arguments.append(bare)
    return arguments


def has_parameter_placeholders(content: str) -> bool:
    return _PLACEHOLDER.search(content) is not None


def substitute_parameters(content: str, args: str) -> str:
    """``$ARGUMENTS`` is the raw argument string; ``$N`` the Nth argument or ""."""
    positional = parse_command_arguments(args)

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key == "ARGUMENTS":
            return args.strip()
        index = int(key) - 1
        return positional[index] if 0 <= index < len(positional) else ""

    return _PLACEHOLDER.sub(_replace, content)


# ── Markdown ──


def parse_front_matter(text: str) -> tuple[dict[str, Any] | None, str]:
    """Split ``text`` into its YAML header (None when absent) and body.

    Raises ValueError for a header that is not a YAML mapping.
    """
    text = text.replace("\r\n", "\n")
    match = _FRONT_MATTER.match(text)
    if match is None:
        return None, text
    try:
        header = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"invalid YAML front matter: {exc}") from exc
    if not isinstance(header, dict):
        raise ValueError("front matter must be a mapping")
    return header, match.group(2).strip()


def _parse_allowed_tools(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    if isinstance(value, list):
        return [str(t).strip() for t in value if str(t).strip()]
    raise ValueError("'allowed-tools' must be a list or a comma-separated string")


def parse_command_text(text: str, file_path: str) -> tuple[CustomCommandConfig | None, str]:
    """Parse one command file's text. Raises SlashCommandParseError."""
    try:
        header, body = parse_front_matter(text)
        if header is None:
            return None, body.strip()
        model = header.get("model")
        description = header.get("description")
        config = CustomCommandConfig(
            description=str(description).strip() if description else None,
            model=str(model).strip() if model else None,
            allowed_tools=_parse_allowed_tools(header.get("allowed-tools")),
        )
    except ValueError as exc:
        raise SlashCommandParseError(file_path, str(exc)) from exc
    return config, body


def parse_bash_commands(content: str) -> list[str]:
    return [m.group(1).strip() for m in _BASH_COMMAND.finditer(content)]


def replace_bash_commands(content: str, results: list[BashCommandResult]) -> str:
    """Swap each ``!`cmd``` for a fenced transcript of its result, in order.

    Placeholders without a result are left as they are.
    """
    remaining = list(results)

    def _replace(match: re.Match) -> str:
        if not remaining:
            return match.group(0)
        result = remaining.pop(0)
        return f"```\n$ {result.command}\n{result.output}\n```"

    return _BASH_COMMAND.sub(_replace, content)


# ── Discovery ──


def _load_command(path: Path, segments: list[str], scope: str) -> SlashCommand | None:
    try:
        config, body = parse_command_text(path.read_text(encoding="utf-8"), str(path))
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Skipping command file %s: %s", path, exc)
        return None
    except SlashCommandParseError as exc:
        logger.warning("Skipping command file: %s", exc)
        return None
    config = config or CustomCommandConfig()
    name = segments[-1]
    description = config.description or (
        f"Custom command: {name}"
        + (" (supports parameters)" if has_parameter_placeholders(body) else "")
    )
    return SlashCommand(
        id=":".join(segments),
        name=name,
        description=description,
        content=body,
        config=config,
        file_path=str(path),
        scope=scope,
        namespace=segments[0] if len(segments) > 1 else None,
        segments=segments,
    )


def _valid_segment(segment: str) -> bool:
    return bool(segment) and ":" not in segment and not any(c.isspace() for c in segment)


def scan_command_directory(directory: Path, scope: str) -> list[SlashCommand]:
    """Commands in ``directory`` and its immediate subdirectories."""
    if not directory.is_dir():
        return []
    try:
        entries = sorted(directory.iterdir())
    except OSError as exc:
        logger.warning("Cannot read command directory %s: %s", directory, exc)
        return []

    found: list[tuple[Path, list[str]]] = []
    for entry in entries:
        if entry.is_dir():
            try:
                children = sorted(entry.iterdir())
            except OSError as exc:
                logger.warning("Cannot read command directory %s: %s", entry, exc)
                continue
            found.extend(
                (child, [entry.name, child.stem]) for child in children
                if child.suffix == ".md" and child.is_file()
            )
        elif entry.suffix == ".md" and entry.is_file():
            found.append((entry, [entry.stem]))

    commands: list[SlashCommand] = []
    for path, segments in found:
        if not all(_valid_segment(s) for s in segments):
            logger.debug("Ignoring command file with an unusable name: %s", path)
            continue
        command = _load_command(path, segments, scope)
        if command is not None:
            commands.append(command)
    return commands


def load_custom_commands(workdir: str | Path, home_dir: str | Path) -> list[SlashCommand]:
    """Project commands over user commands, sorted by id."""
    by_id: dict[str, SlashCommand] = {}
    for command in scan_command_directory(Path(home_dir) / ".wave" / COMMANDS_DIRNAME, "user"):
        by_id[command.id] = command
    for command in scan_command_directory(Path(workdir) / ".wave" / COMMANDS_DIRNAME, "project"):
        by_id[command.id] = command
    return sorted(by_id.values(), key=lambda c: c.id)


def _tool_names(allowed_tools: list[str]) -> list[str]:
    names: list[str] = []
    for entry in allowed_tools:
        match = _RULE_TOOL.match(entry)
        if match is not None and match.group(1) not in names:
            names.append(match.group(1))
    return names


# ── Manager ──


class SlashCommandManager:
    """Registered slash commands for one conversation."""

    def __init__(
        self,
        workdir: str,
        home_dir: str,
        message_state: MessageState,
        loop_driver: LoopDriver,
        *,
        permission_engine: PermissionEngine | None = None,
        bash_timeout_seconds: float = BASH_TIMEOUT_SECONDS,
        kill_grace_seconds: float = 1.0,
    ) -> None:
        self._workdir = workdir
        self._home_dir = home_dir
        self._state = message_state
        self._loop = loop_driver
        self._permissions = permission_engine
        self._bash_timeout = bash_timeout_seconds
        self._kill_grace = kill_grace_seconds
        self._commands: dict[str, SlashCommand] = {}
        self._running: set[asyncio.subprocess.Process] = set()
        self._aborted = False
        self._register_builtins()

    def _register_builtins(self) -> None:
        self._commands["clear"] = SlashCommand(
            id="clear", name="clear", description="Clear the chat session",
        )

    def load(self) -> list[SlashCommand]:
        """(Re)discover custom commands; built-ins are always kept."""
        self._commands = {}
        self._register_builtins()
        custom = load_custom_commands(self._workdir, self._home_dir)
        for command in custom:
            if command.id in self._commands:
                logger.warning("Custom command /%s shadows a built-in; ignored", command.id)
                continue
            self._commands[command.id] = command
        logger.info("Slash commands loaded: %d custom", len(custom))
        return custom

    @property
    def commands(self) -> list[SlashCommand]:
        return list(self._commands.values())

    def get_custom_commands(self) -> list[SlashCommand]:
        return [c for c in self._commands.values() if c.is_custom]

    def get_command(self, command_id: str) -> SlashCommand | None:
        return self._commands.get(command_id)

    def has_command(self, command_id: str) -> bool:
        return command_id in self._commands

    def parse_and_validate(self, text: str) -> ParsedSlashCommand:
        """Split ``/id args``; valid only for a registered, well-formed id."""
        text = text.strip()
        if not text.startswith("/"):
            return ParsedSlashCommand(is_valid=False)
        parts = text[1:].split(None, 1)
        if not parts:
            return ParsedSlashCommand(is_valid=False)
        command_id = parts[0]
        segments = command_id.split(":")
        if len(segments) > 2 or not all(segments) or not self.has_command(command_id):
            return ParsedSlashCommand(is_valid=False)
        args = parts[1].strip() if len(parts) > 1 else ""
        return ParsedSlashCommand(is_valid=True, command_id=command_id, args=args)

    async def execute_command(self, command_id: str, args: str = "") -> bool:
        """Run a registered command. Returns False for an unknown id."""
        command = self._commands.get(command_id)
        if command is None:
            return False
        if not command.is_custom:
            if command.id == "clear":
                self._state.clear_messages()
            return True
        await self._run_custom(command, args)
        return True

    async def _run_custom(self, command: SlashCommand, args: str) -> None:
        self._aborted = False
        original_input = f"/{command.id} {args}".rstrip()
        logger.info("Running custom command %s", original_input)
        content = command.content or ""
        if has_parameter_placeholders(content):
            content = substitute_parameters(content, args)
        try:
            content = await self._expand_bash(content)
        except Exception as exc:
            logger.error("Custom command /%s failed: %s", command.id, exc)
            self._state.add_error_block(
                f"Failed to execute custom command '{command.name}': {exc}"
            )
            return
        if self._aborted:
            logger.info("Custom command /%s aborted before it reached the model", command.id)
            return

        self._state.add_custom_command_message(command.name, content, original_input)
        allowed = command.config.allowed_tools
        grant = bool(allowed) and self._permissions is not None
        if grant:
            self._permissions.add_temporary_rules(allowed)
        try:
            await self._loop.send(
                allowed_tools=_tool_names(allowed) if allowed else None,
                model=command.config.model,
            )
        finally:
            if grant:
                self._permissions.clear_temporary_rules()

    async def _expand_bash(self, content: str) -> str:
        results: list[BashCommandResult] = []
        for bash_command in parse_bash_commands(content):
            if self._aborted:
                break
            results.append(await self.run_bash_command(bash_command))
        return replace_bash_commands(content, results)

    async def run_bash_command(self, command: str) -> BashCommandResult:
        """Run one ``!`cmd``` in the working directory; failures become output."""
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._workdir,
                start_new_session=True,
                executable=shutil.which("bash") or None,
            )
        except OSError as exc:
            logger.error("Failed to start %r: %s", command, exc)
            return BashCommandResult(command, str(exc), 1)

        self._running.add(proc)
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._bash_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Command timed out after %.0fs: %s", self._bash_timeout, command)
            await terminate_process_group(proc, self._kill_grace, label="slash command")
            return BashCommandResult(
                command, f"Command timed out after {self._bash_timeout:g}s", 1,
            )
        finally:
            self._running.discard(proc)

        output = stdout.decode(errors="replace").strip()
        errors = stderr.decode(errors="replace").strip()
        return BashCommandResult(command, output or errors, proc.returncode or 0)

    def abort_current_command(self) -> None:
        """Stop a running custom command: its shell expansions and its model run."""
        self._aborted = True
        for proc in list(self._running):
            if not signal_process_group(proc, signal.SIGTERM) and proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
        self._loop.abort()
