"""Permission policy for restricted tools.

Decision order for one tool call:

1. ``permissions.deny`` rules            -> deny
2. ``bypassPermissions`` mode            -> allow
3. ``acceptEdits`` mode, file tools      -> allow inside the Safe Zone, else deny
4. ``plan`` mode                         -> deny Bash/Delete, writes only to the plan file
5. allow rules (persisted + session)     -> allow
6. non-restricted tool                   -> allow
7. permission callback                   -> its decision (errors deny)
8. no callback                           -> deny

The Safe Zone is the working directory plus any additional directories.
Bash commands are decomposed into atomic commands; ``pwd``/``true``/
``false`` and ``cd``/``ls`` with literal paths inside the Safe Zone are
always allowed and never persisted. Any expansion, glob or redirection
makes a part unsafe.
"""
from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from wavecore.shared.services.settings_store import SettingsStore

from .bash_parser import (
    get_smart_prefix,
    is_dangerous_command,
    normalize_command,
    split_bash_command,
)
from .config import PermissionCallback
from .models import (
    PermissionBehavior,
    PermissionDecision,
    PermissionMode,
    ToolPermissionContext,
    _make_id,
)

logger = logging.getLogger(__name__)

RESTRICTED_TOOLS: frozenset[str] = frozenset({
    "Edit", "MultiEdit", "Delete", "Write", "Bash", "ExitPlanMode", "AskUserQuestion",
})
EDIT_TOOLS: frozenset[str] = frozenset({"Edit", "MultiEdit", "Delete", "Write"})
PLAN_WRITE_TOOLS: frozenset[str] = frozenset({"Edit", "MultiEdit", "Write"})
PATH_RULE_TOOLS: frozenset[str] = frozenset({"Read", "Write", "Edit", "MultiEdit", "Delete", "LS"})

ALWAYS_SAFE_COMMANDS: frozenset[str] = frozenset({"pwd", "true", "false"})
PATH_BOUND_SAFE_COMMANDS: frozenset[str] = frozenset({"cd", "ls"})

_COMMAND_SHAPE = re.compile(r"^(\w+)(\s+.*)?$", re.DOTALL)
_SHELL_WORD = re.compile(r"""(?:[^\s"']+|"[^"]*"|'[^']*')+""")
_RULE_SHAPE = re.compile(r"^(\w+)\((.*)\)$", re.DOTALL)
# Expansion, globbing, substitution or redirection: the target is not a literal path.
_SHELL_EXPANSION = re.compile(r"[$`~*?\[\]{}()<>|;&]")


def allow() -> PermissionDecision:
    return PermissionDecision(behavior=PermissionBehavior.ALLOW)


def deny(message: str) -> PermissionDecision:
    return PermissionDecision(behavior=PermissionBehavior.DENY, message=message)


def _path_args(args: str) -> list[str]:
    words = [w for w in _SHELL_WORD.findall(args) if not w.startswith("-")]
    return [re.sub(r"""^(['"])(.*)\1$""", r"\2", w) for w in words]


def _target_path(tool_input: dict[str, Any]) -> str | None:
    value = tool_input.get("file_path") or tool_input.get("target_file")
    return str(value) if value else None


def is_path_inside(path: str, root: str) -> bool:
    path = os.path.realpath(path)
    root = os.path.realpath(root)
    try:
        return os.path.commonpath([path, root]) == root
    except ValueError:
        return False


@dataclass
class PermissionRequest:
    """A permission prompt waiting for an answer."""
    context: ToolPermissionContext
    request_id: str = field(default_factory=_make_id)
    future: asyncio.Future | None = field(default=None, repr=False)


class PermissionGate:
    """Pending permission requests plus the function that resumes them.

    ``request`` matches the PermissionCallback signature, so it can be
    handed to the engine directly. A UI lists ``pending()`` and answers
    with ``resolve(request_id, decision)``.
    """

    def __init__(
        self,
        on_request: Callable[[PermissionRequest], None] | None = None,
    ) -> None:
        self._pending: dict[str, PermissionRequest] = {}
        self._on_request = on_request

    def pending(self) -> list[PermissionRequest]:
        return list(self._pending.values())

    async def request(self, context: ToolPermissionContext) -> PermissionDecision:
        loop = asyncio.get_running_loop()
        req = PermissionRequest(context=context, future=loop.create_future())
        self._pending[req.request_id] = req
        logger.info(
            "Permission request %s pending for tool=%s",
            req.request_id[:8], context.tool_name,
        )
        if self._on_request is not None:
            self._on_request(req)
        try:
            return await req.future
        finally:
            self._pending.pop(req.request_id, None)

    def resolve(self, request_id: str, decision: PermissionDecision) -> bool:
        req = self._pending.get(request_id)
        if req is None or req.future is None or req.future.done():
            return False
        req.future.set_result(decision)
        return True

    def cancel_all(self, message: str = "Permission request cancelled") -> int:
        cancelled = 0
        for req in list(self._pending.values()):
            if req.future is not None and not req.future.done():
                req.future.set_result(deny(message))
                cancelled += 1
        return cancelled


class PermissionEngine:
    """Decides whether a tool call may run and persists granted rules."""

    def __init__(
        self,
        workdir: str,
        *,
        settings: SettingsStore | None = None,
        mode: PermissionMode = PermissionMode.DEFAULT,
        allowed_rules: Iterable[str] | None = None,
        denied_rules: Iterable[str] | None = None,
        additional_directories: Iterable[str] = (),
        plan_file_path: str | None = None,
        callback: PermissionCallback | None = None,
        on_mode_change: Callable[[PermissionMode], None] | None = None,
    ) -> None:
        self._workdir = workdir
        self._settings = settings
        self._mode = mode
        self._allowed_rules: list[str] = list(allowed_rules or [])
        self._denied_rules: list[str] = list(denied_rules or [])
        self._temporary_rules: list[str] = []
        self._additional_directories = [
            os.path.abspath(os.path.join(workdir, d)) for d in additional_directories
        ]
        self._plan_file_path = plan_file_path
        self._callback = callback
        self._on_mode_change = on_mode_change

    # ── State ──

    @property
    def mode(self) -> PermissionMode:
        return self._mode

    def set_mode(self, mode: PermissionMode) -> None:
        if mode == self._mode:
            return
        logger.info("Permission mode changed: %s -> %s", self._mode.value, mode.value)
        self._mode = mode
        if self._on_mode_change is not None:
            self._on_mode_change(mode)

    @property
    def allowed_rules(self) -> list[str]:
        return list(self._allowed_rules)

    @property
    def denied_rules(self) -> list[str]:
        return list(self._denied_rules)

    def set_callback(self, callback: PermissionCallback | None) -> None:
        self._callback = callback

    def set_plan_file_path(self, path: str | None) -> None:
        self._plan_file_path = path

    def reload_rules(self) -> None:
        """Re-read allow/deny lists from the settings documents."""
        if self._settings is None:
            return
        self._allowed_rules = self._settings.load_allowed_rules()
        self._denied_rules = self._settings.load_denied_rules()
        logger.debug(
            "Permission rules loaded: allow=%d deny=%d",
            len(self._allowed_rules), len(self._denied_rules),
        )

    def add_temporary_rules(self, rules: Iterable[str]) -> None:
        """Allow rules that last until ``clear_temporary_rules``; never persisted."""
        rules = list(rules)
        logger.debug("Adding %d temporary permission rule(s): %s", len(rules), rules)
        self._temporary_rules.extend(rules)

    @property
    def temporary_rules(self) -> list[str]:
        return list(self._temporary_rules)

    def clear_temporary_rules(self) -> None:
        if self._temporary_rules:
            logger.debug("Clearing %d temporary permission rule(s)", len(self._temporary_rules))
        self._temporary_rules = []

    @staticmethod
    def is_restricted(tool_name: str) -> bool:
        return tool_name in RESTRICTED_TOOLS

    # ── Safe Zone and safe commands ──

    def is_inside_safe_zone(self, target: str, workdir: str | None = None) -> bool:
        base = workdir or self._workdir
        absolute = target if os.path.isabs(target) else os.path.join(base, target)
        if is_path_inside(absolute, base):
            return True
        return any(is_path_inside(absolute, d) for d in self._additional_directories)

    def _split_normalized(self, command: str) -> list[str]:
        return [normalize_command(p) for p in split_bash_command(command)]

    def _path_bound_args(self, part: str) -> tuple[str, list[str]] | None:
        """``(cmd, paths)`` for a literal ``cd``/``ls`` part, else None."""
        if _SHELL_EXPANSION.search(part):
            return None
        match = _COMMAND_SHAPE.match(normalize_command(part))
        if match is None or match.group(1) not in PATH_BOUND_SAFE_COMMANDS:
            return None
        cmd = match.group(1)
        paths = _path_args((match.group(2) or "").strip())
        if cmd == "cd" and not paths:
            # A bare cd goes to $HOME.
            return None
        return cmd, paths

    def is_safe_command(self, part: str, workdir: str | None = None) -> bool:
        """True for an atomic command that never needs a rule."""
        if _SHELL_EXPANSION.search(part):
            return False
        match = _COMMAND_SHAPE.match(normalize_command(part))
        if match is None:
            return False
        cmd = match.group(1)
        if cmd in ALWAYS_SAFE_COMMANDS:
            return True
        if cmd in PATH_BOUND_SAFE_COMMANDS:
            bound = self._path_bound_args(part)
            if bound is None:
                return False
            return all(self.is_inside_safe_zone(p, workdir) for p in bound[1])
        return False

    def _is_out_of_bounds_navigation(self, part: str, workdir: str | None) -> bool:
        match = _COMMAND_SHAPE.match(normalize_command(part))
        if match is None or match.group(1) not in PATH_BOUND_SAFE_COMMANDS:
            return False
        bound = self._path_bound_args(part)
        if bound is None:
            return True
        return any(not self.is_inside_safe_zone(p, workdir) for p in bound[1])

    # ── Context ──

    def create_context(
        self,
        tool_name: str,
        tool_input: dict[str, Any] | None = None,
        tool_call_id: str | None = None,
    ) -> ToolPermissionContext:
        tool_input = dict(tool_input or {})
        context = ToolPermissionContext(
            tool_name=tool_name,
            permission_mode=self._mode,
            tool_input=tool_input,
            tool_call_id=tool_call_id,
        )
        command = tool_input.get("command")
        if tool_name == "Bash" and command:
            workdir = tool_input.get("workdir")
            raw_parts = split_bash_command(str(command))
            if len(raw_parts) == 1:
                context.suggested_prefix = get_smart_prefix(normalize_command(raw_parts[0]))
            context.hide_persistent_option = any(
                is_dangerous_command(normalize_command(p))
                or self._is_out_of_bounds_navigation(p, workdir)
                for p in raw_parts
            )
        return context

    # ── Rules ──

    def matches_rule(self, context: ToolPermissionContext, rule: str) -> bool:
        if rule == context.tool_name:
            return True
        match = _RULE_SHAPE.match(rule)
        if match is None or match.group(1) != context.tool_name:
            return False
        pattern = match.group(2)

        if context.tool_name == "Bash":
            command = str(context.tool_input.get("command") or "")
            for part in self._split_normalized(command):
                if pattern.endswith(":*"):
                    if part.startswith(pattern[:-2]):
                        return True
                elif part == pattern:
                    return True
            return False

        if context.tool_name in PATH_RULE_TOOLS:
            target = (
                context.tool_input.get("file_path")
                or context.tool_input.get("target_file")
                or context.tool_input.get("path")
            )
            if target:
                return fnmatch.fnmatchcase(str(target), pattern)
        return False

    def _rules(self) -> list[str]:
        return [*self._allowed_rules, *self._temporary_rules]

    def is_allowed_by_rule(self, context: ToolPermissionContext) -> bool:
        rules = self._rules()
        command = context.tool_input.get("command")
        if context.tool_name == "Bash" and command:
            workdir = context.tool_input.get("workdir")
            parts = split_bash_command(str(command))
            if not parts:
                return False
            for raw in parts:
                if self.is_safe_command(raw, workdir):
                    continue
                part = normalize_command(raw)
                part_context = ToolPermissionContext(
                    tool_name="Bash",
                    permission_mode=context.permission_mode,
                    tool_input={**context.tool_input, "command": part},
                )
                if not any(self.matches_rule(part_context, r) for r in rules):
                    return False
            return True
        return any(self.matches_rule(context, r) for r in rules)

    def expand_bash_rule(self, command: str, workdir: str | None = None) -> list[str]:
        """Rules to persist for ``command``: one per non-safe atomic command.

        Safe commands are skipped and duplicates collapse, so
        ``mkdir test && cd test`` yields ``["Bash(mkdir test)"]``.
        """
        rules: list[str] = []
        for raw in split_bash_command(command):
            part = normalize_command(raw)
            if not part or self.is_safe_command(raw, workdir):
                continue
            rule = f"Bash({part})"
            if rule not in rules:
                rules.append(rule)
        return rules

    # ── Decisions ──

    async def check_permission(
        self, context: ToolPermissionContext, *, restricted: bool | None = None,
    ) -> PermissionDecision:
        """Decide one call. ``restricted`` overrides the built-in restricted set."""
        tool = context.tool_name
        for rule in self._denied_rules:
            if self.matches_rule(context, rule):
                logger.warning("PERM_DENY_RULE tool=%s rule=%s", tool, rule)
                return deny(
                    f"Access to tool '{tool}' is explicitly denied by rule: {rule}"
                )

        mode = context.permission_mode
        if mode == PermissionMode.BYPASS:
            return allow()

        if mode == PermissionMode.ACCEPT_EDITS and tool in EDIT_TOOLS:
            target = _target_path(context.tool_input)
            if target and not self.is_inside_safe_zone(target, context.tool_input.get("workdir")):
                logger.warning("PERM_SAFE_ZONE tool=%s target=%s", tool, target)
                return deny(
                    f"Tool '{tool}' attempted to modify a file outside the Safe Zone: "
                    f"{target}. Operations outside the Safe Zone always require "
                    "manual confirmation."
                )
            return allow()

        if mode == PermissionMode.PLAN:
            if tool == "Bash":
                return deny("Bash commands are not allowed in plan mode.")
            if tool == "Delete":
                return deny("Delete operations are not allowed in plan mode.")
            if tool in PLAN_WRITE_TOOLS:
                target = _target_path(context.tool_input)
                if (
                    self._plan_file_path
                    and target
                    and os.path.abspath(os.path.join(self._workdir, target))
                    == os.path.abspath(os.path.join(self._workdir, self._plan_file_path))
                ):
                    return allow()
                return deny(
                    "In plan mode, you are only allowed to edit the designated "
                    f"plan file: {self._plan_file_path or 'not set'}."
                )

        if self.is_allowed_by_rule(context):
            logger.debug("PERM_RULE_ALLOW tool=%s", tool)
            return allow()

        if restricted is None:
            restricted = self.is_restricted(tool)
        if not restricted:
            return allow()

        return await self.request_approval(context)

    async def request_approval(self, context: ToolPermissionContext) -> PermissionDecision:
        """Ask the callback directly, skipping rules and modes."""
        tool, mode = context.tool_name, context.permission_mode
        if self._callback is None:
            logger.warning("PERM_NO_CALLBACK tool=%s mode=%s", tool, mode.value)
            return deny(
                f"Tool '{tool}' requires permission approval. "
                "No permission callback configured."
            )
        try:
            decision = await self._callback(context)
        except Exception as exc:
            logger.error("Error in permission callback for tool=%s: %s", tool, exc)
            return deny("Error in permission callback")
        logger.info(
            "PERM_CALLBACK tool=%s behavior=%s rule=%s mode=%s",
            tool, decision.behavior.value, decision.new_permission_rule,
            decision.new_permission_mode.value if decision.new_permission_mode else None,
        )
        return decision

    def apply_decision(
        self, context: ToolPermissionContext, decision: PermissionDecision,
    ) -> list[str]:
        """Apply mode changes and persist granted rules. Returns the saved rules."""
        if decision.new_permission_mode is not None:
            self.set_mode(decision.new_permission_mode)
        if not decision.allowed or not decision.new_permission_rule:
            return []

        rule = decision.new_permission_rule
        if context.tool_name == "Bash":
            match = _RULE_SHAPE.match(rule)
            command = match.group(2) if match and match.group(1) == "Bash" else None
            command = command or str(context.tool_input.get("command") or "")
            rules = self.expand_bash_rule(command, context.tool_input.get("workdir"))
        else:
            rules = [rule]

        saved: list[str] = []
        for new_rule in rules:
            if new_rule not in self._allowed_rules:
                self._allowed_rules.append(new_rule)
            if self._settings is not None:
                try:
                    self._settings.add_permission_rule(new_rule)
                except OSError as exc:
                    logger.error("Failed to persist permission rule %s: %s", new_rule, exc)
                    continue
            saved.append(new_rule)
        return saved

    async def check(
        self,
        tool_name: str,
        tool_input: dict[str, Any] | None = None,
        tool_call_id: str | None = None,
        *,
        restricted: bool | None = None,
    ) -> PermissionDecision:
        """Build the context, decide, and apply any mode/rule mutation."""
        context = self.create_context(tool_name, tool_input, tool_call_id)
        decision = await self.check_permission(context, restricted=restricted)
        self.apply_decision(context, decision)
        return decision
