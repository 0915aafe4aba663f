"""Hook configuration and event dispatch.

Configuration comes from the ``hooks`` key of the user and project
settings documents; for each event the project list replaces the user
list. Hook commands run in configuration order. Their results are then
turned into message-state effects and a ``HookOutcome`` for the caller.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from wavecore.engine.errors import HookConfigurationError
from wavecore.engine.models import ToolStage
from wavecore.shared.services.settings_store import SettingsStore

from . import matcher
from .executor import DEFAULT_TIMEOUT_SECONDS, execute_command, is_command_safe
from .models import (
    TOOL_EVENTS,
    HookCommand,
    HookConfiguration,
    HookEvent,
    HookEventConfig,
    HookExecutionContext,
    HookExecutionResult,
    HookOutcome,
    HookValidationResult,
    ParsedHookOutput,
    is_valid_hook_event,
)
from .output_parser import BLOCK_BY_EXIT_CODE_REASON, EXIT_CODE_BLOCK, parse_hook_output

if TYPE_CHECKING:
    from wavecore.engine.message_state import MessageState

logger = logging.getLogger(__name__)


def _validate_event_config(event: HookEvent, raw: Any, index: int) -> list[str]:
    prefix = f"Hook event {event.value}[{index}]"
    if not isinstance(raw, dict):
        return [f"{prefix}: Invalid hook event configuration structure"]
    hooks = raw.get("hooks")
    if not isinstance(hooks, list) or not hooks:
        return [f"{prefix}: Invalid hook event configuration structure"]

    errors: list[str] = []
    pattern = raw.get("matcher")
    if pattern is not None and not isinstance(pattern, str):
        errors.append(f"{prefix}: matcher must be a string")
    elif pattern:
        if event not in TOOL_EVENTS:
            errors.append(f"{prefix}: Event {event.value} should not have a matcher")
        elif not matcher.is_valid_pattern(pattern):
            errors.append(f"{prefix}: Invalid matcher pattern: {pattern}")

    for cmd_index, cmd in enumerate(hooks):
        where = f"{prefix}.hooks[{cmd_index}]"
        if (
            not isinstance(cmd, dict)
            or cmd.get("type") != "command"
            or not isinstance(cmd.get("command"), str)
            or not cmd["command"].strip()
        ):
            errors.append(f"{where}: expected {{\"type\": \"command\", \"command\": \"...\"}}")
            continue
        if not is_command_safe(cmd["command"]):
            errors.append(f"{where}: Command may be unsafe: {cmd['command']}")
        timeout = cmd.get("timeout")
        if timeout is not None and (
            isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
        ):
            errors.append(f"{where}: timeout must be a positive number")
    return errors


def validate_hooks_section(raw: Any) -> HookValidationResult:
    """Validate the ``hooks`` object of one settings document."""
    if raw is None:
        return HookValidationResult(valid=True)
    if not isinstance(raw, dict):
        return HookValidationResult(valid=False, errors=["hooks property must be an object"])
    errors: list[str] = []
    for name, configs in raw.items():
        if not is_valid_hook_event(name):
            errors.append(f"Invalid hook event: {name}")
            continue
        if not isinstance(configs, list):
            errors.append(f"Hook event {name} must be an array of configurations")
            continue
        for index, cfg in enumerate(configs):
            errors.extend(_validate_event_config(HookEvent(name), cfg, index))
    return HookValidationResult(valid=not errors, errors=errors)


def _parse_hooks_section(raw: dict[str, Any]) -> HookConfiguration:
    parsed: HookConfiguration = {}
    for name, configs in raw.items():
        parsed[HookEvent(name)] = [
            HookEventConfig(
                matcher=cfg.get("matcher") or None,
                hooks=[
                    HookCommand(command=c["command"], timeout=c.get("timeout"))
                    for c in cfg["hooks"]
                ],
            )
            for cfg in configs
        ]
    return parsed


class HookManager:
    """Load hook configuration, run hooks for an event, and apply their results."""

    def __init__(
        self,
        workdir: str,
        *,
        settings: SettingsStore | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        env: dict[str, str] | None = None,
        continue_on_failure: bool = True,
    ) -> None:
        self._workdir = workdir
        self._settings = settings
        self._timeout = timeout_seconds
        self._env = dict(env or {})
        self._continue_on_failure = continue_on_failure
        self._configuration: HookConfiguration = {}

    # ── Configuration ──

    @property
    def configuration(self) -> HookConfiguration:
        return {event: list(configs) for event, configs in self._configuration.items()}

    def clear_configuration(self) -> None:
        self._configuration = {}

    @staticmethod
    def validate_configuration(raw: Any, config_path: str = "settings") -> None:
        """Raises HookConfigurationError listing every problem in ``raw``."""
        validation = validate_hooks_section(raw)
        if not validation.valid:
            logger.error("Invalid hook configuration in %s: %s", config_path, validation.errors)
            raise HookConfigurationError(config_path, validation.errors)

    def load_configuration(
        self,
        user_hooks: dict[str, Any] | None = None,
        project_hooks: dict[str, Any] | None = None,
        *,
        user_path: str = "user settings",
        project_path: str = "project settings",
    ) -> None:
        """Validate both sources, then let project events replace user events.

        Raises HookConfigurationError on the first invalid source.
        """
        self.validate_configuration(user_hooks, user_path)
        self.validate_configuration(project_hooks, project_path)
        merged: HookConfiguration = {}
        for raw in (user_hooks, project_hooks):
            if raw:
                merged.update(_parse_hooks_section(raw))
        self._configuration = merged
        logger.info(
            "Hooks configuration loaded: %d event type(s), %d command(s)",
            len(merged), self.get_configuration_stats()["total_commands"],
        )

    def load_configuration_from_settings(self) -> None:
        if self._settings is None:
            return
        user = self._settings.load_user()
        project = self._settings.load_project()
        for settings in (user, project):
            env = settings.get("env")
            if isinstance(env, dict):
                self._env.update({str(k): str(v) for k, v in env.items()})
        self.load_configuration(
            user.get("hooks"),
            project.get("hooks"),
            user_path=str(self._settings.user_path),
            project_path=str(self._settings.project_path),
        )

    def _config_applies(
        self, config: HookEventConfig, event: HookEvent, tool_name: str | None,
    ) -> bool:
        if event not in TOOL_EVENTS or not config.matcher:
            return True
        return matcher.matches(config.matcher, tool_name)

    def has_hooks(self, event: HookEvent, tool_name: str | None = None) -> bool:
        return any(
            self._config_applies(cfg, event, tool_name)
            for cfg in self._configuration.get(event, [])
        )

    def get_configuration_stats(self) -> dict[str, Any]:
        breakdown = {e.value: len(self._configuration.get(e, [])) for e in HookEvent}
        return {
            "total_events": len(self._configuration),
            "total_configs": sum(breakdown.values()),
            "total_commands": sum(
                len(cfg.hooks) for cfgs in self._configuration.values() for cfg in cfgs
            ),
            "event_breakdown": breakdown,
        }

    # ── Execution ──

    async def execute_hooks(
        self, event: HookEvent, context: HookExecutionContext,
    ) -> list[HookExecutionResult]:
        """Run every matching command for ``event`` in configuration order.

        Each command is shielded from cancellation of the caller; only its
        own timeout ends it early.
        """
        if event in TOOL_EVENTS and not context.tool_name:
            logger.error("%s hooks need a tool name in their context", event.value)
            return [HookExecutionResult(
                success=False,
                stderr=f"Invalid execution context: {event.value} event requires a tool name",
            )]

        configs = [
            cfg for cfg in self._configuration.get(event, [])
            if self._config_applies(cfg, event, context.tool_name)
        ]
        if not configs:
            return []

        context = replace(context, event=event, env={**self._env, **context.env})
        results: list[HookExecutionResult] = []
        for cfg in configs:
            for cmd in cfg.hooks:
                result = await asyncio.shield(
                    execute_command(cmd.command, context, timeout=cmd.timeout or self._timeout)
                )
                results.append(result)
                if not result.success and not self._continue_on_failure:
                    logger.warning("Stopping %s hooks after failure: %s", event.value, cmd.command)
                    return results
        logger.debug(
            "%s hooks: %d/%d succeeded",
            event.value, sum(r.success for r in results), len(results),
        )
        return results

    # ── Result processing ──

    @staticmethod
    def _blocking_reason(
        event: HookEvent, result: HookExecutionResult, parsed: ParsedHookOutput,
    ) -> str | None:
        if parsed.source == "json":
            if not parsed.continue_:
                return parsed.stop_reason
            specific = parsed.hook_specific or {}
            if event == HookEvent.PRE_TOOL_USE:
                if specific.get("permissionDecision") == "deny":
                    return specific.get("permissionDecisionReason") or "Blocked by PreToolUse hook"
            elif specific.get("decision") == "block":
                return specific.get("reason") or "Blocked by hook"
            return None
        if not result.timed_out and result.exit_code == EXIT_CODE_BLOCK:
            return result.stderr.strip() or BLOCK_BY_EXIT_CODE_REASON
        return None

    @staticmethod
    def _apply_block(
        event: HookEvent,
        reason: str,
        message_state: MessageState | None,
        tool_id: str | None,
        tool_parameters: str | None,
    ) -> bool:
        """Record a blocking result. Returns whether the caller must stop."""
        if event == HookEvent.USER_PROMPT_SUBMIT:
            if message_state is not None:
                message_state.add_error_block(reason)
                message_state.remove_last_user_message()
            return True
        if event == HookEvent.PRE_TOOL_USE:
            if message_state is not None and tool_id:
                message_state.update_tool_block(
                    tool_id,
                    stage=ToolStage.END,
                    parameters=tool_parameters,
                    result=reason,
                    success=False,
                    error=reason,
                )
            return True
        if event == HookEvent.POST_TOOL_USE:
            if message_state is not None:
                message_state.add_user_text_message(reason)
            return False
        if event in (HookEvent.STOP, HookEvent.SUBAGENT_STOP):
            if message_state is not None:
                message_state.add_user_text_message(reason)
            return True
        if message_state is not None:
            message_state.add_error_block(reason)
        return False

    def process_hook_results(
        self,
        event: HookEvent,
        results: list[HookExecutionResult],
        message_state: MessageState | None = None,
        tool_id: str | None = None,
        tool_parameters: str | None = None,
    ) -> HookOutcome:
        outcome = HookOutcome()
        if not results:
            return outcome
        parsed = [(r, parse_hook_output(r, event)) for r in results]

        # A blocking result wins over everything else.
        for result, output in parsed:
            reason = self._blocking_reason(event, result, output)
            if reason is None:
                continue
            logger.info("%s hook blocked: %s", event.value, reason)
            outcome.should_block = self._apply_block(
                event, reason, message_state, tool_id, tool_parameters,
            )
            outcome.error_message = reason
            if event == HookEvent.PRE_TOOL_USE:
                outcome.permission_decision = "deny"
            return outcome

        for result, output in parsed:
            if output.system_message and output.source == "json":
                outcome.system_messages.append(output.system_message)
            if output.source == "json":
                specific = output.hook_specific or {}
                if event == HookEvent.PRE_TOOL_USE:
                    decision = specific.get("permissionDecision")
                    if decision == "ask" or (decision == "allow" and outcome.permission_decision is None):
                        outcome.permission_decision = decision
                    if isinstance(specific.get("updatedInput"), dict):
                        outcome.updated_input = dict(specific["updatedInput"])
                elif event == HookEvent.USER_PROMPT_SUBMIT:
                    context = specific.get("additionalContext")
                    if isinstance(context, str) and context.strip():
                        outcome.additional_context.append(context.strip())
                continue

            if result.timed_out or result.exit_code != 0:
                message = result.stderr.strip() or (
                    f"Hook timed out: {result.command}" if result.timed_out
                    else "Hook execution failed"
                )
                if message_state is not None:
                    message_state.add_error_block(message)
            elif event == HookEvent.USER_PROMPT_SUBMIT and result.stdout.strip():
                outcome.additional_context.append(result.stdout.strip())

        if message_state is not None:
            for context in outcome.additional_context:
                message_state.add_user_text_message(context)
        return outcome

    async def run(
        self,
        event: HookEvent,
        context: HookExecutionContext,
        message_state: MessageState | None = None,
        tool_id: str | None = None,
        tool_parameters: str | None = None,
    ) -> HookOutcome:
        """``execute_hooks`` followed by ``process_hook_results``."""
        if not self.has_hooks(event, context.tool_name):
            return HookOutcome()
        results = await self.execute_hooks(event, context)
        return self.process_hook_results(event, results, message_state, tool_id, tool_parameters)
