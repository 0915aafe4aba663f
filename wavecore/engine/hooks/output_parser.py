"""Interpret hook output.

A JSON object on stdout takes precedence over the exit code. Without one,
exit code 0 continues, 2 blocks, and anything else is a non-blocking
failure.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from .models import HookEvent, HookExecutionResult, HookValidationResult, ParsedHookOutput

logger = logging.getLogger(__name__)

EXIT_CODE_BLOCK = 2
BLOCK_BY_EXIT_CODE_REASON = "Hook requested to block execution (exit code 2)"
COMMON_FIELDS = ("continue", "stopReason", "systemMessage", "hookSpecificOutput")
PERMISSION_DECISIONS = ("allow", "deny", "ask")


def extract_json(output: str) -> str | None:
    """Find a JSON object in mixed output.

    The object starts on the first line beginning with ``{`` and ends
    where the braces balance.
    """
    text = output.strip()
    if not text:
        return None
    lines = text.split("\n")
    start = next((i for i, line in enumerate(lines) if line.strip().startswith("{")), None)
    if start is None:
        try:
            json.loads(text)
        except json.JSONDecodeError:
            return None
        return text

    depth = 0
    end = None
    for i in range(start, len(lines)):
        for ch in lines[i]:
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = i
                    break
        if end is not None:
            break
    candidate = "\n".join(lines[start:] if end is None else lines[start:end + 1])
    try:
        json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return candidate


def _looks_like_json(text: str) -> bool:
    text = text.strip()
    return (text.startswith("{") and text.endswith("}")) or (
        text.startswith("[") and text.endswith("]")
    )


def _validate_pre_tool_use(output: dict[str, Any], errors: list[str]) -> None:
    decision = output.get("permissionDecision")
    if not decision:
        errors.append("hookSpecificOutput.permissionDecision: required for PreToolUse hooks")
    elif decision not in PERMISSION_DECISIONS:
        errors.append(
            "hookSpecificOutput.permissionDecision: must be one of "
            + ", ".join(PERMISSION_DECISIONS)
        )
    reason = output.get("permissionDecisionReason")
    if not isinstance(reason, str) or not reason.strip():
        errors.append("hookSpecificOutput.permissionDecisionReason: required non-empty string")
    updated = output.get("updatedInput")
    if "updatedInput" in output and updated is not None and not isinstance(updated, dict):
        errors.append("hookSpecificOutput.updatedInput: must be an object or null")


def _validate_block_decision(output: dict[str, Any], errors: list[str]) -> None:
    decision = output.get("decision")
    if decision is not None and decision != "block":
        errors.append('hookSpecificOutput.decision: must be "block" when provided')
    if decision == "block":
        reason = output.get("reason")
        if not isinstance(reason, str) or not reason.strip():
            errors.append("hookSpecificOutput.reason: required when decision is block")


def validate_json_output(data: Any, event: HookEvent) -> HookValidationResult:
    errors: list[str] = []
    warnings: list[str] = []
    if not isinstance(data, dict):
        return HookValidationResult(
            valid=False, errors=["root: hook output must be a JSON object"],
        )
    if not data:
        warnings.append("root: empty JSON object")

    if "continue" in data:
        if not isinstance(data["continue"], bool):
            errors.append("continue: must be a boolean")
    else:
        warnings.append("continue: not specified, defaulting to true")

    if data.get("continue") is False:
        reason = data.get("stopReason")
        if not isinstance(reason, str) or not reason.strip():
            errors.append("stopReason: required non-empty string when continue is false")
    elif "stopReason" in data:
        warnings.append("stopReason: ignored when continue is true")

    if "systemMessage" in data and not isinstance(data["systemMessage"], str):
        errors.append("systemMessage: must be a string")

    unknown = [k for k in data if k not in COMMON_FIELDS]
    if unknown:
        warnings.append(f"root: unknown fields {', '.join(unknown)}")

    specific = data.get("hookSpecificOutput")
    if specific is not None:
        if not isinstance(specific, dict):
            errors.append("hookSpecificOutput: must be an object or null")
        else:
            if specific.get("hookEventName") != event.value:
                errors.append(
                    f'hookSpecificOutput.hookEventName: must be "{event.value}", '
                    f'got "{specific.get("hookEventName")}"'
                )
            if event == HookEvent.PRE_TOOL_USE:
                _validate_pre_tool_use(specific, errors)
            else:
                _validate_block_decision(specific, errors)
    elif event == HookEvent.PRE_TOOL_USE:
        warnings.append("hookSpecificOutput: PreToolUse hook gave no permission decision")

    return HookValidationResult(valid=not errors, errors=errors, warnings=warnings)


def _coerce_continue(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value in ("false", 0):
        return False
    return True


def parse_json_output(data: dict[str, Any], event: HookEvent) -> ParsedHookOutput:
    validation = validate_json_output(data, event)
    stop_reason = data.get("stopReason")
    system_message = data.get("systemMessage")
    specific = data.get("hookSpecificOutput")
    parsed = ParsedHookOutput(
        source="json",
        continue_=_coerce_continue(data.get("continue", True)),
        stop_reason=str(stop_reason) if stop_reason is not None else None,
        system_message=str(system_message) if system_message is not None else None,
        hook_specific=specific if isinstance(specific, dict) else None,
        error_messages=[*validation.errors, *(f"Warning - {w}" for w in validation.warnings)],
    )
    if not parsed.continue_ and not parsed.stop_reason:
        parsed.stop_reason = "Hook requested to stop execution without providing a reason"
    if validation.errors:
        logger.debug("Hook JSON output has validation errors: %s", validation.errors)
    return parsed


def parse_exit_code(result: HookExecutionResult) -> ParsedHookOutput:
    messages: list[str] = []
    if result.stderr.strip():
        messages.append(result.stderr.strip())
    if result.stdout.strip() and not _looks_like_json(result.stdout):
        messages.append(f"Hook output: {result.stdout.strip()}")

    if result.timed_out:
        return ParsedHookOutput(
            source="exitcode",
            system_message="Hook timed out",
            error_messages=["Non-blocking error: hook timed out", *messages],
        )
    if result.exit_code == 0:
        return ParsedHookOutput(source="exitcode", error_messages=messages)
    if result.exit_code == EXIT_CODE_BLOCK:
        return ParsedHookOutput(
            source="exitcode",
            continue_=False,
            stop_reason=BLOCK_BY_EXIT_CODE_REASON,
            error_messages=messages,
        )
    return ParsedHookOutput(
        source="exitcode",
        system_message=f"Hook completed with non-zero exit code {result.exit_code}",
        error_messages=[f"Non-blocking error: exit code {result.exit_code}", *messages],
    )


def parse_hook_output(result: HookExecutionResult, event: HookEvent) -> ParsedHookOutput:
    """JSON first, exit code as the fallback."""
    if not result.timed_out:
        candidate = extract_json(result.stdout) if result.stdout else None
        if candidate is not None:
            data = json.loads(candidate)
            if isinstance(data, dict):
                return parse_json_output(data, event)
    return parse_exit_code(result)
