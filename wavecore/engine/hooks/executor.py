"""Run hook commands as isolated child processes.

Each command runs under ``/bin/sh -c`` in its own process group with the
JSON payload on stdin and ``WAVE_PROJECT_DIR`` in its environment. A
command that outlives its timeout gets SIGTERM, then SIGKILL after a
fixed grace period. Nothing here raises: spawn errors and unsafe
commands come back as failed results.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from typing import Any

from wavecore.shared.services.process_groups import terminate_process_group

from .models import HookEvent, HookExecutionContext, HookExecutionResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
MAX_TIMEOUT_SECONDS = 300.0
KILL_GRACE_SECONDS = 5.0
PROJECT_DIR_ENV = "WAVE_PROJECT_DIR"

_DANGEROUS_PATTERNS = [
    re.compile(r"\b(rm\s+-rf\s+/|rm\s+-rf\s+~|rm\s+-rf\s+\*)", re.IGNORECASE),
    re.compile(r"\bdd\s+if=", re.IGNORECASE),
    re.compile(r":\(\)\s*\{.*\}"),
    re.compile(r"\beval\s*[(\s]", re.IGNORECASE),
    re.compile(r"\bexec\s+", re.IGNORECASE),
]


def is_command_safe(command: str) -> bool:
    if not isinstance(command, str) or not command.strip():
        return False
    return not any(p.search(command.strip()) for p in _DANGEROUS_PATTERNS)


def build_hook_payload(context: HookExecutionContext) -> dict[str, Any]:
    """The JSON object a hook reads from stdin."""
    payload: dict[str, Any] = {
        "session_id": context.session_id or "unknown",
        "transcript_path": context.transcript_path,
        "cwd": context.cwd or context.project_dir,
        "hook_event_name": context.event.value,
    }
    if context.event in (HookEvent.PRE_TOOL_USE, HookEvent.POST_TOOL_USE):
        if context.tool_name:
            payload["tool_name"] = context.tool_name
        if context.tool_input is not None:
            payload["tool_input"] = context.tool_input
    if context.event == HookEvent.POST_TOOL_USE and context.tool_response is not None:
        payload["tool_response"] = context.tool_response
    if context.event == HookEvent.USER_PROMPT_SUBMIT and context.user_prompt is not None:
        payload["user_prompt"] = context.user_prompt
    if context.subagent_type:
        payload["subagent_type"] = context.subagent_type
    if context.event == HookEvent.NOTIFICATION:
        if context.message is not None:
            payload["message"] = context.message
        if context.notification_type is not None:
            payload["notification_type"] = context.notification_type
    return payload


def build_hook_env(context: HookExecutionContext) -> dict[str, str]:
    return {**os.environ, **context.env, PROJECT_DIR_ENV: context.project_dir}


async def _read_all(stream: asyncio.StreamReader | None) -> str:
    if stream is None:
        return ""
    data = await stream.read()
    return data.decode(errors="replace")


async def execute_command(
    command: str,
    context: HookExecutionContext,
    *,
    timeout: float | None = None,
    cwd: str | None = None,
) -> HookExecutionResult:
    """Run one hook command and collect its outcome."""
    started = time.monotonic()
    limit = min(timeout if timeout is not None else DEFAULT_TIMEOUT_SECONDS, MAX_TIMEOUT_SECONDS)

    def _elapsed() -> float:
        return (time.monotonic() - started) * 1000

    if not is_command_safe(command):
        logger.warning("Hook command rejected by safety check: %s", command)
        return HookExecutionResult(
            success=False,
            command=command,
            exit_code=-1,
            stderr="Command contains potentially unsafe characters",
            duration_ms=_elapsed(),
        )

    logger.info(
        "Executing %s hook tool=%s: %s",
        context.event.value, context.tool_name or "N/A", command,
    )
    stdin_data = json.dumps(build_hook_payload(context), indent=2).encode()

    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd or context.project_dir,
            env=build_hook_env(context),
            start_new_session=True,
        )
    except OSError as exc:
        logger.error("Hook process failed to start: %s", exc)
        return HookExecutionResult(
            success=False, command=command, stderr=str(exc), duration_ms=_elapsed(),
        )

    stdout_task = asyncio.create_task(_read_all(proc.stdout))
    stderr_task = asyncio.create_task(_read_all(proc.stderr))

    async def _feed_and_wait() -> None:
        # A hook that never reads stdin must not stall past its timeout.
        if proc.stdin is not None:
            try:
                proc.stdin.write(stdin_data)
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("Hook closed stdin before reading its payload")
            finally:
                proc.stdin.close()
        await proc.wait()

    timed_out = False
    try:
        await asyncio.wait_for(_feed_and_wait(), timeout=limit)
    except asyncio.TimeoutError:
        timed_out = True
        logger.warning("Hook timed out after %.1fs: %s", limit, command)
        await terminate_process_group(proc, KILL_GRACE_SECONDS, label="hook")

    stdout, stderr = await asyncio.gather(stdout_task, stderr_task)
    exit_code = proc.returncode
    success = not timed_out and exit_code == 0
    duration = _elapsed()
    if success:
        logger.info("Hook completed in %.0fms (exit code %s)", duration, exit_code)
    else:
        logger.warning(
            "Hook failed in %.0fms (exit code %s, timed out %s)",
            duration, exit_code, timed_out,
        )
        if stderr.strip():
            logger.warning("Hook stderr: %s", stderr.strip())

    return HookExecutionResult(
        success=success,
        command=command,
        exit_code=exit_code,
        stdout=stdout.strip(),
        stderr=stderr.strip(),
        duration_ms=duration,
        timed_out=timed_out,
    )
