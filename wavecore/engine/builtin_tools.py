"""Tools the runtime itself owns: Bash, BashOutput, KillBash and Task."""
from __future__ import annotations

import asyncio
import logging
import shutil
from typing import Any

from wavecore.shared.services.process_groups import terminate_process_group

from .errors import SubagentNotFoundError
from .models import BackgroundTaskStatus, ToolResult
from .subagents import SubagentRegistry
from .tools import Tool, ToolContext

logger = logging.getLogger(__name__)

MAX_BASH_TIMEOUT_MS = 600_000
BASH_KILL_GRACE_SECONDS = 1.0


def _missing(param: str) -> ToolResult:
    return ToolResult(success=False, error=f"{param} parameter is required and must be a string")


def _string_arg(args: dict[str, Any], name: str) -> str | None:
    value = args.get(name)
    if not isinstance(value, str) or not value.strip():
        return None
    return value


def _combine(stdout: str, stderr: str) -> str:
    return stdout + ("\n" + stderr if stderr else "")


class BashTool(Tool):
    """Run a shell command in the working directory, or start it in the background."""

    description = (
        "Executes a given bash command with optional timeout. Set "
        "run_in_background to start a long-running command and monitor it "
        "with BashOutput."
    )
    parameters_schema = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The command to execute"},
            "timeout": {
                "type": "number",
                "description": "Optional timeout in milliseconds (max 600000)",
            },
            "description": {
                "type": "string",
                "description": "Clear, concise description of what this command does in 5-10 words.",
            },
            "run_in_background": {
                "type": "boolean",
                "description": "Set to true to run this command in the background.",
            },
        },
        "required": ["command"],
    }

    def __init__(self, kill_grace_seconds: float = BASH_KILL_GRACE_SECONDS) -> None:
        self._kill_grace = kill_grace_seconds

    @property
    def name(self) -> str:
        return "Bash"

    def format_compact_params(self, args: dict[str, Any]) -> str | None:
        command = args.get("command")
        if not isinstance(command, str):
            return None
        return f"{command}{' background' if args.get('run_in_background') else ''}"

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        command = _string_arg(args, "command")
        if command is None:
            return ToolResult(success=False, error="Command parameter is required and must be a string")
        timeout = args.get("timeout")
        if timeout is not None and (
            isinstance(timeout, bool)
            or not isinstance(timeout, (int, float))
            or not 0 <= timeout <= MAX_BASH_TIMEOUT_MS
        ):
            return ToolResult(
                success=False,
                error="Timeout must be a number between 0 and 600000 milliseconds",
            )
        timeout_seconds = timeout / 1000 if timeout else None

        if args.get("run_in_background"):
            if context.background is None:
                return ToolResult(success=False, error="Background execution is not available")
            shell_id = await context.background.start_shell(command, timeout_seconds)
            return ToolResult(
                success=True,
                content=(
                    f"Command started in background with ID: {shell_id}. "
                    f'Use BashOutput tool with bash_id="{shell_id}" to monitor output.'
                ),
                short_result=f"Background process {shell_id} started",
            )
        return await self._run_foreground(command, timeout_seconds, context)

    async def _run_foreground(
        self, command: str, timeout: float | None, context: ToolContext,
    ) -> ToolResult:
        if context.cancelled:
            return ToolResult(success=False, error="Command execution was aborted")
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=context.workdir,
                start_new_session=True,
                executable=shutil.which("bash") or None,
            )
        except OSError as exc:
            return ToolResult(success=False, error=f"Failed to execute command: {exc}")

        stdout: list[str] = []
        stderr: list[str] = []

        async def _read(stream: asyncio.StreamReader | None, sink: list[str]) -> None:
            if stream is None:
                return
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    break
                sink.append(chunk.decode(errors="replace"))

        readers = [
            asyncio.create_task(_read(proc.stdout, stdout)),
            asyncio.create_task(_read(proc.stderr, stderr)),
        ]
        waiter = asyncio.create_task(proc.wait())
        cancel_waiter = asyncio.create_task(context.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {waiter, cancel_waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            logger.warning("Bash command cancelled; terminating pid=%s", proc.pid)
            await terminate_process_group(proc, self._kill_grace, label="bash")
            for reader in readers:
                reader.cancel()
            raise
        finally:
            cancel_waiter.cancel()

        if waiter not in done:
            reason = (
                "Command execution was aborted" if cancel_waiter in done
                else "Command timed out"
            )
            logger.info("%s: %s", reason, command)
            await terminate_process_group(proc, self._kill_grace, label="bash")
            await asyncio.gather(waiter, return_exceptions=True)
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
            return ToolResult(
                success=False,
                content=_combine("".join(stdout), "".join(stderr)),
                error=reason,
            )

        await asyncio.gather(*readers, return_exceptions=True)
        exit_code = waiter.result()
        output = _combine("".join(stdout), "".join(stderr))
        return ToolResult(
            success=exit_code == 0,
            content=output or f"Command executed with exit code: {exit_code}",
            error=f"Command failed with exit code: {exit_code}" if exit_code != 0 else None,
        )


class BashOutputTool(Tool):
    description = "Retrieves output from a running or completed background bash shell"
    parameters_schema = {
        "type": "object",
        "properties": {
            "bash_id": {
                "type": "string",
                "description": "The ID of the background shell to retrieve output from",
            },
            "filter": {
                "type": "string",
                "description": "Optional regular expression to filter the output lines.",
            },
        },
        "required": ["bash_id"],
    }

    @property
    def name(self) -> str:
        return "BashOutput"

    def format_compact_params(self, args: dict[str, Any]) -> str | None:
        bash_id = args.get("bash_id")
        return str(bash_id) if bash_id else None

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        bash_id = _string_arg(args, "bash_id")
        if bash_id is None:
            return _missing("bash_id")
        registry = context.background
        shell = registry.get_shell(bash_id) if registry is not None else None
        output = registry.get_output(bash_id, args.get("filter")) if registry is not None else None
        if shell is None or output is None:
            return ToolResult(success=False, error=f"Background shell with ID {bash_id} not found")

        content = output["stdout"]
        if output["stderr"]:
            content += ("\n" if content else "") + output["stderr"]
        exit_part = f" ({shell.exit_code})" if shell.exit_code is not None else ""
        return ToolResult(
            success=True,
            content=content or "No output available",
            short_result=f"{bash_id}: {output['status']}{exit_part}",
        )


class KillBashTool(Tool):
    description = "Kills a running background bash shell by its ID"
    parameters_schema = {
        "type": "object",
        "properties": {
            "shell_id": {"type": "string", "description": "The ID of the background shell to kill"},
        },
        "required": ["shell_id"],
    }

    @property
    def name(self) -> str:
        return "KillBash"

    def format_compact_params(self, args: dict[str, Any]) -> str | None:
        shell_id = args.get("shell_id")
        return str(shell_id) if shell_id else None

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        shell_id = _string_arg(args, "shell_id")
        if shell_id is None:
            return _missing("shell_id")
        registry = context.background
        shell = registry.get_shell(shell_id) if registry is not None else None
        if shell is None:
            return ToolResult(success=False, error=f"Background shell with ID {shell_id} not found")
        if shell.status != BackgroundTaskStatus.RUNNING:
            return ToolResult(
                success=False,
                error=f"Background shell {shell_id} is not running (status: {shell.status.value})",
            )
        if not await registry.kill_shell(shell_id):
            return ToolResult(success=False, error=f"Failed to kill background shell {shell_id}")
        return ToolResult(
            success=True,
            content=f"Background shell {shell_id} has been killed",
            short_result=f"Killed {shell_id}",
        )


class TaskTool(Tool):
    """Delegate a task to a subagent and return its final answer."""

    parameters_schema = {
        "type": "object",
        "properties": {
            "description": {
                "type": "string",
                "description": "A short (3-5 word) description of the task",
            },
            "prompt": {"type": "string", "description": "The task for the agent to perform"},
            "subagent_type": {
                "type": "string",
                "description": "The type of specialized agent to use for this task",
            },
        },
        "required": ["description", "prompt", "subagent_type"],
    }

    def __init__(self, registry: SubagentRegistry) -> None:
        self._registry = registry

    @property
    def name(self) -> str:
        return "Task"

    @property
    def description(self) -> str:
        lines = [
            f"- {c.name}: {c.description}" for c in self._registry.configurations
        ]
        available = "\n".join(lines) or "No subagents configured"
        return (
            "Launch a new agent to handle complex, multi-step tasks autonomously.\n\n"
            f"Available agent types:\n{available}\n\n"
            "The agent works in its own conversation and returns a single final "
            "message. Give it a detailed, self-contained prompt."
        )

    def format_compact_params(self, args: dict[str, Any]) -> str | None:
        return f"{args.get('subagent_type', '')}: {args.get('description', '')}"

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        for param in ("description", "prompt", "subagent_type"):
            if _string_arg(args, param) is None:
                result = _missing(param)
                result.short_result = "Task delegation failed"
                return result

        delegator = context.delegator
        if delegator is None:
            return ToolResult(
                success=False,
                error="Task delegation failed: subagent delegation is not available",
                short_result="Delegation error",
            )
        try:
            configuration = self._registry.select(args["subagent_type"], args["description"])
        except SubagentNotFoundError as exc:
            return ToolResult(success=False, error=str(exc), short_result="Subagent not found")

        try:
            instance = delegator.create_instance(
                configuration, args, context.delegation, parent_model=context.model,
            )
            text = await delegator.execute_task(instance, args["prompt"])
        except Exception as exc:
            logger.warning("Task delegation to %s failed: %s", configuration.name, exc)
            return ToolResult(
                success=False,
                error=f"Task delegation failed: {exc}",
                short_result="Delegation error",
            )
        return ToolResult(
            success=True,
            content=text,
            short_result=f"Task completed by {configuration.name}",
        )


def builtin_tools(
    subagents: SubagentRegistry | None = None,
    *,
    kill_grace_seconds: float = BASH_KILL_GRACE_SECONDS,
) -> list[Tool]:
    tools: list[Tool] = [BashTool(kill_grace_seconds), BashOutputTool(), KillBashTool()]
    if subagents is not None:
        tools.append(TaskTool(subagents))
    return tools
