"""Agent: the composition root.

Wires MessageState, PermissionEngine, HookManager, the background shell
registry, the subagent registry and delegator, the tool registry, the
LoopDriver and the slash commands together. Single entry point for embedding the runtime.

Usage:
    agent = await Agent.create(model_service=my_service, workdir="/repo")
    await agent.send_message("Fix the failing test")
    await agent.destroy()
"""
from __future__ import annotations

import asyncio
import logging
import shutil
import signal
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from wavecore.shared.services.durable_write import atomic_write_text
from wavecore.shared.services.process_groups import signal_process_group
from wavecore.shared.services.session_store import SessionStore
from wavecore.shared.services.settings_store import SettingsStore

from .background import BackgroundProcessRegistry
from .builtin_tools import builtin_tools
from .config import AgentConfig, EventCallback, PermissionCallback
from .delegator import SubagentDelegator, SubagentInstance
from .errors import HookConfigurationError
from .hooks import HookEvent, HookExecutionContext, HookManager
from .loop_driver import LoopDriver
from .message_state import MessageCallbacks, MessageState
from .model_service import ModelService
from .models import BackgroundTask, Message, PermissionMode, Usage
from .permissions import PermissionEngine
from .slash_commands import SlashCommandManager
from .subagents import SubagentRegistry
from .tools import Tool, ToolRegistry

logger = logging.getLogger(__name__)

PROJECT_MEMORY_FILE = "WAVE.md"
USER_MEMORY_FILE = "memory.md"
PROJECT_MEMORY_HEADER = (
    "# Memory\n\nThis is the AI assistant's memory file, recording important "
    "information and context.\n\n"
)
USER_MEMORY_HEADER = (
    "# User Memory\n\nThis is the user-level memory file, recording important "
    "information and context across projects.\n\n"
)


@dataclass
class AgentCallbacks(MessageCallbacks):
    """MessageState listeners plus the Agent-level ones."""
    on_loading_change: Callable[[bool], None] | None = None
    on_compressing_change: Callable[[bool], None] | None = None
    on_permission_mode_change: Callable[[PermissionMode], None] | None = None
    on_shells_change: Callable[[list[BackgroundTask]], None] | None = None
    on_subagents_change: Callable[[list[SubagentInstance]], None] | None = None
    on_usage_added: Callable[[Usage], None] | None = None


class Agent:
    """One conversational agent bound to a working directory."""

    def __init__(
        self,
        config: AgentConfig,
        model_service: ModelService,
        *,
        callbacks: AgentCallbacks | None = None,
        system_prompt: str | None = None,
        permission_callback: PermissionCallback | None = None,
        tools: Iterable[Tool] = (),
        event_callback: EventCallback | None = None,
    ) -> None:
        self._config = config
        self._callbacks = callbacks or AgentCallbacks()
        self._usages: list[Usage] = []
        self._command_proc: asyncio.subprocess.Process | None = None

        self._settings = SettingsStore(config.workdir, config.home_dir)
        self._store = (
            SessionStore(config.resolved_sessions_dir, config.workdir)
            if config.persist_sessions else None
        )
        self._state = MessageState(config.workdir, self._store, callbacks=self._callbacks)
        self._background = BackgroundProcessRegistry(
            config.workdir,
            kill_grace_seconds=config.kill_grace_seconds,
            on_shells_change=self._callbacks.on_shells_change,
        )
        self._permissions = PermissionEngine(
            config.workdir,
            settings=self._settings,
            mode=config.default_permission_mode,
            additional_directories=config.additional_directories,
            plan_file_path=config.plan_file_path,
            callback=permission_callback,
            on_mode_change=self._callbacks.on_permission_mode_change,
        )
        self._hooks = HookManager(
            config.workdir,
            settings=self._settings,
            timeout_seconds=config.hook_timeout_seconds,
            env=config.hook_env,
        )
        self._subagents = SubagentRegistry(config.workdir, config.home_dir)
        self._tools = ToolRegistry(
            builtin_tools(self._subagents, kill_grace_seconds=config.kill_grace_seconds)
        )
        for tool in tools:
            self._tools.register(tool)
        self._delegator = SubagentDelegator(
            config,
            model_service,
            parent_tools=self._tools,
            parent_message_state=self._state,
            store=self._store,
            hook_manager=self._hooks,
            permission_engine=self._permissions,
            background=self._background,
            on_instances_change=self._callbacks.on_subagents_change,
        )
        self._loop = LoopDriver(
            config,
            model_service,
            self._state,
            self._tools,
            permission_engine=self._permissions,
            hook_manager=self._hooks,
            background=self._background,
            delegator=self._delegator,
            system_prompt=system_prompt,
            on_loading_change=self._callbacks.on_loading_change,
            on_compressing_change=self._callbacks.on_compressing_change,
            on_usage_added=self._record_usage,
            event_callback=event_callback,
        )
        self._slash_commands = SlashCommandManager(
            config.workdir,
            config.home_dir,
            self._state,
            self._loop,
            permission_engine=self._permissions,
            kill_grace_seconds=config.kill_grace_seconds,
        )

    @classmethod
    async def create(
        cls,
        config: AgentConfig | None = None,
        *,
        model_service: ModelService,
        workdir: str | None = None,
        callbacks: AgentCallbacks | None = None,
        restore_session_id: str | None = None,
        continue_last_session: bool = False,
        messages: list[Message] | None = None,
        system_prompt: str | None = None,
        permission_callback: PermissionCallback | None = None,
        tools: Iterable[Tool] = (),
        event_callback: EventCallback | None = None,
        **overrides: Any,
    ) -> Agent:
        """Build and initialize an Agent.

        Raises ConfigurationError when the configuration is unusable.
        Optional subsystems that fail to load are logged and skipped.
        """
        if config is None:
            config = AgentConfig.resolve(workdir=workdir, **overrides)
        else:
            config.validate()
        agent = cls(
            config,
            model_service,
            callbacks=callbacks,
            system_prompt=system_prompt,
            permission_callback=permission_callback,
            tools=tools,
            event_callback=event_callback,
        )
        agent._load_optional_subsystems()
        if messages:
            agent._state.set_messages(messages)
        else:
            await agent._state.restore(restore_session_id, continue_last_session)
        logger.info(
            "Agent ready: session=%s workdir=%s tools=%s",
            agent.session_id[:8], config.workdir, ",".join(agent._tools.names),
        )
        return agent

    def _load_optional_subsystems(self) -> None:
        try:
            self._permissions.reload_rules()
            mode = self._settings.load_default_mode()
            if mode and self._config.default_permission_mode == PermissionMode.DEFAULT:
                self._permissions.set_mode(PermissionMode(mode))
        except (OSError, ValueError) as exc:
            logger.warning("Permission settings not loaded: %s", exc)
        try:
            self._hooks.load_configuration_from_settings()
        except HookConfigurationError as exc:
            logger.warning("Hooks disabled: %s", exc)
            self._hooks.clear_configuration()
        try:
            self._subagents.load()
        except OSError as exc:
            logger.warning("Subagents not loaded: %s", exc)
        try:
            self._slash_commands.load()
        except OSError as exc:
            logger.warning("Slash commands not loaded: %s", exc)

    def _record_usage(self, usage: Usage) -> None:
        self._usages.append(usage)
        if self._callbacks.on_usage_added is not None:
            try:
                self._callbacks.on_usage_added(usage)
            except Exception:
                logger.debug("on_usage_added callback failed", exc_info=True)

    # ── Properties ──

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def session_id(self) -> str:
        return self._state.session_id

    @property
    def messages(self) -> list[Message]:
        return self._state.messages

    @property
    def is_loading(self) -> bool:
        return self._loop.is_loading

    @property
    def is_compressing(self) -> bool:
        return self._loop.is_compressing

    @property
    def is_command_running(self) -> bool:
        return self._command_proc is not None

    @property
    def permission_mode(self) -> PermissionMode:
        return self._permissions.mode

    @property
    def latest_total_tokens(self) -> int:
        return self._state.latest_total_tokens

    @property
    def working_directory(self) -> str:
        return self._config.workdir

    @property
    def user_input_history(self) -> list[str]:
        return self._state.user_input_history

    @property
    def usages(self) -> list[Usage]:
        return list(self._usages)

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def subagents(self) -> SubagentRegistry:
        return self._subagents

    @property
    def permission_engine(self) -> PermissionEngine:
        return self._permissions

    @property
    def hook_manager(self) -> HookManager:
        return self._hooks

    @property
    def slash_commands(self) -> SlashCommandManager:
        return self._slash_commands

    # ── Conversation ──

    async def send_message(self, content: str, images: list[str] | None = None) -> None:
        """Append a user turn and run the loop.

        UserPromptSubmit hooks run first; a blocking hook removes the turn
        and nothing is sent to the model.
        """
        self._state.add_user_message(content, images)
        try:
            outcome = await self._hooks.run(
                HookEvent.USER_PROMPT_SUBMIT,
                HookExecutionContext(
                    event=HookEvent.USER_PROMPT_SUBMIT,
                    project_dir=self._config.workdir,
                    session_id=self.session_id,
                    transcript_path=self._state.transcript_path,
                    cwd=self._config.workdir,
                    user_prompt=content,
                ),
                self._state,
            )
        except Exception as exc:
            logger.warning("UserPromptSubmit hooks failed: %s", exc)
        else:
            if outcome.should_block:
                await self._state.save_session()
                return
        await self._loop.send()

    async def execute_slash_command(self, text: str) -> bool:
        """Run ``/id args``. Returns False when ``text`` names no known command."""
        parsed = self._slash_commands.parse_and_validate(text)
        if not parsed.is_valid:
            return False
        return await self._slash_commands.execute_command(parsed.command_id, parsed.args or "")

    def abort_message(self) -> None:
        """Stop the loop, every subagent, any slash command and user shell command. Idempotent."""
        self._loop.abort()
        self._delegator.abort_all_instances()
        self._slash_commands.abort_current_command()
        self.abort_bash_command()

    def abort_subagent(self, subagent_id: str) -> bool:
        return self._delegator.abort_instance(subagent_id)

    def get_active_subagents(self) -> list[SubagentInstance]:
        return self._delegator.get_active_instances()

    def clear_messages(self) -> None:
        self._state.clear_messages()

    def set_permission_mode(self, mode: PermissionMode | str) -> None:
        self._permissions.set_mode(PermissionMode(mode))

    # ── Background shells ──

    def get_background_shell_output(
        self, shell_id: str, filter: str | None = None,
    ) -> dict[str, str] | None:
        return self._background.get_output(shell_id, filter)

    async def kill_background_shell(self, shell_id: str) -> bool:
        return await self._background.kill_shell(shell_id)

    # ── User shell commands ──

    async def execute_bash_command(self, command: str) -> int:
        """Run a user ``!command`` and record its output as a command block."""
        self._state.add_command_output_message(command)
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=self._config.workdir,
                start_new_session=True,
                executable=shutil.which("bash") or None,
            )
        except OSError as exc:
            logger.error("Failed to start command %r: %s", command, exc)
            self._state.update_command_output(command, f"Failed to execute command: {exc}")
            self._state.complete_command(command, 1)
            return 1

        self._command_proc = proc
        output = ""
        try:
            if proc.stdout is not None:
                while True:
                    chunk = await proc.stdout.read(4096)
                    if not chunk:
                        break
                    output += chunk.decode(errors="replace")
                    self._state.update_command_output(command, output)
            exit_code = await proc.wait()
        finally:
            self._command_proc = None
        self._state.complete_command(command, exit_code)
        await self._state.save_session()
        return exit_code

    def abort_bash_command(self) -> None:
        proc = self._command_proc
        if proc is None:
            return
        if not signal_process_group(proc, signal.SIGTERM) and proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    # ── Memory ──

    async def save_memory(self, content: str, memory_type: str = "project") -> bool:
        """Append a ``- entry`` line to the project or user memory file.

        A leading ``#`` (the memory shortcut) is stripped. The outcome is
        recorded as a memory block either way.
        """
        entry = content.strip()
        if entry.startswith("#"):
            entry = entry[1:].strip()
        if memory_type == "project":
            path = Path(self._config.workdir) / PROJECT_MEMORY_FILE
            header, label = PROJECT_MEMORY_HEADER, "Project Memory"
        else:
            path = self._config.wave_home / USER_MEMORY_FILE
            header, label = USER_MEMORY_HEADER, "User Memory"

        try:
            existing = path.read_text(encoding="utf-8") if path.exists() else header
            if existing and not existing.endswith("\n"):
                existing += "\n"
            path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_text(path, f"{existing}- {entry}\n")
        except OSError as exc:
            logger.error("Failed to save %s memory to %s: %s", memory_type, path, exc)
            self._state.add_memory_block(
                f"{label} add failed: {exc}", False, memory_type, str(path),
            )
            return False
        logger.info("Saved %s memory to %s", memory_type, path)
        self._state.add_memory_block(f"{label}: {entry}", True, memory_type, str(path))
        await self._state.save_session()
        return True

    # ── Lifecycle ──

    async def destroy(self) -> None:
        """Save, abort everything, kill background shells and forget subagents."""
        await self._state.save_session()
        self.abort_message()
        await self._background.cleanup()
        self._delegator.cleanup()
        logger.info("Agent destroyed: session=%s", self.session_id[:8])
