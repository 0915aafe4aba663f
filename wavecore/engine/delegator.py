"""Subagent delegator: run a task in an isolated conversation.

Each delegated task gets its own MessageState (a subagent session linked
to the parent session) and its own LoopDriver over a restricted tool set.
Only the final assistant text goes back to the caller; the parent
conversation sees a ``subagent`` reference block whose status follows
the instance.

Enforces:
- No delegation to a subagent already on the call stack
- Maximum nesting depth (``AgentConfig.max_subagent_depth``)
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .errors import DelegationCycleError, MaxDelegationDepthError, SubagentAbortedError
from .lifecycle import can_transition_subagent
from .loop_driver import LoopDriver
from .message_state import MessageState
from .models import (
    DelegationContext,
    MessageRole,
    SessionType,
    SubagentConfiguration,
    SubagentStatus,
)
from .tools import ToolRegistry

if TYPE_CHECKING:
    from wavecore.shared.services.session_store import SessionStore

    from .background import BackgroundProcessRegistry
    from .config import AgentConfig
    from .hooks.manager import HookManager
    from .model_service import ModelService
    from .permissions import PermissionEngine

logger = logging.getLogger(__name__)

TASK_TOOL_NAME = "Task"
INHERIT_MODEL = "inherit"
NO_TEXT_RESPONSE = "Task completed with no text response"

TERMINAL_STATUSES = frozenset({
    SubagentStatus.COMPLETED, SubagentStatus.ERROR, SubagentStatus.ABORTED,
})


@dataclass
class SubagentInstance:
    subagent_id: str
    configuration: SubagentConfiguration
    message_state: MessageState
    loop_driver: LoopDriver
    delegation: DelegationContext
    model: str | None = None
    description: str = ""
    status: SubagentStatus = SubagentStatus.INITIALIZING

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def resolve_subagent_model(configuration: SubagentConfiguration, parent_model: str | None) -> str | None:
    if configuration.model and configuration.model != INHERIT_MODEL:
        return configuration.model
    return parent_model


def final_assistant_text(message_state: MessageState) -> str:
    for message in reversed(message_state.messages):
        if message.role == MessageRole.ASSISTANT:
            text = message.text().strip()
            if text:
                return text
    return NO_TEXT_RESPONSE


class SubagentDelegator:
    """Create, run, abort and clean up subagent instances."""

    def __init__(
        self,
        config: AgentConfig,
        model_service: ModelService,
        *,
        parent_tools: ToolRegistry | None = None,
        parent_message_state: MessageState | None = None,
        store: SessionStore | None = None,
        hook_manager: HookManager | None = None,
        permission_engine: PermissionEngine | None = None,
        background: BackgroundProcessRegistry | None = None,
        on_instances_change: Callable[[list[SubagentInstance]], None] | None = None,
    ) -> None:
        self._config = config
        self._model_service = model_service
        self._parent_tools = parent_tools
        self._parent_state = parent_message_state
        self._store = store
        self._hooks = hook_manager
        self._permissions = permission_engine
        self._background = background
        self._on_instances_change = on_instances_change
        self._instances: dict[str, SubagentInstance] = {}

    def set_parent_tools(self, tools: ToolRegistry) -> None:
        self._parent_tools = tools

    def _notify(self) -> None:
        if self._on_instances_change is None:
            return
        try:
            self._on_instances_change(list(self._instances.values()))
        except Exception:
            logger.debug("on_instances_change callback failed", exc_info=True)

    # ── Instances ──

    def get_instance(self, subagent_id: str) -> SubagentInstance | None:
        return self._instances.get(subagent_id)

    def get_active_instances(self) -> list[SubagentInstance]:
        return [i for i in self._instances.values() if not i.is_terminal]

    def create_instance(
        self,
        configuration: SubagentConfiguration,
        params: dict[str, Any] | None = None,
        delegation: DelegationContext | None = None,
        *,
        parent_model: str | None = None,
    ) -> SubagentInstance:
        """Build an isolated instance for ``configuration``.

        Raises DelegationCycleError if the subagent is already on the call
        stack, MaxDelegationDepthError if nesting would exceed the limit.
        """
        delegation = delegation or DelegationContext()
        name = configuration.name
        if name in delegation.call_stack:
            raise DelegationCycleError(name, list(delegation.call_stack))
        if delegation.depth + 1 > self._config.max_subagent_depth:
            raise MaxDelegationDepthError(
                name, delegation.depth + 1, self._config.max_subagent_depth,
                list(delegation.call_stack),
            )
        child_delegation = delegation.push(name)
        params = params or {}

        state = MessageState(
            self._config.workdir,
            self._store,
            session_type=SessionType.SUBAGENT,
            parent_session_id=self._parent_state.session_id if self._parent_state else None,
        )
        parent_tools = self._parent_tools or ToolRegistry()
        tools = parent_tools.subset(configuration.tools, exclude=(TASK_TOOL_NAME,))
        driver = LoopDriver(
            self._config,
            self._model_service,
            state,
            tools,
            permission_engine=self._permissions,
            hook_manager=self._hooks,
            background=self._background,
            delegator=self,
            delegation=child_delegation,
            system_prompt=configuration.system_prompt,
            subagent_type=name,
        )
        instance = SubagentInstance(
            subagent_id=str(uuid.uuid4()),
            configuration=configuration,
            message_state=state,
            loop_driver=driver,
            delegation=child_delegation,
            model=resolve_subagent_model(configuration, parent_model),
            description=str(params.get("description") or ""),
        )
        self._instances[instance.subagent_id] = instance
        if self._parent_state is not None:
            self._parent_state.add_subagent_block(
                instance.subagent_id,
                name,
                instance.status,
                session_id=state.session_id,
                description=instance.description,
            )
        logger.info(
            "Subagent %s created: %s depth=%d tools=%s",
            instance.subagent_id[:8], name, child_delegation.depth,
            ",".join(tools.names) or "none",
        )
        self._notify()
        return instance

    def _set_status(self, instance: SubagentInstance, status: SubagentStatus) -> bool:
        if not can_transition_subagent(instance.status, status):
            logger.debug(
                "Subagent %s: ignoring %s -> %s",
                instance.subagent_id[:8], instance.status.value, status.value,
            )
            return False
        instance.status = status
        if self._parent_state is not None:
            self._parent_state.update_subagent_block(
                instance.subagent_id,
                status=status,
                session_id=instance.message_state.session_id,
            )
        self._notify()
        return True

    async def execute_task(self, instance: SubagentInstance, prompt: str) -> str:
        """Run ``prompt`` in the instance and return its final text.

        Raises SubagentAbortedError when the instance was aborted.
        """
        name = instance.configuration.name
        if not self._set_status(instance, SubagentStatus.ACTIVE):
            raise SubagentAbortedError(name, instance.subagent_id)
        instance.message_state.add_user_message(prompt)
        try:
            await instance.loop_driver.send(model=instance.model)
        except asyncio.CancelledError:
            self._set_status(instance, SubagentStatus.ABORTED)
            raise
        except Exception:
            logger.exception("Subagent %s (%s) failed", instance.subagent_id[:8], name)
            self._set_status(instance, SubagentStatus.ERROR)
            raise

        if instance.status == SubagentStatus.ABORTED:
            raise SubagentAbortedError(name, instance.subagent_id)
        self._set_status(instance, SubagentStatus.COMPLETED)
        logger.info("Subagent %s (%s) completed", instance.subagent_id[:8], name)
        return final_assistant_text(instance.message_state)

    # ── Abort and cleanup ──

    def abort_instance(self, subagent_id: str) -> bool:
        instance = self._instances.get(subagent_id)
        if instance is None or instance.is_terminal:
            return False
        self._set_status(instance, SubagentStatus.ABORTED)
        instance.loop_driver.abort()
        logger.info("Subagent %s aborted", subagent_id[:8])
        return True

    def abort_all_instances(self) -> int:
        aborted = sum(
            1 for instance in list(self._instances.values())
            if self.abort_instance(instance.subagent_id)
        )
        return aborted

    def cleanup_instance(self, subagent_id: str) -> bool:
        """Forget a finished instance. Running instances are kept."""
        instance = self._instances.get(subagent_id)
        if instance is None or not instance.is_terminal:
            return False
        del self._instances[subagent_id]
        self._notify()
        return True

    def cleanup(self) -> None:
        self.abort_all_instances()
        for subagent_id in list(self._instances):
            self.cleanup_instance(subagent_id)
