"""wavecore engine: conversational tool-calling agent runtime."""
from .models import (
    BackgroundTask,
    BackgroundTaskStatus,
    DelegationContext,
    Message,
    MessageRole,
    PermissionBehavior,
    PermissionDecision,
    PermissionMode,
    Session,
    SessionType,
    SubagentConfiguration,
    SubagentStatus,
    ToolPermissionContext,
    ToolResult,
    ToolStage,
    Usage,
)
from .config import AgentConfig, EventCallback, PermissionCallback
from .errors import (
    AgentCoreError,
    ConfigurationError,
    DelegationCycleError,
    HookConfigurationError,
    InvalidToolStageTransition,
    MaxDelegationDepthError,
    SessionLoadError,
    SlashCommandParseError,
    SubagentAbortedError,
    SubagentNotFoundError,
    SubagentParseError,
    ToolNotFoundError,
)

__all__ = [
    # Composition root (lazy import to avoid circular deps)
    "Agent",
    "AgentCallbacks",
    # Models
    "BackgroundTask",
    "BackgroundTaskStatus",
    "DelegationContext",
    "Message",
    "MessageRole",
    "PermissionBehavior",
    "PermissionDecision",
    "PermissionMode",
    "Session",
    "SessionType",
    "SubagentConfiguration",
    "SubagentStatus",
    "ToolPermissionContext",
    "ToolResult",
    "ToolStage",
    "Usage",
    # Config
    "AgentConfig",
    "EventCallback",
    "PermissionCallback",
    # Components (lazy import)
    "LoopDriver",
    "MessageState",
    "ModelService",
    "PermissionEngine",
    "PermissionGate",
    "Tool",
    "FunctionTool",
    "ToolRegistry",
    "HookManager",
    "SubagentRegistry",
    "SubagentDelegator",
    "BackgroundProcessRegistry",
    "SlashCommandManager",
    # Errors
    "AgentCoreError",
    "ConfigurationError",
    "DelegationCycleError",
    "HookConfigurationError",
    "InvalidToolStageTransition",
    "MaxDelegationDepthError",
    "SessionLoadError",
    "SlashCommandParseError",
    "SubagentAbortedError",
    "SubagentNotFoundError",
    "SubagentParseError",
    "ToolNotFoundError",
]


def __getattr__(name: str):
    if name in ("Agent", "AgentCallbacks"):
        from . import agent
        return getattr(agent, name)
    if name == "LoopDriver":
        from .loop_driver import LoopDriver
        return LoopDriver
    if name == "MessageState":
        from .message_state import MessageState
        return MessageState
    if name == "ModelService":
        from .model_service import ModelService
        return ModelService
    if name in ("PermissionEngine", "PermissionGate"):
        from . import permissions
        return getattr(permissions, name)
    if name in ("Tool", "FunctionTool", "ToolRegistry"):
        from . import tools
        return getattr(tools, name)
    if name == "HookManager":
        from .hooks import HookManager
        return HookManager
    if name == "SubagentRegistry":
        from .subagents import SubagentRegistry
        return SubagentRegistry
    if name == "SubagentDelegator":
        from .delegator import SubagentDelegator
        return SubagentDelegator
    if name == "BackgroundProcessRegistry":
        from .background import BackgroundProcessRegistry
        return BackgroundProcessRegistry
    if name == "SlashCommandManager":
        from .slash_commands import SlashCommandManager
        return SlashCommandManager
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
