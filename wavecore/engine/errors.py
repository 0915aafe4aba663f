"""Exception hierarchy for the agent runtime.

Specific exceptions for each failure mode. Most of them are converted at
a component boundary (tool result, error block, log line); only
configuration errors escape to the caller that builds an Agent.
"""
from __future__ import annotations


class AgentCoreError(Exception):
    """Base exception for all agent runtime errors."""


class ConfigurationError(AgentCoreError):
    """Invalid or missing configuration value. Raised at construction."""
    def __init__(self, field_name: str, reason: str):
        self.field_name = field_name
        self.reason = reason
        super().__init__(f"Invalid configuration for '{field_name}': {reason}")


class SessionLoadError(AgentCoreError):
    """A session file is missing or cannot be parsed."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Failed to load session {session_id}: {reason}")


class InvalidToolStageTransition(AgentCoreError, ValueError):
    """A tool block stage tried to move backward or leave a terminal stage."""
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid tool stage transition: {current} -> {target}"
        )


class HookConfigurationError(AgentCoreError):
    """Hook settings failed validation at load time."""
    def __init__(self, config_path: str, errors: list[str]):
        self.config_path = config_path
        self.errors = errors
        super().__init__(
            f"Invalid hook configuration in {config_path}: {'; '.join(errors)}"
        )


class SubagentNotFoundError(AgentCoreError):
    """Requested subagent type does not exist."""
    def __init__(self, name: str, available: list[str]):
        self.name = name
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f'No subagent found matching "{name}". '
            f"Available subagents: {avail_str}"
        )


class SubagentParseError(AgentCoreError):
    """A subagent definition file is malformed."""
    def __init__(self, file_path: str, reason: str):
        self.file_path = file_path
        self.reason = reason
        super().__init__(f"Failed to parse subagent file {file_path}: {reason}")


class DelegationCycleError(AgentCoreError):
    """A subagent tried to delegate to itself or one of its ancestors."""
    def __init__(self, name: str, call_stack: list[str], message: str | None = None):
        self.name = name
        self.call_stack = call_stack
        super().__init__(
            message or f"Delegation cycle detected: {' -> '.join([*call_stack, name])}"
        )


class MaxDelegationDepthError(DelegationCycleError):
    """Delegation chain exceeded the configured maximum depth."""
    def __init__(
        self, name: str, depth: int, max_depth: int, call_stack: list[str] | None = None,
    ):
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(
            name,
            list(call_stack or []),
            f"Subagent {name} at depth {depth} exceeds max {max_depth}",
        )


class SubagentAbortedError(AgentCoreError):
    """A subagent task was aborted before it finished."""
    def __init__(self, name: str, subagent_id: str):
        self.name = name
        self.subagent_id = subagent_id
        super().__init__(f"Subagent {name} was aborted")


class ToolNotFoundError(AgentCoreError):
    """Requested tool is not registered."""
    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool not found: {tool_name}")


class SlashCommandParseError(AgentCoreError):
    """A custom slash command file is malformed."""
    def __init__(self, file_path: str, reason: str):
        self.file_path = file_path
        self.reason = reason
        super().__init__(f"Failed to parse command file {file_path}: {reason}")
