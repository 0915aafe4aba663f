"""Hook configuration, execution context and result types."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class HookEvent(str, Enum):
    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    USER_PROMPT_SUBMIT = "UserPromptSubmit"
    STOP = "Stop"
    SUBAGENT_STOP = "SubagentStop"
    NOTIFICATION = "Notification"


TOOL_EVENTS: frozenset[HookEvent] = frozenset({HookEvent.PRE_TOOL_USE, HookEvent.POST_TOOL_USE})


def is_valid_hook_event(name: str) -> bool:
    return name in {e.value for e in HookEvent}


@dataclass
class HookCommand:
    command: str
    type: str = "command"
    # Per-command timeout override, in seconds.
    timeout: float | None = None


@dataclass
class HookEventConfig:
    hooks: list[HookCommand]
    matcher: str | None = None


HookConfiguration = dict[HookEvent, list[HookEventConfig]]


@dataclass
class HookExecutionContext:
    """Everything one hook invocation needs; also the source of its stdin payload."""
    event: HookEvent
    project_dir: str
    session_id: str = ""
    transcript_path: str = ""
    cwd: str | None = None
    tool_name: str | None = None
    tool_input: Any = None
    tool_response: Any = None
    user_prompt: str | None = None
    subagent_type: str | None = None
    message: str | None = None
    notification_type: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class HookExecutionResult:
    success: bool
    command: str = ""
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0.0
    timed_out: bool = False


@dataclass
class ParsedHookOutput:
    """Outcome of one hook after JSON/exit-code interpretation."""
    source: str  # "json" | "exitcode"
    continue_: bool = True
    stop_reason: str | None = None
    system_message: str | None = None
    hook_specific: dict[str, Any] | None = None
    error_messages: list[str] = field(default_factory=list)


@dataclass
class HookValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class HookOutcome:
    """What the caller must do after a batch of hooks ran for one event."""
    should_block: bool = False
    error_message: str | None = None
    # PreToolUse only: "allow" | "deny" | "ask"
    permission_decision: str | None = None
    updated_input: dict[str, Any] | None = None
    additional_context: list[str] = field(default_factory=list)
    system_messages: list[str] = field(default_factory=list)
