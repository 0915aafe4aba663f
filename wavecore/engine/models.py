"""Core data models for the agent runtime.

All dataclasses, enums, and type aliases shared between the managers.
Single source of truth to avoid circular imports.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Union


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SUBAGENT = "subagent"


class ToolStage(str, Enum):
    """Tool block stages. See lifecycle.py for transition rules."""
    START = "start"
    STREAMING = "streaming"
    RUNNING = "running"
    END = "end"


class SessionType(str, Enum):
    MAIN = "main"
    SUBAGENT = "subagent"


class PermissionMode(str, Enum):
    """Current policy stance for restricted tools."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"


class PermissionBehavior(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class SubagentStatus(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"
    ABORTED = "aborted"


class BackgroundTaskType(str, Enum):
    SHELL = "shell"
    SUBAGENT = "subagent"


class BackgroundTaskStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"


def _make_id() -> str:
    return str(uuid.uuid4())


def _make_message_id() -> str:
    return f"msg-{uuid.uuid4().hex[:12]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_session_id() -> str:
    """Time-ordered session id: sorting ids sorts sessions by creation."""
    return f"{_utcnow().strftime('%Y%m%dT%H%M%S%f')}-{uuid.uuid4().hex[:8]}"


# ── Blocks ──


@dataclass
class TextBlock:
    TYPE: ClassVar[str] = "text"
    content: str = ""


@dataclass
class ErrorBlock:
    TYPE: ClassVar[str] = "error"
    content: str = ""


@dataclass
class ToolBlock:
    TYPE: ClassVar[str] = "tool"
    id: str = ""
    name: str = ""
    parameters: str = ""
    result: str = ""
    stage: ToolStage = ToolStage.START
    success: bool | None = None
    error: str | None = None
    short_result: str | None = None
    compact_params: str | None = None
    parameters_chunk: str | None = None


@dataclass
class ImageBlock:
    TYPE: ClassVar[str] = "image"
    image_urls: list[str] = field(default_factory=list)


@dataclass
class DiffBlock:
    TYPE: ClassVar[str] = "diff"
    path: str = ""
    diff: str = ""


@dataclass
class CommandOutputBlock:
    TYPE: ClassVar[str] = "command_output"
    command: str = ""
    output: str = ""
    is_running: bool = False
    exit_code: int | None = None


@dataclass
class CompressBlock:
    TYPE: ClassVar[str] = "compress"
    content: str = ""
    session_id: str | None = None


@dataclass
class MemoryBlock:
    TYPE: ClassVar[str] = "memory"
    content: str = ""
    is_success: bool = True
    memory_type: str = "project"
    storage_path: str | None = None


@dataclass
class SubagentBlock:
    TYPE: ClassVar[str] = "subagent"
    subagent_id: str = ""
    subagent_name: str = ""
    status: SubagentStatus = SubagentStatus.ACTIVE
    session_id: str | None = None
    description: str = ""


@dataclass
class CustomCommandBlock:
    """An expanded slash command; ``content`` is what the model sees."""
    TYPE: ClassVar[str] = "custom_command"
    command_name: str = ""
    content: str = ""
    original_input: str | None = None


Block = Union[
    TextBlock, ErrorBlock, ToolBlock, ImageBlock, DiffBlock,
    CommandOutputBlock, CompressBlock, MemoryBlock, SubagentBlock,
    CustomCommandBlock,
]

BLOCK_TYPES: dict[str, type] = {
    cls.TYPE: cls
    for cls in (
        TextBlock, ErrorBlock, ToolBlock, ImageBlock, DiffBlock,
        CommandOutputBlock, CompressBlock, MemoryBlock, SubagentBlock,
        CustomCommandBlock,
    )
}

_ENUM_FIELDS: dict[str, type[Enum]] = {
    "stage": ToolStage,
    "status": SubagentStatus,
}


def block_to_dict(block: Block) -> dict[str, Any]:
    data: dict[str, Any] = {"type": block.TYPE}
    for f in fields(block):
        value = getattr(block, f.name)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, list):
            value = list(value)
        data[f.name] = value
    return data


def block_from_dict(data: dict[str, Any]) -> Block:
    block_type = data.get("type")
    cls = BLOCK_TYPES.get(block_type)
    if cls is None:
        raise ValueError(f"Unknown block type: {block_type!r}")
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        enum_cls = _ENUM_FIELDS.get(f.name)
        if enum_cls is not None and value is not None:
            value = enum_cls(value)
        kwargs[f.name] = value
    return cls(**kwargs)


# ── Messages and sessions ──


@dataclass
class Usage:
    """Token accounting for one model call."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: str | None = None
    operation_type: str | None = None
    cache_read_input_tokens: int | None = None
    cache_creation_input_tokens: int | None = None

    @property
    def comprehensive_total(self) -> int:
        return (
            self.total_tokens
            + (self.cache_read_input_tokens or 0)
            + (self.cache_creation_input_tokens or 0)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Usage:
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


@dataclass
class Message:
    role: MessageRole
    blocks: list[Block] = field(default_factory=list)
    usage: Usage | None = None
    id: str = field(default_factory=_make_message_id)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "blocks": [block_to_dict(b) for b in self.blocks],
        }
        if self.usage is not None:
            data["usage"] = self.usage.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        usage = data.get("usage")
        return cls(
            role=MessageRole(data["role"]),
            blocks=[block_from_dict(b) for b in data.get("blocks", [])],
            usage=Usage.from_dict(usage) if usage else None,
            id=data.get("id") or _make_message_id(),
        )

    def text(self) -> str:
        return "\n".join(
            b.content for b in self.blocks if isinstance(b, TextBlock)
        )


@dataclass
class Session:
    """One conversation. Owned by exactly one MessageState."""
    session_id: str = field(default_factory=make_session_id)
    workdir: str = "."
    session_type: SessionType = SessionType.MAIN
    parent_session_id: str | None = None
    messages: list[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class ToolResult:
    """Result contract every tool execution returns."""
    success: bool
    content: str = ""
    error: str | None = None
    short_result: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success, "content": self.content}
        if self.error is not None:
            data["error"] = self.error
        if self.short_result is not None:
            data["shortResult"] = self.short_result
        return data


# ── Permissions ──


@dataclass
class PermissionDecision:
    behavior: PermissionBehavior
    message: str | None = None
    new_permission_mode: PermissionMode | None = None
    new_permission_rule: str | None = None

    @property
    def allowed(self) -> bool:
        return self.behavior == PermissionBehavior.ALLOW


@dataclass
class ToolPermissionContext:
    """Everything a permission prompt needs to describe one tool call."""
    tool_name: str
    permission_mode: PermissionMode
    tool_input: dict[str, Any] = field(default_factory=dict)
    suggested_prefix: str | None = None
    hide_persistent_option: bool = False
    tool_call_id: str | None = None


# ── Subagents and background work ──


@dataclass
class SubagentConfiguration:
    """A subagent definition loaded from a markdown file."""
    name: str
    description: str
    system_prompt: str
    tools: list[str] | None = None
    model: str | None = None
    file_path: str = ""
    scope: str = "project"
    priority: int = 1


@dataclass
class BackgroundTask:
    id: str
    command: str
    type: BackgroundTaskType = BackgroundTaskType.SHELL
    status: BackgroundTaskStatus = BackgroundTaskStatus.RUNNING
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    started_at: datetime = field(default_factory=_utcnow)
    runtime_seconds: float | None = None


@dataclass(frozen=True)
class DelegationContext:
    """Subagent call stack threaded explicitly through nested delegations."""
    depth: int = 0
    call_stack: tuple[str, ...] = ()

    def push(self, name: str) -> DelegationContext:
        return DelegationContext(depth=self.depth + 1, call_stack=(*self.call_stack, name))
