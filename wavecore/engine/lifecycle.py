"""Tool block and subagent state machines.

Defines valid transitions and enforces them. Invalid transitions
raise rather than silently proceeding.

Tool stages:

    START ──┬──> STREAMING ──┬──> RUNNING ──> END
            │   (repeats)    │
            ├────────────────┴──────────────> END
            └──> RUNNING

Subagent status:

    INITIALIZING ──> ACTIVE ──┬──> COMPLETED
         │                    ├──> ERROR
         └──> ERROR/ABORTED   └──> ABORTED
"""
from __future__ import annotations

from .errors import InvalidToolStageTransition
from .models import SubagentStatus, ToolStage

VALID_TOOL_TRANSITIONS: dict[ToolStage, set[ToolStage]] = {
    ToolStage.START: {
        ToolStage.STREAMING,
        ToolStage.RUNNING,
        ToolStage.END,
    },
    ToolStage.STREAMING: {
        ToolStage.STREAMING,
        ToolStage.RUNNING,
        ToolStage.END,
    },
    ToolStage.RUNNING: {
        ToolStage.END,
    },
    ToolStage.END: set(),
}

VALID_SUBAGENT_TRANSITIONS: dict[SubagentStatus, set[SubagentStatus]] = {
    SubagentStatus.INITIALIZING: {
        SubagentStatus.ACTIVE,
        SubagentStatus.ERROR,
        SubagentStatus.ABORTED,
    },
    SubagentStatus.ACTIVE: {
        SubagentStatus.COMPLETED,
        SubagentStatus.ERROR,
        SubagentStatus.ABORTED,
    },
    SubagentStatus.COMPLETED: set(),
    SubagentStatus.ERROR: set(),
    SubagentStatus.ABORTED: set(),
}


def validate_tool_stage(current: ToolStage, target: ToolStage) -> None:
    """Validate a tool block stage change. Raises InvalidToolStageTransition."""
    if current == target and current != ToolStage.END:
        return
    if target not in VALID_TOOL_TRANSITIONS.get(current, set()):
        raise InvalidToolStageTransition(current.value, target.value)


def can_transition_subagent(
    current: SubagentStatus, target: SubagentStatus,
) -> bool:
    return target in VALID_SUBAGENT_TRANSITIONS.get(current, set())
