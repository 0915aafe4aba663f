"""MessageState mutations, tool stage rules and compression."""

from __future__ import annotations

from pathlib import Path

import pytest

from wavecore.engine.errors import InvalidToolStageTransition
from wavecore.engine.lifecycle import can_transition_subagent, validate_tool_stage
from wavecore.engine.message_state import MessageCallbacks, MessageState
from wavecore.engine.models import (
    CompressBlock,
    ErrorBlock,
    ImageBlock,
    Message,
    MessageRole,
    SubagentBlock,
    SubagentStatus,
    TextBlock,
    ToolStage,
    Usage,
)


def _conversation(count: int) -> list[Message]:
    messages = []
    for i in range(count):
        role = MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT
        messages.append(Message(role=role, blocks=[TextBlock(content=f"message {i}")]))
    return messages


def test_user_message_with_images_and_history(tmp_path: Path) -> None:
    added: list[str] = []
    state = MessageState(
        str(tmp_path), callbacks=MessageCallbacks(on_user_message_added=added.append),
    )
    message = state.add_user_message("look at this", ["data:image/png;base64,AAAA"])

    assert message.blocks == [
        TextBlock(content="look at this"),
        ImageBlock(image_urls=["data:image/png;base64,AAAA"]),
    ]
    assert state.user_input_history == ["look at this"]
    assert added == ["look at this"]


def test_streaming_content_reports_chunks(tmp_path: Path) -> None:
    chunks: list[tuple[str, str]] = []
    state = MessageState(
        str(tmp_path),
        callbacks=MessageCallbacks(
            on_assistant_content_updated=lambda c, a: chunks.append((c, a)),
        ),
    )
    state.add_user_message("hi")
    state.update_current_message_content("Hel")
    state.update_current_message_content("Hello")

    assert len(state.messages) == 2
    assert state.messages[-1].text() == "Hello"
    assert chunks == [("Hel", "Hel"), ("lo", "Hello")]


def test_failing_callback_does_not_break_mutation(tmp_path: Path) -> None:
    def boom(_messages) -> None:
        raise RuntimeError("listener failed")

    state = MessageState(str(tmp_path), callbacks=MessageCallbacks(on_messages_change=boom))
    state.add_user_message("still recorded")
    assert state.messages[0].text() == "still recorded"


def test_tool_block_moves_forward_only(tmp_path: Path) -> None:
    state = MessageState(str(tmp_path))
    state.add_assistant_message()
    state.update_tool_block("t1", stage=ToolStage.START, name="Read")
    state.update_tool_block("t1", stage=ToolStage.STREAMING, parameters='{"file')
    state.update_tool_block("t1", stage=ToolStage.STREAMING, parameters='{"file_path": "a"}')
    state.update_tool_block("t1", stage=ToolStage.RUNNING)

    with pytest.raises(InvalidToolStageTransition):
        state.update_tool_block("t1", stage=ToolStage.STREAMING)

    block = state.update_tool_block(
        "t1", stage=ToolStage.END, result="contents", success=True,
    )
    assert block.name == "Read"
    assert block.parameters == '{"file_path": "a"}'

    with pytest.raises(InvalidToolStageTransition):
        state.update_tool_block("t1", stage=ToolStage.END)


def test_stage_and_status_tables() -> None:
    validate_tool_stage(ToolStage.START, ToolStage.END)
    validate_tool_stage(ToolStage.STREAMING, ToolStage.STREAMING)
    with pytest.raises(InvalidToolStageTransition):
        validate_tool_stage(ToolStage.RUNNING, ToolStage.START)

    assert can_transition_subagent(SubagentStatus.INITIALIZING, SubagentStatus.ACTIVE)
    assert can_transition_subagent(SubagentStatus.ACTIVE, SubagentStatus.ABORTED)
    assert not can_transition_subagent(SubagentStatus.COMPLETED, SubagentStatus.ACTIVE)
    assert not can_transition_subagent(SubagentStatus.ABORTED, SubagentStatus.COMPLETED)


def test_error_block_joins_trailing_assistant(tmp_path: Path) -> None:
    state = MessageState(str(tmp_path))
    state.add_user_message("go")
    state.add_error_block("first")
    state.add_error_block("second")

    assert len(state.messages) == 2
    assert state.messages[-1].blocks == [ErrorBlock(content="first"), ErrorBlock(content="second")]


def test_remove_last_user_message(tmp_path: Path) -> None:
    state = MessageState(str(tmp_path))
    state.add_user_message("one")
    state.add_assistant_message()
    state.add_user_message("two")

    removed = state.remove_last_user_message()
    assert removed is not None and removed.text() == "two"
    assert [m.role for m in state.messages] == [MessageRole.USER, MessageRole.ASSISTANT]


def test_subagent_block_status_follows_updates(tmp_path: Path) -> None:
    state = MessageState(str(tmp_path))
    state.add_subagent_block("sub-1", "reviewer", SubagentStatus.INITIALIZING, description="review")
    assert state.update_subagent_block("sub-1", status=SubagentStatus.COMPLETED)
    assert not state.update_subagent_block("missing", status=SubagentStatus.ERROR)

    [block] = state.messages[-1].blocks
    assert isinstance(block, SubagentBlock)
    assert block.status == SubagentStatus.COMPLETED


def test_compress_keeps_tail_under_new_session(tmp_path: Path) -> None:
    seen: list[tuple[int, str]] = []
    state = MessageState(
        str(tmp_path),
        callbacks=MessageCallbacks(on_compress_block_added=lambda i, s: seen.append((i, s))),
    )
    state.set_messages(_conversation(10))
    previous_id = state.session_id

    state.compress_messages_and_update_session(7, "the summary", Usage(total_tokens=42))

    assert state.session_id != previous_id
    assert len(state.messages) == 4
    head = state.messages[0]
    assert head.blocks == [CompressBlock(content="the summary", session_id=previous_id)]
    assert head.usage == Usage(total_tokens=42)
    assert [m.text() for m in state.messages[1:]] == ["message 7", "message 8", "message 9"]
    assert seen == [(7, "the summary")]


def test_compress_with_negative_index(tmp_path: Path) -> None:
    state = MessageState(str(tmp_path))
    state.set_messages(_conversation(5))
    state.compress_messages_and_update_session(-2, "summary")
    assert [m.text() for m in state.messages[1:]] == ["message 3", "message 4"]


def test_command_output_block_lifecycle(tmp_path: Path) -> None:
    state = MessageState(str(tmp_path))
    state.add_command_output_message("ls")
    state.update_command_output("ls", "a.txt\nb.txt\n")
    state.complete_command("ls", 0)

    [block] = state.messages[-1].blocks
    assert block.output == "a.txt\nb.txt"
    assert block.exit_code == 0
    assert not block.is_running


def test_clear_messages_starts_new_session(tmp_path: Path) -> None:
    ids: list[str] = []
    state = MessageState(str(tmp_path), callbacks=MessageCallbacks(on_session_id_change=ids.append))
    state.add_user_message("hello")
    old_id = state.session_id
    state.clear_messages()

    assert state.messages == []
    assert state.user_input_history == []
    assert state.session_id != old_id
    assert ids == [state.session_id]
