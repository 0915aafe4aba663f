"""In-memory conversation state for one session.

MessageState owns the ordered list of messages, applies every mutation
the loop driver and the Agent need (user turns, streaming assistant
content, tool block stages, error/memory/subagent blocks), and appends
new messages to the session file through SessionStore. It is the only
writer of its session file.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from wavecore.shared.services.session_store import SessionStore

from .errors import SessionLoadError
from .lifecycle import validate_tool_stage
from .models import (
    CommandOutputBlock,
    CompressBlock,
    CustomCommandBlock,
    ErrorBlock,
    ImageBlock,
    MemoryBlock,
    Message,
    MessageRole,
    Session,
    SessionType,
    SubagentBlock,
    SubagentStatus,
    TextBlock,
    ToolBlock,
    ToolStage,
    Usage,
)

logger = logging.getLogger(__name__)


@dataclass
class MessageCallbacks:
    """Optional change listeners. Exceptions raised by listeners are logged and ignored."""
    on_messages_change: Callable[[list[Message]], None] | None = None
    on_user_message_added: Callable[[str], None] | None = None
    on_assistant_message_added: Callable[[], None] | None = None
    # (chunk, accumulated)
    on_assistant_content_updated: Callable[[str, str], None] | None = None
    on_tool_block_updated: Callable[[ToolBlock], None] | None = None
    on_session_id_change: Callable[[str], None] | None = None
    on_latest_total_tokens_change: Callable[[int], None] | None = None
    on_compress_block_added: Callable[[int, str], None] | None = None


class MessageState:
    """Ordered messages of one session plus its persistence bookkeeping."""

    def __init__(
        self,
        workdir: str,
        store: SessionStore | None = None,
        *,
        session_type: SessionType = SessionType.MAIN,
        parent_session_id: str | None = None,
        callbacks: MessageCallbacks | None = None,
    ) -> None:
        self._workdir = workdir
        self._store = store
        self._callbacks = callbacks or MessageCallbacks()
        self._session = Session(
            workdir=workdir,
            session_type=session_type,
            parent_session_id=parent_session_id,
        )
        # Number of leading messages already appended to the session file.
        self._saved_count = 0
        self._latest_total_tokens = 0
        self._user_input_history: list[str] = []

    # ── Accessors ──

    @property
    def session_id(self) -> str:
        return self._session.session_id

    @property
    def session(self) -> Session:
        return self._session

    @property
    def session_type(self) -> SessionType:
        return self._session.session_type

    @property
    def messages(self) -> list[Message]:
        return self._session.messages

    @property
    def transcript_path(self) -> str:
        if self._store is None:
            return ""
        return str(self._store.session_path(self.session_id, self.session_type))

    @property
    def latest_total_tokens(self) -> int:
        return self._latest_total_tokens

    @property
    def user_input_history(self) -> list[str]:
        return list(self._user_input_history)

    def _notify(self, name: str, *args: Any) -> None:
        callback = getattr(self._callbacks, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.debug("Message callback %s failed", name, exc_info=True)

    def _changed(self) -> None:
        self._notify("on_messages_change", list(self.messages))

    def _last_assistant(self) -> Message | None:
        for message in reversed(self.messages):
            if message.role == MessageRole.ASSISTANT:
                return message
        return None

    # ── Bulk state ──

    def set_messages(self, messages: list[Message]) -> None:
        self._session.messages = list(messages)
        self._saved_count = min(self._saved_count, len(self._session.messages))
        self._changed()

    def _start_new_session(self) -> None:
        self._session = Session(
            workdir=self._workdir,
            session_type=self._session.session_type,
            parent_session_id=self._session.parent_session_id,
        )
        self._saved_count = 0
        self._notify("on_session_id_change", self.session_id)

    def initialize_from_session(self, session: Session) -> None:
        """Adopt a loaded session; its messages count as already persisted."""
        self._session = replace(session, messages=list(session.messages))
        self._saved_count = len(session.messages)
        tokens = 0
        for message in reversed(session.messages):
            if message.usage is not None:
                tokens = message.usage.comprehensive_total
                break
        self.set_latest_total_tokens(tokens)
        self._user_input_history = [
            m.text() for m in session.messages
            if m.role == MessageRole.USER and m.text()
        ]
        self._notify("on_session_id_change", self.session_id)
        self._changed()

    def clear_messages(self) -> None:
        """Drop the conversation and continue under a fresh session id."""
        self._start_new_session()
        self._user_input_history = []
        self.set_latest_total_tokens(0)
        self._changed()

    def set_latest_total_tokens(self, tokens: int) -> None:
        if tokens != self._latest_total_tokens:
            self._latest_total_tokens = tokens
            self._notify("on_latest_total_tokens_change", tokens)

    # ── Persistence ──

    async def save_session(self) -> None:
        """Append messages that are not yet in the session file.

        Write failures are logged; the in-memory state stays authoritative.
        """
        if self._store is None:
            return
        unsaved = self.messages[self._saved_count:]
        if not unsaved:
            return
        try:
            self._store.append_messages(self._session, unsaved)
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to save session %s: %s", self.session_id, exc)
            return
        self._saved_count = len(self.messages)

    async def restore(
        self,
        session_id: str | None = None,
        continue_last: bool = False,
    ) -> bool:
        """Restore a session by id, or the latest one for the workdir.

        Returns True when an existing session was loaded. Any failure is
        logged and leaves a fresh empty session in place.
        """
        if self._store is None or (session_id is None and not continue_last):
            self._start_new_session()
            return False

        target = session_id
        if target is None:
            target = self._store.latest_session_id()
            if target is None:
                logger.info("No previous session in %s, starting fresh", self._workdir)
                self._start_new_session()
                return False
        try:
            session = self._store.load_session(target, self.session_type)
        except SessionLoadError as exc:
            logger.warning("Session restore failed, starting fresh: %s", exc)
            self._start_new_session()
            return False
        self.initialize_from_session(session)
        logger.info(
            "Restored session %s with %d messages", self.session_id, len(self.messages),
        )
        return True

    # ── User messages ──

    def add_user_message(
        self,
        content: str,
        images: list[str] | None = None,
    ) -> Message:
        blocks: list[Any] = [TextBlock(content=content)]
        if images:
            blocks.append(ImageBlock(image_urls=list(images)))
        message = Message(role=MessageRole.USER, blocks=blocks)
        self.messages.append(message)
        if content:
            self._user_input_history.append(content)
        self._notify("on_user_message_added", content)
        self._changed()
        return message

    def add_custom_command_message(
        self,
        command_name: str,
        content: str,
        original_input: str | None = None,
    ) -> Message:
        """Append an expanded slash command as the user's turn."""
        block = CustomCommandBlock(
            command_name=command_name, content=content, original_input=original_input,
        )
        message = Message(role=MessageRole.USER, blocks=[block])
        self.messages.append(message)
        if original_input:
            self._user_input_history.append(original_input)
        self._changed()
        return message

    def add_user_text_message(self, content: str) -> Message:
        """Append hook feedback as a user turn without touching input history."""
        message = Message(role=MessageRole.USER, blocks=[TextBlock(content=content)])
        self.messages.append(message)
        self._changed()
        return message

    def remove_last_user_message(self) -> Message | None:
        for index in range(len(self.messages) - 1, -1, -1):
            if self.messages[index].role == MessageRole.USER:
                removed = self.messages.pop(index)
                self._saved_count = min(self._saved_count, len(self.messages))
                self._changed()
                return removed
        return None

    # ── Assistant messages ──

    def add_assistant_message(self) -> Message:
        message = Message(role=MessageRole.ASSISTANT)
        self.messages.append(message)
        self._notify("on_assistant_message_added")
        self._changed()
        return message

    def _current_assistant(self) -> Message:
        last = self.messages[-1] if self.messages else None
        if last is None or last.role != MessageRole.ASSISTANT:
            return self.add_assistant_message()
        return last

    def update_current_message_content(self, content: str) -> None:
        """Set the accumulated text of the streaming assistant message."""
        message = self._current_assistant()
        text_block = next(
            (b for b in message.blocks if isinstance(b, TextBlock)), None,
        )
        previous = ""
        if text_block is None:
            text_block = TextBlock(content=content)
            message.blocks.insert(0, text_block)
        else:
            previous = text_block.content
            text_block.content = content
        chunk = content[len(previous):] if content.startswith(previous) else content
        self._notify("on_assistant_content_updated", chunk, content)
        self._changed()

    def set_usage_on_last_assistant(self, usage: Usage) -> None:
        message = self._last_assistant()
        if message is not None:
            message.usage = usage
            self._changed()

    def get_tool_block(self, tool_id: str) -> ToolBlock | None:
        for message in reversed(self.messages):
            for block in message.blocks:
                if isinstance(block, ToolBlock) and block.id == tool_id:
                    return block
        return None

    def update_tool_block(
        self,
        tool_id: str,
        *,
        stage: ToolStage,
        name: str | None = None,
        parameters: str | None = None,
        result: str | None = None,
        success: bool | None = None,
        error: str | None = None,
        short_result: str | None = None,
        compact_params: str | None = None,
        parameters_chunk: str | None = None,
    ) -> ToolBlock:
        """Create or advance the tool block ``tool_id``.

        Raises InvalidToolStageTransition if the stage would move backward.
        """
        block = self.get_tool_block(tool_id)
        if block is None:
            block = ToolBlock(id=tool_id, name=name or "unknown", stage=stage)
            self._current_assistant().blocks.append(block)
        else:
            validate_tool_stage(block.stage, stage)
            block.stage = stage
            if name:
                block.name = name
        if parameters is not None:
            block.parameters = parameters
        if result is not None:
            block.result = result
        if success is not None:
            block.success = success
        if error is not None:
            block.error = error
        if short_result is not None:
            block.short_result = short_result
        if compact_params is not None:
            block.compact_params = compact_params
        if parameters_chunk is not None:
            block.parameters_chunk = parameters_chunk
        self._notify("on_tool_block_updated", block)
        self._changed()
        return block

    def add_error_block(self, error: str) -> None:
        last = self.messages[-1] if self.messages else None
        if last is not None and last.role == MessageRole.ASSISTANT:
            last.blocks.append(ErrorBlock(content=error))
        else:
            self.messages.append(
                Message(role=MessageRole.ASSISTANT, blocks=[ErrorBlock(content=error)])
            )
        self._changed()

    # ── Special blocks ──

    def add_memory_block(
        self,
        content: str,
        success: bool = True,
        memory_type: str = "project",
        storage_path: str | None = None,
    ) -> None:
        block = MemoryBlock(
            content=content,
            is_success=success,
            memory_type=memory_type,
            storage_path=storage_path,
        )
        self.messages.append(Message(role=MessageRole.ASSISTANT, blocks=[block]))
        self._changed()

    def add_subagent_block(
        self,
        subagent_id: str,
        subagent_name: str,
        status: SubagentStatus,
        session_id: str | None = None,
        description: str = "",
    ) -> None:
        block = SubagentBlock(
            subagent_id=subagent_id,
            subagent_name=subagent_name,
            status=status,
            session_id=session_id,
            description=description,
        )
        self._current_assistant().blocks.append(block)
        self._changed()

    def update_subagent_block(
        self,
        subagent_id: str,
        *,
        status: SubagentStatus | None = None,
        session_id: str | None = None,
    ) -> bool:
        for message in reversed(self.messages):
            for block in message.blocks:
                if isinstance(block, SubagentBlock) and block.subagent_id == subagent_id:
                    if status is not None:
                        block.status = status
                    if session_id is not None:
                        block.session_id = session_id
                    self._changed()
                    return True
        return False

    def compress_messages_and_update_session(
        self,
        insert_index: int,
        summary: str,
        usage: Usage | None = None,
    ) -> None:
        """Replace history before ``insert_index`` with a compress block.

        The compressed conversation continues under a new session id, so
        the previous file keeps the full transcript.
        """
        previous_id = self.session_id
        messages = self.messages
        actual = insert_index if insert_index >= 0 else len(messages) + insert_index
        actual = max(0, min(actual, len(messages)))
        compressed = Message(
            role=MessageRole.ASSISTANT,
            blocks=[CompressBlock(content=summary, session_id=previous_id)],
            usage=usage,
        )
        tail = messages[actual:]
        self._start_new_session()
        self._session.messages = [compressed, *tail]
        self._notify("on_compress_block_added", insert_index, summary)
        self._changed()
        logger.info(
            "Compressed %d message(s) of session %s into %s",
            actual, previous_id, self.session_id,
        )

    # ── Shell command output (user-run `!cmd`) ──

    def add_command_output_message(self, command: str) -> None:
        block = CommandOutputBlock(command=command, is_running=True)
        self.messages.append(Message(role=MessageRole.USER, blocks=[block]))
        self._changed()

    def _running_command_block(self, command: str) -> CommandOutputBlock | None:
        for message in reversed(self.messages):
            if message.role != MessageRole.USER:
                continue
            for block in message.blocks:
                if (
                    isinstance(block, CommandOutputBlock)
                    and block.command == command
                    and block.is_running
                ):
                    return block
        return None

    def update_command_output(self, command: str, output: str) -> None:
        block = self._running_command_block(command)
        if block is not None:
            block.output = output.strip()
            self._changed()

    def complete_command(self, command: str, exit_code: int) -> None:
        block = self._running_command_block(command)
        if block is not None:
            block.is_running = False
            block.exit_code = exit_code
            self._changed()