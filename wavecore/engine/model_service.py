"""Model service protocol and message serialization.

The runtime never talks HTTP itself. A ``ModelService`` implementation
wraps whatever gateway is in use and streams ``ModelEvent`` objects back
to the loop driver. The last event of every stream carries the complete
``ModelResponse``.
"""
from __future__ import annotations

import abc
import base64
import json
import logging
import mimetypes
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator

from .models import (
    CompressBlock,
    CustomCommandBlock,
    ImageBlock,
    Message,
    MessageRole,
    TextBlock,
    ToolBlock,
    ToolStage,
    Usage,
)

logger = logging.getLogger(__name__)

COMPRESSED_SUMMARY_PREFIX = "[Compressed Message Summary]"

_ANSI = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


@dataclass
class ToolCall:
    """A complete tool call requested by the model."""
    id: str
    name: str
    arguments: str = ""


@dataclass
class ModelResponse:
    """Final state of one streamed completion."""
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    finish_reason: str | None = None


@dataclass
class ModelEvent:
    """One streaming event.

    kind is ``text`` (``text`` holds the delta), ``tool_call`` (an
    argument chunk for ``tool_call_id``; ``tool_name`` is set on the first
    chunk) or ``done`` (``response`` holds the final ModelResponse).
    """
    kind: str
    text: str = ""
    tool_call_id: str | None = None
    tool_name: str | None = None
    arguments_delta: str = ""
    response: ModelResponse | None = None


@dataclass
class ModelRequest:
    messages: list[dict[str, Any]]
    model: str
    tools: list[dict[str, Any]] = field(default_factory=list)
    system_prompt: str | None = None


@dataclass
class CompressResult:
    summary: str
    usage: Usage | None = None


class ModelService(abc.ABC):
    """Abstract streaming chat-completion service."""

    @abc.abstractmethod
    def stream(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:
        """Stream one completion.

        Yields ModelEvent objects; the final one has kind ``done``.
        Cancellation of the consuming task must stop the stream.
        """

    @abc.abstractmethod
    async def compress(self, messages: list[dict[str, Any]], model: str) -> CompressResult:
        """Summarize a serialized message history."""


def strip_ansi(text: str) -> str:
    return _ANSI.sub("", text)


def safe_tool_arguments(arguments: str | None) -> str:
    """Return ``arguments`` if it is valid JSON, else ``{}``."""
    if not arguments:
        return "{}"
    try:
        json.loads(arguments)
    except (json.JSONDecodeError, TypeError):
        return "{}"
    return arguments


def image_to_data_url(path: str) -> str:
    """Read an image file into a ``data:`` URL. Raises OSError."""
    data = Path(path).read_bytes()
    media_type = mimetypes.guess_type(path)[0] or "image/png"
    return f"data:{media_type};base64,{base64.b64encode(data).decode('ascii')}"


def _assistant_to_api(message: Message) -> list[dict[str, Any]]:
    tool_blocks = [
        b for b in message.blocks
        if isinstance(b, ToolBlock) and b.id and b.stage == ToolStage.END
    ]
    text = "\n".join(b.content for b in message.blocks if isinstance(b, TextBlock))
    result: list[dict[str, Any]] = []
    if text or tool_blocks:
        entry: dict[str, Any] = {"role": "assistant", "content": text}
        if tool_blocks:
            entry["tool_calls"] = [
                {
                    "id": b.id,
                    "type": "function",
                    "function": {
                        "name": b.name,
                        "arguments": safe_tool_arguments(b.parameters),
                    },
                }
                for b in tool_blocks
            ]
        result.append(entry)
    for block in tool_blocks:
        result.append({
            "role": "tool",
            "tool_call_id": block.id,
            "content": strip_ansi(block.result or block.error or ""),
        })
    return result


def _user_to_api(message: Message) -> dict[str, Any] | None:
    parts: list[dict[str, Any]] = []
    for block in message.blocks:
        if isinstance(block, (TextBlock, CustomCommandBlock)) and block.content:
            parts.append({"type": "text", "text": block.content})
        elif isinstance(block, ImageBlock):
            for url in block.image_urls:
                if not url.startswith("data:image/"):
                    try:
                        url = image_to_data_url(url)
                    except OSError as exc:
                        logger.warning("Skipping unreadable image %s: %s", url, exc)
                        continue
                parts.append({"type": "image_url", "image_url": {"url": url, "detail": "auto"}})
    if not parts:
        return None
    return {"role": "user", "content": parts}


def convert_messages_for_api(messages: list[Message]) -> list[dict[str, Any]]:
    """Serialize history to chat-completion dicts.

    Walks back from the newest message and stops at the newest compress
    block, which becomes a system message. Tool blocks that have not
    reached the ``end`` stage are omitted.
    """
    collected: list[list[dict[str, Any]]] = []
    for message in reversed(messages):
        compress = next((b for b in message.blocks if isinstance(b, CompressBlock)), None)
        if message.role == MessageRole.ASSISTANT and compress is not None:
            collected.append([{
                "role": "system",
                "content": f"{COMPRESSED_SUMMARY_PREFIX} {compress.content}",
            }])
            break
        if message.role == MessageRole.ASSISTANT:
            entries = _assistant_to_api(message)
            if entries:
                collected.append(entries)
        elif message.role == MessageRole.USER:
            entry = _user_to_api(message)
            if entry is not None:
                collected.append([entry])
    return [entry for group in reversed(collected) for entry in group]
