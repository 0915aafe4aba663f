"""History serialization for the model service and the tool registry."""

from __future__ import annotations

from pathlib import Path

import pytest

from wavecore.engine.model_service import (
    convert_messages_for_api,
    safe_tool_arguments,
    strip_ansi,
)
from wavecore.engine.models import (
    CompressBlock,
    ImageBlock,
    Message,
    MessageRole,
    TextBlock,
    ToolBlock,
    ToolResult,
    ToolStage,
)
from wavecore.engine.tools import FunctionTool, ToolContext, ToolRegistry


def test_tool_blocks_become_calls_and_results() -> None:
    messages = [
        Message(role=MessageRole.USER, blocks=[TextBlock(content="list files")]),
        Message(role=MessageRole.ASSISTANT, blocks=[
            TextBlock(content="Listing"),
            ToolBlock(
                id="c1", name="Bash", parameters='{"command": "ls"}',
                result="\x1b[32ma.txt\x1b[0m", stage=ToolStage.END, success=True,
            ),
            ToolBlock(id="c2", name="Bash", parameters="{", stage=ToolStage.RUNNING),
        ]),
    ]
    assert convert_messages_for_api(messages) == [
        {"role": "user", "content": [{"type": "text", "text": "list files"}]},
        {
            "role": "assistant",
            "content": "Listing",
            "tool_calls": [{
                "id": "c1",
                "type": "function",
                "function": {"name": "Bash", "arguments": '{"command": "ls"}'},
            }],
        },
        {"role": "tool", "tool_call_id": "c1", "content": "a.txt"},
    ]


def test_history_starts_at_newest_compress_block() -> None:
    messages = [
        Message(role=MessageRole.USER, blocks=[TextBlock(content="ancient")]),
        Message(role=MessageRole.ASSISTANT, blocks=[CompressBlock(content="old summary")]),
        Message(role=MessageRole.USER, blocks=[TextBlock(content="middle")]),
        Message(role=MessageRole.ASSISTANT, blocks=[CompressBlock(content="new summary")]),
        Message(role=MessageRole.USER, blocks=[TextBlock(content="latest")]),
    ]
    converted = convert_messages_for_api(messages)
    assert converted[0] == {
        "role": "system", "content": "[Compressed Message Summary] new summary",
    }
    assert len(converted) == 2


def test_images_are_inlined_as_data_urls(tmp_path: Path) -> None:
    image = tmp_path / "shot.png"
    image.write_bytes(b"\x89PNG")
    message = Message(role=MessageRole.USER, blocks=[
        TextBlock(content="see"),
        ImageBlock(image_urls=[str(image), "data:image/png;base64,AAAA", str(tmp_path / "gone.png")]),
    ])
    [entry] = convert_messages_for_api([message])
    urls = [p["image_url"]["url"] for p in entry["content"] if p["type"] == "image_url"]
    assert urls[0].startswith("data:image/png;base64,")
    assert urls[1] == "data:image/png;base64,AAAA"
    assert len(urls) == 2


def test_argument_and_ansi_helpers() -> None:
    assert safe_tool_arguments('{"a": 1}') == '{"a": 1}'
    assert safe_tool_arguments("{broken") == "{}"
    assert safe_tool_arguments(None) == "{}"
    assert strip_ansi("\x1b[1;31mred\x1b[0m") == "red"


@pytest.mark.asyncio
async def test_registry_turns_failures_into_results(tmp_path: Path) -> None:
    async def explode(args, context) -> ToolResult:
        raise ValueError("bad input")

    registry = ToolRegistry([FunctionTool("Explode", explode, compact_param="path")])
    context = ToolContext(workdir=str(tmp_path))

    failed = await registry.execute("Explode", {}, context)
    assert not failed.success
    assert failed.error == "Tool Explode failed: bad input"

    unknown = await registry.execute("Nope", {}, context)
    assert unknown.error == "Tool not found: Nope"

    assert registry.compact_params("Explode", {"path": "src/a.py"}) == "src/a.py"
    assert registry.subset(["Explode", "Other"]).names == ["Explode"]
    assert registry.subset(exclude=["Explode"]).names == []
    assert registry.schemas()[0]["function"]["name"] == "Explode"
