"""LoopDriver against a scripted model service."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from wavecore.engine.builtin_tools import BashTool
from wavecore.engine.config import AgentConfig
from wavecore.engine.hooks.manager import HookManager
from wavecore.engine.hooks.models import HookEvent, HookOutcome
from wavecore.engine.loop_driver import (
    ABORTED_TOOL_MESSAGE,
    MAX_STOP_HOOK_CONTINUATIONS,
    LoopDriver,
)
from wavecore.engine.message_state import MessageState
from wavecore.engine.model_service import (
    CompressResult,
    ModelEvent,
    ModelResponse,
    ModelService,
    ToolCall,
)
from wavecore.engine.models import (
    CompressBlock,
    ErrorBlock,
    Message,
    MessageRole,
    PermissionMode,
    TextBlock,
    ToolResult,
    ToolStage,
    Usage,
)
from wavecore.engine.permissions import PermissionEngine
from wavecore.engine.tools import FunctionTool, ToolRegistry


class ScriptedModelService(ModelService):
    """Replays one list of events per model turn and records every request."""

    def __init__(self, turns: list[list[Any]], summary: str = "summary of earlier work") -> None:
        self.turns = list(turns)
        self.requests = []
        self.compress_calls = []
        self.summary = summary

    async def stream(self, request):
        self.requests.append(request)
        events = self.turns.pop(0) if self.turns else text_turn("")
        for event in events:
            if isinstance(event, Exception):
                raise event
            yield event

    async def compress(self, messages, model):
        self.compress_calls.append((messages, model))
        return CompressResult(summary=self.summary, usage=Usage(total_tokens=20))


def text_turn(text: str, usage: Usage | None = None) -> list[ModelEvent]:
    return [
        ModelEvent(kind="text", text=text),
        ModelEvent(kind="done", response=ModelResponse(content=text, usage=usage, finish_reason="stop")),
    ]


def tool_turn(*calls: tuple[str, str, str]) -> list[ModelEvent]:
    events = [
        ModelEvent(kind="tool_call", tool_call_id=call_id, tool_name=name, arguments_delta=args)
        for call_id, name, args in calls
    ]
    events.append(ModelEvent(kind="done", response=ModelResponse(
        tool_calls=[ToolCall(id=i, name=n, arguments=a) for i, n, a in calls],
        finish_reason="tool_calls",
    )))
    return events


def _config(tmp_path: Path, **kwargs) -> AgentConfig:
    return AgentConfig(
        api_key="k", base_url="http://gateway", workdir=str(tmp_path),
        home_dir=str(tmp_path / "home"), **kwargs,
    )


async def _echo(args: dict[str, Any], context) -> ToolResult:
    return ToolResult(success=True, content=f"echo {args['text']}")


def _driver(tmp_path: Path, service: ModelService, tools=(), **kwargs) -> LoopDriver:
    config = kwargs.pop("config", None) or _config(tmp_path)
    state = MessageState(str(tmp_path))
    registry = ToolRegistry(tools or [FunctionTool("Echo", _echo, restricted=False)])
    return LoopDriver(config, service, state, registry, **kwargs)


def _state(driver: LoopDriver) -> MessageState:
    return driver._state


@pytest.mark.asyncio
async def test_text_only_turn(tmp_path: Path) -> None:
    loading: list[bool] = []
    service = ScriptedModelService([text_turn("Hello!")])
    driver = _driver(tmp_path, service, on_loading_change=loading.append)
    _state(driver).add_user_message("hi")

    await driver.send()

    messages = _state(driver).messages
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert messages[-1].text() == "Hello!"
    assert service.requests[0].messages == [
        {"role": "user", "content": [{"type": "text", "text": "hi"}]},
    ]
    assert loading == [True, False]
    assert not driver.is_loading


@pytest.mark.asyncio
async def test_tool_call_result_goes_back_to_model(tmp_path: Path) -> None:
    events = []

    async def on_event(event: dict) -> None:
        events.append(event)

    service = ScriptedModelService([
        tool_turn(("call_1", "Echo", '{"text": "ping"}')),
        text_turn("All done"),
    ])
    driver = _driver(tmp_path, service, event_callback=on_event)
    _state(driver).add_user_message("use the tool")

    await driver.send()

    block = _state(driver).get_tool_block("call_1")
    assert block.stage == ToolStage.END
    assert block.success
    assert block.result == "echo ping"
    assert block.parameters == '{"text": "ping"}'
    followup = service.requests[1].messages
    assert followup[-2]["tool_calls"][0]["function"] == {
        "name": "Echo", "arguments": '{"text": "ping"}',
    }
    assert followup[-1] == {"role": "tool", "tool_call_id": "call_1", "content": "echo ping"}
    assert events == [{
        "event": "tool_result", "tool_id": "call_1", "tool_name": "Echo", "success": True,
    }]
    assert _state(driver).messages[-1].text() == "All done"


@pytest.mark.asyncio
async def test_malformed_arguments_close_block_without_running(tmp_path: Path) -> None:
    handler = AsyncMock(return_value=ToolResult(success=True, content="ok"))
    service = ScriptedModelService([
        tool_turn(("call_1", "Echo", '{"text": ')),
        text_turn("sorry"),
    ])
    driver = _driver(tmp_path, service, tools=[FunctionTool("Echo", handler, restricted=False)])
    _state(driver).add_user_message("go")

    await driver.send()

    handler.assert_not_called()
    block = _state(driver).get_tool_block("call_1")
    assert block.stage == ToolStage.END
    assert not block.success
    assert block.error == "Failed to parse tool arguments, finish_reason: tool_calls"


@pytest.mark.asyncio
async def test_unknown_tool_and_disallowed_tool_fail(tmp_path: Path) -> None:
    service = ScriptedModelService([
        tool_turn(("c1", "Missing", "{}"), ("c2", "Echo", '{"text": "x"}')),
        text_turn("ok"),
    ])
    driver = _driver(tmp_path, service)
    _state(driver).add_user_message("go")

    await driver.send(allowed_tools=["Missing"])

    assert _state(driver).get_tool_block("c1").error == "Tool not found: Missing"
    assert _state(driver).get_tool_block("c2").error == "Tool Echo is not available"
    assert service.requests[0].tools == []


@pytest.mark.asyncio
async def test_model_error_becomes_error_block(tmp_path: Path) -> None:
    service = ScriptedModelService([[RuntimeError("gateway down")]])
    driver = _driver(tmp_path, service)
    _state(driver).add_user_message("hi")

    await driver.send()

    assert _state(driver).messages[-1].blocks == [ErrorBlock(content="gateway down")]
    assert not driver.is_loading


@pytest.mark.asyncio
async def test_permission_denial_skips_execution(tmp_path: Path) -> None:
    service = ScriptedModelService([
        tool_turn(("c1", "Bash", '{"command": "make build"}')),
        text_turn("understood"),
    ])
    driver = _driver(
        tmp_path, service, tools=[BashTool()],
        permission_engine=PermissionEngine(str(tmp_path)),
    )
    _state(driver).add_user_message("build it")

    await driver.send()

    block = _state(driver).get_tool_block("c1")
    assert block.stage == ToolStage.END
    assert not block.success
    assert "No permission callback configured" in block.error
    assert block.result.startswith("Error: ")


@pytest.mark.asyncio
async def test_abort_closes_running_tool(tmp_path: Path) -> None:
    never = asyncio.Event()

    async def hang(args, context) -> ToolResult:
        await never.wait()
        return ToolResult(success=True)

    service = ScriptedModelService([tool_turn(("c1", "Hang", "{}"))])
    driver = _driver(tmp_path, service, tools=[FunctionTool("Hang", hang, restricted=False)])
    _state(driver).add_user_message("wait forever")

    task = asyncio.create_task(driver.send())
    for _ in range(200):
        block = _state(driver).get_tool_block("c1")
        if block is not None and block.stage == ToolStage.RUNNING:
            break
        await asyncio.sleep(0.01)

    driver.abort()
    driver.abort()
    await asyncio.wait_for(task, timeout=5)

    block = _state(driver).get_tool_block("c1")
    assert block.stage == ToolStage.END
    assert block.success is False
    assert block.error == ABORTED_TOOL_MESSAGE
    assert not driver.is_loading
    assert len(service.requests) == 1


@pytest.mark.asyncio
async def test_independent_unrestricted_calls_run_concurrently(tmp_path: Path) -> None:
    started: list[str] = []
    both_started = asyncio.Event()

    async def touch(args, context) -> ToolResult:
        started.append(args["file_path"])
        if len(started) == 2:
            both_started.set()
        await asyncio.wait_for(both_started.wait(), timeout=2)
        return ToolResult(success=True, content="ok")

    service = ScriptedModelService([
        tool_turn(("c1", "Touch", '{"file_path": "a"}'), ("c2", "Touch", '{"file_path": "b"}')),
        text_turn("done"),
    ])
    driver = _driver(tmp_path, service, tools=[FunctionTool("Touch", touch, restricted=False)])
    _state(driver).add_user_message("touch both")

    await driver.send()

    assert _state(driver).get_tool_block("c1").success
    assert _state(driver).get_tool_block("c2").success


@pytest.mark.asyncio
async def test_usage_over_limit_compresses_history(tmp_path: Path) -> None:
    usages: list[Usage] = []
    compressing: list[bool] = []
    config = _config(tmp_path, token_limit=100)
    service = ScriptedModelService([
        text_turn("answer", usage=Usage(prompt_tokens=150, completion_tokens=10, total_tokens=160)),
    ])
    driver = _driver(
        tmp_path, service, config=config,
        on_usage_added=usages.append, on_compressing_change=compressing.append,
    )
    state = _state(driver)
    state.set_messages([
        Message(
            role=MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT,
            blocks=[TextBlock(content=f"turn {i}")],
        )
        for i in range(10)
    ])
    old_session = state.session_id
    state.add_user_message("one more")

    await driver.send()

    assert [u.operation_type for u in usages] == ["agent", "compress"]
    assert usages[0].model == config.agent_model
    assert service.compress_calls[0][1] == config.fast_model
    assert compressing == [True, False]
    assert state.session_id != old_session
    assert len(state.messages) == 8
    assert state.messages[0].blocks == [
        CompressBlock(content="summary of earlier work", session_id=old_session),
    ]
    assert state.messages[-1].text() == "answer"


@pytest.mark.asyncio
async def test_stop_hook_block_runs_another_turn(tmp_path: Path) -> None:
    hooks = MagicMock()
    hooks.run = AsyncMock(side_effect=[HookOutcome(should_block=True), HookOutcome()])
    service = ScriptedModelService([text_turn("first"), text_turn("second")])
    driver = _driver(tmp_path, service, hook_manager=hooks)
    _state(driver).add_user_message("go")

    await driver.send()

    assert len(service.requests) == 2
    assert [c.args[0] for c in hooks.run.await_args_list] == [HookEvent.STOP, HookEvent.STOP]


@pytest.mark.asyncio
async def test_subagent_driver_runs_subagent_stop(tmp_path: Path) -> None:
    hooks = MagicMock()
    hooks.run = AsyncMock(return_value=HookOutcome())
    service = ScriptedModelService([text_turn("done")])
    driver = _driver(tmp_path, service, hook_manager=hooks, subagent_type="reviewer")
    _state(driver).add_user_message("review")

    await driver.send()

    event, context = hooks.run.await_args.args[:2]
    assert event == HookEvent.SUBAGENT_STOP
    assert context.subagent_type == "reviewer"


@pytest.mark.asyncio
async def test_pre_tool_use_hook_can_rewrite_input(tmp_path: Path) -> None:
    def outcome(event, *args, **kwargs) -> HookOutcome:
        if event == HookEvent.PRE_TOOL_USE:
            return HookOutcome(updated_input={"text": "rewritten"})
        return HookOutcome()

    hooks = MagicMock()
    hooks.run = AsyncMock(side_effect=outcome)
    service = ScriptedModelService([
        tool_turn(("c1", "Echo", '{"text": "original"}')),
        text_turn("ok"),
    ])
    driver = _driver(tmp_path, service, hook_manager=hooks)
    _state(driver).add_user_message("go")

    await driver.send()

    block = _state(driver).get_tool_block("c1")
    assert block.result == "echo rewritten"
    assert block.parameters == '{"text": "rewritten"}'
    events = [c.args[0] for c in hooks.run.await_args_list]
    assert events == [HookEvent.PRE_TOOL_USE, HookEvent.POST_TOOL_USE, HookEvent.STOP]


@pytest.mark.asyncio
async def test_always_blocking_stop_hook_is_bounded(tmp_path: Path) -> None:
    loading: list[bool] = []
    reentered: list[None] = []

    async def block_and_resend(event, *args, **kwargs) -> HookOutcome:
        assert driver.is_loading
        reentered.append(await driver.send())
        return HookOutcome(should_block=True)

    hooks = MagicMock()
    hooks.run = AsyncMock(side_effect=block_and_resend)
    service = ScriptedModelService([])
    driver = _driver(tmp_path, service, hook_manager=hooks, on_loading_change=loading.append)
    _state(driver).add_user_message("go")

    await driver.send()

    assert hooks.run.await_count == MAX_STOP_HOOK_CONTINUATIONS + 1
    assert len(service.requests) == MAX_STOP_HOOK_CONTINUATIONS + 1
    assert len(reentered) == MAX_STOP_HOOK_CONTINUATIONS + 1
    assert loading == [True, False]
    assert not driver.is_loading


@pytest.mark.asyncio
async def test_pre_tool_use_deny_never_runs_the_tool(tmp_path: Path) -> None:
    deny = json.dumps({"hookSpecificOutput": {
        "hookEventName": "PreToolUse",
        "permissionDecision": "deny",
        "permissionDecisionReason": "no writes today",
    }})
    hooks = HookManager(str(tmp_path))
    hooks.load_configuration(project_hooks={"PreToolUse": [
        {"matcher": "Write", "hooks": [{"type": "command", "command": f"echo '{deny}'"}]},
    ]})
    write = AsyncMock(return_value=ToolResult(success=True, content="written"))
    service = ScriptedModelService([
        tool_turn(("w1", "Write", '{"file_path": "a.txt", "content": "x"}')),
        text_turn("gave up"),
    ])
    driver = _driver(
        tmp_path, service,
        tools=[FunctionTool("Write", write)],
        hook_manager=hooks,
        permission_engine=PermissionEngine(str(tmp_path), mode=PermissionMode.BYPASS),
    )
    _state(driver).add_user_message("write a file")

    await driver.send()

    write.assert_not_awaited()
    block = _state(driver).get_tool_block("w1")
    assert block.stage == ToolStage.END
    assert not block.success
    assert block.error == "no writes today"
    assert not (tmp_path / "a.txt").exists()
    assert service.requests[1].messages[-1]["role"] == "tool"
