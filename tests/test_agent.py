"""Agent composition root: end-to-end turns against a scripted model."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from wavecore.engine.agent import Agent, AgentCallbacks
from wavecore.engine.config import AgentConfig
from wavecore.engine.errors import ConfigurationError
from wavecore.engine.model_service import (
    CompressResult,
    ModelEvent,
    ModelResponse,
    ModelService,
    ToolCall,
)
from wavecore.engine.models import (
    CommandOutputBlock,
    ErrorBlock,
    MemoryBlock,
    MessageRole,
    PermissionMode,
)


class ScriptedModelService(ModelService):
    def __init__(self, turns: list[list[ModelEvent]]) -> None:
        self.turns = list(turns)
        self.requests = []

    async def stream(self, request):
        self.requests.append(request)
        events = self.turns.pop(0) if self.turns else _text("")
        for event in events:
            yield event

    async def compress(self, messages, model):
        return CompressResult(summary="")


def _text(text: str) -> list[ModelEvent]:
    return [
        ModelEvent(kind="text", text=text),
        ModelEvent(kind="done", response=ModelResponse(content=text, finish_reason="stop")),
    ]


def _tool(call_id: str, name: str, arguments: str) -> list[ModelEvent]:
    return [
        ModelEvent(kind="tool_call", tool_call_id=call_id, tool_name=name, arguments_delta=arguments),
        ModelEvent(kind="done", response=ModelResponse(
            tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments)],
            finish_reason="tool_calls",
        )),
    ]


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


def _config(tmp_path: Path, workdir: Path, **kwargs: Any) -> AgentConfig:
    return AgentConfig(
        api_key="k",
        base_url="http://gateway",
        workdir=str(workdir),
        home_dir=str(tmp_path / "home"),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_send_message_and_continue_session(tmp_path: Path, workdir: Path) -> None:
    service = ScriptedModelService([_text("Hi there")])
    agent = await Agent.create(_config(tmp_path, workdir), model_service=service)

    await agent.send_message("hello")

    assert [m.role for m in agent.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert agent.messages[-1].text() == "Hi there"
    assert service.requests[0].model == agent.config.agent_model
    assert agent.user_input_history == ["hello"]
    session_id = agent.session_id
    await agent.destroy()

    resumed = await Agent.create(
        _config(tmp_path, workdir),
        model_service=ScriptedModelService([]),
        continue_last_session=True,
    )
    assert resumed.session_id == session_id
    assert [m.text() for m in resumed.messages] == ["hello", "Hi there"]
    await resumed.destroy()


@pytest.mark.asyncio
async def test_save_memory(tmp_path: Path, workdir: Path) -> None:
    agent = await Agent.create(_config(tmp_path, workdir), model_service=ScriptedModelService([]))

    assert await agent.save_memory("# use pytest")
    assert await agent.save_memory("prefers tabs", memory_type="user")

    project = (workdir / "WAVE.md").read_text()
    assert project.startswith("# Memory")
    assert project.endswith("- use pytest\n")
    user = (tmp_path / "home" / ".wave" / "memory.md").read_text()
    assert user.endswith("- prefers tabs\n")

    blocks = [b for m in agent.messages for b in m.blocks if isinstance(b, MemoryBlock)]
    assert [b.content for b in blocks] == ["Project Memory: use pytest", "User Memory: prefers tabs"]
    assert all(b.is_success for b in blocks)
    await agent.destroy()


@pytest.mark.asyncio
async def test_execute_bash_command(tmp_path: Path, workdir: Path) -> None:
    agent = await Agent.create(_config(tmp_path, workdir), model_service=ScriptedModelService([]))

    assert await agent.execute_bash_command("echo hi") == 0
    assert await agent.execute_bash_command("exit 4") == 4

    blocks = [b for m in agent.messages for b in m.blocks if isinstance(b, CommandOutputBlock)]
    assert blocks[0].output == "hi"
    assert blocks[0].exit_code == 0
    assert not blocks[0].is_running
    assert blocks[1].exit_code == 4
    assert not agent.is_command_running
    await agent.destroy()


@pytest.mark.asyncio
async def test_blocked_prompt_never_reaches_model(tmp_path: Path, workdir: Path) -> None:
    (workdir / ".wave").mkdir()
    (workdir / ".wave" / "settings.json").write_text(json.dumps({"hooks": {
        "UserPromptSubmit": [{"hooks": [
            {"type": "command", "command": "echo 'prompt rejected' >&2; exit 2"},
        ]}],
    }}))
    service = ScriptedModelService([_text("should not be used")])
    agent = await Agent.create(_config(tmp_path, workdir), model_service=service)

    await agent.send_message("do something")

    assert service.requests == []
    assert all(m.role != MessageRole.USER for m in agent.messages)
    assert agent.messages[-1].blocks == [ErrorBlock(content="prompt rejected")]
    await agent.destroy()


@pytest.mark.asyncio
async def test_invalid_hooks_are_disabled(tmp_path: Path, workdir: Path) -> None:
    (workdir / ".wave").mkdir()
    (workdir / ".wave" / "settings.json").write_text(json.dumps({"hooks": {"NotAnEvent": []}}))
    agent = await Agent.create(_config(tmp_path, workdir), model_service=ScriptedModelService([]))
    assert agent.hook_manager.configuration == {}
    await agent.destroy()


@pytest.mark.asyncio
async def test_destroy_kills_background_shells(tmp_path: Path, workdir: Path) -> None:
    shells = []
    service = ScriptedModelService([
        _tool("c1", "Bash", json.dumps({"command": "sleep 30", "run_in_background": True})),
        _text("Started it."),
    ])
    agent = await Agent.create(
        _config(tmp_path, workdir, default_permission_mode=PermissionMode.BYPASS),
        model_service=service,
        callbacks=AgentCallbacks(on_shells_change=shells.append),
    )

    await agent.send_message("start the watcher")

    assert agent.get_background_shell_output("bash_1")["status"] == "running"
    await agent.destroy()
    assert agent.get_background_shell_output("bash_1")["status"] == "killed"
    assert shells


@pytest.mark.asyncio
async def test_permission_mode_switch(tmp_path: Path, workdir: Path) -> None:
    modes = []
    agent = await Agent.create(
        _config(tmp_path, workdir),
        model_service=ScriptedModelService([]),
        callbacks=AgentCallbacks(on_permission_mode_change=modes.append),
    )
    agent.set_permission_mode("acceptEdits")
    assert agent.permission_mode == PermissionMode.ACCEPT_EDITS
    assert modes == [PermissionMode.ACCEPT_EDITS]
    await agent.destroy()


@pytest.mark.asyncio
async def test_create_rejects_missing_credentials(tmp_path: Path, workdir: Path) -> None:
    with pytest.raises(ConfigurationError):
        await Agent.create(
            AgentConfig(api_key="", base_url="http://gateway", workdir=str(workdir)),
            model_service=ScriptedModelService([]),
        )


@pytest.mark.asyncio
async def test_slash_command_becomes_the_prompt(tmp_path: Path, workdir: Path) -> None:
    commands = workdir / ".wave" / "commands"
    commands.mkdir(parents=True)
    (commands / "explain.md").write_text("---\nmodel: fast-model\n---\nExplain $1 in one line")
    service = ScriptedModelService([_text("It parses things.")])
    agent = await Agent.create(_config(tmp_path, workdir), model_service=service)

    assert [c.id for c in agent.slash_commands.commands] == ["clear", "explain"]
    assert await agent.execute_slash_command("/explain parser.py")
    assert not await agent.execute_slash_command("/unknown")

    request = service.requests[0]
    assert request.model == "fast-model"
    assert request.messages[0] == {
        "role": "user", "content": [{"type": "text", "text": "Explain parser.py in one line"}],
    }
    assert agent.messages[-1].text() == "It parses things."
    await agent.destroy()


@pytest.mark.asyncio
async def test_abort_message_reaches_slash_commands(tmp_path: Path, workdir: Path) -> None:
    agent = await Agent.create(_config(tmp_path, workdir), model_service=ScriptedModelService([]))
    agent._slash_commands.abort_current_command = MagicMock()

    agent.abort_message()

    agent._slash_commands.abort_current_command.assert_called_once_with()
    await agent.destroy()
