"""Tool-calling loop.

One ``send()`` call runs model turns until the model stops asking for
tools, the turn is aborted, or the model service fails:

    stream completion -> tool calls -> (permission, PreToolUse hooks,
    execute, PostToolUse hooks) -> record usage / compress -> repeat

When a run finishes without abort, Stop hooks run (SubagentStop for a
subagent's driver). A blocking Stop hook sends the model around again.

Tool calls of one turn run sequentially unless every call is
unrestricted and no two calls target the same file.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from .config import AgentConfig, EventCallback, fire_event
from .hooks.models import HookEvent, HookExecutionContext
from .model_service import (
    ModelRequest,
    ModelResponse,
    ModelService,
    ToolCall,
    convert_messages_for_api,
)
from .models import (
    DelegationContext,
    MessageRole,
    ToolBlock,
    ToolResult,
    ToolStage,
    Usage,
)
from .permissions import PermissionEngine
from .tools import ToolContext, ToolRegistry, format_tool_input

if TYPE_CHECKING:
    from .background import BackgroundProcessRegistry
    from .delegator import SubagentDelegator
    from .hooks.manager import HookManager
    from .message_state import MessageState

logger = logging.getLogger(__name__)

KEEP_RECENT_MESSAGES = 7
ABORTED_TOOL_MESSAGE = "Tool execution aborted"
PATH_ARGUMENTS = ("file_path", "path", "notebook_path")
# Times a blocking Stop hook may send the model around again in one send().
MAX_STOP_HOOK_CONTINUATIONS = 3


def _target_paths(args: dict[str, Any]) -> set[str]:
    return {str(args[k]) for k in PATH_ARGUMENTS if args.get(k)}


class LoopDriver:
    """Drive model turns and tool execution for one MessageState."""

    def __init__(
        self,
        config: AgentConfig,
        model_service: ModelService,
        message_state: MessageState,
        tools: ToolRegistry,
        *,
        permission_engine: PermissionEngine | None = None,
        hook_manager: HookManager | None = None,
        background: BackgroundProcessRegistry | None = None,
        delegator: SubagentDelegator | None = None,
        delegation: DelegationContext | None = None,
        system_prompt: str | None = None,
        subagent_type: str | None = None,
        on_loading_change: Callable[[bool], None] | None = None,
        on_compressing_change: Callable[[bool], None] | None = None,
        on_usage_added: Callable[[Usage], None] | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._config = config
        self._model = model_service
        self._state = message_state
        self._tools = tools
        self._permissions = permission_engine
        self._hooks = hook_manager
        self._background = background
        self._delegator = delegator
        self._delegation = delegation or DelegationContext()
        self._system_prompt = system_prompt
        self._subagent_type = subagent_type
        self._on_loading_change = on_loading_change
        self._on_compressing_change = on_compressing_change
        self._on_usage_added = on_usage_added
        self._event_callback = event_callback

        self._loading = False
        self._compressing = False
        self._aborted = False
        self._task: asyncio.Task | None = None
        self._cancel_event = asyncio.Event()

    # ── State ──

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def is_compressing(self) -> bool:
        return self._compressing

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    def set_delegator(self, delegator: SubagentDelegator | None) -> None:
        self._delegator = delegator

    def _set_loading(self, value: bool) -> None:
        if value == self._loading:
            return
        self._loading = value
        if self._on_loading_change is not None:
            try:
                self._on_loading_change(value)
            except Exception:
                logger.debug("on_loading_change callback failed", exc_info=True)

    def _set_compressing(self, value: bool) -> None:
        if value == self._compressing:
            return
        self._compressing = value
        if self._on_compressing_change is not None:
            try:
                self._on_compressing_change(value)
            except Exception:
                logger.debug("on_compressing_change callback failed", exc_info=True)

    # ── Public API ──

    async def send(
        self,
        allowed_tools: Iterable[str] | None = None,
        model: str | None = None,
    ) -> None:
        """Run the loop on the current messages. No-op while already running.

        The loop counts as loading until its Stop hooks have finished, so a
        concurrent ``send()`` from a hook-triggered callback is ignored.
        """
        if self._loading:
            logger.debug("send() ignored: a turn is already in progress")
            return
        allowed = None if allowed_tools is None else list(allowed_tools)
        self._set_loading(True)
        try:
            continuations = 0
            while True:
                aborted = await self._run_once(allowed, model)
                if aborted or not await self._run_stop_hooks():
                    return
                if self._cancel_event.is_set():
                    return
                if continuations >= MAX_STOP_HOOK_CONTINUATIONS:
                    logger.warning(
                        "%s hooks still blocking after %d continuations; stopping",
                        self._stop_event().value, continuations,
                    )
                    return
                continuations += 1
                logger.info(
                    "%s hooks asked for more work; continuing conversation",
                    self._stop_event().value,
                )
        finally:
            self._set_loading(False)

    def abort(self) -> None:
        """Cancel the active turn and close its running tool blocks. Idempotent."""
        self._cancel_event.set()
        if self._task is not None and not self._task.done():
            self._aborted = True
            self._task.cancel()
            logger.info("Loop aborted (session %s)", self._state.session_id[:8])
        self._mark_running_tools_aborted()

    # ── Run ──

    async def _run_once(self, allowed_tools: list[str] | None, model: str | None) -> bool:
        """One uninterrupted run. Returns True if it was aborted."""
        self._cancel_event = asyncio.Event()
        self._aborted = False
        self._task = asyncio.create_task(self._run_turns(allowed_tools, model))
        try:
            await self._task
        except asyncio.CancelledError:
            self._mark_running_tools_aborted()
            if not self._aborted:
                raise
        finally:
            self._task = None
            await self._state.save_session()
        return self._aborted

    async def _run_turns(self, allowed_tools: list[str] | None, model: str | None) -> None:
        model = model or self._config.agent_model
        while True:
            try:
                response = await self._stream_turn(allowed_tools, model)
            except Exception as exc:
                logger.error("Model call failed: %s", exc)
                self._state.add_error_block(str(exc) or "Unknown error occurred")
                return

            if response.tool_calls:
                await self._execute_tool_calls(response, allowed_tools, model)
            await self._record_usage(response.usage, model)

            if not response.tool_calls or self._cancel_event.is_set():
                return
            await self._state.save_session()

    async def _stream_turn(self, allowed_tools: list[str] | None, model: str) -> ModelResponse:
        request = ModelRequest(
            messages=convert_messages_for_api(self._state.messages),
            model=model,
            tools=self._tools.schemas(allowed_tools),
            system_prompt=self._system_prompt,
        )
        assistant_created = False
        content = ""
        arguments: dict[str, str] = {}
        response: ModelResponse | None = None

        async for event in self._model.stream(request):
            if event.kind == "done":
                response = event.response
                continue
            if not assistant_created:
                self._state.add_assistant_message()
                assistant_created = True
            if event.kind == "text" and event.text:
                content += event.text
                self._state.update_current_message_content(content)
            elif event.kind == "tool_call" and event.tool_call_id:
                call_id = event.tool_call_id
                args = arguments.get(call_id, "") + event.arguments_delta
                arguments[call_id] = args
                block = self._state.get_tool_block(call_id)
                self._state.update_tool_block(
                    call_id,
                    stage=ToolStage.START if block is None else ToolStage.STREAMING,
                    name=event.tool_name,
                    parameters=args,
                    parameters_chunk=event.arguments_delta,
                    compact_params=args.split("\n")[-1][-30:],
                )

        if response is None:
            response = ModelResponse(
                content=content,
                tool_calls=[ToolCall(id=i, name=self._tool_name(i), arguments=a) for i, a in arguments.items()],
            )
        if response.finish_reason:
            logger.debug("Model response finished: %s", response.finish_reason)
        if not assistant_created and (response.content or response.tool_calls):
            self._state.add_assistant_message()
        if response.content and response.content != content:
            self._state.update_current_message_content(response.content)
        return response

    def _tool_name(self, tool_id: str) -> str:
        block = self._state.get_tool_block(tool_id)
        return block.name if block is not None else ""

    # ── Tool calls ──

    def _can_run_concurrently(self, calls: list[tuple[ToolCall, dict[str, Any]]]) -> bool:
        if len(calls) < 2:
            return False
        seen: set[str] = set()
        for call, args in calls:
            if not self._tools.has(call.name) or self._tools.get(call.name).restricted:
                return False
            paths = _target_paths(args)
            if paths & seen:
                return False
            seen |= paths
        return True

    async def _execute_tool_calls(
        self,
        response: ModelResponse,
        allowed_tools: list[str] | None,
        model: str,
    ) -> None:
        parsed: list[tuple[ToolCall, dict[str, Any]]] = []
        for call in response.tool_calls:
            args = self._parse_arguments(call, response.finish_reason)
            if args is not None:
                parsed.append((call, args))

        if self._can_run_concurrently(parsed):
            logger.debug("Running %d tool calls concurrently", len(parsed))
            await asyncio.gather(*(
                self._execute_tool_call(call, args, allowed_tools, model)
                for call, args in parsed
            ))
            return
        for call, args in parsed:
            if self._cancel_event.is_set():
                return
            await self._execute_tool_call(call, args, allowed_tools, model)

    def _parse_arguments(self, call: ToolCall, finish_reason: str | None) -> dict[str, Any] | None:
        raw = (call.arguments or "").strip()
        if not raw:
            return {}
        try:
            args = json.loads(raw)
        except json.JSONDecodeError:
            args = None
        if isinstance(args, dict):
            return args
        message = f"Failed to parse tool arguments, finish_reason: {finish_reason}"
        logger.error("%s (tool=%s id=%s)", message, call.name, call.id)
        self._finish_tool(
            call.id, call.name, raw,
            ToolResult(success=False, content=message, error=message),
            compact_params="",
        )
        return None

    async def _execute_tool_call(
        self,
        call: ToolCall,
        args: dict[str, Any],
        allowed_tools: list[str] | None,
        model: str,
    ) -> None:
        tool_id, name = call.id, call.name
        parameters = (call.arguments or "").strip()
        compact = self._tools.compact_params(name, args)
        self._state.update_tool_block(
            tool_id,
            stage=ToolStage.RUNNING,
            name=name,
            parameters=parameters,
            compact_params=compact,
            parameters_chunk="",
        )
        try:
            if allowed_tools is not None and name not in allowed_tools:
                self._finish_tool(
                    tool_id, name, parameters,
                    ToolResult(success=False, error=f"Tool {name} is not available"),
                )
                return

            gated = await self._gate_tool_call(tool_id, name, args, parameters)
            if gated is None:
                return
            args, parameters = gated

            context = ToolContext(
                workdir=self._config.workdir,
                tool_call_id=tool_id,
                cancel_event=self._cancel_event,
                background=self._background,
                delegator=self._delegator,
                delegation=self._delegation,
                message_state=self._state,
                model=model,
            )
            result = await self._tools.execute(name, args, context)
            self._finish_tool(tool_id, name, parameters, result)
            await fire_event(self._event_callback, {
                "event": "tool_result",
                "tool_id": tool_id,
                "tool_name": name,
                "success": result.success,
            })

            if self._hooks is not None:
                await self._hooks.run(
                    HookEvent.POST_TOOL_USE,
                    self._hook_context(
                        HookEvent.POST_TOOL_USE,
                        tool_name=name,
                        tool_input=args,
                        tool_response=result.to_dict(),
                    ),
                    self._state,
                    tool_id,
                    parameters,
                )
        except Exception as exc:
            logger.exception("Tool %s failed outside its own error handling", name)
            self._finish_tool(
                tool_id, name, parameters,
                ToolResult(
                    success=False,
                    content=f"Tool execution failed: {exc}",
                    error=str(exc),
                ),
            )

    async def _gate_tool_call(
        self,
        tool_id: str,
        name: str,
        args: dict[str, Any],
        parameters: str,
    ) -> tuple[dict[str, Any], str] | None:
        """Permission check and PreToolUse hooks.

        Returns the (possibly rewritten) input, or None when the call was
        refused and its block already closed.
        """
        restricted = (
            self._tools.get(name).restricted if self._tools.has(name)
            else PermissionEngine.is_restricted(name)
        )
        if self._permissions is not None:
            decision = await self._permissions.check(name, args, tool_id, restricted=restricted)
            if not decision.allowed:
                reason = decision.message or f"Permission denied for tool {name}"
                logger.info("Tool %s denied: %s", name, reason)
                self._finish_tool(tool_id, name, parameters, ToolResult(success=False, error=reason))
                return None

        if self._hooks is None:
            return args, parameters
        outcome = await self._hooks.run(
            HookEvent.PRE_TOOL_USE,
            self._hook_context(HookEvent.PRE_TOOL_USE, tool_name=name, tool_input=args),
            self._state,
            tool_id,
            parameters,
        )
        if outcome.should_block:
            logger.info("Tool %s blocked by PreToolUse hook", name)
            return None
        if outcome.updated_input is not None:
            args = outcome.updated_input
            parameters = format_tool_input(args)
            self._state.update_tool_block(tool_id, stage=ToolStage.RUNNING, parameters=parameters)
        if outcome.permission_decision == "ask":
            if self._permissions is None:
                reason = f"Tool '{name}' requires permission approval. No permission callback configured."
                self._finish_tool(tool_id, name, parameters, ToolResult(success=False, error=reason))
                return None
            context = self._permissions.create_context(name, args, tool_id)
            decision = await self._permissions.request_approval(context)
            self._permissions.apply_decision(context, decision)
            if not decision.allowed:
                reason = decision.message or f"Permission denied for tool {name}"
                self._finish_tool(tool_id, name, parameters, ToolResult(success=False, error=reason))
                return None
        return args, parameters

    def _finish_tool(
        self,
        tool_id: str,
        name: str,
        parameters: str,
        result: ToolResult,
        compact_params: str | None = None,
    ) -> None:
        block = self._state.get_tool_block(tool_id)
        if block is not None and block.stage == ToolStage.END:
            return
        self._state.update_tool_block(
            tool_id,
            stage=ToolStage.END,
            name=name,
            parameters=parameters,
            result=result.content or (f"Error: {result.error}" if result.error else ""),
            success=result.success,
            error=result.error,
            short_result=result.short_result,
            compact_params=compact_params,
        )

    def _mark_running_tools_aborted(self) -> None:
        for message in self._state.messages:
            if message.role != MessageRole.ASSISTANT:
                continue
            for block in message.blocks:
                if isinstance(block, ToolBlock) and block.stage != ToolStage.END:
                    self._state.update_tool_block(
                        block.id,
                        stage=ToolStage.END,
                        success=False,
                        error=ABORTED_TOOL_MESSAGE,
                    )

    # ── Usage and compression ──

    async def _record_usage(self, raw: Usage | None, model: str) -> None:
        if raw is None:
            return
        usage = Usage(
            prompt_tokens=raw.prompt_tokens,
            completion_tokens=raw.completion_tokens,
            total_tokens=raw.total_tokens,
            model=raw.model or model,
            operation_type="agent",
            cache_read_input_tokens=raw.cache_read_input_tokens,
            cache_creation_input_tokens=raw.cache_creation_input_tokens,
        )
        self._state.set_usage_on_last_assistant(usage)
        if self._on_usage_added is not None:
            self._on_usage_added(usage)
        total = usage.comprehensive_total
        self._state.set_latest_total_tokens(total)
        if total > self._config.token_limit:
            logger.info(
                "Token usage %d exceeds limit %d, compressing history",
                total, self._config.token_limit,
            )
            await self._compress_history()

    async def _compress_history(self) -> None:
        messages = self._state.messages
        insert_index = len(messages) - KEEP_RECENT_MESSAGES
        if insert_index <= 0:
            return
        to_compress = convert_messages_for_api(messages[:insert_index])
        if not to_compress:
            return
        await self._state.save_session()
        self._set_compressing(True)
        try:
            result = await self._model.compress(to_compress, self._config.fast_model)
        except Exception as exc:
            logger.error("Failed to compress messages: %s", exc)
            return
        finally:
            self._set_compressing(False)

        usage = None
        if result.usage is not None:
            usage = Usage(
                prompt_tokens=result.usage.prompt_tokens,
                completion_tokens=result.usage.completion_tokens,
                total_tokens=result.usage.total_tokens,
                model=self._config.fast_model,
                operation_type="compress",
            )
            if self._on_usage_added is not None:
                self._on_usage_added(usage)
        self._state.compress_messages_and_update_session(insert_index, result.summary, usage)

    # ── Hooks ──

    def _stop_event(self) -> HookEvent:
        return HookEvent.SUBAGENT_STOP if self._subagent_type else HookEvent.STOP

    def _hook_context(self, event: HookEvent, **kwargs: Any) -> HookExecutionContext:
        return HookExecutionContext(
            event=event,
            project_dir=self._config.workdir,
            session_id=self._state.session_id,
            transcript_path=self._state.transcript_path,
            cwd=self._config.workdir,
            subagent_type=self._subagent_type,
            **kwargs,
        )

    async def _run_stop_hooks(self) -> bool:
        """Returns True when a Stop hook blocked and the loop must run again."""
        if self._hooks is None:
            return False
        event = self._stop_event()
        try:
            outcome = await self._hooks.run(event, self._hook_context(event), self._state)
        except Exception as exc:
            logger.error("%s hook execution failed: %s", event.value, exc)
            return False
        if outcome.should_block:
            await self._state.save_session()
        return outcome.should_block
