"""Tool contract and registry.

Every tool, whether owned by the core, bridged from an external provider
or backed by a subagent, implements ``Tool`` and returns a ``ToolResult``.
The loop driver only ever talks to tools through the registry.
"""
from __future__ import annotations

import abc
import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import ToolNotFoundError
from .models import DelegationContext, ToolResult
from .permissions import RESTRICTED_TOOLS

if TYPE_CHECKING:
    from .background import BackgroundProcessRegistry
    from .delegator import SubagentDelegator
    from .message_state import MessageState

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    """Per-call execution context handed to ``Tool.execute``."""
    workdir: str
    tool_call_id: str | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    background: BackgroundProcessRegistry | None = None
    delegator: SubagentDelegator | None = None
    delegation: DelegationContext = field(default_factory=DelegationContext)
    message_state: MessageState | None = None
    model: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class Tool(abc.ABC):
    """A capability the model can call by name."""

    description: str = ""
    parameters_schema: dict[str, Any] = {"type": "object", "properties": {}}

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Name the model uses to call this tool."""

    @property
    def restricted(self) -> bool:
        """Whether a call needs permission-engine approval."""
        return self.name in RESTRICTED_TOOLS

    @abc.abstractmethod
    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        """Run the tool. Failures are returned, not raised."""

    def format_compact_params(self, args: dict[str, Any]) -> str | None:
        return None

    def to_function_schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }


ToolHandler = Callable[[dict[str, Any], ToolContext], Awaitable[ToolResult]]


class FunctionTool(Tool):
    """Wrap an async callable as a tool (bridged and user-supplied tools)."""

    def __init__(
        self,
        name: str,
        handler: ToolHandler,
        *,
        description: str = "",
        parameters_schema: dict[str, Any] | None = None,
        restricted: bool | None = None,
        compact_param: str | None = None,
    ) -> None:
        self._name = name
        self._handler = handler
        self._restricted = restricted
        self._compact_param = compact_param
        self.description = description
        if parameters_schema is not None:
            self.parameters_schema = parameters_schema

    @property
    def name(self) -> str:
        return self._name

    @property
    def restricted(self) -> bool:
        if self._restricted is not None:
            return self._restricted
        return super().restricted

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        return await self._handler(args, context)

    def format_compact_params(self, args: dict[str, Any]) -> str | None:
        if self._compact_param and args.get(self._compact_param) is not None:
            return str(args[self._compact_param])
        return None


class ToolRegistry:
    """Name -> Tool lookup used at dispatch time."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool (or overwrite one with the same name)."""
        self._tools[tool.name] = tool
        logger.debug("Tool registered: %s (restricted=%s)", tool.name, tool.restricted)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool:
        """Raises ToolNotFoundError for unknown names."""
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def has(self, name: str) -> bool:
        return name in self._tools

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def subset(self, allowed: Iterable[str] | None = None, *, exclude: Iterable[str] = ()) -> ToolRegistry:
        """A new registry restricted to ``allowed`` (all when None) minus ``exclude``."""
        excluded = set(exclude)
        wanted = None if allowed is None else set(allowed)
        return ToolRegistry(
            tool for name, tool in self._tools.items()
            if name not in excluded and (wanted is None or name in wanted)
        )

    def schemas(self, allowed: Iterable[str] | None = None) -> list[dict[str, Any]]:
        wanted = None if allowed is None else set(allowed)
        return [
            tool.to_function_schema() for name, tool in self._tools.items()
            if wanted is None or name in wanted
        ]

    async def execute(self, name: str, args: dict[str, Any], context: ToolContext) -> ToolResult:
        """Dispatch by name. Unknown tools and tool exceptions become failed results."""
        try:
            tool = self.get(name)
        except ToolNotFoundError as exc:
            return ToolResult(success=False, error=str(exc))
        try:
            return await tool.execute(args, context)
        except Exception as exc:
            logger.exception("Tool %s raised", name)
            return ToolResult(success=False, error=f"Tool {name} failed: {exc}")

    def compact_params(self, name: str, args: dict[str, Any]) -> str | None:
        tool = self._tools.get(name)
        if tool is None:
            return None
        try:
            return tool.format_compact_params(args)
        except Exception:
            logger.debug("format_compact_params failed for %s", name, exc_info=True)
            return None


def format_tool_input(args: dict[str, Any]) -> str:
    return json.dumps(args, ensure_ascii=False)
