from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from chat.errors import UnsupportedTool
from chat.llm_client import ToolCall, ToolDefinition
from chat.tool_results import ToolError, ToolResult, serialize_tool_result

logger = logging.getLogger(__name__)

ToolExecutor = Callable[[ToolCall], Awaitable[ToolResult]]


@dataclass(frozen=True)
class RegisteredTool:
    definition: ToolDefinition
    executor: ToolExecutor


class ToolDispatcher:
    """Routes model tool calls to their executors by name.

    Tool failures never escape as exceptions: they become :class:`ToolError`
    payloads the model can read and react to. Cancellation still propagates.
    """

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(self, tool: RegisteredTool) -> None:
        self._tools[tool.definition.name] = tool

    def definitions(self) -> list[ToolDefinition]:
        return [tool.definition for tool in self._tools.values()]

    def lookup(self, name: str) -> RegisteredTool:
        tool = self._tools.get((name or "").strip())
        if tool is None:
            raise UnsupportedTool(name)
        return tool

    async def execute(self, tool_call: ToolCall) -> ToolResult:
        try:
            tool = self.lookup(tool_call.name)
        except UnsupportedTool as exc:
            return ToolError(tool=tool_call.name, error=str(exc), error_code="unsupported_tool")

        try:
            return await tool.executor(tool_call)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Tool %s failed (call %s)", tool_call.name, tool_call.id)
            return ToolError(
                tool=tool_call.name,
                error=str(exc) or exc.__class__.__name__,
                error_code="tool_execution_failed",
            )

    async def dispatch(self, tool_call: ToolCall) -> str:
        return serialize_tool_result(await self.execute(tool_call))
