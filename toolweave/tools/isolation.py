"""Tool calls that never fail the conversation.

The agent loop only moves on to the next step once every call of the current
step has produced a result. A call that raises would produce none, so every
failure mode is turned into a ``ToolError`` value here instead.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Literal, Union

from pydantic_ai.tools import ToolDefinition

from toolweave.log import logger
from toolweave.tools.base import Tool, ToolArgs, ToolContext

DEFAULT_TOOL_TIMEOUT = 90.0


@dataclass(frozen=True)
class ToolValue:
    value: Any


@dataclass(frozen=True)
class ToolStream:
    """Items of a streaming tool; the last item is the final output."""

    items: AsyncIterator[Any]


@dataclass(frozen=True)
class ToolError:
    message: str
    kind: Literal["exception", "timeout"] = "exception"

    def to_output(self) -> dict[str, str]:
        return {"error": self.message}


ToolResult = Union[ToolValue, ToolStream, ToolError]


def _is_stream(value: Any) -> bool:
    return hasattr(value, "__aiter__") and not isinstance(value, (str, bytes, dict))


async def invoke_isolated(
    tool: Tool,
    args: ToolArgs,
    ctx: ToolContext,
    timeout: float | None = DEFAULT_TOOL_TIMEOUT,
) -> ToolResult:
    try:
        raw = tool.invoke(args, ctx)
        if _is_stream(raw):
            return ToolStream(raw)
        value = await asyncio.wait_for(raw, timeout) if inspect.isawaitable(raw) else raw
    except TimeoutError:
        logger.warning(f"Tool {tool.name} timed out after {timeout}s")
        return ToolError(f'Tool "{tool.name}" timed out after {timeout:g}s', kind="timeout")
    except Exception as e:
        logger.exception(f"Tool {tool.name} failed: {e}")
        return ToolError(str(e) or type(e).__name__)

    if _is_stream(value):
        return ToolStream(value)
    return ToolValue(value)


class IsolatedTool:
    """Exposes ``tool`` with ``invoke`` returning a ``ToolResult`` instead of raising."""

    def __init__(self, tool: Tool, timeout: float | None = DEFAULT_TOOL_TIMEOUT) -> None:
        self.tool = tool
        self.timeout = timeout

    @property
    def name(self) -> str:
        return self.tool.name

    @property
    def description(self) -> str:
        return self.tool.description

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.tool.input_schema

    @property
    def needs_approval(self) -> bool:
        return self.tool.needs_approval

    def describe(self) -> ToolDefinition:
        return self.tool.describe()

    async def invoke(self, args: ToolArgs, ctx: ToolContext) -> ToolResult:
        return await invoke_isolated(self.tool, args, ctx, self.timeout)

    def __repr__(self) -> str:
        return f"IsolatedTool({self.tool.name!r}, timeout={self.timeout})"
