"""The capability contract every tool honours, whatever backs it."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic_ai.tools import ToolDefinition

if TYPE_CHECKING:
    from toolweave.router.multiplexer import UIMessageStreamWriter

ToolArgs = dict[str, Any]
ToolOutput = Any | AsyncIterator[Any]


@dataclass
class ToolContext:
    """What a running tool may know about the request that invoked it."""

    tool_call_id: str
    writer: UIMessageStreamWriter | None = None
    user_id: str | None = None


@runtime_checkable
class Tool(Protocol):
    name: str
    description: str
    input_schema: dict[str, Any]
    needs_approval: bool

    def invoke(self, args: ToolArgs, ctx: ToolContext) -> Awaitable[ToolOutput] | AsyncIterator[Any]: ...

    def describe(self) -> ToolDefinition: ...


@dataclass
class FunctionTool:
    """A tool backed by a plain callable.

    ``fn`` may be a coroutine function returning a value, or an async generator
    function for tools that emit their result progressively.
    """

    name: str
    fn: Callable[[ToolArgs, ToolContext], Any]
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    needs_approval: bool = False

    def invoke(self, args: ToolArgs, ctx: ToolContext) -> Any:
        return self.fn(args, ctx)

    def describe(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters_json_schema=self.input_schema,
        )
