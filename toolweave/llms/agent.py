"""The multi-step agent loop: model call, tool calls, repeat."""

from __future__ import annotations

import asyncio
import enum
import json
import uuid
from collections.abc import AsyncIterator, Collection, Sequence
from typing import Any

from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    PartDeltaEvent,
    PartStartEvent,
    TextPart,
    TextPartDelta,
    ThinkingPart,
    ThinkingPartDelta,
    ToolCallPart,
    ToolCallPartDelta,
    ToolReturnPart,
)
from pydantic_ai.models import Model, ModelRequestParameters, ModelSettings
from pydantic_ai.usage import RunUsage
from pydantic_core import from_json, to_jsonable_python

from toolweave.llms.convert import PendingToolCall, denial_output
from toolweave.log import logger
from toolweave.protocol import (
    FinishReason,
    FinishStepEvent,
    ReasoningDeltaEvent,
    ReasoningEndEvent,
    ReasoningStartEvent,
    StartStepEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
    TextStartEvent,
    ToolApprovalRequestEvent,
    ToolInputAvailableEvent,
    ToolInputDeltaEvent,
    ToolInputStartEvent,
    ToolOutputAvailableEvent,
    ToolOutputDeniedEvent,
    ToolOutputErrorEvent,
)
from toolweave.tools.base import ToolContext
from toolweave.tools.isolation import ToolError, ToolStream, ToolValue
from toolweave.tools.registry import ToolRegistry

DEFAULT_MAX_STEPS = 20


class AgentState(str, enum.Enum):
    RUNNING = "running"
    AWAITING_MODEL = "awaiting-model"
    EXECUTING_TOOLS = "executing-tools"
    STOPPED = "stopped"


class StopReason(str, enum.Enum):
    FINISHED = "finished"
    MAX_STEPS = "max-steps"
    AWAITING_APPROVAL = "awaiting-approval"
    ERROR = "error"


FINISH_REASONS: dict[StopReason, FinishReason] = {
    StopReason.FINISHED: "stop",
    StopReason.AWAITING_APPROVAL: "tool-calls",
    StopReason.MAX_STEPS: "length",
    StopReason.ERROR: "error",
}

_DONE = object()


def tool_arguments(call: ToolCallPart) -> dict[str, Any]:
    """The call's arguments as an object; raises ``ValueError`` when they are not one."""
    args = call.args
    if args is None or args == "":
        return {}
    if isinstance(args, str):
        args = from_json(args)
    if not isinstance(args, dict):
        raise ValueError(f"expected an object, got {type(args).__name__}")
    return args


class AgentRun:
    """One request's worth of agent execution.

    ``stream()`` yields the protocol events of every step in emission order.
    The tool registry is borrowed: it belongs to the process-wide cache and
    outlives the run.
    """

    def __init__(
        self,
        model: Model,
        tools: ToolRegistry,
        messages: Sequence[ModelMessage],
        *,
        max_steps: int = DEFAULT_MAX_STEPS,
        model_settings: ModelSettings | None = None,
        pending: Sequence[PendingToolCall] = (),
        completed_returns: Sequence[ToolReturnPart] = (),
        approval_required: Collection[str] = (),
        initial_step: int = 0,
        writer=None,
        user_id: str | None = None,
        usage: RunUsage | None = None,
    ) -> None:
        self.model = model
        self.tools = tools
        self.max_steps = max_steps
        self.model_settings = model_settings
        self.approval_required = frozenset(approval_required)
        self.writer = writer
        self.user_id = user_id

        self.state = AgentState.RUNNING
        self.stop_reason: StopReason | None = None
        self.step = initial_step

        self._messages: list[ModelMessage] = list(messages)
        self._pending = list(pending)
        self._completed_returns = list(completed_returns)
        self._returns: dict[str, ToolReturnPart] = {}
        self._usage = usage or RunUsage()

    def all_messages(self) -> list[ModelMessage]:
        return list(self._messages)

    def usage(self) -> RunUsage:
        return self._usage

    def finish_reason(self) -> FinishReason | None:
        return FINISH_REASONS.get(self.stop_reason) if self.stop_reason else None

    def _stop(self, reason: StopReason) -> None:
        self.state = AgentState.STOPPED
        self.stop_reason = reason
        logger.info(f"Agent run stopped after {self.step} steps: {reason.value}")

    async def stream(self) -> AsyncIterator[StreamEvent]:
        try:
            if self._pending:
                async for event in self._resolve_pending():
                    yield event

            while True:
                if self.step >= self.max_steps:
                    self._stop(StopReason.MAX_STEPS)
                    return

                self.state = AgentState.AWAITING_MODEL
                yield StartStepEvent()
                response: ModelResponse | None = None
                async for item in self._request_model():
                    if isinstance(item, ModelResponse):
                        response = item
                    else:
                        yield item
                self._messages.append(response)
                self.step += 1

                calls = [part for part in response.parts if isinstance(part, ToolCallPart)]
                if not calls:
                    yield FinishStepEvent()
                    self._stop(StopReason.FINISHED)
                    return

                self.state = AgentState.EXECUTING_TOOLS
                awaiting_approval = False
                runnable: list[tuple[ToolCallPart, dict[str, Any]]] = []
                self._returns = {}
                for call in calls:
                    try:
                        args = tool_arguments(call)
                    except ValueError as e:
                        error = f"Invalid JSON arguments: {e}"
                        yield ToolOutputErrorEvent(tool_call_id=call.tool_call_id, error_text=error)
                        self._record(call, {"error": error})
                        continue
                    yield ToolInputAvailableEvent(tool_call_id=call.tool_call_id, tool_name=call.tool_name, input=args)
                    tool = self.tools.get(call.tool_name)
                    if tool is None:
                        error = f"Unknown tool: {call.tool_name}. Available tools: {', '.join(self.tools)}"
                        yield ToolOutputErrorEvent(tool_call_id=call.tool_call_id, error_text=error)
                        self._record(call, {"error": error})
                    elif tool.needs_approval or call.tool_name in self.approval_required:
                        yield ToolApprovalRequestEvent(approval_id=uuid.uuid4().hex, tool_call_id=call.tool_call_id)
                        awaiting_approval = True
                    else:
                        runnable.append((call, args))

                async for event in self._execute_calls(runnable):
                    yield event
                yield FinishStepEvent()

                if awaiting_approval:
                    self._stop(StopReason.AWAITING_APPROVAL)
                    return

                self._messages.append(
                    ModelRequest(parts=[self._returns[call.tool_call_id] for call in calls])
                )
                self.state = AgentState.RUNNING
        except Exception:
            self._stop(StopReason.ERROR)
            raise

    async def _request_model(self) -> AsyncIterator[StreamEvent | ModelResponse]:
        params = ModelRequestParameters(function_tools=self.tools.definitions(), allow_text_output=True)
        # part index -> (kind, block id) of blocks not yet closed
        open_blocks: dict[int, tuple[str, str]] = {}

        def close(index: int) -> StreamEvent | None:
            kind, block_id = open_blocks.pop(index)
            if kind == "text":
                return TextEndEvent(id=block_id)
            if kind == "reasoning":
                return ReasoningEndEvent(id=block_id)
            return None

        async with self.model.request_stream(self._messages, self.model_settings, params) as response:
            async for event in response:
                if isinstance(event, PartStartEvent):
                    for index in [i for i in open_blocks if i != event.index]:
                        if (closing := close(index)) is not None:
                            yield closing
                    for item in self._start_part(event.index, event.part, open_blocks):
                        yield item
                elif isinstance(event, PartDeltaEvent) and event.index in open_blocks:
                    for item in self._delta(open_blocks[event.index], event.delta):
                        yield item
            for index in list(open_blocks):
                if (closing := close(index)) is not None:
                    yield closing
            final = response.get()
            self._usage.incr(final.usage)
            self._usage.requests += 1
        yield final

    def _start_part(self, index: int, part: Any, open_blocks: dict[int, tuple[str, str]]) -> list[StreamEvent]:
        if isinstance(part, TextPart):
            block_id = uuid.uuid4().hex
            open_blocks[index] = ("text", block_id)
            events: list[StreamEvent] = [TextStartEvent(id=block_id)]
            if part.content:
                events.append(TextDeltaEvent(id=block_id, delta=part.content))
            return events
        if isinstance(part, ThinkingPart):
            block_id = uuid.uuid4().hex
            open_blocks[index] = ("reasoning", block_id)
            events = [ReasoningStartEvent(id=block_id)]
            if part.content:
                events.append(ReasoningDeltaEvent(id=block_id, delta=part.content))
            return events
        if isinstance(part, ToolCallPart):
            open_blocks[index] = ("tool", part.tool_call_id)
            events = [ToolInputStartEvent(tool_call_id=part.tool_call_id, tool_name=part.tool_name)]
            if part.args:
                args = part.args if isinstance(part.args, str) else json.dumps(part.args)
                events.append(ToolInputDeltaEvent(tool_call_id=part.tool_call_id, input_text_delta=args))
            return events
        return []

    def _delta(self, block: tuple[str, str], delta: Any) -> list[StreamEvent]:
        kind, block_id = block
        if isinstance(delta, TextPartDelta) and kind == "text" and delta.content_delta:
            return [TextDeltaEvent(id=block_id, delta=delta.content_delta)]
        if isinstance(delta, ThinkingPartDelta) and kind == "reasoning" and delta.content_delta:
            return [ReasoningDeltaEvent(id=block_id, delta=delta.content_delta)]
        if isinstance(delta, ToolCallPartDelta) and kind == "tool" and delta.args_delta:
            args = delta.args_delta if isinstance(delta.args_delta, str) else json.dumps(delta.args_delta)
            return [ToolInputDeltaEvent(tool_call_id=block_id, input_text_delta=args)]
        return []

    def _record(self, call: ToolCallPart | PendingToolCall, output: Any) -> None:
        self._returns[call.tool_call_id] = ToolReturnPart(
            tool_name=call.tool_name,
            content=output,
            tool_call_id=call.tool_call_id,
        )

    async def _execute_calls(
        self, calls: Sequence[tuple[ToolCallPart | PendingToolCall, dict[str, Any]]]
    ) -> AsyncIterator[StreamEvent]:
        """Run ``calls`` concurrently, yielding their events as they happen.

        Returns only once every call has produced its final output.
        """
        if not calls:
            return
        queue: asyncio.Queue = asyncio.Queue()

        async def run_one(call, args) -> None:
            try:
                async for event in self._run_tool(call, args):
                    queue.put_nowait(event)
            finally:
                queue.put_nowait(_DONE)

        tasks = [asyncio.create_task(run_one(call, args)) for call, args in calls]
        try:
            remaining = len(tasks)
            while remaining:
                item = await queue.get()
                if item is _DONE:
                    remaining -= 1
                    continue
                yield item
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

    async def _run_tool(self, call: ToolCallPart | PendingToolCall, args: dict[str, Any]) -> AsyncIterator[StreamEvent]:
        tool = self.tools[call.tool_name]
        ctx = ToolContext(tool_call_id=call.tool_call_id, writer=self.writer, user_id=self.user_id)
        result = await tool.invoke(args, ctx)

        match result:
            case ToolValue(value=value):
                output = value
            case ToolError():
                output = result.to_output()
            case ToolStream(items=items):
                output = None
                try:
                    async for item in items:
                        output = item
                        yield ToolOutputAvailableEvent(
                            tool_call_id=call.tool_call_id,
                            output=to_jsonable_python(item, fallback=str),
                            preliminary=True,
                        )
                except Exception as e:
                    logger.exception(f"Streaming tool {call.tool_name} failed: {e}")
                    output = ToolError(str(e) or type(e).__name__).to_output()

        output = to_jsonable_python(output, fallback=str)
        self._record(call, output)
        yield ToolOutputAvailableEvent(tool_call_id=call.tool_call_id, output=output)

    async def _resolve_pending(self) -> AsyncIterator[StreamEvent]:
        """Finish the step that was paused for approval."""
        self.state = AgentState.EXECUTING_TOOLS
        self._returns = {}
        runnable: list[tuple[PendingToolCall, dict[str, Any]]] = []
        for call in self._pending:
            if not call.approved:
                yield ToolOutputDeniedEvent(tool_call_id=call.tool_call_id)
                self._record(call, denial_output(call.reason))
            elif call.tool_name not in self.tools:
                error = f"Tool {call.tool_name} is no longer available"
                yield ToolOutputErrorEvent(tool_call_id=call.tool_call_id, error_text=error)
                self._record(call, {"error": error})
            else:
                runnable.append((call, call.args))

        async for event in self._execute_calls(runnable):
            yield event

        returns = [*self._completed_returns, *(self._returns[call.tool_call_id] for call in self._pending)]
        self._messages.append(ModelRequest(parts=returns))
        self._pending = []
        self.state = AgentState.RUNNING
