"""The event protocol streamed to clients, and folding events back into messages."""

from __future__ import annotations

import json
import uuid
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from toolweave.log import logger
from toolweave.messages import (
    Approval,
    ApprovalRequestPart,
    DataPart,
    Message,
    ReasoningPart,
    StepStartPart,
    TextPart,
    ToolCallState,
    ToolInvocationPart,
)

FinishReason = Literal["stop", "tool-calls", "length", "error", "other"]


class StreamEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: str

    def to_sse_data(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class StartEvent(StreamEvent):
    type: Literal["start"] = "start"
    message_id: str


class StartStepEvent(StreamEvent):
    type: Literal["start-step"] = "start-step"


class FinishStepEvent(StreamEvent):
    type: Literal["finish-step"] = "finish-step"


class FinishEvent(StreamEvent):
    type: Literal["finish"] = "finish"
    finish_reason: FinishReason | None = None


class ErrorEvent(StreamEvent):
    type: Literal["error"] = "error"
    error_text: str


class TextStartEvent(StreamEvent):
    type: Literal["text-start"] = "text-start"
    id: str


class TextDeltaEvent(StreamEvent):
    type: Literal["text-delta"] = "text-delta"
    id: str
    delta: str


class TextEndEvent(StreamEvent):
    type: Literal["text-end"] = "text-end"
    id: str


class ReasoningStartEvent(StreamEvent):
    type: Literal["reasoning-start"] = "reasoning-start"
    id: str


class ReasoningDeltaEvent(StreamEvent):
    type: Literal["reasoning-delta"] = "reasoning-delta"
    id: str
    delta: str


class ReasoningEndEvent(StreamEvent):
    type: Literal["reasoning-end"] = "reasoning-end"
    id: str


class ToolInputStartEvent(StreamEvent):
    type: Literal["tool-input-start"] = "tool-input-start"
    tool_call_id: str
    tool_name: str


class ToolInputDeltaEvent(StreamEvent):
    type: Literal["tool-input-delta"] = "tool-input-delta"
    tool_call_id: str
    input_text_delta: str


class ToolInputAvailableEvent(StreamEvent):
    type: Literal["tool-input-available"] = "tool-input-available"
    tool_call_id: str
    tool_name: str
    input: Any = None


class ToolApprovalRequestEvent(StreamEvent):
    type: Literal["tool-approval-request"] = "tool-approval-request"
    approval_id: str
    tool_call_id: str


class ToolOutputAvailableEvent(StreamEvent):
    type: Literal["tool-output-available"] = "tool-output-available"
    tool_call_id: str
    output: Any = None
    preliminary: bool | None = None


class ToolOutputErrorEvent(StreamEvent):
    type: Literal["tool-output-error"] = "tool-output-error"
    tool_call_id: str
    error_text: str


class ToolOutputDeniedEvent(StreamEvent):
    type: Literal["tool-output-denied"] = "tool-output-denied"
    tool_call_id: str


class DataEvent(StreamEvent):
    """UI-only payload; ``type`` is ``data-<name>``. Transient data is never stored."""

    type: str
    id: str | None = None
    data: Any = None
    transient: bool | None = None

    @field_validator("type")
    @classmethod
    def _check_prefix(cls, value: str) -> str:
        if not value.startswith("data-") or value == "data-":
            raise ValueError("data event type must look like 'data-<name>'")
        return value

    @property
    def name(self) -> str:
        return self.type.removeprefix("data-")


def data_event(name: str, data: Any = None, *, id: str | None = None, transient: bool | None = None) -> DataEvent:
    return DataEvent(type=f"data-{name}", id=id, data=data, transient=transient)


# Event name -> state the call moves into when the event is applied
TOOL_EVENT_STATES: dict[str, ToolCallState] = {
    "tool-input-start": ToolCallState.INPUT_STREAMING,
    "tool-input-delta": ToolCallState.INPUT_STREAMING,
    "tool-input-available": ToolCallState.INPUT_AVAILABLE,
    "tool-approval-request": ToolCallState.APPROVAL_REQUESTED,
    "tool-output-available": ToolCallState.OUTPUT_AVAILABLE,
    "tool-output-error": ToolCallState.OUTPUT_ERROR,
    "tool-output-denied": ToolCallState.OUTPUT_DENIED,
}


def text_block(text: str) -> list[StreamEvent]:
    block_id = uuid.uuid4().hex
    return [TextStartEvent(id=block_id), TextDeltaEvent(id=block_id, delta=text), TextEndEvent(id=block_id)]


class MessageAssembler:
    """Builds the assistant message from the events of one response.

    When ``message`` is given the events extend it, which is how a turn paused
    for approval continues the same assistant message.
    """

    def __init__(self, message: Message | None = None, message_id: str | None = None) -> None:
        self.message = message or Message(id=message_id or uuid.uuid4().hex, role="assistant")
        self._text: dict[str, TextPart] = {}
        self._reasoning: dict[str, ReasoningPart] = {}
        self._tool_names: dict[str, str] = {}
        self._input_text: dict[str, str] = {}
        for part in self.message.tool_parts():
            self._tool_names[part.tool_call_id] = part.tool_name

    def apply(self, event: StreamEvent) -> None:
        if event.type in TOOL_EVENT_STATES:
            self._apply_tool_event(event)
            return

        match event:
            case StartEvent():
                if not self.message.parts:
                    self.message.id = event.message_id
            case StartStepEvent():
                self.message.parts.append(StepStartPart())
            case TextStartEvent():
                self._open(self._text, event.id, TextPart)
            case TextDeltaEvent():
                self._open(self._text, event.id, TextPart).text += event.delta
            case TextEndEvent():
                self._open(self._text, event.id, TextPart).state = "done"
                self._text.pop(event.id)
            case ReasoningStartEvent():
                self._open(self._reasoning, event.id, ReasoningPart)
            case ReasoningDeltaEvent():
                self._open(self._reasoning, event.id, ReasoningPart).text += event.delta
            case ReasoningEndEvent():
                self._open(self._reasoning, event.id, ReasoningPart).state = "done"
                self._reasoning.pop(event.id)
            case DataEvent():
                if not event.transient:
                    self._apply_data(event)
            case _:
                pass

    def _open(self, blocks: dict[str, Any], block_id: str, factory: type[TextPart] | type[ReasoningPart]) -> Any:
        if block_id not in blocks:
            part = factory(state="streaming")
            blocks[block_id] = part
            self.message.parts.append(part)
        return blocks[block_id]

    def _apply_data(self, event: DataEvent) -> None:
        if event.id is not None:
            for index, part in enumerate(self.message.parts):
                if isinstance(part, DataPart) and part.name == event.name and part.id == event.id:
                    self.message.parts[index] = DataPart(name=event.name, id=event.id, data=event.data)
                    return
        self.message.parts.append(DataPart(name=event.name, id=event.id, data=event.data))

    def _apply_tool_event(self, event: Any) -> None:
        call_id = event.tool_call_id
        new_state = TOOL_EVENT_STATES[event.type]
        current = self.message.find_tool_part(call_id)
        current_state = current.state if current else None
        if not ToolCallState.can_advance(current_state, new_state):
            logger.warning(f"Ignoring {event.type} for {call_id}: illegal transition from {current_state}")
            return

        if current is None:
            tool_name = getattr(event, "tool_name", None) or self._tool_names.get(call_id, "unknown")
            current = ToolInvocationPart(tool_name=tool_name, tool_call_id=call_id, state=new_state)
        self._tool_names[call_id] = current.tool_name
        updates: dict[str, Any] = {"state": new_state}

        match event:
            case ToolInputDeltaEvent():
                self._input_text[call_id] = self._input_text.get(call_id, "") + event.input_text_delta
                try:
                    updates["input"] = json.loads(self._input_text[call_id])
                except ValueError:
                    pass
            case ToolInputAvailableEvent():
                updates["input"] = event.input
                self._input_text.pop(call_id, None)
            case ToolApprovalRequestEvent():
                updates["approval"] = Approval(id=event.approval_id)
                self.message.parts.append(ApprovalRequestPart(approval_id=event.approval_id, tool_call_id=call_id))
            case ToolOutputAvailableEvent():
                updates["output"] = event.output
                updates["preliminary"] = event.preliminary
            case ToolOutputErrorEvent():
                updates["error_text"] = event.error_text

        self.message.upsert_tool_part(current.model_copy(update=updates))
