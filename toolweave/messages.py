"""Conversation messages as seen by clients and storage.

A message is an ordered list of parts. Tool invocations are keyed by their call
id: a newer state for the same call replaces the part in place.
"""

from __future__ import annotations

import enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ToolCallState(str, enum.Enum):
    INPUT_STREAMING = "input-streaming"
    INPUT_AVAILABLE = "input-available"
    APPROVAL_REQUESTED = "approval-requested"
    APPROVAL_RESPONDED = "approval-responded"
    OUTPUT_AVAILABLE = "output-available"
    OUTPUT_ERROR = "output-error"
    OUTPUT_DENIED = "output-denied"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @classmethod
    def can_advance(cls, current: ToolCallState | None, new: ToolCallState) -> bool:
        if current is None:
            return new in (cls.INPUT_STREAMING, cls.INPUT_AVAILABLE, cls.OUTPUT_ERROR)
        return new in _TRANSITIONS[current]


TERMINAL_STATES = frozenset({
    ToolCallState.OUTPUT_AVAILABLE,
    ToolCallState.OUTPUT_ERROR,
    ToolCallState.OUTPUT_DENIED,
})

# output-available -> output-available covers preliminary outputs of streaming tools
_TRANSITIONS: dict[ToolCallState, frozenset[ToolCallState]] = {
    ToolCallState.INPUT_STREAMING: frozenset({
        ToolCallState.INPUT_STREAMING,
        ToolCallState.INPUT_AVAILABLE,
        ToolCallState.OUTPUT_ERROR,
    }),
    ToolCallState.INPUT_AVAILABLE: frozenset({
        ToolCallState.APPROVAL_REQUESTED,
        ToolCallState.OUTPUT_AVAILABLE,
        ToolCallState.OUTPUT_ERROR,
    }),
    ToolCallState.APPROVAL_REQUESTED: frozenset({ToolCallState.APPROVAL_RESPONDED}),
    ToolCallState.APPROVAL_RESPONDED: frozenset({
        ToolCallState.OUTPUT_AVAILABLE,
        ToolCallState.OUTPUT_ERROR,
        ToolCallState.OUTPUT_DENIED,
    }),
    ToolCallState.OUTPUT_AVAILABLE: frozenset({ToolCallState.OUTPUT_AVAILABLE}),
    ToolCallState.OUTPUT_ERROR: frozenset(),
    ToolCallState.OUTPUT_DENIED: frozenset(),
}


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TextPart(_Model):
    type: Literal["text"] = "text"
    text: str = ""
    state: Literal["streaming", "done"] | None = None


class ReasoningPart(_Model):
    type: Literal["reasoning"] = "reasoning"
    text: str = ""
    state: Literal["streaming", "done"] | None = None


class FilePart(_Model):
    type: Literal["file"] = "file"
    media_type: str
    url: str
    filename: str | None = None


class StepStartPart(_Model):
    type: Literal["step-start"] = "step-start"


class Approval(_Model):
    id: str
    approved: bool | None = None
    reason: str | None = None


class ToolInvocationPart(_Model):
    type: Literal["tool-invocation"] = "tool-invocation"
    tool_name: str
    tool_call_id: str
    state: ToolCallState
    input: Any = None
    output: Any = None
    error_text: str | None = None
    preliminary: bool | None = None
    approval: Approval | None = None


class ApprovalRequestPart(_Model):
    """Marks that the turn is paused until a human answers ``approval_id``."""

    type: Literal["approval-request"] = "approval-request"
    approval_id: str
    tool_call_id: str


class DataPart(_Model):
    type: Literal["data"] = "data"
    name: str
    id: str | None = None
    data: Any = None


Part = Annotated[
    Union[TextPart, ReasoningPart, FilePart, StepStartPart, ToolInvocationPart, ApprovalRequestPart, DataPart],
    Field(discriminator="type"),
]

Role = Literal["user", "assistant", "system"]


class Message(_Model):
    id: str
    role: Role
    parts: list[Part] = Field(default_factory=list)

    def tool_parts(self) -> list[ToolInvocationPart]:
        return [p for p in self.parts if isinstance(p, ToolInvocationPart)]

    def find_tool_part(self, tool_call_id: str) -> ToolInvocationPart | None:
        for part in self.parts:
            if isinstance(part, ToolInvocationPart) and part.tool_call_id == tool_call_id:
                return part
        return None

    def upsert_tool_part(self, part: ToolInvocationPart) -> None:
        for index, existing in enumerate(self.parts):
            if isinstance(existing, ToolInvocationPart) and existing.tool_call_id == part.tool_call_id:
                self.parts[index] = part
                return
        self.parts.append(part)

    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))


class ApprovalResponse(_Model):
    approval_id: str
    approved: bool
    reason: str | None = None


def apply_approval_responses(messages: list[Message], responses: list[ApprovalResponse]) -> list[ToolInvocationPart]:
    """Move every matching ``approval-requested`` part to ``approval-responded``.

    Parts in any other state are left alone, so submitting the same answer twice
    changes nothing the second time. Returns the parts that were updated.
    """
    by_id = {r.approval_id: r for r in responses}
    updated: list[ToolInvocationPart] = []
    for message in messages:
        if message.role != "assistant":
            continue
        for part in message.tool_parts():
            if part.state != ToolCallState.APPROVAL_REQUESTED or part.approval is None:
                continue
            response = by_id.get(part.approval.id)
            if response is None:
                continue
            answered = part.model_copy(
                update={
                    "state": ToolCallState.APPROVAL_RESPONDED,
                    "approval": Approval(id=part.approval.id, approved=response.approved, reason=response.reason),
                }
            )
            message.upsert_tool_part(answered)
            updated.append(answered)
    return updated
