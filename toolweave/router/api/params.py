from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from toolweave.messages import ApprovalResponse, Message


class GetModelsResponse(BaseModel):
    providers: list[str]
    models: dict[str, list[str]]


class ToolInfo(BaseModel):
    name: str
    description: str = ""
    needs_approval: bool = False


class GetToolsResponse(BaseModel):
    tools: list[ToolInfo]


class NewConversation(BaseModel):
    conversation_id: str


class Usage(BaseModel):
    requests: int = 0
    tool_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


class ConversionInfo(BaseModel):
    conversation_id: str
    title: str
    visibility: Literal["private", "public"] = "private"
    messages: list[Message] | None = None
    usage: Usage = Field(default_factory=Usage)
    created_at: datetime
    updated_at: datetime


class QueryConversations(BaseModel):
    datas: list[ConversionInfo]
    limit: int
    offset: int
    has_more: bool


class ChatRequest(BaseModel):
    """A new user message, or answers to the tool calls the last turn paused on.

    Exactly one of ``message`` and ``approvals`` is given.
    """

    id: str
    message: Message | None = None
    approvals: list[ApprovalResponse] | None = None
    selected_chat_model: str | None = None
    selected_visibility_type: Literal["private", "public"] = "private"

    @model_validator(mode="after")
    def _one_of_message_or_approvals(self) -> ChatRequest:
        if (self.message is None) == (not self.approvals):
            raise ValueError("Exactly one of 'message' and 'approvals' must be given")
        if self.message is not None and self.message.role != "user":
            raise ValueError("Only user messages can be sent")
        return self

    @property
    def is_approval_flow(self) -> bool:
        return bool(self.approvals)
