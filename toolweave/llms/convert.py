"""Conversion of stored conversation messages into pydantic-ai model messages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic_ai.messages import (
    DocumentUrl,
    ImageUrl,
    ModelMessage,
    ModelRequest,
    ModelRequestPart,
    ModelResponse,
    ModelResponsePart,
    SystemPromptPart,
    TextPart,
    ToolCallPart,
    ToolReturnPart,
    UserContent,
    UserPromptPart,
)

from toolweave import messages as ui
from toolweave.messages import ToolCallState

DENIED_MESSAGE = "The user denied this tool call."


def denial_output(reason: str | None) -> dict[str, Any]:
    return {"denied": True, "message": f"{DENIED_MESSAGE} {reason}" if reason else DENIED_MESSAGE}


@dataclass
class PendingToolCall:
    """A call the user has answered but that has not run yet."""

    tool_call_id: str
    tool_name: str
    args: dict[str, Any]
    approved: bool
    reason: str | None = None


@dataclass
class ConvertedHistory:
    messages: list[ModelMessage] = field(default_factory=list)
    pending: list[PendingToolCall] = field(default_factory=list)
    # Returns from the paused step, sent together with the pending calls' results
    completed_returns: list[ToolReturnPart] = field(default_factory=list)


def _tool_call(part: ui.ToolInvocationPart) -> ToolCallPart:
    return ToolCallPart(tool_name=part.tool_name, args=part.input or {}, tool_call_id=part.tool_call_id)


def _tool_return(part: ui.ToolInvocationPart) -> ToolReturnPart:
    if part.state == ToolCallState.OUTPUT_ERROR:
        content: Any = {"error": part.error_text}
    elif part.state == ToolCallState.OUTPUT_DENIED:
        content = denial_output(part.approval.reason if part.approval else None)
    else:
        content = part.output
    return ToolReturnPart(tool_name=part.tool_name, content=content, tool_call_id=part.tool_call_id)


def _user_content(message: ui.Message) -> list[UserContent]:
    content: list[UserContent] = []
    for part in message.parts:
        if isinstance(part, ui.TextPart) and part.text:
            content.append(part.text)
        elif isinstance(part, ui.FilePart):
            if part.media_type.startswith("image/"):
                content.append(ImageUrl(url=part.url))
            else:
                content.append(DocumentUrl(url=part.url))
    return content


def _split_steps(message: ui.Message) -> list[list[Any]]:
    steps: list[list[Any]] = [[]]
    for part in message.parts:
        if isinstance(part, ui.StepStartPart):
            if steps[-1]:
                steps.append([])
            continue
        steps[-1].append(part)
    return [step for step in steps if step]


def to_model_messages(messages: list[ui.Message], system_prompt: str | None = None) -> ConvertedHistory:
    history = ConvertedHistory()
    request_parts: list[ModelRequestPart] = []
    if system_prompt:
        request_parts.append(SystemPromptPart(content=system_prompt))

    def flush_request() -> None:
        nonlocal request_parts
        if request_parts:
            history.messages.append(ModelRequest(parts=request_parts))
            request_parts = []

    for index, message in enumerate(messages):
        if message.role == "system":
            request_parts.append(SystemPromptPart(content=message.text()))
            continue
        if message.role == "user":
            content = _user_content(message)
            if content:
                request_parts.append(UserPromptPart(content=content if len(content) > 1 else content[0]))
            continue

        is_last = index == len(messages) - 1
        for step in _split_steps(message):
            response_parts: list[ModelResponsePart] = []
            returns: list[ToolReturnPart] = []
            pending: list[PendingToolCall] = []
            for part in step:
                if isinstance(part, ui.TextPart) and part.text:
                    response_parts.append(TextPart(content=part.text))
                elif isinstance(part, ui.ToolInvocationPart):
                    if part.state.is_terminal:
                        response_parts.append(_tool_call(part))
                        returns.append(_tool_return(part))
                    elif part.state == ToolCallState.APPROVAL_RESPONDED and is_last and part.approval:
                        response_parts.append(_tool_call(part))
                        pending.append(
                            PendingToolCall(
                                tool_call_id=part.tool_call_id,
                                tool_name=part.tool_name,
                                args=part.input or {},
                                approved=bool(part.approval.approved),
                                reason=part.approval.reason,
                            )
                        )
                    # Calls still waiting for an answer, or cut off mid-input, are dropped
            if not response_parts:
                continue
            flush_request()
            history.messages.append(ModelResponse(parts=response_parts))
            if pending:
                history.pending.extend(pending)
                history.completed_returns.extend(returns)
            elif returns:
                request_parts.extend(returns)
                flush_request()

    flush_request()
    return history
