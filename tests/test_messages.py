import pytest
from inline_snapshot import snapshot

from toolweave.messages import (
    Approval,
    ApprovalResponse,
    Message,
    TextPart,
    ToolCallState,
    ToolInvocationPart,
    apply_approval_responses,
)
from toolweave.protocol import (
    FinishEvent,
    MessageAssembler,
    StartEvent,
    StartStepEvent,
    TextDeltaEvent,
    TextEndEvent,
    TextStartEvent,
    ToolApprovalRequestEvent,
    ToolInputAvailableEvent,
    ToolInputDeltaEvent,
    ToolInputStartEvent,
    ToolOutputAvailableEvent,
    ToolOutputDeniedEvent,
    data_event,
)

S = ToolCallState


@pytest.mark.parametrize(
    "current,new,allowed",
    [
        (None, S.INPUT_STREAMING, True),
        (None, S.OUTPUT_AVAILABLE, False),
        (S.INPUT_STREAMING, S.INPUT_AVAILABLE, True),
        (S.INPUT_AVAILABLE, S.APPROVAL_REQUESTED, True),
        (S.APPROVAL_REQUESTED, S.OUTPUT_AVAILABLE, False),
        (S.APPROVAL_RESPONDED, S.OUTPUT_DENIED, True),
        (S.OUTPUT_AVAILABLE, S.OUTPUT_AVAILABLE, True),
        (S.OUTPUT_AVAILABLE, S.INPUT_AVAILABLE, False),
        (S.OUTPUT_DENIED, S.OUTPUT_AVAILABLE, False),
    ],
)
def test_state_machine(current, new, allowed):
    assert ToolCallState.can_advance(current, new) is allowed


def paused_message() -> Message:
    return Message(
        id="m-1",
        role="assistant",
        parts=[
            ToolInvocationPart(
                tool_name="guarded-delete_records",
                tool_call_id="call-1",
                state=S.APPROVAL_REQUESTED,
                input={"table": "users"},
                approval=Approval(id="approval-1"),
            )
        ],
    )


def test_approval_responses_apply_once():
    messages = [paused_message()]
    answer = [ApprovalResponse(approval_id="approval-1", approved=False, reason="too risky")]

    updated = apply_approval_responses(messages, answer)
    assert [(p.tool_call_id, p.state) for p in updated] == [("call-1", S.APPROVAL_RESPONDED)]
    assert messages[0].parts[0].approval == Approval(id="approval-1", approved=False, reason="too risky")

    # The same submission again changes nothing
    assert apply_approval_responses(messages, answer) == []
    assert len(messages[0].parts) == 1


def test_unknown_approval_matches_nothing():
    messages = [paused_message()]
    assert apply_approval_responses(messages, [ApprovalResponse(approval_id="other", approved=True)]) == []
    assert messages[0].parts[0].state == S.APPROVAL_REQUESTED


def test_message_parts_use_camel_case():
    part = ToolInvocationPart(tool_name="t", tool_call_id="c", state=S.OUTPUT_ERROR, error_text="boom")
    assert part.model_dump(by_alias=True, exclude_none=True) == snapshot(
        {"type": "tool-invocation", "toolName": "t", "toolCallId": "c", "state": "output-error", "errorText": "boom"}
    )


def test_assembler_builds_steps_text_and_tools():
    assembler = MessageAssembler()
    events = [
        StartEvent(message_id="msg-1"),
        StartStepEvent(),
        ToolInputStartEvent(tool_call_id="c1", tool_name="mock-echo_text"),
        ToolInputDeltaEvent(tool_call_id="c1", input_text_delta='{"text": '),
        ToolInputDeltaEvent(tool_call_id="c1", input_text_delta='"hi"}'),
        ToolInputAvailableEvent(tool_call_id="c1", tool_name="mock-echo_text", input={"text": "hi"}),
        ToolOutputAvailableEvent(tool_call_id="c1", output="hi"),
        StartStepEvent(),
        TextStartEvent(id="t1"),
        TextDeltaEvent(id="t1", delta="It said "),
        TextDeltaEvent(id="t1", delta="hi."),
        TextEndEvent(id="t1"),
        FinishEvent(),
    ]
    for event in events:
        assembler.apply(event)

    message = assembler.message
    assert message.id == "msg-1"
    assert [p.type for p in message.parts] == snapshot(["step-start", "tool-invocation", "step-start", "text"])
    assert message.parts[1] == ToolInvocationPart(
        tool_name="mock-echo_text", tool_call_id="c1", state=S.OUTPUT_AVAILABLE, input={"text": "hi"}, output="hi"
    )
    assert message.parts[3] == TextPart(text="It said hi.", state="done")


def test_assembler_ignores_illegal_transitions():
    assembler = MessageAssembler(message_id="msg-1")
    assembler.apply(ToolOutputAvailableEvent(tool_call_id="c1", output="too early"))
    assert assembler.message.parts == []

    assembler.apply(ToolInputAvailableEvent(tool_call_id="c1", tool_name="t", input={}))
    assembler.apply(ToolOutputDeniedEvent(tool_call_id="c1"))
    assert assembler.message.parts[0].state == S.INPUT_AVAILABLE


def test_assembler_records_approval_requests():
    assembler = MessageAssembler(message_id="msg-1")
    assembler.apply(ToolInputAvailableEvent(tool_call_id="c1", tool_name="t", input={}))
    assembler.apply(ToolApprovalRequestEvent(approval_id="a1", tool_call_id="c1"))

    tool_part, request_part = assembler.message.parts
    assert tool_part.state == S.APPROVAL_REQUESTED
    assert tool_part.approval == Approval(id="a1")
    assert (request_part.approval_id, request_part.tool_call_id) == ("a1", "c1")


def test_assembler_keeps_only_persistent_data():
    assembler = MessageAssembler(message_id="msg-1")
    assembler.apply(data_event("textDelta", "streamed", transient=True))
    assembler.apply(data_event("weather", {"temp": 20}, id="w"))
    assembler.apply(data_event("weather", {"temp": 21}, id="w"))

    assert [(p.name, p.data) for p in assembler.message.parts] == [("weather", {"temp": 21})]


def test_assembler_continues_an_existing_message():
    message = paused_message()
    apply_approval_responses([message], [ApprovalResponse(approval_id="approval-1", approved=True)])
    assembler = MessageAssembler(message)

    assembler.apply(StartEvent(message_id="ignored"))
    assembler.apply(ToolOutputAvailableEvent(tool_call_id="call-1", output={"deleted": 3}))

    assert assembler.message.id == "m-1"
    assert len(assembler.message.parts) == 1
    assert assembler.message.parts[0].state == S.OUTPUT_AVAILABLE
