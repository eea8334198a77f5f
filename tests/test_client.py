"""Tests for the toolweave API client."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from httpx_sse import ServerSentEvent

from toolweave.client import ToolweaveAPIClient


class MockSSEGenerator:
    """Mock SSE generator for testing."""

    def __init__(self, events: list[dict[str, str]]):
        self.events = events
        self.index = 0

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.index >= len(self.events):
            raise StopAsyncIteration
        event = self.events[self.index]
        self.index += 1
        return ServerSentEvent(
            event=event.get("event", "message"),
            data=event.get("data", ""),
            id=event.get("id", ""),
            retry=None,
        )


class MockEventSource:
    """Mock event source for testing.

    Args:
        events: List of events to yield.
        status_code: Status of the underlying response.
    """

    def __init__(self, events: list[dict[str, str]], status_code: int = 200):
        self.events = events
        self.response = MagicMock()
        self.response.status_code = status_code
        self.response.is_error = status_code >= 400
        self.response.headers = {"X-Stream-Id": "stream-1"}

    def aiter_sse(self):
        return MockSSEGenerator(self.events)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        pass


def sse_events(*events: dict) -> list[dict[str, str]]:
    encoded = [{"id": str(i), "data": json.dumps(event)} for i, event in enumerate(events)]
    return [*encoded, {"data": "[DONE]"}]


@pytest.fixture
def mock_httpx_client():
    """Mock the httpx client."""
    with patch("httpx.AsyncClient") as mock_client:
        mock_client_instance = AsyncMock()
        mock_client.return_value = mock_client_instance
        yield mock_client, mock_client_instance


async def test_user_id_header(mock_httpx_client):
    mock_client, _ = mock_httpx_client

    ToolweaveAPIClient("http://localhost:9772", user_id="alice")

    mock_client.assert_called_once_with(headers={"X-User-Id": "alice"}, timeout=None)


async def test_create_conversation(mock_httpx_client):
    _, mock_client_instance = mock_httpx_client
    mock_response = MagicMock()
    mock_response.json.return_value = {"conversation_id": "test-id"}
    mock_client_instance.post.return_value = mock_response

    client = ToolweaveAPIClient("http://localhost:9772")
    conversation_id = await client.create_conversation()

    assert conversation_id == "test-id"
    mock_client_instance.post.assert_called_once_with("http://localhost:9772/api/v1/conversation/create")
    mock_response.raise_for_status.assert_called_once()


async def test_get_conversations(mock_httpx_client):
    _, mock_client_instance = mock_httpx_client
    mock_response = MagicMock()
    mock_response.json.return_value = {
        "datas": [
            {
                "conversation_id": "test-id",
                "title": "Test Conversation",
                "created_at": "2025-03-07T08:00:00+00:00",
                "updated_at": "2025-03-07T08:00:00+00:00",
                "usage": {},
            }
        ],
        "limit": 100,
        "offset": 0,
        "has_more": False,
    }
    mock_client_instance.get.return_value = mock_response

    client = ToolweaveAPIClient("http://localhost:9772")
    conversations = await client.get_conversations()

    assert conversations["datas"][0]["conversation_id"] == "test-id"
    mock_client_instance.get.assert_called_once_with(
        "http://localhost:9772/api/v1/conversation/list",
        params={"limit": 100, "offset": 0},
    )


async def test_chat_stream(mock_httpx_client):
    _, mock_client_instance = mock_httpx_client
    events = sse_events(
        {"type": "start", "messageId": "m-1"},
        {"type": "text-delta", "id": "t-1", "delta": "Hello"},
        {"type": "finish"},
    )

    with patch("toolweave.client.aconnect_sse") as mock_aconnect_sse:
        mock_aconnect_sse.return_value = MockEventSource(events)

        client = ToolweaveAPIClient("http://localhost:9772")
        received = [event async for event in client.chat_stream("test-id", "Hello")]

    assert [e["type"] for e in received] == ["start", "text-delta", "finish"]
    assert client.last_events["test-id"] == ("stream-1", 2)

    args, kwargs = mock_aconnect_sse.call_args
    assert args == (mock_client_instance, "POST", "http://localhost:9772/api/v1/conversation/chat")
    payload = kwargs["json"]
    assert payload["id"] == "test-id"
    assert payload["message"]["role"] == "user"
    assert payload["message"]["parts"] == [{"type": "text", "text": "Hello"}]
    assert "selected_chat_model" not in payload


async def test_submit_approvals(mock_httpx_client):
    with patch("toolweave.client.aconnect_sse") as mock_aconnect_sse:
        mock_aconnect_sse.return_value = MockEventSource(sse_events({"type": "tool-output-denied", "toolCallId": "c"}))

        client = ToolweaveAPIClient("http://localhost:9772")
        received = [
            event async for event in client.submit_approvals("test-id", {"ap-1": False}, reasons={"ap-1": "too risky"})
        ]

    assert received == [{"type": "tool-output-denied", "toolCallId": "c"}]
    assert mock_aconnect_sse.call_args.kwargs["json"] == {
        "id": "test-id",
        "approvals": [{"approvalId": "ap-1", "approved": False, "reason": "too risky"}],
    }


async def test_resume_sends_the_last_event_id(mock_httpx_client):
    with patch("toolweave.client.aconnect_sse") as mock_aconnect_sse:
        mock_aconnect_sse.return_value = MockEventSource(sse_events({"type": "start", "messageId": "m-1"}))
        client = ToolweaveAPIClient("http://localhost:9772")
        client.last_events["test-id"] = ("stream-1", 4)

        [event async for event in client.resume_stream("test-id")]

    args, kwargs = mock_aconnect_sse.call_args
    assert args[1:] == ("GET", "http://localhost:9772/api/v1/conversation/test-id/stream")
    assert kwargs["headers"] == {"Last-Event-ID": "4"}


async def test_resume_without_a_stream(mock_httpx_client):
    with patch("toolweave.client.aconnect_sse") as mock_aconnect_sse:
        mock_aconnect_sse.return_value = MockEventSource([], status_code=httpx.codes.NO_CONTENT)
        client = ToolweaveAPIClient("http://localhost:9772")

        received = [event async for event in client.resume_stream("test-id")]

    assert received == []
    assert "test-id" not in client.last_events
