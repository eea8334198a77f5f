"""API client for the toolweave backend."""

import json
import uuid
from collections.abc import AsyncGenerator
from typing import Any

import httpx
from httpx_sse import aconnect_sse

from toolweave.log import logger

API_BASE = "/api/v1/conversation"
DONE_MARKER = "[DONE]"


class ToolweaveAPIClient:
    """API client for the toolweave backend."""

    def __init__(self, base_url: str, user_id: str | None = None):
        """Initialize the API client.

        Args:
            base_url: The base URL of the API.
            user_id: Optional user id, sent as ``X-User-Id``.
        """
        self.base_url = base_url
        self.headers = {"X-User-Id": user_id} if user_id else {}
        self.client = httpx.AsyncClient(headers=self.headers, timeout=None)
        # Per conversation: stream id and index of the last event received
        self.last_events: dict[str, tuple[str | None, int | None]] = {}
        logger.info(f"Initialized API client with base URL: {base_url}")

    async def test_connection(self) -> dict[str, Any]:
        """Test the connection to the backend.

        Returns:
            The greeting of the backend.
        """
        url = f"{self.base_url}"
        logger.info(f"Making GET request to: {url}")
        response = await self.client.get(url)
        response.raise_for_status()
        return response.json()

    async def create_conversation(self) -> str:
        """Create a new conversation and return its ID."""
        url = f"{self.base_url}{API_BASE}/create"
        logger.info(f"Making POST request to: {url}")
        response = await self.client.post(url)
        response.raise_for_status()
        data = response.json()
        logger.info(f"Created conversation with ID: {data['conversation_id']}")
        return data["conversation_id"]

    async def get_conversations(self, limit: int = 100, offset: int = 0) -> dict[str, Any]:
        url = f"{self.base_url}{API_BASE}/list"
        response = await self.client.get(url, params={"limit": limit, "offset": offset})
        response.raise_for_status()
        return response.json()

    async def get_conversation_info(self, conversation_id: str) -> dict[str, Any]:
        url = f"{self.base_url}{API_BASE}/info/{conversation_id}"
        response = await self.client.get(url)
        response.raise_for_status()
        return response.json()

    async def delete_conversation(self, conversation_id: str) -> None:
        url = f"{self.base_url}{API_BASE}/delete/{conversation_id}"
        logger.info(f"Making POST request to: {url}")
        response = await self.client.post(url)
        response.raise_for_status()

    async def chat_stream(
        self,
        conversation_id: str,
        prompt: str,
        selected_chat_model: str | None = None,
        visibility: str = "private",
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Send a user message and stream the response events.

        Args:
            conversation_id: The ID of the conversation, created on first use.
            prompt: The text of the user message.
            selected_chat_model: Optional ``provider:model`` id.
            visibility: Visibility of a newly created conversation.

        Yields:
            The events of the response, decoded.
        """
        payload: dict[str, Any] = {
            "id": conversation_id,
            "message": {
                "id": uuid.uuid4().hex,
                "role": "user",
                "parts": [{"type": "text", "text": prompt}],
            },
            "selected_visibility_type": visibility,
        }
        if selected_chat_model:
            payload["selected_chat_model"] = selected_chat_model

        logger.info(f"Sending message to conversation {conversation_id}: {prompt[:50]}...")
        async for event in self._stream(conversation_id, "POST", f"{self.base_url}{API_BASE}/chat", json=payload):
            yield event

    async def submit_approvals(
        self,
        conversation_id: str,
        approvals: dict[str, bool],
        reasons: dict[str, str] | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Answer the tool calls the last response paused on and stream the continuation.

        Args:
            conversation_id: The ID of the conversation.
            approvals: Approval id -> approved.
            reasons: Optional approval id -> reason shown to the model.

        Yields:
            The events of the continued response.
        """
        reasons = reasons or {}
        payload = {
            "id": conversation_id,
            "approvals": [
                {"approvalId": approval_id, "approved": approved, "reason": reasons.get(approval_id)}
                for approval_id, approved in approvals.items()
            ],
        }
        logger.info(f"Submitting {len(approvals)} approvals for conversation {conversation_id}")
        async for event in self._stream(conversation_id, "POST", f"{self.base_url}{API_BASE}/chat", json=payload):
            yield event

    async def resume_stream(self, conversation_id: str) -> AsyncGenerator[dict[str, Any], None]:
        """Rejoin the running response of a conversation after the last event received.

        Yields nothing when no response can be resumed.
        """
        headers = {}
        _, last_index = self.last_events.get(conversation_id, (None, None))
        if last_index is not None:
            headers["Last-Event-ID"] = str(last_index)
        url = f"{self.base_url}{API_BASE}/{conversation_id}/stream"
        async for event in self._stream(conversation_id, "GET", url, headers=headers):
            yield event

    async def _stream(
        self, conversation_id: str, method: str, url: str, **kwargs
    ) -> AsyncGenerator[dict[str, Any], None]:
        async with aconnect_sse(self.client, method, url, **kwargs) as event_source:
            response = event_source.response
            if response.status_code == httpx.codes.NO_CONTENT:
                logger.info(f"No stream to resume for conversation {conversation_id}")
                return
            if response.is_error:
                await response.aread()
            response.raise_for_status()

            stream_id = response.headers.get("X-Stream-Id")
            logger.info(f"Connected to stream {stream_id} for conversation: {conversation_id}")
            async for sse in event_source.aiter_sse():
                if not sse.data:
                    continue
                if sse.data == DONE_MARKER:
                    break
                if sse.id and sse.id.isdigit():
                    self.last_events[conversation_id] = (stream_id, int(sse.id))
                yield json.loads(sse.data)

    async def close(self) -> None:
        """Close the client."""
        logger.info("Closing API client")
        await self.client.aclose()
