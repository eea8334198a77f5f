"""Writing finished response messages back to storage."""

from __future__ import annotations

from collections.abc import Sequence

from pydantic_ai.usage import RunUsage
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from toolweave.log import logger
from toolweave.messages import Message
from toolweave.orm import Conversation, ConversationMessage


def to_row(conversation_id: str, message: Message) -> ConversationMessage:
    return ConversationMessage(
        message_id=message.id,
        conversation_id=conversation_id,
        role=message.role,
        parts=message.model_dump(by_alias=True, mode="json")["parts"],
        attachments=[],
    )


def from_row(row: ConversationMessage) -> Message:
    return Message.model_validate({"id": row.message_id, "role": row.role, "parts": row.parts})


async def load_messages(session: AsyncSession, conversation_id: str) -> list[Message]:
    result = await session.execute(
        select(ConversationMessage)
        .where(ConversationMessage.conversation_id == conversation_id)
        .order_by(ConversationMessage.created_at, ConversationMessage.message_id)
    )
    return [from_row(row) for row in result.scalars().all()]


class PersistenceSync:
    """Commits the messages of a finished response.

    Writes are keyed by conversation and message id, so committing the same messages again
    leaves the stored conversation unchanged.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def commit(
        self,
        conversation_id: str,
        finished: Sequence[Message],
        approval_flow: bool = False,
        sent: Sequence[Message] = (),
    ) -> None:
        """Store ``finished``.

        In a normal turn every finished message not yet stored is appended. In
        the approval flow a message whose id is among ``sent`` already exists
        and only its parts are replaced; anything else is appended.
        """
        sent_ids = {m.id for m in sent}
        for message in finished:
            if approval_flow and message.id in sent_ids:
                await self._replace_parts(conversation_id, message)
            else:
                await self._upsert(conversation_id, message)
        await self.session.commit()
        logger.debug(f"Stored {len(finished)} messages for conversation {conversation_id}")

    async def _replace_parts(self, conversation_id: str, message: Message) -> None:
        result = await self.session.execute(
            update(ConversationMessage)
            .where(
                ConversationMessage.conversation_id == conversation_id,
                ConversationMessage.message_id == message.id,
            )
            .values(parts=message.model_dump(by_alias=True, mode="json")["parts"])
        )
        if result.rowcount == 0:
            await self._upsert(conversation_id, message)

    async def _upsert(self, conversation_id: str, message: Message) -> None:
        result = await self.session.execute(
            select(ConversationMessage).where(
                ConversationMessage.conversation_id == conversation_id,
                ConversationMessage.message_id == message.id,
            )
        )
        row = result.scalars().one_or_none()
        if row is None:
            self.session.add(to_row(conversation_id, message))
            await self.session.flush()
            return
        row.parts = message.model_dump(by_alias=True, mode="json")["parts"]

    async def add_usage(self, conversation_id: str, usage: RunUsage) -> None:
        conversation = await self.session.get(Conversation, conversation_id)
        if conversation is None:
            return
        total = from_usage_json(conversation.usage)
        total.incr(usage)
        conversation.usage = to_usage_json(total)
        await self.session.commit()


def to_usage_json(usage: RunUsage) -> dict:
    return {
        "requests": usage.requests,
        "tool_calls": usage.tool_calls,
        "input_tokens": usage.input_tokens,
        "output_tokens": usage.output_tokens,
    }


def from_usage_json(data: dict | None) -> RunUsage:
    data = data or {}
    return RunUsage(
        requests=data.get("requests", 0),
        tool_calls=data.get("tool_calls", 0),
        input_tokens=data.get("input_tokens", 0),
        output_tokens=data.get("output_tokens", 0),
    )
