from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from functools import partial

from fastapi import Depends
from pydantic_ai.models import Model
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from toolweave.config import Config, get_config
from toolweave.dbutils import get_db_session, open_db_session
from toolweave.errors import ChatError
from toolweave.llms.agent import AgentRun
from toolweave.llms.convert import to_model_messages
from toolweave.llms.models import (
    ModelInitParams,
    get_default_model,
    init_model,
    merge_model_settings,
    reasoning_settings,
    split_model_id,
)
from toolweave.log import logger
from toolweave.mcp.manager import get_tool_cache
from toolweave.messages import Message, StepStartPart, apply_approval_responses
from toolweave.orm import Conversation, ConversationMessage, ConversationStream, Visibility
from toolweave.persistence import PersistenceSync, from_usage_json, load_messages, to_usage_json
from toolweave.protocol import data_event, text_block
from toolweave.router.api.params import (
    ChatRequest,
    ConversionInfo,
    NewConversation,
    QueryConversations,
    Usage,
)
from toolweave.router.multiplexer import UIMessageStream, UIMessageStreamWriter
from toolweave.router.streamer import PersistentStreamer, StreamData
from toolweave.tools.documents import DocumentTools
from toolweave.tools.registry import ToolProviderCache, cleanup_providers
from toolweave.users import User

REGULAR_PROMPT = """You are a friendly assistant! Keep your responses concise and helpful.
When asked to write, create, or help with something, just do it directly."""

TITLE_MAX_LENGTH = 80


def get_streamer(config: Config = Depends(get_config)) -> PersistentStreamer:
    streamer = PersistentStreamer.get_instance()
    streamer.retention_seconds = config.stream_retention_seconds
    return streamer


def get_conversation_controller(
    session: AsyncSession = Depends(get_db_session),
    config: Config = Depends(get_config),
    tool_cache: ToolProviderCache = Depends(get_tool_cache),
    streamer: PersistentStreamer = Depends(get_streamer),
    default_model=Depends(get_default_model),
) -> ConversationController:
    return ConversationController(session, config, tool_cache, streamer, default_model)


def title_from_message(message: Message) -> str:
    text = " ".join(message.text().split())
    if not text:
        return "New chat"
    if len(text) <= TITLE_MAX_LENGTH:
        return text
    return text[: TITLE_MAX_LENGTH - 3].rstrip() + "..."


class ConversationController:
    def __init__(
        self,
        session: AsyncSession,
        config: Config,
        tool_cache: ToolProviderCache,
        streamer: PersistentStreamer,
        default_model: Model | None,
    ) -> None:
        self.session = session
        self.config = config
        self.tool_cache = tool_cache
        self.streamer = streamer

        self.default_model = default_model

    @property
    def default_system_prompt(self) -> str:
        return self.config.default_system_prompt or REGULAR_PROMPT

    def get_model(self, selected_chat_model: str | None) -> tuple[Model, str | None, str]:
        """The model to chat with, plus its provider and name for reasoning options."""
        if selected_chat_model:
            provider, model_name = split_model_id(selected_chat_model)
            provider = provider or self.config.default_model_provider
            if not provider:
                raise ChatError("bad_request:api", cause=f"No provider for model {selected_chat_model}")
            try:
                model = init_model(ModelInitParams(provider=provider, model_name=model_name))
            except Exception as e:
                raise ChatError("bad_request:api", cause=str(e)) from e
            return model, provider, model_name

        if not self.default_model:
            raise ChatError("offline:chat", cause="Can not find model, please select a model or set a default one")
        return self.default_model, self.config.default_model_provider, self.config.default_model_name or ""

    def get_artifact_model(self, chat_model: Model) -> Model:
        if not self.config.artifact_model_name:
            return chat_model
        provider, model_name = split_model_id(self.config.artifact_model_name)
        return init_model(
            ModelInitParams(provider=provider or self.config.default_model_provider or "", model_name=model_name)
        )

    async def _get_owned_conversation(self, user: User, conversation_id: str) -> Conversation:
        conversation = await self.session.get(Conversation, conversation_id)
        if not conversation:
            raise ChatError("not_found:chat")

        if conversation.user_id != user.user_id:
            raise ChatError("forbidden:chat")
        return conversation

    async def create_conversation(self, user: User) -> NewConversation:
        c = Conversation(
            user_id=user.user_id,
        )
        self.session.add(c)
        await self.session.commit()
        await self.session.refresh(c)
        return NewConversation(conversation_id=c.conversation_id)

    async def get_conversations(
        self, user: User, limit: int, offset: int, order_by: str, order: str
    ) -> QueryConversations:
        statements = select(Conversation).where(Conversation.user_id == user.user_id)
        if order not in ["asc", "desc"]:
            raise ChatError("bad_request:api", cause="Order must be 'asc' or 'desc'")
        if order_by not in ["created_at", "updated_at"]:
            raise ChatError("bad_request:api", cause="Order by must be 'created_at' or 'updated_at'")

        column = Conversation.created_at if order_by == "created_at" else Conversation.updated_at
        statements = statements.order_by(column if order == "asc" else column.desc())

        result = await self.session.execute(statements.limit(limit).offset(offset))
        conversations = result.scalars().all()

        return QueryConversations(
            datas=[self._info(c, messages=None) for c in conversations],
            limit=limit,
            offset=offset,
            has_more=len(conversations) == limit,
        )

    async def get_conversation_info(self, user: User, conversation_id: str) -> ConversionInfo:
        conversation = await self._get_owned_conversation(user, conversation_id)
        messages = await load_messages(self.session, conversation_id)
        return self._info(conversation, messages=messages)

    @staticmethod
    def _info(conversation: Conversation, messages: list[Message] | None) -> ConversionInfo:
        return ConversionInfo(
            conversation_id=conversation.conversation_id,
            title=conversation.title,
            visibility=Visibility(conversation.visibility).value,
            messages=messages,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            usage=Usage.model_validate(to_usage_json(from_usage_json(conversation.usage))),
        )

    async def delete_conversation(self, user: User, conversation_id: str) -> None:
        await self._get_owned_conversation(user, conversation_id)

        await self.session.execute(
            delete(ConversationMessage).where(ConversationMessage.conversation_id == conversation_id)
        )
        await self.session.execute(
            delete(ConversationStream).where(ConversationStream.conversation_id == conversation_id)
        )
        await self.session.execute(delete(Conversation).where(Conversation.conversation_id == conversation_id))
        await self.session.commit()
        return

    async def count_recent_messages(self, user: User, hours: int = 24) -> int:
        since = datetime.now(timezone.utc) - timedelta(hours=hours)
        result = await self.session.execute(
            select(func.count(ConversationMessage.message_id))
            .join(Conversation, Conversation.conversation_id == ConversationMessage.conversation_id)
            .where(
                Conversation.user_id == user.user_id,
                ConversationMessage.role == "user",
                ConversationMessage.created_at >= since,
            )
        )
        return result.scalar_one()

    async def message_exists(self, message_id: str) -> bool:
        """Whether any conversation already stores a message with this id."""
        result = await self.session.execute(
            select(ConversationMessage.message_id).where(ConversationMessage.message_id == message_id).limit(1)
        )
        return result.first() is not None

    async def chat(self, user: User, params: ChatRequest) -> tuple[str, StreamData]:
        """Start a response for ``params`` and return its stream id and stream.

        The response runs in the background; it is not tied to the request
        that started it.
        """
        if await self.count_recent_messages(user) > self.config.max_messages_per_day:
            raise ChatError("rate_limit:chat")

        conversation = await self.session.get(Conversation, params.id)
        if conversation:
            if conversation.user_id != user.user_id:
                raise ChatError("forbidden:chat")
        elif params.message is not None:
            conversation = Conversation(
                conversation_id=params.id,
                user_id=user.user_id,
                visibility=Visibility(params.selected_visibility_type),
            )
            self.session.add(conversation)
        else:
            raise ChatError("not_found:chat")

        model, provider, model_name = self.get_model(params.selected_chat_model)
        messages = await load_messages(self.session, params.id)
        sync = PersistenceSync(self.session)

        new_title: str | None = None
        if params.message is not None and not messages:
            new_title = title_from_message(params.message)
            conversation.title = new_title

        if params.message is not None:
            if await self.message_exists(params.message.id):
                raise ChatError("bad_request:api", cause=f"Message {params.message.id} was already sent")
            await sync.commit(params.id, [params.message])
            messages.append(params.message)
        else:
            updated = apply_approval_responses(messages, params.approvals or [])
            if not updated:
                raise ChatError("bad_request:approval")
            logger.info(f"Applied {len(updated)} approval responses in conversation {params.id}")
            answered = {part.tool_call_id for part in updated}
            changed = [m for m in messages if any(p.tool_call_id in answered for p in m.tool_parts())]
            # Stored right away so a second submission of the same answers is rejected
            await sync.commit(params.id, changed, approval_flow=True, sent=messages)

        stream = self._build_stream(
            user=user,
            conversation_id=params.id,
            messages=messages,
            model=model,
            provider=provider,
            model_name=model_name,
            approval_flow=params.is_approval_flow,
            new_title=new_title,
        )

        stream_id = uuid.uuid4().hex
        if self.config.resumable_streams:
            self.session.add(ConversationStream(stream_id=stream_id, conversation_id=params.id))
            await self.session.commit()
        stream_data = self.streamer.start(stream_id, aiter(stream), register=self.config.resumable_streams)
        logger.info(f"Started stream {stream_id} for conversation {params.id}")
        return stream_id, stream_data

    def _build_stream(
        self,
        *,
        user: User,
        conversation_id: str,
        messages: list[Message],
        model: Model,
        provider: str | None,
        model_name: str,
        approval_flow: bool,
        new_title: str | None,
    ) -> UIMessageStream:
        config = self.config
        tool_cache = self.tool_cache
        history = to_model_messages(messages, self.default_system_prompt)
        sent = [m.model_copy(deep=True) for m in messages]
        runs: list[AgentRun] = []

        initial_step = 0
        if approval_flow and messages and messages[-1].role == "assistant":
            initial_step = sum(isinstance(p, StepStartPart) for p in messages[-1].parts)

        artifact_model = self.get_artifact_model(model)

        async def execute(writer: UIMessageStreamWriter) -> None:
            try:
                tool_set = await tool_cache.get_tools()
                writer.defer(partial(cleanup_providers, tool_set.providers))
                registry = tool_set.registry.with_tools(
                    DocumentTools(artifact_model, config).tools(),
                    timeout=config.tool_timeout_seconds,
                )

                run = AgentRun(
                    model,
                    registry,
                    history.messages,
                    max_steps=config.max_steps,
                    model_settings=merge_model_settings(
                        config.default_model_settings,
                        reasoning_settings(provider, model_name, config.reasoning_budget_tokens),
                    ),
                    pending=history.pending,
                    completed_returns=history.completed_returns,
                    approval_required=config.approval_required_tools,
                    initial_step=initial_step,
                    writer=writer,
                    user_id=user.user_id,
                )
                runs.append(run)
                writer.merge(run.stream())

                if new_title:
                    writer.write(data_event("chat-title", new_title))
            except Exception as e:
                logger.exception(f"Failed to start response for conversation {conversation_id}: {e}")
                for event in text_block(f"\n\nSomething went wrong and the response stopped: {e}"):
                    writer.write(event)

        async def on_finish(finished: list[Message], response: Message) -> None:
            async with open_db_session(config) as session:
                sync = PersistenceSync(session)
                if approval_flow:
                    await sync.commit(conversation_id, [response], approval_flow=True, sent=sent)
                else:
                    await sync.commit(conversation_id, [response])
                for run in runs:
                    await sync.add_usage(conversation_id, run.usage())

        return UIMessageStream(
            execute,
            original_messages=messages,
            on_finish=on_finish,
            finish_reason=lambda: runs[-1].finish_reason() if runs else None,
            timeout=config.request_timeout_seconds,
        )

    async def resume(self, user: User, conversation_id: str) -> str | None:
        """The id of the newest stream of the conversation that can still be joined."""
        await self._get_owned_conversation(user, conversation_id)
        if not self.config.resumable_streams:
            return None

        result = await self.session.execute(
            select(ConversationStream.stream_id)
            .where(ConversationStream.conversation_id == conversation_id)
            .order_by(ConversationStream.created_at.desc())
            .limit(1)
        )
        stream_id = result.scalars().one_or_none()
        if stream_id is None or not self.streamer.has_stream(stream_id):
            return None
        return stream_id
