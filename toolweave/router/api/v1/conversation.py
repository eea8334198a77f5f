from fastapi import APIRouter, Depends, Header, Response, status

from toolweave.errors import ChatError
from toolweave.log import logger
from toolweave.router.api.params import (
    ChatRequest,
    ConversionInfo,
    NewConversation,
    QueryConversations,
)
from toolweave.router.controller.conversation import (
    ConversationController,
    get_conversation_controller,
)
from toolweave.router.streamer import PersistentEventSourceResponse
from toolweave.users import User, get_current_user

router = APIRouter(
    tags=["conversation"],
    prefix="/api/v1/conversation",
)


@router.post("/create")
async def create_conversation(
    user: User = Depends(get_current_user),
    conversation_controller: ConversationController = Depends(get_conversation_controller),
) -> NewConversation:
    return await conversation_controller.create_conversation(user)


@router.get("/list")
async def get_conversations(
    user: User = Depends(get_current_user),
    conversation_controller: ConversationController = Depends(get_conversation_controller),
    limit: int = 100,
    offset: int = 0,
    order_by: str = "created_at",
    order: str = "desc",
) -> QueryConversations:
    return await conversation_controller.get_conversations(user, limit, offset, order_by, order)


@router.get("/info/{conversation_id}")
async def get_conversation_info(
    conversation_id: str,
    user: User = Depends(get_current_user),
    conversation_controller: ConversationController = Depends(get_conversation_controller),
) -> ConversionInfo:
    return await conversation_controller.get_conversation_info(user, conversation_id)


@router.post("/delete/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(
    conversation_id: str,
    user: User = Depends(get_current_user),
    conversation_controller: ConversationController = Depends(get_conversation_controller),
) -> None:
    await conversation_controller.delete_conversation(user, conversation_id)


@router.post("/chat")
async def chat(
    params: ChatRequest,
    user: User = Depends(get_current_user),
    conversation_controller: ConversationController = Depends(get_conversation_controller),
) -> PersistentEventSourceResponse:
    try:
        stream_id, stream_data = await conversation_controller.chat(user, params)
    except ChatError:
        raise
    except Exception as e:
        logger.exception(f"Unhandled error in chat API: {e}")
        raise ChatError("offline:chat") from e

    return PersistentEventSourceResponse(
        conversation_controller.streamer,
        stream_id,
        stream_data=stream_data,
        headers={"X-Stream-Id": stream_id},
    )


@router.get("/{conversation_id}/stream")
async def resume_stream(
    conversation_id: str,
    user: User = Depends(get_current_user),
    conversation_controller: ConversationController = Depends(get_conversation_controller),
    last_event_id: str | None = Header(None),
):
    stream_id = await conversation_controller.resume(user, conversation_id)
    if stream_id is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    start_index = 0
    if last_event_id is not None and last_event_id.isdigit():
        start_index = int(last_event_id) + 1
    logger.info(f"Resuming stream {stream_id} from event {start_index}")
    return PersistentEventSourceResponse(
        conversation_controller.streamer,
        stream_id,
        start_index=start_index,
        headers={"X-Stream-Id": stream_id},
    )
