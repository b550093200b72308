from fastapi import APIRouter, Depends, Response, status

from choptso.core.auth import Actor, get_current_actor
from choptso.core.logging_config import get_logger
from choptso.dependencies import get_message_store
from choptso.schemas.message import MessageResponse, MessageUpdate, ReactionRequest
from choptso.services.message_store import MessageStore

router = APIRouter()
logger = get_logger(__name__)


@router.patch(
    "/messages/{message_id}",
    response_model=MessageResponse
)
async def edit_message(
    message_id: str,
    payload: MessageUpdate,
    actor: Actor = Depends(get_current_actor),
    messages: MessageStore = Depends(get_message_store)
):
    """Edit a message body. Only the sender can edit; deleted messages are frozen."""
    message = await messages.edit(message_id, actor.user_id, payload.body)
    return MessageResponse.from_model(message)


@router.delete(
    "/messages/{message_id}",
    status_code=status.HTTP_204_NO_CONTENT
)
async def delete_message(
    message_id: str,
    actor: Actor = Depends(get_current_actor),
    messages: MessageStore = Depends(get_message_store)
):
    """
    Tombstone a message (sender, or admin via the chat:admin scope).

    Deleting an already deleted message succeeds.
    """
    logger.info(
        "api_delete_message",
        message_id=message_id,
        user_id=actor.user_id,
        is_admin=actor.is_admin,
    )
    await messages.mark_deleted(message_id, actor.user_id, is_admin=actor.is_admin)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/messages/{message_id}/reactions",
    response_model=MessageResponse
)
async def add_reaction(
    message_id: str,
    payload: ReactionRequest,
    actor: Actor = Depends(get_current_actor),
    messages: MessageStore = Depends(get_message_store)
):
    message = await messages.add_reaction(message_id, actor.user_id, payload.emoji)
    return MessageResponse.from_model(message)


@router.delete(
    "/messages/{message_id}/reactions/{emoji}",
    response_model=MessageResponse
)
async def remove_reaction(
    message_id: str,
    emoji: str,
    actor: Actor = Depends(get_current_actor),
    messages: MessageStore = Depends(get_message_store)
):
    message = await messages.remove_reaction(message_id, actor.user_id, emoji)
    return MessageResponse.from_model(message)
