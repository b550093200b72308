from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from choptso.core.auth import Actor, get_current_actor
from choptso.core.logging_config import get_logger
from choptso.core.rate_limit import limiter
from choptso.dependencies import (
    get_conversation_service,
    get_message_store,
    get_receipt_service,
    get_typing_tracker,
)
from choptso.schemas.conversation import (
    BroadcastCreate,
    ConversationResponse,
    DirectConversationCreate,
)
from choptso.schemas.message import (
    MessageCreate,
    MessagePageResponse,
    MessageResponse,
    ReceiptResponse,
    UnreadCountResponse,
)
from choptso.schemas.presence import TypingUpdate
from choptso.services.conversation_service import ConversationService
from choptso.services.message_store import MessageStore
from choptso.services.receipts import ReceiptService
from choptso.services.typing_tracker import TypingTracker

router = APIRouter()
logger = get_logger(__name__)


@router.post(
    "/conversations/direct",
    response_model=ConversationResponse,
    status_code=status.HTTP_200_OK
)
async def open_direct_conversation(
    payload: DirectConversationCreate,
    actor: Actor = Depends(get_current_actor),
    conversations: ConversationService = Depends(get_conversation_service)
):
    """Open the pairwise conversation with another user (idempotent)."""
    conversation = await conversations.open_direct(actor.user_id, payload.user_id)
    return ConversationResponse.from_model(conversation)


@router.post(
    "/conversations/broadcast",
    response_model=ConversationResponse,
    status_code=status.HTTP_201_CREATED
)
async def create_broadcast(
    payload: BroadcastCreate,
    actor: Actor = Depends(get_current_actor),
    conversations: ConversationService = Depends(get_conversation_service)
):
    conversation = await conversations.create_broadcast(
        actor.user_id, payload.participants, payload.title
    )
    return ConversationResponse.from_model(conversation)


@router.get(
    "/conversations/{conversation_id}",
    response_model=ConversationResponse
)
async def get_conversation(
    conversation_id: str,
    actor: Actor = Depends(get_current_actor),
    conversations: ConversationService = Depends(get_conversation_service)
):
    conversation = await conversations.require_participant(conversation_id, actor.user_id)
    return ConversationResponse.from_model(conversation)


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED
)
@limiter.limit("20/minute")  # Prevent message spam
async def send_message(
    request: Request,
    conversation_id: str,
    message_data: MessageCreate,
    actor: Actor = Depends(get_current_actor),
    messages: MessageStore = Depends(get_message_store)
):
    """Send a message. The sender must be a participant."""
    logger.info("api_send_message", conversation_id=conversation_id, user_id=actor.user_id)
    message = await messages.send(
        conversation_id,
        actor.user_id,
        actor.display_name,
        message_data.body,
        reply_to_id=message_data.reply_to_id,
        attachment=message_data.attachment,
    )
    return MessageResponse.from_model(message)


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessagePageResponse
)
async def get_messages(
    conversation_id: str,
    before: Optional[str] = Query(None, description="Cursor: next_cursor of the previous page"),
    limit: int = Query(50, ge=1, le=100, description="Messages per page"),
    actor: Actor = Depends(get_current_actor),
    messages: MessageStore = Depends(get_message_store)
):
    """Older history, oldest first. Pass ``next_cursor`` back as ``before``."""
    page = await messages.fetch_page(conversation_id, actor.user_id, before=before, limit=limit)
    return MessagePageResponse.from_page(page)


@router.post(
    "/conversations/{conversation_id}/read",
    response_model=ReceiptResponse
)
async def mark_read(
    conversation_id: str,
    actor: Actor = Depends(get_current_actor),
    receipts: ReceiptService = Depends(get_receipt_service)
):
    modified = await receipts.mark_read(conversation_id, actor.user_id)
    return ReceiptResponse(conversation_id=conversation_id, user_id=actor.user_id, modified=modified)


@router.post(
    "/conversations/{conversation_id}/delivered",
    response_model=ReceiptResponse
)
async def mark_delivered(
    conversation_id: str,
    actor: Actor = Depends(get_current_actor),
    receipts: ReceiptService = Depends(get_receipt_service)
):
    modified = await receipts.mark_delivered(conversation_id, actor.user_id)
    return ReceiptResponse(conversation_id=conversation_id, user_id=actor.user_id, modified=modified)


@router.get(
    "/conversations/{conversation_id}/unread",
    response_model=UnreadCountResponse
)
async def unread_count(
    conversation_id: str,
    actor: Actor = Depends(get_current_actor),
    receipts: ReceiptService = Depends(get_receipt_service)
):
    unread = await receipts.unread_count(conversation_id, actor.user_id)
    return UnreadCountResponse(conversation_id=conversation_id, user_id=actor.user_id, unread=unread)


@router.put(
    "/conversations/{conversation_id}/typing",
    status_code=status.HTTP_204_NO_CONTENT
)
@limiter.limit("120/minute")
async def set_typing(
    request: Request,
    conversation_id: str,
    payload: TypingUpdate,
    actor: Actor = Depends(get_current_actor),
    tracker: TypingTracker = Depends(get_typing_tracker)
):
    await tracker.set_typing(conversation_id, actor.user_id, payload.is_typing)
