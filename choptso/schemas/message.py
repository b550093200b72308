from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from typing import Dict, List, Optional

from choptso.models.message import Message, ReplyRef
from choptso.services.message_store import MessagePage
from choptso.services.receipts import Indicator, aggregate_indicator


class MessageCreate(BaseModel):
    """
    Schema for creating a new message.

    Body sanitization and the empty-body check live in MessageStore, so the
    same rules apply to every caller.
    """
    body: str = Field("", max_length=10000)
    attachment: Optional[str] = Field(None, max_length=2048)
    reply_to_id: Optional[str] = None


class MessageUpdate(BaseModel):
    """Schema for editing a message."""
    body: str = Field(..., min_length=1, max_length=10000)


class ReactionRequest(BaseModel):
    emoji: str = Field(..., min_length=1, max_length=32)


class MessageResponse(BaseModel):
    """
    Schema for message response.

    ``body`` is the display body: tombstones carry the deleted placeholder.
    ``indicator`` is the sender-facing delivery summary.
    """
    id: str
    conversation_id: str
    sender_id: str
    sender_name: str
    recipients: List[str]
    body: str
    attachment: Optional[str] = None
    created_at: datetime
    edited_at: Optional[datetime] = None
    reply_to: Optional[ReplyRef] = None
    reactions: Dict[str, List[str]]
    read_by: List[str]
    delivered_to: List[str]
    deleted: bool = False
    deleted_at: Optional[datetime] = None
    indicator: Indicator

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_model(cls, message: Message) -> "MessageResponse":
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            sender_name=message.sender_name,
            recipients=message.recipients,
            body=message.display_body,
            attachment=None if message.deleted else message.attachment,
            created_at=message.created_at,
            edited_at=message.edited_at,
            reply_to=message.reply_to,
            reactions=message.active_reactions(),
            read_by=message.read_by,
            delivered_to=message.delivered_to,
            deleted=message.deleted,
            deleted_at=message.deleted_at,
            indicator=aggregate_indicator(message),
        )


class MessagePageResponse(BaseModel):
    """One page of history, oldest first; pass next_cursor as ``before``."""
    messages: List[MessageResponse]
    has_more: bool
    next_cursor: Optional[str] = None

    @classmethod
    def from_page(cls, page: MessagePage) -> "MessagePageResponse":
        return cls(
            messages=[MessageResponse.from_model(m) for m in page.messages],
            has_more=page.has_more,
            next_cursor=page.next_cursor,
        )


class ReceiptResponse(BaseModel):
    conversation_id: str
    user_id: str
    modified: int


class UnreadCountResponse(BaseModel):
    conversation_id: str
    user_id: str
    unread: int
