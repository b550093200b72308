from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import List, Optional
import bleach

from choptso.models.conversation import Conversation, ConversationKind


class DirectConversationCreate(BaseModel):
    """Open (or fetch) the pairwise conversation with another user."""
    user_id: str = Field(..., min_length=1, max_length=128)


class BroadcastCreate(BaseModel):
    """Schema for creating a broadcast conversation."""
    title: str = Field(..., min_length=1, max_length=200)
    participants: List[str] = Field(..., min_length=1, max_length=1000)

    @field_validator('title')
    @classmethod
    def sanitize_title(cls, v: str) -> str:
        return bleach.clean(v, tags=[], strip=True).strip()


class ConversationResponse(BaseModel):
    id: str
    kind: ConversationKind
    participants: List[str]
    title: Optional[str] = None
    created_by: str
    created_at: datetime
    last_message_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, conversation: Conversation) -> "ConversationResponse":
        return cls.model_validate(conversation.model_dump(exclude={"typing_users"}))
