from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
import uuid

COLLECTION = "conversations"

DIRECT_PREFIX = "dm"
BROADCAST_PREFIX = "broadcast"


class ConversationKind(str, Enum):
    DIRECT = "direct"
    BROADCAST = "broadcast"


def direct_conversation_id(user_a: str, user_b: str) -> str:
    """
    Deterministic pairwise key: both sides derive the same id.

    >>> direct_conversation_id("bob", "alice")
    'dm:alice:bob'
    """
    first, second = sorted((user_a, user_b))
    return f"{DIRECT_PREFIX}:{first}:{second}"


def new_broadcast_id() -> str:
    return f"{BROADCAST_PREFIX}:{uuid.uuid4().hex}"


def is_broadcast_id(conversation_id: str) -> bool:
    return conversation_id.startswith(f"{BROADCAST_PREFIX}:")


class Conversation(BaseModel):
    """
    Conversation as stored in the ``conversations`` collection.

    typing_users maps user id → server time of that user's last keystroke.
    Entries are only hints: readers must filter them by age (see
    services.typing_tracker.active_typers).
    """
    id: str
    kind: ConversationKind = ConversationKind.DIRECT
    participants: List[str]
    title: Optional[str] = None
    created_by: str
    created_at: datetime
    last_message_at: Optional[datetime] = None
    typing_users: Dict[str, datetime] = Field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: dict) -> "Conversation":
        return cls.model_validate(doc)

    def to_document(self) -> dict:
        return self.model_dump(mode="python")

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participants

    def recipients_for(self, sender_id: str) -> List[str]:
        return [p for p in self.participants if p != sender_id]
