from pydantic import BaseModel, Field
from datetime import datetime
from typing import Dict, List, Optional

COLLECTION = "messages"

DELETED_PLACEHOLDER = "This message was deleted"
ATTACHMENT_SNIPPET = "Attachment"
SNIPPET_LENGTH = 100


class ReplyRef(BaseModel):
    """
    Denormalized pointer to the message being replied to.

    Copied at send time, so it stays valid after the original is tombstoned.
    """
    message_id: str
    sender_name: str
    snippet: str


class Message(BaseModel):
    """
    Chat message as stored in the ``messages`` collection.

    Set-valued fields (reactions[emoji], read_by, delivered_to) are stored as
    lists and only ever mutated with $addToSet / $pull, so they never hold
    duplicates. ``recipients`` is the participant set minus the sender,
    snapshotted when the message was sent.

    Indexes:
    - Compound (conversation_id, created_at desc): live window and paging
    - Compound (conversation_id, recipients): unread counts and mark-read
    - Single sender_id: user message history
    """
    id: str
    conversation_id: str
    sender_id: str
    sender_name: str
    recipients: List[str] = Field(default_factory=list)
    body: str = ""
    attachment: Optional[str] = None
    created_at: datetime
    edited_at: Optional[datetime] = None
    reply_to: Optional[ReplyRef] = None
    reactions: Dict[str, List[str]] = Field(default_factory=dict)
    read_by: List[str] = Field(default_factory=list)
    delivered_to: List[str] = Field(default_factory=list)
    deleted: bool = False
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: dict) -> "Message":
        return cls.model_validate(doc)

    def to_document(self) -> dict:
        return self.model_dump()

    @property
    def display_body(self) -> str:
        """Body as it should be shown: tombstones render a placeholder."""
        return DELETED_PLACEHOLDER if self.deleted else self.body

    @property
    def snippet(self) -> str:
        if self.body:
            return self.body[:SNIPPET_LENGTH]
        return ATTACHMENT_SNIPPET if self.attachment else ""

    def active_reactions(self) -> Dict[str, List[str]]:
        """Reactions with at least one reactor (pulled sets leave empty lists)."""
        return {emoji: users for emoji, users in self.reactions.items() if users}

    def is_recipient(self, user_id: str) -> bool:
        return user_id != self.sender_id and user_id in self.recipients
