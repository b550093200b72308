from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional

from choptso.models.presence import Presence, UserStatus


class StatusUpdate(BaseModel):
    status: UserStatus
    emoji: Optional[str] = Field(None, max_length=32)


class TypingUpdate(BaseModel):
    is_typing: bool


class PresenceResponse(BaseModel):
    user_id: str
    status: UserStatus
    last_seen: Optional[datetime] = None
    emoji: Optional[str] = None

    @classmethod
    def from_model(cls, presence: Presence) -> "PresenceResponse":
        return cls.model_validate(presence.model_dump())
