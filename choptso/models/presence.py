from pydantic import BaseModel
from datetime import datetime
from enum import Enum
from typing import Optional

COLLECTION = "presence"


class UserStatus(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


class Presence(BaseModel):
    """Presence document; the document id is the user id."""
    user_id: str
    status: UserStatus = UserStatus.OFFLINE
    last_seen: Optional[datetime] = None
    emoji: Optional[str] = None

    @classmethod
    def from_document(cls, doc: dict) -> "Presence":
        data = dict(doc)
        data.setdefault("user_id", data.get("id"))
        return cls.model_validate(data)

    @classmethod
    def offline(cls, user_id: str) -> "Presence":
        return cls(user_id=user_id)
