from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, field_validator

TEMP_ID_PREFIX = "temp-"


class ProfileStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    AWAY = "away"


class FriendshipStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    BLOCKED = "blocked"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AI = "ai"


class Identity(BaseModel):
    id: str
    email: Optional[str] = None


class Profile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    status: Optional[ProfileStatus] = None
    friendship_status: Optional[FriendshipStatus] = None

    @field_validator("status", mode="before")
    @classmethod
    def coerce_status(cls, value):
        # Older rows carry values outside the enum (e.g. "active")
        if value is None or isinstance(value, ProfileStatus):
            return value
        try:
            return ProfileStatus(str(value).lower())
        except ValueError:
            return None


class Friendship(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    requester_id: str
    addressee_id: str
    status: FriendshipStatus
    created_at: Optional[datetime] = None

    def counterpart_of(self, user_id: str) -> str:
        return self.addressee_id if self.requester_id == user_id else self.requester_id


class Message(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    room_id: str
    sender_id: str
    content: str
    message_type: MessageType = MessageType.TEXT
    ai_persona: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    profile: Optional[Profile] = None

    @property
    def is_temporary(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)


class Participant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    room_id: Optional[str] = None
    joined_at: Optional[datetime] = None
    profile: Optional[Profile] = None


class Room(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: Optional[str] = None
    is_group: bool = False
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    participants: List[Participant] = []
    last_message: Optional[Message] = None


def display_name_for(profile: Optional[Profile]) -> Optional[str]:
    """Display name, falling back to the local part of the email."""
    if profile is None:
        return None
    if profile.display_name:
        return profile.display_name
    if profile.email:
        return profile.email.split("@")[0]
    return None
