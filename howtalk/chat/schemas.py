from pydantic import BaseModel, Field
from typing import List, Optional

from howtalk.messenger.schemas import Message, MessageType, Room


# Rooms
class GetRoomsResponseModel(BaseModel):
    rooms: List[Room]


class CreateRoomModel(BaseModel):
    participant_ids: List[str] = Field(min_length=1)
    is_group: bool = False
    name: Optional[str] = None


class CreateRoomResponseModel(BaseModel):
    room_id: str


class LeaveRoomResponseModel(BaseModel):
    room_left: bool


# Selection
class SelectRoomModel(BaseModel):
    room_id: Optional[str] = None


class SelectRoomResponseModel(BaseModel):
    selected_room_id: Optional[str]
    messages: List[Message]


# Messages
class GetMessagesResponseModel(BaseModel):
    room_id: Optional[str]
    messages: List[Message]


class SendMessageModel(BaseModel):
    room_id: str
    content: str = Field(min_length=1)
    message_type: MessageType = MessageType.TEXT
    ai_persona: Optional[str] = None


class SendMessageResponseModel(BaseModel):
    sent: bool
    message: Optional[Message] = None


# Notices
class NoticeData(BaseModel):
    title: str
    description: str
    kind: Optional[str] = None
    variant: str


class GetNoticesResponseModel(BaseModel):
    notices: List[NoticeData]
