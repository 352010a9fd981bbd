import logging

from fastapi import APIRouter, Depends

from howtalk.core.dependencies import get_messenger
from howtalk.core.errors import ErrorKind
from howtalk.core.responses import failure_from_notices
from howtalk.messenger.sync import Messenger

from .schemas import (
    CreateRoomModel,
    CreateRoomResponseModel,
    GetMessagesResponseModel,
    GetNoticesResponseModel,
    GetRoomsResponseModel,
    LeaveRoomResponseModel,
    SelectRoomModel,
    SelectRoomResponseModel,
    SendMessageModel,
    SendMessageResponseModel,
)


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/rooms", response_model=GetRoomsResponseModel, status_code=200)
async def get_rooms(refresh: bool = False, messenger: Messenger = Depends(get_messenger)):
    """
    Retrieve the chat rooms the authenticated user participates in.

    Rooms are ordered most recently updated first. Unnamed 1:1 rooms carry
    the other participant's display name.

    **Returns**
    - `rooms`: List of room objects
        - `id`, `name`, `is_group`, `created_by`, `created_at`, `updated_at`
        - `participants`: members with their profiles
        - `last_message`: most recent message seen by this session, if any

    **Errors**
    - 401: Invalid or expired JWT
    """
    if refresh:
        await messenger.list_rooms()

    return {"rooms": messenger.rooms}


@router.post("/rooms", response_model=CreateRoomResponseModel, status_code=201)
async def create_room(data: CreateRoomModel, messenger: Messenger = Depends(get_messenger)):
    """
    Create a chat room with one or more friends.

    The caller owns the room and is added as a participant together with
    every id in `participant_ids`. If the participants cannot be written the
    room is removed again.

    **Input**
    - `participant_ids`: user ids to chat with
    - `is_group`: whether this is a group chat
    - `name`: required for group chats

    **Returns**
    - `room_id`: UUID of the new room

    **Errors**
    - 401: Unauthorized
    - 403: A participant is not an accepted friend
    - 422: Missing group name or participants
    - 500: Database error
    """
    with messenger.notifier.track() as notices:
        room_id = await messenger.create_room(data.participant_ids, data.is_group, data.name)
    if room_id is None:
        raise failure_from_notices(notices, "Failed to create room.")

    return {"room_id": room_id}


@router.delete("/rooms/{room_id}", response_model=LeaveRoomResponseModel, status_code=200)
async def leave_room(room_id: str, messenger: Messenger = Depends(get_messenger)):
    """
    Leave a chat room.

    The room disappears from the caller's room list. When the caller was the
    last participant, the room and all of its messages are deleted.

    **Errors**
    - 401: Unauthorized
    - 500: Database error (the room list is left unchanged)
    """
    with messenger.notifier.track() as notices:
        left = await messenger.leave_room(room_id)
    if not left:
        raise failure_from_notices(notices, "Failed to leave room.")

    return {"room_left": True}


@router.put("/rooms/selected", response_model=SelectRoomResponseModel, status_code=200)
async def select_room(data: SelectRoomModel, messenger: Messenger = Depends(get_messenger)):
    """
    Open a room (or close the open one with `room_id: null`).

    Loads the room's full message history, oldest first, and scopes realtime
    delivery to it.

    **Errors**
    - 403: The caller is not a participant of the room
    """
    with messenger.notifier.track() as notices:
        messages = await messenger.select_room(data.room_id)
    failure = notices.failure
    if failure is not None and failure.kind is ErrorKind.FORBIDDEN:
        raise failure_from_notices(notices, "Could not load messages.")

    return {"selected_room_id": messenger.selected_room_id, "messages": messages}


@router.get("/messages", response_model=GetMessagesResponseModel, status_code=200)
async def get_messages(messenger: Messenger = Depends(get_messenger)):
    """
    Messages of the currently open room, including messages pushed by other
    participants since it was opened.
    """
    await messenger.settle()

    return {"room_id": messenger.selected_room_id, "messages": messenger.messages}


@router.post("/messages", response_model=SendMessageResponseModel, status_code=201)
async def send_message(data: SendMessageModel, messenger: Messenger = Depends(get_messenger)):
    """
    Send a message to a room.

    **Input**
    - `room_id`: UUID of the room
    - `content`: Message text (surrounding whitespace is trimmed)
    - `message_type`: `text`, `image`, `file` or `ai`
    - `ai_persona`: persona id, required for `ai` messages

    **Returns**
    - `sent`: whether the message was stored
    - `message`: the stored message

    **Errors**
    - 400: Blank content
    - 401: Unauthorized
    - 403: The caller is not a participant of the room
    - 422: Unknown message type or persona
    - 500: Database error
    """
    with messenger.notifier.track() as notices:
        sent = await messenger.send_message(
            data.content,
            data.room_id,
            data.message_type.value,
            data.ai_persona,
        )
    if not sent:
        raise failure_from_notices(notices, "Message content is empty.")

    return {"sent": True, "message": messenger.last_sent}


@router.get("/notices", response_model=GetNoticesResponseModel, status_code=200)
async def get_notices(messenger: Messenger = Depends(get_messenger)):
    """Drain the notices queued for this session (oldest first)."""
    notices = messenger.notifier.drain()

    return {
        "notices": [
            {
                "title": notice.title,
                "description": notice.description,
                "kind": notice.kind.value if notice.kind else None,
                "variant": notice.variant,
            }
            for notice in notices
        ]
    }
