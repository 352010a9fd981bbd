from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from .schemas import Message, Room


class InsertAction(str, Enum):
    IGNORE_SELF = "ignore_self"
    DUPLICATE = "duplicate"
    OTHER_ROOM = "other_room"
    APPEND = "append"


def contains_message(messages: List[Message], message_id: str) -> bool:
    return any(message.id == message_id for message in messages)


def classify_insert(
    incoming: Message,
    identity_id: str,
    selected_room_id: Optional[str],
    messages: List[Message],
) -> InsertAction:
    """
    Decide what an inbound insert event does to the message projection.
    Self-originated events are already represented by the optimistic path.
    """
    if incoming.sender_id == identity_id:
        return InsertAction.IGNORE_SELF
    if selected_room_id is None or incoming.room_id != selected_room_id:
        return InsertAction.OTHER_ROOM
    if contains_message(messages, incoming.id):
        return InsertAction.DUPLICATE
    return InsertAction.APPEND


def merge_incoming_message(messages: List[Message], incoming: Message) -> List[Message]:
    """Append unless a message with the same id is present. Idempotent."""
    if contains_message(messages, incoming.id):
        return messages
    return [*messages, incoming]


def replace_message(
    messages: List[Message], correlation_id: str, confirmed: Message
) -> List[Message]:
    """Swap a staged entry for its confirmed row without ever holding both."""
    if contains_message(messages, confirmed.id):
        return [message for message in messages if message.id != correlation_id]
    return [confirmed if message.id == correlation_id else message for message in messages]


def remove_message(messages: List[Message], message_id: str) -> List[Message]:
    return [message for message in messages if message.id != message_id]


def _sort_key(room: Room) -> datetime:
    stamp = room.updated_at or room.created_at
    if stamp is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    if stamp.tzinfo is None:
        return stamp.replace(tzinfo=timezone.utc)
    return stamp


def order_rooms(rooms: List[Room]) -> List[Room]:
    """Most recently updated first. Stable for equal timestamps."""
    return sorted(rooms, key=_sort_key, reverse=True)


def apply_room_activity(rooms: List[Room], message: Message) -> List[Room]:
    """Record `message` as the room's last message and move the room up."""
    if not any(room.id == message.room_id for room in rooms):
        return rooms

    updated = [
        room.model_copy(
            update={
                "last_message": message,
                "updated_at": message.created_at or room.updated_at,
            }
        )
        if room.id == message.room_id
        else room
        for room in rooms
    ]
    return order_rooms(updated)
