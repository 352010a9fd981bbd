"""
Messenger synchronization.

One `Messenger` per signed-in identity. It owns the in-memory projections
(rooms, friends, messages of the selected room), issues every write against
Supabase, and reconciles three sources of change:

- optimistic local sends, staged under a correlation id until confirmed
- explicit refreshes, guarded by generation tokens so stale responses are dropped
- realtime INSERT events on `messages`, merged idempotently

Operations never raise. Failures become notices on `self.notifier` and the
operation returns its failure sentinel (`False`, `None`, or an empty list).
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from supabase import AsyncClient

from howtalk.chat.models import CHAT_PARTICIPANTS, CHAT_ROOMS, MESSAGES
from howtalk.core.config import settings
from howtalk.core.errors import (
    BackendError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    SelfReferenceError,
    ValidationError,
    is_unique_violation,
)
from howtalk.friendship.models import FRIENDSHIPS
from howtalk.utils.profiles import fetch_profile, fetch_profiles, find_profile_by_email

from .generation import RequestGeneration
from .merge import (
    InsertAction,
    apply_room_activity,
    classify_insert,
    merge_incoming_message,
    remove_message,
    replace_message,
)
from .notifications import Notifier
from .pending import StagingBuffer, new_correlation_id
from .personas import validate_message_type
from .realtime import MessageFeed
from .schemas import (
    Friendship,
    FriendshipStatus,
    Identity,
    Message,
    MessageType,
    Participant,
    Profile,
    ProfileStatus,
    Room,
    display_name_for,
)

logger = logging.getLogger(__name__)

ROOM_PAGE_SIZE = 50
FRIEND_PAGE_SIZE = 50
ROOM_COLUMNS = "id, name, is_group, created_at, updated_at, created_by"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _unique(values) -> List[str]:
    seen = {}
    for value in values:
        seen.setdefault(str(value), None)
    return list(seen)


def resolve_room_name(room: Room, viewer_id: str) -> Optional[str]:
    """Explicit name, or the counterpart's display name for unnamed 1:1 rooms."""
    if room.name or room.is_group:
        return room.name
    counterpart = next(
        (p for p in room.participants if p.user_id != viewer_id and p.profile), None
    )
    if counterpart is None:
        return room.name
    return display_name_for(counterpart.profile) or room.name


class Messenger:
    def __init__(
        self,
        client: AsyncClient,
        identity: Optional[Identity] = None,
        profile: Optional[Profile] = None,
        notifier: Optional[Notifier] = None,
        loading_timeout: Optional[float] = None,
    ):
        self.client = client
        self.identity = identity
        self.profile = profile
        self.notifier = notifier or Notifier()

        self.rooms: List[Room] = []
        self.friends: List[Profile] = []
        self.messages: List[Message] = []
        self.selected_room_id: Optional[str] = None
        self.last_sent: Optional[Message] = None
        self.loading = False

        self._staging = StagingBuffer()
        self._rooms_generation = RequestGeneration()
        self._friends_generation = RequestGeneration()
        self._messages_generation = RequestGeneration()
        self._feed: Optional[MessageFeed] = None
        self._loading_timeout = (
            settings.loading_timeout if loading_timeout is None else loading_timeout
        )
        self._loading_timer: Optional[asyncio.TimerHandle] = None

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    @property
    def subscribed(self) -> bool:
        return self._feed is not None and self._feed.active

    async def set_identity(
        self, identity: Optional[Identity], profile: Optional[Profile] = None
    ) -> None:
        """Session listener. A new identity replaces every projection."""
        if (
            identity is not None
            and self.identity is not None
            and identity.id == self.identity.id
        ):
            self.profile = profile or self.profile
            return

        await self._unsubscribe()
        self.reset()
        self.identity = identity
        self.profile = profile

        if identity is not None:
            await self.load()

    async def load(self) -> None:
        """Initial load: friends and rooms concurrently, then subscribe."""
        if self.identity is None:
            self.reset()
            return

        self._set_loading(True)
        try:
            results = await asyncio.gather(
                self.list_friends(), self.list_rooms(), return_exceptions=True
            )
            for result in results:
                if isinstance(result, BaseException):
                    logger.error(
                        f"initial_load_failed user_id={self.identity.id} error={result}"
                    )
        finally:
            self._set_loading(False)

        await self._resubscribe()

    def reset(self) -> None:
        self.rooms = []
        self.friends = []
        self.messages = []
        self.selected_room_id = None
        self.last_sent = None
        self._staging.clear()
        self._rooms_generation.next()
        self._friends_generation.next()
        self._messages_generation.next()
        self._set_loading(False)

    async def close(self) -> None:
        await self._unsubscribe()
        self.reset()
        self.identity = None
        self.profile = None

    async def settle(self) -> None:
        """Wait until every realtime event received so far has been applied."""
        if self._feed is not None:
            await self._feed.join()

    def _set_loading(self, loading: bool) -> None:
        if self._loading_timer is not None:
            self._loading_timer.cancel()
            self._loading_timer = None

        self.loading = loading
        if loading and self._loading_timeout > 0:
            loop = asyncio.get_running_loop()
            self._loading_timer = loop.call_later(
                self._loading_timeout, self._force_clear_loading
            )

    def _force_clear_loading(self) -> None:
        self._loading_timer = None
        if self.loading:
            logger.warning("loading_flag_timeout forced=true")
            self.loading = False

    # ------------------------------------------------------------------
    # rooms
    # ------------------------------------------------------------------

    async def list_rooms(self) -> List[Room]:
        if self.identity is None:
            self.rooms = []
            return self.rooms

        token = self._rooms_generation.next()
        try:
            rooms = await self._fetch_rooms(self.identity.id)
        except Exception as error:
            logger.error(f"rooms_fetch_failed user_id={self.identity.id} error={error}")
            if self._rooms_generation.is_current(token):
                self.rooms = []
            self.notifier.error("Could not load chat rooms", error)
            return []

        if not self._rooms_generation.is_current(token):
            logger.info(f"rooms_fetch_discarded token={token}")
            return rooms

        # Refreshes do not carry the last message, keep what realtime gave us
        previous = {room.id: room.last_message for room in self.rooms}
        self.rooms = [
            room.model_copy(update={"last_message": previous.get(room.id)})
            if room.last_message is None and previous.get(room.id)
            else room
            for room in rooms
        ]
        return self.rooms

    async def _fetch_rooms(self, user_id: str) -> List[Room]:
        memberships = await (
            self.client.table(CHAT_PARTICIPANTS)
            .select("room_id")
            .eq("user_id", user_id)
            .execute()
        )

        room_ids = _unique(row["room_id"] for row in memberships.data or [])
        if not room_ids:
            return []

        rooms_res = await (
            self.client.table(CHAT_ROOMS)
            .select(ROOM_COLUMNS)
            .in_("id", room_ids)
            .order("updated_at", desc=True)
            .limit(ROOM_PAGE_SIZE)
            .execute()
        )

        room_rows = rooms_res.data or []
        if not room_rows:
            return []

        participants_res = await (
            self.client.table(CHAT_PARTICIPANTS)
            .select("room_id, user_id, joined_at")
            .in_("room_id", [row["id"] for row in room_rows])
            .execute()
        )
        participant_rows = participants_res.data or []

        profiles = await fetch_profiles(
            self.client, (row["user_id"] for row in participant_rows)
        )

        by_room: Dict[str, List[Participant]] = {}
        for row in participant_rows:
            by_room.setdefault(row["room_id"], []).append(
                Participant(
                    user_id=row["user_id"],
                    room_id=row["room_id"],
                    joined_at=row.get("joined_at"),
                    profile=profiles.get(row["user_id"]),
                )
            )

        rooms = []
        for row in room_rows:
            room = Room.model_validate({**row, "participants": by_room.get(row["id"], [])})
            rooms.append(room.model_copy(update={"name": resolve_room_name(room, user_id)}))
        return rooms

    async def create_room(
        self,
        participant_ids: List[str],
        is_group: bool = False,
        name: Optional[str] = None,
    ) -> Optional[str]:
        if self.identity is None:
            return None

        user_id = self.identity.id
        try:
            members = _unique([user_id, *participant_ids])
            if len(members) < 2:
                raise ValidationError("Pick at least one friend to chat with.")
            if is_group and not (name and name.strip()):
                raise ValidationError("Group chats need a name.")
            await self._require_friends(user_id, members[1:])
        except Exception as error:
            logger.info(f"room_create_rejected user_id={user_id} error={error}")
            self.notifier.error("Could not create chat room", error)
            return None

        try:
            room_res = await (
                self.client.table(CHAT_ROOMS)
                .insert(
                    {
                        "created_by": user_id,
                        "is_group": is_group,
                        "name": name.strip() if name else None,
                    }
                )
                .execute()
            )
            if not room_res.data:
                raise BackendError("Room insert returned no row.")
            room_id = room_res.data[0]["id"]
        except Exception as error:
            logger.error(f"room_create_failed user_id={user_id} error={error}")
            self.notifier.error("Could not create chat room", error)
            return None

        try:
            await (
                self.client.table(CHAT_PARTICIPANTS)
                .insert([{"room_id": room_id, "user_id": member} for member in members])
                .execute()
            )
        except Exception as error:
            logger.error(f"room_participants_failed room_id={room_id} error={error}")
            await self._discard_room(room_id)
            self.notifier.error("Could not create chat room", error)
            return None

        logger.info(f"room_created room_id={room_id} members={len(members)}")
        await self.list_rooms()
        self.notifier.success(
            "Chat room created",
            "Group chat room created." if is_group else "A new chat has started.",
        )
        return room_id

    async def _require_friends(self, user_id: str, others: List[str]) -> None:
        """Chats are only started with accepted friends."""
        pair_ids = [user_id, *others]
        friendships = await (
            self.client.table(FRIENDSHIPS)
            .select("requester_id, addressee_id, status")
            .eq("status", FriendshipStatus.ACCEPTED.value)
            .in_("requester_id", pair_ids)
            .in_("addressee_id", pair_ids)
            .execute()
        )

        friend_ids = {
            row.counterpart_of(user_id)
            for row in (Friendship.model_validate(r) for r in friendships.data or [])
            if user_id in (row.requester_id, row.addressee_id)
        }
        strangers = [other for other in others if other not in friend_ids]
        if strangers:
            raise ForbiddenError("You can only start chats with friends.")

    async def _require_participant(self, room_id: str, user_id: str) -> None:
        membership = await (
            self.client.table(CHAT_PARTICIPANTS)
            .select("room_id")
            .eq("room_id", room_id)
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        if not membership.data:
            raise ForbiddenError("You are not a member of this conversation.")

    async def _discard_room(self, room_id: str) -> None:
        """Compensate a room whose participants could not be written."""
        try:
            await self.client.table(CHAT_ROOMS).delete().eq("id", room_id).execute()
        except Exception as error:
            logger.error(f"room_orphaned room_id={room_id} error={error}")

    async def leave_room(self, room_id: str) -> bool:
        if self.identity is None:
            return False

        user_id = self.identity.id
        snapshot_rooms = self.rooms
        snapshot_selected = self.selected_room_id
        snapshot_messages = self.messages
        was_selected = self.selected_room_id == room_id

        self.rooms = [room for room in self.rooms if room.id != room_id]
        if was_selected:
            self.selected_room_id = None
            self.messages = []
            self._messages_generation.next()

        try:
            participants = await (
                self.client.table(CHAT_PARTICIPANTS)
                .select("user_id")
                .eq("room_id", room_id)
                .execute()
            )

            await (
                self.client.table(CHAT_PARTICIPANTS)
                .delete()
                .eq("room_id", room_id)
                .eq("user_id", user_id)
                .execute()
            )

            remaining = [
                row for row in participants.data or [] if row["user_id"] != user_id
            ]

            if not remaining:
                await self.client.table(MESSAGES).delete().eq("room_id", room_id).execute()
                await self.client.table(CHAT_ROOMS).delete().eq("id", room_id).execute()
                logger.info(f"room_deleted room_id={room_id} reason=last_participant_left")
            else:
                logger.info(f"room_left room_id={room_id} remaining={len(remaining)}")

        except Exception as error:
            logger.error(f"room_leave_failed room_id={room_id} error={error}")
            self.rooms = snapshot_rooms
            if was_selected:
                self.selected_room_id = snapshot_selected
                self.messages = snapshot_messages
            self.notifier.error("Could not leave chat room", error)
            return False

        if was_selected:
            await self._resubscribe()

        await self.list_rooms()
        self.notifier.success(
            "Left chat room",
            "The chat room was deleted." if not remaining else "You left the chat room.",
        )
        return True

    # ------------------------------------------------------------------
    # friends
    # ------------------------------------------------------------------

    async def list_friends(self) -> List[Profile]:
        if self.identity is None:
            self.friends = []
            return self.friends

        token = self._friends_generation.next()
        try:
            friends = await self._fetch_friends(self.identity.id)
        except Exception as error:
            logger.error(f"friends_fetch_failed user_id={self.identity.id} error={error}")
            if self._friends_generation.is_current(token):
                self.friends = []
            self.notifier.error("Could not load friends", error)
            return []

        if self._friends_generation.is_current(token):
            self.friends = friends
        return friends

    async def _fetch_friends(self, user_id: str) -> List[Profile]:
        friendships = await (
            self.client.table(FRIENDSHIPS)
            .select("requester_id, addressee_id, status")
            .eq("status", FriendshipStatus.ACCEPTED.value)
            .or_(f"requester_id.eq.{user_id},addressee_id.eq.{user_id}")
            .limit(FRIEND_PAGE_SIZE)
            .execute()
        )

        rows = [Friendship.model_validate(row) for row in friendships.data or []]
        friend_ids = _unique(row.counterpart_of(user_id) for row in rows)
        friend_ids = [friend_id for friend_id in friend_ids if friend_id != user_id]
        if not friend_ids:
            return []

        profiles = await fetch_profiles(self.client, friend_ids)
        return [
            profiles[friend_id].model_copy(
                update={"friendship_status": FriendshipStatus.ACCEPTED}
            )
            for friend_id in friend_ids
            if friend_id in profiles
        ]

    async def add_friend(self, email: str) -> bool:
        if self.identity is None:
            return False

        user_id = self.identity.id
        normalized = (email or "").strip().lower()

        try:
            if not normalized:
                raise ValidationError("Enter an email address.")
            if self.identity.email and normalized == self.identity.email.lower():
                raise SelfReferenceError("You cannot add yourself as a friend.")

            target = await find_profile_by_email(self.client, normalized)
            if target is None:
                raise NotFoundError("No user found with that email.")
            if target.user_id == user_id:
                raise SelfReferenceError("You cannot add yourself as a friend.")

            pair = [user_id, target.user_id]
            existing = await (
                self.client.table(FRIENDSHIPS)
                .select("id, status")
                .eq("status", FriendshipStatus.ACCEPTED.value)
                .in_("requester_id", pair)
                .in_("addressee_id", pair)
                .limit(1)
                .execute()
            )
            if existing.data:
                raise ConflictError("You are already friends with this user.")

            try:
                await (
                    self.client.table(FRIENDSHIPS)
                    .insert(
                        {
                            "requester_id": user_id,
                            "addressee_id": target.user_id,
                            "status": FriendshipStatus.ACCEPTED.value,
                        }
                    )
                    .execute()
                )
            except Exception as error:
                if is_unique_violation(error):
                    raise ConflictError(
                        "A friendship with this user already exists."
                    ) from error
                raise

        except Exception as error:
            logger.info(f"friend_add_failed user_id={user_id} error={error}")
            self.notifier.error("Could not add friend", error)
            return False

        logger.info(f"friend_added user_id={user_id} friend_id={target.user_id}")
        if not any(friend.user_id == target.user_id for friend in self.friends):
            self.friends = [
                *self.friends,
                target.model_copy(update={"friendship_status": FriendshipStatus.ACCEPTED}),
            ]

        await self.list_friends()
        self.notifier.success("Friend added", f"{display_name_for(target)} is now your friend.")
        return True

    # ------------------------------------------------------------------
    # messages
    # ------------------------------------------------------------------

    async def select_room(self, room_id: Optional[str]) -> List[Message]:
        """Switch the materialized room. Responses for earlier selections are dropped."""
        self.selected_room_id = room_id
        token = self._messages_generation.next()
        self.messages = []

        if self.identity is not None:
            await self._resubscribe()

        if room_id is None:
            return self.messages
        return await self.list_messages(room_id, token=token)

    async def list_messages(self, room_id: str, token: Optional[int] = None) -> List[Message]:
        if self.identity is None:
            return []
        if token is None:
            token = self._messages_generation.next()

        try:
            await self._require_participant(room_id, self.identity.id)
            messages_res = await (
                self.client.table(MESSAGES)
                .select("*")
                .eq("room_id", room_id)
                .order("created_at", desc=False)
                .execute()
            )
            rows = messages_res.data or []

            profiles = await fetch_profiles(self.client, (row["sender_id"] for row in rows))
            messages = [
                Message.model_validate(
                    {**row, "profile": profiles.get(row["sender_id"])}
                )
                for row in rows
            ]
        except ForbiddenError as error:
            logger.warning(f"messages_read_denied room_id={room_id} error={error}")
            if self._messages_generation.is_current(token) and self.selected_room_id == room_id:
                self.selected_room_id = None
                self.messages = []
            self.notifier.error("Could not load messages", error)
            return []
        except Exception as error:
            logger.error(f"messages_fetch_failed room_id={room_id} error={error}")
            self.notifier.error("Could not load messages", error)
            return self.messages

        if (
            not self._messages_generation.is_current(token)
            or self.selected_room_id != room_id
        ):
            logger.info(f"messages_fetch_discarded room_id={room_id} token={token}")
            return messages

        # Sends still in flight stay visible after a refresh
        fetched_ids = {message.id for message in messages}
        for staged in self._staging.pending_for(room_id):
            if staged.id not in fetched_ids:
                messages.append(staged)

        self.messages = messages
        return self.messages

    def _own_profile(self) -> Profile:
        if self.profile is not None:
            return self.profile
        email = self.identity.email or ""
        return Profile(
            user_id=self.identity.id,
            email=email,
            display_name=email.split("@")[0] or "You",
            status=ProfileStatus.ONLINE,
        )

    async def send_message(
        self,
        content: str,
        room_id: str,
        message_type: str = MessageType.TEXT.value,
        ai_persona: Optional[str] = None,
    ) -> bool:
        if self.identity is None or not content or not content.strip():
            return False

        try:
            resolved_type = validate_message_type(message_type, ai_persona)
        except ValidationError as error:
            self.notifier.error("Message could not be sent", error)
            return False

        payload = {
            "content": content.strip(),
            "room_id": room_id,
            "sender_id": self.identity.id,
            "message_type": resolved_type.value,
            "ai_persona": ai_persona,
        }

        now = _utcnow()
        staged = self._staging.stage(
            Message(
                id=new_correlation_id(),
                created_at=now,
                updated_at=now,
                profile=self._own_profile(),
                **payload,
            )
        )
        if room_id == self.selected_room_id:
            self.messages = [*self.messages, staged.message]

        try:
            await self._require_participant(room_id, payload["sender_id"])
            insert_res = await self.client.table(MESSAGES).insert(payload).execute()
            if not insert_res.data:
                raise BackendError("Message insert returned no row.")
            record = Message.model_validate(insert_res.data[0])
        except Exception as error:
            if staged.correlation_id not in self._staging:
                return False
            logger.error(f"message_send_failed room_id={room_id} error={error}")
            self._staging.roll_back(staged.correlation_id)
            self.messages = remove_message(self.messages, staged.correlation_id)
            self.notifier.error("Message could not be sent", error)
            return False

        # The session was reset while the insert was in flight
        if staged.correlation_id not in self._staging:
            logger.info(f"message_send_orphaned room_id={room_id} message_id={record.id}")
            return False

        confirmed = self._staging.confirm(staged.correlation_id, record)
        self.messages = replace_message(self.messages, staged.correlation_id, confirmed)
        self.last_sent = confirmed

        await self._touch_room(room_id, confirmed)
        return True

    async def _touch_room(self, room_id: str, message: Message) -> None:
        self.rooms = apply_room_activity(self.rooms, message)
        try:
            await (
                self.client.table(CHAT_ROOMS)
                .update({"updated_at": _utcnow().isoformat()})
                .eq("id", room_id)
                .execute()
            )
        except Exception as error:
            logger.warning(f"room_touch_failed room_id={room_id} error={error}")

    # ------------------------------------------------------------------
    # realtime
    # ------------------------------------------------------------------

    async def _resubscribe(self) -> None:
        await self._unsubscribe()
        if self.identity is None:
            return

        feed = MessageFeed(
            self.client,
            self.apply_insert_event,
            topic=f"messages_realtime:{self.identity.id}",
        )
        try:
            await feed.start()
        except Exception as error:
            logger.error(f"realtime_subscribe_failed user_id={self.identity.id} error={error}")
            return
        self._feed = feed

    async def _unsubscribe(self) -> None:
        feed, self._feed = self._feed, None
        if feed is None:
            return
        try:
            await feed.stop()
        except Exception as error:
            logger.warning(f"realtime_unsubscribe_failed topic={feed.topic} error={error}")

    async def apply_insert_event(self, record: Dict[str, Any]) -> None:
        """Merge one inbound INSERT on `messages`. Safe to apply more than once."""
        if self.identity is None:
            return

        try:
            incoming = Message.model_validate(record)
        except PydanticValidationError as error:
            logger.warning(f"realtime_record_invalid error={error}")
            return

        room_id = self.selected_room_id
        action = classify_insert(incoming, self.identity.id, room_id, self.messages)

        if action is InsertAction.APPEND:
            try:
                profile = await fetch_profile(self.client, incoming.sender_id)
            except Exception as error:
                logger.warning(
                    f"sender_profile_fetch_failed sender_id={incoming.sender_id} error={error}"
                )
                profile = None

            # Selection may have moved while the profile was loading
            if self.selected_room_id == room_id:
                self.messages = merge_incoming_message(
                    self.messages, incoming.model_copy(update={"profile": profile})
                )

        self.rooms = apply_room_activity(self.rooms, incoming)
