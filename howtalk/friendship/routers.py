import logging

from fastapi import APIRouter, Depends

from howtalk.core.dependencies import get_messenger
from howtalk.core.responses import failure_from_notices
from howtalk.messenger.sync import Messenger

from .schemas import (
    AddFriendModel,
    AddFriendResponseModel,
    FriendsResponseModel,
)


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=FriendsResponseModel, status_code=200)
async def get_friends(refresh: bool = False, messenger: Messenger = Depends(get_messenger)):
    """
    List the authenticated user's accepted friends.

    Returns the friend projection held by the user's messenger session. Pass
    `refresh=true` to re-read friendships and profiles from the database first.

    **Returns**
    - `friends`: profiles of every user with an accepted friendship
      (either direction) with the caller.

    **Errors**
    - `401`: Invalid or expired token.

    A failed refresh is not an error: the list is returned empty and a notice
    is queued (see `/chat/notices`).
    """
    if refresh:
        await messenger.list_friends()

    return {"friends": messenger.friends}


@router.post("", response_model=AddFriendResponseModel, status_code=201)
async def add_friend(data: AddFriendModel, messenger: Messenger = Depends(get_messenger)):
    """
    Add a friend by email address.

    Friendships are created directly as `accepted`; there is no request or
    approval step.

    **Input**
    - `email`: email of a registered user (case-insensitive).

    **Process**
    1. Reject adding yourself.
    2. Look the user up by email.
    3. Reject if an accepted friendship already exists in either direction.
    4. Insert the friendship and refresh the friend list.

    **Returns**
    - `{ "friend_added": true, "friends": [...] }`

    **Errors**
    - `404`: No user found with that email.
    - `405`: Attempt to add yourself.
    - `409`: Already friends.
    - `500`: Database error.
    """
    with messenger.notifier.track() as notices:
        added = await messenger.add_friend(data.email)
    if not added:
        raise failure_from_notices(notices, "Could not add friend.")

    return {"friend_added": True, "friends": messenger.friends}
