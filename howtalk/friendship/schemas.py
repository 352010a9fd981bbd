from pydantic import BaseModel, Field
from typing import List

from howtalk.messenger.schemas import Profile


# Friend list
class FriendsResponseModel(BaseModel):
    friends: List[Profile]


# Add friend
class AddFriendModel(BaseModel):
    email: str = Field(min_length=3)


class AddFriendResponseModel(BaseModel):
    friend_added: bool
    friends: List[Profile]
