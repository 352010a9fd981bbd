from typing import Dict, Iterable, Optional

from supabase import AsyncClient

from howtalk.chat.models import PROFILES
from howtalk.messenger.schemas import Profile

PROFILE_COLUMNS = "user_id, display_name, avatar_url, status, email"


async def fetch_profile(client: AsyncClient, user_id: str) -> Optional[Profile]:
    """Get a user's profile using their id"""

    response = await (
        client.table(PROFILES)
        .select(PROFILE_COLUMNS)
        .eq("user_id", str(user_id))
        .limit(1)
        .execute()
    )

    if not response.data:
        return None
    return Profile.model_validate(response.data[0])


async def fetch_profiles(
    client: AsyncClient, user_ids: Iterable[str]
) -> Dict[str, Profile]:
    """Batch lookup, keyed by user id. Unknown ids are simply absent."""

    ids = sorted({str(user_id) for user_id in user_ids})
    if not ids:
        return {}

    response = await (
        client.table(PROFILES).select(PROFILE_COLUMNS).in_("user_id", ids).execute()
    )

    return {
        row["user_id"]: Profile.model_validate(row) for row in response.data or []
    }


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so `value` matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def find_profile_by_email(client: AsyncClient, email: str) -> Optional[Profile]:
    """Case-insensitive exact email match."""

    response = await (
        client.table(PROFILES)
        .select(PROFILE_COLUMNS)
        .ilike("email", escape_like(email.strip()))
        .limit(1)
        .execute()
    )

    if not response.data:
        return None
    return Profile.model_validate(response.data[0])
