import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from supabase import AsyncClient, AuthApiError

from howtalk.chat.models import PROFILES
from howtalk.core.errors import AuthenticationError, BackendError, ValidationError
from howtalk.messenger.schemas import Identity, Profile, ProfileStatus
from howtalk.utils.profiles import PROFILE_COLUMNS

logger = logging.getLogger(__name__)

IdentityListener = Callable[[Optional[Identity], Optional[Profile]], Awaitable[None]]

UPDATABLE_PROFILE_FIELDS = {"display_name", "avatar_url", "status"}


@dataclass
class AuthTokens:
    access_token: str
    refresh_token: str
    expires_in: int


def _default_display_name(email: Optional[str], metadata: Optional[dict]) -> str:
    metadata = metadata or {}
    return (
        metadata.get("full_name")
        or metadata.get("name")
        or metadata.get("display_name")
        or (email.split("@")[0] if email else None)
        or "New user"
    )


class SessionProvider:
    """
    Tracks the signed-in identity and its profile, and tells listeners
    (the identity's Messenger) whenever the identity changes.
    """

    def __init__(self, auth_client: AsyncClient, data_client: AsyncClient):
        self.auth_client = auth_client
        self.data_client = data_client
        self.identity: Optional[Identity] = None
        self.profile: Optional[Profile] = None
        self.tokens: Optional[AuthTokens] = None
        self.access_token: Optional[str] = None
        self._listeners: List[IdentityListener] = []

    def add_listener(self, listener: IdentityListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: IdentityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self) -> None:
        for listener in list(self._listeners):
            await listener(self.identity, self.profile)

    async def sign_up(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> Identity:
        try:
            res = await self.auth_client.auth.sign_up(
                {
                    "email": email,
                    "password": password,
                    "options": {"data": {"display_name": display_name or ""}},
                }
            )
        except AuthApiError as error:
            logger.error(f"supabase_error={error}")
            raise AuthenticationError(error.message) from error

        if not res.user:
            raise AuthenticationError("Failed to create user.")

        identity = Identity(id=str(res.user.id), email=res.user.email)

        # The account exists at this point, a profile hiccup is not fatal
        try:
            await self._ensure_profile(identity, {"display_name": display_name})
        except Exception as error:
            logger.error(f"profile_setup_failed user_id={identity.id} error={error}")

        logger.info(f"user_signup_success email={email}")
        return identity

    async def sign_in(self, email: str, password: str) -> AuthTokens:
        try:
            res = await self.auth_client.auth.sign_in_with_password(
                {"email": email, "password": password}
            )
        except AuthApiError as error:
            raise AuthenticationError(error.message) from error

        if not res.session or not res.user:
            raise AuthenticationError(
                "Supabase authentication returned an unexpected response."
            )

        self.tokens = AuthTokens(
            access_token=res.session.access_token,
            refresh_token=res.session.refresh_token,
            expires_in=res.session.expires_in,
        )
        await self.attach(
            Identity(id=str(res.user.id), email=res.user.email),
            metadata=res.user.user_metadata,
            access_token=self.tokens.access_token,
        )
        logger.info(f"user_login_success email={email}")
        return self.tokens

    async def attach(
        self,
        identity: Identity,
        metadata: Optional[dict] = None,
        access_token: Optional[str] = None,
    ) -> None:
        """Adopt an already verified identity and load (or create) its profile."""
        self.identity = identity
        self.access_token = access_token
        try:
            self.profile = await self._ensure_profile(identity, metadata)
        except Exception as error:
            logger.error(f"profile_load_failed user_id={identity.id} error={error}")
            self.profile = None
        await self._notify()

    async def sign_out(self, access_token: Optional[str] = None) -> None:
        """
        Revokes this identity's own session through the admin API. Local state
        is always cleared, even when the backend call fails.
        """
        token = access_token or self.access_token
        if token:
            try:
                await self.data_client.auth.admin.sign_out(token, scope="local")
            except Exception as error:
                logger.warning(f"supabase_sign_out_failed error={error}")

        user_id = self.identity.id if self.identity else None
        self.identity = None
        self.profile = None
        self.tokens = None
        self.access_token = None
        await self._notify()
        logger.info(f"user_logout user_id={user_id}")

    async def refresh_profile(self) -> Optional[Profile]:
        if self.identity is None:
            return None
        self.profile = await self._load_profile(self.identity.id)
        return self.profile

    async def update_profile(self, **changes) -> Profile:
        if self.identity is None:
            raise AuthenticationError("Sign in required.")

        unknown = set(changes) - UPDATABLE_PROFILE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update: {', '.join(sorted(unknown))}.")

        if "status" in changes and changes["status"] is not None:
            changes["status"] = ProfileStatus(changes["status"]).value

        try:
            await (
                self.data_client.table(PROFILES)
                .update(changes)
                .eq("user_id", self.identity.id)
                .execute()
            )
        except Exception as error:
            raise BackendError.from_exception(error) from error

        current = self.profile or Profile(user_id=self.identity.id, email=self.identity.email)
        self.profile = Profile.model_validate({**current.model_dump(), **changes})
        return self.profile

    async def _load_profile(self, user_id: str) -> Optional[Profile]:
        response = await (
            self.data_client.table(PROFILES)
            .select(PROFILE_COLUMNS)
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        return Profile.model_validate(response.data[0])

    async def _ensure_profile(
        self, identity: Identity, metadata: Optional[dict] = None
    ) -> Profile:
        """Profiles are created lazily on first sign-in."""
        profile = await self._load_profile(identity.id)
        if profile is not None:
            return profile

        row = {
            "user_id": identity.id,
            "email": (identity.email or "").lower(),
            "display_name": _default_display_name(identity.email, metadata),
            "avatar_url": (metadata or {}).get("avatar_url"),
            "status": ProfileStatus.ONLINE.value,
        }
        created = await self.data_client.table(PROFILES).insert(row).execute()
        logger.info(f"profile_created user_id={identity.id}")
        return Profile.model_validate(created.data[0] if created.data else row)
