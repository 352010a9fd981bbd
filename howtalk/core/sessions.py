import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from howtalk.auth.session import SessionProvider
from howtalk.core.config import settings
from howtalk.core.supabase_client import get_auth_client, get_supabase
from howtalk.messenger.schemas import Identity
from howtalk.messenger.sync import Messenger

logger = logging.getLogger(__name__)


@dataclass
class UserSession:
    provider: SessionProvider
    messenger: Messenger
    last_seen: float = field(default=0.0)


class SessionRegistry:
    """
    Process-wide map of identity id -> (session provider, messenger).
    Opened on login, closed on logout or shutdown, evicted after
    `idle_timeout` seconds without a request.
    """

    def __init__(
        self,
        idle_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._sessions: Dict[str, UserSession] = {}
        self._lock = asyncio.Lock()

    def get(self, user_id: str) -> Optional[UserSession]:
        return self._sessions.get(user_id)

    def __len__(self) -> int:
        return len(self._sessions)

    async def open(self, provider: SessionProvider) -> UserSession:
        """Bind a signed-in provider to a fresh messenger and load it."""
        if provider.identity is None:
            raise ValueError("provider has no signed-in identity")

        user_id = provider.identity.id
        async with self._lock:
            previous = self._sessions.pop(user_id, None)
        if previous is not None:
            await self._teardown(previous)

        messenger = Messenger(provider.data_client)
        provider.add_listener(messenger.set_identity)
        session = UserSession(provider=provider, messenger=messenger, last_seen=self._clock())

        async with self._lock:
            self._sessions[user_id] = session

        await messenger.set_identity(provider.identity, provider.profile)
        logger.info(f"session_opened user_id={user_id} active={len(self)}")
        return session

    async def ensure(self, identity: Identity, access_token: Optional[str] = None) -> UserSession:
        """Session for a verified bearer token, opened on demand."""
        session = self.get(identity.id)
        if session is not None:
            session.last_seen = self._clock()
            if access_token and session.provider.access_token is None:
                session.provider.access_token = access_token
            return session

        provider = SessionProvider(await get_auth_client(), await get_supabase())
        # Attach before open so the messenger loads with the profile in hand
        await provider.attach(identity, access_token=access_token)
        return await self.open(provider)

    async def close(self, user_id: str, access_token: Optional[str] = None) -> bool:
        """Sign the identity out and tear its messenger down."""
        async with self._lock:
            session = self._sessions.pop(user_id, None)
        if session is None:
            return False

        await session.provider.sign_out(access_token)
        await self._teardown(session)
        logger.info(f"session_closed user_id={user_id} active={len(self)}")
        return True

    async def close_all(self) -> None:
        for user_id in list(self._sessions):
            await self.close(user_id)

    async def sweep(self) -> List[str]:
        """
        Drop sessions idle for longer than `idle_timeout`. Tokens are left
        alone: the next request with a valid bearer token reopens the session.
        """
        if not self.idle_timeout:
            return []

        cutoff = self._clock() - self.idle_timeout
        async with self._lock:
            idle = [
                (user_id, session)
                for user_id, session in self._sessions.items()
                if session.last_seen < cutoff
            ]
            for user_id, _ in idle:
                del self._sessions[user_id]

        for user_id, session in idle:
            await self._teardown(session)
            logger.info(f"session_evicted user_id={user_id} active={len(self)}")
        return [user_id for user_id, _ in idle]

    async def _teardown(self, session: UserSession) -> None:
        session.provider.remove_listener(session.messenger.set_identity)
        await session.messenger.close()


registry = SessionRegistry(idle_timeout=settings.session_idle_seconds)
