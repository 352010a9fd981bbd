import logging

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from howtalk.core.config import settings
from howtalk.core.sessions import UserSession, registry
from howtalk.messenger.schemas import Identity
from howtalk.messenger.sync import Messenger

logger = logging.getLogger(__name__)

security = HTTPBearer()


def verify_token(credentials: HTTPAuthorizationCredentials = Depends(security)):
    token = credentials.credentials

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            issuer=settings.jwt_issuer,
            options={"verify_aud": False},
            leeway=60,
        )
        return payload

    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")

    except jwt.InvalidTokenError as e:
        logger.warning(f"jwt_verification_failed error={e}")
        raise HTTPException(status_code=401, detail="Invalid token")


def get_identity(payload: dict = Depends(verify_token)) -> Identity:
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return Identity(id=user_id, email=payload.get("email"))


async def get_session(
    identity: Identity = Depends(get_identity),
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> UserSession:
    try:
        return await registry.ensure(identity, access_token=credentials.credentials)
    except Exception as e:
        logger.exception(f"session_open_failed user_id={identity.id}")
        raise HTTPException(status_code=500, detail="Could not open session.") from e


async def get_messenger(session: UserSession = Depends(get_session)) -> Messenger:
    return session.messenger
