import logging

from fastapi.responses import JSONResponse
from fastapi import APIRouter, status, HTTPException, Request, Response, Depends
from fastapi.security import HTTPAuthorizationCredentials

from supabase import AuthApiError

from howtalk.core.config import settings
from howtalk.core.dependencies import get_identity, get_session, security
from howtalk.core.errors import AuthenticationError, MessengerError
from howtalk.core.responses import STATUS_BY_KIND
from howtalk.core.sessions import UserSession, registry
from howtalk.core.supabase_client import get_auth_client, get_supabase
from howtalk.messenger.schemas import Identity
from .session import SessionProvider
from .schemas import (
    UserRegistrationModel,
    UserRegistrationResponseModel,
    UserLoginModel,
    UserLoginResponseModel,
    AccessTokenResponseModel,
    MeResponseModel,
    UpdateProfileModel,
    UpdateProfileResponseModel,
    LogoutResponseModel,
)


logger = logging.getLogger(__name__)
router = APIRouter()

COOKIE_NAME = "refresh_token"
COOKIE_PATH = "/auth/access"
COOKIE_MAX_AGE = 60 * 60 * 24 * 7  # 7 days


def _set_refresh_cookie(response: Response, refresh_token: str):
    response.set_cookie(
        key=COOKIE_NAME,
        value=refresh_token,
        httponly=settings.cookie_httponly,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        domain=settings.cookie_domain,
        max_age=COOKIE_MAX_AGE,
        path=COOKIE_PATH,
    )


async def _new_provider() -> SessionProvider:
    return SessionProvider(await get_auth_client(), await get_supabase())


@router.post("/register", response_model=UserRegistrationResponseModel, status_code=201)
async def register_user(data: UserRegistrationModel):
    """
    Register a new user.

    This endpoint creates a Supabase Auth user and the matching profile record.

    **Input Fields**
    - **email**: A valid user email. Must not already exist in Supabase Auth.
    - **password**: Minimum 8 characters. Must include:
        - at least one lowercase letter
        - at least one uppercase letter
        - at least one number
        - at least one special character
    - **display_name**: Optional, 1-30 characters. Defaults to the email's local part.

    **Returns**
    - User ID
    - Email
    - Display name

    **Errors**
    - 409: Email already registered
    - 500: Unexpected Supabase or server error
    """
    provider = await _new_provider()

    try:
        identity = await provider.sign_up(
            data.email, data.password.get_secret_value(), data.display_name
        )
    except AuthenticationError as error:
        raise HTTPException(status_code=409, detail=error.message)

    return {
        "id": identity.id,
        "email": identity.email or data.email,
        "display_name": data.display_name or data.email.split("@")[0],
    }


@router.post("/login", response_model=UserLoginResponseModel, status_code=200)
async def login_user(user_data: UserLoginModel, response: Response):
    """
    Authenticate a user with email and password.

    On success a messenger session is opened for the user: friends and rooms
    are loaded and realtime delivery starts. The refresh token is set in an
    HttpOnly cookie.

    **Returns**
    - `access_token`: A short-lived JWT used for authorized API requests.
    - `user_id`: The authenticated user's ID.
    - `email`: The authenticated user's email.

    **Errors**
    - 401: Invalid email or password
    - 500: Supabase or internal server error
    """
    provider = await _new_provider()

    try:
        tokens = await provider.sign_in(
            user_data.email, user_data.password.get_secret_value()
        )
    except AuthenticationError as error:
        raise HTTPException(status_code=401, detail=error.message)

    try:
        await registry.open(provider)
    except Exception:
        logger.exception(f"session_open_failed email={user_data.email}")
        raise HTTPException(
            status_code=500, detail="An internal server error occurred during login."
        )

    _set_refresh_cookie(response, tokens.refresh_token)

    return {
        "access_token": tokens.access_token,
        "expires_in": tokens.expires_in,
        "user_id": provider.identity.id,
        "email": provider.identity.email or user_data.email,
    }


@router.get("/access", response_model=AccessTokenResponseModel, status_code=200)
async def get_new_access(request: Request, response: Response):
    """
    Issue a new access token using the refresh token stored in an HttpOnly cookie.

    If rotation is enabled, a new refresh token is returned and the cookie is
    updated.

    **Errors**
    - 401: Missing, expired, revoked, or invalid refresh token
    """
    refresh_token = request.cookies.get(COOKIE_NAME)

    if not refresh_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No refresh token provided.",
        )

    try:
        auth_client = await get_auth_client()
        session = await auth_client.auth.refresh_session(refresh_token)

        _set_refresh_cookie(response, session.session.refresh_token)
        return {"access_token": session.session.access_token}

    except (AuthApiError, AttributeError) as error:
        logger.info(f"refresh_failed error={error}")
        response.delete_cookie(
            key=COOKIE_NAME,
            domain=settings.cookie_domain,
            path=COOKIE_PATH,
        )

        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token invalid or expired. Please log in again.",
        )


@router.get("/me", response_model=MeResponseModel, status_code=200)
async def get_me(session: UserSession = Depends(get_session)):
    """
    Get the authenticated user's identity and profile, with the size of the
    friend and room lists currently held by the session.
    """
    identity = session.provider.identity

    return {
        "auth": {"id": identity.id, "email": identity.email},
        "profile": session.provider.profile,
        "friends_count": len(session.messenger.friends),
        "rooms_count": len(session.messenger.rooms),
    }


@router.patch("/profile", response_model=UpdateProfileResponseModel, status_code=200)
async def update_profile(
    data: UpdateProfileModel, session: UserSession = Depends(get_session)
):
    """
    Update the authenticated user's display name, avatar or status.

    Only the fields present in the body are changed.

    **Errors**
    - 401: Invalid or expired token
    - 422: Unknown status value
    - 500: Database error
    """
    changes = data.model_dump(exclude_unset=True, mode="json")
    if not changes:
        return {"profile": session.provider.profile}

    try:
        profile = await session.provider.update_profile(**changes)
    except MessengerError as error:
        raise HTTPException(
            status_code=STATUS_BY_KIND.get(error.kind, 500), detail=error.message
        )

    session.messenger.profile = profile
    return {"profile": profile}


@router.post("/logout", response_model=LogoutResponseModel)
async def logout(
    identity: Identity = Depends(get_identity),
    credentials: HTTPAuthorizationCredentials = Depends(security),
):
    """
    Logs out the user: the messenger session is torn down, the session behind
    the presented token is revoked (its refresh token stops working), and the
    refresh_token cookie is cleared. Supabase itself cannot invalidate JWTs
    early.
    """
    await registry.close(identity.id, access_token=credentials.credentials)

    response = JSONResponse({"logged_out": True})

    # must match set_cookie()
    response.delete_cookie(
        key=COOKIE_NAME,
        path=COOKIE_PATH,
        domain=settings.cookie_domain,
    )

    return response
