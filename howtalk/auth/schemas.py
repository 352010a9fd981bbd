import re
from pydantic import BaseModel, SecretStr, field_validator
from typing import Optional

from howtalk.messenger.schemas import Profile, ProfileStatus


"""
auth/register
"""


class UserRegistrationModel(BaseModel):
    email: str
    password: SecretStr
    display_name: Optional[str] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, email: str) -> str:
        email = email.strip().lower()
        if not re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email):
            raise ValueError("Enter a valid email address.")
        return email

    @field_validator("display_name")
    @classmethod
    def validate_display_name(cls, display_name: Optional[str]) -> Optional[str]:
        if display_name is None:
            return None

        display_name = display_name.strip()
        if not (1 <= len(display_name) <= 30):
            raise ValueError(
                f"Display name must be between 1 and 30 characters long (got {len(display_name)})."
            )
        return display_name

    @field_validator("password")
    @classmethod
    def validate_password(cls, password: SecretStr) -> SecretStr:
        password_str = password.get_secret_value()

        # Minimum length of 8 characters (no maximum)
        if len(password_str) < 8:
            raise ValueError("Password must be at least 8 characters long.")

        # Must include letters (upper and lower), numbers, and special characters.
        password_regex = r"^(?=.*[a-z])(?=.*[A-Z])(?=.*[0-9])(?=.*[!@#$%^&*()_+={}\[\]|\\;:'\",.<>?/~`]).{8,}$"

        if not re.match(password_regex, password_str):
            raise ValueError(
                "Password must contain at least one uppercase letter, one lowercase letter, one number, and one special character."
            )

        return password


class UserRegistrationResponseModel(BaseModel):
    id: str
    email: str
    display_name: Optional[str]


"""
auth/login
"""


class UserLoginModel(BaseModel):
    email: str
    password: SecretStr


class UserLoginResponseModel(BaseModel):
    access_token: str
    expires_in: int
    user_id: str
    email: str


"""
auth/access
"""


class AccessTokenResponseModel(BaseModel):
    access_token: str


"""
auth/me
"""


class AuthInfo(BaseModel):
    id: str
    email: Optional[str]


class MeResponseModel(BaseModel):
    auth: AuthInfo
    profile: Optional[Profile]
    friends_count: int
    rooms_count: int


"""
auth/profile
"""


class UpdateProfileModel(BaseModel):
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    status: Optional[ProfileStatus] = None


class UpdateProfileResponseModel(BaseModel):
    profile: Profile


"""
auth/logout
"""


class LogoutResponseModel(BaseModel):
    logged_out: bool
