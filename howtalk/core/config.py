import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from howtalk.utils.env_helper import (
    env_bool,
    env_float,
    env_list,
    env_none_or_str,
)

load_dotenv()


DEFAULT_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:8080",
]


@dataclass(frozen=True)
class Settings:
    supabase_url: str | None
    service_key: str | None
    anon_key: str | None
    jwt_secret: str | None
    cors_origins: list[str] = field(default_factory=list)
    log_level: str = "INFO"
    log_format: str = "default"
    loading_timeout: float = 3.0
    session_idle_seconds: float = 1800.0
    session_sweep_seconds: float = 60.0
    cookie_httponly: bool = True
    cookie_secure: bool = False
    cookie_samesite: str = "Lax"
    cookie_domain: str | None = None

    @property
    def jwt_issuer(self) -> str:
        return f"{self.supabase_url}/auth/v1"


def load_settings() -> Settings:
    service_key = os.getenv("SECRET_API_KEY")

    return Settings(
        supabase_url=os.getenv("PUBLIC_SUPABASE_URL"),
        service_key=service_key,
        # Auth calls fall back to the service key when no anon key is set
        anon_key=os.getenv("PUBLIC_ANON_KEY") or service_key,
        jwt_secret=os.getenv("SUPABASE_JWT_SECRET"),
        cors_origins=env_list("CORS_ORIGINS", DEFAULT_ORIGINS),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_format=os.getenv("LOG_FORMAT", "default"),
        loading_timeout=env_float("LOADING_TIMEOUT_SECONDS", 3.0),
        session_idle_seconds=env_float("SESSION_IDLE_SECONDS", 1800.0),
        session_sweep_seconds=env_float("SESSION_SWEEP_SECONDS", 60.0),
        cookie_httponly=env_bool("HTTPONLY", default=True),
        cookie_secure=env_bool("SECURE", default=False),
        cookie_samesite=os.getenv("SAMESITE", "Lax"),
        cookie_domain=env_none_or_str("COOKIE_DOMAIN", None),
    )


settings = load_settings()
