import asyncio
import logging
from contextlib import asynccontextmanager
from dotenv import load_dotenv

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .auth import routers as auth_router
from .friendship import routers as friend_router
from .chat import routers as chat_router

from .core.config import settings
from .core.middleware import logging_middleware
from .core.sessions import registry
from .utils.logging_config import setup_logging

load_dotenv()
setup_logging()

logger = logging.getLogger(__name__)


async def sweep_idle_sessions(interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await registry.sweep()
        except Exception:
            logger.exception("session_sweep_failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = None
    if settings.session_idle_seconds > 0 and settings.session_sweep_seconds > 0:
        sweeper = asyncio.create_task(sweep_idle_sessions(settings.session_sweep_seconds))
    yield
    if sweeper is not None:
        sweeper.cancel()
    # Drop realtime channels before the loop goes away
    await registry.close_all()


app = FastAPI(title="HowTalk", lifespan=lifespan)
app.include_router(auth_router.router, prefix="/auth", tags=["Authentication"])
app.include_router(friend_router.router, prefix="/friends", tags=["Friendship"])
app.include_router(chat_router.router, prefix="/chat", tags=["Chat"])

app.middleware("http")(logging_middleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
