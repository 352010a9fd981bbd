import logging

from supabase import AsyncClient, acreate_client

from howtalk.core.config import settings

logger = logging.getLogger(__name__)

_service_client: AsyncClient | None = None
_auth_client: AsyncClient | None = None


async def get_supabase() -> AsyncClient:
    """Service-role client used for table queries and realtime channels."""
    global _service_client

    if _service_client is None:
        _service_client = await acreate_client(
            settings.supabase_url, settings.service_key
        )
        logger.info("supabase_client_created role=service")
    return _service_client


async def get_auth_client() -> AsyncClient:
    """
    Client used only for sign-in/sign-up. Kept apart from the service client
    so a user sign-in never swaps the service client's authorization header.
    """
    global _auth_client

    if _auth_client is None:
        _auth_client = await acreate_client(settings.supabase_url, settings.anon_key)
        logger.info("supabase_client_created role=auth")
    return _auth_client


def set_clients(service: AsyncClient | None, auth: AsyncClient | None = None):
    """Swap the cached clients (app startup wiring and tests)."""
    global _service_client, _auth_client

    _service_client = service
    _auth_client = auth if auth is not None else service
