import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from supabase import AsyncClient

from howtalk.chat.models import MESSAGES

logger = logging.getLogger(__name__)

InsertHandler = Callable[[Dict[str, Any]], Awaitable[None]]


def extract_record(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Pull the inserted row out of a postgres_changes payload."""
    if not payload:
        return None
    if payload.get("new"):
        return payload["new"]
    data = payload.get("data") or {}
    return data.get("record")


class MessageFeed:
    """
    Subscription to INSERT events on public.messages.

    The realtime client calls back synchronously; each event is handed to the
    async handler as a task, and the feed keeps the tasks until they finish.
    """

    def __init__(self, client: AsyncClient, handler: InsertHandler, topic: str):
        self.client = client
        self.handler = handler
        self.topic = topic
        self._channel = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active(self) -> bool:
        return self._channel is not None

    async def start(self) -> None:
        channel = self.client.channel(self.topic)
        channel.on_postgres_changes(
            "INSERT",
            schema="public",
            table=MESSAGES,
            callback=self._on_insert,
        )
        await channel.subscribe(self._on_status)
        self._channel = channel
        logger.info(f"realtime_subscribed topic={self.topic}")

    async def stop(self) -> None:
        channel, self._channel = self._channel, None

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if channel is not None:
            await self.client.remove_channel(channel)
            logger.info(f"realtime_unsubscribed topic={self.topic}")

    async def join(self) -> None:
        """Wait for every event handed out so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_status(self, status, error: Optional[Exception] = None) -> None:
        if error is not None:
            logger.error(f"realtime_status topic={self.topic} status={status} error={error}")
        else:
            logger.debug(f"realtime_status topic={self.topic} status={status}")

    def _on_insert(self, payload: Dict[str, Any]) -> None:
        record = extract_record(payload)
        if record is None:
            logger.warning(f"realtime_payload_without_record topic={self.topic}")
            return

        task = asyncio.get_running_loop().create_task(self._dispatch(record))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, record: Dict[str, Any]) -> None:
        try:
            await self.handler(record)
        except Exception:
            logger.exception(f"realtime_handler_failed topic={self.topic}")
