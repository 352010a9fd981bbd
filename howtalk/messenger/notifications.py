import logging
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Iterator, List, Optional

from howtalk.core.errors import BackendError, ErrorKind, MessengerError

logger = logging.getLogger(__name__)


@dataclass
class Notice:
    title: str
    description: str
    kind: Optional[ErrorKind] = None
    variant: str = "default"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_error(self) -> bool:
        return self.variant == "destructive"


class NoticeScope:
    """Notices one notifier raised inside a `Notifier.track()` block."""

    def __init__(self, notifier: "Notifier"):
        self.notifier = notifier
        self.notices: List[Notice] = []
        self.open = True

    @property
    def failure(self) -> Optional[Notice]:
        errors = [notice for notice in self.notices if notice.is_error]
        return errors[-1] if errors else None


# Tasks copy the context they were created in, so a scope only sees the
# notices of the task that opened it and of tasks started inside the block.
_active_scope: ContextVar[Optional[NoticeScope]] = ContextVar("notice_scope", default=None)


class Notifier:
    """
    Collects user-facing notices. Operations report failures here instead of
    raising; the presentation layer drains them.
    """

    def __init__(self, maxlen: int = 50):
        self._notices: Deque[Notice] = deque(maxlen=maxlen)
        self.last: Optional[Notice] = None

    def _push(self, notice: Notice) -> Notice:
        self._notices.append(notice)
        self.last = notice

        scope = _active_scope.get()
        if scope is not None and scope.open and scope.notifier is self:
            scope.notices.append(notice)
        return notice

    @contextmanager
    def track(self) -> Iterator[NoticeScope]:
        scope = NoticeScope(self)
        token = _active_scope.set(scope)
        try:
            yield scope
        finally:
            scope.open = False
            _active_scope.reset(token)

    def success(self, title: str, description: str) -> Notice:
        return self._push(Notice(title=title, description=description))

    def error(self, title: str, error: Exception) -> Notice:
        if not isinstance(error, MessengerError):
            error = BackendError.from_exception(error)

        logger.warning(f"notice_error title={title!r} kind={error.kind.value}")
        return self._push(
            Notice(
                title=title,
                description=error.message,
                kind=error.kind,
                variant="destructive",
            )
        )

    def drain(self) -> List[Notice]:
        notices = list(self._notices)
        self._notices.clear()
        return notices

    def __len__(self) -> int:
        return len(self._notices)
