"""
Staging buffer for optimistic sends.

Every user-authored message is staged under a client-generated correlation id
before the insert is issued. Each staged write then resolves exactly once:

    PENDING -> CONFIRMED    (backend returned the authoritative row)
    PENDING -> ROLLED_BACK  (insert failed, entry must leave the projection)
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from .schemas import TEMP_ID_PREFIX, Message


class PendingState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


class InvalidTransition(RuntimeError):
    pass


def new_correlation_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4()}"


@dataclass
class PendingWrite:
    correlation_id: str
    message: Message
    state: PendingState = PendingState.PENDING
    confirmed: Optional[Message] = None

    def confirm(self, record: Message) -> Message:
        if self.state is not PendingState.PENDING:
            raise InvalidTransition(
                f"cannot confirm {self.correlation_id} in state {self.state.value}"
            )
        # Keep the locally attached profile, the insert does not join it
        self.confirmed = record.model_copy(update={"profile": self.message.profile})
        self.state = PendingState.CONFIRMED
        return self.confirmed

    def roll_back(self) -> None:
        if self.state is not PendingState.PENDING:
            raise InvalidTransition(
                f"cannot roll back {self.correlation_id} in state {self.state.value}"
            )
        self.state = PendingState.ROLLED_BACK


class StagingBuffer:
    """Pending writes keyed by correlation id. Resolved writes leave the buffer."""

    def __init__(self):
        self._pending: Dict[str, PendingWrite] = {}

    def stage(self, message: Message) -> PendingWrite:
        write = PendingWrite(correlation_id=message.id, message=message)
        self._pending[write.correlation_id] = write
        return write

    def confirm(self, correlation_id: str, record: Message) -> Message:
        write = self._pending.pop(correlation_id)
        return write.confirm(record)

    def roll_back(self, correlation_id: str) -> PendingWrite:
        write = self._pending.pop(correlation_id)
        write.roll_back()
        return write

    def pending_for(self, room_id: str) -> List[Message]:
        return [
            write.message
            for write in self._pending.values()
            if write.message.room_id == room_id
        ]

    def clear(self) -> None:
        self._pending.clear()

    def __contains__(self, correlation_id: str) -> bool:
        return correlation_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)
