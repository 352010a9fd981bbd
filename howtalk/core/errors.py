from enum import Enum

from postgrest.exceptions import APIError

UNIQUE_VIOLATION = "23505"


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    SELF_REFERENCE = "self_reference"
    VALIDATION = "validation"
    BACKEND = "backend"
    AUTH = "auth"


class MessengerError(Exception):
    kind = ErrorKind.BACKEND

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(MessengerError):
    kind = ErrorKind.NOT_FOUND


class ForbiddenError(MessengerError):
    kind = ErrorKind.FORBIDDEN


class ConflictError(MessengerError):
    kind = ErrorKind.CONFLICT


class SelfReferenceError(MessengerError):
    kind = ErrorKind.SELF_REFERENCE


class ValidationError(MessengerError):
    kind = ErrorKind.VALIDATION


class BackendError(MessengerError):
    kind = ErrorKind.BACKEND

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code

    @classmethod
    def from_exception(cls, error: Exception) -> "BackendError":
        if isinstance(error, BackendError):
            return error
        if isinstance(error, APIError):
            return cls(error.message or str(error), code=error.code)
        return cls(str(error) or error.__class__.__name__)


class AuthenticationError(MessengerError):
    kind = ErrorKind.AUTH


def is_unique_violation(error: Exception) -> bool:
    code = getattr(error, "code", None)
    if code == UNIQUE_VIOLATION:
        return True
    return "duplicate key" in str(error)
