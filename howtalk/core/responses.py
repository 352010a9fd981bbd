from fastapi import HTTPException

from howtalk.core.errors import ErrorKind
from howtalk.messenger.notifications import NoticeScope

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.CONFLICT: 409,
    ErrorKind.SELF_REFERENCE: 405,
    ErrorKind.VALIDATION: 422,
    ErrorKind.AUTH: 401,
    ErrorKind.BACKEND: 500,
}


def failure_from_notices(scope: NoticeScope, fallback: str) -> HTTPException:
    """
    Translate the last error notice the tracked operation raised into an HTTP
    error. An operation that failed without a notice is a bad request.
    """
    notice = scope.failure
    if notice is None:
        return HTTPException(status_code=400, detail=fallback)

    return HTTPException(
        status_code=STATUS_BY_KIND.get(notice.kind, 500),
        detail=notice.description or fallback,
    )
