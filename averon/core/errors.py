from __future__ import annotations

from enum import Enum
import logging
from typing import Any, Optional

from averon.core.request_context import get_request_id

logger = logging.getLogger("averon")


class ErrorKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    VALIDATION = "validation"
    NOT_FOUND_OR_EXPIRED = "not_found_or_expired"
    CONFLICT = "conflict"
    FATAL = "fatal"
    INTERNAL = "internal"


# The one place an error kind becomes an HTTP status.
# NOT_FOUND_OR_EXPIRED shares 400 with VALIDATION so the status code does not
# reveal whether a token was unknown, used or expired.
STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND_OR_EXPIRED: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.FATAL: 500,
    ErrorKind.INTERNAL: 500,
}


class AccessError(Exception):
    """
    Base for every error the service surfaces to callers.

    Carries a stable machine-readable `code`, a human-readable `message` and
    optional structured `extra` fields that are merged into the response body.
    """

    kind: ErrorKind = ErrorKind.FATAL
    retryable: bool = False

    def __init__(self, code: str, message: str, *, extra: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.extra = dict(extra or {})

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.retryable:
            detail["retryable"] = True
        detail.update(self.extra)
        return detail


class UnauthenticatedError(AccessError):
    kind = ErrorKind.UNAUTHENTICATED


class ForbiddenError(AccessError):
    kind = ErrorKind.FORBIDDEN


class InvalidInputError(AccessError):
    kind = ErrorKind.VALIDATION


class NotFoundOrExpiredError(AccessError):
    kind = ErrorKind.NOT_FOUND_OR_EXPIRED


class ConflictError(AccessError):
    kind = ErrorKind.CONFLICT


class FatalError(AccessError):
    kind = ErrorKind.FATAL


class RetryableInternalError(AccessError):
    kind = ErrorKind.INTERNAL
    retryable = True


class RequestIdFilter(logging.Filter):
    """
    Injects request_id into every LogRecord as `record.request_id`.
    Safe in non-request contexts (falls back to "-").
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            record.request_id = get_request_id()
        except Exception:
            record.request_id = "-"
        return True


def install_request_id_logging(
    logger_name: str = "averon",
    *,
    include_root: bool = True,
) -> None:
    """
    Attach RequestIdFilter so logs can include %(request_id)s in the formatter.
    Call once during startup, right after logging.basicConfig().
    """
    filt = RequestIdFilter()

    if include_root:
        logging.getLogger().addFilter(filt)

    logging.getLogger(logger_name).addFilter(filt)


def log_exception_with_context(
    message: str,
    *,
    request_id: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    """
    Log the currently-handled exception with its stack trace and request id.

    The trace goes to the server log only; callers receive the sanitized
    error payload built in main.py.
    """
    rid = request_id or _safe_request_id()
    # request_id is already a LogRecord attribute (see main.py), so it cannot
    # be passed through `extra`.
    context = " ".join(f"{k}={v}" for k, v in sorted((extra or {}).items()))
    logger.exception("%s request_id=%s %s", message, rid, context)


def _safe_request_id() -> str:
    try:
        return get_request_id() or "-"
    except Exception:
        return "-"
