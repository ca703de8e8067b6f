"""
Classification of data-store failures, decided once at the data-access boundary.

Callers never inspect driver codes or messages themselves; they ask
`classify_db_error(exc)` and branch on the returned `DbErrorClass`.

- SCHEMA_ABSENT: the statement referenced a table or column that does not
  exist in this deployment's schema (Postgres 42P01 undefined_table,
  42703 undefined_column; SQLite "no such table" / "no such column").
  Optional feature tables may legitimately be missing.
- TIMEOUT: statement_timeout fired, the pool could not hand out a connection
  in time, or SQLite gave up waiting on a lock. Retryable.
- FATAL: everything else.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from sqlalchemy import exc as sa_exc

UNDEFINED_TABLE = "42P01"
UNDEFINED_COLUMN = "42703"
QUERY_CANCELED = "57014"
LOCK_NOT_AVAILABLE = "55P03"

_SCHEMA_ABSENT_CODES = {UNDEFINED_TABLE, UNDEFINED_COLUMN}
_TIMEOUT_CODES = {QUERY_CANCELED, LOCK_NOT_AVAILABLE}

_SQLITE_SCHEMA_ABSENT_MARKERS = ("no such table", "no such column", "has no column named")
_SQLITE_TIMEOUT_MARKERS = ("database is locked", "database table is locked")


class DbErrorClass(str, Enum):
    SCHEMA_ABSENT = "schema_absent"
    TIMEOUT = "timeout"
    FATAL = "fatal"


def _sqlstate(orig: object) -> Optional[str]:
    # psycopg2 exposes .pgcode, psycopg 3 exposes .sqlstate
    for attr in ("pgcode", "sqlstate"):
        code = getattr(orig, attr, None)
        if isinstance(code, str) and code:
            return code
    return None


def classify_db_error(exc: BaseException) -> DbErrorClass:
    if isinstance(exc, sa_exc.TimeoutError):
        return DbErrorClass.TIMEOUT

    if not isinstance(exc, sa_exc.DBAPIError):
        return DbErrorClass.FATAL

    orig = exc.orig
    code = _sqlstate(orig)
    if code in _SCHEMA_ABSENT_CODES:
        return DbErrorClass.SCHEMA_ABSENT
    if code in _TIMEOUT_CODES:
        return DbErrorClass.TIMEOUT

    if code is None and isinstance(exc, sa_exc.OperationalError):
        msg = str(orig).lower()
        if any(marker in msg for marker in _SQLITE_SCHEMA_ABSENT_MARKERS):
            return DbErrorClass.SCHEMA_ABSENT
        if any(marker in msg for marker in _SQLITE_TIMEOUT_MARKERS):
            return DbErrorClass.TIMEOUT

    return DbErrorClass.FATAL


def is_schema_absent(exc: BaseException) -> bool:
    return classify_db_error(exc) is DbErrorClass.SCHEMA_ABSENT
