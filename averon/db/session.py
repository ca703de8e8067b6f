import time
import logging
from typing import Any, Dict

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from averon.core.config import settings
from averon.core.request_context import get_request_id, record_db_query

logger = logging.getLogger("averon.db")

DATABASE_URL = settings.database_url or "sqlite:///./averon.db"


def _engine_options(url: str) -> Dict[str, Any]:
    """
    Every statement must be bounded in time.

    - Postgres: server-side statement_timeout on each connection (psycopg2 `options`).
    - SQLite: driver busy timeout (seconds).
    """
    if url.startswith("sqlite"):
        return {
            "connect_args": {
                "check_same_thread": False,
                "timeout": max(1.0, settings.db_statement_timeout_ms / 1000.0),
            },
        }

    return {
        "connect_args": {"options": f"-c statement_timeout={int(settings.db_statement_timeout_ms)}"},
        "pool_pre_ping": True,
        "pool_timeout": settings.db_pool_timeout_seconds,
    }


engine = create_engine(DATABASE_URL, future=True, **_engine_options(DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)

# ---- DB observability (SQLAlchemy event hooks) ----

SLOW_QUERY_MS = float(settings.slow_db_query_ms)
LOG_DB_SQL = bool(settings.log_db_sql)


def _sql_head(statement: str) -> str:
    if not statement:
        return ""
    # Collapse whitespace + trim. No params logged (they may hold token hashes).
    head = " ".join(statement.split())
    return head[:240]


@event.listens_for(engine, "before_cursor_execute")
def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    context._averon_query_start = time.perf_counter()


@event.listens_for(engine, "after_cursor_execute")
def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    start = getattr(context, "_averon_query_start", None)
    if start is None:
        return

    duration_ms = (time.perf_counter() - start) * 1000.0
    head = _sql_head(statement)

    record_db_query(duration_ms, head)

    if duration_ms >= SLOW_QUERY_MS:
        rid = get_request_id()
        if LOG_DB_SQL:
            logger.warning(
                "slow_db_query request_id=%s duration_ms=%.2f sql=%s",
                rid,
                duration_ms,
                head,
            )
        else:
            logger.warning(
                "slow_db_query request_id=%s duration_ms=%.2f",
                rid,
                duration_ms,
            )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
