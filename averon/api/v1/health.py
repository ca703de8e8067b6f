"""
Health endpoints.

- /health       -> lightweight liveness (no DB)
- /health/db    -> DB readiness probe (small SELECT 1)
"""

import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from averon.core.config import settings
from averon.db.session import get_db

logger = logging.getLogger("averon.health")

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", summary="Liveness probe")
def health():
    """
    Returns 200 as long as the process is up and routing works.
    Does NOT touch the database.
    """
    return {
        "status": "ok",
        "service": "averon-access",
        "environment": settings.environment,
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/db", summary="Database readiness probe")
def health_db(db: Session = Depends(get_db)):
    """
    Performs a tiny `SELECT 1`. 200 when the DB is reachable, 503 when not.
    Driver messages stay in the server log.
    """
    start = time.perf_counter()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("DB health check failed")
        raise HTTPException(
            status_code=503,
            detail={"code": "DB_UNAVAILABLE", "message": "Database unavailable", "db": "down"},
        )

    elapsed_ms = int((time.perf_counter() - start) * 1000)
    return {"status": "ok", "db": "up", "latency_ms": elapsed_ms}
