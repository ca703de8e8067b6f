import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from averon.db.schema_errors import is_schema_absent
from averon.models import AuditLog

logger = logging.getLogger("averon.audit")


def record_audit_event(
    db: Session,
    *,
    user_id: Optional[int],
    action: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    description: Optional[str] = None,
) -> bool:
    """
    Best-effort audit row. Must be called with no pending work on `db`:
    it commits on success and rolls back on failure.

    audit_logs is an optional table; its absence is expected in some
    deployments and never fails the calling operation.
    """
    try:
        db.add(
            AuditLog(
                user_id=user_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                description=description,
            )
        )
        db.commit()
        return True
    except SQLAlchemyError as exc:
        db.rollback()
        if is_schema_absent(exc):
            logger.debug("audit_logs unavailable; skipped action=%s", action)
        else:
            logger.warning("audit write failed action=%s error=%s", action, type(exc).__name__)
        return False
