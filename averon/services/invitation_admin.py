from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from averon.core.errors import ConflictError, ForbiddenError, NotFoundOrExpiredError
from averon.models import Invitation
from averon.services.actors import Actor
from averon.services.audit import record_audit_event
from averon.services.role_policy import INVITABLE_ROLES, OrgScope, Role, can_manage_invitation

logger = logging.getLogger("averon.invitations")

MAX_LIST_LIMIT = 200


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc_aware(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def compute_invitation_state(inv: Invitation, now: Optional[datetime] = None) -> str:
    """
    Canonical state so callers never guess.

    Terminal states win over expiry: a redeemed invitation stays "redeemed"
    after its expires_at passes.
    """
    now = now or _now_utc()
    if inv.revoked_at is not None:
        return "revoked"
    if inv.used_at is not None:
        return "redeemed"
    expires_at = _as_utc_aware(inv.expires_at)
    if expires_at is None or expires_at <= now:
        return "expired"
    return "pending"


def _scope_of(inv: Invitation) -> OrgScope:
    return OrgScope(district_id=inv.district_id, school_id=inv.school_id)


def _require_manager(actor: Actor) -> None:
    if actor.role is None or not INVITABLE_ROLES.get(actor.role):
        raise ForbiddenError("INVITE_MANAGE_FORBIDDEN", "You do not have permission to manage invites")


def _reachable(actor: Actor, inv: Invitation) -> bool:
    role = Role.parse(inv.role)
    if role is None:
        return actor.role is Role.FULL_ADMIN
    return bool(can_manage_invitation(actor.role, actor.scope, role, _scope_of(inv)))


def list_invitations(db: Session, actor: Actor, *, limit: int = 25) -> List[Invitation]:
    """
    Most recent invitations the actor could have issued, newest first.
    """
    _require_manager(actor)
    limit = max(1, min(int(limit), MAX_LIST_LIMIT))

    q = db.query(Invitation)
    if actor.role is Role.DISTRICT_ADMIN:
        q = q.filter(Invitation.district_id.in_(sorted(actor.scope.district_ids)))
    elif actor.role is Role.SCHOOL_ADMIN:
        q = q.filter(Invitation.school_id.in_(sorted(actor.scope.school_ids)))

    # Pre-filter in SQL, then apply the delegation table row by row so the
    # role limits (e.g. school admins never see school_admin invites) hold.
    rows = q.order_by(Invitation.created_at.desc(), Invitation.id.desc()).limit(limit * 4).all()
    return [inv for inv in rows if _reachable(actor, inv)][:limit]


def revoke_invitation(db: Session, actor: Actor, invitation_id: int) -> Invitation:
    _require_manager(actor)

    inv = db.query(Invitation).filter(Invitation.id == invitation_id).first()
    if inv is None or not _reachable(actor, inv):
        # Out-of-reach invitations are reported exactly like missing ones.
        raise NotFoundOrExpiredError("INVITE_NOT_FOUND", "Invitation not found")

    if inv.used_at is not None:
        raise ConflictError("INVITE_ALREADY_USED", "Invitation has already been used")

    if inv.revoked_at is not None:
        return inv

    inv.revoked_at = _now_utc()
    db.add(inv)
    db.commit()
    db.refresh(inv)

    logger.info("invite revoked invitation_id=%s by=%s", inv.id, actor.profile_id)

    record_audit_event(
        db,
        user_id=actor.profile_id,
        action="invitation.revoked",
        entity_type="invitation",
        entity_id=int(inv.id),
        description=f"email={inv.email}; role={inv.role}",
    )
    return inv
