"""
Invitation issuance.

All validation and policy checks run before anything is written. The only
mutation is one `invitations` row (plus a best-effort audit row). The raw
secret exists in memory for the duration of the call and in the returned
IssuedInvitation; it is never persisted or logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from averon.core.config import Settings, settings as default_settings
from averon.core.errors import ForbiddenError, InvalidInputError
from averon.models import District, Invitation, School
from averon.services.actors import Actor
from averon.services.audit import record_audit_event
from averon.services.invites import (
    build_invite_url,
    generate_invite_token,
    hash_invite_token,
    is_lexically_valid_email,
    normalize_email,
)
from averon.services.role_policy import (
    OrgScope,
    Role,
    can_invite,
    check_role_delegation,
    required_scope,
)

logger = logging.getLogger("averon.invitations")

_strict_email = TypeAdapter(EmailStr)


@dataclass(frozen=True)
class IssuedInvitation:
    invitation_id: int
    token: str
    invite_url: str
    expires_at: datetime
    role: Role
    scope: OrgScope


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class InvitationIssuer:
    def __init__(self, db: Session, *, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or default_settings

    # ---------- input validation ----------

    def _clean_email(self, email: str) -> str:
        raw = (email or "").strip()
        if not raw:
            raise InvalidInputError("INVITE_BAD_EMAIL", "Email is required to create an invite.")
        if not is_lexically_valid_email(raw):
            raise InvalidInputError("INVITE_BAD_EMAIL", "Invalid email address.")

        if self.settings.is_prod:
            try:
                _strict_email.validate_python(raw)
            except PydanticValidationError:
                raise InvalidInputError("INVITE_BAD_EMAIL", "Invalid email address.")

        return normalize_email(raw)

    @staticmethod
    def _clean_role(role: object) -> Role:
        parsed = Role.parse(role)
        if parsed is None:
            raise InvalidInputError(
                "INVITE_BAD_ROLE",
                "role must be one of: " + ", ".join(r.value for r in Role),
            )
        return parsed

    def _coerce_ttl_hours(self, hours: Optional[int]) -> int:
        ttl = self.settings.invite_default_ttl_hours if hours is None else hours
        try:
            ttl = int(ttl)
        except (TypeError, ValueError):
            raise InvalidInputError("INVITE_BAD_EXPIRY", "expires_in_hours must be an integer.")

        max_hours = int(self.settings.invite_max_ttl_hours)
        if ttl < 1 or ttl > max_hours:
            raise InvalidInputError(
                "INVITE_BAD_EXPIRY",
                f"expires_in_hours must be between 1 and {max_hours}.",
            )
        return ttl

    # ---------- scope ----------

    def _resolve_scope(self, district_id: Optional[int], school_id: Optional[int]) -> OrgScope:
        """
        A named school fixes the district. A district supplied alongside a
        school must agree with it, otherwise an admin of one district could
        pair their own district_id with another district's school.
        """
        if school_id is not None:
            school = self.db.query(School).filter(School.id == school_id).first()
            if school is None:
                raise InvalidInputError("INVITE_BAD_SCHOOL", "Invalid school_id")
            if district_id is not None and int(district_id) != int(school.district_id):
                raise InvalidInputError(
                    "INVITE_SCOPE_MISMATCH",
                    "school_id does not belong to the given district_id",
                )
            return OrgScope(district_id=school.district_id, school_id=school.id)

        if district_id is not None:
            district = self.db.query(District.id).filter(District.id == district_id).first()
            if district is None:
                raise InvalidInputError("INVITE_BAD_DISTRICT", "Invalid district_id")
            return OrgScope(district_id=int(district_id))

        return OrgScope()

    @staticmethod
    def _require_complete_scope(role: Role, scope: OrgScope) -> OrgScope:
        needed = required_scope(role)
        if needed == "district":
            if scope.district_id is None:
                raise InvalidInputError(
                    "INVITE_SCOPE_REQUIRED",
                    "district_id is required for district_admin invites",
                )
            return OrgScope(district_id=scope.district_id)

        if needed == "school":
            if scope.school_id is None:
                raise InvalidInputError(
                    "INVITE_SCOPE_REQUIRED",
                    "school_id is required for this invite role",
                )
            return scope

        # full_admin grants carry no scope restriction
        return OrgScope()

    # ---------- entry point ----------

    def issue(
        self,
        actor: Actor,
        *,
        email: str,
        role: object,
        district_id: Optional[int] = None,
        school_id: Optional[int] = None,
        expires_in_hours: Optional[int] = None,
        base_url: str,
    ) -> IssuedInvitation:
        invited_email = self._clean_email(email)
        target_role = self._clean_role(role)
        ttl_hours = self._coerce_ttl_hours(expires_in_hours)

        if actor.role is None:
            raise ForbiddenError("INVITER_NO_ROLE", "Inviter has no role configured")

        delegation = check_role_delegation(actor.role, target_role)
        if not delegation:
            raise ForbiddenError(delegation.reason.value, delegation.message)

        resolved = self._resolve_scope(district_id, school_id)
        target_scope = self._require_complete_scope(target_role, resolved)

        decision = can_invite(actor.role, actor.scope, target_role, target_scope)
        if not decision:
            raise ForbiddenError(decision.reason.value, decision.message)

        raw_token = generate_invite_token()
        expires_at = _now_utc() + timedelta(hours=ttl_hours)

        inv = Invitation(
            token_hash=hash_invite_token(raw_token),
            email=invited_email,
            role=target_role.value,
            district_id=target_scope.district_id,
            school_id=target_scope.school_id,
            invited_by=actor.profile_id,
            expires_at=expires_at,
            meta={
                "created_by_role": actor.role.value,
                "created_via": "invitation_api",
            },
        )
        self.db.add(inv)
        self.db.commit()
        self.db.refresh(inv)
        invitation_id = int(inv.id)

        logger.info(
            "invite issued invitation_id=%s role=%s district_id=%s school_id=%s issuer=%s ttl_hours=%s",
            invitation_id,
            target_role.value,
            target_scope.district_id,
            target_scope.school_id,
            actor.profile_id,
            ttl_hours,
        )

        record_audit_event(
            self.db,
            user_id=actor.profile_id,
            action="invitation.issued",
            entity_type="invitation",
            entity_id=invitation_id,
            description=(
                f"email={invited_email}; role={target_role.value}; "
                f"district_id={target_scope.district_id}; school_id={target_scope.school_id}; "
                f"expires_at={expires_at.isoformat()}"
            ),
        )

        return IssuedInvitation(
            invitation_id=invitation_id,
            token=raw_token,
            invite_url=build_invite_url(base_url, raw_token),
            expires_at=expires_at,
            role=target_role,
            scope=target_scope,
        )
