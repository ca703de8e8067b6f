"""
Invitation redemption.

pending -> redeemed happens in one data-store transaction:

    UPDATE invitations SET used_at = :now, used_by = :profile
     WHERE id = :id AND used_at IS NULL AND revoked_at IS NULL AND expires_at > :now

The affected row count is the compare-and-swap result. Only the caller whose
UPDATE matched goes on to apply the grant; a concurrent caller sees zero rows
and gets a ConflictError. The grant (profile role/scope and delegation
record) is written in the same transaction, so a failure leaves the token
unused.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from averon.core.errors import (
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    NotFoundOrExpiredError,
)
from averon.models import DistrictAdmin, Invitation, Profile, SchoolAdmin
from averon.services.audit import record_audit_event
from averon.services.invites import hash_invite_token, is_well_formed_token, normalize_email
from averon.services.role_policy import Role, SCHOOL_SCOPED_ROLES

logger = logging.getLogger("averon.invitations")


@dataclass(frozen=True)
class Redemption:
    invitation_id: int
    role: Role
    district_id: Optional[int]
    school_id: Optional[int]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc_aware(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone=True columns
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class InvitationRedeemer:
    def __init__(self, db: Session):
        self.db = db

    def _find_by_hash(self, token_hash: str) -> Optional[Invitation]:
        return self.db.query(Invitation).filter(Invitation.token_hash == token_hash).first()

    def _claim(self, invitation_id: int, *, profile_id: int, now: datetime) -> bool:
        result = self.db.execute(
            update(Invitation)
            .where(
                Invitation.id == invitation_id,
                Invitation.used_at.is_(None),
                Invitation.revoked_at.is_(None),
                Invitation.expires_at > now,
            )
            .values(used_at=now, used_by=profile_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def _grant_scope(inv: Invitation, role: Role) -> tuple[Optional[int], Optional[int]]:
        """
        Returns (district_id, school_id) to apply to the profile, refusing
        rows whose stored scope cannot satisfy the role.
        """
        if role in SCHOOL_SCOPED_ROLES:
            if inv.school_id is None:
                raise InvalidInputError(
                    "INVITE_SCOPE_MISSING",
                    f"Invite is missing school assignment for role {role.value}",
                )
            return inv.district_id, inv.school_id

        if role is Role.DISTRICT_ADMIN:
            if inv.district_id is None:
                raise InvalidInputError(
                    "INVITE_SCOPE_MISSING",
                    "Invite is missing district assignment for district_admin role",
                )
            return inv.district_id, None

        return None, None

    def _apply_grant(
        self,
        inv: Invitation,
        *,
        role: Role,
        profile_id: int,
        district_id: Optional[int],
        school_id: Optional[int],
    ) -> None:
        profile = self.db.query(Profile).filter(Profile.id == profile_id).first()
        if profile is None:
            raise NotFoundOrExpiredError("PROFILE_NOT_FOUND", "Redeeming account has no profile")

        profile.role = role.value
        profile.district_id = district_id
        profile.school_id = school_id
        self.db.add(profile)

        if role is Role.SCHOOL_ADMIN:
            exists = (
                self.db.query(SchoolAdmin.id)
                .filter(SchoolAdmin.admin_id == profile_id, SchoolAdmin.school_id == school_id)
                .first()
            )
            if exists is None:
                self.db.add(SchoolAdmin(admin_id=profile_id, school_id=school_id, assigned_by=inv.invited_by))

        if role is Role.DISTRICT_ADMIN:
            exists = (
                self.db.query(DistrictAdmin.id)
                .filter(DistrictAdmin.admin_id == profile_id, DistrictAdmin.district_id == district_id)
                .first()
            )
            if exists is None:
                self.db.add(
                    DistrictAdmin(admin_id=profile_id, district_id=district_id, assigned_by=inv.invited_by)
                )

    def redeem(self, raw_token: str, *, profile_id: int, profile_email: Optional[str]) -> Redemption:
        token = (raw_token or "").strip()
        if not token:
            raise InvalidInputError("INVITE_TOKEN_REQUIRED", "Token is required")
        if not is_well_formed_token(token):
            raise InvalidInputError("INVITE_BAD_TOKEN", "Invalid invitation token")

        # Digest-to-digest lookup only; the raw secret is never compared to stored values.
        inv = self._find_by_hash(hash_invite_token(token))
        if inv is None:
            raise NotFoundOrExpiredError("INVITE_NOT_FOUND", "Invalid invitation token")

        if inv.revoked_at is not None:
            raise NotFoundOrExpiredError("INVITE_REVOKED", "Invitation is no longer active")

        if inv.used_at is not None:
            raise NotFoundOrExpiredError("INVITE_ALREADY_USED", "Invitation has already been used")

        now = _now_utc()
        expires_at = _as_utc_aware(inv.expires_at)
        if expires_at is None or expires_at <= now:
            raise NotFoundOrExpiredError("INVITE_EXPIRED", "Invitation token has expired")

        email = normalize_email(profile_email or "")
        if not email:
            raise InvalidInputError("ACCOUNT_EMAIL_MISSING", "Email missing from account")

        if normalize_email(inv.email) != email:
            raise ForbiddenError("INVITE_EMAIL_MISMATCH", "This invite is for a different email address")

        role = Role.parse(inv.role)
        if role is None:
            raise InvalidInputError("INVITE_BAD_ROLE", "Invite carries an unknown role")

        district_id, school_id = self._grant_scope(inv, role)
        invitation_id = int(inv.id)
        invited_by = inv.invited_by

        try:
            if not self._claim(invitation_id, profile_id=profile_id, now=now):
                raise ConflictError("INVITE_ALREADY_USED", "Invitation has already been used")

            self._apply_grant(
                inv,
                role=role,
                profile_id=profile_id,
                district_id=district_id,
                school_id=school_id,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "invite redeemed invitation_id=%s role=%s district_id=%s school_id=%s profile_id=%s invited_by=%s",
            invitation_id,
            role.value,
            district_id,
            school_id,
            profile_id,
            invited_by,
        )

        record_audit_event(
            self.db,
            user_id=profile_id,
            action="invitation.redeemed",
            entity_type="invitation",
            entity_id=invitation_id,
            description=f"role={role.value}; district_id={district_id}; school_id={school_id}",
        )

        return Redemption(
            invitation_id=invitation_id,
            role=role,
            district_id=district_id,
            school_id=school_id,
        )
