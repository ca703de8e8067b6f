"""
Role hierarchy policy.

Pure and stateless: every decision is a function of (actor role, actor scope,
target role, target scope). The delegation table below is the single source
of truth for who may grant which role. Issuance, revocation and any UI
listing must consult it instead of re-deriving rules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, Optional


class Role(str, Enum):
    FULL_ADMIN = "full_admin"
    DISTRICT_ADMIN = "district_admin"
    SCHOOL_ADMIN = "school_admin"
    TEACHER = "teacher"
    STUDENT = "student"

    @property
    def rank(self) -> int:
        return _RANK[self]

    @classmethod
    def parse(cls, value: object) -> Optional["Role"]:
        if isinstance(value, Role):
            return value
        raw = (str(value).strip().lower() if value is not None else "")
        try:
            return cls(raw)
        except ValueError:
            return None


_RANK = {
    Role.FULL_ADMIN: 5,
    Role.DISTRICT_ADMIN: 4,
    Role.SCHOOL_ADMIN: 3,
    Role.TEACHER: 2,
    Role.STUDENT: 1,
}

SCHOOL_SCOPED_ROLES: FrozenSet[Role] = frozenset({Role.SCHOOL_ADMIN, Role.TEACHER, Role.STUDENT})

# Delegation table: actor role -> roles it may invite.
# Not derived from rank: a district admin outranks a school admin but still
# cannot mint district admins.
INVITABLE_ROLES: dict[Role, FrozenSet[Role]] = {
    Role.FULL_ADMIN: frozenset(Role),
    Role.DISTRICT_ADMIN: frozenset({Role.SCHOOL_ADMIN, Role.TEACHER, Role.STUDENT}),
    Role.SCHOOL_ADMIN: frozenset({Role.TEACHER, Role.STUDENT}),
    Role.TEACHER: frozenset(),
    Role.STUDENT: frozenset(),
}


@dataclass(frozen=True)
class OrgScope:
    """Target scope of a grant: a district and/or a school."""

    district_id: Optional[int] = None
    school_id: Optional[int] = None


@dataclass(frozen=True)
class ActorScope:
    """
    Everything an actor administers or belongs to.

    A district admin can be assigned to several districts and a school admin
    to several schools, so the actor side is a set rather than a single
    OrgScope.
    """

    district_ids: FrozenSet[int] = field(default_factory=frozenset)
    school_ids: FrozenSet[int] = field(default_factory=frozenset)

    @classmethod
    def of(
        cls,
        district_ids: Iterable[Optional[int]] = (),
        school_ids: Iterable[Optional[int]] = (),
    ) -> "ActorScope":
        return cls(
            district_ids=frozenset(d for d in district_ids if d is not None),
            school_ids=frozenset(s for s in school_ids if s is not None),
        )

    def covers_district(self, district_id: Optional[int]) -> bool:
        return district_id is not None and district_id in self.district_ids

    def covers_school(self, school_id: Optional[int]) -> bool:
        return school_id is not None and school_id in self.school_ids


class DenyReason(str, Enum):
    NO_ROLE = "NO_ROLE"
    ROLE_CANNOT_INVITE = "ROLE_CANNOT_INVITE"
    FULL_ADMIN_ONLY_FULL_ADMIN = "FULL_ADMIN_ONLY_FULL_ADMIN"
    FULL_ADMIN_ONLY_DISTRICT_ADMIN = "FULL_ADMIN_ONLY_DISTRICT_ADMIN"
    DISTRICT_ADMIN_ROLE_LIMIT = "DISTRICT_ADMIN_ROLE_LIMIT"
    SCHOOL_ADMIN_ROLE_LIMIT = "SCHOOL_ADMIN_ROLE_LIMIT"
    OUTSIDE_ACTOR_DISTRICT = "OUTSIDE_ACTOR_DISTRICT"
    OUTSIDE_ACTOR_SCHOOL = "OUTSIDE_ACTOR_SCHOOL"
    FULL_ADMIN_REQUIRED = "FULL_ADMIN_REQUIRED"

    @property
    def message(self) -> str:
        return _DENY_MESSAGES[self]


_DENY_MESSAGES = {
    DenyReason.NO_ROLE: "Inviter has no role configured",
    DenyReason.ROLE_CANNOT_INVITE: "You do not have permission to create invites",
    DenyReason.FULL_ADMIN_ONLY_FULL_ADMIN: "Only full admins may invite full admins",
    DenyReason.FULL_ADMIN_ONLY_DISTRICT_ADMIN: "Only full admins may invite district admins",
    DenyReason.DISTRICT_ADMIN_ROLE_LIMIT: "District admins can only invite school admins, teachers, or students",
    DenyReason.SCHOOL_ADMIN_ROLE_LIMIT: "School admins can only invite teachers or students",
    DenyReason.OUTSIDE_ACTOR_DISTRICT: "District admins can only invite users within their district",
    DenyReason.OUTSIDE_ACTOR_SCHOOL: "School admins can only invite users for their own school",
    DenyReason.FULL_ADMIN_REQUIRED: "Full admin access required",
}


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason: Optional[DenyReason] = None

    def __bool__(self) -> bool:
        return self.allowed

    @property
    def message(self) -> str:
        return self.reason.message if self.reason else ""


ALLOW = PolicyDecision(True)


def _deny(reason: DenyReason) -> PolicyDecision:
    return PolicyDecision(False, reason)


def required_scope(role: Role) -> Optional[str]:
    """Which scope level a grant of `role` must name: "school", "district" or None."""
    if role in SCHOOL_SCOPED_ROLES:
        return "school"
    if role is Role.DISTRICT_ADMIN:
        return "district"
    return None


def check_role_delegation(actor_role: Optional[Role], target_role: Role) -> PolicyDecision:
    """Role-only half of the table. Scope is not consulted."""
    if actor_role is None:
        return _deny(DenyReason.NO_ROLE)

    if target_role in INVITABLE_ROLES[actor_role]:
        return ALLOW

    if target_role is Role.FULL_ADMIN:
        return _deny(DenyReason.FULL_ADMIN_ONLY_FULL_ADMIN)
    if target_role is Role.DISTRICT_ADMIN:
        return _deny(DenyReason.FULL_ADMIN_ONLY_DISTRICT_ADMIN)
    if actor_role is Role.SCHOOL_ADMIN:
        return _deny(DenyReason.SCHOOL_ADMIN_ROLE_LIMIT)
    if actor_role is Role.DISTRICT_ADMIN:
        return _deny(DenyReason.DISTRICT_ADMIN_ROLE_LIMIT)
    return _deny(DenyReason.ROLE_CANNOT_INVITE)


def can_invite(
    actor_role: Optional[Role],
    actor_scope: ActorScope,
    target_role: Role,
    target_scope: OrgScope,
) -> PolicyDecision:
    decision = check_role_delegation(actor_role, target_role)
    if not decision:
        return decision

    if actor_role is Role.FULL_ADMIN:
        return ALLOW

    if actor_role is Role.DISTRICT_ADMIN:
        if not actor_scope.covers_district(target_scope.district_id):
            return _deny(DenyReason.OUTSIDE_ACTOR_DISTRICT)
        return ALLOW

    if actor_role is Role.SCHOOL_ADMIN:
        if not actor_scope.covers_school(target_scope.school_id):
            return _deny(DenyReason.OUTSIDE_ACTOR_SCHOOL)
        return ALLOW

    return _deny(DenyReason.ROLE_CANNOT_INVITE)


def can_manage_invitation(
    actor_role: Optional[Role],
    actor_scope: ActorScope,
    invitation_role: Role,
    invitation_scope: OrgScope,
) -> PolicyDecision:
    """
    Listing and revoking an invitation requires the same authority as issuing it.
    """
    return can_invite(actor_role, actor_scope, invitation_role, invitation_scope)


def can_delete_organization(actor_role: Optional[Role]) -> PolicyDecision:
    if actor_role is Role.FULL_ADMIN:
        return ALLOW
    return _deny(DenyReason.FULL_ADMIN_REQUIRED)
