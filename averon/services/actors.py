"""Resolve who is acting: role plus the organizational scope they hold."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from averon.models import DistrictAdmin, Profile, School, SchoolAdmin
from averon.services.role_policy import SCHOOL_SCOPED_ROLES, ActorScope, Role


@dataclass(frozen=True)
class Actor:
    profile_id: int
    email: str
    role: Optional[Role]
    scope: ActorScope


def resolve_actor(db: Session, profile: Profile) -> Actor:
    """
    Build the actor from the profile plus its delegation records.

    - district_admin: only the districts in district_admins
    - school_admin: every school in school_admins, plus the profile's own
      school/district back-references
    - teacher/student: the profile's own school/district back-references
    - full_admin and unknown roles: no scope (full_admin needs none)
    """
    role = Role.parse(profile.role)

    district_ids: List[Optional[int]] = []
    school_ids: List[Optional[int]] = []

    if role is Role.DISTRICT_ADMIN:
        rows = db.query(DistrictAdmin.district_id).filter(DistrictAdmin.admin_id == profile.id).all()
        district_ids.extend(did for (did,) in rows)

    elif role in SCHOOL_SCOPED_ROLES:
        district_ids.append(profile.district_id)
        school_ids.append(profile.school_id)

        if role is Role.SCHOOL_ADMIN:
            rows = db.query(SchoolAdmin.school_id).filter(SchoolAdmin.admin_id == profile.id).all()
            school_ids.extend(sid for (sid,) in rows)

        if profile.school_id is not None and profile.district_id is None:
            school = db.query(School.district_id).filter(School.id == profile.school_id).first()
            if school is not None:
                district_ids.append(school[0])

    return Actor(
        profile_id=int(profile.id),
        email=profile.email or "",
        role=role,
        scope=ActorScope.of(district_ids=district_ids, school_ids=school_ids),
    )
