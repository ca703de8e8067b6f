"""
Shared API dependencies.

`get_current_actor` turns the authenticated profile into an Actor: its role
plus every district and school it administers or belongs to.
"""

from __future__ import annotations

from fastapi import Depends
from sqlalchemy.orm import Session

from averon.core.security import get_current_profile
from averon.db.session import get_db
from averon.models import Profile
from averon.services.actors import Actor, resolve_actor


def get_current_actor(
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
) -> Actor:
    return resolve_actor(db, profile)
