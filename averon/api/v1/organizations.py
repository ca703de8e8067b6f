from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from averon.api.deps import get_current_actor
from averon.core.errors import ForbiddenError
from averon.db.session import get_db
from averon.services.actors import Actor
from averon.services.org_deletion import DeletionReport, OrgDeletionOrchestrator
from averon.services.role_policy import can_delete_organization

router = APIRouter(prefix="/organizations", tags=["organizations"])


# ---------- Schemas ----------

class DistrictDeleteRequest(BaseModel):
    district_id: int
    resume_from: Optional[str] = None


class SchoolDeleteRequest(BaseModel):
    school_id: int
    resume_from: Optional[str] = None


class ClassroomDeleteRequest(BaseModel):
    classroom_id: int
    reason: Optional[str] = Field(default=None, max_length=500)
    resume_from: Optional[str] = None


class AccountDeleteRequest(BaseModel):
    profile_id: int
    reason: Optional[str] = Field(default=None, max_length=500)
    resume_from: Optional[str] = None


class DeletionStepOut(BaseModel):
    name: str
    status: str
    rows: int


class DeletionResponse(BaseModel):
    success: bool
    message: str
    entity_type: str
    entity_id: int
    steps: List[DeletionStepOut]


def _require_delete_rights(actor: Actor) -> None:
    decision = can_delete_organization(actor.role)
    if not decision:
        raise ForbiddenError(decision.reason.value, decision.message)


def _response(report: DeletionReport, label: str) -> Dict[str, Any]:
    name = f" '{report.entity_name}'" if report.entity_name else ""
    return {
        "success": True,
        "message": f"{label}{name} deleted",
        "entity_type": report.entity_type,
        "entity_id": report.entity_id,
        "steps": [s.to_dict() for s in report.steps],
    }


# ---------- Routes ----------

@router.post("/district/delete", response_model=DeletionResponse)
def delete_district(
    payload: DistrictDeleteRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> Dict[str, Any]:
    """
    Hard-delete a district with every school, classroom and dependent row
    beneath it. Full admins only.
    """
    _require_delete_rights(actor)
    report = OrgDeletionOrchestrator(db).delete_district(
        payload.district_id,
        resume_from=payload.resume_from,
        actor_id=actor.profile_id,
    )
    return _response(report, "District")


@router.post("/school/delete", response_model=DeletionResponse)
def delete_school(
    payload: SchoolDeleteRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> Dict[str, Any]:
    _require_delete_rights(actor)
    report = OrgDeletionOrchestrator(db).delete_school(
        payload.school_id,
        resume_from=payload.resume_from,
        actor_id=actor.profile_id,
    )
    return _response(report, "School")


@router.post("/classroom/delete", response_model=DeletionResponse)
def delete_classroom(
    payload: ClassroomDeleteRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> Dict[str, Any]:
    _require_delete_rights(actor)
    report = OrgDeletionOrchestrator(db).delete_classroom(
        payload.classroom_id,
        resume_from=payload.resume_from,
        actor_id=actor.profile_id,
        reason=payload.reason,
    )
    return _response(report, "Classroom")


@router.post("/account/delete", response_model=DeletionResponse)
def delete_account(
    payload: AccountDeleteRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> Dict[str, Any]:
    """
    Hard-delete a user's profile, the classrooms they teach and their
    delegation records. Full admins only; an admin cannot delete themselves.
    The identity provider account is not touched.
    """
    _require_delete_rights(actor)
    report = OrgDeletionOrchestrator(db).delete_account(
        payload.profile_id,
        actor_id=actor.profile_id,
        resume_from=payload.resume_from,
        reason=payload.reason,
    )
    return _response(report, "Account")
