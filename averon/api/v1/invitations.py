from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from averon.api.deps import get_current_actor
from averon.core.config import settings
from averon.core.rate_limit import invite_issue_rate_limit, invite_redeem_rate_limit
from averon.core.security import get_current_profile
from averon.db.session import get_db
from averon.models import Invitation, Profile
from averon.services.actors import Actor
from averon.services.invitation_admin import compute_invitation_state, list_invitations, revoke_invitation
from averon.services.invitation_issuer import InvitationIssuer
from averon.services.invitation_redeemer import InvitationRedeemer

router = APIRouter(prefix="/invitations", tags=["invitations"])


# ---------- Schemas ----------

class InvitationCreateRequest(BaseModel):
    email: str
    role: str
    district_id: Optional[int] = None
    school_id: Optional[int] = None
    expires_in_hours: Optional[int] = None


class InvitationCreateResponse(BaseModel):
    id: int
    token: str  # returned exactly once
    invite_url: str
    expires_at: datetime
    role: str
    district_id: Optional[int] = None
    school_id: Optional[int] = None


class InvitationRedeemRequest(BaseModel):
    token: str


class InvitationRedeemResponse(BaseModel):
    role: str
    district_id: Optional[int] = None
    school_id: Optional[int] = None


class InvitationListItem(BaseModel):
    id: int
    email: str
    role: str
    district_id: Optional[int] = None
    school_id: Optional[int] = None
    status: Literal["pending", "redeemed", "expired", "revoked"]
    expires_at: datetime
    used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


def _list_item(inv: Invitation) -> InvitationListItem:
    return InvitationListItem(
        id=inv.id,
        email=inv.email,
        role=inv.role,
        district_id=inv.district_id,
        school_id=inv.school_id,
        status=compute_invitation_state(inv),
        expires_at=inv.expires_at,
        used_at=inv.used_at,
        revoked_at=inv.revoked_at,
        created_at=inv.created_at,
    )


def _public_base_url(request: Request) -> str:
    return settings.public_app_url or str(request.base_url)


# ---------- Routes ----------

@router.post(
    "",
    response_model=InvitationCreateResponse,
    dependencies=[Depends(invite_issue_rate_limit)],
)
def create_invitation(
    payload: InvitationCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> InvitationCreateResponse:
    issued = InvitationIssuer(db).issue(
        actor,
        email=payload.email,
        role=payload.role,
        district_id=payload.district_id,
        school_id=payload.school_id,
        expires_in_hours=payload.expires_in_hours,
        base_url=_public_base_url(request),
    )
    return InvitationCreateResponse(
        id=issued.invitation_id,
        token=issued.token,
        invite_url=issued.invite_url,
        expires_at=issued.expires_at,
        role=issued.role.value,
        district_id=issued.scope.district_id,
        school_id=issued.scope.school_id,
    )


@router.post(
    "/redeem",
    response_model=InvitationRedeemResponse,
    dependencies=[Depends(invite_redeem_rate_limit)],
)
def redeem_invitation(
    payload: InvitationRedeemRequest,
    db: Session = Depends(get_db),
    profile: Profile = Depends(get_current_profile),
) -> InvitationRedeemResponse:
    redemption = InvitationRedeemer(db).redeem(
        payload.token,
        profile_id=profile.id,
        profile_email=profile.email,
    )
    return InvitationRedeemResponse(
        role=redemption.role.value,
        district_id=redemption.district_id,
        school_id=redemption.school_id,
    )


@router.get("", response_model=List[InvitationListItem])
def get_invitations(
    limit: int = Query(default=25, ge=1, le=200),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> List[InvitationListItem]:
    return [_list_item(inv) for inv in list_invitations(db, actor, limit=limit)]


@router.post("/{invitation_id}/revoke", response_model=InvitationListItem)
def revoke(
    invitation_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> InvitationListItem:
    return _list_item(revoke_invitation(db, actor, invitation_id))
