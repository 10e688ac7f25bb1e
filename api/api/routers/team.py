"""Team endpoints: members and invitations.

Creating and revoking invites requires ``MANAGE_TEAM`` (owner or admin).
Accepting an invite only requires an authenticated caller with an email;
the caller joins the agency named in the invite link.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query

from api.dependencies import AgencyDep, CallerDep, SessionDep, SettingsDep, UserDep
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import (
    AcceptInviteRequest,
    AcceptInviteResponse,
    CreateInviteRequest,
    CreateInviteResponse,
    InviteListResponse,
    OkResponse,
    TeamMembersResponse,
)
from api.services.team_service import TeamService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/team", tags=["team"])


@router.get("/members", response_model=TeamMembersResponse)
async def list_members(
    session: SessionDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    _role: Role = Depends(require_permission(Permission.READ_TEAM)),
) -> dict[str, Any]:
    service = TeamService(session, settings, agency_id=agency_id)
    return await service.list_members()


@router.get("/invites", response_model=InviteListResponse)
async def list_invites(
    session: SessionDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    status: str | None = Query(default=None, description="Filter by invite status."),
    _role: Role = Depends(require_permission(Permission.READ_TEAM)),
) -> dict[str, Any]:
    service = TeamService(session, settings, agency_id=agency_id)
    return await service.list_invites(status=status)


@router.post("/invites", response_model=CreateInviteResponse, status_code=201)
async def create_invite(
    body: CreateInviteRequest,
    session: SessionDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    user_identity: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_TEAM)),
) -> dict[str, str]:
    """Invite a new admin or agent.

    The response carries the only copy of the invite link.
    """
    service = TeamService(session, settings, agency_id=agency_id)
    return await service.create_invite(body.email, body.role, invited_by=user_identity)


@router.post("/invites/accept", response_model=AcceptInviteResponse)
async def accept_invite(
    body: AcceptInviteRequest,
    session: SessionDep,
    settings: SettingsDep,
    caller: CallerDep,
) -> dict[str, Any]:
    service = TeamService(session, settings, agency_id=body.agency_id)
    return await service.accept_invite(
        body.invite_id,
        body.token,
        user_id=caller.uid,
        user_email=caller.email,
    )


@router.delete("/invites/{invite_id}", response_model=OkResponse)
async def revoke_invite(
    invite_id: str,
    session: SessionDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    user_identity: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_TEAM)),
) -> dict[str, Any]:
    service = TeamService(session, settings, agency_id=agency_id)
    return await service.revoke_invite(invite_id, revoked_by=user_identity)
