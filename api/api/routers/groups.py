"""Cruise group endpoints.  Creating a group is limited by the agency's plan."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends

from api.dependencies import AgencyDep, SessionDep
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import CreateGroupRequest, GroupListResponse, GroupResponse
from api.services.group_service import GroupService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/groups", tags=["groups"])


@router.get("", response_model=GroupListResponse)
async def list_groups(
    session: SessionDep,
    agency_id: AgencyDep,
    _role: Role = Depends(require_permission(Permission.READ_BOOKINGS)),
) -> dict[str, Any]:
    service = GroupService(session, agency_id=agency_id)
    return await service.list_groups()


@router.post("", response_model=GroupResponse, status_code=201)
async def create_group(
    body: CreateGroupRequest,
    session: SessionDep,
    agency_id: AgencyDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_GROUPS)),
) -> dict[str, Any]:
    """Create a group.

    Fails with 403 and an upgrade hint once the plan's group limit is
    reached.
    """
    service = GroupService(session, agency_id=agency_id)
    return await service.create_group(body.name, ship_name=body.ship_name, sail_date=body.sail_date)
