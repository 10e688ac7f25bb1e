"""Platform admin console endpoints.

All endpoints require ``ADMIN_CONSOLE`` permission (``superadmin`` role
only); agency owners and admins are rejected.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query

from api.dependencies import SessionDep, UserDep
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import AgencyListResponse, AgencySummaryResponse, SetPlanRequest
from api.services.admin_service import AdminService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/agencies", response_model=AgencyListResponse)
async def list_agencies(
    session: SessionDep,
    _role: Role = Depends(require_permission(Permission.ADMIN_CONSOLE)),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> dict[str, Any]:
    """Return agencies with their billing state and effective plan."""
    return await AdminService(session).list_agencies(limit=limit, offset=offset)


@router.put("/agencies/{agency_id}/plan", response_model=AgencySummaryResponse)
async def set_agency_plan(
    agency_id: str,
    body: SetPlanRequest,
    session: SessionDep,
    user_identity: UserDep,
    _role: Role = Depends(require_permission(Permission.ADMIN_CONSOLE)),
) -> dict[str, Any]:
    """Set or clear the manual plan override of an agency."""
    return await AdminService(session).set_agency_plan(agency_id, body.plan_key, changed_by=user_identity)
