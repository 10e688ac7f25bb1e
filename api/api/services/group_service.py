"""Cruise group management with plan-based group limits."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from travelpoint_core.billing.plans import PLAN_LABELS, Plan, can_create_group, get_plan_limits
from travelpoint_core.errors import InvalidArgument, NotFound, PermissionDenied
from travelpoint_core.state.repository import AgencyRepository, GroupRepository
from travelpoint_core.state.tables import GroupTable

from api.services.billing_service import effective_plan_for

logger = logging.getLogger(__name__)


def _group_to_dict(row: GroupTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "ship_name": row.ship_name,
        "sail_date": row.sail_date.isoformat() if row.sail_date else None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class GroupService:
    """Groups of a single agency.

    Parameters
    ----------
    session:
        Active database session.
    agency_id:
        The agency that owns the groups.
    """

    def __init__(self, session: AsyncSession, *, agency_id: str) -> None:
        self._session = session
        self._agency_id = agency_id
        self._groups = GroupRepository(session, agency_id)

    async def list_groups(self) -> dict[str, Any]:
        rows = await self._groups.list_all()
        return {"groups": [_group_to_dict(r) for r in rows], "total": len(rows)}

    async def create_group(
        self,
        name: str,
        *,
        ship_name: str | None = None,
        sail_date: date | None = None,
    ) -> dict[str, Any]:
        """Create a group if the agency's effective plan allows another one.

        Raises
        ------
        PermissionDenied
            The plan's ``max_groups`` limit is reached.
        """
        if not name or not name.strip():
            raise InvalidArgument("Group without a name", public_message="Group name is required")

        agency = await AgencyRepository(self._session).get(self._agency_id)
        if agency is None:
            raise NotFound(f"Agency {self._agency_id} not found", public_message="Agency not found")

        plan = effective_plan_for(agency)
        current = await self._groups.count()
        if not can_create_group(plan, current):
            limit = get_plan_limits(plan).max_groups
            raise PermissionDenied(
                f"Agency {self._agency_id} has {current} groups; plan '{plan.value}' allows {limit}",
                public_message=(
                    f"The {PLAN_LABELS[plan]} plan allows {limit} group(s). "
                    f"Upgrade to {PLAN_LABELS[Plan.PRO]} for unlimited groups."
                ),
            )

        row = await self._groups.create(name, ship_name=ship_name, sail_date=sail_date)
        logger.info("Group %s created for agency %s (%d/%s)", row.id, self._agency_id, current + 1, plan.value)
        return _group_to_dict(row)
