"""Platform admin console: cross-agency billing overview and plan overrides."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from travelpoint_core.billing.plans import Plan
from travelpoint_core.errors import InvalidArgument, NotFound
from travelpoint_core.state.repository import AgencyRepository, billing_state_from_row
from travelpoint_core.state.tables import AgencyTable

from api.services.billing_service import effective_plan_for

logger = logging.getLogger(__name__)


def agency_summary(row: AgencyTable) -> dict[str, Any]:
    """Return an agency with its billing state and effective plan."""
    state = billing_state_from_row(row)
    return {
        "id": row.id,
        "name": row.name,
        "contact_email": row.contact_email,
        "plan_override": row.plan_key,
        "effective_plan": effective_plan_for(row).value,
        "billing": state.model_dump(mode="json"),
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class AdminService:
    """Operations available to platform superadmins only."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._agencies = AgencyRepository(session)

    async def list_agencies(self, limit: int = 100, offset: int = 0) -> dict[str, Any]:
        rows = await self._agencies.list_all(limit=limit, offset=offset)
        return {"agencies": [agency_summary(r) for r in rows], "total": len(rows)}

    async def set_agency_plan(self, agency_id: str, plan_key: str | None, *, changed_by: str) -> dict[str, Any]:
        """Set (or clear, with ``None``) the manual plan override of an agency.

        The override applies only while the agency has no live Stripe
        subscription.
        """
        if plan_key is not None:
            try:
                plan_key = Plan(plan_key).value
            except ValueError:
                raise InvalidArgument(f"Unknown plan '{plan_key}'", public_message="Invalid plan") from None

        row = await self._agencies.set_plan_override(agency_id, plan_key)
        if row is None:
            raise NotFound(f"Agency {agency_id} not found", public_message="Agency not found")
        logger.warning("Plan override for agency %s set to %s by %s", agency_id, plan_key, changed_by)
        return agency_summary(row)
