"""Repository classes providing CRUD access to the TravelPoint state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
calling ``session.commit()``.  Tenant-scoped repositories also take an
``agency_id`` and never return rows belonging to another agency.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from travelpoint_core.billing.state_machine import BillingState, BillingStatus
from travelpoint_core.ledger.models import BookingLedger, CabinAccount
from travelpoint_core.state.tables import (
    AgencyTable,
    BookingTable,
    GroupTable,
    MemberTable,
    PaymentRequestTable,
    PaymentTable,
    StripeEventTable,
    TeamInviteTable,
    UserTable,
)

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Agencies
# ---------------------------------------------------------------------------


def billing_state_from_row(row: AgencyTable) -> BillingState:
    """Build a :class:`BillingState` from the agency's ``billing_*`` columns."""
    try:
        status = BillingStatus(row.billing_status or "none")
    except ValueError:
        logger.warning("Agency %s has unknown billing status '%s'", row.id, row.billing_status)
        status = BillingStatus.NONE
    return BillingState(
        stripe_customer_id=row.billing_stripe_customer_id,
        subscription_id=row.billing_subscription_id,
        status=status,
        plan_key=row.billing_plan_key,
        price_id=row.billing_price_id,
        current_period_end=row.billing_current_period_end,
        trial_end=row.billing_trial_end,
        cancel_at_period_end=bool(row.billing_cancel_at_period_end),
    )


def write_billing_state(row: AgencyTable, state: BillingState) -> bool:
    """Copy *state* onto *row*.  Returns ``True`` if anything changed."""
    values: dict[str, Any] = {
        "billing_stripe_customer_id": state.stripe_customer_id,
        "billing_subscription_id": state.subscription_id,
        "billing_status": state.status.value,
        "billing_plan_key": state.plan_key,
        "billing_price_id": state.price_id,
        "billing_current_period_end": state.current_period_end,
        "billing_trial_end": state.trial_end,
        "billing_cancel_at_period_end": state.cancel_at_period_end,
    }
    changed = False
    for column, value in values.items():
        if getattr(row, column) != value:
            setattr(row, column, value)
            changed = True
    if changed:
        row.billing_updated_at = datetime.now(UTC)
    return changed


class AgencyRepository:
    """CRUD operations for the ``agencies`` table.

    Not tenant-scoped: used by the webhook (which resolves the agency from
    the event), the admin console and the schema reconciler.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, agency_id: str) -> AgencyTable | None:
        result = await self._session.execute(select(AgencyTable).where(AgencyTable.id == agency_id))
        return result.scalar_one_or_none()

    async def get_by_customer_id(self, customer_id: str) -> AgencyTable | None:
        """Fetch the agency linked to a Stripe customer id."""
        result = await self._session.execute(
            select(AgencyTable).where(AgencyTable.billing_stripe_customer_id == customer_id)
        )
        return result.scalar_one_or_none()

    async def get_oldest(self) -> AgencyTable | None:
        """Return the first agency ever created (the legacy default tenant)."""
        stmt = select(AgencyTable).order_by(AgencyTable.created_at.asc(), AgencyTable.id.asc()).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self, limit: int = 100, offset: int = 0) -> list[AgencyTable]:
        stmt = select(AgencyTable).order_by(AgencyTable.created_at.asc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def create(
        self,
        name: str,
        *,
        agency_id: str | None = None,
        billing_email: str | None = None,
        contact_email: str | None = None,
        created_at: datetime | None = None,
    ) -> AgencyTable:
        row = AgencyTable(
            id=agency_id or _new_id(),
            name=name.strip(),
            billing_email=billing_email,
            contact_email=contact_email,
            billing_status=BillingStatus.NONE.value,
            billing_cancel_at_period_end=False,
        )
        if created_at is not None:
            row.created_at = created_at
        self._session.add(row)
        await self._session.flush()
        return row

    async def set_plan_override(self, agency_id: str, plan_key: str | None) -> AgencyTable | None:
        row = await self.get(agency_id)
        if row is None:
            return None
        row.plan_key = plan_key
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


class GroupRepository:
    """CRUD operations for the ``groups`` table, scoped to one agency."""

    def __init__(self, session: AsyncSession, agency_id: str) -> None:
        self._session = session
        self._agency_id = agency_id

    async def list_all(self) -> list[GroupTable]:
        stmt = select(GroupTable).where(GroupTable.agency_id == self._agency_id).order_by(GroupTable.created_at.asc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count(self) -> int:
        stmt = select(func.count()).select_from(GroupTable).where(GroupTable.agency_id == self._agency_id)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def get(self, group_id: str) -> GroupTable | None:
        stmt = select(GroupTable).where(GroupTable.agency_id == self._agency_id, GroupTable.id == group_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, name: str, *, ship_name: str | None = None, sail_date: date | None = None) -> GroupTable:
        row = GroupTable(
            id=_new_id(),
            agency_id=self._agency_id,
            name=name.strip(),
            ship_name=ship_name,
            sail_date=sail_date,
        )
        self._session.add(row)
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


def ledger_from_row(row: BookingTable) -> BookingLedger:
    """Deserialise a booking row into a :class:`BookingLedger`."""
    return BookingLedger(
        cabins=[CabinAccount.model_validate(c) for c in (row.cabin_accounts or [])],
        unattributed_paid_cad=Decimal(row.unattributed_paid_cad or 0),
        subtotal_cad_global=Decimal(row.subtotal_cad_global or 0),
        gratuities_cad_global=Decimal(row.gratuities_cad_global or 0),
        total_cad_global=Decimal(row.total_cad_global or 0),
        paid_cad_global=Decimal(row.paid_cad_global or 0),
        balance_cad_global=Decimal(row.balance_cad_global or 0),
    )


def write_ledger(row: BookingTable, ledger: BookingLedger) -> None:
    """Serialise *ledger* onto *row* (cabins as JSON, aggregates as columns)."""
    row.cabin_accounts = [c.model_dump(mode="json") for c in ledger.cabins]
    row.unattributed_paid_cad = ledger.unattributed_paid_cad
    row.subtotal_cad_global = ledger.subtotal_cad_global
    row.gratuities_cad_global = ledger.gratuities_cad_global
    row.total_cad_global = ledger.total_cad_global
    row.paid_cad_global = ledger.paid_cad_global
    row.balance_cad_global = ledger.balance_cad_global


class BookingRepository:
    """CRUD operations for the ``bookings`` table, scoped to one agency."""

    def __init__(self, session: AsyncSession, agency_id: str) -> None:
        self._session = session
        self._agency_id = agency_id

    async def get(self, booking_id: str) -> BookingTable | None:
        stmt = select(BookingTable).where(BookingTable.agency_id == self._agency_id, BookingTable.id == booking_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self, group_id: str | None = None, limit: int = 200, offset: int = 0) -> list[BookingTable]:
        stmt = select(BookingTable).where(BookingTable.agency_id == self._agency_id)
        if group_id is not None:
            stmt = stmt.where(BookingTable.group_id == group_id)
        stmt = stmt.order_by(BookingTable.booking_code.asc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def create(
        self,
        *,
        group_id: str,
        booking_code: str,
        display_name: str,
        email: str | None,
        ledger: BookingLedger,
    ) -> BookingTable:
        row = BookingTable(
            id=_new_id(),
            agency_id=self._agency_id,
            group_id=group_id,
            booking_code=booking_code.strip(),
            display_name=display_name.strip(),
            email=email.lower().strip() if email else None,
        )
        write_ledger(row, ledger)
        self._session.add(row)
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# Payments and payment requests
# ---------------------------------------------------------------------------


class PaymentRepository:
    """Append-only access to the ``payments`` table."""

    def __init__(self, session: AsyncSession, agency_id: str) -> None:
        self._session = session
        self._agency_id = agency_id

    async def create(
        self,
        *,
        booking_id: str,
        amount_cad: Decimal,
        target_cabin_index: int | None,
        target_cabin_number: str | None,
        method: str | None = None,
        reference: str | None = None,
        note: str | None = None,
        created_by: str | None = None,
        from_request_id: str | None = None,
    ) -> PaymentTable:
        row = PaymentTable(
            id=_new_id(),
            agency_id=self._agency_id,
            booking_id=booking_id,
            amount_cad=amount_cad,
            target_cabin_index=target_cabin_index,
            target_cabin_number=target_cabin_number,
            method=method,
            reference=reference,
            note=note,
            created_by=created_by,
            from_request_id=from_request_id,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_booking(self, booking_id: str) -> list[PaymentTable]:
        stmt = (
            select(PaymentTable)
            .where(PaymentTable.agency_id == self._agency_id, PaymentTable.booking_id == booking_id)
            .order_by(PaymentTable.applied_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class PaymentRequestRepository:
    """CRUD operations for the ``payment_requests`` table."""

    def __init__(self, session: AsyncSession, agency_id: str) -> None:
        self._session = session
        self._agency_id = agency_id

    async def create(
        self,
        *,
        booking_id: str,
        amount_cad: Decimal,
        target_cabin_index: int | None,
        method: str | None = None,
        reference: str | None = None,
        note: str | None = None,
        submitted_by: str | None = None,
    ) -> PaymentRequestTable:
        row = PaymentRequestTable(
            id=_new_id(),
            agency_id=self._agency_id,
            booking_id=booking_id,
            amount_cad=amount_cad,
            target_cabin_index=target_cabin_index,
            method=method,
            reference=reference,
            note=note,
            submitted_by=submitted_by,
            status="Pending",
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, booking_id: str, request_id: str) -> PaymentRequestTable | None:
        stmt = select(PaymentRequestTable).where(
            PaymentRequestTable.agency_id == self._agency_id,
            PaymentRequestTable.booking_id == booking_id,
            PaymentRequestTable.id == request_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_booking(self, booking_id: str) -> list[PaymentRequestTable]:
        stmt = (
            select(PaymentRequestTable)
            .where(
                PaymentRequestTable.agency_id == self._agency_id,
                PaymentRequestTable.booking_id == booking_id,
            )
            .order_by(PaymentRequestTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Users and team
# ---------------------------------------------------------------------------


class UserRepository:
    """CRUD operations for the ``users`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, user_id: str) -> UserTable | None:
        result = await self._session.execute(select(UserTable).where(UserTable.id == user_id))
        return result.scalar_one_or_none()

    async def upsert(
        self,
        user_id: str,
        *,
        email: str,
        agency_id: str | None,
        role: str,
        display_name: str | None = None,
    ) -> UserTable:
        """Create the user or update its agency and role."""
        row = await self.get(user_id)
        if row is None:
            row = UserTable(
                id=user_id,
                email=email.lower().strip(),
                agency_id=agency_id,
                role=role,
                display_name=display_name,
            )
            self._session.add(row)
        else:
            row.agency_id = agency_id
            row.role = role
            if display_name:
                row.display_name = display_name
        await self._session.flush()
        return row


class MemberRepository:
    """CRUD operations for the ``members`` table, scoped to one agency."""

    def __init__(self, session: AsyncSession, agency_id: str) -> None:
        self._session = session
        self._agency_id = agency_id

    async def get(self, user_id: str) -> MemberTable | None:
        stmt = select(MemberTable).where(MemberTable.agency_id == self._agency_id, MemberTable.user_id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self) -> list[MemberTable]:
        stmt = select(MemberTable).where(MemberTable.agency_id == self._agency_id).order_by(MemberTable.created_at.asc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def upsert_active(self, user_id: str, *, email: str, role: str, invite_id: str | None = None) -> MemberTable:
        """Create an active membership or reactivate a disabled one."""
        row = await self.get(user_id)
        if row is None:
            row = MemberTable(
                agency_id=self._agency_id,
                user_id=user_id,
                email=email.lower().strip(),
                role=role,
                status="active",
                invite_id=invite_id,
            )
            self._session.add(row)
        else:
            row.role = role
            row.status = "active"
            row.invite_id = invite_id
        await self._session.flush()
        return row


class TeamInviteRepository:
    """CRUD operations for the ``team_invites`` table, scoped to one agency."""

    def __init__(self, session: AsyncSession, agency_id: str) -> None:
        self._session = session
        self._agency_id = agency_id

    async def create(
        self,
        *,
        invite_id: str,
        email: str,
        role: str,
        token_hash: str,
        expires_at: datetime,
        created_by: str,
    ) -> TeamInviteTable:
        row = TeamInviteTable(
            id=invite_id,
            agency_id=self._agency_id,
            email=email,
            role=role,
            status="pending",
            token_hash=token_hash,
            expires_at=expires_at,
            created_by=created_by,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, invite_id: str) -> TeamInviteTable | None:
        stmt = select(TeamInviteTable).where(
            TeamInviteTable.agency_id == self._agency_id,
            TeamInviteTable.id == invite_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_pending(self, email: str) -> TeamInviteTable | None:
        stmt = (
            select(TeamInviteTable)
            .where(
                TeamInviteTable.agency_id == self._agency_id,
                TeamInviteTable.email == email,
                TeamInviteTable.status == "pending",
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self, status: str | None = None) -> list[TeamInviteTable]:
        stmt = select(TeamInviteTable).where(TeamInviteTable.agency_id == self._agency_id)
        if status is not None:
            stmt = stmt.where(TeamInviteTable.status == status)
        stmt = stmt.order_by(TeamInviteTable.created_at.desc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Stripe events
# ---------------------------------------------------------------------------


class StripeEventRepository:
    """Processed Stripe webhook event ids, for at-most-once application."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def exists(self, event_id: str) -> bool:
        stmt = select(StripeEventTable.event_id).where(StripeEventTable.event_id == event_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def record(self, event_id: str, event_type: str, agency_id: str | None, outcome: str) -> StripeEventTable:
        """Insert the event id.

        Raises :class:`sqlalchemy.exc.IntegrityError` on flush if a
        concurrent delivery recorded the same id first.
        """
        row = StripeEventTable(event_id=event_id, event_type=event_type, agency_id=agency_id, outcome=outcome)
        self._session.add(row)
        await self._session.flush()
        return row
