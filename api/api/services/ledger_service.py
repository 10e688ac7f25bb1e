"""Booking ledger service: bookings, payments and payment requests.

Every write is one optimistic read-modify-write transaction on the
booking row.  SQLAlchemy checks the ``version`` column on UPDATE and
raises :class:`~sqlalchemy.orm.exc.StaleDataError` when a concurrent
writer got there first; the whole attempt is then re-run from a fresh
session with exponential backoff.  Because of that the service takes a
session *factory*, not a request-scoped session.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from travelpoint_core.errors import FailedPrecondition, InvalidArgument, NotFound, ServiceError
from travelpoint_core.ledger.aggregation import (
    apply_payment,
    attribute_payment,
    build_ledger,
    refresh_deadlines,
    split_deadlines,
    to_cents,
)
from travelpoint_core.ledger.models import BookingLedger, CabinAccount, PaymentDeadline
from travelpoint_core.retry import RetryConfig, async_retry_with_backoff
from travelpoint_core.state.database import get_session
from travelpoint_core.state.repository import (
    BookingRepository,
    GroupRepository,
    PaymentRepository,
    PaymentRequestRepository,
    ledger_from_row,
    write_ledger,
)
from travelpoint_core.state.tables import BookingTable, PaymentRequestTable, PaymentTable

logger = logging.getLogger(__name__)

T = TypeVar("T")

REQUEST_PENDING = "Pending"
REQUEST_APPLIED = "Applied"
REQUEST_REJECTED = "Rejected"


def _utc_today() -> date:
    return datetime.now(UTC).date()


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------


def booking_to_dict(row: BookingTable, ledger: BookingLedger) -> dict[str, Any]:
    return {
        "id": row.id,
        "group_id": row.group_id,
        "booking_code": row.booking_code,
        "display_name": row.display_name,
        "email": row.email,
        "version": row.version,
        **ledger.model_dump(),
    }


def payment_to_dict(row: PaymentTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "booking_id": row.booking_id,
        "amount_cad": row.amount_cad,
        "target_cabin_index": row.target_cabin_index,
        "target_cabin_number": row.target_cabin_number,
        "method": row.method,
        "reference": row.reference,
        "note": row.note,
        "created_by": row.created_by,
        "from_request_id": row.from_request_id,
        "applied_at": row.applied_at.isoformat() if row.applied_at else None,
    }


def payment_request_to_dict(row: PaymentRequestTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "booking_id": row.booking_id,
        "amount_cad": row.amount_cad,
        "target_cabin_index": row.target_cabin_index,
        "method": row.method,
        "reference": row.reference,
        "note": row.note,
        "status": row.status,
        "submitted_by": row.submitted_by,
        "rejection_reason": row.rejection_reason,
        "reviewed_by": row.reviewed_by,
        "reviewed_at": row.reviewed_at.isoformat() if row.reviewed_at else None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class LedgerService:
    """Ledger operations for the bookings of a single agency.

    Parameters
    ----------
    session_factory:
        Factory for the per-attempt sessions used by every operation.
    agency_id:
        The agency that owns the bookings.
    retry_config:
        Backoff used when a booking write hits a version conflict.
    today:
        Clock returning the reference date for deadline statuses.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        agency_id: str,
        retry_config: RetryConfig | None = None,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._agency_id = agency_id
        self._retry = retry_config or RetryConfig()
        self._today = today or _utc_today

    async def _run(self, op: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run *op* in its own transaction, re-running it on version conflicts."""

        async def attempt() -> T:
            async with get_session(self._session_factory) as session:
                return await op(session)

        return await async_retry_with_backoff(attempt, self._retry, retryable_exceptions=(StaleDataError,))

    async def _load_booking(self, session: AsyncSession, booking_id: str) -> BookingTable:
        row = await BookingRepository(session, self._agency_id).get(booking_id)
        if row is None:
            raise NotFound(
                f"Booking {booking_id} not found for agency {self._agency_id}",
                public_message="Booking not found",
            )
        return row

    # -- Bookings -------------------------------------------------------------

    async def create_booking(
        self,
        *,
        group_id: str,
        booking_code: str,
        display_name: str,
        email: str | None,
        cabins: Sequence[dict[str, Any]],
    ) -> dict[str, Any]:
        """Create a booking with fully derived cabin ledgers.

        Each cabin dict carries ``cabin_number``, ``subtotal_cad``,
        ``gratuities_cad`` and either explicit ``payment_deadlines`` or
        ``deadline_dates`` that are split with the default instalment
        schedule.

        Raises
        ------
        NotFound
            The group does not belong to the agency.
        InvalidArgument
            The booking has no cabins, or a deadline split is malformed.
        """
        if not cabins:
            raise InvalidArgument("Booking without cabins", public_message="At least one cabin is required")
        today = self._today()

        accounts: list[CabinAccount] = []
        for cabin in cabins:
            subtotal = to_cents(cabin.get("subtotal_cad") or 0)
            gratuities = to_cents(cabin.get("gratuities_cad") or 0)
            deadlines = [PaymentDeadline.model_validate(d) for d in cabin.get("payment_deadlines") or []]
            dates = cabin.get("deadline_dates") or []
            if not deadlines and dates:
                deadlines = split_deadlines(subtotal + gratuities, dates)
            accounts.append(
                CabinAccount(
                    cabin_number=cabin["cabin_number"],
                    subtotal_cad=subtotal,
                    gratuities_cad=gratuities,
                    payment_deadlines=deadlines,
                )
            )
        ledger = build_ledger(accounts, today)

        async def op(session: AsyncSession) -> dict[str, Any]:
            group = await GroupRepository(session, self._agency_id).get(group_id)
            if group is None:
                raise NotFound(f"Group {group_id} not found for agency {self._agency_id}", public_message="Group not found")
            row = await BookingRepository(session, self._agency_id).create(
                group_id=group_id,
                booking_code=booking_code,
                display_name=display_name,
                email=email,
                ledger=ledger,
            )
            return booking_to_dict(row, ledger)

        result = await self._run(op)
        logger.info("Booking %s created in group %s (agency=%s)", result["id"], group_id, self._agency_id)
        return result

    async def import_bookings(self, group_id: str, rows: Sequence[dict[str, Any]]) -> dict[str, Any]:
        """Create many bookings in one group.

        Rows sharing a ``booking_code`` are merged into a single booking
        whose cabins are concatenated in row order.  Each merged booking is
        created in its own transaction; a failing booking is reported and
        does not stop the others.

        Returns
        -------
        dict
            ``successful`` (booking code and id) and ``failed`` (booking
            code and public error message).
        """
        merged: dict[str, dict[str, Any]] = {}
        for row in rows:
            code = row["booking_code"].strip()
            entry = merged.setdefault(
                code,
                {"display_name": row["display_name"], "email": row.get("email"), "cabins": []},
            )
            entry["cabins"].extend(row.get("cabins") or [])

        successful: list[dict[str, str]] = []
        failed: list[dict[str, str]] = []
        for code, entry in merged.items():
            try:
                booking = await self.create_booking(group_id=group_id, booking_code=code, **entry)
            except ServiceError as exc:
                logger.warning("Import of booking %s into group %s failed: %s", code, group_id, exc)
                failed.append({"booking_code": code, "error": exc.public_message})
            else:
                successful.append({"booking_code": code, "id": booking["id"]})

        logger.info(
            "Imported %d/%d bookings into group %s (agency=%s)",
            len(successful),
            len(merged),
            group_id,
            self._agency_id,
        )
        return {"successful": successful, "failed": failed}

    async def get_booking(self, booking_id: str) -> dict[str, Any]:
        """Return one booking with deadline statuses evaluated against today."""
        async with get_session(self._session_factory) as session:
            row = await self._load_booking(session, booking_id)
            return booking_to_dict(row, refresh_deadlines(ledger_from_row(row), self._today()))

    async def list_bookings(self, group_id: str | None = None) -> list[dict[str, Any]]:
        today = self._today()
        async with get_session(self._session_factory) as session:
            rows = await BookingRepository(session, self._agency_id).list_all(group_id=group_id)
            return [booking_to_dict(row, refresh_deadlines(ledger_from_row(row), today)) for row in rows]

    # -- Payments -------------------------------------------------------------

    async def apply_payment(
        self,
        booking_id: str,
        amount_cad: Decimal,
        target_cabin_index: int | None,
        *,
        method: str | None = None,
        reference: str | None = None,
        note: str | None = None,
        created_by: str | None = None,
    ) -> dict[str, Any]:
        """Apply a payment to a cabin, or to the general ledger when no cabin is given.

        The ledger update and the ``payments`` row commit together.

        Returns
        -------
        dict
            ``booking`` (the updated ledger) and ``payment``.

        Raises
        ------
        InvalidArgument
            Non-positive amount or cabin index out of range.
        NotFound
            The booking does not exist for this agency.
        """
        today = self._today()

        async def op(session: AsyncSession) -> dict[str, Any]:
            row = await self._load_booking(session, booking_id)
            ledger = apply_payment(ledger_from_row(row), amount_cad, target_cabin_index, today)
            write_ledger(row, ledger)
            payment = await PaymentRepository(session, self._agency_id).create(
                booking_id=row.id,
                amount_cad=to_cents(amount_cad),
                target_cabin_index=target_cabin_index,
                target_cabin_number=(
                    ledger.cabins[target_cabin_index].cabin_number if target_cabin_index is not None else None
                ),
                method=method,
                reference=reference,
                note=note,
                created_by=created_by,
            )
            return {"booking": booking_to_dict(row, ledger), "payment": payment_to_dict(payment)}

        result = await self._run(op)
        logger.info(
            "Payment of %s applied to booking %s (cabin=%s)",
            to_cents(amount_cad),
            booking_id,
            target_cabin_index if target_cabin_index is not None else "general",
            extra={"context": {"agency_id": self._agency_id, "booking_id": booking_id}},
        )
        return result

    async def attribute_payment(
        self,
        booking_id: str,
        cabin_index: int,
        amount_cad: Decimal,
        *,
        attributed_by: str | None = None,
    ) -> dict[str, Any]:
        """Move unattributed money into a cabin.  ``paid_cad_global`` is unchanged."""
        today = self._today()

        async def op(session: AsyncSession) -> dict[str, Any]:
            row = await self._load_booking(session, booking_id)
            ledger = attribute_payment(ledger_from_row(row), cabin_index, amount_cad, today)
            write_ledger(row, ledger)
            await session.flush()
            return booking_to_dict(row, ledger)

        result = await self._run(op)
        logger.info(
            "Attributed %s of general payments to cabin %d of booking %s (by %s)",
            to_cents(amount_cad),
            cabin_index,
            booking_id,
            attributed_by or "unknown",
        )
        return result

    async def list_payments(self, booking_id: str) -> list[dict[str, Any]]:
        async with get_session(self._session_factory) as session:
            await self._load_booking(session, booking_id)
            rows = await PaymentRepository(session, self._agency_id).list_for_booking(booking_id)
            return [payment_to_dict(row) for row in rows]

    # -- Payment requests -----------------------------------------------------

    async def create_payment_request(
        self,
        booking_id: str,
        amount_cad: Decimal,
        target_cabin_index: int | None = None,
        *,
        method: str | None = None,
        reference: str | None = None,
        note: str | None = None,
        submitted_by: str | None = None,
    ) -> dict[str, Any]:
        """Record a payment reported by a traveler, pending agency review."""
        amount = to_cents(amount_cad)
        if amount <= 0:
            raise InvalidArgument(
                f"Payment request amount must be positive, got {amount_cad}",
                public_message="Amount must be greater than zero",
            )

        async def op(session: AsyncSession) -> dict[str, Any]:
            row = await self._load_booking(session, booking_id)
            if target_cabin_index is not None and not 0 <= target_cabin_index < len(row.cabin_accounts or []):
                raise InvalidArgument(f"Cabin index {target_cabin_index} out of range", public_message="Invalid cabin")
            request = await PaymentRequestRepository(session, self._agency_id).create(
                booking_id=row.id,
                amount_cad=amount,
                target_cabin_index=target_cabin_index,
                method=method,
                reference=reference,
                note=note,
                submitted_by=submitted_by,
            )
            return payment_request_to_dict(request)

        return await self._run(op)

    async def list_payment_requests(self, booking_id: str) -> list[dict[str, Any]]:
        async with get_session(self._session_factory) as session:
            await self._load_booking(session, booking_id)
            rows = await PaymentRequestRepository(session, self._agency_id).list_for_booking(booking_id)
            return [payment_request_to_dict(row) for row in rows]

    async def _load_pending_request(
        self,
        session: AsyncSession,
        booking_id: str,
        request_id: str,
    ) -> PaymentRequestTable:
        request = await PaymentRequestRepository(session, self._agency_id).get(booking_id, request_id)
        if request is None:
            raise NotFound(f"Payment request {request_id} not found", public_message="Payment request not found")
        if request.status != REQUEST_PENDING:
            raise FailedPrecondition(
                f"Payment request {request_id} is {request.status}",
                public_message="Only pending payment requests can be reviewed",
            )
        return request

    async def apply_payment_request(
        self,
        booking_id: str,
        request_id: str,
        target_cabin_index: int | None = None,
        *,
        reviewed_by: str | None = None,
    ) -> dict[str, Any]:
        """Apply a pending request to a cabin and mark it ``Applied``.

        The cabin comes from *target_cabin_index*, falling back to the one
        the traveler chose.  The ledger update, the payment row and the
        request status change commit together.
        """
        today = self._today()

        async def op(session: AsyncSession) -> dict[str, Any]:
            row = await self._load_booking(session, booking_id)
            request = await self._load_pending_request(session, booking_id, request_id)
            cabin_index = target_cabin_index if target_cabin_index is not None else request.target_cabin_index
            if cabin_index is None:
                raise InvalidArgument(
                    f"Payment request {request_id} has no target cabin",
                    public_message="A target cabin is required",
                )

            ledger = apply_payment(ledger_from_row(row), request.amount_cad, cabin_index, today)
            write_ledger(row, ledger)
            payment = await PaymentRepository(session, self._agency_id).create(
                booking_id=row.id,
                amount_cad=request.amount_cad,
                target_cabin_index=cabin_index,
                target_cabin_number=ledger.cabins[cabin_index].cabin_number,
                method=request.method,
                reference=request.reference,
                note=request.note,
                created_by=reviewed_by,
                from_request_id=request.id,
            )
            request.status = REQUEST_APPLIED
            request.target_cabin_index = cabin_index
            request.reviewed_by = reviewed_by
            request.reviewed_at = datetime.now(UTC)
            await session.flush()
            return {
                "booking": booking_to_dict(row, ledger),
                "payment": payment_to_dict(payment),
                "request": payment_request_to_dict(request),
            }

        result = await self._run(op)
        logger.info("Payment request %s applied to booking %s", request_id, booking_id)
        return result

    async def reject_payment_request(
        self,
        booking_id: str,
        request_id: str,
        reason: str,
        *,
        reviewed_by: str | None = None,
    ) -> dict[str, Any]:
        """Mark a pending request ``Rejected``.  The ledger is not touched."""

        async def op(session: AsyncSession) -> dict[str, Any]:
            await self._load_booking(session, booking_id)
            request = await self._load_pending_request(session, booking_id, request_id)
            request.status = REQUEST_REJECTED
            request.rejection_reason = reason
            request.reviewed_by = reviewed_by
            request.reviewed_at = datetime.now(UTC)
            await session.flush()
            return payment_request_to_dict(request)

        result = await self._run(op)
        logger.info("Payment request %s rejected for booking %s", request_id, booking_id)
        return result
