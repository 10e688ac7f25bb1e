"""Booking ledger endpoints: bookings, payments, attributions and payment requests.

Read endpoints need ``READ_BOOKINGS``; creating bookings needs
``MANAGE_BOOKINGS``; anything that moves money needs ``APPLY_PAYMENTS``.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from travelpoint_core.billing.plans import Feature
from travelpoint_core.retry import RetryConfig

from api.config import APISettings
from api.dependencies import AgencyDep, SessionFactoryDep, SettingsDep, UserDep, require_feature
from api.middleware.rbac import Permission, Role, require_permission
from api.schemas import (
    AppliedPaymentResponse,
    ApplyPaymentRequest,
    ApplyPaymentRequestBody,
    AttributePaymentRequest,
    BookingListResponse,
    BookingResponse,
    CreateBookingRequest,
    CreatePaymentRequestBody,
    ImportBookingsRequest,
    ImportBookingsResponse,
    PaymentListResponse,
    PaymentRequestListResponse,
    PaymentRequestResponse,
    RejectPaymentRequestBody,
)
from api.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _ledger(
    session_factory: async_sessionmaker[AsyncSession],
    settings: APISettings,
    agency_id: str,
) -> LedgerService:
    return LedgerService(
        session_factory,
        agency_id=agency_id,
        retry_config=RetryConfig(max_retries=settings.ledger_max_retries),
    )


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


@router.get("", response_model=BookingListResponse)
async def list_bookings(
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    group_id: str | None = Query(default=None, description="Only bookings of this group."),
    _role: Role = Depends(require_permission(Permission.READ_BOOKINGS)),
) -> dict[str, Any]:
    bookings = await _ledger(session_factory, settings, agency_id).list_bookings(group_id=group_id)
    return {"bookings": bookings, "total": len(bookings)}


@router.post("", response_model=BookingResponse, status_code=201)
async def create_booking(
    body: CreateBookingRequest,
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_BOOKINGS)),
) -> dict[str, Any]:
    """Create a booking; totals, balances and deadline statuses are derived."""
    return await _ledger(session_factory, settings, agency_id).create_booking(
        group_id=body.group_id,
        booking_code=body.booking_code,
        display_name=body.display_name,
        email=body.email,
        cabins=[c.model_dump() for c in body.cabins],
    )


@router.post("/import", response_model=ImportBookingsResponse)
async def import_bookings(
    body: ImportBookingsRequest,
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_BOOKINGS)),
    _gate: None = Depends(require_feature(Feature.BULK_IMPORT)),
) -> dict[str, Any]:
    """Bulk-create bookings in a group.  Requires the Pro plan."""
    return await _ledger(session_factory, settings, agency_id).import_bookings(
        body.group_id,
        [row.model_dump() for row in body.rows],
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    _role: Role = Depends(require_permission(Permission.READ_BOOKINGS)),
) -> dict[str, Any]:
    return await _ledger(session_factory, settings, agency_id).get_booking(booking_id)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@router.post("/{booking_id}/payments", response_model=AppliedPaymentResponse, status_code=201)
async def apply_payment(
    booking_id: str,
    body: ApplyPaymentRequest,
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    user_identity: UserDep,
    _role: Role = Depends(require_permission(Permission.APPLY_PAYMENTS)),
) -> dict[str, Any]:
    """Apply a payment to one cabin, or to the general ledger if no cabin is given."""
    return await _ledger(session_factory, settings, agency_id).apply_payment(
        booking_id,
        body.amount_cad,
        body.target_cabin_index,
        method=body.method,
        reference=body.reference,
        note=body.note,
        created_by=user_identity,
    )


@router.get("/{booking_id}/payments", response_model=PaymentListResponse)
async def list_payments(
    booking_id: str,
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    _role: Role = Depends(require_permission(Permission.READ_BOOKINGS)),
) -> dict[str, Any]:
    payments = await _ledger(session_factory, settings, agency_id).list_payments(booking_id)
    return {"payments": payments, "total": len(payments)}


@router.post("/{booking_id}/attributions", response_model=BookingResponse)
async def attribute_payment(
    booking_id: str,
    body: AttributePaymentRequest,
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    user_identity: UserDep,
    _role: Role = Depends(require_permission(Permission.APPLY_PAYMENTS)),
) -> dict[str, Any]:
    """Attribute general (unattributed) payments to a cabin."""
    return await _ledger(session_factory, settings, agency_id).attribute_payment(
        booking_id,
        body.cabin_index,
        body.amount_cad,
        attributed_by=user_identity,
    )


# ---------------------------------------------------------------------------
# Payment requests
# ---------------------------------------------------------------------------


@router.get("/{booking_id}/payment-requests", response_model=PaymentRequestListResponse)
async def list_payment_requests(
    booking_id: str,
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    _role: Role = Depends(require_permission(Permission.READ_BOOKINGS)),
) -> dict[str, Any]:
    requests = await _ledger(session_factory, settings, agency_id).list_payment_requests(booking_id)
    return {"requests": requests, "total": len(requests)}


@router.post("/{booking_id}/payment-requests", response_model=PaymentRequestResponse, status_code=201)
async def create_payment_request(
    booking_id: str,
    body: CreatePaymentRequestBody,
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    user_identity: UserDep,
    _role: Role = Depends(require_permission(Permission.READ_BOOKINGS)),
) -> dict[str, Any]:
    """Report a payment for review; the ledger is unchanged until it is applied."""
    return await _ledger(session_factory, settings, agency_id).create_payment_request(
        booking_id,
        body.amount_cad,
        body.target_cabin_index,
        method=body.method,
        reference=body.reference,
        note=body.note,
        submitted_by=user_identity,
    )


@router.post("/{booking_id}/payment-requests/{request_id}/apply", response_model=AppliedPaymentResponse)
async def apply_payment_request(
    booking_id: str,
    request_id: str,
    body: ApplyPaymentRequestBody,
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    user_identity: UserDep,
    _role: Role = Depends(require_permission(Permission.APPLY_PAYMENTS)),
) -> dict[str, Any]:
    return await _ledger(session_factory, settings, agency_id).apply_payment_request(
        booking_id,
        request_id,
        body.target_cabin_index,
        reviewed_by=user_identity,
    )


@router.post("/{booking_id}/payment-requests/{request_id}/reject", response_model=PaymentRequestResponse)
async def reject_payment_request(
    booking_id: str,
    request_id: str,
    body: RejectPaymentRequestBody,
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    user_identity: UserDep,
    _role: Role = Depends(require_permission(Permission.APPLY_PAYMENTS)),
) -> dict[str, Any]:
    return await _ledger(session_factory, settings, agency_id).reject_payment_request(
        booking_id,
        request_id,
        body.reason,
        reviewed_by=user_identity,
    )
