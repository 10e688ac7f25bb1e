"""Shared Pydantic request and response models for API endpoints.

These schemas ensure that endpoint payloads are validated and documented
in the OpenAPI specification.  Routers import from here to avoid duplication.
Monetary amounts are ``Decimal`` and serialise as strings with two decimals.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field
from travelpoint_core.ledger.models import CabinAccount, PaymentDeadline

# ---------------------------------------------------------------------------
# Billing schemas
# ---------------------------------------------------------------------------


class CheckoutRequest(BaseModel):
    """Request body for ``POST /billing/checkout``."""

    plan_key: str = Field(..., description="Plan to subscribe to: solo_groups or pro.")
    locale: str = Field(default="en", description="Checkout page language: en or es.")


class CheckoutSessionResponse(BaseModel):
    """Stripe checkout session response."""

    checkout_url: str
    session_id: str


class PortalSessionResponse(BaseModel):
    """Stripe customer portal session response."""

    portal_url: str


class PlanLimitsResponse(BaseModel):
    max_groups: int | None = None
    max_travelers: int | None = None
    max_emails_per_month: int | None = None


class SubscriptionResponse(BaseModel):
    """Mirrored Stripe subscription state of the caller's agency."""

    agency_id: str
    status: str
    plan_key: str | None = None
    plan_override: str | None = None
    effective_plan: str
    limits: PlanLimitsResponse
    has_customer: bool
    subscription_id: str | None = None
    current_period_end: str | None = None
    trial_end: str | None = None
    cancel_at_period_end: bool = False


class PlanCatalogueEntry(BaseModel):
    """A plan returned by ``GET /billing/plans``."""

    plan_key: str
    label: str
    self_service: bool
    price_id: str | None = None
    limits: PlanLimitsResponse
    features: list[str] = Field(default_factory=list)


class PlanCatalogueResponse(BaseModel):
    plans: list[PlanCatalogueEntry]


class WebhookAckResponse(BaseModel):
    received: bool


# ---------------------------------------------------------------------------
# Group schemas
# ---------------------------------------------------------------------------


class CreateGroupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    ship_name: str | None = Field(default=None, max_length=256)
    sail_date: date | None = None


class GroupResponse(BaseModel):
    id: str
    name: str
    ship_name: str | None = None
    sail_date: str | None = None
    created_at: str | None = None


class GroupListResponse(BaseModel):
    groups: list[GroupResponse]
    total: int


# ---------------------------------------------------------------------------
# Booking and payment schemas
# ---------------------------------------------------------------------------


class CabinInput(BaseModel):
    """A cabin as entered by the agency when creating a booking.

    Deadlines are either given explicitly or derived from three
    ``deadline_dates`` using the default 25/25/50 instalment schedule.
    """

    cabin_number: str = Field(..., min_length=1, max_length=32)
    subtotal_cad: Decimal = Field(default=Decimal("0"), ge=0)
    gratuities_cad: Decimal = Field(default=Decimal("0"), ge=0)
    payment_deadlines: list[PaymentDeadline] = Field(default_factory=list)
    deadline_dates: list[date] = Field(default_factory=list)


class CreateBookingRequest(BaseModel):
    group_id: str
    booking_code: str = Field(..., min_length=1, max_length=64)
    display_name: str = Field(..., min_length=1, max_length=256)
    email: str | None = None
    cabins: list[CabinInput] = Field(..., min_length=1)


class BookingResponse(BaseModel):
    """A booking with its per-cabin ledgers and global aggregates."""

    id: str
    group_id: str | None = None
    booking_code: str
    display_name: str
    email: str | None = None
    version: int
    cabins: list[CabinAccount]
    unattributed_paid_cad: Decimal
    subtotal_cad_global: Decimal
    gratuities_cad_global: Decimal
    total_cad_global: Decimal
    paid_cad_global: Decimal
    balance_cad_global: Decimal


class BookingListResponse(BaseModel):
    bookings: list[BookingResponse]
    total: int


class ImportBookingRow(BaseModel):
    """One imported row; rows with the same ``booking_code`` are merged."""

    booking_code: str = Field(..., min_length=1, max_length=64)
    display_name: str = Field(..., min_length=1, max_length=256)
    email: str | None = None
    cabins: list[CabinInput] = Field(default_factory=list)


class ImportBookingsRequest(BaseModel):
    group_id: str
    rows: list[ImportBookingRow] = Field(..., min_length=1, max_length=1000)


class ImportedBooking(BaseModel):
    booking_code: str
    id: str


class ImportFailure(BaseModel):
    booking_code: str
    error: str


class ImportBookingsResponse(BaseModel):
    successful: list[ImportedBooking]
    failed: list[ImportFailure]


class ApplyPaymentRequest(BaseModel):
    """Request body for ``POST /bookings/{id}/payments``.

    Omitting ``target_cabin_index`` records a general payment that is not
    attributed to any cabin.
    """

    amount_cad: Decimal = Field(..., gt=0)
    target_cabin_index: int | None = Field(default=None, ge=0)
    method: str | None = Field(default=None, max_length=64)
    reference: str | None = Field(default=None, max_length=256)
    note: str | None = None


class AttributePaymentRequest(BaseModel):
    cabin_index: int = Field(..., ge=0)
    amount_cad: Decimal = Field(..., gt=0)


class PaymentResponse(BaseModel):
    id: str
    booking_id: str
    amount_cad: Decimal
    target_cabin_index: int | None = None
    target_cabin_number: str | None = None
    method: str | None = None
    reference: str | None = None
    note: str | None = None
    created_by: str | None = None
    from_request_id: str | None = None
    applied_at: str | None = None


class PaymentListResponse(BaseModel):
    payments: list[PaymentResponse]
    total: int


class PaymentRequestResponse(BaseModel):
    id: str
    booking_id: str
    amount_cad: Decimal
    target_cabin_index: int | None = None
    method: str | None = None
    reference: str | None = None
    note: str | None = None
    status: str
    submitted_by: str | None = None
    rejection_reason: str | None = None
    reviewed_by: str | None = None
    reviewed_at: str | None = None
    created_at: str | None = None


class PaymentRequestListResponse(BaseModel):
    requests: list[PaymentRequestResponse]
    total: int


class AppliedPaymentResponse(BaseModel):
    """Result of applying a payment: the updated booking and the payment row."""

    booking: BookingResponse
    payment: PaymentResponse
    request: PaymentRequestResponse | None = None


class CreatePaymentRequestBody(BaseModel):
    amount_cad: Decimal = Field(..., gt=0)
    target_cabin_index: int | None = Field(default=None, ge=0)
    method: str | None = Field(default=None, max_length=64)
    reference: str | None = Field(default=None, max_length=256)
    note: str | None = None


class ApplyPaymentRequestBody(BaseModel):
    target_cabin_index: int | None = Field(default=None, ge=0)


class RejectPaymentRequestBody(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


# ---------------------------------------------------------------------------
# Team schemas
# ---------------------------------------------------------------------------


class CreateInviteRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    role: str = Field(..., description="Role to grant: admin or agent.")


class CreateInviteResponse(BaseModel):
    invite_id: str
    invite_link: str


class AcceptInviteRequest(BaseModel):
    agency_id: str
    invite_id: str
    token: str


class AcceptInviteResponse(BaseModel):
    ok: bool
    agency_id: str
    role: str


class InviteResponse(BaseModel):
    invite_id: str
    email: str
    role: str
    status: str
    expires_at: str
    created_by: str
    created_at: str | None = None
    accepted_by_uid: str | None = None


class InviteListResponse(BaseModel):
    invites: list[InviteResponse]
    total: int


class TeamMemberResponse(BaseModel):
    user_id: str
    email: str
    role: str
    status: str
    created_at: str | None = None


class TeamMembersResponse(BaseModel):
    members: list[TeamMemberResponse]
    total: int


class OkResponse(BaseModel):
    ok: bool


# ---------------------------------------------------------------------------
# Admin schemas
# ---------------------------------------------------------------------------


class SetPlanRequest(BaseModel):
    """``plan_key`` of ``null`` clears the manual override."""

    plan_key: str | None = None


class AgencySummaryResponse(BaseModel):
    id: str
    name: str
    contact_email: str | None = None
    plan_override: str | None = None
    effective_plan: str
    billing: dict[str, Any]
    created_at: str | None = None


class AgencyListResponse(BaseModel):
    agencies: list[AgencySummaryResponse]
    total: int
