"""SQLAlchemy 2.0 ORM table definitions for the TravelPoint state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  Every
tenant-owned row carries ``agency_id``; on legacy tables the column is
nullable so that rows imported before multi-tenancy can be repaired with
``travelpoint reconcile-schema``.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always loads as UTC.

    SQLite drops tzinfo on round-trip; naive values read back are
    re-stamped as UTC so comparisons against aware datetimes work on both
    backends.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_result_value(self, value, dialect):  # type: ignore[override]
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


_Money = Numeric(12, 2)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all TravelPoint tables."""


# ---------------------------------------------------------------------------
# Agencies
# ---------------------------------------------------------------------------


class AgencyTable(Base):
    """Tenant root.

    The ``billing_*`` columns are owned by the checkout and webhook flows
    and mirror the agency's Stripe subscription.  ``plan_key`` is the
    manual plan override set from the admin console.  Agencies are never
    deleted programmatically.
    """

    __tablename__ = "agencies"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    billing_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    branding: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    plan_key: Mapped[str | None] = mapped_column(String(32), nullable=True)

    billing_stripe_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    billing_subscription_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    billing_status: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    billing_plan_key: Mapped[str | None] = mapped_column(String(32), nullable=True)
    billing_price_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    billing_current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    billing_trial_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    billing_cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    billing_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Groups and bookings
# ---------------------------------------------------------------------------


class GroupTable(Base):
    """A cruise group (one sailing) managed by an agency."""

    __tablename__ = "groups"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    ship_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    sail_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_groups_agency", "agency_id"),)


class BookingTable(Base):
    """A payer unit (formerly "family") holding one or more cabin ledgers.

    ``cabin_accounts`` stores the serialised :class:`CabinAccount` list.
    The ``*_global`` columns are denormalised aggregates kept consistent
    with it on every write.  ``version`` is the optimistic-concurrency
    counter checked by SQLAlchemy on every UPDATE.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    group_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    booking_code: Mapped[str] = mapped_column(String(64), nullable=False)
    display_name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    cabin_accounts: Mapped[list[dict[str, Any]]] = mapped_column(_JsonType, nullable=False, default=list)

    subtotal_cad_global: Mapped[Decimal] = mapped_column(_Money, nullable=False, default=Decimal("0"))
    gratuities_cad_global: Mapped[Decimal] = mapped_column(_Money, nullable=False, default=Decimal("0"))
    total_cad_global: Mapped[Decimal] = mapped_column(_Money, nullable=False, default=Decimal("0"))
    paid_cad_global: Mapped[Decimal] = mapped_column(_Money, nullable=False, default=Decimal("0"))
    balance_cad_global: Mapped[Decimal] = mapped_column(_Money, nullable=False, default=Decimal("0"))
    unattributed_paid_cad: Mapped[Decimal] = mapped_column(_Money, nullable=False, default=Decimal("0"))

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_bookings_agency", "agency_id"),
        Index("ix_bookings_group", "group_id"),
    )


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentTable(Base):
    """Immutable record of a payment applied to a booking."""

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    booking_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount_cad: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    target_cabin_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    target_cabin_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reference: Mapped[str | None] = mapped_column(String(256), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    from_request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    applied_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payments_agency", "agency_id"),
        Index("ix_payments_booking", "booking_id"),
    )


class PaymentRequestTable(Base):
    """A payment reported by a traveler, awaiting review by the agency."""

    __tablename__ = "payment_requests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    booking_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount_cad: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    target_cabin_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reference: Mapped[str | None] = mapped_column(String(256), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="Pending")
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payment_requests_agency", "agency_id"),
        Index("ix_payment_requests_booking", "booking_id"),
    )


# ---------------------------------------------------------------------------
# Users, members, invites
# ---------------------------------------------------------------------------


class UserTable(Base):
    """Platform user profile.  ``id`` is the identity-provider uid."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    agency_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="agent")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_users_agency", "agency_id"),
        Index("ix_users_email", "email"),
    )


class MemberTable(Base):
    """Membership of a user in an agency team."""

    __tablename__ = "members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agency_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    invite_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("agency_id", "user_id", name="uq_members_agency_user"),)


class TeamInviteTable(Base):
    """Pending or settled team invitation.

    Only ``token_hash`` is stored; the raw token leaves the server exactly
    once, inside the invite link.
    """

    __tablename__ = "team_invites"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str] = mapped_column(String(64), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    accepted_by_uid: Mapped[str | None] = mapped_column(String(128), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (Index("ix_team_invites_agency_email_status", "agency_id", "email", "status"),)


# ---------------------------------------------------------------------------
# Stripe webhook idempotency
# ---------------------------------------------------------------------------


class StripeEventTable(Base):
    """Stripe event ids that have already been processed."""

    __tablename__ = "stripe_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    agency_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
