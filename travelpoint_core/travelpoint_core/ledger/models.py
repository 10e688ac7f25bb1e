"""Booking ledger value models.

A booking (historically a "family") pays for one or more cabins.  Each
cabin keeps its own ledger of cost, gratuities, payments and deadlines;
the booking keeps global aggregates over all of its cabins plus any
payment that has not yet been attributed to a specific cabin.

All monetary values are :class:`~decimal.Decimal` amounts in Canadian
dollars, quantised to cents.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

ZERO = Decimal("0.00")


class DeadlineStatus(str, Enum):
    """Derived status of a payment deadline."""

    PAID = "Paid"
    UPCOMING = "Upcoming"
    OVERDUE = "Overdue"


class PaymentDeadline(BaseModel):
    """An instalment a cabin must have paid by ``due_date``."""

    label: str = Field(..., min_length=1, description="Human-readable instalment name.")
    due_date: date = Field(..., description="Date by which the instalment is due.")
    amount_cad: Decimal = Field(..., ge=0, description="Instalment amount (not cumulative).")
    status: DeadlineStatus = Field(
        default=DeadlineStatus.UPCOMING,
        description="Derived from the cabin's paid amount against the cumulative threshold.",
    )


class CabinAccount(BaseModel):
    """Per-cabin financial record.

    ``total_cad`` and ``balance_cad`` are derived and are recomputed every
    time the ledger changes; callers should never set them directly.
    """

    cabin_number: str = Field(..., min_length=1, description="Ship cabin number.")
    subtotal_cad: Decimal = Field(default=ZERO, ge=0, description="Cruise fare for the cabin.")
    gratuities_cad: Decimal = Field(default=ZERO, ge=0, description="Prepaid gratuities.")
    total_cad: Decimal = Field(default=ZERO, description="subtotal_cad + gratuities_cad.")
    paid_cad: Decimal = Field(default=ZERO, ge=0, description="Payments attributed to this cabin.")
    balance_cad: Decimal = Field(default=ZERO, description="total_cad - paid_cad.")
    payment_deadlines: list[PaymentDeadline] = Field(default_factory=list)


class BookingLedger(BaseModel):
    """All cabins of a booking plus the booking-level aggregates."""

    cabins: list[CabinAccount] = Field(default_factory=list)
    unattributed_paid_cad: Decimal = Field(
        default=ZERO,
        ge=0,
        description="General payments not yet attributed to any cabin.",
    )
    subtotal_cad_global: Decimal = ZERO
    gratuities_cad_global: Decimal = ZERO
    total_cad_global: Decimal = ZERO
    paid_cad_global: Decimal = ZERO
    balance_cad_global: Decimal = ZERO
