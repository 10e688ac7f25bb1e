"""Per-cabin payment ledger for bookings."""

from __future__ import annotations

from travelpoint_core.ledger.aggregation import (
    apply_payment,
    attribute_payment,
    build_ledger,
    check_invariants,
    compute_deadline_statuses,
    recompute_cabin,
    recompute_globals,
    refresh_deadlines,
    split_deadlines,
    to_cents,
)
from travelpoint_core.ledger.models import BookingLedger, CabinAccount, DeadlineStatus, PaymentDeadline

__all__ = [
    "BookingLedger",
    "CabinAccount",
    "DeadlineStatus",
    "PaymentDeadline",
    "apply_payment",
    "attribute_payment",
    "build_ledger",
    "check_invariants",
    "compute_deadline_statuses",
    "recompute_cabin",
    "recompute_globals",
    "refresh_deadlines",
    "split_deadlines",
    "to_cents",
]
