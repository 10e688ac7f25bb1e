"""Pure ledger arithmetic for bookings and their cabins.

Every function here takes a ledger and returns a new one; nothing is
mutated in place and nothing touches the database.  The persistence
layer (``api.services.ledger_service``) loads a :class:`BookingLedger`,
runs one of these functions and writes the result back inside a single
version-checked transaction.

Invariants maintained by every function:

* per cabin: ``total = subtotal + gratuities`` and ``balance = total - paid``
* ``total_cad_global == sum(cabin.total_cad)``
* ``paid_cad_global == sum(cabin.paid_cad) + unattributed_paid_cad``
* ``balance_cad_global == total_cad_global - paid_cad_global``

General payments (no target cabin) are held in ``unattributed_paid_cad``
until someone explicitly attributes them with :func:`attribute_payment`.
They are never spread across cabins automatically.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from travelpoint_core.errors import InvalidArgument
from travelpoint_core.ledger.models import (
    ZERO,
    BookingLedger,
    CabinAccount,
    DeadlineStatus,
    PaymentDeadline,
)

_CENT = Decimal("0.01")

# Default instalment plan: initial deposit, second payment, final payment.
DEFAULT_SCHEDULE: tuple[tuple[str, Decimal], ...] = (
    ("Initial deposit", Decimal("0.25")),
    ("Second payment", Decimal("0.25")),
    ("Final payment", Decimal("0.50")),
)


def to_cents(value: Decimal | int | float | str) -> Decimal:
    """Quantise *value* to cents using half-up rounding."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Deadlines
# ---------------------------------------------------------------------------


def compute_deadline_statuses(
    deadlines: Sequence[PaymentDeadline],
    paid_cad: Decimal,
    today: date,
) -> list[PaymentDeadline]:
    """Return *deadlines* sorted by due date with their status recomputed.

    Deadlines are walked in due-date order while accumulating their
    amounts.  A deadline is ``Paid`` once ``paid_cad`` reaches the running
    total (inclusive), ``Overdue`` if it is not covered and its due date
    has passed, and ``Upcoming`` otherwise.
    """
    cumulative = ZERO
    out: list[PaymentDeadline] = []
    for deadline in sorted(deadlines, key=lambda d: d.due_date):
        cumulative = to_cents(cumulative + deadline.amount_cad)
        if paid_cad >= cumulative:
            status = DeadlineStatus.PAID
        elif deadline.due_date < today:
            status = DeadlineStatus.OVERDUE
        else:
            status = DeadlineStatus.UPCOMING
        out.append(deadline.model_copy(update={"status": status}))
    return out


def split_deadlines(
    total_cad: Decimal,
    due_dates: Sequence[date],
    schedule: Sequence[tuple[str, Decimal]] = DEFAULT_SCHEDULE,
) -> list[PaymentDeadline]:
    """Split *total_cad* into instalments following *schedule*.

    The last instalment absorbs any rounding remainder so that the
    instalments always add up to exactly ``total_cad``.

    Raises
    ------
    InvalidArgument
        If the number of due dates does not match the schedule.
    """
    if len(due_dates) != len(schedule):
        raise InvalidArgument(
            f"Expected {len(schedule)} due dates, got {len(due_dates)}",
            public_message="Wrong number of deadline dates",
        )
    deadlines: list[PaymentDeadline] = []
    allocated = ZERO
    for index, ((label, weight), due) in enumerate(zip(schedule, due_dates, strict=True)):
        if index == len(schedule) - 1:
            amount = to_cents(total_cad - allocated)
        else:
            amount = to_cents(total_cad * weight)
            allocated += amount
        deadlines.append(PaymentDeadline(label=label, due_date=due, amount_cad=amount))
    return deadlines


# ---------------------------------------------------------------------------
# Cabins and globals
# ---------------------------------------------------------------------------


def recompute_cabin(cabin: CabinAccount, today: date) -> CabinAccount:
    """Recompute a cabin's total, balance and deadline statuses."""
    subtotal = to_cents(cabin.subtotal_cad)
    gratuities = to_cents(cabin.gratuities_cad)
    paid = to_cents(cabin.paid_cad)
    total = to_cents(subtotal + gratuities)
    return cabin.model_copy(
        update={
            "subtotal_cad": subtotal,
            "gratuities_cad": gratuities,
            "total_cad": total,
            "paid_cad": paid,
            "balance_cad": to_cents(total - paid),
            "payment_deadlines": compute_deadline_statuses(cabin.payment_deadlines, paid, today),
        }
    )


def recompute_globals(ledger: BookingLedger) -> BookingLedger:
    """Recompute the booking aggregates as sums over all cabins."""
    subtotal = sum((c.subtotal_cad for c in ledger.cabins), ZERO)
    gratuities = sum((c.gratuities_cad for c in ledger.cabins), ZERO)
    total = sum((c.total_cad for c in ledger.cabins), ZERO)
    paid = sum((c.paid_cad for c in ledger.cabins), ZERO) + ledger.unattributed_paid_cad
    return ledger.model_copy(
        update={
            "subtotal_cad_global": to_cents(subtotal),
            "gratuities_cad_global": to_cents(gratuities),
            "total_cad_global": to_cents(total),
            "paid_cad_global": to_cents(paid),
            "balance_cad_global": to_cents(total - paid),
        }
    )


def build_ledger(
    cabins: Sequence[CabinAccount],
    today: date,
    unattributed_paid_cad: Decimal = ZERO,
) -> BookingLedger:
    """Create a fully derived ledger from raw cabin inputs."""
    ledger = BookingLedger(
        cabins=[recompute_cabin(c, today) for c in cabins],
        unattributed_paid_cad=to_cents(unattributed_paid_cad),
    )
    return recompute_globals(ledger)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


def _validate_amount(amount_cad: Decimal) -> Decimal:
    amount = to_cents(amount_cad)
    if amount <= ZERO:
        raise InvalidArgument(
            f"Payment amount must be positive, got {amount_cad}",
            public_message="Amount must be greater than zero",
        )
    return amount


def _validate_cabin_index(ledger: BookingLedger, cabin_index: int) -> None:
    if not 0 <= cabin_index < len(ledger.cabins):
        raise InvalidArgument(
            f"Cabin index {cabin_index} out of range (booking has {len(ledger.cabins)} cabins)",
            public_message="Invalid cabin",
        )


def _replace_cabin(ledger: BookingLedger, index: int, cabin: CabinAccount) -> list[CabinAccount]:
    cabins = list(ledger.cabins)
    cabins[index] = cabin
    return cabins


def apply_payment(
    ledger: BookingLedger,
    amount_cad: Decimal,
    target_cabin_index: int | None,
    today: date,
) -> BookingLedger:
    """Apply a payment to one cabin or to the booking's general ledger.

    Parameters
    ----------
    ledger:
        The current booking ledger.
    amount_cad:
        Payment amount; must be strictly positive.
    target_cabin_index:
        Index into ``ledger.cabins``.  ``None`` records a general payment
        that raises ``paid_cad_global`` without touching any cabin.
    today:
        Reference date for deadline status.

    Raises
    ------
    InvalidArgument
        If the amount is not positive or the cabin index is out of range.
    """
    amount = _validate_amount(amount_cad)

    if target_cabin_index is None:
        updated = ledger.model_copy(update={"unattributed_paid_cad": to_cents(ledger.unattributed_paid_cad + amount)})
        return recompute_globals(updated)

    _validate_cabin_index(ledger, target_cabin_index)
    cabin = ledger.cabins[target_cabin_index]
    cabin = recompute_cabin(cabin.model_copy(update={"paid_cad": cabin.paid_cad + amount}), today)
    updated = ledger.model_copy(update={"cabins": _replace_cabin(ledger, target_cabin_index, cabin)})
    return recompute_globals(updated)


def attribute_payment(
    ledger: BookingLedger,
    cabin_index: int,
    amount_cad: Decimal,
    today: date,
) -> BookingLedger:
    """Move previously unattributed money into a cabin.

    ``paid_cad_global`` is unchanged; the money only moves from the general
    ledger into the cabin.

    Raises
    ------
    InvalidArgument
        If the amount is not positive, exceeds the unattributed balance,
        or the cabin index is out of range.
    """
    amount = _validate_amount(amount_cad)
    _validate_cabin_index(ledger, cabin_index)
    if amount > ledger.unattributed_paid_cad:
        raise InvalidArgument(
            f"Cannot attribute {amount}; only {ledger.unattributed_paid_cad} is unattributed",
            public_message="Amount exceeds unattributed payments",
        )

    cabin = ledger.cabins[cabin_index]
    cabin = recompute_cabin(cabin.model_copy(update={"paid_cad": cabin.paid_cad + amount}), today)
    updated = ledger.model_copy(
        update={
            "cabins": _replace_cabin(ledger, cabin_index, cabin),
            "unattributed_paid_cad": to_cents(ledger.unattributed_paid_cad - amount),
        }
    )
    return recompute_globals(updated)


def refresh_deadlines(ledger: BookingLedger, today: date) -> BookingLedger:
    """Recompute deadline statuses against *today* (e.g. on read)."""
    return ledger.model_copy(update={"cabins": [recompute_cabin(c, today) for c in ledger.cabins]})


def check_invariants(ledger: BookingLedger) -> list[str]:
    """Return a description of every invariant the ledger violates."""
    problems: list[str] = []
    for index, cabin in enumerate(ledger.cabins):
        if cabin.total_cad != to_cents(cabin.subtotal_cad + cabin.gratuities_cad):
            problems.append(f"cabin[{index}] total != subtotal + gratuities")
        if cabin.balance_cad != to_cents(cabin.total_cad - cabin.paid_cad):
            problems.append(f"cabin[{index}] balance != total - paid")

    cabin_total = sum((c.total_cad for c in ledger.cabins), ZERO)
    cabin_paid = sum((c.paid_cad for c in ledger.cabins), ZERO)
    if ledger.total_cad_global != to_cents(cabin_total):
        problems.append("total_cad_global != sum of cabin totals")
    if ledger.paid_cad_global != to_cents(cabin_paid + ledger.unattributed_paid_cad):
        problems.append("paid_cad_global != sum of cabin payments + unattributed")
    if ledger.paid_cad_global < cabin_paid:
        problems.append("paid_cad_global < sum of cabin payments")
    if ledger.balance_cad_global != to_cents(ledger.total_cad_global - ledger.paid_cad_global):
        problems.append("balance_cad_global != total_cad_global - paid_cad_global")
    return problems
