"""Agency billing state machine driven by Stripe webhook events.

The agency's billing record mirrors the subscription held by Stripe::

    none -> customer_created -> checkout_pending -> {active, trialing}
         -> {past_due, canceled}

Every transition here is a pure function from one :class:`BillingState`
to the next.  Persisting the result (and recording the Stripe event id so
that a re-delivered event is not applied twice) is the caller's job.
Applying the same event twice yields the same state as applying it once.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from travelpoint_core.billing.plans import Plan, parse_plan

logger = logging.getLogger(__name__)


class BillingStatus(str, Enum):
    """Billing lifecycle status stored on the agency."""

    NONE = "none"
    CUSTOMER_CREATED = "customer_created"
    CHECKOUT_PENDING = "checkout_pending"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


# Statuses backed by a live Stripe subscription.
SUBSCRIBED_STATUSES: frozenset[BillingStatus] = frozenset(
    {BillingStatus.ACTIVE, BillingStatus.TRIALING, BillingStatus.PAST_DUE}
)

# Statuses in good standing.
ACTIVE_STATUSES: frozenset[BillingStatus] = frozenset({BillingStatus.ACTIVE, BillingStatus.TRIALING})

# Stripe subscription statuses that have no direct counterpart.
_STRIPE_STATUS_ALIASES: dict[str, BillingStatus] = {
    "incomplete": BillingStatus.CHECKOUT_PENDING,
    "incomplete_expired": BillingStatus.CANCELED,
    "unpaid": BillingStatus.PAST_DUE,
    "paused": BillingStatus.PAST_DUE,
}

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
INVOICE_PAID = "invoice.paid"

HANDLED_EVENT_TYPES: frozenset[str] = frozenset(
    {
        CHECKOUT_COMPLETED,
        SUBSCRIPTION_CREATED,
        SUBSCRIPTION_UPDATED,
        SUBSCRIPTION_DELETED,
        INVOICE_PAYMENT_FAILED,
        INVOICE_PAID,
    }
)


class BillingState(BaseModel):
    """Snapshot of an agency's billing sub-record."""

    stripe_customer_id: str | None = None
    subscription_id: str | None = None
    status: BillingStatus = BillingStatus.NONE
    plan_key: str | None = None
    price_id: str | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = Field(default=False)


def normalize_stripe_status(raw: str | None) -> BillingStatus:
    """Map a Stripe subscription status string onto :class:`BillingStatus`."""
    if not raw:
        return BillingStatus.ACTIVE
    try:
        return BillingStatus(raw)
    except ValueError:
        pass
    alias = _STRIPE_STATUS_ALIASES.get(raw)
    if alias is None:
        logger.warning("Unknown Stripe subscription status '%s'; treating as past_due", raw)
        return BillingStatus.PAST_DUE
    return alias


def _from_timestamp(value: Any) -> datetime | None:
    if value in (None, "", 0):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def subscription_price_id(subscription: Mapping[str, Any]) -> str | None:
    """Return the price id of the first subscription item, if any."""
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id") or None


def _subscription_period_end(subscription: Mapping[str, Any]) -> datetime | None:
    # Newer Stripe API versions report the period on the subscription item.
    period_end = subscription.get("current_period_end")
    if period_end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            period_end = items[0].get("current_period_end")
    return _from_timestamp(period_end)


# ---------------------------------------------------------------------------
# Transitions initiated by TravelPoint
# ---------------------------------------------------------------------------


def customer_created(state: BillingState, customer_id: str) -> BillingState:
    """Attach a freshly created Stripe customer to the agency."""
    status = state.status if state.status != BillingStatus.NONE else BillingStatus.CUSTOMER_CREATED
    return state.model_copy(update={"stripe_customer_id": customer_id, "status": status})


def checkout_started(state: BillingState) -> BillingState:
    """Mark that a checkout session was handed to the customer.

    An agency that already holds a live subscription keeps its status;
    checkout is then a plan change, not a new subscription.
    """
    if state.status in SUBSCRIBED_STATUSES:
        return state
    return state.model_copy(update={"status": BillingStatus.CHECKOUT_PENDING})


# ---------------------------------------------------------------------------
# Transitions driven by webhook events
# ---------------------------------------------------------------------------


def checkout_completed(state: BillingState, session: Mapping[str, Any]) -> BillingState:
    """Apply ``checkout.session.completed``."""
    subscription = session.get("subscription")
    update: dict[str, Any] = {}
    if session.get("customer"):
        update["stripe_customer_id"] = session["customer"]
    if isinstance(subscription, Mapping):
        update["subscription_id"] = subscription.get("id")
        update["status"] = normalize_stripe_status(subscription.get("status"))
    else:
        if subscription:
            update["subscription_id"] = subscription
        update["status"] = BillingStatus.ACTIVE
    return state.model_copy(update=update)


def subscription_updated(
    state: BillingState,
    subscription: Mapping[str, Any],
    plan_for_price: Callable[[str], Plan | None],
) -> BillingState:
    """Apply ``customer.subscription.created`` / ``.updated``.

    The plan is derived from the subscription's price id through the
    configured price map; ``metadata.planKey`` is used only when the price
    is not mapped.
    """
    price_id = subscription_price_id(subscription)
    plan = plan_for_price(price_id) if price_id else None
    if plan is None:
        metadata = subscription.get("metadata") or {}
        raw_plan = metadata.get("planKey")
        plan = parse_plan(raw_plan, default=Plan.TRIAL) if raw_plan else None

    update: dict[str, Any] = {
        "subscription_id": subscription.get("id") or state.subscription_id,
        "status": normalize_stripe_status(subscription.get("status")),
        "price_id": price_id,
        "current_period_end": _subscription_period_end(subscription),
        "trial_end": _from_timestamp(subscription.get("trial_end")),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end", False)),
    }
    if plan is not None:
        update["plan_key"] = plan.value
    if subscription.get("customer"):
        update["stripe_customer_id"] = subscription["customer"]
    return state.model_copy(update=update)


def subscription_deleted(state: BillingState) -> BillingState:
    """Apply ``customer.subscription.deleted``.  The agency itself is kept."""
    return state.model_copy(update={"status": BillingStatus.CANCELED, "cancel_at_period_end": False})


def payment_failed(state: BillingState) -> BillingState:
    """Apply ``invoice.payment_failed``.  Access is not locked here."""
    return state.model_copy(update={"status": BillingStatus.PAST_DUE})


def invoice_paid(state: BillingState, now: datetime | None = None) -> BillingState:
    """Apply ``invoice.paid``: clear ``past_due`` back to good standing."""
    if state.status != BillingStatus.PAST_DUE:
        return state
    now = now or datetime.now(UTC)
    in_trial = state.trial_end is not None and state.trial_end > now
    status = BillingStatus.TRIALING if in_trial else BillingStatus.ACTIVE
    return state.model_copy(update={"status": status})


def apply_event(
    state: BillingState,
    event_type: str,
    data_object: Mapping[str, Any],
    *,
    plan_for_price: Callable[[str], Plan | None],
    now: datetime | None = None,
) -> BillingState | None:
    """Dispatch a webhook event to its transition.

    Returns
    -------
    BillingState | None
        The next state, or ``None`` when the event type is not handled.
    """
    if event_type == CHECKOUT_COMPLETED:
        return checkout_completed(state, data_object)
    if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
        return subscription_updated(state, data_object, plan_for_price)
    if event_type == SUBSCRIPTION_DELETED:
        return subscription_deleted(state)
    if event_type == INVOICE_PAYMENT_FAILED:
        return payment_failed(state)
    if event_type == INVOICE_PAID:
        return invoice_paid(state, now)
    return None


def effective_plan(state: BillingState, override: str | None = None) -> Plan:
    """Return the plan an agency is entitled to right now.

    A live subscription wins; otherwise the manual override set from the
    admin console applies; otherwise the agency is on trial.
    """
    if state.status in SUBSCRIBED_STATUSES and state.plan_key:
        return parse_plan(state.plan_key)
    return parse_plan(override)
