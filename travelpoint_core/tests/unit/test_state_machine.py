"""Tests for the agency billing state machine."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from travelpoint_core.billing.plans import Plan
from travelpoint_core.billing.state_machine import (
    CHECKOUT_COMPLETED,
    INVOICE_PAID,
    INVOICE_PAYMENT_FAILED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    BillingState,
    BillingStatus,
    apply_event,
    checkout_started,
    customer_created,
    effective_plan,
    normalize_stripe_status,
)

_PRICES = {"price_solo": Plan.SOLO_GROUPS, "price_pro": Plan.PRO}


def _plan_for_price(price_id: str) -> Plan | None:
    return _PRICES.get(price_id)


def _subscription(**overrides: Any) -> dict[str, Any]:
    sub: dict[str, Any] = {
        "id": "sub_123",
        "customer": "cus_123",
        "status": "active",
        "items": {"data": [{"price": {"id": "price_pro"}, "current_period_end": 1_790_000_000}]},
        "trial_end": None,
        "cancel_at_period_end": False,
        "metadata": {},
    }
    sub.update(overrides)
    return sub


def _apply(state: BillingState, event_type: str, obj: dict[str, Any], now: datetime | None = None) -> BillingState:
    result = apply_event(state, event_type, obj, plan_for_price=_plan_for_price, now=now)
    assert result is not None
    return result


class TestNormalizeStripeStatus:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("active", BillingStatus.ACTIVE),
            ("trialing", BillingStatus.TRIALING),
            ("past_due", BillingStatus.PAST_DUE),
            ("canceled", BillingStatus.CANCELED),
            ("incomplete", BillingStatus.CHECKOUT_PENDING),
            ("incomplete_expired", BillingStatus.CANCELED),
            ("unpaid", BillingStatus.PAST_DUE),
            (None, BillingStatus.ACTIVE),
        ],
    )
    def test_mapping(self, raw: str | None, expected: BillingStatus) -> None:
        assert normalize_stripe_status(raw) == expected

    def test_unknown_status_is_past_due(self) -> None:
        assert normalize_stripe_status("mystery") == BillingStatus.PAST_DUE


class TestLocalTransitions:
    def test_customer_created_from_none(self) -> None:
        state = customer_created(BillingState(), "cus_1")
        assert state.status == BillingStatus.CUSTOMER_CREATED
        assert state.stripe_customer_id == "cus_1"

    def test_customer_created_keeps_existing_status(self) -> None:
        state = customer_created(BillingState(status=BillingStatus.CANCELED), "cus_1")
        assert state.status == BillingStatus.CANCELED

    def test_checkout_started_marks_pending(self) -> None:
        state = checkout_started(BillingState(status=BillingStatus.CUSTOMER_CREATED))
        assert state.status == BillingStatus.CHECKOUT_PENDING

    def test_checkout_started_keeps_live_subscription(self) -> None:
        active = BillingState(status=BillingStatus.ACTIVE, plan_key="solo_groups")
        assert checkout_started(active) == active


class TestWebhookTransitions:
    def test_checkout_completed_without_expansion_is_active(self) -> None:
        pending = BillingState(status=BillingStatus.CHECKOUT_PENDING, stripe_customer_id="cus_123")
        state = _apply(pending, CHECKOUT_COMPLETED, {"customer": "cus_123", "subscription": "sub_123"})
        assert state.status == BillingStatus.ACTIVE
        assert state.subscription_id == "sub_123"

    def test_checkout_completed_with_expanded_subscription(self) -> None:
        session = {"customer": "cus_123", "subscription": {"id": "sub_9", "status": "trialing"}}
        state = _apply(BillingState(), CHECKOUT_COMPLETED, session)
        assert state.status == BillingStatus.TRIALING
        assert state.subscription_id == "sub_9"

    def test_subscription_updated_maps_price_to_plan(self) -> None:
        state = _apply(BillingState(), SUBSCRIPTION_UPDATED, _subscription())
        assert state.plan_key == "pro"
        assert state.price_id == "price_pro"
        assert state.status == BillingStatus.ACTIVE
        assert state.current_period_end == datetime.fromtimestamp(1_790_000_000, tz=UTC)

    def test_price_map_wins_over_metadata(self) -> None:
        state = _apply(BillingState(), SUBSCRIPTION_UPDATED, _subscription(metadata={"planKey": "solo_groups"}))
        assert state.plan_key == "pro"

    def test_metadata_used_for_unmapped_price(self) -> None:
        sub = _subscription(
            items={"data": [{"price": {"id": "price_other"}}]},
            metadata={"planKey": "solo_groups"},
        )
        state = _apply(BillingState(), SUBSCRIPTION_UPDATED, sub)
        assert state.plan_key == "solo_groups"

    def test_unmapped_price_without_metadata_keeps_plan(self) -> None:
        sub = _subscription(items={"data": [{"price": {"id": "price_other"}}]})
        state = _apply(BillingState(plan_key="solo_groups"), SUBSCRIPTION_UPDATED, sub)
        assert state.plan_key == "solo_groups"

    def test_subscription_deleted_cancels(self) -> None:
        active = BillingState(status=BillingStatus.ACTIVE, plan_key="pro", cancel_at_period_end=True)
        state = _apply(active, SUBSCRIPTION_DELETED, _subscription(status="canceled"))
        assert state.status == BillingStatus.CANCELED
        assert state.cancel_at_period_end is False
        assert state.plan_key == "pro"

    def test_payment_failed_then_invoice_paid(self) -> None:
        active = BillingState(status=BillingStatus.ACTIVE, plan_key="pro")
        past_due = _apply(active, INVOICE_PAYMENT_FAILED, {"customer": "cus_123"})
        assert past_due.status == BillingStatus.PAST_DUE

        recovered = _apply(past_due, INVOICE_PAID, {"customer": "cus_123"})
        assert recovered.status == BillingStatus.ACTIVE

    def test_invoice_paid_during_trial_restores_trialing(self) -> None:
        now = datetime(2026, 5, 1, tzinfo=UTC)
        past_due = BillingState(status=BillingStatus.PAST_DUE, trial_end=now + timedelta(days=3))
        state = _apply(past_due, INVOICE_PAID, {}, now=now)
        assert state.status == BillingStatus.TRIALING

    def test_invoice_paid_does_not_touch_canceled(self) -> None:
        canceled = BillingState(status=BillingStatus.CANCELED)
        assert _apply(canceled, INVOICE_PAID, {}) == canceled

    def test_unhandled_event_returns_none(self) -> None:
        assert apply_event(BillingState(), "customer.created", {}, plan_for_price=_plan_for_price) is None


class TestIdempotence:
    """Re-applying the same event leaves the state unchanged."""

    @pytest.mark.parametrize(
        ("event_type", "obj"),
        [
            (CHECKOUT_COMPLETED, {"customer": "cus_123", "subscription": "sub_123"}),
            (SUBSCRIPTION_UPDATED, _subscription()),
            (SUBSCRIPTION_DELETED, _subscription(status="canceled")),
            (INVOICE_PAYMENT_FAILED, {"customer": "cus_123"}),
            (INVOICE_PAID, {"customer": "cus_123"}),
        ],
    )
    def test_apply_twice(self, event_type: str, obj: dict[str, Any]) -> None:
        start = BillingState(status=BillingStatus.PAST_DUE, stripe_customer_id="cus_123")
        once = _apply(start, event_type, obj)
        twice = _apply(once, event_type, obj)
        assert once == twice


class TestEffectivePlan:
    def test_live_subscription_wins(self) -> None:
        state = BillingState(status=BillingStatus.PAST_DUE, plan_key="pro")
        assert effective_plan(state, override="enterprise") == Plan.PRO

    def test_canceled_falls_back_to_override(self) -> None:
        state = BillingState(status=BillingStatus.CANCELED, plan_key="pro")
        assert effective_plan(state, override="enterprise") == Plan.ENTERPRISE

    def test_default_is_trial(self) -> None:
        assert effective_plan(BillingState()) == Plan.TRIAL
