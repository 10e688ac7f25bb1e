"""Subscription plans and the agency billing state machine."""

from __future__ import annotations

from travelpoint_core.billing.plans import (
    CHECKOUT_PLANS,
    PLAN_FEATURES,
    PLAN_LIMITS,
    Feature,
    Plan,
    PlanLimits,
    can_create_group,
    get_plan_limits,
    get_required_plan,
    is_feature_enabled,
    parse_plan,
)
from travelpoint_core.billing.state_machine import (
    ACTIVE_STATUSES,
    SUBSCRIBED_STATUSES,
    BillingState,
    BillingStatus,
    apply_event,
    effective_plan,
)

__all__ = [
    "ACTIVE_STATUSES",
    "BillingState",
    "BillingStatus",
    "CHECKOUT_PLANS",
    "Feature",
    "PLAN_FEATURES",
    "PLAN_LIMITS",
    "Plan",
    "PlanLimits",
    "SUBSCRIBED_STATUSES",
    "apply_event",
    "can_create_group",
    "effective_plan",
    "get_plan_limits",
    "get_required_plan",
    "is_feature_enabled",
    "parse_plan",
]
