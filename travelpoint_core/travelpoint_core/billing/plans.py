"""Subscription plans, plan limits, and plan-based feature gating.

Four plans control what an agency can do:

* **Trial** -- One group, basic dashboard and reminders.
* **Solo Groups** -- One group plus documents, basic analytics and branding.
* **Pro** -- Unlimited groups, bulk import, mass communications.
* **Enterprise** -- Everything, including API access and custom domains.

Only ``solo_groups`` and ``pro`` are sold through self-service checkout;
``enterprise`` is assigned manually from the admin console.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class Plan(str, Enum):
    """Subscription plan key as stored on the agency."""

    TRIAL = "trial"
    SOLO_GROUPS = "solo_groups"
    PRO = "pro"
    ENTERPRISE = "enterprise"


# Plans that can be purchased through a Stripe Checkout session.
CHECKOUT_PLANS: frozenset[Plan] = frozenset({Plan.SOLO_GROUPS, Plan.PRO})


class PlanLimits(BaseModel):
    """Numeric limits for a plan.  ``None`` means unlimited."""

    max_groups: int | None
    max_travelers: int | None
    max_emails_per_month: int | None


PLAN_LIMITS: dict[Plan, PlanLimits] = {
    Plan.TRIAL: PlanLimits(max_groups=1, max_travelers=50, max_emails_per_month=100),
    Plan.SOLO_GROUPS: PlanLimits(max_groups=1, max_travelers=120, max_emails_per_month=1500),
    Plan.PRO: PlanLimits(max_groups=None, max_travelers=500, max_emails_per_month=5000),
    Plan.ENTERPRISE: PlanLimits(max_groups=None, max_travelers=None, max_emails_per_month=None),
}

PLAN_LABELS: dict[Plan, str] = {
    Plan.TRIAL: "Trial",
    Plan.SOLO_GROUPS: "Solo Groups",
    Plan.PRO: "Pro",
    Plan.ENTERPRISE: "Enterprise",
}


class Feature(str, Enum):
    """Product features that can be gated by plan."""

    BASIC_DASHBOARD = "basic_dashboard"
    SINGLE_GROUP = "single_group"
    EMAIL_REMINDERS = "email_reminders"

    DOCUMENT_MANAGER = "document_manager"
    ANALYTICS_BASIC = "analytics_basic"
    BRANDING_BASIC = "branding_basic"

    MULTI_GROUP = "multi_group"
    BULK_IMPORT = "bulk_import"
    MASS_COMMUNICATIONS = "mass_communications"
    ANALYTICS_ADVANCED = "analytics_advanced"
    BRANDING_FULL = "branding_full"
    MULTI_CURRENCY = "multi_currency"
    OCR_PARSING = "ocr_parsing"

    API_ACCESS = "api_access"
    CUSTOM_DOMAIN = "custom_domain"


# Features available on each plan.  Higher plans include every feature of
# the plans below them.

_TRIAL_FEATURES: frozenset[Feature] = frozenset(
    {
        Feature.BASIC_DASHBOARD,
        Feature.SINGLE_GROUP,
        Feature.EMAIL_REMINDERS,
    }
)

_SOLO_FEATURES: frozenset[Feature] = _TRIAL_FEATURES | frozenset(
    {
        Feature.DOCUMENT_MANAGER,
        Feature.ANALYTICS_BASIC,
        Feature.BRANDING_BASIC,
    }
)

_PRO_FEATURES: frozenset[Feature] = _SOLO_FEATURES | frozenset(
    {
        Feature.MULTI_GROUP,
        Feature.BULK_IMPORT,
        Feature.MASS_COMMUNICATIONS,
        Feature.ANALYTICS_ADVANCED,
        Feature.BRANDING_FULL,
        Feature.MULTI_CURRENCY,
        Feature.OCR_PARSING,
    }
)

_ENTERPRISE_FEATURES: frozenset[Feature] = _PRO_FEATURES | frozenset(
    {
        Feature.API_ACCESS,
        Feature.CUSTOM_DOMAIN,
    }
)

PLAN_FEATURES: dict[Plan, frozenset[Feature]] = {
    Plan.TRIAL: _TRIAL_FEATURES,
    Plan.SOLO_GROUPS: _SOLO_FEATURES,
    Plan.PRO: _PRO_FEATURES,
    Plan.ENTERPRISE: _ENTERPRISE_FEATURES,
}

# Order used to find the cheapest plan that unlocks a feature.
_PLAN_ORDER: tuple[Plan, ...] = (Plan.TRIAL, Plan.SOLO_GROUPS, Plan.PRO, Plan.ENTERPRISE)


def parse_plan(raw: str | None, default: Plan = Plan.TRIAL) -> Plan:
    """Convert a stored plan key into a :class:`Plan`, falling back to *default*."""
    if not raw:
        return default
    try:
        return Plan(raw)
    except ValueError:
        return default


def get_plan_limits(plan: Plan) -> PlanLimits:
    return PLAN_LIMITS.get(plan, PLAN_LIMITS[Plan.TRIAL])


def is_feature_enabled(plan: Plan, feature: Feature) -> bool:
    """Check whether a feature is enabled for the given plan.

    Parameters
    ----------
    plan:
        The agency's effective plan.
    feature:
        The feature to check.

    Returns
    -------
    bool
        ``True`` if the feature is included in the plan's entitlements.
    """
    return feature in PLAN_FEATURES.get(plan, _TRIAL_FEATURES)


def get_plan_features(plan: Plan) -> frozenset[Feature]:
    """Return the set of features available on a plan."""
    return PLAN_FEATURES.get(plan, _TRIAL_FEATURES)


def get_required_plan(feature: Feature) -> Plan:
    """Return the cheapest plan that includes *feature*."""
    for plan in _PLAN_ORDER:
        if feature in PLAN_FEATURES[plan]:
            return plan
    return Plan.ENTERPRISE


def can_create_group(plan: Plan, current_group_count: int) -> bool:
    """Return ``True`` if an agency on *plan* may add another group."""
    limit = get_plan_limits(plan).max_groups
    return limit is None or current_group_count < limit
