"""Stripe billing integration service.

Provides checkout and customer-portal session creation for an agency,
subscription lookups against the locally mirrored billing record, and
webhook event processing that drives the billing state machine.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from travelpoint_core.billing.plans import (
    CHECKOUT_PLANS,
    PLAN_LABELS,
    Plan,
    get_plan_features,
    get_plan_limits,
)
from travelpoint_core.billing.state_machine import (
    HANDLED_EVENT_TYPES,
    apply_event,
    checkout_started,
    customer_created,
    effective_plan,
)
from travelpoint_core.errors import FailedPrecondition, Internal, InvalidArgument, NotFound
from travelpoint_core.state.repository import (
    AgencyRepository,
    StripeEventRepository,
    billing_state_from_row,
    write_billing_state,
)
from travelpoint_core.state.tables import AgencyTable

from api.config import APISettings

logger = logging.getLogger(__name__)

_SUPPORTED_LOCALES = frozenset({"en", "es"})


def effective_plan_for(agency: AgencyTable) -> Plan:
    """Return the plan *agency* is entitled to (subscription, then override, then trial)."""
    return effective_plan(billing_state_from_row(agency), agency.plan_key)


def list_plans(settings: APISettings) -> list[dict[str, Any]]:
    """Return the plan catalogue with limits, features and configured prices."""
    catalogue: list[dict[str, Any]] = []
    for plan in Plan:
        limits = get_plan_limits(plan)
        catalogue.append(
            {
                "plan_key": plan.value,
                "label": PLAN_LABELS[plan],
                "self_service": plan in CHECKOUT_PLANS,
                "price_id": settings.price_for_plan(plan),
                "limits": limits.model_dump(),
                "features": sorted(f.value for f in get_plan_features(plan)),
            }
        )
    return catalogue


class BillingService:
    """Stripe billing operations for a single agency.

    Parameters
    ----------
    session:
        Active database session.
    settings:
        API settings containing Stripe configuration.
    agency_id:
        The agency performing billing operations.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        agency_id: str,
    ) -> None:
        self._session = session
        self._settings = settings
        self._agency_id = agency_id

    def _get_stripe(self) -> Any:
        """Configure and return the Stripe library."""
        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    def _require_billing(self) -> None:
        if not self._settings.billing_enabled:
            raise Internal("Stripe billing is disabled", public_message="Billing is not configured")

    async def _load_agency(self) -> AgencyTable:
        agency = await AgencyRepository(self._session).get(self._agency_id)
        if agency is None:
            raise NotFound(f"Agency {self._agency_id} not found", public_message="Agency not found")
        return agency

    async def get_subscription_info(self) -> dict[str, Any]:
        """Return the agency's mirrored billing state and effective plan.

        Returns
        -------
        dict
            Billing status, Stripe plan key, effective plan, its limits,
            and the subscription period.
        """
        agency = await self._load_agency()
        state = billing_state_from_row(agency)
        plan = effective_plan(state, agency.plan_key)
        return {
            "agency_id": agency.id,
            "status": state.status.value,
            "plan_key": state.plan_key,
            "plan_override": agency.plan_key,
            "effective_plan": plan.value,
            "limits": get_plan_limits(plan).model_dump(),
            "has_customer": state.stripe_customer_id is not None,
            "subscription_id": state.subscription_id,
            "current_period_end": state.current_period_end.isoformat() if state.current_period_end else None,
            "trial_end": state.trial_end.isoformat() if state.trial_end else None,
            "cancel_at_period_end": state.cancel_at_period_end,
        }

    async def _ensure_customer(
        self,
        agency: AgencyTable,
        *,
        user_id: str | None,
        user_email: str | None,
    ) -> str:
        """Return the agency's Stripe customer id, creating the customer once.

        The new id is committed before checkout starts so that a failed
        checkout never loses the link to the customer.
        """
        state = billing_state_from_row(agency)
        if state.stripe_customer_id:
            return state.stripe_customer_id

        stripe_lib = self._get_stripe()
        metadata = {"agencyId": agency.id}
        if user_id:
            metadata["uid"] = user_id
        customer = stripe_lib.Customer.create(
            email=agency.contact_email or agency.billing_email or user_email,
            name=agency.name,
            metadata=metadata,
        )
        customer_id = customer["id"]
        write_billing_state(agency, customer_created(state, customer_id))
        await self._session.commit()
        logger.info("Created Stripe customer %s for agency %s", customer_id, agency.id)
        return customer_id

    async def create_checkout_session(
        self,
        plan_key: str,
        locale: str = "en",
        *,
        user_id: str | None = None,
        user_email: str | None = None,
    ) -> dict[str, str]:
        """Create a Stripe Checkout session for a subscription to *plan_key*.

        Parameters
        ----------
        plan_key:
            ``solo_groups`` or ``pro``.
        locale:
            Checkout page language; anything but ``es`` falls back to ``en``.
        user_id, user_email:
            The caller, recorded on a newly created Stripe customer.

        Returns
        -------
        dict
            Contains ``checkout_url`` and ``session_id``.

        Raises
        ------
        InvalidArgument
            Unknown plan key, or Stripe rejected the request.
        Internal
            Billing is disabled, no price is configured for the plan, or any
            other Stripe failure.
        """
        self._require_billing()
        try:
            plan = Plan(plan_key)
        except ValueError:
            plan = None
        if plan not in CHECKOUT_PLANS:
            raise InvalidArgument(f"Plan '{plan_key}' is not purchasable", public_message="Invalid plan")

        price_id = self._settings.price_for_plan(plan)
        if not price_id:
            raise Internal(f"No Stripe price configured for plan '{plan.value}'", public_message="Missing price configuration")

        agency = await self._load_agency()
        app_url = self._settings.app_url.rstrip("/")
        metadata = {"agencyId": agency.id, "planKey": plan.value}

        try:
            customer_id = await self._ensure_customer(agency, user_id=user_id, user_email=user_email)
            checkout = self._get_stripe().checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=f"{app_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{app_url}/billing",
                locale=locale if locale in _SUPPORTED_LOCALES else "en",
                metadata=metadata,
                subscription_data={"metadata": metadata},
            )
        except stripe.InvalidRequestError as exc:
            logger.warning("Stripe rejected checkout for agency %s: %s", agency.id, exc)
            raise InvalidArgument(str(exc), public_message="Invalid checkout request") from exc
        except stripe.StripeError as exc:
            logger.error("Stripe checkout failed for agency %s: %s", agency.id, exc)
            raise Internal(str(exc), public_message="Failed to create checkout session") from exc

        write_billing_state(agency, checkout_started(billing_state_from_row(agency)))
        await self._session.flush()

        logger.info("Checkout session %s created for agency %s (plan=%s)", checkout["id"], agency.id, plan.value)
        return {"checkout_url": checkout["url"], "session_id": checkout["id"]}

    async def create_portal_session(self) -> dict[str, str]:
        """Create a Stripe Customer Portal session.

        Returns
        -------
        dict
            Contains ``portal_url``.

        Raises
        ------
        FailedPrecondition
            The agency has never been linked to a Stripe customer.
        Internal
            Billing is disabled.
        """
        self._require_billing()
        agency = await self._load_agency()
        customer_id = agency.billing_stripe_customer_id
        if not customer_id:
            raise FailedPrecondition(
                f"Agency {agency.id} has no Stripe customer",
                public_message="No Stripe customer found. Please subscribe to a plan first.",
            )

        try:
            portal = self._get_stripe().billing_portal.Session.create(
                customer=customer_id,
                return_url=f"{self._settings.app_url.rstrip('/')}/billing",
            )
        except stripe.StripeError as exc:
            logger.error("Stripe portal session failed for agency %s: %s", agency.id, exc)
            raise Internal(str(exc), public_message="Failed to create portal session") from exc

        return {"portal_url": portal["url"]}


# ---------------------------------------------------------------------------
# Webhook processing
# ---------------------------------------------------------------------------


def _metadata_agency_id(data_object: Mapping[str, Any]) -> str | None:
    metadata = data_object.get("metadata") or {}
    if metadata.get("agencyId"):
        return str(metadata["agencyId"])
    # Invoices carry the subscription metadata in a nested block.
    details = (data_object.get("subscription_details") or {}).get("metadata") or {}
    if details.get("agencyId"):
        return str(details["agencyId"])
    return None


def _customer_id(data_object: Mapping[str, Any]) -> str | None:
    customer = data_object.get("customer")
    if isinstance(customer, Mapping):
        return customer.get("id")
    return customer or None


async def _resolve_agency(session: AsyncSession, data_object: Mapping[str, Any]) -> AgencyTable | None:
    """Find the agency an event belongs to: ``metadata.agencyId`` first, then the customer id."""
    agencies = AgencyRepository(session)
    agency_id = _metadata_agency_id(data_object)
    if agency_id:
        agency = await agencies.get(agency_id)
        if agency is not None:
            return agency
        logger.warning("Webhook metadata names unknown agency %s", agency_id)

    customer_id = _customer_id(data_object)
    if customer_id:
        return await agencies.get_by_customer_id(customer_id)
    return None


async def process_webhook_event(
    session_factory: async_sessionmaker[AsyncSession],
    settings: APISettings,
    event: Mapping[str, Any],
) -> str:
    """Apply one verified Stripe event at most once.

    The agency update and the processed-event record are committed in
    the same transaction.  A re-delivered event id is a no-op.

    Returns
    -------
    str
        ``"applied"``, ``"ignored"`` (unhandled type or unknown agency) or
        ``"duplicate"``.

    Raises
    ------
    InvalidArgument
        The payload has no event id or type.
    """
    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        raise InvalidArgument("Stripe event without id or type", public_message="Invalid webhook payload")
    data_object: Mapping[str, Any] = (event.get("data") or {}).get("object") or {}

    async with session_factory() as session:
        events = StripeEventRepository(session)
        if await events.exists(event_id):
            logger.info("Stripe event %s already processed; skipping", event_id)
            return "duplicate"

        outcome = "ignored"
        agency_id: str | None = None
        if event_type not in HANDLED_EVENT_TYPES:
            logger.info("Unhandled Stripe event type %s (%s)", event_type, event_id)
        else:
            agency = await _resolve_agency(session, data_object)
            if agency is None:
                logger.warning(
                    "No agency found for Stripe event %s (%s)",
                    event_id,
                    event_type,
                    extra={"context": {"event_id": event_id, "customer": _customer_id(data_object)}},
                )
            else:
                agency_id = agency.id
                state = billing_state_from_row(agency)
                next_state = apply_event(state, event_type, data_object, plan_for_price=settings.plan_for_price)
                if next_state is not None and write_billing_state(agency, next_state):
                    logger.info(
                        "Agency %s billing %s -> %s after %s",
                        agency.id,
                        state.status.value,
                        next_state.status.value,
                        event_type,
                    )
                outcome = "applied"

        try:
            await events.record(event_id, event_type, agency_id, outcome)
            await session.commit()
        except IntegrityError:
            # A concurrent delivery of the same event committed first.
            await session.rollback()
            logger.info("Stripe event %s recorded concurrently; skipping", event_id)
            return "duplicate"

    return outcome
