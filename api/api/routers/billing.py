"""Billing endpoints: plan catalogue, subscription info, Stripe checkout, portal, webhooks."""

from __future__ import annotations

import json
import logging
from typing import Any

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from travelpoint_core.errors import ServiceError

from api.dependencies import AgencyDep, CallerDep, SessionDep, SessionFactoryDep, SettingsDep
from api.middleware.rbac import Permission, Role, require_permission, require_role
from api.schemas import (
    CheckoutRequest,
    CheckoutSessionResponse,
    PlanCatalogueResponse,
    PortalSessionResponse,
    SubscriptionResponse,
    WebhookAckResponse,
)
from api.services.billing_service import BillingService, list_plans, process_webhook_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/plans", response_model=PlanCatalogueResponse)
async def get_plans(settings: SettingsDep) -> dict[str, Any]:
    """Return every plan with its limits, features and configured Stripe price."""
    return {"plans": list_plans(settings)}


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    session: SessionDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    _role: Role = Depends(require_permission(Permission.READ_TEAM)),
) -> dict[str, Any]:
    """Return the agency's billing status and effective plan."""
    service = BillingService(session, settings, agency_id=agency_id)
    return await service.get_subscription_info()


@router.post("/checkout", response_model=CheckoutSessionResponse)
async def create_checkout(
    body: CheckoutRequest,
    session: SessionDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    caller: CallerDep,
    _role: Role = Depends(require_role(Role.ADMIN)),
) -> dict[str, str]:
    """Create a Stripe Checkout session for a subscription.

    Requires an admin or owner of the agency.  Creates the Stripe customer
    on first use.
    """
    service = BillingService(session, settings, agency_id=agency_id)
    return await service.create_checkout_session(
        body.plan_key,
        body.locale,
        user_id=caller.uid,
        user_email=caller.email,
    )


@router.post("/portal", response_model=PortalSessionResponse)
async def create_portal(
    session: SessionDep,
    settings: SettingsDep,
    agency_id: AgencyDep,
    _role: Role = Depends(require_role(Role.ADMIN)),
) -> dict[str, str]:
    """Create a Stripe Customer Portal session for managing the subscription."""
    service = BillingService(session, settings, agency_id=agency_id)
    return await service.create_portal_session()


@router.post("/webhooks", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    session_factory: SessionFactoryDep,
) -> Any:
    """Handle incoming Stripe webhook events.

    Validates the webhook signature using the configured webhook secret
    and applies the event to the agency's billing state.  This endpoint
    bypasses bearer authentication (validated via Stripe signature
    instead).  Handler failures return 500 so that Stripe retries.
    """
    if not settings.billing_enabled:
        logger.warning("Stripe webhook received while billing is disabled")
        return {"received": False}

    body = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe signature")

    try:
        stripe.Webhook.construct_event(
            payload=body,
            sig_header=sig_header,
            secret=settings.stripe_webhook_secret.get_secret_value(),
        )
        # The signature covers the raw body, so the plain JSON is trusted from here.
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload") from None
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=400, detail="Signature verification failed") from None
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    try:
        outcome = await process_webhook_event(session_factory, settings, event)
    except ServiceError:
        raise
    except Exception:
        logger.exception("Stripe webhook handler failed for event %s", event.get("id"))
        return JSONResponse(status_code=500, content={"detail": "Webhook handler failed"})

    logger.info("Stripe event %s (%s): %s", event.get("id"), event.get("type"), outcome)
    return {"received": True}
