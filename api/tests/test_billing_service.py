"""Tests for api/api/services/billing_service.py

Covers:
- Checkout: customer creation, session parameters, status transitions, error mapping
- Portal: missing customer, return URL
- Subscription info and plan catalogue
- Webhook processing: transitions, agency resolution, idempotency
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import stripe
from sqlalchemy import func, select
from travelpoint_core.errors import FailedPrecondition, Internal, InvalidArgument, NotFound
from travelpoint_core.state.repository import AgencyRepository
from travelpoint_core.state.tables import StripeEventTable

from api.services.billing_service import BillingService, effective_plan_for, list_plans, process_webhook_event

AGENCY_ID = "agency-1"
APP_URL = "https://app.travelpoint.test"


def _mock_stripe() -> MagicMock:
    mock = MagicMock()
    mock.Customer.create.return_value = {"id": "cus_123"}
    mock.checkout.Session.create.return_value = {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}
    mock.billing_portal.Session.create.return_value = {"url": "https://billing.stripe.test/session"}
    return mock


def _service(db_session, settings) -> BillingService:
    return BillingService(db_session, settings, agency_id=AGENCY_ID)


async def _agency_row(session_factory):
    async with session_factory() as session:
        return await AgencyRepository(session).get(AGENCY_ID)


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


class TestCreateCheckoutSession:
    @pytest.mark.asyncio
    async def test_creates_customer_then_session(self, db_session, test_settings, agency, session_factory) -> None:
        service = _service(db_session, test_settings)
        mock_stripe = _mock_stripe()

        with patch.object(service, "_get_stripe", return_value=mock_stripe):
            result = await service.create_checkout_session("solo_groups", "es", user_id="user-owner")
        await db_session.commit()

        assert result == {"checkout_url": "https://checkout.stripe.test/cs_test_1", "session_id": "cs_test_1"}

        customer_kwargs = mock_stripe.Customer.create.call_args.kwargs
        assert customer_kwargs["email"] == "hola@sol.test"
        assert customer_kwargs["name"] == "Cruceros del Sol"
        assert customer_kwargs["metadata"] == {"agencyId": AGENCY_ID, "uid": "user-owner"}

        kwargs = mock_stripe.checkout.Session.create.call_args.kwargs
        assert kwargs["customer"] == "cus_123"
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"] == [{"price": "price_solo", "quantity": 1}]
        assert kwargs["metadata"] == {"agencyId": AGENCY_ID, "planKey": "solo_groups"}
        assert kwargs["subscription_data"] == {"metadata": {"agencyId": AGENCY_ID, "planKey": "solo_groups"}}
        assert kwargs["success_url"] == f"{APP_URL}/billing/success?session_id={{CHECKOUT_SESSION_ID}}"
        assert kwargs["cancel_url"] == f"{APP_URL}/billing"
        assert kwargs["locale"] == "es"

        row = await _agency_row(session_factory)
        assert row.billing_stripe_customer_id == "cus_123"
        assert row.billing_status == "checkout_pending"

    @pytest.mark.asyncio
    async def test_reuses_existing_customer(self, db_session, test_settings, agency) -> None:
        row = await AgencyRepository(db_session).get(AGENCY_ID)
        row.billing_stripe_customer_id = "cus_existing"
        row.billing_status = "customer_created"
        await db_session.flush()

        service = _service(db_session, test_settings)
        mock_stripe = _mock_stripe()
        with patch.object(service, "_get_stripe", return_value=mock_stripe):
            await service.create_checkout_session("pro", "fr")

        mock_stripe.Customer.create.assert_not_called()
        kwargs = mock_stripe.checkout.Session.create.call_args.kwargs
        assert kwargs["customer"] == "cus_existing"
        assert kwargs["line_items"] == [{"price": "price_pro", "quantity": 1}]
        assert kwargs["locale"] == "en"

    @pytest.mark.asyncio
    async def test_active_subscription_keeps_status(self, db_session, test_settings, agency) -> None:
        row = await AgencyRepository(db_session).get(AGENCY_ID)
        row.billing_stripe_customer_id = "cus_existing"
        row.billing_status = "active"
        row.billing_plan_key = "solo_groups"
        await db_session.flush()

        service = _service(db_session, test_settings)
        with patch.object(service, "_get_stripe", return_value=_mock_stripe()):
            await service.create_checkout_session("pro")

        assert row.billing_status == "active"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("plan_key", ["enterprise", "trial", "gold", ""])
    async def test_rejects_non_purchasable_plan(self, db_session, test_settings, agency, plan_key: str) -> None:
        service = _service(db_session, test_settings)
        mock_stripe = _mock_stripe()
        with patch.object(service, "_get_stripe", return_value=mock_stripe), pytest.raises(InvalidArgument):
            await service.create_checkout_session(plan_key)
        mock_stripe.checkout.Session.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_price_is_internal(self, db_session, test_settings, agency) -> None:
        settings = test_settings.model_copy(update={"stripe_price_pro": ""})
        service = _service(db_session, settings)
        with pytest.raises(Internal) as exc_info:
            await service.create_checkout_session("pro")
        assert exc_info.value.public_message == "Missing price configuration"

    @pytest.mark.asyncio
    async def test_unknown_agency_is_not_found(self, db_session, test_settings) -> None:
        service = BillingService(db_session, test_settings, agency_id="ghost")
        with pytest.raises(NotFound):
            await service.create_checkout_session("pro")

    @pytest.mark.asyncio
    async def test_invalid_request_maps_to_invalid_argument(
        self, db_session, test_settings, agency, session_factory
    ) -> None:
        service = _service(db_session, test_settings)
        mock_stripe = _mock_stripe()
        mock_stripe.checkout.Session.create.side_effect = stripe.InvalidRequestError("No such price", param="price")

        with patch.object(service, "_get_stripe", return_value=mock_stripe), pytest.raises(InvalidArgument):
            await service.create_checkout_session("pro")

        # The customer was committed before checkout failed.
        row = await _agency_row(session_factory)
        assert row.billing_stripe_customer_id == "cus_123"
        assert row.billing_status == "customer_created"

    @pytest.mark.asyncio
    async def test_other_stripe_error_maps_to_internal(self, db_session, test_settings, agency) -> None:
        service = _service(db_session, test_settings)
        mock_stripe = _mock_stripe()
        mock_stripe.checkout.Session.create.side_effect = stripe.APIConnectionError("network down")

        with patch.object(service, "_get_stripe", return_value=mock_stripe), pytest.raises(Internal):
            await service.create_checkout_session("pro")


# ---------------------------------------------------------------------------
# Portal
# ---------------------------------------------------------------------------


class TestCreatePortalSession:
    @pytest.mark.asyncio
    async def test_requires_customer(self, db_session, test_settings, agency) -> None:
        service = _service(db_session, test_settings)
        with pytest.raises(FailedPrecondition) as exc_info:
            await service.create_portal_session()
        assert "subscribe to a plan first" in exc_info.value.public_message

    @pytest.mark.asyncio
    async def test_returns_portal_url(self, db_session, test_settings, agency) -> None:
        row = await AgencyRepository(db_session).get(AGENCY_ID)
        row.billing_stripe_customer_id = "cus_existing"
        await db_session.flush()

        service = _service(db_session, test_settings)
        mock_stripe = _mock_stripe()
        with patch.object(service, "_get_stripe", return_value=mock_stripe):
            result = await service.create_portal_session()

        assert result == {"portal_url": "https://billing.stripe.test/session"}
        mock_stripe.billing_portal.Session.create.assert_called_once_with(
            customer="cus_existing",
            return_url=f"{APP_URL}/billing",
        )


class TestBillingDisabled:
    @pytest.mark.asyncio
    async def test_checkout_refused(self, db_session, test_settings, agency) -> None:
        disabled = test_settings.model_copy(update={"billing_enabled": False})
        service = _service(db_session, disabled)
        mock_stripe = _mock_stripe()
        with patch.object(service, "_get_stripe", return_value=mock_stripe):
            with pytest.raises(Internal) as exc_info:
                await service.create_checkout_session("pro")

        assert exc_info.value.public_message == "Billing is not configured"
        mock_stripe.Customer.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_portal_refused(self, db_session, test_settings, agency) -> None:
        disabled = test_settings.model_copy(update={"billing_enabled": False})
        with pytest.raises(Internal):
            await _service(db_session, disabled).create_portal_session()


# ---------------------------------------------------------------------------
# Subscription info and catalogue
# ---------------------------------------------------------------------------


class TestSubscriptionInfo:
    @pytest.mark.asyncio
    async def test_new_agency_is_on_trial(self, db_session, test_settings, agency) -> None:
        info = await _service(db_session, test_settings).get_subscription_info()
        assert info["status"] == "none"
        assert info["effective_plan"] == "trial"
        assert info["limits"]["max_groups"] == 1
        assert info["has_customer"] is False

    @pytest.mark.asyncio
    async def test_override_applies_without_subscription(self, db_session, test_settings, agency) -> None:
        row = await AgencyRepository(db_session).get(AGENCY_ID)
        row.plan_key = "enterprise"
        await db_session.flush()
        assert effective_plan_for(row).value == "enterprise"

        row.billing_status = "active"
        row.billing_plan_key = "pro"
        assert effective_plan_for(row).value == "pro"

    def test_catalogue_lists_all_plans_with_prices(self, test_settings) -> None:
        plans = {p["plan_key"]: p for p in list_plans(test_settings)}
        assert set(plans) == {"trial", "solo_groups", "pro", "enterprise"}
        assert plans["pro"]["price_id"] == "price_pro"
        assert plans["pro"]["self_service"] is True
        assert plans["enterprise"]["self_service"] is False
        assert plans["enterprise"]["price_id"] is None
        assert plans["pro"]["limits"]["max_groups"] is None
        assert "bulk_import" in plans["pro"]["features"]
        assert "bulk_import" not in plans["solo_groups"]["features"]


# ---------------------------------------------------------------------------
# Webhook processing
# ---------------------------------------------------------------------------


def _event(event_id: str, event_type: str, data_object: dict[str, Any]) -> dict[str, Any]:
    return {"id": event_id, "type": event_type, "data": {"object": data_object}}


def _subscription(status: str = "active", price: str = "price_pro", **extra: Any) -> dict[str, Any]:
    payload = {
        "id": "sub_1",
        "customer": "cus_123",
        "status": status,
        "metadata": {"agencyId": AGENCY_ID, "planKey": "pro"},
        "current_period_end": 1790000000,
        "cancel_at_period_end": False,
        "items": {"data": [{"price": {"id": price}}]},
    }
    payload.update(extra)
    return payload


async def _event_count(session_factory) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(StripeEventTable))
        return int(result.scalar_one())


class TestProcessWebhookEvent:
    @pytest.mark.asyncio
    async def test_subscription_updated_sets_plan_and_period(self, session_factory, test_settings, agency) -> None:
        outcome = await process_webhook_event(
            session_factory,
            test_settings,
            _event("evt_1", "customer.subscription.updated", _subscription(price="price_solo")),
        )

        assert outcome == "applied"
        row = await _agency_row(session_factory)
        assert row.billing_status == "active"
        assert row.billing_plan_key == "solo_groups"
        assert row.billing_price_id == "price_solo"
        assert row.billing_subscription_id == "sub_1"
        assert row.billing_current_period_end == datetime.fromtimestamp(1790000000, tz=UTC)

    @pytest.mark.asyncio
    async def test_checkout_completed_attaches_ids(self, session_factory, test_settings, agency) -> None:
        session_object = {"customer": "cus_9", "subscription": "sub_9", "metadata": {"agencyId": AGENCY_ID}}
        await process_webhook_event(
            session_factory, test_settings, _event("evt_c", "checkout.session.completed", session_object)
        )

        row = await _agency_row(session_factory)
        assert row.billing_stripe_customer_id == "cus_9"
        assert row.billing_subscription_id == "sub_9"
        assert row.billing_status == "active"

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_a_no_op(self, session_factory, test_settings, agency) -> None:
        created = _event("evt_1", "customer.subscription.created", _subscription())
        await process_webhook_event(session_factory, test_settings, created)
        await process_webhook_event(
            session_factory, test_settings, _event("evt_2", "invoice.payment_failed", {"customer": "cus_123"})
        )

        # Replaying the first event must not undo the later past_due.
        outcome = await process_webhook_event(session_factory, test_settings, created)

        assert outcome == "duplicate"
        row = await _agency_row(session_factory)
        assert row.billing_status == "past_due"
        assert await _event_count(session_factory) == 2

    @pytest.mark.asyncio
    async def test_resolves_agency_by_customer_id(self, session_factory, test_settings, agency) -> None:
        await process_webhook_event(
            session_factory, test_settings, _event("evt_1", "customer.subscription.created", _subscription())
        )
        outcome = await process_webhook_event(
            session_factory, test_settings, _event("evt_2", "invoice.payment_failed", {"customer": "cus_123"})
        )

        assert outcome == "applied"
        assert (await _agency_row(session_factory)).billing_status == "past_due"

    @pytest.mark.asyncio
    async def test_invoice_paid_clears_past_due(self, session_factory, test_settings, agency) -> None:
        await process_webhook_event(
            session_factory, test_settings, _event("evt_1", "customer.subscription.created", _subscription())
        )
        await process_webhook_event(
            session_factory, test_settings, _event("evt_2", "invoice.payment_failed", {"customer": "cus_123"})
        )
        await process_webhook_event(
            session_factory, test_settings, _event("evt_3", "invoice.paid", {"customer": "cus_123"})
        )

        assert (await _agency_row(session_factory)).billing_status == "active"

    @pytest.mark.asyncio
    async def test_subscription_deleted_keeps_agency(self, session_factory, test_settings, agency) -> None:
        await process_webhook_event(
            session_factory, test_settings, _event("evt_1", "customer.subscription.created", _subscription())
        )
        await process_webhook_event(
            session_factory,
            test_settings,
            _event("evt_2", "customer.subscription.deleted", _subscription(status="canceled")),
        )

        row = await _agency_row(session_factory)
        assert row is not None
        assert row.billing_status == "canceled"
        assert row.billing_cancel_at_period_end is False
        assert effective_plan_for(row).value == "trial"

    @pytest.mark.asyncio
    async def test_unknown_agency_is_acknowledged(self, session_factory, test_settings, agency) -> None:
        outcome = await process_webhook_event(
            session_factory,
            test_settings,
            _event("evt_x", "invoice.payment_failed", {"customer": "cus_nobody"}),
        )
        assert outcome == "ignored"
        assert await _event_count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_unhandled_type_is_ignored(self, session_factory, test_settings, agency) -> None:
        outcome = await process_webhook_event(
            session_factory, test_settings, _event("evt_y", "charge.refunded", {"customer": "cus_123"})
        )
        assert outcome == "ignored"
        assert (await _agency_row(session_factory)).billing_status == "none"

    @pytest.mark.asyncio
    async def test_event_without_id_is_invalid(self, session_factory, test_settings) -> None:
        with pytest.raises(InvalidArgument):
            await process_webhook_event(session_factory, test_settings, {"type": "invoice.paid"})
