"""Tests for checkout, allocation, redirect confirmation, and cancellation."""

from __future__ import annotations

import uuid
from datetime import datetime
from unittest.mock import patch

import pytest
from sqlalchemy import select

from imagegen.errors import NotFoundError, ValidationError
from imagegen.models import Order, Subscription
from imagegen.services.credit_service import get_balance, get_ledger_sum
from imagegen.services.referral_service import link_referral
from imagegen.services.subscription_service import (
    add_months,
    allocate_subscription,
    cancel_subscription,
    confirm_redirect,
    create_checkout,
    get_status,
)

from conftest import FakeGateway


async def _order(db, order_id) -> Order:
    return (
        await db.execute(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
    ).scalar_one()


async def _active_subscriptions(db, user_id):
    return (
        await db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.status == "active")
            .execution_options(populate_existing=True)
        )
    ).scalars().all()


def test_add_months_clamps_day():
    assert add_months(datetime(2026, 1, 31), 1) == datetime(2026, 2, 28)
    assert add_months(datetime(2028, 1, 31), 1) == datetime(2028, 2, 29)
    assert add_months(datetime(2026, 11, 15), 3) == datetime(2027, 2, 15)


@pytest.mark.asyncio
async def test_create_checkout_records_pending_order(db_session, make_profile):
    profile = await make_profile()
    gateway = FakeGateway()

    checkout = await create_checkout(db_session, gateway, profile.id, profile.email, "basic_monthly")

    session_id = gateway.sessions[0]
    assert checkout.checkout_url == f"https://checkout.test/{session_id}"
    order = await _order(db_session, checkout.order_id)
    assert order.status == "pending"
    assert order.external_order_id == session_id


@pytest.mark.asyncio
async def test_create_checkout_unknown_plan(db_session, make_profile):
    profile = await make_profile()
    with pytest.raises(NotFoundError):
        await create_checkout(db_session, FakeGateway(), profile.id, None, "enterprise")


@pytest.mark.asyncio
async def test_allocation_grants_credits_once(db_session, make_profile):
    profile = await make_profile(credits=5)
    checkout = await create_checkout(db_session, FakeGateway(), profile.id, None, "basic_monthly")

    first = await allocate_subscription(db_session, checkout.order_id)
    replay = await allocate_subscription(db_session, checkout.order_id)

    assert first.allocated is True
    assert first.credits == 100
    assert first.new_balance == 105
    assert replay.allocated is False
    assert await get_balance(db_session, profile.id) == 105
    assert await get_ledger_sum(db_session, profile.id) == 105

    order = await _order(db_session, checkout.order_id)
    assert order.status == "completed"
    assert order.subscription_id == first.subscription_id
    assert len(await _active_subscriptions(db_session, profile.id)) == 1


@pytest.mark.asyncio
async def test_new_plan_expires_previous_subscription(db_session, make_profile):
    profile = await make_profile()
    basic = await create_checkout(db_session, FakeGateway(), profile.id, None, "basic_monthly")
    pro = await create_checkout(db_session, FakeGateway(), profile.id, None, "pro_monthly")

    await allocate_subscription(db_session, basic.order_id)
    await allocate_subscription(db_session, pro.order_id)

    active = await _active_subscriptions(db_session, profile.id)
    assert [s.plan_id for s in active] == ["pro_monthly"]
    assert await get_balance(db_session, profile.id) == 600


@pytest.mark.asyncio
async def test_allocation_error_rolls_back_and_leaves_order_pending(db_session, make_profile):
    profile = await make_profile()
    checkout = await create_checkout(db_session, FakeGateway(), profile.id, None, "basic_monthly")

    with patch(
        "imagegen.services.subscription_service.complete_referral_on_purchase",
        side_effect=RuntimeError("boom"),
    ):
        with pytest.raises(RuntimeError):
            await allocate_subscription(db_session, checkout.order_id)

    assert (await _order(db_session, checkout.order_id)).status == "pending"
    assert await get_balance(db_session, profile.id) == 0
    assert await _active_subscriptions(db_session, profile.id) == []

    retried = await allocate_subscription(db_session, checkout.order_id)
    assert retried.allocated is True
    assert await get_balance(db_session, profile.id) == 100


@pytest.mark.asyncio
async def test_first_purchase_completes_pending_referral(db_session, make_profile):
    referrer = await make_profile(referral_code="REFA0001")
    referee = await make_profile()
    await link_referral(db_session, referee.id, "REFA0001")
    checkout = await create_checkout(db_session, FakeGateway(), referee.id, None, "basic_monthly")

    result = await allocate_subscription(db_session, checkout.order_id)

    assert result.referral_rewarded is True
    assert await get_balance(db_session, referrer.id) == 40


# ---------------------------------------------------------------------------
# Redirect confirmation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_confirm_redirect_paths(db_session, make_profile):
    profile = await make_profile()
    gateway = FakeGateway(paid=False)
    checkout = await create_checkout(db_session, gateway, profile.id, None, "basic_monthly")

    assert await confirm_redirect(db_session, gateway, None, "success") == "/pricing?error=missing_order"
    assert (
        await confirm_redirect(db_session, gateway, uuid.uuid4(), "success")
        == "/pricing?error=order_not_found"
    )
    assert (
        await confirm_redirect(db_session, gateway, checkout.order_id, "success")
        == "/pricing?error=payment_pending"
    )

    gateway.paid = True
    assert (
        await confirm_redirect(db_session, gateway, checkout.order_id, "success")
        == "/billing?subscribed=true"
    )
    assert (
        await confirm_redirect(db_session, gateway, checkout.order_id, "success")
        == "/billing?subscribed=true"
    )
    assert await get_balance(db_session, profile.id) == 100


@pytest.mark.asyncio
async def test_confirm_redirect_cancel_fails_order(db_session, make_profile):
    profile = await make_profile()
    gateway = FakeGateway()
    checkout = await create_checkout(db_session, gateway, profile.id, None, "basic_monthly")

    path = await confirm_redirect(db_session, gateway, checkout.order_id, "cancel")

    assert path == "/pricing?cancelled=true"
    assert (await _order(db_session, checkout.order_id)).status == "failed"
    assert (
        await confirm_redirect(db_session, gateway, checkout.order_id, "success")
        == "/pricing?error=invalid_order"
    )


@pytest.mark.asyncio
async def test_confirm_redirect_allocation_failure(db_session, make_profile):
    profile = await make_profile()
    gateway = FakeGateway()
    checkout = await create_checkout(db_session, gateway, profile.id, None, "basic_monthly")

    with patch(
        "imagegen.services.subscription_service.append_transaction",
        side_effect=RuntimeError("db hiccup"),
    ):
        path = await confirm_redirect(db_session, gateway, checkout.order_id, "success")

    assert path == "/pricing?error=processing_failed"
    assert (await _order(db_session, checkout.order_id)).status == "pending"


# ---------------------------------------------------------------------------
# Status and cancellation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_status_and_idempotent_cancel(db_session, make_profile):
    profile = await make_profile()
    assert (await get_status(db_session, profile.id)).active is False
    with pytest.raises(ValidationError):
        await cancel_subscription(db_session, profile.id)

    checkout = await create_checkout(db_session, FakeGateway(), profile.id, None, "pro_monthly")
    await allocate_subscription(db_session, checkout.order_id)

    status = await get_status(db_session, profile.id)
    assert status.active is True
    assert status.plan_name == "Pro"
    assert status.credits == 500

    cancelled = await cancel_subscription(db_session, profile.id)
    again = await cancel_subscription(db_session, profile.id)
    assert cancelled.cancel_at_period_end is True
    assert again.cancel_at_period_end is True
    assert again.active is True


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_checkout_and_callback_endpoints(client, make_profile, auth_headers):
    profile = await make_profile()

    checkout = await client.post(
        "/api/v1/subscriptions/checkout",
        json={"plan_id": "basic_monthly"},
        headers=auth_headers(profile.id),
    )
    order_id = checkout.json()["order_id"]
    redirect = await client.get(
        "/api/v1/subscriptions/callback", params={"order_id": order_id, "status": "success"}
    )
    status = await client.get("/api/v1/subscriptions/status", headers=auth_headers(profile.id))

    assert checkout.status_code == 200
    assert redirect.status_code == 303
    assert redirect.headers["location"] == "http://site.test/billing?subscribed=true"
    assert status.json()["credits"] == 100
