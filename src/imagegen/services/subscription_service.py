"""Subscription checkout, confirmation, and credit allocation.

Allocation is gated on the order row: the ``pending -> completed`` update
is the first statement of the allocation transaction, so replays from the
redirect callback, the Stripe webhook, or a retried request all become
no-ops once one of them has committed.
"""

from __future__ import annotations

import calendar
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.errors import NotFoundError, ValidationError
from imagegen.models import Order, PaymentPlan, Subscription, UserProfile
from imagegen.services.audit_logger import AuditLogger
from imagegen.services.credit_service import append_transaction
from imagegen.services.referral_service import complete_referral_on_purchase

if TYPE_CHECKING:
    from imagegen.services.payment_service import StripeGateway

log = structlog.get_logger()
audit = AuditLogger()


# ---------------------------------------------------------------------------
# Schemas / result types
# ---------------------------------------------------------------------------

class CheckoutRequest(BaseModel):
    plan_id: str


class CheckoutResponse(BaseModel):
    order_id: uuid.UUID
    checkout_url: str


class SubscriptionStatus(BaseModel):
    active: bool
    plan_id: str | None = None
    plan_name: str | None = None
    status: str | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    credits: int = 0


@dataclass
class AllocationResult:
    order_id: uuid.UUID
    allocated: bool
    subscription_id: uuid.UUID | None = None
    credits: int = 0
    new_balance: int | None = None
    referral_rewarded: bool = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def add_months(start: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 -> Feb 28/29)."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


async def _get_order(db: AsyncSession, order_id: uuid.UUID) -> Order | None:
    return (
        await db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------

async def allocate_subscription(db: AsyncSession, order_id: uuid.UUID) -> AllocationResult:
    """Turn a paid order into an active subscription plus credits.

    Everything happens in one transaction.  Any error rolls it back, which
    leaves the order ``pending`` so a later replay can succeed.
    """
    now = datetime.now(timezone.utc)
    try:
        gate = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == "pending")
            .values(status="completed", updated_at=now)
            .returning(Order.user_id, Order.plan_id, Order.external_order_id)
            .execution_options(synchronize_session=False)
        )
        order = gate.one_or_none()
        if order is None:
            await db.rollback()
            log.info("subscription_allocation_skipped", order_id=str(order_id))
            return AllocationResult(order_id=order_id, allocated=False)

        plan = (
            await db.execute(select(PaymentPlan).where(PaymentPlan.id == order.plan_id))
        ).scalar_one_or_none()
        if plan is None:
            raise NotFoundError(f"Payment plan {order.plan_id} not found")

        period_end = add_months(now, plan.duration_months or 1)

        await db.execute(
            update(Subscription)
            .where(Subscription.user_id == order.user_id, Subscription.status == "active")
            .values(status="expired", updated_at=now)
            .execution_options(synchronize_session=False)
        )

        subscription_id = uuid.uuid4()
        await db.execute(
            insert(Subscription).values(
                id=subscription_id,
                user_id=order.user_id,
                plan_id=plan.id,
                status="active",
                current_period_start=now,
                current_period_end=period_end,
                credits_included=plan.credits,
                external_subscription_id=order.external_order_id,
                cancel_at_period_end=False,
                created_at=now,
                updated_at=now,
            )
        )

        new_balance = await append_transaction(
            db,
            order.user_id,
            plan.credits,
            "purchase",
            f"{plan.name} subscription - {plan.credits} credits",
            related_order_id=order_id,
        )

        await db.execute(
            update(UserProfile)
            .where(UserProfile.id == order.user_id)
            .values(active_plan_id=plan.id, subscription_expires_at=period_end, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(subscription_id=subscription_id)
            .execution_options(synchronize_session=False)
        )

        referral_rewarded = await complete_referral_on_purchase(db, order.user_id)
        await db.commit()
    except Exception:
        await db.rollback()
        log.exception("subscription_allocation_failed", order_id=str(order_id))
        raise

    audit.log_subscription_allocated(
        order.user_id, order_id, subscription_id, plan.id, plan.credits
    )
    return AllocationResult(
        order_id=order_id,
        allocated=True,
        subscription_id=subscription_id,
        credits=plan.credits,
        new_balance=new_balance,
        referral_rewarded=referral_rewarded,
    )


# ---------------------------------------------------------------------------
# Checkout and confirmation
# ---------------------------------------------------------------------------

async def create_checkout(
    db: AsyncSession,
    gateway: "StripeGateway",
    user_id: uuid.UUID,
    email: str | None,
    plan_id: str,
) -> CheckoutResponse:
    plan = (
        await db.execute(
            select(PaymentPlan).where(PaymentPlan.id == plan_id, PaymentPlan.is_active.is_(True))
        )
    ).scalar_one_or_none()
    if plan is None:
        raise NotFoundError("Payment plan not found")

    order_id = uuid.uuid4()
    now = datetime.now(timezone.utc)
    await db.execute(
        insert(Order).values(
            id=order_id,
            user_id=user_id,
            plan_id=plan.id,
            status="pending",
            created_at=now,
            updated_at=now,
        )
    )
    await db.commit()

    session_id, url = gateway.create_checkout_session(order_id, user_id, plan, email)

    await db.execute(
        update(Order)
        .where(Order.id == order_id)
        .values(external_order_id=session_id, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    log.info("checkout_created", order_id=str(order_id), plan_id=plan.id)
    return CheckoutResponse(order_id=order_id, checkout_url=url)


async def confirm_redirect(
    db: AsyncSession,
    gateway: "StripeGateway",
    order_id: uuid.UUID | None,
    status: str | None,
) -> str:
    """Handle the checkout redirect and return the page path to send the user to."""
    if order_id is None:
        return "/pricing?error=missing_order"

    order = await _get_order(db, order_id)
    if order is None:
        return "/pricing?error=order_not_found"

    if status == "cancel":
        await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == "pending")
            .values(status="failed", updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return "/pricing?cancelled=true"

    if order.status == "completed":
        return "/billing?subscribed=true"
    if order.status != "pending" or not order.external_order_id:
        return "/pricing?error=invalid_order"

    if not gateway.is_session_paid(order.external_order_id):
        return "/pricing?error=payment_pending"

    try:
        await allocate_subscription(db, order_id)
    except Exception:
        # Already logged and rolled back; the order stays pending for a replay.
        return "/pricing?error=processing_failed"
    return "/billing?subscribed=true"


# ---------------------------------------------------------------------------
# Status and cancellation
# ---------------------------------------------------------------------------

async def _active_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    return (
        await db.execute(
            select(Subscription).where(
                Subscription.user_id == user_id, Subscription.status == "active"
            )
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def get_status(db: AsyncSession, user_id: uuid.UUID) -> SubscriptionStatus:
    credits = (
        await db.execute(select(UserProfile.credits).where(UserProfile.id == user_id))
    ).scalar_one_or_none()
    if credits is None:
        raise NotFoundError("User profile not found")

    sub = await _active_subscription(db, user_id)
    if sub is None:
        return SubscriptionStatus(active=False, credits=credits)
    return SubscriptionStatus(
        active=True,
        plan_id=sub.plan_id,
        plan_name=sub.plan.name if sub.plan else None,
        status=sub.status,
        current_period_end=sub.current_period_end,
        cancel_at_period_end=sub.cancel_at_period_end,
        credits=credits,
    )


async def cancel_subscription(db: AsyncSession, user_id: uuid.UUID) -> SubscriptionStatus:
    """Stop renewal at period end. Calling it again changes nothing."""
    sub = await _active_subscription(db, user_id)
    if sub is None:
        raise ValidationError("No active subscription")
    if not sub.cancel_at_period_end:
        now = datetime.now(timezone.utc)
        await db.execute(
            update(Subscription)
            .where(Subscription.id == sub.id, Subscription.cancel_at_period_end.is_(False))
            .values(cancel_at_period_end=True, cancelled_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        log.info("subscription_cancel_scheduled", subscription_id=str(sub.id))
    return await get_status(db, user_id)
