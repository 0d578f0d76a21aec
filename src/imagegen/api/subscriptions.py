"""Subscription checkout, redirect confirmation, status, and cancellation."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.api.dependencies import get_current_user, get_payment_gateway
from imagegen.config import settings
from imagegen.database import get_db
from imagegen.models import UserProfile
from imagegen.services.payment_service import StripeGateway
from imagegen.services.subscription_service import (
    CheckoutRequest,
    CheckoutResponse,
    SubscriptionStatus,
    cancel_subscription,
    confirm_redirect,
    create_checkout,
    get_status,
)

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(
    body: CheckoutRequest,
    current_user: UserProfile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    """Create a pending order and return the hosted checkout URL."""
    return await create_checkout(db, gateway, current_user.id, current_user.email, body.plan_id)


@router.get("/callback")
async def checkout_callback(
    order_id: uuid.UUID | None = Query(None),
    status: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    """Browser redirect target after checkout. Safe to hit repeatedly."""
    path = await confirm_redirect(db, gateway, order_id, status)
    return RedirectResponse(url=f"{settings.SITE_URL.rstrip('/')}{path}", status_code=303)


@router.get("/status", response_model=SubscriptionStatus)
async def subscription_status(
    current_user: UserProfile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_status(db, current_user.id)


@router.post("/cancel", response_model=SubscriptionStatus)
async def cancel(
    current_user: UserProfile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Stop renewal at the end of the current period."""
    return await cancel_subscription(db, current_user.id)
