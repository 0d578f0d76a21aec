"""Referral endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.api.dependencies import get_current_user
from imagegen.database import get_db
from imagegen.models import UserProfile
from imagegen.services.referral_service import (
    LinkReferralRequest,
    LinkReferralResponse,
    ReferralOverview,
    ValidateReferralResponse,
    get_overview,
    link_referral,
    validate_code,
)

router = APIRouter(prefix="/api/v1/referrals", tags=["referrals"])


@router.post("/link", response_model=LinkReferralResponse)
async def link(
    body: LinkReferralRequest,
    current_user: UserProfile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Attach the caller to the owner of a referral code (once per user)."""
    return await link_referral(db, current_user.id, body.referral_code.strip())


@router.get("/validate", response_model=ValidateReferralResponse)
async def validate(
    code: str = Query("", max_length=32),
    db: AsyncSession = Depends(get_db),
):
    return await validate_code(db, code.strip())


@router.get("", response_model=ReferralOverview)
async def overview(
    current_user: UserProfile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Return the caller's code, link, stats, and referrals."""
    return await get_overview(db, current_user.id)
