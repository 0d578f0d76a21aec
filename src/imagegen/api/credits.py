"""Credit balance, ledger, daily check-in, and bonus endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.api.dependencies import get_current_user
from imagegen.database import get_db
from imagegen.models import UserProfile
from imagegen.services.bonus_service import (
    BonusResult,
    SocialShareRequest,
    TutorialRequest,
    claim_social_share,
    complete_tutorial,
)
from imagegen.services.check_in_service import CheckInResult, check_in
from imagegen.services.credit_service import (
    BalanceSummary,
    TransactionPage,
    get_balance_summary,
    list_transactions,
)

router = APIRouter(prefix="/api/v1/credits", tags=["credits"])


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/balance", response_model=BalanceSummary)
async def read_balance(
    current_user: UserProfile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Return the caller's balance, check-in state, and referral stats."""
    return await get_balance_summary(db, current_user.id)


@router.get("/transactions", response_model=TransactionPage)
async def read_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: UserProfile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Return the caller's ledger, newest first."""
    return await list_transactions(db, current_user.id, page=page, limit=limit)


@router.post("/check-in", response_model=CheckInResult)
async def daily_check_in(
    current_user: UserProfile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Claim today's check-in reward (once per UTC day)."""
    return await check_in(db, current_user.id)


@router.post("/social-share", response_model=BonusResult)
async def social_share_bonus(
    body: SocialShareRequest,
    current_user: UserProfile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Claim the social share bonus (once per UTC day)."""
    return await claim_social_share(db, current_user.id, body.platform)


@router.post("/tutorial", response_model=BonusResult)
async def tutorial_bonus(
    body: TutorialRequest,
    current_user: UserProfile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await complete_tutorial(db, current_user.id, body.tutorial_type)
