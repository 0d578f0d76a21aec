"""One-off bonus credits: social sharing and tutorial completion.

Each award inserts a ``bonus_claims`` row whose unique key makes it
single-use, in the same transaction as the ``bonus`` ledger row.  A
duplicate claim fails on the constraint and the whole transaction rolls
back, so concurrent requests can never both be paid.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone

import structlog
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.config import settings
from imagegen.errors import ConflictError, ValidationError
from imagegen.models import BonusClaim
from imagegen.services.credit_service import append_transaction

log = structlog.get_logger()

CLAIM_SOCIAL_SHARE = "social_share"
CLAIM_TUTORIAL = "tutorial"

TUTORIAL_REWARDS = {"intro": 3, "advanced": 5, "expert": 10}


class SocialShareRequest(BaseModel):
    platform: str | None = None
    content: str | None = None


class TutorialRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tutorial_type: str | None = Field(None, alias="tutorialType")


class BonusResult(BaseModel):
    credits_awarded: int
    new_balance: int
    message: str
    platform: str | None = None
    tutorial_type: str | None = None


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

async def _award_once(
    db: AsyncSession,
    user_id: uuid.UUID,
    claim_type: str,
    claim_key: str,
    credits: int,
    description: str,
    conflict_message: str,
) -> int:
    """Pay ``credits`` unless this (type, key) claim already exists. Returns the new balance."""
    try:
        new_balance = await append_transaction(db, user_id, credits, "bonus", description)
        await db.execute(
            insert(BonusClaim).values(
                user_id=user_id,
                claim_type=claim_type,
                claim_key=claim_key,
                credits=credits,
                created_at=datetime.now(timezone.utc),
            )
        )
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        log.info("bonus_claim_duplicate", user_id=str(user_id), claim_type=claim_type, claim_key=claim_key)
        raise ConflictError(conflict_message) from exc
    except Exception:
        await db.rollback()
        raise
    return new_balance


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def claim_social_share(
    db: AsyncSession,
    user_id: uuid.UUID,
    platform: str | None,
    today: date | None = None,
) -> BonusResult:
    """Pay the social share bonus, at most once per UTC day.

    Raises ValidationError (400) without a platform, ConflictError (409)
    when already claimed today.
    """
    platform = (platform or "").strip()
    if not platform:
        raise ValidationError("Platform is required")
    today = today or datetime.now(timezone.utc).date()
    credits = settings.SOCIAL_SHARE_REWARD

    new_balance = await _award_once(
        db,
        user_id,
        CLAIM_SOCIAL_SHARE,
        today.isoformat(),
        credits,
        f"Social share reward ({platform})",
        "Social share bonus already claimed today",
    )
    return BonusResult(
        credits_awarded=credits,
        new_balance=new_balance,
        platform=platform,
        message=f"Social share bonus! Earned {credits} credits.",
    )


async def complete_tutorial(
    db: AsyncSession,
    user_id: uuid.UUID,
    tutorial_type: str | None,
) -> BonusResult:
    """Pay a tutorial's completion reward once per user and tutorial."""
    if not tutorial_type:
        raise ValidationError("Tutorial type is required")
    credits = TUTORIAL_REWARDS.get(tutorial_type)
    if credits is None:
        raise ValidationError(
            f"Unknown tutorial type: {tutorial_type}", allowed=sorted(TUTORIAL_REWARDS)
        )

    new_balance = await _award_once(
        db,
        user_id,
        CLAIM_TUTORIAL,
        tutorial_type,
        credits,
        f"{tutorial_type.capitalize()} tutorial completion reward",
        "Tutorial already completed",
    )
    return BonusResult(
        credits_awarded=credits,
        new_balance=new_balance,
        tutorial_type=tutorial_type,
        message=f"Tutorial completed! Earned {credits} credits.",
    )
