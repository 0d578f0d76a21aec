"""Referral linking and rewards.

A referee can be linked to a referrer exactly once (``referrals.referee_id``
is unique).  The referrer earns a signup reward when the link is made and a
purchase reward the first time the referee buys a plan.
"""

from __future__ import annotations

import secrets
import string
import uuid
from datetime import datetime, timezone

from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.config import settings
from imagegen.errors import NotFoundError, ValidationError
from imagegen.models import Referral, UserProfile
from imagegen.services.audit_logger import AuditLogger
from imagegen.services.credit_service import (
    ReferralStats,
    append_transaction,
    get_referral_stats,
    referral_link,
)

audit = AuditLogger()

_CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class LinkReferralRequest(BaseModel):
    referral_code: str


class ReferrerInfo(BaseModel):
    id: uuid.UUID
    name: str


class LinkReferralResponse(BaseModel):
    success: bool = True
    message: str
    referrer: ReferrerInfo


class ValidateReferralResponse(BaseModel):
    valid: bool
    referrer_name: str | None = None


class ReferralItem(BaseModel):
    id: uuid.UUID
    status: str
    referrer_reward: int
    created_at: datetime
    completed_at: datetime | None = None


class ReferralOverview(BaseModel):
    referral_code: str
    referral_link: str | None
    stats: ReferralStats
    referrals: list[ReferralItem]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def display_name(profile: UserProfile) -> str:
    if profile.first_name and profile.last_name:
        return f"{profile.first_name} {profile.last_name}"
    if profile.first_name:
        return profile.first_name
    return profile.email.split("@")[0]


def generate_referral_code() -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(CODE_LENGTH))


async def _profile_by_code(db: AsyncSession, code: str) -> UserProfile | None:
    return (
        await db.execute(select(UserProfile).where(UserProfile.referral_code == code))
    ).scalar_one_or_none()


async def ensure_referral_code(db: AsyncSession, user_id: uuid.UUID) -> str:
    """Return the user's referral code, assigning one if the profile has none."""
    current = (
        await db.execute(select(UserProfile.referral_code).where(UserProfile.id == user_id))
    ).one_or_none()
    if current is None:
        raise NotFoundError("User profile not found")
    if current.referral_code:
        return current.referral_code

    for _ in range(3):
        code = generate_referral_code()
        try:
            result = await db.execute(
                update(UserProfile)
                .where(UserProfile.id == user_id, UserProfile.referral_code.is_(None))
                .values(referral_code=code)
                .returning(UserProfile.referral_code)
                .execution_options(synchronize_session=False)
            )
            assigned = result.scalar_one_or_none()
            await db.commit()
        except IntegrityError:
            await db.rollback()
            continue
        if assigned is None:
            # A concurrent request assigned one first.
            return (
                await db.execute(
                    select(UserProfile.referral_code).where(UserProfile.id == user_id)
                )
            ).scalar_one()
        return assigned
    raise ValidationError("Could not allocate a unique referral code")


# ---------------------------------------------------------------------------
# Service functions
# ---------------------------------------------------------------------------

async def validate_code(db: AsyncSession, code: str) -> ValidateReferralResponse:
    if not code:
        raise ValidationError("Referral code is required", valid=False)
    referrer = await _profile_by_code(db, code)
    if referrer is None:
        raise NotFoundError("Invalid referral code", valid=False)
    return ValidateReferralResponse(valid=True, referrer_name=display_name(referrer))


async def link_referral(
    db: AsyncSession,
    referee_id: uuid.UUID,
    code: str,
) -> LinkReferralResponse:
    """Link ``referee_id`` to the owner of ``code`` and pay the signup reward.

    Raises NotFoundError for an unknown code and ValidationError for a self
    referral or a referee that already has a referrer.
    """
    if not code:
        raise ValidationError("Referral code is required")

    referrer = await _profile_by_code(db, code)
    if referrer is None:
        raise NotFoundError("Invalid referral code")
    if referrer.id == referee_id:
        raise ValidationError("Cannot refer yourself")

    signup_reward = settings.REFERRAL_SIGNUP_REWARD
    referee_reward = settings.REFEREE_SIGNUP_REWARD

    linked = await db.execute(
        update(UserProfile)
        .where(UserProfile.id == referee_id, UserProfile.referred_by.is_(None))
        .values(referred_by=referrer.id, updated_at=datetime.now(timezone.utc))
        .returning(UserProfile.id)
        .execution_options(synchronize_session=False)
    )
    if linked.scalar_one_or_none() is None:
        await db.rollback()
        raise ValidationError("User already has a referrer")

    try:
        await db.execute(
            insert(Referral).values(
                id=uuid.uuid4(),
                referrer_id=referrer.id,
                referee_id=referee_id,
                status="pending",
                referrer_reward=signup_reward,
                referee_reward=referee_reward,
                created_at=datetime.now(timezone.utc),
            )
        )
    except IntegrityError as exc:
        await db.rollback()
        raise ValidationError("User already has a referrer") from exc

    await append_transaction(
        db, referrer.id, signup_reward, "referral", "Referral signup bonus"
    )
    if referee_reward > 0:
        await append_transaction(
            db, referee_id, referee_reward, "bonus", "Referral welcome bonus"
        )
    await db.commit()
    audit.log_referral_reward(referrer.id, referee_id, signup_reward, "signup")

    name = display_name(referrer)
    return LinkReferralResponse(
        message=f"Successfully linked to referrer: {name}",
        referrer=ReferrerInfo(id=referrer.id, name=name),
    )


async def complete_referral_on_purchase(db: AsyncSession, referee_id: uuid.UUID) -> bool:
    """Pay the purchase reward for a pending referral, at most once.

    Runs inside the caller's transaction.  Returns True when a reward was paid.
    """
    reward = settings.REFERRAL_PURCHASE_REWARD
    result = await db.execute(
        update(Referral)
        .where(Referral.referee_id == referee_id, Referral.status == "pending")
        .values(
            status="completed",
            completed_at=datetime.now(timezone.utc),
            referrer_reward=Referral.referrer_reward + reward,
        )
        .returning(Referral.referrer_id)
        .execution_options(synchronize_session=False)
    )
    referrer_id = result.scalar_one_or_none()
    if referrer_id is None:
        return False

    await append_transaction(
        db, referrer_id, reward, "referral", "Referral purchase bonus"
    )
    audit.log_referral_reward(referrer_id, referee_id, reward, "purchase")
    return True


async def get_overview(db: AsyncSession, user_id: uuid.UUID) -> ReferralOverview:
    code = await ensure_referral_code(db, user_id)
    rows = (
        await db.execute(
            select(Referral)
            .where(Referral.referrer_id == user_id)
            .order_by(Referral.created_at.desc())
        )
    ).scalars().all()
    return ReferralOverview(
        referral_code=code,
        referral_link=referral_link(code),
        stats=await get_referral_stats(db, user_id),
        referrals=[ReferralItem.model_validate(r, from_attributes=True) for r in rows],
    )
