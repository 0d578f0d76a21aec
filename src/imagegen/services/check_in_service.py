"""Daily check-in rewards.

Users may check in once per UTC calendar day.  Consecutive days build a
streak that selects the reward from ``check_in_rewards`` (day 7 and beyond
use the day-7 row); missing reward rows pay 1 credit.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone

from pydantic import BaseModel
from sqlalchemy import case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.errors import ConflictError, NotFoundError
from imagegen.models import CheckInReward, UserProfile
from imagegen.services.credit_service import append_transaction

DEFAULT_REWARD = 1
MAX_STREAK_DAY = 7


class CheckInResult(BaseModel):
    credits_awarded: int
    consecutive_days: int
    is_bonus_day: bool
    new_balance: int
    message: str


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


async def _reward_for(db: AsyncSession, streak: int) -> tuple[int, bool]:
    row = (
        await db.execute(
            select(CheckInReward.credits, CheckInReward.is_bonus_day).where(
                CheckInReward.day == min(streak, MAX_STREAK_DAY)
            )
        )
    ).one_or_none()
    if row is None:
        return DEFAULT_REWARD, False
    return row.credits or DEFAULT_REWARD, bool(row.is_bonus_day)


async def check_in(
    db: AsyncSession,
    user_id: uuid.UUID,
    today: date | None = None,
) -> CheckInResult:
    """Record today's check-in and pay the streak reward.

    The streak update is a single conditional UPDATE, so two concurrent
    requests on the same day can never both succeed.

    Raises ConflictError (409) when already checked in today.
    Raises NotFoundError (404) when the user has no profile.
    """
    today = today or _utc_today()
    yesterday = today - timedelta(days=1)

    result = await db.execute(
        update(UserProfile)
        .where(
            UserProfile.id == user_id,
            or_(UserProfile.last_check_in.is_(None), UserProfile.last_check_in != today),
        )
        .values(
            consecutive_check_ins=case(
                (UserProfile.last_check_in == yesterday, UserProfile.consecutive_check_ins + 1),
                else_=1,
            ),
            last_check_in=today,
            updated_at=datetime.now(timezone.utc),
        )
        .returning(UserProfile.consecutive_check_ins)
        .execution_options(synchronize_session=False)
    )
    streak = result.scalar_one_or_none()
    if streak is None:
        exists = (
            await db.execute(select(UserProfile.id).where(UserProfile.id == user_id))
        ).scalar_one_or_none()
        await db.rollback()
        if exists is None:
            raise NotFoundError("User profile not found")
        raise ConflictError("Already checked in today")

    credits, is_bonus = await _reward_for(db, streak)
    description = f"Daily check-in reward (Day {streak}{' - Bonus!' if is_bonus else ''})"
    new_balance = await append_transaction(db, user_id, credits, "check_in", description)
    await db.commit()

    plural = "s" if credits > 1 else ""
    return CheckInResult(
        credits_awarded=credits,
        consecutive_days=streak,
        is_bonus_day=is_bonus,
        new_balance=new_balance,
        message=f"Check-in successful! Earned {credits} credit{plural}"
        + (" (Bonus day!)" if is_bonus else ""),
    )
