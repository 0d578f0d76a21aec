"""Credit ledger -- cached balance plus the append-only transaction log.

Every balance change goes through ``append_transaction`` or
``deduct_credits``: one conditional ``UPDATE ... RETURNING`` on the cached
balance followed by the ledger insert, inside the caller's transaction.
Callers commit.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone

from pydantic import BaseModel
from sqlalchemy import func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.config import settings
from imagegen.errors import InsufficientCreditsError, NotFoundError
from imagegen.models import CreditTransaction, Referral, UserProfile
from imagegen.services.audit_logger import AuditLogger

audit = AuditLogger()


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class TransactionResponse(BaseModel):
    id: int
    amount: int
    transaction_type: str
    description: str | None = None
    related_image_id: uuid.UUID | None = None
    related_order_id: uuid.UUID | None = None
    created_at: datetime


class TransactionPage(BaseModel):
    transactions: list[TransactionResponse]
    page: int
    limit: int
    total: int


class ReferralStats(BaseModel):
    total: int = 0
    completed: int = 0
    pending: int = 0
    total_earned: int = 0


class BalanceSummary(BaseModel):
    credits: int
    referral_code: str | None = None
    referral_link: str | None = None
    last_check_in: date | None = None
    consecutive_check_ins: int = 0
    can_check_in: bool = True
    recent_transactions: list[TransactionResponse]
    referral_stats: ReferralStats


# ---------------------------------------------------------------------------
# Service functions
# ---------------------------------------------------------------------------

async def _insert_transaction(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    txn_type: str,
    description: str | None,
    related_image_id: uuid.UUID | None,
    related_order_id: uuid.UUID | None,
) -> None:
    await db.execute(
        insert(CreditTransaction).values(
            user_id=user_id,
            amount=amount,
            transaction_type=txn_type,
            description=description,
            related_image_id=related_image_id,
            related_order_id=related_order_id,
            created_at=datetime.now(timezone.utc),
        )
    )


async def append_transaction(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    txn_type: str,
    description: str | None = None,
    *,
    related_image_id: uuid.UUID | None = None,
    related_order_id: uuid.UUID | None = None,
) -> int:
    """Apply a signed amount to the cached balance and record it.

    No sufficiency check.  Returns the new balance.
    Raises NotFoundError if the user has no profile.
    """
    result = await db.execute(
        update(UserProfile)
        .where(UserProfile.id == user_id)
        .values(
            credits=UserProfile.credits + amount,
            updated_at=datetime.now(timezone.utc),
        )
        .returning(UserProfile.credits)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        raise NotFoundError("User profile not found")

    await _insert_transaction(
        db, user_id, amount, txn_type, description, related_image_id, related_order_id
    )
    audit.log_credit_event(
        user_id, amount, txn_type, new_balance,
        related_image_id=related_image_id, related_order_id=related_order_id,
    )
    return new_balance


async def deduct_credits(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    txn_type: str = "usage",
    description: str | None = None,
    *,
    related_image_id: uuid.UUID | None = None,
) -> int:
    """Atomically debit ``amount`` using UPDATE ... WHERE credits >= amount.

    The conditional update is the sufficiency check, so two concurrent
    debits can never overdraw the balance.

    Returns the new balance on success.
    Raises InsufficientCreditsError (402) if the balance is too low.
    """
    result = await db.execute(
        update(UserProfile)
        .where(UserProfile.id == user_id, UserProfile.credits >= amount)
        .values(
            credits=UserProfile.credits - amount,
            updated_at=datetime.now(timezone.utc),
        )
        .returning(UserProfile.credits)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        available = await get_balance(db, user_id)
        raise InsufficientCreditsError(required=amount, available=available)

    await _insert_transaction(
        db, user_id, -amount, txn_type, description, related_image_id, None
    )
    audit.log_credit_event(
        user_id, -amount, txn_type, new_balance, related_image_id=related_image_id
    )
    return new_balance


async def get_balance(db: AsyncSession, user_id: uuid.UUID) -> int:
    """Return the cached credit balance for a user."""
    result = await db.execute(
        select(UserProfile.credits).where(UserProfile.id == user_id)
    )
    balance = result.scalar_one_or_none()
    if balance is None:
        raise NotFoundError("User profile not found")
    return balance


async def get_ledger_sum(db: AsyncSession, user_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
            CreditTransaction.user_id == user_id
        )
    )
    return int(result.scalar_one())


async def list_transactions(
    db: AsyncSession,
    user_id: uuid.UUID,
    page: int = 1,
    limit: int = 20,
) -> TransactionPage:
    total = (
        await db.execute(
            select(func.count()).select_from(CreditTransaction).where(
                CreditTransaction.user_id == user_id
            )
        )
    ).scalar_one()
    rows = (
        await db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
    ).scalars().all()
    return TransactionPage(
        transactions=[TransactionResponse.model_validate(r, from_attributes=True) for r in rows],
        page=page,
        limit=limit,
        total=total,
    )


async def get_referral_stats(db: AsyncSession, referrer_id: uuid.UUID) -> ReferralStats:
    rows = (
        await db.execute(
            select(Referral.status, Referral.referrer_reward).where(
                Referral.referrer_id == referrer_id
            )
        )
    ).all()
    return ReferralStats(
        total=len(rows),
        completed=sum(1 for r in rows if r.status == "completed"),
        pending=sum(1 for r in rows if r.status == "pending"),
        total_earned=sum(r.referrer_reward for r in rows if r.status == "completed"),
    )


def referral_link(code: str | None) -> str | None:
    if not code:
        return None
    return f"{settings.SITE_URL.rstrip('/')}/ref/{code}"


async def get_balance_summary(db: AsyncSession, user_id: uuid.UUID) -> BalanceSummary:
    """Balance plus the data the credits dashboard shows next to it."""
    profile = (
        await db.execute(
            select(UserProfile)
            .where(UserProfile.id == user_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if profile is None:
        raise NotFoundError("User profile not found")

    recent = await list_transactions(db, user_id, page=1, limit=10)
    today = datetime.now(timezone.utc).date()
    return BalanceSummary(
        credits=profile.credits,
        referral_code=profile.referral_code,
        referral_link=referral_link(profile.referral_code),
        last_check_in=profile.last_check_in,
        consecutive_check_ins=profile.consecutive_check_ins,
        can_check_in=profile.last_check_in != today,
        recent_transactions=recent.transactions,
        referral_stats=await get_referral_stats(db, user_id),
    )
