"""User profile, check-in reward, and credit ledger models."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from imagegen.models.base import Base

TRANSACTION_TYPES = ("usage", "bonus", "referral", "check_in", "purchase")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserProfile(Base):
    """Profile row owned by the identity provider; we only touch credit fields."""

    __tablename__ = "user_profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    referral_code: Mapped[Optional[str]] = mapped_column(
        String(32), unique=True, nullable=True
    )
    referred_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("user_profiles.id"), nullable=True
    )
    last_check_in: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    consecutive_check_ins: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    active_plan_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    subscription_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_user_profiles_credits_non_negative"),
    )


class CheckInReward(Base):
    __tablename__ = "check_in_rewards"

    day: Mapped[int] = mapped_column(Integer, primary_key=True)
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    is_bonus_day: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        CheckConstraint("day BETWEEN 1 AND 7", name="ck_check_in_rewards_day"),
    )


class CreditTransaction(Base):
    """Append-only ledger row. UPDATE/DELETE are rejected by a trigger in Postgres."""

    __tablename__ = "credit_transactions"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("user_profiles.id"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    related_image_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("images.id"), nullable=True
    )
    related_order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "transaction_type IN ('usage', 'bonus', 'referral', 'check_in', 'purchase')",
            name="ck_credit_transaction_type",
        ),
    )


class BonusClaim(Base):
    """One-off bonus award.

    The unique key makes each claim single-use: ``social_share`` uses the
    UTC date, ``tutorial`` uses the tutorial type.
    """

    __tablename__ = "bonus_claims"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("user_profiles.id"), nullable=False
    )
    claim_type: Mapped[str] = mapped_column(String(20), nullable=False)
    claim_key: Mapped[str] = mapped_column(String(64), nullable=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "claim_type", "claim_key", name="uq_bonus_claims_once"),
        CheckConstraint(
            "claim_type IN ('social_share', 'tutorial')", name="ck_bonus_claims_type"
        ),
    )
