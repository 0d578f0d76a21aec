"""Consistency checks between the cached balances, the ledger, and the task store.

Both checks are read-only; they report drift and leave repair to an operator
(or, for tasks, to the stale task sweeper).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.models import CreditTransaction, ImageRecord, UserProfile
from imagegen.services.task_store import (
    STATUS_PENDING,
    STATUS_PROCESSING,
    TaskMetadataStore,
)


@dataclass
class BalanceDrift:
    user_id: uuid.UUID
    stored_balance: int
    ledger_balance: int

    @property
    def difference(self) -> int:
        return self.stored_balance - self.ledger_balance

    def to_dict(self) -> dict:
        return {
            "user_id": str(self.user_id),
            "stored_balance": self.stored_balance,
            "ledger_balance": self.ledger_balance,
            "difference": self.difference,
        }


@dataclass
class StatusDrift:
    task_id: str
    image_id: uuid.UUID
    row_status: str
    task_status: str | None  # None: no metadata document

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "image_id": str(self.image_id),
            "row_status": self.row_status,
            "task_status": self.task_status,
        }


async def find_balance_drift(db: AsyncSession) -> list[BalanceDrift]:
    """Users whose ``user_profiles.credits`` differs from the sum of their ledger."""
    ledger = func.coalesce(func.sum(CreditTransaction.amount), 0)
    result = await db.execute(
        select(UserProfile.id, UserProfile.credits, ledger)
        .select_from(UserProfile)
        .outerjoin(CreditTransaction, CreditTransaction.user_id == UserProfile.id)
        .group_by(UserProfile.id, UserProfile.credits)
        .having(UserProfile.credits != ledger)
        .order_by(UserProfile.id)
    )
    return [
        BalanceDrift(user_id=user_id, stored_balance=stored, ledger_balance=int(summed))
        for user_id, stored, summed in result.all()
    ]


async def find_status_drift(
    db: AsyncSession,
    store: TaskMetadataStore,
    batch_size: int = 500,
) -> list[StatusDrift]:
    """Unfinished ``images`` rows whose task document is terminal or missing.

    A terminal document with a lagging row converges on the next callback or
    poll; a missing document is rebuilt by the stale task sweeper.
    """
    result = await db.execute(
        select(ImageRecord.external_task_id, ImageRecord.id, ImageRecord.status)
        .where(
            ImageRecord.status.in_((STATUS_PENDING, STATUS_PROCESSING)),
            ImageRecord.external_task_id.is_not(None),
        )
        .order_by(ImageRecord.created_at)
        .limit(batch_size)
    )
    drift: list[StatusDrift] = []
    for task_id, image_id, row_status in result.all():
        task = await store.get(task_id)
        if task is None or task.is_terminal:
            drift.append(
                StatusDrift(
                    task_id=task_id,
                    image_id=image_id,
                    row_status=row_status,
                    task_status=task.status if task else None,
                )
            )
    return drift
