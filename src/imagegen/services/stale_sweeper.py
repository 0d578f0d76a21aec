"""Background reconciliation of tasks whose callback never arrived."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.config import settings
from imagegen.errors import ImageGenError
from imagegen.models import ImageRecord
from imagegen.services.task_lifecycle import PollReconciler
from imagegen.services.task_store import (
    STATUS_PENDING,
    STATUS_PROCESSING,
    TERMINAL_STATUSES,
    GenerationTask,
    TaskMetadataStore,
)

log = structlog.get_logger()


@dataclass
class SweepReport:
    scanned: int = 0
    rebuilt: int = 0
    finalized: int = 0
    errors: int = 0


@dataclass(frozen=True)
class StaleTask:
    """Column snapshot of an unfinished ``images`` row.

    Plain values rather than ORM instances: a rollback after one failed
    task must not expire the rest of the batch.
    """

    image_id: uuid.UUID
    user_id: uuid.UUID
    external_task_id: str
    status: str
    image_type: str
    prompt: str
    created_at: datetime
    updated_at: datetime | None


_STALE_COLUMNS = (
    ImageRecord.id,
    ImageRecord.user_id,
    ImageRecord.external_task_id,
    ImageRecord.status,
    ImageRecord.image_type,
    ImageRecord.prompt,
    ImageRecord.created_at,
    ImageRecord.updated_at,
)


def task_from_row(row: StaleTask | ImageRecord) -> GenerationTask:
    """Rebuild a metadata document from an ``images`` row or its snapshot."""
    image_id = row.image_id if isinstance(row, StaleTask) else row.id
    return GenerationTask(
        task_id=row.external_task_id,
        status=row.status,
        prompt=row.prompt,
        user_id=str(row.user_id),
        image_id=str(image_id),
        image_type=row.image_type,
        created_at=row.created_at.isoformat(),
        updated_at=(row.updated_at or row.created_at).isoformat(),
    )


class StaleTaskSweeper:
    def __init__(
        self,
        store: TaskMetadataStore,
        reconciler: PollReconciler,
        stale_after_seconds: int | None = None,
        batch_size: int = 100,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.stale_after = timedelta(
            seconds=stale_after_seconds or settings.STALE_TASK_AFTER_SECONDS
        )
        self.batch_size = batch_size

    async def find_stale(
        self, db: AsyncSession, now: datetime | None = None
    ) -> list[StaleTask]:
        cutoff = (now or datetime.now(timezone.utc)) - self.stale_after
        result = await db.execute(
            select(*_STALE_COLUMNS)
            .where(
                ImageRecord.status.in_((STATUS_PENDING, STATUS_PROCESSING)),
                ImageRecord.external_task_id.is_not(None),
                ImageRecord.created_at < cutoff,
            )
            .order_by(ImageRecord.created_at)
            .limit(self.batch_size)
        )
        return [StaleTask(*row) for row in result.all()]

    async def _sweep_one(self, db: AsyncSession, stale: StaleTask, report: SweepReport) -> None:
        bound = log.bind(task_id=stale.external_task_id, image_id=str(stale.image_id))

        if await self.store.get(stale.external_task_id) is None:
            if await self.store.save(task_from_row(stale)):
                report.rebuilt += 1
                bound.info("stale_task_metadata_rebuilt")

        polled = await self.reconciler.reconcile(db, stale.external_task_id, actor="sweeper")
        if polled.transition.applied and polled.transition.status in TERMINAL_STATUSES:
            report.finalized += 1
        bound.info(
            "stale_task_reconciled",
            status=polled.transition.status,
            provider_state=polled.provider_state,
        )

    async def sweep(self, db: AsyncSession, now: datetime | None = None) -> SweepReport:
        """Poll the provider for every stale task and apply what it reports.

        A row whose metadata document is missing (the post-commit save
        failed or the key expired) gets the document rebuilt first.  A
        failure on one task is counted and the sweep moves on.
        """
        report = SweepReport()
        for stale in await self.find_stale(db, now):
            report.scanned += 1
            try:
                await self._sweep_one(db, stale, report)
            except ImageGenError as exc:
                await db.rollback()
                report.errors += 1
                log.warning(
                    "stale_task_reconcile_failed",
                    task_id=stale.external_task_id,
                    error=exc.message,
                )
            except Exception:
                await db.rollback()
                report.errors += 1
                log.exception("stale_task_reconcile_crashed", task_id=stale.external_task_id)

        log.info(
            "stale_task_sweep_finished",
            scanned=report.scanned,
            rebuilt=report.rebuilt,
            finalized=report.finalized,
            errors=report.errors,
        )
        return report
