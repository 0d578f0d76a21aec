"""Guarded task state machine shared by the callback receiver and the poller.

State machine: pending -> processing -> completed | failed

Callback deliveries are at-least-once and may race a manual poll for the
same task.  A terminal outcome is applied in three steps:

1. ``claim`` a short lease on the task document (only one actor wins);
2. the winner materialises the result into durable storage;
3. ``finalize`` writes the terminal state if the lease is still held, then
   the ``images`` row is updated with a guard on its non-terminal status.

A crashed winner leaves a lease that expires after
``TASK_CLAIM_TTL_SECONDS``; the next delivery or poll re-claims it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.config import settings
from imagegen.errors import StorageError, UnknownTaskError
from imagegen.integrations.asset_storage import (
    AssetDownloader,
    AssetStorage,
    persist_result_asset,
)
from imagegen.integrations.kie_client import (
    OUTCOME_FAILED,
    OUTCOME_SUCCEEDED,
    KieClient,
    ProviderOutcome,
    outcome_from_status,
)
from imagegen.models import ImageRecord
from imagegen.services.audit_logger import AuditLogger
from imagegen.services.task_store import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    TERMINAL_STATUSES,
    GenerationTask,
    TaskMetadataStore,
)

log = structlog.get_logger()

ERROR_STORAGE = "storage_error"
ERROR_PROVIDER_FAILED = "provider_failed"
ERROR_NO_RESULTS = "no_results"
NO_RESULTS_MESSAGE = "No result URLs in callback"


@dataclass
class TransitionResult:
    task_id: str
    status: str
    applied: bool
    image_url: str | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def from_task(cls, task: GenerationTask, applied: bool) -> "TransitionResult":
        return cls(
            task_id=task.task_id,
            status=task.status,
            applied=applied,
            image_url=task.result_urls[0] if task.result_urls else None,
            error=task.error,
            error_code=task.error_code,
        )


@dataclass
class PollResult:
    transition: TransitionResult
    provider_state: str


# ---------------------------------------------------------------------------
# images row helpers
# ---------------------------------------------------------------------------

class ImageRowRepository:
    """Conditional updates of the ``images`` mirror of a task."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def mark_processing(self, task_id: str) -> int:
        result = await self.db.execute(
            update(ImageRecord)
            .where(
                ImageRecord.external_task_id == task_id,
                ImageRecord.status == STATUS_PENDING,
            )
            .values(status=STATUS_PROCESSING, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount

    async def sync_terminal(self, task: GenerationTask) -> int:
        """Copy a terminal task onto its row unless the row is already terminal."""
        current = await self.db.execute(
            select(ImageRecord.extra_metadata).where(
                ImageRecord.external_task_id == task.task_id
            )
        )
        metadata: dict[str, Any] = dict(current.scalar_one_or_none() or {})
        metadata.update(
            {
                k: v
                for k, v in (
                    ("consume_credits", task.consume_credits),
                    ("cost_time_ms", task.cost_time_ms),
                    ("error_code", task.error_code),
                )
                if v is not None
            }
        )

        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {
            "status": task.status,
            "updated_at": now,
            "completed_at": now,
            "extra_metadata": metadata,
        }
        if task.status == STATUS_COMPLETED:
            values["processed_image_url"] = task.result_urls[0] if task.result_urls else None
            values["error_message"] = None
        else:
            values["error_message"] = task.error

        result = await self.db.execute(
            update(ImageRecord)
            .where(
                ImageRecord.external_task_id == task.task_id,
                ImageRecord.status.not_in(tuple(TERMINAL_STATUSES)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# TaskLifecycle
# ---------------------------------------------------------------------------

class TaskLifecycle:
    """Applies provider outcomes to the task store and the ``images`` table."""

    def __init__(
        self,
        store: TaskMetadataStore,
        downloader: AssetDownloader,
        storage: AssetStorage,
        audit: AuditLogger | None = None,
        claim_ttl_seconds: int | None = None,
    ) -> None:
        self.store = store
        self.downloader = downloader
        self.storage = storage
        self.audit = audit or AuditLogger()
        self.claim_ttl_seconds = claim_ttl_seconds or settings.TASK_CLAIM_TTL_SECONDS

    async def get_task(self, task_id: str) -> GenerationTask:
        task = await self.store.get(task_id)
        if task is None:
            raise UnknownTaskError(f"Task {task_id} not found")
        return task

    async def apply_outcome(
        self,
        db: AsyncSession,
        outcome: ProviderOutcome,
        actor: str,
    ) -> TransitionResult:
        """Apply ``outcome`` at most once. Raises ``UnknownTaskError``."""
        bound = log.bind(task_id=outcome.task_id, actor=actor, outcome=outcome.kind)
        task = await self.get_task(outcome.task_id)
        rows = ImageRowRepository(db)

        if task.is_terminal:
            if await rows.sync_terminal(task):
                bound.info("image_row_resynced", status=task.status)
            bound.info("task_already_terminal", status=task.status)
            return TransitionResult.from_task(task, applied=False)

        if not outcome.is_terminal:
            moved = await self.store.mark_processing(task.task_id)
            if moved:
                await rows.mark_processing(task.task_id)
                bound.info("task_marked_processing")
            current = await self.store.get(task.task_id) or task
            return TransitionResult.from_task(current, applied=moved)

        token = uuid.uuid4().hex
        if not await self.store.claim(task.task_id, token, self.claim_ttl_seconds):
            bound.info("task_claim_lost")
            current = await self.store.get(task.task_id) or task
            return TransitionResult.from_task(current, applied=False)

        status, result_urls, error, error_code = await self._resolve(outcome, bound)

        final = await self.store.finalize(
            task.task_id,
            token,
            status=status,
            result_urls=result_urls,
            error=error,
            error_code=error_code,
            consume_credits=outcome.consume_credits,
            cost_time_ms=outcome.cost_time_ms,
        )
        if final is None:
            # Lease expired mid-flight and another actor finalised first.
            bound.warning("task_finalize_lost")
            current = await self.store.get(task.task_id) or task
            return TransitionResult.from_task(current, applied=False)

        await rows.sync_terminal(final)
        bound.info("task_transition_applied", status=final.status, error_code=error_code)
        self.audit.log_task_transition(final.task_id, final.status, actor, error_code)
        return TransitionResult.from_task(final, applied=True)

    async def _resolve(
        self, outcome: ProviderOutcome, bound: Any
    ) -> tuple[str, list[str], str | None, str | None]:
        """Turn a terminal outcome into ``(status, urls, error, error_code)``."""
        if outcome.kind == OUTCOME_FAILED:
            return STATUS_FAILED, [], outcome.error, ERROR_PROVIDER_FAILED

        if outcome.kind == OUTCOME_SUCCEEDED and not outcome.assets:
            return STATUS_FAILED, [], NO_RESULTS_MESSAGE, ERROR_NO_RESULTS

        try:
            url = await persist_result_asset(
                outcome.assets[0], outcome.task_id, self.downloader, self.storage
            )
        except StorageError as exc:
            bound.warning("task_result_storage_failed", error=exc.message)
            return (
                STATUS_FAILED,
                [],
                f"Failed to download result: {exc.message}",
                ERROR_STORAGE,
            )
        return STATUS_COMPLETED, [url], None, None


# ---------------------------------------------------------------------------
# PollReconciler
# ---------------------------------------------------------------------------

class PollReconciler:
    """Pulls a task's state from the provider and feeds it to the lifecycle."""

    def __init__(self, provider: KieClient, lifecycle: TaskLifecycle) -> None:
        self.provider = provider
        self.lifecycle = lifecycle

    async def reconcile(self, db: AsyncSession, task_id: str, actor: str = "poll") -> PollResult:
        # Unknown tasks are rejected before spending a provider call.
        await self.lifecycle.get_task(task_id)
        status = await self.provider.get_task_status(task_id)
        outcome = outcome_from_status(status)
        transition = await self.lifecycle.apply_outcome(db, outcome, actor=actor)
        return PollResult(transition=transition, provider_state=status.state)
