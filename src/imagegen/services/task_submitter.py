"""Task submission -- balance check, provider call, debit, and bookkeeping.

Ordering matters:

1. idempotency lookup (a replayed request returns the existing image);
2. cached balance pre-check, so a poor user never costs a provider call;
3. provider ``create_task`` under the retry budget.  Any failure here
   leaves the balance untouched;
4. one DB transaction: conditional debit, ``images`` row, ``usage`` row;
5. task metadata document (``SET NX``).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.config import settings
from imagegen.errors import ConflictError, InsufficientCreditsError
from imagegen.integrations.kie_client import KieClient
from imagegen.models import ImageRecord
from imagegen.services.credit_service import deduct_credits, get_balance
from imagegen.services.task_store import GenerationTask, TaskMetadataStore

log = structlog.get_logger()


class SubmitRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=5000)
    idempotency_key: str | None = Field(None, max_length=255)
    image_urls: list[str] | None = Field(None, max_length=10)
    aspect_ratio: str = Field("9:16", pattern=r"^\d{1,2}:\d{1,2}$")


class SubmitResponse(BaseModel):
    task_id: str
    image_id: uuid.UUID
    status: str
    credits_remaining: int | None = None


class TaskSubmitter:
    def __init__(
        self,
        provider: KieClient,
        store: TaskMetadataStore,
        cost: int | None = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self.cost = cost if cost is not None else settings.GENERATION_CREDIT_COST

    async def _existing(
        self, db: AsyncSession, user_id: uuid.UUID, key: str
    ) -> SubmitResponse | None:
        row = (
            await db.execute(
                select(ImageRecord.id, ImageRecord.external_task_id, ImageRecord.status).where(
                    ImageRecord.user_id == user_id, ImageRecord.idempotency_key == key
                )
            )
        ).one_or_none()
        if row is None:
            return None
        return SubmitResponse(
            task_id=row.external_task_id or "",
            image_id=row.id,
            status=row.status,
            credits_remaining=await get_balance(db, user_id),
        )

    async def submit(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        request: SubmitRequest,
    ) -> SubmitResponse:
        bound = log.bind(user_id=str(user_id), idempotency_key=request.idempotency_key)

        if request.idempotency_key:
            existing = await self._existing(db, user_id, request.idempotency_key)
            if existing is not None:
                bound.info("generation_idempotent_replay", task_id=existing.task_id)
                return existing

        available = await get_balance(db, user_id)
        if available < self.cost:
            raise InsufficientCreditsError(required=self.cost, available=available)

        task_id = await self.provider.create_task(
            request.prompt,
            idempotency_key=request.idempotency_key,
            image_urls=request.image_urls,
            aspect_ratio=request.aspect_ratio,
        )
        bound = bound.bind(task_id=task_id)

        image_id = uuid.uuid4()
        image_type = "edit" if request.image_urls else "generation"
        now = datetime.now(timezone.utc)
        try:
            await db.execute(
                insert(ImageRecord).values(
                    id=image_id,
                    user_id=user_id,
                    external_task_id=task_id,
                    idempotency_key=request.idempotency_key,
                    status="pending",
                    image_type=image_type,
                    prompt=request.prompt,
                    cost=self.cost,
                    extra_metadata={
                        "aspect_ratio": request.aspect_ratio,
                        "reference_images": len(request.image_urls or []),
                    },
                    created_at=now,
                    updated_at=now,
                )
            )
            remaining = await deduct_credits(
                db,
                user_id,
                self.cost,
                "usage",
                f"Image generation ({image_type})",
                related_image_id=image_id,
            )
            await db.commit()
        except InsufficientCreditsError:
            await db.rollback()
            # The provider task exists but has no row; its callbacks are ignored.
            bound.warning("generation_orphaned_after_debit_race")
            raise
        except IntegrityError as exc:
            await db.rollback()
            bound.warning("generation_idempotency_conflict")
            raise ConflictError("A generation with this idempotency key is in flight") from exc

        task = GenerationTask(
            task_id=task_id,
            prompt=request.prompt,
            user_id=str(user_id),
            image_id=str(image_id),
            image_type=image_type,
        )
        try:
            if not await self.store.save(task):
                bound.warning("task_metadata_already_exists")
        except Exception as exc:
            # Row stays pending; the stale-task sweep will surface it.
            bound.error("task_metadata_save_failed", error=str(exc))

        bound.info("generation_submitted", image_id=str(image_id), cost=self.cost)
        return SubmitResponse(
            task_id=task_id,
            image_id=image_id,
            status="pending",
            credits_remaining=remaining,
        )
