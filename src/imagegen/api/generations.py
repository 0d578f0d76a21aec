"""Generation API endpoints.

Provides endpoints for submitting generation tasks, reading a task's
metadata record, and listing the caller's completed images.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.api.dependencies import get_current_user, get_task_store, get_task_submitter
from imagegen.database import get_db
from imagegen.errors import NotFoundError
from imagegen.models import ImageRecord, UserProfile
from imagegen.services.task_store import TaskMetadataStore
from imagegen.services.task_submitter import SubmitRequest, SubmitResponse, TaskSubmitter

router = APIRouter(prefix="/api/v1/generations", tags=["generations"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class TaskStatusResponse(BaseModel):
    task_id: str
    status: str
    prompt: str
    result_urls: list[str]
    error: str | None = None
    error_code: str | None = None
    consume_credits: int | None = None
    cost_time_ms: int | None = None
    created_at: str
    updated_at: str
    completed_at: str | None = None


class HistoryItem(BaseModel):
    id: uuid.UUID
    external_task_id: str | None = None
    image_type: str
    prompt: str
    processed_image_url: str | None = None
    cost: int
    created_at: datetime
    completed_at: datetime | None = None


class Pagination(BaseModel):
    total: int
    page: int
    page_size: int
    total_pages: int


class HistoryResponse(BaseModel):
    images: list[HistoryItem]
    pagination: Pagination
    total_credits_used: int


# ---------------------------------------------------------------------------
# POST /api/v1/generations
# ---------------------------------------------------------------------------

@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=SubmitResponse)
async def create_generation(
    body: SubmitRequest,
    current_user: UserProfile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    submitter: TaskSubmitter = Depends(get_task_submitter),
):
    """Debit credits and start an asynchronous generation task."""
    return await submitter.submit(db, current_user.id, body)


# ---------------------------------------------------------------------------
# GET /api/v1/generations/history
# ---------------------------------------------------------------------------

@router.get("/history", response_model=HistoryResponse)
async def generation_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    image_type: str | None = Query(None, alias="type"),
    current_user: UserProfile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Return the caller's completed images, newest first."""
    filters = [ImageRecord.user_id == current_user.id, ImageRecord.status == "completed"]
    if image_type:
        filters.append(ImageRecord.image_type == image_type)

    total, credits_used = (
        await db.execute(
            select(func.count(), func.coalesce(func.sum(ImageRecord.cost), 0)).where(*filters)
        )
    ).one()
    rows = (
        await db.execute(
            select(ImageRecord)
            .where(*filters)
            .order_by(ImageRecord.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
    ).scalars().all()

    return HistoryResponse(
        images=[HistoryItem.model_validate(r, from_attributes=True) for r in rows],
        pagination=Pagination(
            total=total,
            page=page,
            page_size=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        ),
        total_credits_used=int(credits_used),
    )


# ---------------------------------------------------------------------------
# GET /api/v1/generations/{task_id}
# ---------------------------------------------------------------------------

@router.get("/{task_id}", response_model=TaskStatusResponse)
async def get_task_status(
    task_id: str,
    current_user: UserProfile = Depends(get_current_user),
    store: TaskMetadataStore = Depends(get_task_store),
):
    """Return the metadata record of one of the caller's tasks."""
    task = await store.get(task_id)
    if task is None or task.user_id != str(current_user.id):
        raise NotFoundError("Task not found")
    return TaskStatusResponse(
        task_id=task.task_id,
        status=task.status,
        prompt=task.prompt,
        result_urls=task.result_urls,
        error=task.error,
        error_code=task.error_code,
        consume_credits=task.consume_credits,
        cost_time_ms=task.cost_time_ms,
        created_at=task.created_at,
        updated_at=task.updated_at,
        completed_at=task.completed_at,
    )
