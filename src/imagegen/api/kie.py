"""KIE provider endpoints: the completion webhook and the manual poll.

The webhook is public (KIE cannot send auth headers) and always answers
200 so the provider never retries on our errors; unknown task ids are
ignored.  Both endpoints funnel into ``TaskLifecycle.apply_outcome``.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.api.dependencies import (
    Principal,
    get_poll_reconciler,
    get_principal,
    get_task_lifecycle,
)
from imagegen.database import get_db
from imagegen.errors import (
    RetryableProviderError,
    TerminalProviderError,
    UnknownTaskError,
    ValidationError,
)
from imagegen.integrations.kie_client import parse_callback_payload
from imagegen.services.task_lifecycle import PollReconciler, TaskLifecycle, TransitionResult
from imagegen.services.task_store import STATUS_FAILED

log = structlog.get_logger()

router = APIRouter(prefix="/api/v1/kie", tags=["kie"])


class ManualPollRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_id: str | None = Field(None, alias="taskId")


def _transition_body(result: TransitionResult) -> dict[str, Any]:
    body: dict[str, Any] = {
        "success": result.status != STATUS_FAILED,
        "taskId": result.task_id,
        "status": result.status,
    }
    if result.image_url:
        body["imageUrl"] = result.image_url
    if result.error:
        body["error"] = result.error
    if not result.applied:
        body["message"] = "No state change"
    return body


# ---------------------------------------------------------------------------
# POST /api/v1/kie/callback
# ---------------------------------------------------------------------------

@router.post("/callback")
async def kie_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    lifecycle: TaskLifecycle = Depends(get_task_lifecycle),
):
    """Receive a KIE completion webhook. Always answers HTTP 200."""
    try:
        payload = await request.json()
    except ValueError:
        log.warning("callback_invalid_json")
        return {"success": False, "error": "Invalid JSON body"}

    try:
        outcome = parse_callback_payload(payload)
    except ValidationError as exc:
        log.warning("callback_invalid_payload", error=exc.message)
        return {"success": False, "error": exc.message}

    bound = log.bind(task_id=outcome.task_id, outcome=outcome.kind)
    try:
        result = await lifecycle.apply_outcome(db, outcome, actor="callback")
    except UnknownTaskError:
        bound.warning("callback_unknown_task")
        return {
            "success": False,
            "taskId": outcome.task_id,
            "error": "Task not found",
            "message": "Ignoring callback for unknown task",
        }
    except Exception as exc:
        await db.rollback()
        bound.exception("callback_processing_failed")
        return {"success": False, "taskId": outcome.task_id, "error": str(exc)}

    bound.info("callback_processed", status=result.status, applied=result.applied)
    return _transition_body(result)


# ---------------------------------------------------------------------------
# POST /api/v1/kie/manual-poll
# ---------------------------------------------------------------------------

@router.post("/manual-poll")
async def manual_poll(
    body: ManualPollRequest,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    lifecycle: TaskLifecycle = Depends(get_task_lifecycle),
    reconciler: PollReconciler = Depends(get_poll_reconciler),
):
    """Ask the provider for a task's state and apply it like a callback would."""
    if not body.task_id:
        raise ValidationError("taskId is required")

    task = await lifecycle.get_task(body.task_id)
    if not principal.is_admin and (
        principal.user is None or task.user_id != str(principal.user.id)
    ):
        raise UnknownTaskError(f"Task {body.task_id} not found")

    try:
        polled = await reconciler.reconcile(db, body.task_id, actor="poll")
    except (RetryableProviderError, TerminalProviderError) as exc:
        log.warning("manual_poll_provider_error", task_id=body.task_id, error=exc.message)
        return JSONResponse(
            status_code=502,
            content={"success": False, "taskId": body.task_id, **exc.to_dict()},
        )

    response = _transition_body(polled.transition)
    response["state"] = polled.provider_state
    return response
