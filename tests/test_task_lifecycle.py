"""Tests for the guarded task state machine shared by callback and poll."""

from __future__ import annotations

import uuid

import pytest
from sqlalchemy import select

from imagegen.errors import UnknownTaskError
from imagegen.integrations.kie_client import (
    OUTCOME_FAILED,
    OUTCOME_IN_PROGRESS,
    OUTCOME_SUCCEEDED,
    ProviderOutcome,
    ProviderTaskStatus,
)
from imagegen.integrations.result_shapes import ResultAsset
from imagegen.models import ImageRecord
from imagegen.services.task_lifecycle import (
    ERROR_NO_RESULTS,
    ERROR_PROVIDER_FAILED,
    ERROR_STORAGE,
    PollReconciler,
    TaskLifecycle,
)
from imagegen.services.task_store import GenerationTask

from conftest import RecordingStorage


async def _seed_task(db, store, user_id, task_id="task-1", status="pending"):
    image_id = uuid.uuid4()
    db.add(
        ImageRecord(
            id=image_id,
            user_id=user_id,
            external_task_id=task_id,
            status=status,
            prompt="a lighthouse",
            cost=5,
        )
    )
    await db.commit()
    await store.save(
        GenerationTask(
            task_id=task_id,
            status=status,
            prompt="a lighthouse",
            user_id=str(user_id),
            image_id=str(image_id),
        )
    )
    return image_id


async def _row(db, task_id="task-1") -> ImageRecord:
    return (
        await db.execute(
            select(ImageRecord)
            .where(ImageRecord.external_task_id == task_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()


def _success(task_id="task-1", url="https://kie.test/out.png") -> ProviderOutcome:
    return ProviderOutcome(
        task_id=task_id,
        kind=OUTCOME_SUCCEEDED,
        assets=[ResultAsset(url=url)],
        consume_credits=4,
        cost_time_ms=1500,
    )


def _failure(task_id="task-1", error="Content policy violation") -> ProviderOutcome:
    return ProviderOutcome(task_id=task_id, kind=OUTCOME_FAILED, error=error)


# ---------------------------------------------------------------------------
# Success path
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_success_persists_asset_and_syncs_row(db_session, make_profile, task_store, lifecycle, storage):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)

    result = await lifecycle.apply_outcome(db_session, _success(), actor="callback")

    assert result.applied is True
    assert result.status == "completed"
    assert result.image_url == "https://assets.test/generated/task-1.png"
    assert len(storage.puts) == 1

    task = await task_store.get("task-1")
    assert task.status == "completed"
    assert task.result_urls == [result.image_url]
    assert task.consume_credits == 4
    assert task.claim_token is None

    row = await _row(db_session)
    assert row.status == "completed"
    assert row.processed_image_url == result.image_url
    assert row.completed_at is not None
    assert row.extra_metadata["cost_time_ms"] == 1500


@pytest.mark.asyncio
async def test_duplicate_callbacks_apply_once(db_session, make_profile, task_store, lifecycle, storage):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)

    first = await lifecycle.apply_outcome(db_session, _success(), actor="callback")
    second = await lifecycle.apply_outcome(db_session, _success(), actor="callback")

    assert first.applied is True
    assert second.applied is False
    assert second.status == "completed"
    assert second.image_url == first.image_url
    assert len(storage.puts) == 1


# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_provider_failure(db_session, make_profile, task_store, lifecycle, storage):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)

    result = await lifecycle.apply_outcome(db_session, _failure(), actor="callback")

    assert result.status == "failed"
    assert result.error == "Content policy violation"
    assert result.error_code == ERROR_PROVIDER_FAILED
    assert storage.puts == []
    row = await _row(db_session)
    assert row.status == "failed"
    assert row.error_message == "Content policy violation"


@pytest.mark.asyncio
async def test_success_without_results_fails_with_no_results(db_session, make_profile, task_store, lifecycle):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)

    outcome = ProviderOutcome(task_id="task-1", kind=OUTCOME_SUCCEEDED, assets=[])
    result = await lifecycle.apply_outcome(db_session, outcome, actor="callback")

    assert result.status == "failed"
    assert result.error_code == ERROR_NO_RESULTS


@pytest.mark.asyncio
async def test_download_failure_fails_with_storage_error(db_session, make_profile, task_store, lifecycle):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)

    result = await lifecycle.apply_outcome(
        db_session, _success(url="https://kie.test/missing.png"), actor="callback"
    )

    assert result.status == "failed"
    assert result.error_code == ERROR_STORAGE
    assert result.error.startswith("Failed to download result")
    assert (await _row(db_session)).status == "failed"


@pytest.mark.asyncio
async def test_storage_write_failure_fails_with_storage_error(db_session, make_profile, task_store, downloader):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)
    lifecycle = TaskLifecycle(store=task_store, downloader=downloader, storage=RecordingStorage(fail=True))

    result = await lifecycle.apply_outcome(db_session, _success(), actor="callback")

    assert result.status == "failed"
    assert result.error_code == ERROR_STORAGE


@pytest.mark.asyncio
async def test_first_terminal_outcome_wins(db_session, make_profile, task_store, lifecycle, storage):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)

    polled = await lifecycle.apply_outcome(db_session, _failure(), actor="poll")
    late = await lifecycle.apply_outcome(db_session, _success(), actor="callback")

    assert polled.applied is True
    assert late.applied is False
    assert late.status == "failed"
    assert storage.puts == []
    assert (await _row(db_session)).status == "failed"


@pytest.mark.asyncio
async def test_live_claim_blocks_a_second_actor(db_session, make_profile, task_store, lifecycle, storage):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)
    await task_store.claim("task-1", "someone-else", 300)

    result = await lifecycle.apply_outcome(db_session, _success(), actor="callback")

    assert result.applied is False
    assert result.status == "pending"
    assert storage.puts == []


# ---------------------------------------------------------------------------
# Non-terminal and bookkeeping
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_in_progress_marks_processing_once(db_session, make_profile, task_store, lifecycle):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)
    outcome = ProviderOutcome(task_id="task-1", kind=OUTCOME_IN_PROGRESS)

    first = await lifecycle.apply_outcome(db_session, outcome, actor="callback")
    second = await lifecycle.apply_outcome(db_session, outcome, actor="callback")

    assert (first.status, first.applied) == ("processing", True)
    assert (second.status, second.applied) == ("processing", False)
    assert (await _row(db_session)).status == "processing"


@pytest.mark.asyncio
async def test_unknown_task_raises(db_session, lifecycle):
    with pytest.raises(UnknownTaskError):
        await lifecycle.apply_outcome(db_session, _success(task_id="ghost"), actor="callback")


@pytest.mark.asyncio
async def test_terminal_task_resyncs_lagging_row(db_session, make_profile, task_store, lifecycle):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)
    task_store.tasks["task-1"].status = "completed"
    task_store.tasks["task-1"].result_urls = ["https://assets.test/generated/task-1.png"]

    result = await lifecycle.apply_outcome(db_session, _success(), actor="poll")

    assert result.applied is False
    row = await _row(db_session)
    assert row.status == "completed"
    assert row.processed_image_url == "https://assets.test/generated/task-1.png"


# ---------------------------------------------------------------------------
# PollReconciler
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_poll_applies_provider_state(db_session, make_profile, task_store, lifecycle, provider):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)
    provider.get_task_status.return_value = ProviderTaskStatus(
        task_id="task-1",
        state="success",
        result_assets=[ResultAsset(url="https://kie.test/out.png")],
    )

    polled = await PollReconciler(provider, lifecycle).reconcile(db_session, "task-1")

    assert polled.provider_state == "success"
    assert polled.transition.status == "completed"
    assert polled.transition.applied is True


@pytest.mark.asyncio
async def test_poll_of_unknown_task_skips_provider(db_session, lifecycle, provider):
    with pytest.raises(UnknownTaskError):
        await PollReconciler(provider, lifecycle).reconcile(db_session, "ghost")
    provider.get_task_status.assert_not_called()
