"""Tests for the KIE callback webhook and the manual poll endpoint."""

from __future__ import annotations

import json
import uuid

import pytest

from imagegen.errors import RetryableProviderError
from imagegen.integrations.kie_client import ProviderTaskStatus
from imagegen.integrations.result_shapes import ResultAsset
from imagegen.models import ImageRecord
from imagegen.services.task_store import GenerationTask


async def _seed_task(db, store, user_id, task_id="task-1"):
    image_id = uuid.uuid4()
    db.add(
        ImageRecord(
            id=image_id,
            user_id=user_id,
            external_task_id=task_id,
            status="pending",
            prompt="a castle",
            cost=5,
        )
    )
    await db.commit()
    await store.save(
        GenerationTask(task_id=task_id, prompt="a castle", user_id=str(user_id), image_id=str(image_id))
    )


def _success_callback(task_id="task-1"):
    return {
        "code": 200,
        "msg": "Playground task completed successfully.",
        "data": {
            "taskId": task_id,
            "state": "success",
            "resultJson": json.dumps({"resultUrls": ["https://kie.test/out.png"]}),
            "consumeCredits": 4,
            "costTime": 800,
        },
    }


# ---------------------------------------------------------------------------
# POST /api/v1/kie/callback
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_callback_completes_task(client, db_session, make_profile, task_store, storage):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)

    response = await client.post("/api/v1/kie/callback", json=_success_callback())

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "completed"
    assert body["imageUrl"] == "https://assets.test/generated/task-1.png"
    assert len(storage.puts) == 1


@pytest.mark.asyncio
async def test_duplicate_callback_is_acknowledged_without_change(client, db_session, make_profile, task_store, storage):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)

    await client.post("/api/v1/kie/callback", json=_success_callback())
    response = await client.post("/api/v1/kie/callback", json=_success_callback())

    assert response.status_code == 200
    assert response.json()["message"] == "No state change"
    assert len(storage.puts) == 1


@pytest.mark.asyncio
async def test_failed_callback(client, db_session, make_profile, task_store):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)

    response = await client.post(
        "/api/v1/kie/callback",
        json={"data": {"taskId": "task-1", "state": "fail", "failMsg": "blocked"}},
    )

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is False
    assert body["status"] == "failed"
    assert body["error"] == "blocked"


@pytest.mark.asyncio
async def test_callback_for_unknown_task_is_ignored(client):
    response = await client.post("/api/v1/kie/callback", json=_success_callback("ghost"))

    assert response.status_code == 200
    assert response.json() == {
        "success": False,
        "taskId": "ghost",
        "error": "Task not found",
        "message": "Ignoring callback for unknown task",
    }


@pytest.mark.asyncio
async def test_callback_with_bad_body_still_returns_200(client):
    not_json = await client.post(
        "/api/v1/kie/callback", content=b"{oops", headers={"content-type": "application/json"}
    )
    no_task = await client.post("/api/v1/kie/callback", json={"data": {"state": "success"}})

    assert not_json.status_code == 200
    assert not_json.json()["success"] is False
    assert no_task.status_code == 200
    assert no_task.json()["error"] == "Callback is missing taskId"


# ---------------------------------------------------------------------------
# POST /api/v1/kie/manual-poll
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_manual_poll_requires_auth(client):
    response = await client.post("/api/v1/kie/manual-poll", json={"taskId": "task-1"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_manual_poll_requires_task_id(client, make_profile, auth_headers):
    profile = await make_profile()
    response = await client.post("/api/v1/kie/manual-poll", json={}, headers=auth_headers(profile.id))
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_manual_poll_hides_other_users_tasks(client, db_session, make_profile, task_store, provider, auth_headers):
    owner = await make_profile()
    stranger = await make_profile()
    await _seed_task(db_session, task_store, owner.id)

    response = await client.post(
        "/api/v1/kie/manual-poll", json={"taskId": "task-1"}, headers=auth_headers(stranger.id)
    )

    assert response.status_code == 404
    assert response.json()["error"] == "unknown_task"
    provider.get_task_status.assert_not_called()


@pytest.mark.asyncio
async def test_manual_poll_applies_provider_result(client, db_session, make_profile, task_store, provider, auth_headers):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)
    provider.get_task_status.return_value = ProviderTaskStatus(
        task_id="task-1", state="success", result_assets=[ResultAsset(url="https://kie.test/out.png")]
    )

    response = await client.post(
        "/api/v1/kie/manual-poll", json={"taskId": "task-1"}, headers=auth_headers(profile.id)
    )

    body = response.json()
    assert response.status_code == 200
    assert body["state"] == "success"
    assert body["status"] == "completed"
    assert body["imageUrl"].endswith("generated/task-1.png")


@pytest.mark.asyncio
async def test_manual_poll_by_admin(client, db_session, make_profile, task_store, provider, admin_headers):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)
    provider.get_task_status.return_value = ProviderTaskStatus(task_id="task-1", state="generating")

    response = await client.post("/api/v1/kie/manual-poll", json={"taskId": "task-1"}, headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "processing"


@pytest.mark.asyncio
async def test_manual_poll_provider_error_is_502(client, db_session, make_profile, task_store, provider, auth_headers):
    profile = await make_profile()
    await _seed_task(db_session, task_store, profile.id)
    provider.get_task_status.side_effect = RetryableProviderError("KIE request failed: 503")

    response = await client.post(
        "/api/v1/kie/manual-poll", json={"taskId": "task-1"}, headers=auth_headers(profile.id)
    )

    assert response.status_code == 502
    assert response.json()["detail"] == "KIE request failed: 503"
    assert (await task_store.get("task-1")).status == "pending"
