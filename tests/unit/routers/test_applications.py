"""Application endpoint tests: apply, accept, reject, release and withdraw."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from task_market_service.core.state import get_app_state
from tests.helpers import auth_headers
from tests.unit.routers.conftest import (
    CREATOR_AGENT_ID,
    OTHER_AGENT_ID,
    WORKER_AGENT_ID,
    review,
    setup_active_task,
    setup_hired_worker,
    submit_work,
)


async def _apply(client, task_id: str, agent_id: str):
    return await client.post(
        f"/tasks/{task_id}/applications",
        json={"message": "Happy to help"},
        headers=auth_headers(agent_id),
    )


@pytest.mark.unit
async def test_apply_and_list(client) -> None:
    task_id = await setup_active_task(client, max_workers=2)

    applied = await _apply(client, task_id, WORKER_AGENT_ID)
    assert applied.status_code == 201
    assert applied.json()["application"]["status"] == "PENDING"

    duplicate = await _apply(client, task_id, WORKER_AGENT_ID)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "ALREADY_APPLIED"

    await _apply(client, task_id, OTHER_AGENT_ID)
    as_creator = await client.get(
        f"/tasks/{task_id}/applications", headers=auth_headers(CREATOR_AGENT_ID)
    )
    as_worker = await client.get(
        f"/tasks/{task_id}/applications", headers=auth_headers(WORKER_AGENT_ID)
    )
    assert len(as_creator.json()["applications"]) == 2
    assert [item["agent_id"] for item in as_worker.json()["applications"]] == [WORKER_AGENT_ID]


@pytest.mark.unit
async def test_apply_with_empty_body(client) -> None:
    task_id = await setup_active_task(client)

    response = await client.post(
        f"/tasks/{task_id}/applications", headers=auth_headers(WORKER_AGENT_ID)
    )

    assert response.status_code == 201
    assert response.json()["application"]["message"] is None


@pytest.mark.unit
async def test_accept_fills_last_slot_and_rejects_the_rest(client) -> None:
    task_id = await setup_active_task(client)
    first = await _apply(client, task_id, WORKER_AGENT_ID)
    second = await _apply(client, task_id, OTHER_AGENT_ID)
    application_id = first.json()["application"]["application_id"]

    accepted = await client.post(
        f"/tasks/{task_id}/applications/{application_id}/accept",
        headers=auth_headers(CREATOR_AGENT_ID),
    )

    assert accepted.status_code == 200
    data = accepted.json()
    assert data["accepted"] is True
    assert data["application"]["status"] == "ACCEPTED"
    assert data["current_workers"] == 1
    assert data["task_status"] == "IN_PROGRESS"

    listed = await client.get(
        f"/tasks/{task_id}/applications", headers=auth_headers(CREATOR_AGENT_ID)
    )
    statuses = {item["application_id"]: item["status"] for item in listed.json()["applications"]}
    assert statuses[second.json()["application"]["application_id"]] == "REJECTED"


@pytest.mark.unit
async def test_concurrent_accepts_fill_one_slot(client) -> None:
    task_id = await setup_active_task(client)
    first = await _apply(client, task_id, WORKER_AGENT_ID)
    second = await _apply(client, task_id, OTHER_AGENT_ID)
    headers = auth_headers(CREATOR_AGENT_ID)

    first_id = first.json()["application"]["application_id"]
    second_id = second.json()["application"]["application_id"]
    responses = await asyncio.gather(
        client.post(f"/tasks/{task_id}/applications/{first_id}/accept", headers=headers),
        client.post(f"/tasks/{task_id}/applications/{second_id}/accept", headers=headers),
    )

    codes = sorted(response.status_code for response in responses)
    assert codes == [200, 409]
    task = await client.get(f"/tasks/{task_id}")
    assert task.json()["current_workers"] == 1


@pytest.mark.unit
async def test_only_creator_can_accept(client) -> None:
    task_id = await setup_active_task(client)
    applied = await _apply(client, task_id, WORKER_AGENT_ID)
    application_id = applied.json()["application"]["application_id"]

    response = await client.post(
        f"/tasks/{task_id}/applications/{application_id}/accept",
        headers=auth_headers(WORKER_AGENT_ID),
    )

    assert response.status_code == 403


@pytest.mark.unit
async def test_reject_application(client) -> None:
    task_id = await setup_active_task(client)
    applied = await _apply(client, task_id, WORKER_AGENT_ID)
    application_id = applied.json()["application"]["application_id"]

    response = await client.post(
        f"/tasks/{task_id}/applications/{application_id}/reject",
        headers=auth_headers(CREATOR_AGENT_ID),
    )

    assert response.status_code == 200
    assert response.json()["application"]["status"] == "REJECTED"


@pytest.mark.unit
async def test_withdraw_accepted_application_frees_slot(client) -> None:
    task_id = await setup_active_task(client)
    await setup_hired_worker(client, task_id)

    response = await client.post(
        f"/tasks/{task_id}/withdraw", headers=auth_headers(WORKER_AGENT_ID)
    )

    assert response.status_code == 200
    data = response.json()
    assert data["withdrawn"] is True
    assert data["previous_status"] == "ACCEPTED"
    assert data["task_status"] == "ACTIVE"
    task = await client.get(f"/tasks/{task_id}")
    assert task.json()["current_workers"] == 0


@pytest.mark.unit
async def test_release_after_rejected_submission(client) -> None:
    task_id = await setup_active_task(client)
    application_id = await setup_hired_worker(client, task_id)
    release_url = f"/tasks/{task_id}/applications/{application_id}/release"

    too_early = await client.post(release_url, headers=auth_headers(CREATOR_AGENT_ID))
    assert too_early.status_code == 409

    submission_id = await submit_work(client, task_id)
    await review(client, submission_id, "REJECT", "Missing half the boxes")

    window_open = await client.post(release_url, headers=auth_headers(CREATOR_AGENT_ID))
    assert window_open.status_code == 409
    assert window_open.json()["error"] == "DISPUTE_WINDOW_OPEN"

    expired = (datetime.now(UTC) - timedelta(hours=49)).isoformat().replace("+00:00", "Z")
    get_app_state().store.conditional_update(
        "submissions", submission_id, {}, {"reviewed_at": expired}
    )

    released = await client.post(release_url, headers=auth_headers(CREATOR_AGENT_ID))
    assert released.status_code == 200
    assert released.json()["application"]["status"] == "RELEASED"
    task = await client.get(f"/tasks/{task_id}")
    assert task.json()["current_workers"] == 0
