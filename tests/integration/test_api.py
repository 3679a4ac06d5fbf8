"""Integration tests for the HTTP API.

Tests cover:
- Health and readiness endpoints
- Task inspection, dispatch, withdrawal and ranking preview
- Runner accept/decline answers, including duplicates and unknown offers
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from runnermatch.database.models.task import TaskKind
from runnermatch.database.queries import task as task_queries


async def _wait_for_offer(client: AsyncClient, task_id: uuid.UUID) -> dict[str, Any]:
    """Poll the task until it has a pending offer."""
    for _ in range(100):
        response = await client.get(f"/tasks/{task_id}")
        pending = [o for o in response.json()["offers"] if o["state"] == "pending"]
        if pending:
            return pending[0]
        await asyncio.sleep(0.02)
    raise AssertionError("no offer was made")


async def _wait_for_status(client: AsyncClient, task_id: uuid.UUID, status: str) -> dict[str, Any]:
    for _ in range(100):
        body = (await client.get(f"/tasks/{task_id}")).json()
        if body["status"] == status and not body["dispatching"]:
            return body
        await asyncio.sleep(0.02)
    raise AssertionError(f"task never reached {status}")


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_health_endpoint(async_client: AsyncClient) -> None:
    response = await async_client.get("/health/")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_readiness_reports_database_and_dispatcher(async_client: AsyncClient) -> None:
    response = await async_client.get("/health/ready")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "database": "connected",
        "dispatcher": "stopped",
        "active_dispatches": 0,
    }


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_task(async_client: AsyncClient, add_task) -> None:
    task = await add_task(["food", "grocery"], title="Weekly shop")

    response = await async_client.get(f"/tasks/{task.id}")

    assert response.status_code == 200
    body = response.json()
    assert body["title"] == "Weekly shop"
    assert body["kind"] == "errand"
    assert body["status"] == "pending"
    assert body["categories"] == ["food", "grocery"]
    assert body["dispatching"] is False
    assert body["offers"] == []


@pytest.mark.asyncio
async def test_unknown_task_is_404(async_client: AsyncClient) -> None:
    missing = uuid.uuid4()

    assert (await async_client.get(f"/tasks/{missing}")).status_code == 404
    assert (await async_client.post(f"/tasks/{missing}/dispatch")).status_code == 404
    assert (await async_client.delete(f"/tasks/{missing}")).status_code == 404


@pytest.mark.asyncio
async def test_dispatch_and_accept_over_http(
    async_client: AsyncClient, add_performer, add_task
) -> None:
    runner = await add_performer()
    task = await add_task()

    response = await async_client.post(f"/tasks/{task.id}/dispatch")
    assert response.status_code == 202
    assert response.json() == {"task_id": str(task.id), "status": "dispatching"}

    offer = await _wait_for_offer(async_client, task.id)
    assert offer["performer_id"] == str(runner.id)

    accepted = await async_client.post(f"/offers/{offer['id']}/accept")
    assert accepted.status_code == 200
    assert accepted.json()["applied"] is True
    assert accepted.json()["state"] == "accepted"

    body = await _wait_for_status(async_client, task.id, "assigned")
    assert body["assigned_performer_id"] == str(runner.id)

    duplicate = await async_client.post(f"/offers/{offer['id']}/accept")
    assert duplicate.status_code == 200
    assert duplicate.json()["applied"] is False
    assert duplicate.json()["state"] == "accepted"

    # No longer pending
    assert (await async_client.post(f"/tasks/{task.id}/dispatch")).status_code == 422


@pytest.mark.asyncio
async def test_decline_over_http(async_client: AsyncClient, add_performer, add_task) -> None:
    await add_performer()
    task = await add_task()
    await async_client.post(f"/tasks/{task.id}/dispatch")
    offer = await _wait_for_offer(async_client, task.id)

    declined = await async_client.post(f"/offers/{offer['id']}/decline")

    assert declined.status_code == 200
    assert declined.json()["applied"] is True
    assert declined.json()["state"] == "declined"
    await _wait_for_status(async_client, task.id, "unfulfilled")


@pytest.mark.asyncio
async def test_second_dispatch_conflicts_then_withdraw(
    async_client: AsyncClient, add_performer, add_task
) -> None:
    await add_performer()
    task = await add_task()

    assert (await async_client.post(f"/tasks/{task.id}/dispatch")).status_code == 202
    assert (await async_client.post(f"/tasks/{task.id}/dispatch")).status_code == 409
    offer = await _wait_for_offer(async_client, task.id)

    response = await async_client.delete(f"/tasks/{task.id}")

    assert response.status_code == 200
    assert response.json() == {"task_id": str(task.id), "withdrawn": True, "status": "cancelled"}
    late = await async_client.post(f"/offers/{offer['id']}/accept")
    assert late.json()["applied"] is False


@pytest.mark.asyncio
async def test_withdraw_after_assignment_fails(
    async_client: AsyncClient, db_session: AsyncSession, add_performer, add_task
) -> None:
    runner = await add_performer()
    task = await add_task()
    await task_queries.assign_task(db_session, task.id, runner.id)

    response = await async_client.delete(f"/tasks/{task.id}")

    assert response.status_code == 200
    assert response.json()["withdrawn"] is False
    assert response.json()["status"] == "assigned"


@pytest.mark.asyncio
async def test_dispatch_without_origin_is_422(
    async_client: AsyncClient, db_session: AsyncSession
) -> None:
    task = await task_queries.create_task(
        db_session, TaskKind.errand, "Nowhere", ["food"], None, None
    )

    assert (await async_client.post(f"/tasks/{task.id}/dispatch")).status_code == 422
    assert (await async_client.get(f"/tasks/{task.id}/ranking")).status_code == 422


@pytest.mark.asyncio
async def test_ranking_preview(async_client: AsyncClient, add_performer, add_task) -> None:
    near = await add_performer("near", meters=50, rating=3.0)
    far = await add_performer("far", meters=400, rating=3.0)
    await add_performer("outside", meters=2_000, rating=5.0)
    task = await add_task()

    response = await async_client.get(f"/tasks/{task.id}/ranking")

    assert response.status_code == 200
    body = response.json()
    assert body["excluded"] == []
    assert [c["performer_id"] for c in body["candidates"]] == [str(near.id), str(far.id)]
    assert body["candidates"][0]["final_score"] > body["candidates"][1]["final_score"]


# ---------------------------------------------------------------------------
# Offers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unknown_offer_is_404(async_client: AsyncClient) -> None:
    missing = uuid.uuid4()

    assert (await async_client.post(f"/offers/{missing}/accept")).status_code == 404
    assert (await async_client.post(f"/offers/{missing}/decline")).status_code == 404
