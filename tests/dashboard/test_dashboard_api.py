"""HTTP tests for the reward, ops and health endpoints."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from classpoints.db.models import RewardJob
from classpoints.rewards.seed import seed_achievements
from classpoints.rewards.types import JobStatus
from classpoints.workers.reward_worker import RewardJobWorker


pytestmark = pytest.mark.asyncio


async def _drain(session_factory, settings) -> dict[str, int]:
    """Let the reward worker apply whatever the ops API queued."""
    worker = RewardJobWorker(session_factory, settings=settings.model_copy(update={"max_concurrency": 1}))
    return await worker.poll_once()


class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    async def test_version(self, client):
        response = await client.get("/version")
        assert response.status_code == 200
        assert "version" in response.json()

    async def test_request_id_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-Id": "req-123"})
        assert response.headers["X-Request-Id"] == "req-123"


class TestStudentEndpoints:
    async def test_adjust_then_read(self, client, db_session, session_factory, settings):
        await seed_achievements(db_session)

        response = await client.post("/api/v1/ops/points/adjust", json={
            "student_id": "stu-1",
            "amount": 120,
            "source": "BONUS",
            "source_id": "science-fair",
            "class_id": "class-7b",
        })
        assert response.status_code == 202
        body = response.json()
        assert body["kind"] == "POINTS_ADJUSTMENT"
        assert body["status"] == "PENDING"
        assert body["duplicate"] is False

        # Queued only: nothing is awarded until the worker runs
        points = (await client.get("/api/v1/students/stu-1/points")).json()
        assert all(s["totals"].get("ALL_TIME", 0) == 0 for s in points["scopes"])

        assert (await _drain(session_factory, settings))["done"] == 1

        points = (await client.get("/api/v1/students/stu-1/points")).json()
        assert points["scopes"][0]["scope_kind"] == "GLOBAL"
        assert points["scopes"][0]["totals"]["ALL_TIME"] == 120

        level = (await client.get(
            "/api/v1/students/stu-1/levels", params={"scope_kind": "CLASS", "scope_id": "class-7b"},
        )).json()
        assert level["level"] == 2

        achievements = (await client.get("/api/v1/students/stu-1/achievements", params={"unlocked": "true"})).json()
        assert achievements["unlocked"] == 1
        assert achievements["achievements"][0]["slug"] == "century"

    async def test_duplicate_adjustment(self, client, db_session):
        await seed_achievements(db_session)
        payload = {"student_id": "stu-1", "amount": 10, "source": "BONUS", "source_id": "b-1"}
        first = (await client.post("/api/v1/ops/points/adjust", json=payload)).json()
        response = await client.post("/api/v1/ops/points/adjust", json=payload)
        assert response.status_code == 202
        assert response.json()["duplicate"] is True
        assert response.json()["id"] == first["id"]

    async def test_scope_id_required(self, client):
        response = await client.get("/api/v1/students/stu-1/levels", params={"scope_kind": "CLASS"})
        assert response.status_code == 400
        assert "scope_id" in response.json()["detail"]

    async def test_invalid_period(self, client):
        response = await client.get("/api/v1/leaderboards/CLASS/class-7b/FORTNIGHT")
        assert response.status_code == 422

    async def test_empty_leaderboard(self, client):
        response = await client.get("/api/v1/leaderboards/CLASS/class-7b/WEEK")
        assert response.status_code == 200
        assert response.json()["entries"] == []


class TestOpsEndpoints:
    async def test_repair(self, client, db_session, session_factory, settings):
        await seed_achievements(db_session)
        await client.post("/api/v1/ops/points/adjust", json={
            "student_id": "stu-1", "amount": 40, "source": "BONUS", "source_id": "b-1",
        })
        await _drain(session_factory, settings)

        response = await client.post("/api/v1/ops/aggregates/repair", json={
            "student_id": "stu-1", "period_type": "ALL_TIME", "period_key": "all",
        })
        assert response.status_code == 200
        assert response.json()["total"] == 40
        assert response.json()["previous_total"] == 40

    async def test_job_status(self, client, db_session, session_factory, settings):
        await seed_achievements(db_session)
        queued = (await client.post("/api/v1/ops/points/adjust", json={
            "student_id": "stu-1", "amount": 5, "source": "BONUS", "source_id": "b-1",
        })).json()
        await _drain(session_factory, settings)

        response = await client.get(f"/api/v1/ops/jobs/{queued['id']}")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "DONE"
        assert body["attempts"] == 1
        assert body["last_error"] is None

    async def test_job_status_unknown(self, client):
        response = await client.get("/api/v1/ops/jobs/12345")
        assert response.status_code == 404

    async def test_requeue_unknown_job(self, client):
        response = await client.post("/api/v1/ops/jobs/12345/requeue")
        assert response.status_code == 404

    async def test_requeue_dead_job(self, client, db_session):
        now = datetime.now(timezone.utc)
        job = RewardJob(
            idempotency_key="stu-1:ACTIVITY:act-1",
            status=JobStatus.DEAD.value,
            attempts=5,
            last_error="RuntimeError: boom",
            created_at=now,
            updated_at=now,
        )
        db_session.add(job)
        await db_session.commit()

        response = await client.post(f"/api/v1/ops/jobs/{job.id}/requeue")
        assert response.status_code == 200
        assert response.json()["status"] == "PENDING"
        assert response.json()["attempts"] == 0
        assert response.json()["kind"] == "COMPLETION"
        assert response.json()["last_error"] is None

    async def test_requeue_pending_job_conflicts(self, client, db_session):
        now = datetime.now(timezone.utc)
        job = RewardJob(idempotency_key="k", status=JobStatus.PENDING.value, created_at=now, updated_at=now)
        db_session.add(job)
        await db_session.commit()

        response = await client.post(f"/api/v1/ops/jobs/{job.id}/requeue")
        assert response.status_code == 409

    async def test_outbox_poll_and_ack(self, client, db_session, session_factory, settings):
        await seed_achievements(db_session)
        await client.post("/api/v1/ops/points/adjust", json={
            "student_id": "stu-1", "amount": 10, "source": "BONUS", "source_id": "b-1",
        })
        assert (await client.get("/api/v1/ops/outbox")).json() == []
        await _drain(session_factory, settings)

        records = (await client.get("/api/v1/ops/outbox")).json()
        assert [r["kind"] for r in records] == ["POINTS_AWARDED"]

        response = await client.post("/api/v1/ops/outbox/ack", json={"ids": [records[0]["id"]]})
        assert response.json() == {"delivered": 1}
        assert (await client.get("/api/v1/ops/outbox")).json() == []

    async def test_reset_achievement(self, client, db_session, session_factory, settings):
        await seed_achievements(db_session)
        response = await client.post("/api/v1/ops/achievements/reset", json={
            "student_id": "stu-1", "slug": "bookworm",
        })
        assert response.status_code == 202
        queued = response.json()
        assert queued["kind"] == "ACHIEVEMENT_RESET"
        assert queued["status"] == "PENDING"

        assert (await _drain(session_factory, settings))["done"] == 1
        job = (await client.get(f"/api/v1/ops/jobs/{queued['id']}")).json()
        assert job["status"] == "DONE"
