"""
Tests for the pipeline HTTP API.

The app runs in-process through httpx's ASGI transport; the lifespan is
not started, so no worker runs and sessions come from the test database.
"""

from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio

from feedback_triage.config import JobStatus, settings
from feedback_triage.infrastructure.database import get_session
from feedback_triage.infrastructure.llm import CircuitBreaker, CircuitState
from feedback_triage import main
from feedback_triage.main import app

from stubs import ScriptedLLMClient

SECRET = "test-secret-0123456789"
AUTH = {"X-API-Secret": SECRET}


@pytest_asyncio.fixture
async def client(session_maker, monkeypatch):
    monkeypatch.setattr(settings, "api_secret", SECRET)

    async def override_get_session():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = override_get_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client
    app.dependency_overrides.clear()


async def enqueue(client, thread_id, **payload):
    return await client.post("/pipeline/jobs", json={"threadId": thread_id, **payload}, headers=AUTH)


@pytest.mark.asyncio
async def test_health_needs_no_secret(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert "X-Correlation-ID" in response.headers


class TestReadiness:

    @pytest.fixture
    def wired(self, monkeypatch):
        """App state as the lifespan leaves it, with a scheduler that is not running."""
        async def ping():
            return True

        monkeypatch.setattr(main, "ping_database", ping)
        runtime = SimpleNamespace(scheduler=SimpleNamespace(is_running=False))
        monkeypatch.setattr(app.state, "runtime", runtime, raising=False)
        monkeypatch.setattr(app.state, "llm_client", ScriptedLLMClient({}), raising=False)
        monkeypatch.setattr(app.state, "circuit_breaker", CircuitBreaker(), raising=False)
        return runtime

    @pytest.mark.asyncio
    async def test_ready_reports_every_check(self, client, wired, monkeypatch):
        monkeypatch.setattr(settings, "run_pipeline_worker", False)

        response = await client.get("/ready")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["checks"]["database"] == "connected"
        assert body["checks"]["pipeline_worker"] == "disabled"
        assert body["checks"]["llm"] == "stub"
        assert body["checks"]["circuit_breaker"]["state"] == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_ready_reports_scheduler_state(self, client, wired, monkeypatch):
        monkeypatch.setattr(settings, "run_pipeline_worker", True)
        wired.scheduler.is_running = True

        response = await client.get("/ready")

        assert response.json()["checks"]["pipeline_worker"] == "running"

    @pytest.mark.asyncio
    async def test_database_down_is_not_ready(self, client, wired, monkeypatch):
        async def ping():
            raise ConnectionError("connection refused")

        monkeypatch.setattr(main, "ping_database", ping)

        response = await client.get("/ready")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "not_ready"
        assert body["checks"]["database"] == "error: connection refused"
        assert "circuit_breaker" in body["checks"]


class TestAuth:

    @pytest.mark.asyncio
    async def test_missing_secret(self, client):
        response = await client.get("/pipeline/jobs/stats")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_secret(self, client):
        response = await client.get("/pipeline/jobs/stats", headers={"X-API-Secret": "x" * 22})

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_secret_not_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "api_secret", None)

        response = await client.get("/pipeline/jobs/stats", headers=AUTH)

        assert response.status_code == 503


class TestEnqueue:

    @pytest.mark.asyncio
    async def test_returns_pending_job_in_camel_case(self, client, make_thread):
        thread_id = await make_thread()

        response = await enqueue(client, thread_id)

        assert response.status_code == 202
        body = response.json()
        assert body["supersededJobs"] == 0
        job = body["job"]
        assert job["threadId"] == thread_id
        assert job["status"] == JobStatus.PENDING
        assert job["attempts"] == 0
        assert job["maxAttempts"] == 3
        assert len(job["publicId"]) == 12
        assert job["claimedAt"] is None

    @pytest.mark.asyncio
    async def test_second_enqueue_supersedes_first(self, client, make_thread):
        thread_id = await make_thread()
        first = (await enqueue(client, thread_id)).json()["job"]

        second = await enqueue(client, thread_id)

        assert second.json()["supersededJobs"] == 1
        old = await client.get(f"/pipeline/jobs/{first['publicId']}", headers=AUTH)
        assert old.json()["status"] == JobStatus.CANCELED

    @pytest.mark.asyncio
    async def test_unknown_thread_is_404(self, client):
        response = await enqueue(client, 424242)

        assert response.status_code == 404
        assert response.json()["resource_type"] == "Thread"

    @pytest.mark.asyncio
    async def test_rejects_invalid_thread_id(self, client):
        response = await enqueue(client, 0)

        assert response.status_code == 422


class TestInspect:

    @pytest.mark.asyncio
    async def test_get_job(self, client, make_thread):
        job = (await enqueue(client, await make_thread())).json()["job"]

        response = await client.get(f"/pipeline/jobs/{job['publicId']}", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["publicId"] == job["publicId"]

    @pytest.mark.asyncio
    async def test_unknown_job_is_404(self, client):
        response = await client.get("/pipeline/jobs/doesnotexist", headers=AUTH)

        assert response.status_code == 404
        assert response.json()["resource_type"] == "PipelineJob"

    @pytest.mark.asyncio
    async def test_stats(self, client, make_thread):
        await enqueue(client, await make_thread())
        await enqueue(client, await make_thread())

        response = await client.get("/pipeline/jobs/stats", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert body["statuses"][JobStatus.PENDING]["count"] == 2
        assert body["statuses"][JobStatus.FAILED]["count"] == 0

    @pytest.mark.asyncio
    async def test_thread_jobs_newest_first(self, client, make_thread):
        thread_id = await make_thread()
        await enqueue(client, thread_id)
        latest = (await enqueue(client, thread_id)).json()["job"]

        response = await client.get(f"/pipeline/threads/{thread_id}/jobs?limit=5", headers=AUTH)

        body = response.json()
        assert body["threadId"] == thread_id
        assert [job["status"] for job in body["jobs"]] == [JobStatus.PENDING, JobStatus.CANCELED]
        assert body["jobs"][0]["publicId"] == latest["publicId"]


class TestCircuitBreakerAdmin:

    @pytest.mark.asyncio
    async def test_reset_closes_breaker(self, client, monkeypatch):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60)
        breaker.record_failure()
        monkeypatch.setattr(app.state, "circuit_breaker", breaker, raising=False)

        response = await client.post("/admin/reset-circuit-breaker", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["previousState"] == CircuitState.OPEN
        assert body["state"] == CircuitState.CLOSED
        assert body["consecutiveFailures"] == 0
        assert breaker.allow_request()

    @pytest.mark.asyncio
    async def test_reset_requires_secret(self, client):
        response = await client.post("/admin/reset-circuit-breaker")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_reset_without_breaker(self, client, monkeypatch):
        monkeypatch.delattr(app.state, "circuit_breaker", raising=False)

        response = await client.post("/admin/reset-circuit-breaker", headers=AUTH)

        assert response.status_code == 503
