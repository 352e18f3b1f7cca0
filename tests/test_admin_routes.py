"""Tests for the admin endpoints: /sync, /sync/jobs and /worker."""

import asyncio

import pytest

from app.core.config import settings
from app.services.jobs import tasks


@pytest.fixture
def sent_jobs(monkeypatch):
    """Capture worker enqueues instead of talking to Redis."""
    sent = []
    monkeypatch.setattr(tasks.run_sync_worker_task, "send", lambda *args: sent.append(args))
    return sent


class TestAdminAuth:

    def test_missing_token_is_401(self, client):
        response = client.post("/sync", json={"app_key": "fake_app"})

        assert response.status_code == 401

    def test_wrong_token_is_401(self, client):
        response = client.post("/sync", json={"app_key": "fake_app"}, headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid admin token"

    def test_unconfigured_admin_key_is_500(self, client, admin_headers, monkeypatch):
        monkeypatch.setattr(settings, "admin_api_key", None)

        response = client.post("/worker", headers=admin_headers)

        assert response.status_code == 500

    def test_rate_limited_per_token(self, client, admin_headers):
        statuses = [
            client.get("/sync/jobs/missing", headers=admin_headers).status_code
            for _ in range(11)
        ]

        assert statuses[:10] == [404] * 10
        assert statuses[10] == 429


class TestTriggerSync:

    def test_creates_job_and_enqueues_worker(self, client, admin_headers, store, sent_jobs):
        response = client.post(
            "/sync",
            json={"app_key": "fake_app", "resource_types": ["customer", "product"]},
            headers=admin_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["total_tasks"] == 2
        assert sent_jobs == [(body["job_id"],)]
        job = asyncio.run(store.get_job(body["job_id"]))
        assert job["needs_worker"] is False
        assert job["worker_spawned_at"] is not None

    def test_enqueue_failure_leaves_job_for_dispatcher(self, client, admin_headers, store, monkeypatch):
        def broken_send(*args):
            raise ConnectionError("redis down")

        monkeypatch.setattr(tasks.run_sync_worker_task, "send", broken_send)

        response = client.post("/sync", json={"app_key": "fake_app"}, headers=admin_headers)

        assert response.status_code == 200
        job = asyncio.run(store.get_job(response.json()["job_id"]))
        assert job["needs_worker"] is True

    def test_immediate_sync_runs_inline(self, client, admin_headers, store):
        response = client.post(
            "/sync",
            json={"app_key": "fake_app", "immediate": True, "resource_types": ["customer"]},
            headers=admin_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["created"] == 3
        assert body["resource_types"] == ["customer"]
        assert asyncio.run(store.get_entity("fake_app", "fake_customer", "c2")) is not None

    def test_unknown_app_is_404(self, client, admin_headers):
        response = client.post("/sync", json={"app_key": "nope"}, headers=admin_headers)

        assert response.status_code == 404

    def test_unknown_resource_is_400(self, client, admin_headers):
        response = client.post(
            "/sync",
            json={"app_key": "fake_app", "resource_types": ["invoice"]},
            headers=admin_headers,
        )

        assert response.status_code == 400
        assert "invoice" in response.json()["detail"]

    def test_invalid_mode_is_400(self, client, admin_headers):
        response = client.post(
            "/sync",
            json={"app_key": "fake_app", "mode": "delta", "immediate": True},
            headers=admin_headers,
        )

        assert response.status_code == 400

    def test_missing_app_key_is_400(self, client, admin_headers):
        response = client.post("/sync", json={"mode": "full"}, headers=admin_headers)

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Invalid request body"
        assert body["details"][0]["path"] == "app_key"

    def test_malformed_json_is_400(self, client, admin_headers):
        response = client.post(
            "/sync",
            content=b"{not json",
            headers={**admin_headers, "Content-Type": "application/json"},
        )

        assert response.status_code == 400


class TestJobs:

    def _create_job(self, client, admin_headers):
        response = client.post(
            "/sync",
            json={"app_key": "fake_app", "resource_types": ["customer", "product"]},
            headers=admin_headers,
        )
        return response.json()["job_id"]

    def test_status_includes_tasks_by_default(self, client, admin_headers, sent_jobs):
        job_id = self._create_job(client, admin_headers)

        response = client.get(f"/sync/jobs/{job_id}", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["job"]["id"] == job_id
        assert [t["resource_type"] for t in body["tasks"]] == ["customer", "product"]
        assert body["progress_percentage"] == 0

    def test_status_without_tasks(self, client, admin_headers, sent_jobs):
        job_id = self._create_job(client, admin_headers)

        response = client.get(f"/sync/jobs/{job_id}?include_tasks=false", headers=admin_headers)

        assert response.json()["tasks"] is None

    def test_unknown_job_is_404(self, client, admin_headers):
        assert client.get("/sync/jobs/missing", headers=admin_headers).status_code == 404
        assert client.post("/sync/jobs/missing/cancel", headers=admin_headers).status_code == 404

    def test_cancel_active_job(self, client, admin_headers, store, sent_jobs):
        job_id = self._create_job(client, admin_headers)

        response = client.post(f"/sync/jobs/{job_id}/cancel", headers=admin_headers)

        assert response.json() == {"job_id": job_id, "status": "cancelled", "cancelled": True}
        tasks_after = asyncio.run(store.get_job_tasks(job_id))
        assert all(t["status"] == "failed" for t in tasks_after)

    def test_cancel_finished_job_reports_its_status(self, client, admin_headers, store, sent_jobs):
        job_id = self._create_job(client, admin_headers)
        client.post("/worker", json={"job_id": job_id}, headers=admin_headers)

        response = client.post(f"/sync/jobs/{job_id}/cancel", headers=admin_headers)

        assert response.json() == {"job_id": job_id, "status": "completed", "cancelled": False}


class TestWorkerEndpoint:

    def test_runs_pending_tasks(self, client, admin_headers, sent_jobs):
        job_id = client.post(
            "/sync",
            json={"app_key": "fake_app", "resource_types": ["customer", "product"]},
            headers=admin_headers,
        ).json()["job_id"]

        response = client.post("/worker", json={"job_id": job_id}, headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["tasks_processed"] == 2
        assert body["jobs_completed"] == [job_id]
        assert body["shutdown_reason"] == "no_tasks"

        status = client.get(f"/sync/jobs/{job_id}", headers=admin_headers).json()
        assert status["job"]["status"] == "completed"
        assert status["progress_percentage"] == 100

    def test_empty_body_drains_any_job(self, client, admin_headers):
        response = client.post("/worker", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["tasks_processed"] == 0

    def test_max_tasks_must_be_positive(self, client, admin_headers):
        response = client.post("/worker", json={"max_tasks": 0}, headers=admin_headers)

        assert response.status_code == 400


class TestHealth:

    def test_reports_degraded_without_database(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "degraded"
        assert body["apps"] == {"fake_app": "fake", "stripe_test": "stripe"}
        assert "fake" in body["connectors"]

    def test_reports_healthy_with_database(self, client, supabase, monkeypatch):
        from app.core import dependencies

        monkeypatch.setattr(dependencies, "_supabase_client", supabase)

        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["database"] == "connected"
