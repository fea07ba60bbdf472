from __future__ import annotations

import httpx
from fastapi.testclient import TestClient

from applyflow.api.app import create_app
from applyflow.api.deps import get_core_client
from applyflow.clients.core import CoreClient
from applyflow.db.repositories import Repository
from applyflow.db.session import SessionLocal
from fakes import make_settings, seed_user


def _seed(jobs: int = 2) -> tuple[int, list[int]]:
    with SessionLocal() as db:
        cv, job_ids = seed_user(Repository(db), jobs=jobs)
        return cv.id, job_ids


def test_enqueue_list_and_status() -> None:
    cv_id, job_ids = _seed()
    client = TestClient(create_app())

    resp = client.post("/api/queue", json={"user_id": "user-1", "cv_id": cv_id, "job_ids": job_ids})
    assert resp.status_code == 200
    workflow_id = resp.json()["workflow_id"]
    assert resp.json()["queued_count"] == 2

    items = client.get("/api/queue", params={"workflow_id": workflow_id}).json()
    assert len(items) == 2
    assert {item["status"] for item in items} == {"pending"}

    status = client.get(f"/api/workflows/{workflow_id}").json()
    assert status["queue"]["pending"] == 2
    assert status["status"] == "active"


def test_enqueue_validation_errors() -> None:
    cv_id, _ = _seed()
    client = TestClient(create_app())

    assert client.post("/api/queue", json={"user_id": "user-1", "cv_id": cv_id, "job_ids": []}).status_code == 422
    resp = client.post("/api/queue", json={"user_id": "user-1", "cv_id": cv_id, "job_ids": [999]})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "No valid jobs found"


def test_cancel_and_remove() -> None:
    cv_id, job_ids = _seed(jobs=3)
    client = TestClient(create_app())
    workflow_id = client.post(
        "/api/queue", json={"user_id": "user-1", "cv_id": cv_id, "job_ids": job_ids}
    ).json()["workflow_id"]

    with SessionLocal() as db:
        claimed = Repository(db).claim_batch(limit=1)[0]

    assert client.delete(f"/api/queue/{claimed.id}").status_code == 409
    assert client.delete("/api/queue/424242").status_code == 404

    pending = client.get("/api/queue", params={"status": "pending"}).json()
    assert client.delete(f"/api/queue/{pending[0]['id']}").status_code == 200

    resp = client.post(f"/api/workflows/{workflow_id}/cancel")
    assert resp.status_code == 200
    assert resp.json()["cancelled_count"] == 1
    assert client.post("/api/workflows/missing/cancel").status_code == 404
    assert client.get("/api/workflows/missing").status_code == 404


def test_applications_and_rate_limit_usage() -> None:
    with SessionLocal() as db:
        Repository(db).insert_application(user_id="user-1", job_external_id="job-x")
    client = TestClient(create_app())

    apps = client.get("/api/applications", params={"user_id": "user-1"}).json()
    assert [row["job_external_id"] for row in apps] == ["job-x"]

    usage = client.get("/api/rate-limit/user-1").json()
    assert usage["hourly_count"] == 1
    assert usage["hourly_limit"] == 8
    assert usage["can_submit"] is True


def test_health_endpoints() -> None:
    app = create_app()

    async def fake_core_client():
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"status": "ok"}))
        client = CoreClient(make_settings(), transport=transport)
        try:
            yield client
        finally:
            await client.aclose()

    app.dependency_overrides[get_core_client] = fake_core_client
    client = TestClient(app)

    assert client.get("/health").json() == {"status": "ok"}
    core = client.get("/health/core").json()
    assert core["healthy"] is True
    assert "breaker" not in core
