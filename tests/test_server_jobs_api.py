from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from jobs.service import JobService  # noqa: E402
from jobs.store import JobStore  # noqa: E402
from server import create_app  # noqa: E402


class StaticProvider:
    def __init__(self, result="r1"):
        self.result = result
        self.calls = []

    def run(self, request):
        self.calls.append(request)
        return self.result


class DeferredSpawn:
    def __init__(self):
        self.workers = []

    def __call__(self, worker):
        self.workers.append(worker)

    def run_all(self):
        for worker in self.workers:
            worker.run()


@pytest.fixture
def spawn():
    return DeferredSpawn()


@pytest.fixture
def service(spawn):
    return JobService(
        JobStore(ttl_seconds=60),
        StaticProvider("r1"),
        check_interval_s=0.01,
        provider_timeout_s=5,
        server_epoch=1_700_000_000_000,
        spawn=spawn,
    )


@pytest.fixture
def client(service):
    app = create_app(service)
    app.config["TESTING"] = True
    return app.test_client()


def test_create_job_returns_id_and_epoch(client):
    response = client.post("/api/jobs", json={"tags": "lullaby"})

    assert response.status_code == 200
    payload = response.get_json()
    assert isinstance(payload["jobId"], str) and payload["jobId"]
    assert payload["serverEpoch"] == 1_700_000_000_000
    assert response.headers["Cache-Control"] == "no-store"


def test_create_job_rejects_non_object_body(client):
    response = client.post("/api/jobs", json=["lullaby"])
    assert response.status_code == 400
    assert response.get_json()["error"]["code"] == 400


def test_create_job_rejects_malformed_json(client):
    response = client.post("/api/jobs", data="{oops", content_type="application/json")
    assert response.status_code == 400
    assert "Malformed" in response.get_json()["error"]["message"]


def test_status_follows_worker_to_done(client, spawn):
    job_id = client.post("/api/jobs", json={"tags": "lullaby"}).get_json()["jobId"]

    pending = client.get(f"/api/jobs/{job_id}/status")
    assert pending.status_code == 200
    assert pending.get_json() == {"state": "pending"}

    spawn.run_all()
    done = client.get(f"/api/jobs/{job_id}/status")
    assert done.get_json() == {"state": "done", "resultRef": "r1"}

    cancel = client.post(f"/api/jobs/{job_id}/cancel")
    assert cancel.status_code == 200
    assert cancel.get_json() == {"state": "done"}


def test_cancel_pending_job(client, spawn, service):
    job_id = client.post("/api/jobs", json={}).get_json()["jobId"]

    response = client.post(f"/api/jobs/{job_id}/cancel")
    assert response.get_json() == {"state": "cancelled"}

    spawn.run_all()
    assert client.get(f"/api/jobs/{job_id}/status").get_json() == {"state": "cancelled"}


def test_unknown_job_returns_404_envelope(client):
    for response in (
        client.get("/api/jobs/nope/status"),
        client.post("/api/jobs/nope/cancel"),
        client.delete("/api/jobs/nope"),
    ):
        assert response.status_code == 404
        error = response.get_json()["error"]
        assert error["code"] == 404
        assert "nope" in error["message"]


def test_delete_discards_job(client):
    job_id = client.post("/api/jobs", json={}).get_json()["jobId"]

    response = client.delete(f"/api/jobs/{job_id}")
    assert response.status_code == 200
    assert response.get_json() == {"deleted": True}
    assert client.get(f"/api/jobs/{job_id}/status").status_code == 404


def test_owner_header_scopes_jobs(client):
    job_id = client.post("/api/jobs", json={}, headers={"X-User-Id": "u1"}).get_json()["jobId"]

    foreign = client.get(f"/api/jobs/{job_id}/status", headers={"X-User-Id": "u2"})
    assert foreign.status_code == 404
    own = client.get(f"/api/jobs/{job_id}/status", headers={"X-User-Id": "u1"})
    assert own.get_json() == {"state": "pending"}


def test_cancel_all_requires_owner(client):
    response = client.post("/api/jobs/user/cancel-all")
    assert response.status_code == 401


def test_cancel_all_for_owner(client):
    headers = {"X-User-Id": "u1"}
    first = client.post("/api/jobs", json={}, headers=headers).get_json()["jobId"]

    response = client.post("/api/jobs/user/cancel-all", headers=headers)
    assert response.get_json() == {"cancelled": 1}
    assert client.get(f"/api/jobs/{first}/status").get_json() == {"state": "cancelled"}


def test_server_epoch_endpoint(client):
    response = client.get("/api/server/epoch")
    assert response.status_code == 200
    assert response.get_json() == {"epoch": 1_700_000_000_000}


def test_health_reports_job_counts(client):
    client.post("/api/jobs", json={})
    response = client.get("/api/health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["ok"] is True
    assert payload["jobs"]["pending"] == 1
    assert "jobs.created_total" in payload["metrics"]


def test_trace_id_is_echoed(client):
    response = client.get("/api/server/epoch", headers={"X-Trace-Id": "trace-123"})
    assert response.headers["X-Trace-Id"] == "trace-123"


def test_trace_id_lands_on_job(client, service):
    job_id = client.post("/api/jobs", json={}, headers={"X-Trace-Id": "trace-abc"}).get_json()["jobId"]
    assert service.get(job_id).trace_id == "trace-abc"


def test_job_routes_are_mounted_under_api_prefix(service):
    app = create_app(service)
    rules = {(rule.rule, method) for rule in app.url_map.iter_rules() for method in rule.methods}

    assert ("/api/jobs", "POST") in rules
    assert ("/api/jobs/<job_id>/status", "GET") in rules
    assert ("/api/jobs/<job_id>/cancel", "POST") in rules
    assert app.test_client().post("/jobs", json={}).status_code == 404


def test_unknown_route_is_json_404(client):
    response = client.get("/api/nothing-here")
    assert response.status_code == 404
    assert response.get_json()["error"]["code"] == 404
