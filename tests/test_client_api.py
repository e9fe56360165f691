from __future__ import annotations

import sys
from pathlib import Path

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from client.api import CreatedJob, JobApiClient, JobGone, TransportError  # noqa: E402


class DummyResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class DummyClient:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def _reply(self):
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    def post(self, url, json=None, headers=None):
        self.requests.append(("POST", url, json, headers))
        return self._reply()

    def get(self, url, headers=None):
        self.requests.append(("GET", url, None, headers))
        return self._reply()


def _api(response, **kwargs):
    client = DummyClient(response)
    return JobApiClient("http://jobs.local/", http_client=client, **kwargs), client


def test_create_returns_job_id_and_epoch():
    api, client = _api(DummyResponse(200, {"jobId": "abc", "serverEpoch": 1700}))

    created = api.create({"tags": "lullaby"})

    assert created == CreatedJob(job_id="abc", server_epoch=1700)
    method, url, payload, headers = client.requests[0]
    assert (method, url, payload) == ("POST", "http://jobs.local/api/jobs", {"tags": "lullaby"})
    assert "X-User-Id" not in headers


def test_owner_header_is_sent():
    api, client = _api(DummyResponse(200, {"state": "pending"}), owner_id="u1")
    api.status("abc")
    assert client.requests[0][3]["X-User-Id"] == "u1"


def test_create_without_job_id_is_transport_error():
    api, _ = _api(DummyResponse(200, {"serverEpoch": 1}))
    with pytest.raises(TransportError):
        api.create({})


def test_status_404_means_job_gone():
    api, _ = _api(DummyResponse(404, {"error": {"message": "Job abc not found", "code": 404}}))
    with pytest.raises(JobGone) as excinfo:
        api.status("abc")
    assert excinfo.value.job_id == "abc"


def test_cancel_404_means_job_gone():
    api, _ = _api(DummyResponse(404, None))
    with pytest.raises(JobGone):
        api.cancel("abc")


def test_server_error_is_transport_error_with_message():
    api, _ = _api(DummyResponse(500, {"error": {"message": "Internal server error", "code": 500}}))
    with pytest.raises(TransportError) as excinfo:
        api.status("abc")
    assert excinfo.value.status_code == 500
    assert "Internal server error" in excinfo.value.message


def test_network_failure_is_transport_error():
    request = httpx.Request("GET", "http://jobs.local/api/jobs/abc/status")
    api, _ = _api(httpx.ConnectError("connection refused", request=request))
    with pytest.raises(TransportError):
        api.status("abc")


def test_invalid_json_is_transport_error():
    api, _ = _api(DummyResponse(200, None))
    with pytest.raises(TransportError):
        api.status("abc")


def test_status_without_state_is_transport_error():
    api, _ = _api(DummyResponse(200, {"resultRef": "r1"}))
    with pytest.raises(TransportError):
        api.status("abc")


def test_server_epoch():
    api, client = _api(DummyResponse(200, {"epoch": 1_700_000_000_000}))
    assert api.server_epoch() == 1_700_000_000_000
    assert client.requests[0][1] == "http://jobs.local/api/server/epoch"


def test_server_epoch_404_is_not_job_gone():
    api, _ = _api(DummyResponse(404, None))
    with pytest.raises(TransportError):
        api.server_epoch()
