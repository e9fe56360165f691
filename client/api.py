"""HTTP client for the job API consumed by client-side job handles."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from config import JOB_API_BASE_URL, JOB_API_TIMEOUT_S
from observability.logger import get_logger

LOGGER = get_logger("genjobs.client.api")


class TransportError(Exception):
    """Client-to-server communication failed (network, non-2xx, bad body)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class JobGone(Exception):
    """The server does not know the job (HTTP 404): stop polling, start over."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


@dataclass
class CreatedJob:
    job_id: str
    server_epoch: Optional[int]


class JobApiClient:
    """Thin wrapper over the job endpoints.

    ``create``, ``status`` and ``cancel`` map to ``/jobs``, ``/jobs/<id>/status``
    and ``/jobs/<id>/cancel`` under the server's ``/api`` prefix.
    """

    def __init__(
        self,
        base_url: str = JOB_API_BASE_URL,
        *,
        timeout_s: float = JOB_API_TIMEOUT_S,
        owner_id: Optional[str] = None,
        http_client: Optional[Any] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout_s)
        self._owner_id = owner_id
        self._client = http_client or httpx.Client(timeout=self._timeout)
        self._owns_client = http_client is None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._owner_id:
            headers["X-User-Id"] = self._owner_id
        return headers

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _send(self, method: str, path: str, *, payload: Optional[Dict[str, Any]] = None, job_id: Optional[str] = None):
        url = self._url(path)
        try:
            if method == "POST":
                response = self._client.post(url, json=payload or {}, headers=self._headers())
            else:
                response = self._client.get(url, headers=self._headers())
        except httpx.HTTPError as exc:
            LOGGER.warning("job_api_transport_failed", extra={"url": url, "error": str(exc)})
            raise TransportError(f"Request to {path} failed: {exc}") from exc

        status = int(response.status_code)
        if status == 404 and job_id is not None:
            raise JobGone(job_id)
        if status >= 400:
            raise TransportError(_error_message(response, status), status_code=status)
        try:
            body = response.json()
        except ValueError as exc:
            raise TransportError(f"Invalid JSON from {path}", status_code=status) from exc
        if not isinstance(body, dict):
            raise TransportError(f"Unexpected payload from {path}", status_code=status)
        return body

    def create(self, request: Dict[str, Any]) -> CreatedJob:
        body = self._send("POST", "/api/jobs", payload=request)
        job_id = body.get("jobId")
        if not isinstance(job_id, str) or not job_id:
            raise TransportError("Server response carries no jobId")
        return CreatedJob(job_id=job_id, server_epoch=_as_int(body.get("serverEpoch")))

    def status(self, job_id: str) -> Dict[str, Any]:
        body = self._send("GET", f"/api/jobs/{job_id}/status", job_id=job_id)
        if not isinstance(body.get("state"), str):
            raise TransportError("Status response carries no state")
        return body

    def cancel(self, job_id: str) -> Dict[str, Any]:
        return self._send("POST", f"/api/jobs/{job_id}/cancel", job_id=job_id)

    def server_epoch(self) -> int:
        body = self._send("GET", "/api/server/epoch")
        epoch = _as_int(body.get("epoch"))
        if epoch is None:
            raise TransportError("Epoch response carries no epoch")
        return epoch


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _error_message(response: Any, status: int) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return f"HTTP {status}: {error['message']}"
    return f"HTTP {status}"


__all__ = ["CreatedJob", "JobApiClient", "JobGone", "TransportError"]
