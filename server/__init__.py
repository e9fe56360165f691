"""Flask application exposing the generation job subsystem via HTTP."""
from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from flask import Flask, current_app, g, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from config import JOB_STORE_PATH, JOB_STORE_TTL_S
from jobs import JobError, JobService, JobStore, JsonFileJobBackend, MemoryJobBackend
from observability.logger import bind_trace_id, clear_trace_id, get_logger
from observability.metrics import get_registry
from services.provider import get_default_provider

load_dotenv()

LOGGER = get_logger("genjobs.api")

OWNER_HEADER = "X-User-Id"
TRACE_HEADER = "X-Trace-Id"


class ApiError(Exception):
    """Exception translated into an HTTP error response."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def build_job_service() -> JobService:
    backend = JsonFileJobBackend(JOB_STORE_PATH) if JOB_STORE_PATH else MemoryJobBackend()
    store = JobStore(ttl_seconds=JOB_STORE_TTL_S, backend=backend)
    return JobService(store, get_default_provider())


def create_app(service: Optional[JobService] = None) -> Flask:
    """Build the job API.

    The job routes ``POST /jobs``, ``GET /jobs/<id>/status`` and
    ``POST /jobs/<id>/cancel`` are mounted under the ``/api`` prefix shared
    with the rest of the portal API, e.g. ``POST /api/jobs``.
    """

    app = Flask(__name__)
    if hasattr(app, "json"):
        app.json.ensure_ascii = False
    CORS(app, resources={r"/api/*": {"origins": "*"}}, expose_headers=[TRACE_HEADER])
    app.extensions["job_service"] = service or build_job_service()

    @app.before_request
    def _bind_request_trace() -> None:
        trace_id = request.headers.get(TRACE_HEADER) or uuid.uuid4().hex
        g.trace_id = trace_id
        bind_trace_id(trace_id)

    @app.after_request
    def _append_trace(response):  # type: ignore[override]
        trace_id = getattr(g, "trace_id", None)
        if trace_id:
            response.headers.setdefault(TRACE_HEADER, trace_id)
        if request.path.startswith("/api/jobs"):
            response.headers.setdefault("Cache-Control", "no-store")
        clear_trace_id()
        return response

    @app.teardown_request
    def _teardown_trace(_exc):  # type: ignore[override]
        clear_trace_id()

    @app.errorhandler(ApiError)
    def _handle_api_error(exc: ApiError):  # type: ignore[override]
        LOGGER.warning("API error", extra={"error_message": exc.message, "code": exc.status_code})
        return _error_response(exc.message, exc.status_code)

    @app.errorhandler(JobError)
    def _handle_job_error(exc: JobError):  # type: ignore[override]
        if exc.status_code >= 500:
            LOGGER.error("Job error", extra={"error_message": exc.message, "code": exc.status_code})
        return _error_response(exc.message, exc.status_code)

    @app.errorhandler(HTTPException)
    def _handle_http_error(exc: HTTPException):  # type: ignore[override]
        return _error_response(exc.description or exc.name, exc.code or 500)

    @app.errorhandler(Exception)
    def _handle_generic_error(exc: Exception):  # type: ignore[override]
        LOGGER.exception("Unhandled error")
        return _error_response("Internal server error", 500)

    @app.post("/api/jobs")
    def create_job():
        payload = _require_json(request)
        job_id = _service().create(
            payload,
            owner_id=_owner_id(),
            trace_id=getattr(g, "trace_id", None),
        )
        return jsonify({"jobId": job_id, "serverEpoch": _service().server_epoch}), 200

    @app.get("/api/jobs/<job_id>/status")
    def job_status(job_id: str):
        return jsonify(_service().status(job_id, owner_id=_owner_id()))

    @app.post("/api/jobs/<job_id>/cancel")
    def cancel_job(job_id: str):
        return jsonify(_service().cancel(job_id, owner_id=_owner_id()))

    @app.delete("/api/jobs/<job_id>")
    def discard_job(job_id: str):
        removed = _service().discard(job_id, owner_id=_owner_id())
        return jsonify({"deleted": removed})

    @app.post("/api/jobs/user/cancel-all")
    def cancel_all_jobs():
        owner_id = _owner_id()
        if not owner_id:
            raise ApiError("Login required", status_code=401)
        count = _service().cancel_all_for_owner(owner_id)
        return jsonify({"cancelled": count})

    @app.get("/api/server/epoch")
    def server_epoch():
        return jsonify({"epoch": _service().server_epoch})

    @app.get("/api/health")
    def health():
        status = _service().health()
        metrics = get_registry().snapshot()
        status["metrics"] = {name: value for name, value in metrics.items() if name.startswith("jobs.")}
        http_status = 200 if status.get("ok") else 503
        return jsonify(status), http_status

    return app


def _service() -> JobService:
    return current_app.extensions["job_service"]


def _owner_id() -> Optional[str]:
    raw = request.headers.get(OWNER_HEADER, "")
    value = raw.strip()
    return value or None


def _require_json(req) -> Dict[str, Any]:
    try:
        data = req.get_json(force=True)  # type: ignore[no-any-return]
    except Exception as exc:  # noqa: BLE001
        raise ApiError("Malformed JSON body") from exc
    if not isinstance(data, dict):
        raise ApiError("Expected a JSON object")
    return data


def _error_response(message: str, status_code: int):
    trace_id = getattr(g, "trace_id", None)
    return (
        jsonify(
            {
                "error": {
                    "message": message,
                    "code": status_code,
                    "trace_id": trace_id,
                }
            }
        ),
        status_code,
    )


app = create_app()
