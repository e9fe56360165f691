"""Error taxonomy of the job subsystem."""
from __future__ import annotations

from typing import Optional


class JobError(Exception):
    """Base class for job subsystem errors with an HTTP status hint."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(JobError):
    """Malformed request at create time; the job is never created."""

    status_code = 400


class JobNotFound(JobError):
    """Job id is unknown: never existed, deleted, evicted or foreign."""

    status_code = 404

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransition(JobError):
    """Compare-and-swap on the job state lost, or the edge is not allowed."""

    status_code = 409

    def __init__(self, job_id: str, expected: str, actual: Optional[str], target: str) -> None:
        super().__init__(f"Job {job_id}: cannot move {expected} -> {target} (current state: {actual})")
        self.job_id = job_id
        self.expected = expected
        self.actual = actual
        self.target = target


class ProviderError(JobError):
    """External generation call failed."""

    status_code = 502


__all__ = ["JobError", "ValidationError", "JobNotFound", "InvalidTransition", "ProviderError"]
