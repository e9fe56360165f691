"""Job store with compare-and-swap transitions and TTL semantics."""
from __future__ import annotations

import copy
import json
import logging
import os
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import InvalidTransition, JobNotFound
from .models import ACTIVE_STATES, ALLOWED_TRANSITIONS, Job, JobState, utcnow

LOGGER = logging.getLogger("genjobs.jobs.store")

RESTART_ERROR_MESSAGE = "Server restarted while job was running"


class MemoryJobBackend:
    """Keeps nothing outside the process: the store's table is the only copy."""

    def load(self) -> Dict[str, Job]:
        return {}

    def save(self, jobs: Iterable[Job]) -> None:
        return None


class JsonFileJobBackend:
    """Persist the job table as a JSON snapshot rewritten after every mutation."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Dict[str, Job]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            LOGGER.warning("Corrupted job snapshot %s: %s", self._path, exc)
            return {}
        if not isinstance(raw, list):
            LOGGER.warning("Unexpected job snapshot format in %s, expected a list", self._path)
            return {}

        jobs: Dict[str, Job] = {}
        for entry in raw:
            if not isinstance(entry, dict) or "id" not in entry:
                continue
            try:
                job = Job.from_dict(entry)
            except ValueError as exc:
                LOGGER.warning("Skipping malformed job entry: %s", exc)
                continue
            # Workers of the previous process are gone; nobody will finish these.
            if job.state in ACTIVE_STATES:
                job.state = JobState.ERROR
                job.error_message = RESTART_ERROR_MESSAGE
                job.result_ref = None
                job.updated_at = utcnow()
            jobs[job.id] = job
        return jobs

    def save(self, jobs: Iterable[Job]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = [job.to_dict() for job in jobs]
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, self._path)


class JobStore:
    """Thread-safe single source of truth for job records.

    ``transition`` is the only path that changes a job's state. It is a
    compare-and-swap: the caller names the state it expects the job to be in,
    and loses if someone else moved the job first.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int = 3600,
        backend: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl_seconds = max(1, int(ttl_seconds))
        self._backend = backend or MemoryJobBackend()
        self._clock = clock
        self._lock = threading.RLock()
        self._jobs: Dict[str, Job] = self._backend.load()
        now = self._clock()
        self._expiry: Dict[str, float] = {job_id: now + self._ttl_seconds for job_id in self._jobs}

    def insert(
        self,
        request: Dict[str, Any],
        *,
        owner_id: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> str:
        with self._lock:
            self._purge_expired_locked()
            job_id = uuid.uuid4().hex
            while job_id in self._jobs:
                job_id = uuid.uuid4().hex
            job = Job(id=job_id, request=copy.deepcopy(request), owner_id=owner_id, trace_id=trace_id)
            self._commit_locked({job_id: job})
            self._touch_locked(job_id)
            return job_id

    def get(self, job_id: str) -> Job:
        with self._lock:
            self._purge_expired_locked()
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            return copy.deepcopy(job)

    def transition(
        self,
        job_id: str,
        from_state: JobState,
        to_state: JobState,
        *,
        result_ref: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Job:
        from_state = JobState(from_state)
        to_state = JobState(to_state)
        _check_payload(to_state, result_ref, error_message)
        with self._lock:
            self._purge_expired_locked()
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.state != from_state or (from_state, to_state) not in ALLOWED_TRANSITIONS:
                raise InvalidTransition(job_id, from_state.value, job.state.value, to_state.value)
            updated = copy.deepcopy(job)
            updated.state = to_state
            updated.result_ref = result_ref if to_state == JobState.DONE else None
            updated.error_message = error_message if to_state == JobState.ERROR else None
            updated.updated_at = utcnow()
            self._commit_locked({job_id: updated})
            self._touch_locked(job_id)
            return copy.deepcopy(updated)

    def request_cancel(self, job_id: str) -> Job:
        """Raise the cooperative cancel flag; terminal jobs are left untouched."""

        with self._lock:
            self._purge_expired_locked()
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if not job.is_terminal and not job.cancel_requested:
                job = copy.deepcopy(job)
                job.cancel_requested = True
                job.updated_at = utcnow()
                self._commit_locked({job_id: job})
                self._touch_locked(job_id)
            return copy.deepcopy(job)

    def delete(self, job_id: str) -> bool:
        with self._lock:
            if job_id not in self._jobs:
                self._expiry.pop(job_id, None)
                return False
            self._commit_locked({job_id: None})
            self._expiry.pop(job_id, None)
            return True

    def active_for_owner(self, owner_id: str) -> List[Job]:
        with self._lock:
            self._purge_expired_locked()
            return [
                copy.deepcopy(job)
                for job in self._jobs.values()
                if job.owner_id == owner_id and job.state in ACTIVE_STATES
            ]

    def counts(self) -> Dict[str, int]:
        with self._lock:
            self._purge_expired_locked()
            totals = {state.value: 0 for state in JobState}
            for job in self._jobs.values():
                totals[job.state.value] += 1
            return totals

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_expired_locked()

    def _touch_locked(self, job_id: str) -> None:
        self._expiry[job_id] = self._clock() + self._ttl_seconds

    def _commit_locked(self, changes: Dict[str, Optional[Job]]) -> None:
        """Write the changed table to the backend, then swap it in.

        A failed save leaves the in-memory table untouched.
        """

        table = dict(self._jobs)
        for job_id, job in changes.items():
            if job is None:
                table.pop(job_id, None)
            else:
                table[job_id] = job
        self._backend.save(list(table.values()))
        self._jobs = table

    def _purge_expired_locked(self) -> int:
        now = self._clock()
        expired = [job_id for job_id, deadline in self._expiry.items() if deadline <= now]
        for job_id in expired:
            self._jobs.pop(job_id, None)
            self._expiry.pop(job_id, None)
        if expired:
            LOGGER.info("jobs_evicted", extra={"count": len(expired)})
            try:
                self._backend.save(list(self._jobs.values()))
            except OSError as exc:
                # Eviction stands; the next mutation rewrites the snapshot.
                LOGGER.warning("Failed to persist job eviction: %s", exc)
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired_locked()
            return len(self._jobs)


def _check_payload(to_state: JobState, result_ref: Optional[str], error_message: Optional[str]) -> None:
    if to_state == JobState.DONE:
        if not result_ref or error_message is not None:
            raise ValueError("done requires a result_ref and no error_message")
    elif to_state == JobState.ERROR:
        if not error_message or result_ref is not None:
            raise ValueError("error requires an error_message and no result_ref")
    elif result_ref is not None or error_message is not None:
        raise ValueError(f"{to_state.value} carries no result_ref or error_message")


__all__ = ["JobStore", "MemoryJobBackend", "JsonFileJobBackend", "RESTART_ERROR_MESSAGE"]
