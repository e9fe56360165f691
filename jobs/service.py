"""Server-facing API of the job subsystem."""
from __future__ import annotations

import threading
import time
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional

from config import JOB_PROVIDER_TIMEOUT_S, JOB_SUPERSEDE_PER_OWNER, JOB_WORKER_CHECK_INTERVAL_S
from observability.logger import get_logger, log_transition
from observability.metrics import get_registry

from .errors import InvalidTransition, JobNotFound, ValidationError
from .models import Job, JobState
from .store import JobStore
from .worker import GenerationWorker

LOGGER = get_logger("genjobs.jobs.service")
REGISTRY = get_registry()
CREATED_COUNTER = REGISTRY.counter("jobs.created_total")
CANCELLED_COUNTER = REGISTRY.counter("jobs.cancelled_total")
ACTIVE_GAUGE = REGISTRY.gauge("jobs.active")


def _start_worker(worker: GenerationWorker) -> None:
    worker.start()


class JobService:
    """Create jobs, report their status and accept cancellations.

    This is the only object the HTTP layer talks to. Each created job gets its
    own ``GenerationWorker``; the service keeps the worker's cancellation token
    so a cancel request reaches a worker that is blocked on the provider.
    """

    def __init__(
        self,
        store: JobStore,
        provider: Any,
        *,
        check_interval_s: float = JOB_WORKER_CHECK_INTERVAL_S,
        provider_timeout_s: float = JOB_PROVIDER_TIMEOUT_S,
        supersede_per_owner: bool = JOB_SUPERSEDE_PER_OWNER,
        server_epoch: Optional[int] = None,
        spawn: Callable[[GenerationWorker], None] = _start_worker,
    ) -> None:
        self._store = store
        self._provider = provider
        self._check_interval_s = check_interval_s
        self._provider_timeout_s = provider_timeout_s
        self._supersede_per_owner = supersede_per_owner
        self._server_epoch = int(server_epoch if server_epoch is not None else time.time() * 1000)
        self._spawn = spawn
        self._workers: Dict[str, GenerationWorker] = {}
        self._workers_lock = threading.Lock()

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def server_epoch(self) -> int:
        """Process start time in milliseconds; changes on every restart."""

        return self._server_epoch

    def create(
        self,
        request: Any,
        *,
        owner_id: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> str:
        if not isinstance(request, Mapping):
            raise ValidationError("Job request must be a JSON object")

        if owner_id and self._supersede_per_owner:
            superseded = self.cancel_all_for_owner(owner_id)
            if superseded:
                LOGGER.info("jobs_superseded", extra={"owner_id": owner_id, "count": superseded})

        job_id = self._store.insert(dict(request), owner_id=owner_id, trace_id=trace_id)
        CREATED_COUNTER.inc()
        worker = GenerationWorker(
            self._store,
            self._provider,
            job_id,
            check_interval_s=self._check_interval_s,
            timeout_s=self._provider_timeout_s,
            on_finished=self._worker_finished,
        )
        with self._workers_lock:
            self._workers[job_id] = worker
            ACTIVE_GAUGE.set(float(len(self._workers)))
        LOGGER.info("job_created", extra={"job_id": job_id, "owner_id": owner_id, "trace_id": trace_id})
        self._spawn(worker)
        return job_id

    def get(self, job_id: str, *, owner_id: Optional[str] = None) -> Job:
        job = self._store.get(job_id)
        if owner_id and job.owner_id and job.owner_id != owner_id:
            raise JobNotFound(job_id)
        return job

    def status(self, job_id: str, *, owner_id: Optional[str] = None) -> Dict[str, Any]:
        return self.get(job_id, owner_id=owner_id).to_status()

    def cancel(self, job_id: str, *, owner_id: Optional[str] = None) -> Dict[str, Any]:
        job = self.get(job_id, owner_id=owner_id)
        if job.is_terminal:
            return {"state": job.state.value}

        self._store.request_cancel(job_id)
        with self._workers_lock:
            worker = self._workers.get(job_id)
        if worker is not None:
            worker.cancel_event.set()

        for from_state in (JobState.PENDING, JobState.PROCESSING):
            try:
                self._store.transition(job_id, from_state, JobState.CANCELLED)
            except InvalidTransition:
                continue
            CANCELLED_COUNTER.inc()
            log_transition(
                LOGGER,
                job_id=job_id,
                from_state=from_state.value,
                to_state=JobState.CANCELLED.value,
                trace_id=job.trace_id,
                initiator="user",
            )
            break
        return {"state": self._store.get(job_id).state.value}

    def cancel_all_for_owner(self, owner_id: str) -> int:
        cancelled = 0
        for job in self._store.active_for_owner(owner_id):
            try:
                result = self.cancel(job.id, owner_id=owner_id)
            except JobNotFound:
                continue
            if result["state"] == JobState.CANCELLED.value:
                cancelled += 1
        return cancelled

    def discard(self, job_id: str, *, owner_id: Optional[str] = None) -> bool:
        """Cancel the job if it is still running, then drop its record."""

        job = self.get(job_id, owner_id=owner_id)
        if not job.is_terminal:
            self.cancel(job_id, owner_id=owner_id)
        removed = self._store.delete(job_id)
        LOGGER.info("job_discarded", extra={"job_id": job_id, "removed": removed})
        return removed

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the job is terminal. Returns False on timeout or if it vanished."""

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            try:
                if self._store.get(job_id).is_terminal:
                    return True
            except JobNotFound:
                return False
            if deadline is None:
                time.sleep(0.02)
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(0.02, remaining))

    def active_workers(self) -> List[str]:
        with self._workers_lock:
            return list(self._workers)

    def health(self) -> Dict[str, Any]:
        counts = self._store.counts()
        return {
            "ok": True,
            "server_epoch": self._server_epoch,
            "jobs": counts,
            "active_workers": len(self.active_workers()),
        }

    def shutdown(self, timeout: float = 1.0) -> None:
        with self._workers_lock:
            workers = list(self._workers.values())
        for worker in workers:
            worker.cancel_event.set()
        for worker in workers:
            worker.join(timeout)

    def _worker_finished(self, job_id: str) -> None:
        with self._workers_lock:
            self._workers.pop(job_id, None)
            ACTIVE_GAUGE.set(float(len(self._workers)))


__all__ = ["JobService"]
