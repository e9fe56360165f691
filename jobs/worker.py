"""Background worker executing one job's provider call with cooperative cancellation."""
from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from observability.logger import get_logger, log_transition
from observability.metrics import get_registry

from .errors import InvalidTransition, JobNotFound
from .models import JobState
from .store import JobStore

LOGGER = get_logger("genjobs.jobs.worker")
REGISTRY = get_registry()
DONE_COUNTER = REGISTRY.counter("jobs.done_total")
ERROR_COUNTER = REGISTRY.counter("jobs.error_total")
CANCELLED_COUNTER = REGISTRY.counter("jobs.cancelled_total")
DISCARDED_COUNTER = REGISTRY.counter("jobs.discarded_results_total")
PROVIDER_SECONDS = REGISTRY.summary("jobs.provider_seconds")

_OUTCOME_COUNTERS = {
    JobState.DONE: DONE_COUNTER,
    JobState.ERROR: ERROR_COUNTER,
    JobState.CANCELLED: CANCELLED_COUNTER,
}


@dataclass
class ProviderOutcome:
    kind: str  # "ok" | "failed" | "timeout" | "cancelled"
    result_ref: Optional[str] = None
    error_message: Optional[str] = None


class GenerationWorker:
    """Run exactly one job's provider call to a terminal state.

    The provider call itself may not be abortable. On cancellation the worker
    stops *waiting* for it and moves the job to ``cancelled``; whatever the
    provider returns later is dropped because the compare-and-swap
    ``processing -> done`` can no longer succeed.
    """

    def __init__(
        self,
        store: JobStore,
        provider: Any,
        job_id: str,
        *,
        cancel_event: Optional[threading.Event] = None,
        check_interval_s: float = 0.5,
        timeout_s: float = 600.0,
        on_finished: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._provider = provider
        self.job_id = job_id
        self.cancel_event = cancel_event or threading.Event()
        self._check_interval_s = max(0.01, float(check_interval_s))
        self._timeout_s = max(0.01, float(timeout_s))
        self._on_finished = on_finished
        self._clock = clock
        self._abandoned = threading.Event()
        self._handoff = threading.Lock()
        self._results: "queue.Queue[ProviderOutcome]" = queue.Queue(maxsize=1)
        self._trace_id: Optional[str] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> threading.Thread:
        if self._thread is None:
            self._thread = threading.Thread(target=self.run, name=f"job-worker-{self.job_id[:8]}", daemon=True)
            self._thread.start()
        return self._thread

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self) -> Optional[JobState]:
        """Drive the job to a terminal state. Never raises."""

        try:
            return self._run()
        except Exception:  # noqa: BLE001
            LOGGER.exception("job_worker_crashed", extra={"job_id": self.job_id})
            return self._settle(JobState.ERROR, error_message="Internal worker error")
        finally:
            if self._on_finished is not None:
                try:
                    self._on_finished(self.job_id)
                except Exception:  # noqa: BLE001
                    LOGGER.exception("job_worker_callback_failed", extra={"job_id": self.job_id})

    def _run(self) -> Optional[JobState]:
        try:
            job = self._store.get(self.job_id)
        except JobNotFound:
            LOGGER.warning("job_missing", extra={"job_id": self.job_id})
            return None
        self._trace_id = job.trace_id

        if job.cancel_requested or self.cancel_event.is_set():
            LOGGER.info("job_cancelled_before_start", extra={"job_id": self.job_id, "trace_id": self._trace_id})
            self._try_transition(JobState.PENDING, JobState.CANCELLED)
            return self._current_state()

        if not self._try_transition(JobState.PENDING, JobState.PROCESSING):
            # JobService already cancelled it; the provider is never dispatched.
            return self._current_state()

        outcome = self._await_provider(job.request)
        if outcome.kind == "ok":
            return self._settle(JobState.DONE, result_ref=outcome.result_ref)
        if outcome.kind == "cancelled":
            return self._settle(JobState.CANCELLED)
        return self._settle(JobState.ERROR, error_message=outcome.error_message)

    def _await_provider(self, request: Dict[str, Any]) -> ProviderOutcome:
        started_at = self._clock()

        def _call() -> None:
            try:
                ref = self._provider.run(request)
            except Exception as exc:  # noqa: BLE001
                outcome = ProviderOutcome("failed", error_message=str(exc) or exc.__class__.__name__)
            else:
                if isinstance(ref, str) and ref.strip():
                    outcome = ProviderOutcome("ok", result_ref=ref.strip())
                else:
                    outcome = ProviderOutcome("failed", error_message="Provider returned an empty artifact reference")
            PROVIDER_SECONDS.observe(max(0.0, self._clock() - started_at))
            self._deliver(outcome)

        helper = threading.Thread(target=_call, name=f"job-provider-{self.job_id[:8]}", daemon=True)
        helper.start()

        deadline = started_at + self._timeout_s
        while True:
            if self._should_stop_waiting():
                self._abandon()
                return ProviderOutcome("cancelled")
            remaining = deadline - self._clock()
            if remaining <= 0:
                self._abandon()
                return ProviderOutcome("timeout", error_message=f"Provider timed out after {self._timeout_s:g}s")
            try:
                return self._results.get(timeout=min(self._check_interval_s, remaining))
            except queue.Empty:
                continue

    def _deliver(self, outcome: ProviderOutcome) -> None:
        with self._handoff:
            if not self._abandoned.is_set():
                self._results.put(outcome)
                return
        self._discard_late(outcome)

    def _abandon(self) -> None:
        with self._handoff:
            self._abandoned.set()
            try:
                pending = self._results.get_nowait()
            except queue.Empty:
                return
        # Arrived between the last wait slice and the decision to stop waiting.
        self._discard_late(pending)

    def _discard_late(self, outcome: ProviderOutcome) -> None:
        DISCARDED_COUNTER.inc()
        LOGGER.info(
            "late_provider_result_discarded",
            extra={"job_id": self.job_id, "outcome": outcome.kind, "trace_id": self._trace_id},
        )

    def _should_stop_waiting(self) -> bool:
        if self.cancel_event.is_set():
            return True
        try:
            job = self._store.get(self.job_id)
        except JobNotFound:
            return True
        return job.cancel_requested or job.state != JobState.PROCESSING

    def _settle(
        self,
        to_state: JobState,
        *,
        result_ref: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[JobState]:
        if self._try_transition(JobState.PROCESSING, to_state, result_ref=result_ref, error_message=error_message):
            return to_state
        if to_state == JobState.DONE:
            DISCARDED_COUNTER.inc()
            LOGGER.info(
                "job_result_discarded",
                extra={"job_id": self.job_id, "result_ref": result_ref, "trace_id": self._trace_id},
            )
        return self._current_state()

    def _try_transition(
        self,
        from_state: JobState,
        to_state: JobState,
        *,
        result_ref: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        try:
            self._store.transition(
                self.job_id,
                from_state,
                to_state,
                result_ref=result_ref,
                error_message=error_message,
            )
        except (InvalidTransition, JobNotFound) as exc:
            LOGGER.info(
                "job_transition_lost",
                extra={"job_id": self.job_id, "target": to_state.value, "reason": exc.message},
            )
            return False
        except OSError:
            LOGGER.exception("job_transition_not_persisted", extra={"job_id": self.job_id, "target": to_state.value})
            return False
        log_transition(
            LOGGER,
            job_id=self.job_id,
            from_state=from_state.value,
            to_state=to_state.value,
            trace_id=self._trace_id,
            error=error_message,
        )
        counter = _OUTCOME_COUNTERS.get(to_state)
        if counter is not None:
            counter.inc()
        return True

    def _current_state(self) -> Optional[JobState]:
        try:
            return self._store.get(self.job_id).state
        except JobNotFound:
            return None


__all__ = ["GenerationWorker", "ProviderOutcome"]
