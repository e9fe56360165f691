"""Reload-resilient client handle for one in-flight generation job."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from config import JOB_POLL_INTERVAL_MS
from observability.logger import get_logger

from .api import JobGone, TransportError
from .restart_guard import RestartGuard
from .storage import (
    JOB_ID_KEY,
    JOB_LAST_RESET_KEY,
    JOB_LOCAL_STATE_KEY,
    JOB_REQUEST_SNAPSHOT_KEY,
    JOB_SERVER_EPOCH_KEY,
    clear_handle,
    load_handle,
)

LOGGER = get_logger("genjobs.client.handle")

IDLE = "idle"
PENDING = "pending"
TERMINAL = frozenset({"done", "error", "cancelled"})
STATUS_CHECK_FAILED = "status check failed"


@dataclass
class JobOutcome:
    job_id: str
    state: str
    result_ref: Optional[str] = None
    error_message: Optional[str] = None


class ClientJobHandle:
    """Client-side view of one job: persisted reference plus a polling loop.

    Polling runs on one background thread per tracked job. A single
    ``threading.Event`` stops it, whichever way the loop ends: terminal state,
    job gone, transport failure, user cancel, or ``close()`` when the UI goes
    away. Responses that arrive after the token was set are ignored.
    """

    def __init__(
        self,
        api: Any,
        storage: Any,
        *,
        poll_interval_s: float = JOB_POLL_INTERVAL_MS / 1000.0,
        on_update: Optional[Callable[[str], None]] = None,
        on_result: Optional[Callable[[JobOutcome], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        on_reset: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._api = api
        self._storage = storage
        self._poll_interval_s = max(0.01, float(poll_interval_s))
        self._on_update = on_update
        self._on_result = on_result
        self._on_error = on_error
        self._on_reset = on_reset
        self._clock = clock
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._stop.set()
        self._thread: Optional[threading.Thread] = None
        self._seq = 0
        self._delivered = False
        self.job_id: Optional[str] = None
        self.local_state: str = IDLE
        self.outcome: Optional[JobOutcome] = None
        self.error: Optional[str] = None

    @classmethod
    def restore(
        cls,
        api: Any,
        storage: Any,
        *,
        guard: Optional[RestartGuard] = None,
        **kwargs: Any,
    ) -> "ClientJobHandle":
        """Client load: drop stale handles, otherwise resume polling the persisted job."""

        handle = cls(api, storage, **kwargs)
        guard = guard or RestartGuard(storage, api, clock=handle._clock)
        if not guard.check():
            return handle
        persisted = load_handle(storage)
        if persisted is None:
            return handle
        with handle._lock:
            handle.local_state = persisted.local_state or PENDING
        LOGGER.info("job_handle_restored", extra={"job_id": persisted.job_id, "local_state": handle.local_state})
        handle._begin_polling(persisted.job_id)
        return handle

    @property
    def is_polling(self) -> bool:
        return not self._stop.is_set()

    def start(self, request: Dict[str, Any]) -> str:
        if self.is_polling:
            raise RuntimeError("This handle is already tracking a job")
        self._storage.set(JOB_REQUEST_SNAPSHOT_KEY, request)
        with self._lock:
            self.outcome = None
            self.error = None
            self.local_state = PENDING
        try:
            created = self._api.create(request)
        except TransportError as exc:
            with self._lock:
                self.local_state = "error"
                self.error = exc.message
            raise

        # Persist before the first poll: a reload during the round-trip must not lose the job.
        self._storage.set(JOB_ID_KEY, created.job_id)
        self._storage.set(JOB_SERVER_EPOCH_KEY, created.server_epoch)
        self._storage.set(JOB_LOCAL_STATE_KEY, PENDING)
        self._storage.set(JOB_LAST_RESET_KEY, int(self._clock() * 1000))
        LOGGER.info("job_handle_started", extra={"job_id": created.job_id})
        self._begin_polling(created.job_id)
        return created.job_id

    def cancel(self) -> Optional[str]:
        """Cancel from the UI. Always honoured locally; returns the server's state if it answered."""

        with self._lock:
            job_id = self.job_id
            self._stop.set()
            self._delivered = True
        if job_id is None:
            return None
        server_state: Optional[str] = None
        try:
            server_state = self._api.cancel(job_id).get("state")
        except (TransportError, JobGone) as exc:
            LOGGER.warning("job_cancel_request_failed", extra={"job_id": job_id, "error": str(exc)})
        clear_handle(self._storage)
        with self._lock:
            self.job_id = None
            self.local_state = "cancelled"
        LOGGER.info("job_handle_cancelled", extra={"job_id": job_id, "server_state": server_state})
        return server_state

    def close(self) -> None:
        """Stop polling without forgetting the job; a later ``restore`` resumes it."""

        self._stop.set()

    def acknowledge(self) -> None:
        """The user has seen the outcome: return to idle."""

        self._stop.set()
        clear_handle(self._storage)
        with self._lock:
            self.job_id = None
            self.local_state = IDLE
            self.outcome = None
            self.error = None

    def wait(self, timeout: Optional[float] = None) -> Optional[JobOutcome]:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        return self.outcome

    def poll_once(self) -> bool:
        """Run one status check now. Returns True while the job should keep being polled."""

        with self._lock:
            job_id = self.job_id
            token = self._stop
        if job_id is None or token.is_set():
            return False
        return self._tick(job_id, token)

    def _begin_polling(self, job_id: str) -> None:
        with self._lock:
            self.job_id = job_id
            self._delivered = False
            token = threading.Event()
            self._stop = token
            self._thread = threading.Thread(
                target=self._poll_loop,
                args=(job_id, token),
                name=f"job-poll-{job_id[:8]}",
                daemon=True,
            )
            self._thread.start()

    def _poll_loop(self, job_id: str, token: threading.Event) -> None:
        while not token.wait(self._poll_interval_s):
            if not self._tick(job_id, token):
                break

    def _tick(self, job_id: str, token: threading.Event) -> bool:
        with self._lock:
            self._seq += 1
            seq = self._seq
        try:
            status = self._api.status(job_id)
        except JobGone:
            return self._apply_gone(job_id, token, seq)
        except TransportError as exc:
            return self._apply_failure(job_id, token, seq, exc.message)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("job_poll_crashed", extra={"job_id": job_id})
            return self._apply_failure(job_id, token, seq, str(exc))
        return self._apply_status(job_id, token, seq, status)

    def _is_current(self, job_id: str, token: threading.Event, seq: int) -> bool:
        return not token.is_set() and self.job_id == job_id and seq == self._seq

    def _apply_status(self, job_id: str, token: threading.Event, seq: int, status: Dict[str, Any]) -> bool:
        state = str(status.get("state"))
        deliver: Optional[JobOutcome] = None
        with self._lock:
            if not self._is_current(job_id, token, seq):
                # Superseded by a newer request: drop it, keep polling unless stopped.
                return not token.is_set()
            self.local_state = state
            if state in TERMINAL:
                token.set()
                clear_handle(self._storage)
                self.outcome = JobOutcome(
                    job_id=job_id,
                    state=state,
                    result_ref=status.get("resultRef"),
                    error_message=status.get("errorMessage"),
                )
                if not self._delivered:
                    self._delivered = True
                    deliver = self.outcome
            else:
                self._storage.set(JOB_LOCAL_STATE_KEY, state)
        if deliver is not None:
            LOGGER.info("job_handle_finished", extra={"job_id": job_id, "state": state})
            self._notify(self._on_result, deliver)
            return False
        if state in TERMINAL:
            return False
        self._notify(self._on_update, state)
        return True

    def _apply_gone(self, job_id: str, token: threading.Event, seq: int) -> bool:
        with self._lock:
            if not self._is_current(job_id, token, seq):
                return not token.is_set()
            token.set()
            clear_handle(self._storage)
            self.job_id = None
            self.local_state = IDLE
        LOGGER.info("job_handle_reset", extra={"job_id": job_id, "reason": "not_found"})
        self._notify(self._on_reset, job_id)
        return False

    def _apply_failure(self, job_id: str, token: threading.Event, seq: int, detail: str) -> bool:
        with self._lock:
            if not self._is_current(job_id, token, seq):
                return not token.is_set()
            token.set()
            self.error = STATUS_CHECK_FAILED
        LOGGER.warning("job_status_check_failed", extra={"job_id": job_id, "error": detail})
        self._notify(self._on_error, STATUS_CHECK_FAILED)
        return False

    def _notify(self, callback: Optional[Callable[[Any], None]], value: Any) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception:  # noqa: BLE001
            LOGGER.exception("job_handle_callback_failed")


__all__ = ["ClientJobHandle", "IDLE", "JobOutcome", "STATUS_CHECK_FAILED"]
