"""Detect persisted job handles that outlived the server process they point at."""
from __future__ import annotations

import time
from typing import Any, Callable, Optional

from config import JOB_STALENESS_WINDOW_S
from observability.logger import get_logger

from .api import TransportError
from .storage import JOB_LAST_RESET_KEY, PersistedHandle, clear_handle, load_handle

LOGGER = get_logger("genjobs.client.restart_guard")


class RestartGuard:
    """Discard stale handles on client load instead of polling into a 404.

    A handle is stale when the server epoch stored with it predates the
    server's current epoch (the in-memory store was wiped by a restart), or
    when the staleness window has elapsed since the last reset.
    """

    def __init__(
        self,
        storage: Any,
        api: Any,
        *,
        staleness_window_s: float = JOB_STALENESS_WINDOW_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._api = api
        self._window_ms = int(max(1.0, float(staleness_window_s)) * 1000)
        self._clock = clock

    def check(self) -> bool:
        """Return True if a persisted handle exists and may be polled."""

        persisted = load_handle(self._storage)
        if persisted is None:
            return False
        now_ms = int(self._clock() * 1000)
        reason = self.stale_reason(persisted, now_ms)
        if reason is None:
            return True
        clear_handle(self._storage)
        self._storage.set(JOB_LAST_RESET_KEY, now_ms)
        LOGGER.info("job_handle_discarded", extra={"job_id": persisted.job_id, "reason": reason})
        return False

    def stale_reason(self, persisted: PersistedHandle, now_ms: int) -> Optional[str]:
        last_reset = self._storage.get(JOB_LAST_RESET_KEY)
        try:
            last_reset_ms = int(last_reset)
        except (TypeError, ValueError):
            return "staleness_window"
        if now_ms - last_reset_ms >= self._window_ms:
            return "staleness_window"
        if persisted.server_epoch is None:
            return "missing_epoch"
        try:
            current_epoch = self._api.server_epoch()
        except TransportError as exc:
            # Cannot tell; polling will find out.
            LOGGER.warning("server_epoch_unavailable", extra={"error": exc.message})
            return None
        if persisted.server_epoch < current_epoch:
            return "server_restarted"
        return None


__all__ = ["RestartGuard"]
