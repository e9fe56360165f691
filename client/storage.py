"""Durable key/value storage for client-side job handles."""
from __future__ import annotations

import copy
import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

LOGGER = logging.getLogger("genjobs.client.storage")

JOB_ID_KEY = "job_id"
JOB_SERVER_EPOCH_KEY = "job_server_epoch"
JOB_REQUEST_SNAPSHOT_KEY = "job_request_snapshot"
JOB_LOCAL_STATE_KEY = "job_local_state"
JOB_LAST_RESET_KEY = "job_last_reset"

# Keys that make up the handle itself; the request snapshot outlives it so the
# form can be re-displayed after the job is gone.
HANDLE_KEYS = (JOB_ID_KEY, JOB_SERVER_EPOCH_KEY, JOB_LOCAL_STATE_KEY)


class MemoryStorage:
    """Process-local storage, handy for tests and short-lived scripts."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return copy.deepcopy(self._data.get(key, default))

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def remove(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._data)


class JsonFileStorage(MemoryStorage):
    """Storage backed by a JSON file, rewritten on every change."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        super().__init__(self._read())

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            LOGGER.warning("Corrupted client state %s: %s", self._path, exc)
            return {}
        if not isinstance(raw, dict):
            LOGGER.warning("Unexpected client state format in %s, expected an object", self._path)
            return {}
        return raw

    def _flush_locked(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._data, ensure_ascii=False, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp_path, self._path)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)
            self._flush_locked()

    def remove(self, *keys: str) -> None:
        with self._lock:
            changed = False
            for key in keys:
                if key in self._data:
                    self._data.pop(key)
                    changed = True
            if changed:
                self._flush_locked()


@dataclass
class PersistedHandle:
    job_id: str
    server_epoch: Optional[int]
    local_state: Optional[str] = None


def load_handle(storage: Any) -> Optional[PersistedHandle]:
    job_id = storage.get(JOB_ID_KEY)
    if not isinstance(job_id, str) or not job_id:
        return None
    raw_epoch = storage.get(JOB_SERVER_EPOCH_KEY)
    try:
        epoch = int(raw_epoch) if raw_epoch is not None else None
    except (TypeError, ValueError):
        epoch = None
    local_state = storage.get(JOB_LOCAL_STATE_KEY)
    return PersistedHandle(job_id=job_id, server_epoch=epoch, local_state=local_state)


def clear_handle(storage: Any) -> None:
    storage.remove(*HANDLE_KEYS)


__all__ = [
    "HANDLE_KEYS",
    "JOB_ID_KEY",
    "JOB_LAST_RESET_KEY",
    "JOB_LOCAL_STATE_KEY",
    "JOB_REQUEST_SNAPSHOT_KEY",
    "JOB_SERVER_EPOCH_KEY",
    "JsonFileStorage",
    "MemoryStorage",
    "PersistedHandle",
    "clear_handle",
    "load_handle",
]
