"""Client-side job tracking: persisted handles, polling and restart detection."""

from .api import CreatedJob, JobApiClient, JobGone, TransportError  # noqa: F401
from .restart_guard import RestartGuard  # noqa: F401
from .handle import ClientJobHandle, JobOutcome  # noqa: F401
from .storage import JsonFileStorage, MemoryStorage  # noqa: F401

__all__ = [
    "ClientJobHandle",
    "CreatedJob",
    "JobApiClient",
    "JobGone",
    "JobOutcome",
    "JsonFileStorage",
    "MemoryStorage",
    "RestartGuard",
    "TransportError",
]
