"""Job management primitives for asynchronous generation."""

from .errors import InvalidTransition, JobError, JobNotFound, ProviderError, ValidationError  # noqa: F401
from .models import Job, JobState, TERMINAL_STATES  # noqa: F401
from .store import JobStore, JsonFileJobBackend, MemoryJobBackend  # noqa: F401
from .worker import GenerationWorker  # noqa: F401
from .service import JobService  # noqa: F401

__all__ = [
    "GenerationWorker",
    "InvalidTransition",
    "Job",
    "JobError",
    "JobNotFound",
    "JobService",
    "JobState",
    "JobStore",
    "JsonFileJobBackend",
    "MemoryJobBackend",
    "ProviderError",
    "TERMINAL_STATES",
    "ValidationError",
]
