"""Data models describing asynchronous generation jobs."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    """Return a timezone-aware UTC datetime."""

    return datetime.now(timezone.utc)


def _format_ts(value: datetime) -> str:
    return value.strftime(ISO_FORMAT)


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.strptime(str(value), ISO_FORMAT).replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return utcnow()


class JobState(str, Enum):
    """Lifecycle states for a generation job."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[JobState] = frozenset({JobState.DONE, JobState.ERROR, JobState.CANCELLED})
ACTIVE_STATES: FrozenSet[JobState] = frozenset({JobState.PENDING, JobState.PROCESSING})

# (from, to) pairs permitted by the job lifecycle.
ALLOWED_TRANSITIONS: FrozenSet[Tuple[JobState, JobState]] = frozenset(
    {
        (JobState.PENDING, JobState.PROCESSING),
        (JobState.PENDING, JobState.CANCELLED),
        (JobState.PROCESSING, JobState.DONE),
        (JobState.PROCESSING, JobState.ERROR),
        (JobState.PROCESSING, JobState.CANCELLED),
    }
)


@dataclass
class Job:
    """Record of one slow generation call, from submission to terminal outcome."""

    id: str
    request: Dict[str, Any] = field(default_factory=dict)
    state: JobState = JobState.PENDING
    result_ref: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    cancel_requested: bool = False
    owner_id: Optional[str] = None
    trace_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_status(self) -> Dict[str, Any]:
        """Wire payload for status polling: state plus the matching outcome field."""

        payload: Dict[str, Any] = {"state": self.state.value}
        if self.state == JobState.DONE and self.result_ref is not None:
            payload["resultRef"] = self.result_ref
        if self.state == JobState.ERROR and self.error_message is not None:
            payload["errorMessage"] = self.error_message
        return payload

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "request": self.request,
            "result_ref": self.result_ref,
            "error_message": self.error_message,
            "created_at": _format_ts(self.created_at),
            "updated_at": _format_ts(self.updated_at),
            "cancel_requested": self.cancel_requested,
            "owner_id": self.owner_id,
            "trace_id": self.trace_id,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Job":
        request = payload.get("request")
        return cls(
            id=str(payload["id"]),
            request=dict(request) if isinstance(request, dict) else {},
            state=JobState(payload.get("state", JobState.PENDING.value)),
            result_ref=payload.get("result_ref"),
            error_message=payload.get("error_message"),
            created_at=_parse_ts(payload.get("created_at")),
            updated_at=_parse_ts(payload.get("updated_at")),
            cancel_requested=bool(payload.get("cancel_requested")),
            owner_id=payload.get("owner_id"),
            trace_id=payload.get("trace_id"),
        )


__all__ = [
    "ACTIVE_STATES",
    "ALLOWED_TRANSITIONS",
    "ISO_FORMAT",
    "Job",
    "JobState",
    "TERMINAL_STATES",
    "utcnow",
]
