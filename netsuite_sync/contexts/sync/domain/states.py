from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet

from netsuite_sync.errors import InvalidTransitionError


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    SKIPPED = "SKIPPED"
    FAILED_RETRYABLE = "FAILED_RETRYABLE"
    FAILED_PERMANENT = "FAILED_PERMANENT"
    CANCELLED = "CANCELLED"


class Direction(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class Priority(int, Enum):
    HIGH = 1
    NORMAL = 5
    LOW = 10


TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset(
        {
            JobStatus.SUCCESS,
            JobStatus.SKIPPED,
            JobStatus.FAILED_RETRYABLE,
            JobStatus.FAILED_PERMANENT,
        }
    ),
    JobStatus.FAILED_RETRYABLE: frozenset({JobStatus.PENDING, JobStatus.FAILED_PERMANENT}),
    JobStatus.SUCCESS: frozenset(),
    JobStatus.SKIPPED: frozenset(),
    JobStatus.FAILED_PERMANENT: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.FAILED_RETRYABLE})
TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

# Run item statuses mirror the job they track.
_ITEM_STATUS_BY_JOB_STATUS = {
    JobStatus.PENDING: "pending",
    JobStatus.FAILED_RETRYABLE: "pending",
    JobStatus.PROCESSING: "processing",
    JobStatus.SUCCESS: "success",
    JobStatus.SKIPPED: "skipped",
    JobStatus.FAILED_PERMANENT: "failed",
    JobStatus.CANCELLED: "cancelled",
}


def coerce_status(value: str | JobStatus) -> JobStatus:
    if isinstance(value, JobStatus):
        return value
    try:
        return JobStatus(str(value or "").strip().upper())
    except ValueError as exc:
        raise InvalidTransitionError(details=f"unknown job status: {value!r}") from exc


def can_transition(current: str | JobStatus, target: str | JobStatus) -> bool:
    return coerce_status(target) in TRANSITIONS[coerce_status(current)]


def assert_transition(current: str | JobStatus, target: str | JobStatus) -> JobStatus:
    source = coerce_status(current)
    destination = coerce_status(target)
    if destination not in TRANSITIONS[source]:
        raise InvalidTransitionError(
            details=f"{source.value} -> {destination.value} is not allowed",
            payload={"from_status": source.value, "to_status": destination.value},
        )
    return destination


def is_terminal(status: str | JobStatus) -> bool:
    return coerce_status(status) in TERMINAL_STATUSES


def item_status_for(status: str | JobStatus) -> str:
    return _ITEM_STATUS_BY_JOB_STATUS[coerce_status(status)]


def parse_priority(value: object, default: Priority = Priority.NORMAL) -> Priority:
    if isinstance(value, Priority):
        return value
    if value is None or value == "":
        return default
    raw = str(value).strip().upper()
    if raw in Priority.__members__:
        return Priority[raw]
    try:
        return Priority(int(raw))
    except ValueError:
        return default
