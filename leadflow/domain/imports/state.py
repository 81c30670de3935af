"""
Import job lifecycle.

Every status change goes through ``jobs.transition_job``, a compare-and-set
on ``(id, expected statuses)``; the sets below are the expected statuses for
each operation.
"""
from enum import Enum
from typing import Dict, FrozenSet


class JobStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    PARSING = "parsing"
    VALIDATING = "validating"
    READY = "ready"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobPhase(str, Enum):
    PARSE = "parse"
    COMMIT = "commit"


class RowStatus(str, Enum):
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    IMPORTED = "imported"
    SKIPPED = "skipped"


def _statuses(*values: JobStatus) -> FrozenSet[str]:
    return frozenset(value.value for value in values)


TERMINAL_STATUSES = _statuses(JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)
RUNNING_STATUSES = _statuses(
    JobStatus.QUEUED, JobStatus.PARSING, JobStatus.VALIDATING, JobStatus.IMPORTING
)

CONFIGURABLE_STATUSES = _statuses(JobStatus.PENDING, JobStatus.VALIDATING, JobStatus.READY)
PARSE_ENQUEUE_FROM = _statuses(
    JobStatus.PENDING, JobStatus.FAILED, JobStatus.VALIDATING, JobStatus.PARSING
)
COMMIT_ENQUEUE_FROM = _statuses(JobStatus.READY)
CANCELLABLE_STATUSES = _statuses(
    JobStatus.PENDING,
    JobStatus.QUEUED,
    JobStatus.PARSING,
    JobStatus.VALIDATING,
    JobStatus.READY,
    JobStatus.IMPORTING,
)
RETRYABLE_STATUSES = _statuses(JobStatus.FAILED)
DELETABLE_STATUSES = TERMINAL_STATUSES

# Statuses a delivered worker may claim its job from. ``parsing``/``importing``
# cover redelivery after a worker died mid-phase.
PARSE_CLAIM_FROM = _statuses(JobStatus.QUEUED, JobStatus.PARSING, JobStatus.VALIDATING)
COMMIT_CLAIM_FROM = _statuses(JobStatus.QUEUED, JobStatus.IMPORTING)

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    JobStatus.PENDING.value: _statuses(JobStatus.QUEUED, JobStatus.CANCELLED),
    JobStatus.QUEUED.value: _statuses(
        JobStatus.PARSING, JobStatus.IMPORTING, JobStatus.CANCELLED, JobStatus.FAILED
    ),
    JobStatus.PARSING.value: _statuses(
        JobStatus.PARSING, JobStatus.VALIDATING, JobStatus.QUEUED,
        JobStatus.FAILED, JobStatus.CANCELLED,
    ),
    JobStatus.VALIDATING.value: _statuses(
        JobStatus.READY, JobStatus.PARSING, JobStatus.QUEUED, JobStatus.PENDING,
        JobStatus.FAILED, JobStatus.CANCELLED,
    ),
    JobStatus.READY.value: _statuses(JobStatus.QUEUED, JobStatus.PENDING, JobStatus.CANCELLED),
    JobStatus.IMPORTING.value: _statuses(
        JobStatus.IMPORTING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED
    ),
    JobStatus.FAILED.value: _statuses(JobStatus.QUEUED),
    JobStatus.COMPLETED.value: frozenset(),
    JobStatus.CANCELLED.value: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES
