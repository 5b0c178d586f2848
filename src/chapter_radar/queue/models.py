"""Queue-facing domain models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class QueueName(str, Enum):
    """Queues by purpose."""

    POLL = "poll"
    INGEST = "ingest"
    DISCOVERY = "discovery"


class JobStatus(str, Enum):
    """Lifecycle of one queue job; "delayed" is WAITING with a future run_after."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


PENDING_STATUSES = frozenset({JobStatus.WAITING, JobStatus.ACTIVE})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.DEAD_LETTER})


class SubmitResult(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    REQUEUED = "requeued"


@dataclass(slots=True)
class JobSubmit:
    """Input for ``JobQueue.submit``."""

    queue_name: QueueName
    job_id: str
    payload: dict[str, object]
    priority: int = 100
    max_attempts: int = 3
    run_after: datetime | None = None


@dataclass(slots=True)
class JobView:
    """Read model for one queue job."""

    queue_name: QueueName
    job_id: str
    payload: dict[str, object]
    status: JobStatus
    priority: int
    attempt: int
    max_attempts: int
    run_after: datetime
    worker_id: str | None
    started_at: datetime | None
    finished_at: datetime | None
    failure_code: str | None
    error_summary: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True, frozen=True)
class QueueDepth:
    """Point-in-time queue counters."""

    waiting: int = 0
    active: int = 0
    delayed: int = 0
    failed: int = 0
