"""Queue worker that executes poll, ingest and discovery jobs."""

from __future__ import annotations

import logging
import os
import random
import socket
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from chapter_radar.config import WorkerSettings
from chapter_radar.queue.models import JobView, QueueName
from chapter_radar.queue.payloads import (
    DiscoveryJobPayload,
    IngestJobPayload,
    PayloadValidationError,
    PollJobPayload,
)
from chapter_radar.queue.repository import JobQueue
from chapter_radar.runtime import GracefulStop
from chapter_radar.search.discovery import DiscoveryService
from chapter_radar.services.ingest import IngestService
from chapter_radar.services.poller import PollService, PollStatus
from chapter_radar.sources.base import (
    CircuitBreakerOpenError,
    NotFoundError,
    RateLimitedError,
    RateLimitTimeout,
    SourceError,
    SourceValidationError,
)
from chapter_radar.storage.common import utc_now

logger = logging.getLogger(__name__)

ALL_QUEUES: tuple[QueueName, ...] = (QueueName.INGEST, QueueName.POLL, QueueName.DISCOVERY)


class JobOutcomeKind(str, Enum):
    COMPLETED = "completed"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"
    FAILED = "failed"


@dataclass(slots=True)
class JobOutcome:
    """What the worker should do with a claimed job after its handler returns."""

    kind: JobOutcomeKind
    delay_seconds: float = 0.0
    consume_attempt: bool = True
    failure_code: str | None = None
    error_summary: str | None = None
    details: dict[str, object] = field(default_factory=dict)

    @classmethod
    def completed(cls, **details: object) -> JobOutcome:
        return cls(kind=JobOutcomeKind.COMPLETED, details=dict(details))

    @classmethod
    def retry(
        cls,
        delay_seconds: float,
        *,
        failure_code: str,
        error_summary: str,
        consume_attempt: bool = True,
    ) -> JobOutcome:
        return cls(
            kind=JobOutcomeKind.RETRY,
            delay_seconds=delay_seconds,
            consume_attempt=consume_attempt,
            failure_code=failure_code,
            error_summary=error_summary,
        )

    @classmethod
    def failed(cls, *, failure_code: str, error_summary: str) -> JobOutcome:
        return cls(
            kind=JobOutcomeKind.FAILED,
            failure_code=failure_code,
            error_summary=error_summary,
        )


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    deferred: int = 0
    failed: int = 0
    dead_lettered: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.retried += other.retried
        self.deferred += other.deferred
        self.failed += other.failed
        self.dead_lettered += other.dead_lettered
        self.idle_polls += other.idle_polls


class JobWorker:
    """Claims one job at a time and applies the handler's outcome to the queue."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: JobQueue,
        poller: PollService,
        ingest: IngestService,
        discovery: DiscoveryService,
        settings: WorkerSettings | None = None,
        queue_names: Sequence[QueueName] = ALL_QUEUES,
        worker_id: str | None = None,
        rate_limit_retry_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.queue = queue
        self.poller = poller
        self.ingest = ingest
        self.discovery = discovery
        self.settings = settings or WorkerSettings()
        self.queue_names = tuple(queue_names)
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"
        self.rate_limit_retry_seconds = rate_limit_retry_seconds
        self._clock = clock
        self._random = random.Random()  # noqa: S311
        self._stop = GracefulStop()
        self._handlers: dict[QueueName, Callable[[JobView], JobOutcome]] = {
            QueueName.POLL: self._handle_poll,
            QueueName.INGEST: self._handle_ingest,
            QueueName.DISCOVERY: self._handle_discovery,
        }

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queues."""

        summary = WorkerRunSummary()
        job = self._claim_job()
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        try:
            outcome = self._handlers[job.queue_name](job)
        except PayloadValidationError as error:
            logger.warning(
                "Dead-lettering %s job %s: %s",
                job.queue_name.value,
                job.job_id,
                error,
            )
            outcome = JobOutcome(
                kind=JobOutcomeKind.DEAD_LETTER,
                failure_code=error.code,
                error_summary=error.message,
            )
        except Exception as error:
            logger.exception(
                "Unexpected failure in %s job %s (attempt %d/%d)",
                job.queue_name.value,
                job.job_id,
                job.attempt,
                job.max_attempts,
            )
            outcome = self._retry_or_fail(
                job,
                failure_code="unexpected_error",
                error_summary=f"{type(error).__name__}: {error}",
            )

        self._apply(job, outcome, summary)
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run until the queues stay idle, ``max_jobs`` is reached, or a stop signal arrives.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = keep polling until stopped).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._stop.handlers():
            while not self._stop.requested:
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    break

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self._stop.sleep(self.settings.poll_interval_seconds)
                    continue
                consecutive_idle = 0
        return aggregate

    def request_stop(self) -> None:
        self._stop.request()

    def _claim_job(self) -> JobView | None:
        if self.settings.stale_job_seconds > 0:
            self.queue.recover_stale_active(
                stale_after=timedelta(seconds=self.settings.stale_job_seconds),
            )
        return self.queue.claim_next(queue_names=self.queue_names, worker_id=self.worker_id)

    def _handle_poll(self, job: JobView) -> JobOutcome:
        payload = PollJobPayload.from_payload(job.payload)
        outcome = self.poller.poll(
            payload.series_source_id,
            attempt=job.attempt,
            heartbeat=lambda: self._touch(job),
        )
        reason = outcome.reason or outcome.status.value

        if outcome.status in {PollStatus.SUCCEEDED, PollStatus.SKIPPED}:
            return JobOutcome.completed(
                status=outcome.status.value,
                reason=outcome.reason,
                reports=outcome.reports,
                ingest_enqueued=outcome.ingest_enqueued,
                marked_unavailable=outcome.marked_unavailable,
            )
        if outcome.status is PollStatus.DEFERRED:
            return JobOutcome.retry(
                outcome.retry_after_seconds or self.settings.retry_base_seconds,
                failure_code=reason,
                error_summary=f"Poll deferred: {reason}",
                consume_attempt=False,
            )
        if outcome.status is PollStatus.RETRY and job.attempt < job.max_attempts:
            return JobOutcome.retry(
                outcome.retry_after_seconds or self._compute_retry_delay(job.attempt),
                failure_code=reason,
                error_summary=f"Poll failed: {reason}",
            )
        return JobOutcome.failed(
            failure_code=reason,
            error_summary=(
                f"Source disabled after {reason}"
                if outcome.source_disabled
                else f"Poll failed on attempt {job.attempt}: {reason}"
            ),
        )

    def _touch(self, job: JobView) -> None:
        if not self.queue.touch(
            queue_name=job.queue_name,
            job_id=job.job_id,
            worker_id=self.worker_id,
        ):
            logger.warning(
                "Lost claim on %s job %s while it was running",
                job.queue_name.value,
                job.job_id,
            )

    def _handle_ingest(self, job: JobView) -> JobOutcome:
        payload = IngestJobPayload.from_payload(job.payload)
        outcome = self.ingest.process(payload)
        if outcome.deferred:
            return JobOutcome.retry(
                outcome.defer_seconds,
                failure_code=outcome.reason or "deferred",
                error_summary="Ingest deferred by backpressure",
                consume_attempt=False,
            )
        if outcome.result is None:
            return JobOutcome.completed()
        return JobOutcome.completed(
            action=outcome.result.action.value,
            logical_chapter_id=outcome.result.logical_chapter_id,
            events=len(outcome.result.event_ids),
        )

    def _handle_discovery(self, job: JobView) -> JobOutcome:
        payload = DiscoveryJobPayload.from_payload(job.payload)
        try:
            result = self.discovery.run(payload)
        except RateLimitTimeout as error:
            return JobOutcome.retry(
                self.rate_limit_retry_seconds,
                failure_code="rate_limit_timeout",
                error_summary=str(error),
                consume_attempt=False,
            )
        except CircuitBreakerOpenError as error:
            return JobOutcome.retry(
                error.retry_after or 60,
                failure_code=error.code,
                error_summary=error.message,
                consume_attempt=False,
            )
        except (NotFoundError, SourceValidationError) as error:
            return JobOutcome.failed(failure_code=error.code, error_summary=error.message)
        except RateLimitedError as error:
            if job.attempt >= job.max_attempts:
                return JobOutcome.failed(failure_code=error.code, error_summary=error.message)
            return JobOutcome.retry(
                error.retry_after or self._compute_retry_delay(job.attempt),
                failure_code=error.code,
                error_summary=error.message,
            )
        except SourceError as error:
            return self._retry_or_fail(
                job,
                failure_code=error.code,
                error_summary=error.message,
            )
        return JobOutcome.completed(
            results=result.results,
            created=result.created,
            resolved=result.resolved,
        )

    def _retry_or_fail(self, job: JobView, *, failure_code: str, error_summary: str) -> JobOutcome:
        if job.attempt < job.max_attempts:
            return JobOutcome.retry(
                self._compute_retry_delay(job.attempt),
                failure_code=failure_code,
                error_summary=error_summary,
            )
        return JobOutcome.failed(failure_code=failure_code, error_summary=error_summary)

    def _apply(self, job: JobView, outcome: JobOutcome, summary: WorkerRunSummary) -> None:
        failure_code = outcome.failure_code or outcome.kind.value
        error_summary = outcome.error_summary or ""
        if outcome.kind is JobOutcomeKind.COMPLETED:
            if self.queue.complete(
                queue_name=job.queue_name,
                job_id=job.job_id,
                details=outcome.details,
            ):
                summary.succeeded = 1
        elif outcome.kind is JobOutcomeKind.RETRY:
            scheduled = self.queue.schedule_retry(
                queue_name=job.queue_name,
                job_id=job.job_id,
                run_after=self._clock() + timedelta(seconds=outcome.delay_seconds),
                failure_code=failure_code,
                error_summary=error_summary,
                consume_attempt=outcome.consume_attempt,
            )
            if scheduled and outcome.consume_attempt:
                summary.retried = 1
            elif scheduled:
                summary.deferred = 1
        elif outcome.kind is JobOutcomeKind.DEAD_LETTER:
            if self.queue.dead_letter(
                queue_name=job.queue_name,
                job_id=job.job_id,
                failure_code=failure_code,
                error_summary=error_summary,
            ):
                summary.dead_lettered = 1
        else:
            if self.queue.fail(
                queue_name=job.queue_name,
                job_id=job.job_id,
                failure_code=failure_code,
                error_summary=error_summary,
            ):
                summary.failed = 1
            logger.warning(
                "%s job %s failed: %s",
                job.queue_name.value,
                job.job_id,
                error_summary,
            )

    def _compute_retry_delay(self, retry_number: int) -> float:
        max_delay = min(
            self.settings.retry_max_seconds,
            self.settings.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)
