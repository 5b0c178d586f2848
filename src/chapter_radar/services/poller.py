"""One poll pass for one (series, source) pair."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from chapter_radar.chapters.models import CatalogTier, KnownChapterSource, SourceStatus
from chapter_radar.chapters.numbering import normalize_chapter_number
from chapter_radar.chapters.repository import CatalogRepository
from chapter_radar.config import PollerSettings
from chapter_radar.queue.models import JobSubmit, QueueName, SubmitResult
from chapter_radar.queue.payloads import IngestJobPayload
from chapter_radar.queue.repository import JobQueue
from chapter_radar.scheduling.backpressure import BackpressureGuard
from chapter_radar.sources.base import (
    ChapterReport,
    CircuitBreakerOpenError,
    DnsError,
    NotFoundError,
    ProxyBlockedError,
    RateLimitedError,
    RateLimitTimeout,
    SourceError,
    SourceValidationError,
)
from chapter_radar.sources.circuit_breaker import CircuitBreaker, is_breaker_failure
from chapter_radar.sources.rate_limiter import SourceRateLimiter
from chapter_radar.sources.registry import SourceRegistry
from chapter_radar.storage.common import utc_now

logger = logging.getLogger(__name__)


class PollStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    RETRY = "retry"
    FAILED = "failed"


@dataclass(slots=True)
class PollOutcome:
    """Result of one poll; ``DEFERRED`` never consumes a job attempt."""

    status: PollStatus
    reason: str | None = None
    retry_after_seconds: int | None = None
    reports: int = 0
    ingest_enqueued: int = 0
    marked_unavailable: int = 0
    source_disabled: bool = False

    @property
    def consume_attempt(self) -> bool:
        return self.status is not PollStatus.DEFERRED


class PollService:
    """Fetch one source's chapter list and forward new or changed chapters to ingest.

    The poller never reconciles inline: every new, changed, or vanished
    chapter becomes an ingest job with a deterministic id, so re-polling
    before the ingest queue drains does not duplicate work.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        catalog: CatalogRepository,
        queue: JobQueue,
        registry: SourceRegistry,
        rate_limiter: SourceRateLimiter,
        breaker: CircuitBreaker,
        guard: BackpressureGuard,
        settings: PollerSettings | None = None,
        ingest_max_attempts: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.catalog = catalog
        self.queue = queue
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.breaker = breaker
        self.guard = guard
        self.settings = settings or PollerSettings()
        self.ingest_max_attempts = ingest_max_attempts
        self._clock = clock

    def poll(
        self,
        series_source_id: int,
        *,
        attempt: int = 1,
        heartbeat: Callable[[], object] | None = None,
    ) -> PollOutcome:
        """Fetch one series source and forward its chapters to the ingest queue.

        ``heartbeat`` is called after the rate-limit wait and after the fetch so a
        long poll keeps its queue claim fresh.
        """

        target = self.catalog.get_poll_target(series_source_id)
        if target is None:
            return PollOutcome(status=PollStatus.SKIPPED, reason="unknown_source")
        if target.source_status is SourceStatus.DISABLED:
            return PollOutcome(status=PollStatus.SKIPPED, reason="source_disabled")
        if target.series_deleted:
            return PollOutcome(status=PollStatus.SKIPPED, reason="series_deleted")
        if target.catalog_tier is CatalogTier.C:
            return PollOutcome(status=PollStatus.SKIPPED, reason="tier_not_eligible")

        forwarding = self.guard.check_ingest_forwarding()
        if not forwarding.allowed:
            logger.warning(
                "Deferring poll of series source %d: ingest backlog %d",
                series_source_id,
                forwarding.depth,
            )
            return PollOutcome(
                status=PollStatus.DEFERRED,
                reason=forwarding.reason,
                retry_after_seconds=self.settings.ingest_backpressure_delay_seconds,
            )

        ref = target.ref
        try:
            client = self.registry.get(ref.source_name)
            self.breaker.check(ref.source_name)
            self.rate_limiter.acquire(ref.source_name)
            if heartbeat is not None:
                heartbeat()
            reports = client.fetch(ref)
        except RateLimitTimeout as error:
            logger.info("Poll of series source %d deferred: %s", series_source_id, error)
            return PollOutcome(
                status=PollStatus.DEFERRED,
                reason="rate_limit_timeout",
                retry_after_seconds=self.settings.rate_limit_timeout_retry_seconds,
            )
        except CircuitBreakerOpenError as error:
            return PollOutcome(
                status=PollStatus.DEFERRED,
                reason=error.code,
                retry_after_seconds=error.retry_after or 60,
            )
        except SourceError as error:
            if is_breaker_failure(error):
                self.breaker.record_failure(ref.source_name)
            return self._handle_failure(series_source_id, error, attempt=attempt)

        if heartbeat is not None:
            heartbeat()
        self.breaker.record_success(ref.source_name)
        self.catalog.record_poll_success(series_source_id)
        return self._forward(series_source_id, ref.series_id, reports)

    def _forward(
        self,
        series_source_id: int,
        series_id: int,
        reports: list[ChapterReport],
    ) -> PollOutcome:
        outcome = PollOutcome(status=PollStatus.SUCCEEDED, reports=len(reports))
        truncated = len(reports) > self.settings.max_chapters_per_poll
        if truncated:
            logger.warning(
                "Series source %d reported %d chapters, keeping first %d",
                series_source_id,
                len(reports),
                self.settings.max_chapters_per_poll,
            )
            reports = reports[: self.settings.max_chapters_per_poll]

        known = self.catalog.known_chapter_sources(series_source_id)
        seen: set[str] = set()
        for report in reports:
            key = normalize_chapter_number(report.chapter_number).value
            if key in seen:
                continue
            seen.add(key)
            if not _report_changed(report, known.get(key)):
                continue
            payload = IngestJobPayload(
                series_id=series_id,
                series_source_id=series_source_id,
                chapter_number=report.chapter_number or "",
                chapter_url=report.url,
                chapter_title=report.title,
                source_chapter_id=report.source_chapter_id,
                published_at=report.published_at,
                language=report.language,
                scanlation_group=report.scanlation_group,
                is_available=True,
            )
            if self._submit_ingest(series_source_id, key, payload):
                outcome.ingest_enqueued += 1

        # An empty or truncated list is not evidence that a chapter was removed.
        if reports and not truncated:
            for key, stored in known.items():
                if key in seen or not stored.is_available:
                    continue
                payload = IngestJobPayload(
                    series_id=series_id,
                    series_source_id=series_source_id,
                    chapter_number=key,
                    chapter_url=stored.chapter_url,
                    is_available=False,
                )
                if self._submit_ingest(series_source_id, key, payload):
                    outcome.marked_unavailable += 1

        logger.info(
            "Polled series source %d: %d reports, %d forwarded, %d unavailable",
            series_source_id,
            outcome.reports,
            outcome.ingest_enqueued,
            outcome.marked_unavailable,
        )
        return outcome

    def _submit_ingest(self, series_source_id: int, key: str, payload: IngestJobPayload) -> bool:
        result = self.queue.submit(
            JobSubmit(
                queue_name=QueueName.INGEST,
                job_id=f"{series_source_id}:{key}",
                payload=payload.to_payload(),
                max_attempts=self.ingest_max_attempts,
            ),
        )
        return result is not SubmitResult.DUPLICATE

    def _handle_failure(
        self,
        series_source_id: int,
        error: SourceError,
        *,
        attempt: int,
    ) -> PollOutcome:
        now = self._clock()
        settings = self.settings
        not_found = isinstance(error, NotFoundError)
        if isinstance(error, RateLimitedError):
            delay = error.retry_after if error.retry_after is not None else self._backoff(attempt)
            status = PollStatus.RETRY
        elif isinstance(error, ProxyBlockedError):
            delay = settings.proxy_blocked_cooldown_seconds
            status = PollStatus.RETRY
        elif not_found or isinstance(error, SourceValidationError):
            delay = self._backoff(attempt)
            status = PollStatus.FAILED
        else:
            # Transient network, DNS, and unexpected HTTP statuses.
            delay = self._backoff(attempt)
            status = PollStatus.RETRY

        counters = self.catalog.record_poll_failure(
            series_source_id,
            error_code=error.code,
            message=error.message,
            next_check_at=now + timedelta(seconds=delay),
            not_found=not_found,
        )
        disabled = False
        if not_found and counters.not_found_count >= settings.not_found_disable_threshold:
            disabled = self.catalog.disable_source(
                series_source_id,
                reason=f"not found {counters.not_found_count} times in a row",
            )
        elif (
            isinstance(error, ProxyBlockedError | SourceValidationError)
            and counters.failure_count >= settings.max_consecutive_failures
        ):
            disabled = self.catalog.disable_source(
                series_source_id,
                reason=f"{error.code} after {counters.failure_count} consecutive failures",
            )
        if disabled:
            status = PollStatus.FAILED

        log = logger.info if isinstance(error, DnsError | RateLimitedError) else logger.warning
        log(
            "Poll of series source %d failed (%s, failure %d): %s",
            series_source_id,
            error.code,
            counters.failure_count,
            error.message,
        )
        return PollOutcome(
            status=status,
            reason=error.code,
            retry_after_seconds=delay,
            source_disabled=disabled,
        )

    def _backoff(self, attempt: int) -> int:
        exponent = max(0, attempt - 1)
        delay = self.settings.retry_base_seconds * 2**exponent
        return int(min(self.settings.retry_max_seconds, delay))


def _report_changed(report: ChapterReport, stored: KnownChapterSource | None) -> bool:
    if stored is None or not stored.is_available:
        return True
    if stored.chapter_url != report.url:
        return True
    return any(
        new is not None and new != old
        for new, old in (
            (report.title, stored.chapter_title),
            (report.source_chapter_id, stored.source_chapter_id),
            (report.language, stored.language),
            (report.scanlation_group, stored.scanlation_group),
        )
    )
