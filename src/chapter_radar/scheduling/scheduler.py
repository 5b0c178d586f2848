"""Tier-driven poll scheduling under a distributed master lease."""

from __future__ import annotations

import logging
import os
import socket
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, or_
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from chapter_radar.chapters.events import ChapterEventPublisher
from chapter_radar.chapters.models import CatalogTier, SourceStatus
from chapter_radar.chapters.repository import CatalogRepository
from chapter_radar.config import SchedulerSettings
from chapter_radar.queue.models import JobSubmit, QueueName, SubmitResult
from chapter_radar.queue.payloads import PollJobPayload
from chapter_radar.queue.repository import JobQueue
from chapter_radar.runtime import GracefulStop
from chapter_radar.scheduling.backpressure import BackpressureGuard
from chapter_radar.scheduling.tiers import (
    ELIGIBLE_TIERS,
    POLL_INTERVALS,
    TierClassifier,
    TierMaintenanceSummary,
)
from chapter_radar.search.gate import SearchIntentGate
from chapter_radar.storage.common import to_db_datetime, utc_now
from chapter_radar.storage.leases import LeaseStore
from chapter_radar.storage.sqlmodel_models import Series, SeriesSource

logger = logging.getLogger(__name__)

MASTER_LEASE = "scheduler:master"
TIER_MAINTENANCE_LEASE = "tier:maintenance"
TIER_PRIORITY = {CatalogTier.A: 10, CatalogTier.B: 20}


@dataclass(slots=True)
class SchedulerTickResult:
    enqueued: int = 0
    duplicates: int = 0
    due: int = 0
    skipped_reason: str | None = None


@dataclass(slots=True)
class SchedulerLoopSummary:
    ticks: int = 0
    enqueued: int = 0
    skipped_ticks: int = 0
    maintenance_runs: int = 0
    deferred_searches_enqueued: int = 0
    events_published: int = 0


@dataclass(slots=True, frozen=True)
class DuePair:
    series_source_id: int
    series_id: int
    catalog_tier: CatalogTier


class Scheduler:
    """Enqueues poll jobs for (series, source) pairs whose tier cadence has elapsed.

    Only one scheduler instance does work per tick: the ``scheduler:master``
    lease is taken with a TTL, renewed while submitting, and released at the
    end of the tick. Tier C is excluded in the due query itself.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        engine: Engine,
        queue: JobQueue,
        leases: LeaseStore,
        guard: BackpressureGuard,
        tiers: TierClassifier,
        catalog: CatalogRepository,
        settings: SchedulerSettings | None = None,
        poll_max_attempts: int = 5,
        gate: SearchIntentGate | None = None,
        publisher: ChapterEventPublisher | None = None,
        holder_id: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.queue = queue
        self.leases = leases
        self.guard = guard
        self.tiers = tiers
        self.catalog = catalog
        self.settings = settings or SchedulerSettings()
        self.poll_max_attempts = poll_max_attempts
        self.gate = gate
        self.publisher = publisher
        self.holder_id = holder_id or f"{socket.gethostname()}:{os.getpid()}"
        self._clock = clock
        self._stop = GracefulStop()

    def tick(self) -> SchedulerTickResult:
        result = SchedulerTickResult()
        ttl = timedelta(seconds=self.settings.lock_ttl_seconds)
        with self.leases.hold(
            MASTER_LEASE,
            holder=self.holder_id,
            ttl=ttl,
            reentrant=False,
        ) as lease:
            if lease is None:
                result.skipped_reason = "lock_held"
                logger.debug("Scheduler lease held elsewhere, skipping tick")
                return result

            decision = self.guard.check_scheduler()
            if not decision.allowed:
                result.skipped_reason = decision.reason
                logger.warning(
                    "Skipping scheduler tick: %s (%d waiting)",
                    decision.reason,
                    decision.depth,
                )
                return result

            due = self.due_pairs(self._clock(), limit=self.settings.max_batch_size)
            result.due = len(due)
            for index, pair in enumerate(due, start=1):
                submitted = self.queue.submit(
                    JobSubmit(
                        queue_name=QueueName.POLL,
                        job_id=str(pair.series_source_id),
                        payload=PollJobPayload(pair.series_source_id).to_payload(),
                        priority=TIER_PRIORITY.get(pair.catalog_tier, 100),
                        max_attempts=self.poll_max_attempts,
                    ),
                )
                if submitted is SubmitResult.DUPLICATE:
                    result.duplicates += 1
                else:
                    result.enqueued += 1
                if index % self.settings.renew_every == 0 and not lease.renew():
                    result.skipped_reason = "lock_lost"
                    break

        logger.info(
            "Scheduler tick: %d due, %d enqueued, %d already pending",
            result.due,
            result.enqueued,
            result.duplicates,
        )
        return result

    def due_pairs(self, now: datetime, *, limit: int) -> list[DuePair]:
        """Single query over eligible tiers; cadence depends on the tier/heat pair."""

        cadence_clauses = [
            and_(
                col(Series.catalog_tier) == tier.value,
                col(Series.heat) == heat.value,
                or_(
                    col(SeriesSource.last_polled_at).is_(None),
                    col(SeriesSource.last_polled_at) <= to_db_datetime(now - interval),
                ),
            )
            for (tier, heat), interval in POLL_INTERVALS.items()
            if tier in ELIGIBLE_TIERS
        ]
        db_now = to_db_datetime(now)
        with Session(self.engine) as session:
            rows = session.exec(
                select(SeriesSource.id, SeriesSource.series_id, Series.catalog_tier)
                .join(Series, col(Series.id) == col(SeriesSource.series_id))
                .where(
                    col(Series.catalog_tier).in_([tier.value for tier in ELIGIBLE_TIERS]),
                    col(Series.deleted_at).is_(None),
                    col(SeriesSource.source_status) == SourceStatus.ACTIVE.value,
                    or_(
                        col(SeriesSource.next_check_at).is_(None),
                        col(SeriesSource.next_check_at) <= db_now,
                    ),
                    or_(*cadence_clauses),
                )
                .order_by(
                    col(Series.catalog_tier).asc(),
                    col(SeriesSource.last_polled_at).asc().nulls_first(),
                    col(SeriesSource.id).asc(),
                )
                .limit(limit),
            ).all()
        return [
            DuePair(
                series_source_id=int(source_id),
                series_id=int(series_id),
                catalog_tier=CatalogTier(tier),
            )
            for source_id, series_id, tier in rows
        ]

    def cancel_series(self, series_id: int) -> int | None:
        """Soft-delete a series and drop its waiting poll jobs; active polls finish."""

        source_ids = self.catalog.soft_delete_series(series_id)
        if source_ids is None:
            return None
        cancelled = self.queue.cancel_pending(
            queue_name=QueueName.POLL,
            job_ids=[str(source_id) for source_id in source_ids],
        )
        logger.info("Cancelled series %d: %d pending poll jobs removed", series_id, cancelled)
        return cancelled

    def run_maintenance_if_due(self) -> TierMaintenanceSummary | None:
        """Tier maintenance at most once per interval across all schedulers."""

        acquired = self.leases.acquire(
            TIER_MAINTENANCE_LEASE,
            holder=self.holder_id,
            ttl=timedelta(seconds=self.settings.tier_maintenance_interval_seconds),
            reentrant=False,
        )
        if not acquired:
            return None
        summary = self.tiers.run_maintenance(self._clock())
        logger.info(
            "Tier maintenance: %d scanned, %d promoted, %d demoted, %d heat changes",
            summary.scanned,
            summary.promoted,
            summary.demoted,
            summary.heat_changed,
        )
        return summary

    def run_loop(self, *, max_ticks: int | None = None) -> SchedulerLoopSummary:
        summary = SchedulerLoopSummary()
        with self._stop.handlers():
            while not self._stop.requested:
                if max_ticks is not None and summary.ticks >= max_ticks:
                    break
                tick = self.tick()
                summary.ticks += 1
                summary.enqueued += tick.enqueued
                if tick.skipped_reason is not None:
                    summary.skipped_ticks += 1

                if self.run_maintenance_if_due() is not None:
                    summary.maintenance_runs += 1
                if self.gate is not None:
                    decisions = self.gate.retry_deferred(
                        limit=self.settings.deferred_search_batch_size,
                    )
                    summary.deferred_searches_enqueued += sum(
                        1 for decision in decisions if decision.enqueued
                    )
                if self.publisher is not None and self.settings.publish_events:
                    published = self.publisher.publish_pending(
                        limit=self.settings.publish_batch_size,
                    )
                    summary.events_published += published.delivered

                if max_ticks is not None and summary.ticks >= max_ticks:
                    break
                self._stop.sleep(self.settings.tick_interval_seconds)
        return summary

    def request_stop(self) -> None:
        self._stop.request()
