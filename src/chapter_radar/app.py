"""Wiring of storage, sources and services from one ``Settings`` object."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

import httpx

from chapter_radar.chapters.events import (
    ChapterEventPublisher,
    ChapterEventSink,
    LoggingEventSink,
    WebhookEventSink,
)
from chapter_radar.chapters.reconciler import ChapterReconciler
from chapter_radar.chapters.repository import CatalogRepository
from chapter_radar.config import Settings
from chapter_radar.http.client import SourceHttpClient
from chapter_radar.queue.repository import JobQueue
from chapter_radar.scheduling.backpressure import BackpressureGuard
from chapter_radar.scheduling.scheduler import Scheduler
from chapter_radar.scheduling.tiers import TierClassifier
from chapter_radar.search.discovery import DiscoveryService
from chapter_radar.search.gate import SearchIntentGate
from chapter_radar.services.ingest import IngestService
from chapter_radar.services.poller import PollService
from chapter_radar.sources.circuit_breaker import CircuitBreaker
from chapter_radar.sources.rate_limiter import SourceRateLimiter
from chapter_radar.sources.registry import SourceRegistry, build_default_registry
from chapter_radar.storage.database import Database
from chapter_radar.storage.leases import LeaseStore
from chapter_radar.worker import JobWorker


@dataclass(slots=True)
class ChapterRadarApp:
    """Every long-lived component, sharing one engine and one HTTP client."""

    settings: Settings
    database: Database
    http: SourceHttpClient
    registry: SourceRegistry
    catalog: CatalogRepository
    queue: JobQueue
    leases: LeaseStore
    guard: BackpressureGuard
    tiers: TierClassifier
    rate_limiter: SourceRateLimiter
    breaker: CircuitBreaker
    reconciler: ChapterReconciler
    gate: SearchIntentGate
    publisher: ChapterEventPublisher
    poller: PollService
    ingest: IngestService
    discovery: DiscoveryService

    def scheduler(self, *, holder_id: str | None = None) -> Scheduler:
        return Scheduler(
            engine=self.database.engine,
            queue=self.queue,
            leases=self.leases,
            guard=self.guard,
            tiers=self.tiers,
            catalog=self.catalog,
            settings=self.settings.scheduler,
            poll_max_attempts=self.settings.poller.max_attempts,
            gate=self.gate,
            publisher=self.publisher,
            holder_id=holder_id,
        )

    def worker(self, *, worker_id: str | None = None) -> JobWorker:
        return JobWorker(
            queue=self.queue,
            poller=self.poller,
            ingest=self.ingest,
            discovery=self.discovery,
            settings=self.settings.worker,
            worker_id=worker_id,
            rate_limit_retry_seconds=self.settings.poller.rate_limit_timeout_retry_seconds,
        )


def event_sink_for(settings: Settings, http: SourceHttpClient) -> ChapterEventSink:
    if settings.notifications.webhook_url:
        return WebhookEventSink(http, settings.notifications.webhook_url)
    return LoggingEventSink()


@contextmanager
def open_app(
    settings: Settings,
    *,
    transport: httpx.BaseTransport | None = None,
    registry: SourceRegistry | None = None,
    sink: ChapterEventSink | None = None,
) -> Iterator[ChapterRadarApp]:
    """Migrate the database, build all components, and close them on exit."""

    settings.validate()
    database = Database(settings.db_path, busy_timeout_ms=settings.busy_timeout_ms)
    http = SourceHttpClient(
        timeout_seconds=settings.sources.request_timeout_seconds,
        user_agent=settings.sources.user_agent,
        transport=transport,
    )
    try:
        database.init_schema()
        engine = database.engine
        queue = JobQueue(engine)
        guard = BackpressureGuard(engine, queue, settings.backpressure)
        tiers = TierClassifier(engine, settings.tiers)
        catalog = CatalogRepository(engine)
        rate_limiter = SourceRateLimiter(engine, settings.rate_limits)
        breaker = CircuitBreaker(
            engine,
            failure_threshold=settings.sources.breaker_failure_threshold,
            cooldown=timedelta(seconds=settings.sources.breaker_cooldown_seconds),
        )
        registry = registry or build_default_registry(settings, http)
        reconciler = ChapterReconciler(
            engine,
            tiers=tiers,
            long_source_id_warning_chars=settings.poller.long_source_id_warning_chars,
        )
        gate = SearchIntentGate(engine, queue, guard, settings.search)
        yield ChapterRadarApp(
            settings=settings,
            database=database,
            http=http,
            registry=registry,
            catalog=catalog,
            queue=queue,
            leases=LeaseStore(engine),
            guard=guard,
            tiers=tiers,
            rate_limiter=rate_limiter,
            breaker=breaker,
            reconciler=reconciler,
            gate=gate,
            publisher=ChapterEventPublisher(engine, sink or event_sink_for(settings, http)),
            poller=PollService(
                catalog=catalog,
                queue=queue,
                registry=registry,
                rate_limiter=rate_limiter,
                breaker=breaker,
                guard=guard,
                settings=settings.poller,
                ingest_max_attempts=settings.worker.ingest_max_attempts,
            ),
            ingest=IngestService(
                reconciler=reconciler,
                guard=guard,
                deferral_seconds=settings.worker.ingest_deferral_seconds,
            ),
            discovery=DiscoveryService(
                catalog=catalog,
                gate=gate,
                tiers=tiers,
                registry=registry,
                rate_limiter=rate_limiter,
                breaker=breaker,
                result_limit=settings.sources.search_result_limit,
            ),
        )
    finally:
        http.close()
        database.close()
