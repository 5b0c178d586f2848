from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta

import allure
import pytest
from sqlalchemy.engine import Engine

from chapter_radar.chapters.models import CatalogTier, Heat
from chapter_radar.chapters.repository import CatalogRepository
from chapter_radar.config import BackpressureSettings, SchedulerSettings
from chapter_radar.queue.models import JobStatus, JobSubmit, QueueName
from chapter_radar.queue.repository import JobQueue
from chapter_radar.scheduling.backpressure import BackpressureGuard
from chapter_radar.scheduling.scheduler import MASTER_LEASE, Scheduler
from chapter_radar.scheduling.tiers import TierClassifier, poll_interval
from chapter_radar.storage.leases import LeaseStore

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Tiered Poll Scheduler"),
]


@pytest.fixture()
def make_scheduler(
    engine: Engine,
    job_queue: JobQueue,
    tiers: TierClassifier,
    catalog: CatalogRepository,
    clock,
) -> Callable[..., Scheduler]:
    def _make(
        *,
        backpressure: BackpressureSettings | None = None,
        settings: SchedulerSettings | None = None,
        holder_id: str = "scheduler-1",
    ) -> Scheduler:
        return Scheduler(
            engine=engine,
            queue=job_queue,
            leases=LeaseStore(engine, clock=clock),
            guard=BackpressureGuard(engine, job_queue, backpressure),
            tiers=tiers,
            catalog=catalog,
            settings=settings,
            holder_id=holder_id,
            clock=clock,
        )

    return _make


@pytest.fixture()
def add_series(
    catalog: CatalogRepository,
    follow_series: Callable[[int, int], None],
) -> Callable[..., tuple[int, int]]:
    def _add(title: str, *, followers: int = 0) -> tuple[int, int]:
        series_id = catalog.create_series(title)
        if followers:
            follow_series(series_id, followers)
        source_id = catalog.add_source(
            series_id=series_id,
            source_name="mangadex",
            external_id=f"md-{series_id}",
        )
        return series_id, source_id

    return _add


def _finish_poll(job_queue: JobQueue, catalog: CatalogRepository, source_id: int) -> None:
    job = job_queue.claim_next(queue_names=[QueueName.POLL], worker_id="worker")
    assert job is not None and job.job_id == str(source_id)
    catalog.record_poll_success(source_id)
    job_queue.complete(queue_name=QueueName.POLL, job_id=job.job_id)


def test_tier_c_series_is_never_enqueued(
    make_scheduler: Callable[..., Scheduler],
    add_series: Callable[..., tuple[int, int]],
    job_queue: JobQueue,
    clock,
) -> None:
    add_series("Unread Webcomic")
    scheduler = make_scheduler()

    for _ in range(48):
        assert scheduler.tick().enqueued == 0
        clock.advance(hours=1)

    assert job_queue.list_jobs(queue_name=QueueName.POLL) == []


def test_tier_a_is_enqueued_with_high_priority(
    make_scheduler: Callable[..., Scheduler],
    add_series: Callable[..., tuple[int, int]],
    job_queue: JobQueue,
) -> None:
    _, a_source = add_series("One Piece", followers=10)
    _, b_source = add_series("Niche Title", followers=1)

    result = make_scheduler().tick()

    assert result.enqueued == 2
    first = job_queue.claim_next(queue_names=[QueueName.POLL], worker_id="w")
    second = job_queue.claim_next(queue_names=[QueueName.POLL], worker_id="w")
    assert first is not None and first.job_id == str(a_source) and first.priority == 10
    assert second is not None and second.job_id == str(b_source) and second.priority == 20
    assert first.payload == {"seriesSourceId": a_source}


def test_pending_poll_is_not_enqueued_twice(
    make_scheduler: Callable[..., Scheduler],
    add_series: Callable[..., tuple[int, int]],
) -> None:
    add_series("One Piece", followers=10)
    scheduler = make_scheduler()

    assert scheduler.tick().enqueued == 1
    again = scheduler.tick()

    assert again.enqueued == 0
    assert again.duplicates == 1


def test_tier_cadence_gates_the_next_poll(
    make_scheduler: Callable[..., Scheduler],
    add_series: Callable[..., tuple[int, int]],
    job_queue: JobQueue,
    catalog: CatalogRepository,
    clock,
) -> None:
    _, a_source = add_series("One Piece", followers=10)
    _, b_source = add_series("Niche Title", followers=1)
    scheduler = make_scheduler()
    scheduler.tick()
    _finish_poll(job_queue, catalog, a_source)
    _finish_poll(job_queue, catalog, b_source)

    clock.advance(minutes=30)
    assert scheduler.tick().enqueued == 0

    clock.advance(minutes=16)
    assert [pair.series_source_id for pair in scheduler.due_pairs(clock(), limit=10)] == [
        a_source,
    ]
    assert scheduler.tick().enqueued == 1

    clock.advance(hours=12)
    due = {pair.series_source_id for pair in scheduler.due_pairs(clock(), limit=10)}
    assert b_source in due


def test_backoff_and_disabled_sources_are_not_due(
    make_scheduler: Callable[..., Scheduler],
    add_series: Callable[..., tuple[int, int]],
    catalog: CatalogRepository,
    clock,
) -> None:
    _, backed_off = add_series("Backed Off", followers=10)
    _, disabled = add_series("Gone", followers=10)
    catalog.record_poll_failure(
        backed_off,
        error_code="proxy_blocked",
        message="403",
        next_check_at=clock() + timedelta(hours=2),
    )
    catalog.disable_source(disabled, reason="not found 3 times in a row")
    scheduler = make_scheduler()

    assert scheduler.due_pairs(clock(), limit=10) == []
    clock.advance(hours=2)
    assert [pair.series_source_id for pair in scheduler.due_pairs(clock(), limit=10)] == [
        backed_off,
    ]


def test_tick_skips_while_another_scheduler_holds_the_lease(
    make_scheduler: Callable[..., Scheduler],
    add_series: Callable[..., tuple[int, int]],
    engine: Engine,
    clock,
) -> None:
    add_series("One Piece", followers=10)
    LeaseStore(engine, clock=clock).acquire(
        MASTER_LEASE,
        holder="scheduler-2",
        ttl=timedelta(minutes=6),
    )
    scheduler = make_scheduler()

    held = scheduler.tick()
    clock.advance(minutes=7)
    taken_over = scheduler.tick()

    assert held.skipped_reason == "lock_held"
    assert held.enqueued == 0
    assert taken_over.skipped_reason is None
    assert taken_over.enqueued == 1


def test_second_scheduler_with_the_same_holder_id_is_refused(
    make_scheduler: Callable[..., Scheduler],
    add_series: Callable[..., tuple[int, int]],
    engine: Engine,
    clock,
) -> None:
    add_series("One Piece", followers=10)
    leases = LeaseStore(engine, clock=clock)
    scheduler = make_scheduler(holder_id="host:4242")

    with leases.hold(MASTER_LEASE, holder="host:4242", ttl=timedelta(minutes=6), reentrant=False):
        result = scheduler.tick()

    assert result.skipped_reason == "lock_held"
    assert result.enqueued == 0
    assert scheduler.tick().enqueued == 1


def test_critical_ingest_backlog_skips_the_tick(
    make_scheduler: Callable[..., Scheduler],
    add_series: Callable[..., tuple[int, int]],
    job_queue: JobQueue,
    caplog: pytest.LogCaptureFixture,
) -> None:
    add_series("One Piece", followers=10)
    for job_id in ("1:1", "1:2", "1:3"):
        job_queue.submit(JobSubmit(queue_name=QueueName.INGEST, job_id=job_id, payload={}))
    scheduler = make_scheduler(backpressure=BackpressureSettings(ingest_critical_waiting=2))

    with caplog.at_level(logging.WARNING, logger="chapter_radar.scheduling.scheduler"):
        result = scheduler.tick()

    assert result.enqueued == 0
    assert result.skipped_reason == "ingest_queue_critical"
    assert job_queue.list_jobs(queue_name=QueueName.POLL) == []
    assert "ingest_queue_critical" in caplog.text


def test_cancel_series_drops_waiting_polls_and_stops_scheduling(
    make_scheduler: Callable[..., Scheduler],
    add_series: Callable[..., tuple[int, int]],
    job_queue: JobQueue,
    clock,
) -> None:
    series_id, source_id = add_series("Dropped", followers=10)
    scheduler = make_scheduler()
    scheduler.tick()

    assert scheduler.cancel_series(series_id) == 1
    assert job_queue.get(queue_name=QueueName.POLL, job_id=str(source_id)) is None
    clock.advance(hours=2)
    assert scheduler.tick().enqueued == 0
    assert scheduler.cancel_series(9_999) is None


def test_active_poll_survives_series_cancellation(
    make_scheduler: Callable[..., Scheduler],
    add_series: Callable[..., tuple[int, int]],
    job_queue: JobQueue,
) -> None:
    series_id, source_id = add_series("Dropped", followers=10)
    scheduler = make_scheduler()
    scheduler.tick()
    job_queue.claim_next(queue_names=[QueueName.POLL], worker_id="w")

    assert scheduler.cancel_series(series_id) == 0
    job = job_queue.get(queue_name=QueueName.POLL, job_id=str(source_id))
    assert job is not None and job.status is JobStatus.ACTIVE


def test_tier_maintenance_runs_once_per_interval(
    make_scheduler: Callable[..., Scheduler],
    add_series: Callable[..., tuple[int, int]],
    clock,
) -> None:
    add_series("One Piece", followers=10)
    first = make_scheduler(holder_id="scheduler-1")
    second = make_scheduler(holder_id="scheduler-2")

    summary = first.run_maintenance_if_due()
    assert summary is not None and summary.scanned == 1
    assert first.run_maintenance_if_due() is None
    assert second.run_maintenance_if_due() is None

    clock.advance(hours=1, seconds=1)
    assert second.run_maintenance_if_due() is not None


def test_run_loop_stops_after_max_ticks(
    make_scheduler: Callable[..., Scheduler],
    add_series: Callable[..., tuple[int, int]],
) -> None:
    add_series("One Piece", followers=10)
    scheduler = make_scheduler(settings=SchedulerSettings(tick_interval_seconds=0.0))

    summary = scheduler.run_loop(max_ticks=2)

    assert summary.ticks == 2
    assert summary.enqueued == 1
    assert summary.maintenance_runs == 1


@pytest.mark.parametrize(
    ("tier", "heat", "expected"),
    [
        (CatalogTier.A, Heat.HOT, timedelta(minutes=30)),
        (CatalogTier.A, Heat.COLD, timedelta(hours=1)),
        (CatalogTier.B, Heat.WARM, timedelta(hours=9)),
        (CatalogTier.C, Heat.HOT, None),
    ],
)
def test_poll_interval_by_tier_and_heat(
    tier: CatalogTier,
    heat: Heat,
    expected: timedelta | None,
) -> None:
    assert poll_interval(tier, heat) == expected
