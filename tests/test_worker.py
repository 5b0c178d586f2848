from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager
from pathlib import Path

import allure
import httpx
import pytest

from chapter_radar.app import ChapterRadarApp, open_app
from chapter_radar.chapters.events import OutboundChapterEvent
from chapter_radar.chapters.models import ChapterEventType
from chapter_radar.config import BackpressureSettings, NotificationSettings, Settings
from chapter_radar.queue.models import JobStatus, JobSubmit, QueueName
from chapter_radar.scheduling.tiers import EngagementSignal
from chapter_radar.sources.base import TransientNetworkError
from chapter_radar.sources.registry import SourceRegistry
from conftest import StubSourceClient, report

pytestmark = [
    allure.epic("Worker"),
    allure.feature("Job Execution"),
]


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[OutboundChapterEvent] = []

    def deliver(self, event: OutboundChapterEvent) -> None:
        self.events.append(event)


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def make_app(
    tmp_path: Path,
    sink: RecordingSink,
) -> Callable[..., AbstractContextManager[ChapterRadarApp]]:
    def _make(
        *clients: StubSourceClient,
        settings: Settings | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> AbstractContextManager[ChapterRadarApp]:
        return open_app(
            settings or Settings(db_path=tmp_path / "radar.db"),
            transport=transport,
            registry=SourceRegistry(list(clients)),
            sink=None if transport is not None else sink,
        )

    return _make


def _followed_series(app: ChapterRadarApp, title: str, *sources: tuple[str, float]) -> list[int]:
    series_id = app.catalog.create_series(title)
    app.tiers.record_signal(series_id, EngagementSignal.SERIES_FOLLOWED, count=10)
    return [
        app.catalog.add_source(
            series_id=series_id,
            source_name=name,
            external_id=f"{name}-{series_id}",
            trust_score=trust,
        )
        for name, trust in sources
    ]


@pytest.fixture()
def two_source_app(
    make_app: Callable[..., AbstractContextManager[ChapterRadarApp]],
) -> Iterator[ChapterRadarApp]:
    mangadex = StubSourceClient("mangadex", kind="api", script=[[report("1"), report("2")]])
    manganato = StubSourceClient("manganato", script=[[report("2"), report("3")]])
    with make_app(mangadex, manganato) as app:
        yield app


def test_scheduled_polls_flow_through_ingest_into_published_events(
    two_source_app: ChapterRadarApp,
    sink: RecordingSink,
) -> None:
    app = two_source_app
    _followed_series(app, "Kaiju No. 8", ("mangadex", 0.9), ("manganato", 0.7))

    tick = app.scheduler(holder_id="scheduler").tick()
    summary = app.worker(worker_id="worker").run_loop(max_idle_polls=1)
    published = app.publisher.publish_pending()

    assert tick.enqueued == 2
    assert summary.processed == 6
    assert summary.succeeded == 6
    assert summary.idle_polls == 1
    assert app.queue.depth(QueueName.INGEST).waiting == 0

    [series] = app.catalog.list_series()
    listings = app.catalog.list_chapter_sources(series.id)
    assert len({listing.logical_chapter_id for listing in listings}) == 3
    assert len(listings) == 4

    assert published.delivered == 4
    event_types = [event.event_type for event in sink.events]
    assert event_types.count(ChapterEventType.NEW_CHAPTER.value) == 3
    assert event_types.count(ChapterEventType.SOURCE_ADDED.value) == 1
    assert app.publisher.pending_count() == 0


def test_invalid_payload_is_dead_lettered(two_source_app: ChapterRadarApp) -> None:
    app = two_source_app
    app.queue.submit(
        JobSubmit(queue_name=QueueName.INGEST, job_id="7:1", payload={"seriesId": 7}),
    )

    summary = app.worker(worker_id="worker").run_once()

    assert summary.dead_lettered == 1
    job = app.queue.get(queue_name=QueueName.INGEST, job_id="7:1")
    assert job is not None
    assert job.status is JobStatus.DEAD_LETTER
    assert job.failure_code is not None


def test_poll_deferred_by_ingest_backlog_keeps_its_attempt(
    make_app: Callable[..., AbstractContextManager[ChapterRadarApp]],
    tmp_path: Path,
) -> None:
    settings = Settings(
        db_path=tmp_path / "radar.db",
        backpressure=BackpressureSettings(ingest_critical_waiting=1),
    )
    client = StubSourceClient("mangadex", kind="api", script=[[report("1")]])
    with make_app(client, settings=settings) as app:
        [source_id] = _followed_series(app, "Oshi no Ko", ("mangadex", 0.9))
        for job_id in ("backlog:1", "backlog:2"):
            app.queue.submit(JobSubmit(queue_name=QueueName.INGEST, job_id=job_id, payload={}))
        app.queue.submit(
            JobSubmit(
                queue_name=QueueName.POLL,
                job_id=str(source_id),
                payload={"seriesSourceId": source_id},
                priority=10,
            ),
        )
        worker = app.worker(worker_id="worker")
        worker.queue_names = (QueueName.POLL,)

        summary = worker.run_once()

        assert summary.deferred == 1
        assert client.fetched == []
        job = app.queue.get(queue_name=QueueName.POLL, job_id=str(source_id))
        assert job is not None
        assert job.status is JobStatus.WAITING
        assert job.attempt == 0
        assert job.failure_code == "ingest_queue_critical"


@pytest.mark.parametrize(
    ("max_attempts", "expected_status"),
    [(5, JobStatus.WAITING), (1, JobStatus.FAILED)],
)
def test_transient_poll_failure_retries_until_attempts_run_out(
    make_app: Callable[..., AbstractContextManager[ChapterRadarApp]],
    max_attempts: int,
    expected_status: JobStatus,
) -> None:
    client = StubSourceClient(
        "mangadex",
        kind="api",
        script=[TransientNetworkError(message="connection reset")],
    )
    with make_app(client) as app:
        [source_id] = _followed_series(app, "Jujutsu Kaisen", ("mangadex", 0.9))
        app.queue.submit(
            JobSubmit(
                queue_name=QueueName.POLL,
                job_id=str(source_id),
                payload={"seriesSourceId": source_id},
                priority=10,
                max_attempts=max_attempts,
            ),
        )

        summary = app.worker(worker_id="worker").run_once()

        job = app.queue.get(queue_name=QueueName.POLL, job_id=str(source_id))
        assert job is not None
        assert job.status is expected_status
        assert job.attempt == 1
        assert job.failure_code == "transient_network"
        if expected_status is JobStatus.WAITING:
            assert summary.retried == 1
            assert job.run_after > job.updated_at
        else:
            assert summary.failed == 1
        source = app.catalog.get_source(source_id)
        assert source is not None and source.failure_count == 1



def test_discovery_without_search_capable_source_fails_without_retry(
    two_source_app: ChapterRadarApp,
) -> None:
    app = two_source_app
    app.gate.record_search("Mashle", user_key="a")
    assert app.gate.record_search("Mashle", user_key="b").enqueued

    summary = app.worker(worker_id="worker").run_once()

    assert summary.failed == 1
    job = app.queue.get(queue_name=QueueName.DISCOVERY, job_id="mashle")
    assert job is not None
    assert job.failure_code == "no_search_source"


def test_webhook_sink_is_wired_from_notification_settings(
    make_app: Callable[..., AbstractContextManager[ChapterRadarApp]],
    tmp_path: Path,
) -> None:
    posted: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(json.loads(request.content))
        return httpx.Response(204)

    settings = Settings(
        db_path=tmp_path / "radar.db",
        notifications=NotificationSettings(webhook_url="https://hooks.test/chapters"),
    )
    client = StubSourceClient("mangadex", kind="api", script=[[report("12")]])
    with make_app(client, settings=settings, transport=httpx.MockTransport(handler)) as app:
        _followed_series(app, "Spy x Family", ("mangadex", 0.9))
        app.scheduler(holder_id="scheduler").tick()
        app.worker(worker_id="worker").run_loop(max_idle_polls=1)

        published = app.publisher.publish_pending()

    assert published.delivered == 1
    assert posted[0]["eventType"] == ChapterEventType.NEW_CHAPTER.value
    assert posted[0]["chapter_number"] == "12"
