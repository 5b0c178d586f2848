from __future__ import annotations

import json
import logging

import allure
import httpx
import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from chapter_radar.chapters.events import (
    ChapterEventPublisher,
    LoggingEventSink,
    WebhookEventSink,
)
from chapter_radar.chapters.reconciler import ChapterReconciler
from chapter_radar.chapters.repository import CatalogRepository
from chapter_radar.http.client import SourceHttpClient
from chapter_radar.queue.payloads import IngestJobPayload
from chapter_radar.storage.sqlmodel_models import ChapterEvent

pytestmark = [
    allure.epic("Chapter Reconciliation"),
    allure.feature("Event Outbox"),
]


@pytest.fixture()
def detected_chapters(engine: Engine, catalog: CatalogRepository, clock) -> int:
    series_id = catalog.create_series("Dandadan")
    source_id = catalog.add_source(series_id=series_id, source_name="mangadex", external_id="dd")
    reconciler = ChapterReconciler(engine, clock=clock)
    for number in ("150", "151"):
        reconciler.reconcile(
            IngestJobPayload(
                series_id=series_id,
                series_source_id=source_id,
                chapter_number=number,
                chapter_url=f"https://example.test/dd/{number}",
            ),
        )
    return series_id


def _attempts(engine: Engine) -> list[tuple[int, bool]]:
    with Session(engine) as session:
        rows = session.exec(select(ChapterEvent).order_by(ChapterEvent.id)).all()
        return [(row.delivery_attempts, row.delivered_at is not None) for row in rows]


def test_logging_sink_delivers_in_outbox_order(
    engine: Engine,
    detected_chapters: int,
    caplog: pytest.LogCaptureFixture,
    clock,
) -> None:
    publisher = ChapterEventPublisher(engine, LoggingEventSink(), clock=clock)

    with caplog.at_level(logging.INFO, logger="chapter_radar.chapters.events"):
        summary = publisher.publish_pending()

    assert (summary.delivered, summary.failed) == (2, 0)
    assert publisher.pending_count() == 0
    assert caplog.text.index("150") < caplog.text.index("151")
    assert "Dandadan" in caplog.text
    assert publisher.publish_pending().delivered == 0


def test_webhook_failure_keeps_event_pending_until_it_succeeds(
    engine: Engine,
    detected_chapters: int,
    clock,
) -> None:
    posted: list[dict[str, object]] = []
    failing = {"151"}

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if body["chapter_number"] in failing:
            return httpx.Response(503)
        posted.append(body)
        return httpx.Response(202)

    http = SourceHttpClient(transport=httpx.MockTransport(handler))
    publisher = ChapterEventPublisher(
        engine,
        WebhookEventSink(http, "https://hooks.test/chapters"),
        clock=clock,
    )

    first = publisher.publish_pending()

    assert (first.delivered, first.failed) == (1, 1)
    assert _attempts(engine) == [(1, True), (1, False)]
    assert posted[0]["eventType"] == "new_chapter"
    assert posted[0]["eventKey"]

    failing.clear()
    second = publisher.publish_pending()

    assert (second.delivered, second.failed) == (1, 0)
    assert _attempts(engine) == [(1, True), (2, True)]
    assert [body["chapter_number"] for body in posted] == ["150", "151"]
    http.close()
