from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

import allure
import pytest
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from chapter_radar.chapters.events import ChapterEventPublisher, LoggingEventSink
from chapter_radar.chapters.models import CatalogTier, ChapterEventType
from chapter_radar.chapters.reconciler import ChapterReconciler, ReconcileAction
from chapter_radar.chapters.repository import CatalogRepository
from chapter_radar.queue.payloads import IngestJobPayload, PayloadValidationError
from chapter_radar.scheduling.tiers import TierClassifier
from chapter_radar.storage.sqlmodel_models import ChapterEvent, ChapterSource, LogicalChapter

pytestmark = [
    allure.epic("Chapter Reconciliation"),
    allure.feature("Cross-source Merge"),
]


@pytest.fixture()
def reconciler(engine: Engine, tiers: TierClassifier, clock) -> ChapterReconciler:
    return ChapterReconciler(engine, tiers=tiers, clock=clock)


@pytest.fixture()
def outbox(engine: Engine, clock) -> ChapterEventPublisher:
    return ChapterEventPublisher(engine, LoggingEventSink(), clock=clock)


@pytest.fixture()
def two_sources(catalog: CatalogRepository) -> tuple[int, int, int]:
    series_id = catalog.create_series("Solo Leveling")
    mangadex = catalog.add_source(
        series_id=series_id,
        source_name="mangadex",
        external_id="32d76d19-8a05-4db0-9fc2-e0b0648fe9d0",
        trust_score=0.9,
    )
    manganato = catalog.add_source(
        series_id=series_id,
        source_name="manganato",
        external_id="manga-dr980474",
        trust_score=0.8,
    )
    return series_id, mangadex, manganato


def _ingest(series_id: int, source_id: int, number: str, **overrides: object) -> IngestJobPayload:
    payload = IngestJobPayload(
        series_id=series_id,
        series_source_id=source_id,
        chapter_number=number,
        chapter_url=f"https://example.test/{source_id}/{number}",
    )
    for name, value in overrides.items():
        setattr(payload, name, value)
    return payload


def test_two_sources_reporting_one_chapter_yield_one_logical_chapter(
    reconciler: ChapterReconciler,
    catalog: CatalogRepository,
    outbox: ChapterEventPublisher,
    two_sources: tuple[int, int, int],
    clock,
) -> None:
    series_id, mangadex, manganato = two_sources

    first = reconciler.reconcile(_ingest(series_id, manganato, "100"))
    clock.advance(minutes=5)
    second = reconciler.reconcile(_ingest(series_id, mangadex, "Chapter 100.0"))

    assert first.action is ReconcileAction.CREATED
    assert second.action is ReconcileAction.SOURCE_ADDED
    assert first.logical_chapter_id == second.logical_chapter_id

    listings = catalog.list_chapter_sources(series_id)
    assert {listing.logical_chapter_id for listing in listings} == {first.logical_chapter_id}
    assert {listing.source_name for listing in listings} == {"mangadex", "manganato"}

    events = outbox.list_pending(limit=10)
    assert [event.event_type for event in events] == [
        ChapterEventType.NEW_CHAPTER.value,
        ChapterEventType.SOURCE_ADDED.value,
    ]
    assert events[0].payload["chapter_number"] == "100"
    assert events[0].payload["series_title"] == "Solo Leveling"


def test_reconcile_is_idempotent(
    reconciler: ChapterReconciler,
    outbox: ChapterEventPublisher,
    two_sources: tuple[int, int, int],
) -> None:
    series_id, mangadex, _ = two_sources
    report = _ingest(series_id, mangadex, "12", chapter_title="The Gate")

    first = reconciler.reconcile(report)
    again = reconciler.reconcile(report)

    assert first.action is ReconcileAction.CREATED
    assert again.action is ReconcileAction.UNCHANGED
    assert again.chapter_source_id == first.chapter_source_id
    assert again.event_ids == []
    assert outbox.pending_count() == 1


def test_changed_url_updates_the_existing_source_row(
    reconciler: ChapterReconciler,
    catalog: CatalogRepository,
    two_sources: tuple[int, int, int],
) -> None:
    series_id, mangadex, _ = two_sources
    reconciler.reconcile(_ingest(series_id, mangadex, "5"))

    moved = reconciler.reconcile(
        _ingest(series_id, mangadex, "5", chapter_url="https://example.test/moved/5"),
    )

    assert moved.action is ReconcileAction.UPDATED
    [listing] = catalog.list_chapter_sources(series_id)
    assert listing.chapter_url == "https://example.test/moved/5"


def test_primary_source_prefers_higher_trust_over_earlier_detection(
    reconciler: ChapterReconciler,
    two_sources: tuple[int, int, int],
    clock,
) -> None:
    series_id, mangadex, manganato = two_sources
    created = reconciler.reconcile(_ingest(series_id, manganato, "7"))
    clock.advance(minutes=30)
    reconciler.reconcile(_ingest(series_id, mangadex, "7"))

    primary = reconciler.primary_source(created.logical_chapter_id or 0)

    assert primary is not None
    assert primary.source_name == "mangadex"
    assert primary.trust_score == pytest.approx(0.9)


def test_primary_source_skips_disabled_and_unavailable_sources(
    reconciler: ChapterReconciler,
    catalog: CatalogRepository,
    two_sources: tuple[int, int, int],
) -> None:
    series_id, mangadex, manganato = two_sources
    created = reconciler.reconcile(_ingest(series_id, mangadex, "8"))
    reconciler.reconcile(_ingest(series_id, manganato, "8"))
    chapter_id = created.logical_chapter_id or 0

    catalog.disable_source(mangadex, reason="not_found x3")
    primary = reconciler.primary_source(chapter_id)
    assert primary is not None and primary.source_name == "manganato"

    reconciler.reconcile(_ingest(series_id, manganato, "8", is_available=False))
    assert reconciler.primary_source(chapter_id) is None


def test_decimal_and_integer_chapters_stay_distinct(
    reconciler: ChapterReconciler,
    two_sources: tuple[int, int, int],
) -> None:
    series_id, mangadex, _ = two_sources

    whole = reconciler.reconcile(_ingest(series_id, mangadex, "1105"))
    half = reconciler.reconcile(_ingest(series_id, mangadex, "1105.5"))

    assert whole.action is half.action is ReconcileAction.CREATED
    assert whole.logical_chapter_id != half.logical_chapter_id


def test_special_chapters_do_not_collide_with_numbered_ones(
    reconciler: ChapterReconciler,
    catalog: CatalogRepository,
    two_sources: tuple[int, int, int],
) -> None:
    series_id, mangadex, _ = two_sources

    numbered = reconciler.reconcile(_ingest(series_id, mangadex, "1"))
    extra = reconciler.reconcile(_ingest(series_id, mangadex, "Extra 1"))
    oneshot = reconciler.reconcile(_ingest(series_id, mangadex, ""))

    ids = {numbered.logical_chapter_id, extra.logical_chapter_id, oneshot.logical_chapter_id}
    assert len(ids) == 3
    numbers = {listing.chapter_number for listing in catalog.list_chapter_sources(series_id)}
    assert numbers == {"1", "extra-1", "oneshot"}


def test_availability_flip_emits_an_event_each_way(
    reconciler: ChapterReconciler,
    outbox: ChapterEventPublisher,
    two_sources: tuple[int, int, int],
    clock,
) -> None:
    series_id, mangadex, _ = two_sources
    reconciler.reconcile(_ingest(series_id, mangadex, "3"))

    removed = reconciler.reconcile(_ingest(series_id, mangadex, "3", is_available=False))
    repeated = reconciler.reconcile(_ingest(series_id, mangadex, "3", is_available=False))
    clock.advance(hours=1)
    restored = reconciler.reconcile(_ingest(series_id, mangadex, "3"))

    assert removed.action is ReconcileAction.UPDATED
    assert len(removed.event_ids) == 1
    assert repeated.event_ids == []
    assert len(restored.event_ids) == 1
    types = [event.event_type for event in outbox.list_pending(limit=10)]
    assert types.count(ChapterEventType.AVAILABILITY_CHANGED.value) == 2


def test_unavailable_report_for_unknown_chapter_is_ignored(
    reconciler: ChapterReconciler,
    outbox: ChapterEventPublisher,
    two_sources: tuple[int, int, int],
) -> None:
    series_id, mangadex, _ = two_sources

    result = reconciler.reconcile(_ingest(series_id, mangadex, "99", is_available=False))

    assert result.action is ReconcileAction.IGNORED
    assert outbox.pending_count() == 0


def test_report_for_another_series_source_is_rejected(
    reconciler: ChapterReconciler,
    catalog: CatalogRepository,
    two_sources: tuple[int, int, int],
) -> None:
    _, mangadex, _ = two_sources
    other_series = catalog.create_series("Omniscient Reader")

    with pytest.raises(PayloadValidationError) as error_info:
        reconciler.reconcile(_ingest(other_series, mangadex, "1"))

    assert error_info.value.code == "series_mismatch"


def test_new_chapter_promotes_series_to_tier_a(
    reconciler: ChapterReconciler,
    catalog: CatalogRepository,
    two_sources: tuple[int, int, int],
) -> None:
    series_id, mangadex, _ = two_sources
    series = catalog.get_series(series_id)
    assert series is not None and series.catalog_tier is CatalogTier.C

    reconciler.reconcile(_ingest(series_id, mangadex, "200"))

    promoted = catalog.get_series(series_id)
    assert promoted is not None
    assert promoted.catalog_tier is CatalogTier.A
    assert promoted.last_chapter_at is not None


def test_concurrent_reports_of_one_new_chapter_create_it_once(
    engine: Engine,
    catalog: CatalogRepository,
    clock,
) -> None:
    series_id = catalog.create_series("Chainsaw Man")
    source_ids = [
        catalog.add_source(series_id=series_id, source_name=f"mirror{n}", external_id=f"csm-{n}")
        for n in range(6)
    ]
    reconciler = ChapterReconciler(engine, clock=clock)
    reports = [_ingest(series_id, source_id, "190") for source_id in source_ids] * 3

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(reconciler.reconcile, reports))

    assert len({result.logical_chapter_id for result in results}) == 1
    assert sum(1 for result in results if result.action is ReconcileAction.CREATED) == 1
    with Session(engine) as session:
        assert len(session.exec(select(LogicalChapter)).all()) == 1
        assert len(session.exec(select(ChapterSource)).all()) == 6
        new_chapter_events = session.exec(
            select(ChapterEvent).where(
                ChapterEvent.event_type == ChapterEventType.NEW_CHAPTER.value,
            ),
        ).all()
        assert len(new_chapter_events) == 1


def test_six_digit_numbers_and_long_source_ids_are_stored_verbatim(
    reconciler: ChapterReconciler,
    two_sources: tuple[int, int, int],
    engine: Engine,
) -> None:
    series_id, mangadex, manganato = two_sources
    long_id = "x" * 4000 + "y"

    result = reconciler.reconcile(
        _ingest(series_id, mangadex, "123456.5", source_chapter_id=long_id),
    )
    sibling = reconciler.reconcile(
        _ingest(series_id, manganato, "123456", source_chapter_id="x" * 4000 + "z"),
    )

    assert result.logical_chapter_id != sibling.logical_chapter_id
    with Session(engine) as session:
        chapter = session.get(LogicalChapter, result.logical_chapter_id)
        source = session.get(ChapterSource, result.chapter_source_id)
        assert chapter is not None and chapter.chapter_number == "123456.5"
        assert source is not None and source.source_chapter_id == long_id


def test_very_long_source_id_is_logged(
    reconciler: ChapterReconciler,
    two_sources: tuple[int, int, int],
    caplog: pytest.LogCaptureFixture,
) -> None:
    series_id, mangadex, _ = two_sources

    with caplog.at_level(logging.WARNING, logger="chapter_radar.chapters.reconciler"):
        reconciler.reconcile(_ingest(series_id, mangadex, "7", source_chapter_id="q" * 4501))
        reconciler.reconcile(_ingest(series_id, mangadex, "8", source_chapter_id="q" * 4500))

    assert "4501 chars" in caplog.text
    assert "4500 chars" not in caplog.text
