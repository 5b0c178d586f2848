"""Merge per-source chapter reports into canonical logical chapters."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from chapter_radar.chapters.models import ChapterEventType, SourceStatus
from chapter_radar.chapters.numbering import ChapterKey, normalize_chapter_number
from chapter_radar.queue.payloads import IngestJobPayload, PayloadValidationError
from chapter_radar.scheduling.tiers import EngagementSignal, TierClassifier
from chapter_radar.storage.common import (
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_or_none,
    utc_now,
)
from chapter_radar.storage.sqlmodel_models import (
    ChapterEvent,
    ChapterSource,
    LogicalChapter,
    Series,
    SeriesSource,
)

logger = logging.getLogger(__name__)

DEFAULT_LONG_SOURCE_ID_CHARS = 4_500
_UPSERT_ATTEMPTS = 3


class ReconcileAction(str, Enum):
    CREATED = "created"
    SOURCE_ADDED = "source_added"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    IGNORED = "ignored"


@dataclass(slots=True)
class ReconcileResult:
    action: ReconcileAction
    logical_chapter_id: int | None = None
    chapter_source_id: int | None = None
    event_ids: list[int] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class PrimarySource:
    chapter_source_id: int
    series_source_id: int
    source_name: str
    chapter_url: str
    trust_score: float
    detected_at: datetime


class ChapterReconciler:
    """Sole writer of logical chapters, chapter sources, and the chapter event outbox.

    Identity is ``(series_id, normalized chapter number)``; source chapter ids,
    URLs, and trust scores never take part in matching. The logical chapter,
    its source row, and their outbox events commit in one transaction, and the unique
    ``event_key`` keeps at most one ``new_chapter`` event per logical chapter
    no matter how many sources report it or how often a job is retried.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        tiers: TierClassifier | None = None,
        clock: Callable[[], datetime] = utc_now,
        long_source_id_warning_chars: int = DEFAULT_LONG_SOURCE_ID_CHARS,
    ) -> None:
        self.engine = engine
        self.tiers = tiers
        self._clock = clock
        self.long_source_id_warning_chars = long_source_id_warning_chars

    def reconcile(self, report: IngestJobPayload) -> ReconcileResult:
        key = normalize_chapter_number(report.chapter_number or None)
        if (
            report.source_chapter_id is not None
            and len(report.source_chapter_id) > self.long_source_id_warning_chars
        ):
            logger.warning(
                "Source chapter id of %d chars for series source %d, chapter %s",
                len(report.source_chapter_id),
                report.series_source_id,
                key.value,
            )

        for attempt in range(1, _UPSERT_ATTEMPTS + 1):
            try:
                result = self._reconcile_once(report, key)
                break
            except IntegrityError:
                # A concurrent ingest of the same chapter won an insert; re-read it.
                if attempt == _UPSERT_ATTEMPTS:
                    raise
        self._record_signal(report.series_id, result.action)
        return result

    def primary_source(self, logical_chapter_id: int) -> PrimarySource | None:
        """Available source with the highest trust score, earliest detection breaking ties."""

        with Session(self.engine) as session:
            row = session.exec(
                select(ChapterSource, SeriesSource)
                .join(SeriesSource, col(SeriesSource.id) == col(ChapterSource.series_source_id))
                .where(
                    ChapterSource.logical_chapter_id == logical_chapter_id,
                    col(ChapterSource.is_available).is_(True),
                    SeriesSource.source_status == SourceStatus.ACTIVE.value,
                )
                .order_by(
                    col(SeriesSource.trust_score).desc(),
                    col(ChapterSource.detected_at).asc(),
                    col(ChapterSource.id).asc(),
                )
                .limit(1),
            ).one_or_none()
            if row is None:
                return None
            chapter_source, series_source = row
            return PrimarySource(
                chapter_source_id=int(chapter_source.id or 0),
                series_source_id=chapter_source.series_source_id,
                source_name=series_source.source_name,
                chapter_url=chapter_source.chapter_url,
                trust_score=series_source.trust_score,
                detected_at=to_utc_aware(chapter_source.detected_at),
            )

    def _reconcile_once(self, report: IngestJobPayload, key: ChapterKey) -> ReconcileResult:
        now = self._clock()
        with Session(self.engine) as session:
            logical_chapter_id = self._get_or_create_chapter(session, report, key, now)
            if logical_chapter_id is None:
                return ReconcileResult(action=ReconcileAction.IGNORED)
            result = self._upsert_source(session, report, logical_chapter_id, now)
            session.commit()
            return result

    def _get_or_create_chapter(
        self,
        session: Session,
        report: IngestJobPayload,
        key: ChapterKey,
        now: datetime,
    ) -> int | None:
        series_source = session.get(SeriesSource, report.series_source_id)
        if series_source is None:
            logger.info(
                "Ignoring chapter %s for unknown series source %d",
                key.value,
                report.series_source_id,
            )
            return None
        if series_source.series_id != report.series_id:
            raise PayloadValidationError(
                message=(
                    f"Series source {report.series_source_id} belongs to series "
                    f"{series_source.series_id}, not {report.series_id}"
                ),
                code="series_mismatch",
            )
        existing = session.exec(
            select(LogicalChapter).where(
                LogicalChapter.series_id == report.series_id,
                LogicalChapter.chapter_number == key.value,
            ),
        ).one_or_none()
        if existing is not None:
            return int(existing.id or 0)
        if not report.is_available:
            return None

        db_now = to_db_datetime(now)
        row = LogicalChapter(
            series_id=report.series_id,
            chapter_number=key.value,
            chapter_kind=key.kind.value,
            sort_value=key.sort_value,
            title=report.chapter_title,
            published_at=to_db_datetime(report.published_at) if report.published_at else None,
            first_seen_at=db_now,
            updated_at=db_now,
        )
        session.add(row)
        session.flush()
        if row.id is None:
            raise RuntimeError("Failed to persist logical chapter")
        return int(row.id)

    def _upsert_source(
        self,
        session: Session,
        report: IngestJobPayload,
        logical_chapter_id: int,
        now: datetime,
    ) -> ReconcileResult:
        """Attach or refresh the source row and queue its outbox events; the caller commits."""

        db_now = to_db_datetime(now)
        existing = session.exec(
            select(ChapterSource).where(
                ChapterSource.logical_chapter_id == logical_chapter_id,
                ChapterSource.series_source_id == report.series_source_id,
            ),
        ).one_or_none()

        if existing is None:
            if not report.is_available:
                return ReconcileResult(
                    action=ReconcileAction.IGNORED,
                    logical_chapter_id=logical_chapter_id,
                )
            chapter_source = ChapterSource(
                logical_chapter_id=logical_chapter_id,
                series_source_id=report.series_source_id,
                source_chapter_id=report.source_chapter_id,
                chapter_url=report.chapter_url,
                chapter_title=report.chapter_title,
                language=report.language,
                scanlation_group=report.scanlation_group,
                is_available=True,
                source_published_at=(
                    to_db_datetime(report.published_at) if report.published_at else None
                ),
                detected_at=db_now,
                last_seen_at=db_now,
            )
            session.add(chapter_source)
            session.flush()
            chapter_source_id = int(chapter_source.id or 0)

            has_new_chapter_event = (
                session.exec(
                    select(ChapterEvent.id).where(
                        ChapterEvent.event_key == f"new_chapter:{logical_chapter_id}",
                    ),
                ).first()
                is not None
            )
            if has_new_chapter_event:
                event_type = ChapterEventType.SOURCE_ADDED
                event_key = f"source_added:{chapter_source_id}"
                action = ReconcileAction.SOURCE_ADDED
            else:
                event_type = ChapterEventType.NEW_CHAPTER
                event_key = f"new_chapter:{logical_chapter_id}"
                action = ReconcileAction.CREATED
            self._fill_chapter_gaps(session, logical_chapter_id, report, db_now)
            event = self._add_event(
                session,
                event_key=event_key,
                event_type=event_type,
                logical_chapter_id=logical_chapter_id,
                chapter_source=chapter_source,
                now=now,
            )
            return ReconcileResult(
                action=action,
                logical_chapter_id=logical_chapter_id,
                chapter_source_id=chapter_source_id,
                event_ids=[int(event.id or 0)],
            )

        changed = False
        availability_flipped = existing.is_available != report.is_available
        if availability_flipped:
            existing.is_available = report.is_available
            changed = True
        if report.is_available:
            for attribute, value in (
                ("chapter_url", report.chapter_url),
                ("chapter_title", report.chapter_title),
                ("language", report.language),
                ("scanlation_group", report.scanlation_group),
                ("source_chapter_id", report.source_chapter_id),
            ):
                if value is not None and getattr(existing, attribute) != value:
                    setattr(existing, attribute, value)
                    changed = True
            if report.published_at is not None and existing.source_published_at is None:
                existing.source_published_at = to_db_datetime(report.published_at)
                changed = True
        existing.last_seen_at = db_now
        session.add(existing)

        event_ids: list[int] = []
        if availability_flipped:
            event = self._add_event(
                session,
                event_key=(
                    f"availability:{existing.id}:{str(report.is_available).lower()}:"
                    f"{to_utc_aware(now).isoformat()}"
                ),
                event_type=ChapterEventType.AVAILABILITY_CHANGED,
                logical_chapter_id=logical_chapter_id,
                chapter_source=existing,
                now=now,
            )
            event_ids.append(int(event.id or 0))
        return ReconcileResult(
            action=ReconcileAction.UPDATED if changed else ReconcileAction.UNCHANGED,
            logical_chapter_id=logical_chapter_id,
            chapter_source_id=int(existing.id or 0),
            event_ids=event_ids,
        )

    def _fill_chapter_gaps(
        self,
        session: Session,
        logical_chapter_id: int,
        report: IngestJobPayload,
        db_now: datetime,
    ) -> None:
        chapter = session.get(LogicalChapter, logical_chapter_id)
        if chapter is None:
            return
        touched = False
        if chapter.title is None and report.chapter_title:
            chapter.title = report.chapter_title
            touched = True
        if chapter.published_at is None and report.published_at is not None:
            chapter.published_at = to_db_datetime(report.published_at)
            touched = True
        if touched:
            chapter.updated_at = db_now
            session.add(chapter)

    def _add_event(  # noqa: PLR0913
        self,
        session: Session,
        *,
        event_key: str,
        event_type: ChapterEventType,
        logical_chapter_id: int,
        chapter_source: ChapterSource,
        now: datetime,
    ) -> ChapterEvent:
        chapter = session.get(LogicalChapter, logical_chapter_id)
        series_source = session.get(SeriesSource, chapter_source.series_source_id)
        series = session.get(Series, chapter.series_id) if chapter is not None else None
        payload = {
            "event_type": event_type.value,
            "series_id": chapter.series_id if chapter is not None else None,
            "series_title": series.title if series is not None else None,
            "logical_chapter_id": logical_chapter_id,
            "chapter_number": chapter.chapter_number if chapter is not None else None,
            "chapter_title": chapter_source.chapter_title
            or (chapter.title if chapter is not None else None),
            "source_name": series_source.source_name if series_source is not None else None,
            "chapter_url": chapter_source.chapter_url,
            "is_available": chapter_source.is_available,
            "discovered_at": (
                to_utc_aware(chapter.first_seen_at).isoformat()
                if chapter is not None
                else to_utc_aware(now).isoformat()
            ),
            "published_at": _iso_or_none(chapter_source.source_published_at),
        }
        event = ChapterEvent(
            event_key=event_key,
            event_type=event_type.value,
            series_id=chapter.series_id if chapter is not None else 0,
            logical_chapter_id=logical_chapter_id,
            chapter_source_id=chapter_source.id,
            payload_json=json.dumps(payload, ensure_ascii=False, sort_keys=True),
            created_at=to_db_datetime(now),
        )
        session.add(event)
        session.flush()
        return event

    def _record_signal(self, series_id: int, action: ReconcileAction) -> None:
        if self.tiers is None:
            return
        if action is ReconcileAction.CREATED:
            self.tiers.record_signal(series_id, EngagementSignal.CHAPTER_DETECTED)
        elif action is ReconcileAction.SOURCE_ADDED:
            self.tiers.record_signal(series_id, EngagementSignal.CHAPTER_SOURCE_ADDED)


def _iso_or_none(value: datetime | None) -> str | None:
    aware = to_utc_aware_or_none(value)
    return aware.isoformat() if aware is not None else None
