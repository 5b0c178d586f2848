"""Series, source, and chapter read/write access outside the reconciler."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from chapter_radar.chapters.models import (
    CatalogTier,
    ChapterListing,
    Heat,
    KnownChapterSource,
    PollFailureCounters,
    PollTarget,
    SeriesSourceView,
    SeriesView,
    SourceStatus,
    UpsertedSeries,
)
from chapter_radar.sources.base import DiscoveredSeries, SeriesSourceRef
from chapter_radar.storage.common import (
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_or_none,
    utc_now,
)
from chapter_radar.storage.sqlmodel_models import (
    ChapterSource,
    LogicalChapter,
    Series,
    SeriesSource,
)

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 500


class CatalogRepository:
    """Catalog persistence facade; tier and heat columns are left to the classifier."""

    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def create_series(self, title: str) -> int:
        cleaned = title.strip()
        if not cleaned:
            raise ValueError("Series title must not be empty.")
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            row = Series(title=cleaned, created_at=now, updated_at=now)
            session.add(row)
            session.commit()
            session.refresh(row)
            if row.id is None:
                raise RuntimeError("Failed to persist series")
            return int(row.id)

    def get_series(self, series_id: int) -> SeriesView | None:
        with Session(self.engine) as session:
            row = session.get(Series, series_id)
            return _to_series_view(row) if row is not None else None

    def list_series(self, *, include_deleted: bool = False, limit: int = 100) -> list[SeriesView]:
        statement = select(Series)
        if not include_deleted:
            statement = statement.where(col(Series.deleted_at).is_(None))
        statement = statement.order_by(col(Series.id)).limit(limit)
        with Session(self.engine) as session:
            return [_to_series_view(row) for row in session.exec(statement).all()]

    def add_source(
        self,
        *,
        series_id: int,
        source_name: str,
        external_id: str,
        source_url: str | None = None,
        trust_score: float = 0.5,
    ) -> int:
        """Attach a source to a series; raises ``ValueError`` on unknown series or duplicates."""

        if not 0.0 <= trust_score <= 1.0:
            raise ValueError("trust_score must be within [0, 1].")
        cleaned_external_id = external_id.strip()
        if not cleaned_external_id:
            raise ValueError("external_id must not be empty.")
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            series = session.get(Series, series_id)
            if series is None or series.deleted_at is not None:
                raise ValueError(f"Series {series_id} does not exist.")
            row = SeriesSource(
                series_id=series_id,
                source_name=source_name.strip().lower(),
                external_id=cleaned_external_id,
                source_url=source_url,
                trust_score=trust_score,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ValueError(
                    f"Source {source_name}:{cleaned_external_id} is already tracked.",
                ) from error
            session.refresh(row)
            if row.id is None:
                raise RuntimeError("Failed to persist series source")
            return int(row.id)

    def get_source(self, series_source_id: int) -> SeriesSourceView | None:
        with Session(self.engine) as session:
            row = session.get(SeriesSource, series_source_id)
            return _to_source_view(row) if row is not None else None

    def list_sources(self, series_id: int) -> list[SeriesSourceView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(SeriesSource)
                .where(SeriesSource.series_id == series_id)
                .order_by(col(SeriesSource.id)),
            ).all()
            return [_to_source_view(row) for row in rows]

    def upsert_discovered_series(self, found: DiscoveredSeries) -> UpsertedSeries:
        """Create a tier C series for a search hit unless the source entity is already known."""

        source_name = found.source_name.lower()
        while True:
            now = to_db_datetime(self._clock())
            with Session(self.engine) as session:
                existing = session.exec(
                    select(SeriesSource).where(
                        SeriesSource.source_name == source_name,
                        SeriesSource.external_id == found.external_id,
                    ),
                ).one_or_none()
                if existing is not None and existing.id is not None:
                    return UpsertedSeries(
                        series_id=existing.series_id,
                        series_source_id=existing.id,
                        created=False,
                    )

                series = Series(
                    title=found.title,
                    catalog_tier=CatalogTier.C.value,
                    follower_count=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(series)
                session.flush()
                if series.id is None:
                    raise RuntimeError("Failed to persist discovered series")
                source = SeriesSource(
                    series_id=series.id,
                    source_name=source_name,
                    external_id=found.external_id,
                    source_url=found.url,
                    created_at=now,
                    updated_at=now,
                )
                session.add(source)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                session.refresh(source)
                if source.id is None:
                    raise RuntimeError("Failed to persist discovered series source")
                logger.info("Discovered series %r on %s", found.title, source_name)
                return UpsertedSeries(
                    series_id=source.series_id,
                    series_source_id=source.id,
                    created=True,
                )

    def soft_delete_series(self, series_id: int) -> list[int] | None:
        """Mark a series deleted; returns its source ids, ``None`` when it does not exist."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            row = session.get(Series, series_id)
            if row is None:
                return None
            if row.deleted_at is None:
                row.deleted_at = now
                row.updated_at = now
                session.add(row)
            source_ids = session.exec(
                select(SeriesSource.id).where(SeriesSource.series_id == series_id),
            ).all()
            session.commit()
            return [int(source_id) for source_id in source_ids if source_id is not None]

    def get_poll_target(self, series_source_id: int) -> PollTarget | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(SeriesSource, Series)
                .join(Series, col(Series.id) == col(SeriesSource.series_id))
                .where(SeriesSource.id == series_source_id),
            ).one_or_none()
            if row is None:
                return None
            source, series = row
            return PollTarget(
                ref=SeriesSourceRef(
                    series_source_id=series_source_id,
                    series_id=source.series_id,
                    source_name=source.source_name,
                    external_id=source.external_id,
                    source_url=source.source_url,
                ),
                source_status=SourceStatus(source.source_status),
                catalog_tier=CatalogTier(series.catalog_tier),
                series_deleted=series.deleted_at is not None,
                failure_count=source.failure_count,
                not_found_count=source.not_found_count,
            )

    def record_poll_success(self, series_source_id: int) -> None:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            session.exec(
                sa_update(SeriesSource)
                .where(col(SeriesSource.id) == series_source_id)
                .values(
                    failure_count=0,
                    not_found_count=0,
                    last_error_code=None,
                    last_error=None,
                    last_polled_at=now,
                    last_success_at=now,
                    next_check_at=None,
                    updated_at=now,
                ),
            )
            session.commit()

    def record_poll_failure(
        self,
        series_source_id: int,
        *,
        error_code: str,
        message: str,
        next_check_at: datetime | None,
        not_found: bool = False,
    ) -> PollFailureCounters:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            row = session.get(SeriesSource, series_source_id)
            if row is None:
                return PollFailureCounters(failure_count=0, not_found_count=0)
            row.failure_count += 1
            row.not_found_count = row.not_found_count + 1 if not_found else 0
            row.last_error_code = error_code
            row.last_error = message[:MAX_ERROR_CHARS]
            row.last_polled_at = now
            row.next_check_at = to_db_datetime(next_check_at) if next_check_at else None
            row.updated_at = now
            counters = PollFailureCounters(
                failure_count=row.failure_count,
                not_found_count=row.not_found_count,
            )
            session.add(row)
            session.commit()
            return counters

    def disable_source(self, series_source_id: int, *, reason: str) -> bool:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SeriesSource)
                .where(
                    col(SeriesSource.id) == series_source_id,
                    col(SeriesSource.source_status) == SourceStatus.ACTIVE.value,
                )
                .values(
                    source_status=SourceStatus.DISABLED.value,
                    disabled_at=now,
                    last_error=reason[:MAX_ERROR_CHARS],
                    updated_at=now,
                ),
            )
            session.commit()
        disabled = result.rowcount == 1
        if disabled:
            logger.warning("Disabled series source %d: %s", series_source_id, reason)
        return disabled

    def enable_source(self, series_source_id: int) -> bool:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SeriesSource)
                .where(col(SeriesSource.id) == series_source_id)
                .values(
                    source_status=SourceStatus.ACTIVE.value,
                    disabled_at=None,
                    failure_count=0,
                    not_found_count=0,
                    next_check_at=None,
                    updated_at=now,
                ),
            )
            session.commit()
        return result.rowcount == 1

    def known_chapter_sources(self, series_source_id: int) -> dict[str, KnownChapterSource]:
        """Stored chapters of one source keyed by normalized chapter key."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ChapterSource, LogicalChapter)
                .join(
                    LogicalChapter,
                    col(LogicalChapter.id) == col(ChapterSource.logical_chapter_id),
                )
                .where(ChapterSource.series_source_id == series_source_id),
            ).all()
            return {
                chapter.chapter_number: KnownChapterSource(
                    chapter_key=chapter.chapter_number,
                    chapter_url=source.chapter_url,
                    chapter_title=source.chapter_title,
                    source_chapter_id=source.source_chapter_id,
                    language=source.language,
                    scanlation_group=source.scanlation_group,
                    is_available=source.is_available,
                )
                for source, chapter in rows
            }

    def list_chapter_sources(self, series_id: int, *, limit: int = 500) -> list[ChapterListing]:
        """Chapters of a series with their sources; disabled sources are hidden."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(LogicalChapter, ChapterSource, SeriesSource)
                .join(
                    ChapterSource,
                    col(ChapterSource.logical_chapter_id) == col(LogicalChapter.id),
                )
                .join(
                    SeriesSource,
                    col(SeriesSource.id) == col(ChapterSource.series_source_id),
                )
                .where(
                    LogicalChapter.series_id == series_id,
                    SeriesSource.source_status == SourceStatus.ACTIVE.value,
                )
                .order_by(
                    col(LogicalChapter.sort_value).desc().nulls_last(),
                    col(LogicalChapter.first_seen_at).desc(),
                    col(SeriesSource.trust_score).desc(),
                    col(ChapterSource.detected_at).asc(),
                )
                .limit(limit),
            ).all()
            return [
                ChapterListing(
                    logical_chapter_id=int(chapter.id or 0),
                    chapter_number=chapter.chapter_number,
                    chapter_kind=chapter.chapter_kind,
                    sort_value=chapter.sort_value,
                    chapter_title=source.chapter_title or chapter.title,
                    source_name=series_source.source_name,
                    chapter_url=source.chapter_url,
                    is_available=source.is_available,
                    trust_score=series_source.trust_score,
                    first_seen_at=to_utc_aware(chapter.first_seen_at),
                    detected_at=to_utc_aware(source.detected_at),
                )
                for chapter, source, series_source in rows
            ]


def _to_series_view(row: Series) -> SeriesView:
    return SeriesView(
        id=int(row.id or 0),
        title=row.title,
        catalog_tier=CatalogTier(row.catalog_tier),
        heat=Heat(row.heat),
        activity_score=row.activity_score,
        follower_count=row.follower_count,
        recent_reads=row.recent_reads,
        last_chapter_at=to_utc_aware_or_none(row.last_chapter_at),
        tier_changed_at=to_utc_aware_or_none(row.tier_changed_at),
        deleted_at=to_utc_aware_or_none(row.deleted_at),
    )


def _to_source_view(row: SeriesSource) -> SeriesSourceView:
    return SeriesSourceView(
        id=int(row.id or 0),
        series_id=row.series_id,
        source_name=row.source_name,
        external_id=row.external_id,
        source_url=row.source_url,
        trust_score=row.trust_score,
        source_status=SourceStatus(row.source_status),
        failure_count=row.failure_count,
        not_found_count=row.not_found_count,
        last_error_code=row.last_error_code,
        last_polled_at=to_utc_aware_or_none(row.last_polled_at),
        last_success_at=to_utc_aware_or_none(row.last_success_at),
        next_check_at=to_utc_aware_or_none(row.next_check_at),
    )
