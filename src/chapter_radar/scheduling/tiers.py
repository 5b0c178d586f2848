"""Catalog tier state machine, engagement signals, and poll cadence."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from chapter_radar.chapters.models import CatalogTier, Heat
from chapter_radar.config import TierSettings
from chapter_radar.storage.common import to_db_datetime, to_utc_aware_or_none, utc_now
from chapter_radar.storage.sqlmodel_models import Series

logger = logging.getLogger(__name__)

ELIGIBLE_TIERS: tuple[CatalogTier, ...] = (CatalogTier.A, CatalogTier.B)

POLL_INTERVALS: dict[tuple[CatalogTier, Heat], timedelta] = {
    (CatalogTier.A, Heat.HOT): timedelta(minutes=30),
    (CatalogTier.A, Heat.WARM): timedelta(minutes=45),
    (CatalogTier.A, Heat.COLD): timedelta(minutes=60),
    (CatalogTier.B, Heat.HOT): timedelta(hours=6),
    (CatalogTier.B, Heat.WARM): timedelta(hours=9),
    (CatalogTier.B, Heat.COLD): timedelta(hours=12),
}

_TIER_RANK = {CatalogTier.C: 0, CatalogTier.B: 1, CatalogTier.A: 2}


class EngagementSignal(str, Enum):
    CHAPTER_DETECTED = "chapter_detected"
    CHAPTER_SOURCE_ADDED = "chapter_source_added"
    SEARCH_IMPRESSION = "search_impression"
    CHAPTER_READ = "chapter_read"
    SERIES_FOLLOWED = "series_followed"
    SERIES_UNFOLLOWED = "series_unfollowed"


SIGNAL_WEIGHTS: dict[EngagementSignal, float] = {
    EngagementSignal.CHAPTER_DETECTED: 1.0,
    EngagementSignal.CHAPTER_SOURCE_ADDED: 2.0,
    EngagementSignal.SEARCH_IMPRESSION: 5.0,
    EngagementSignal.CHAPTER_READ: 50.0,
    EngagementSignal.SERIES_FOLLOWED: 100.0,
    EngagementSignal.SERIES_UNFOLLOWED: 0.0,
}


def poll_interval(tier: CatalogTier, heat: Heat) -> timedelta | None:
    """Poll cadence for a tier/heat pair; ``None`` for tier C."""

    return POLL_INTERVALS.get((tier, heat))


@dataclass(slots=True, frozen=True)
class TierChange:
    series_id: int
    from_tier: CatalogTier
    to_tier: CatalogTier
    heat: Heat
    reason: str


@dataclass(slots=True)
class TierMaintenanceSummary:
    scanned: int = 0
    promoted: int = 0
    demoted: int = 0
    heat_changed: int = 0


@dataclass(slots=True, frozen=True)
class _Metrics:
    score: float
    followers: int
    recent_reads: int
    last_chapter_at: datetime | None


class TierClassifier:
    """Sole writer of ``catalog_tier`` and ``heat``.

    Promotion happens as soon as a signal crosses a promotion bar. Demotion
    only happens during maintenance, below the lower demotion bar, and after
    the series has dwelt in its tier for ``demotion_min_dwell_hours``.
    """

    def __init__(
        self,
        engine: Engine,
        settings: TierSettings | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.settings = settings or TierSettings()
        self._clock = clock

    def record_signal(
        self,
        series_id: int,
        signal: EngagementSignal | str,
        count: int = 1,
    ) -> TierChange | None:
        """Apply an engagement signal; returns the promotion it caused, if any."""

        kind = EngagementSignal(signal)
        if count <= 0:
            raise ValueError("Signal count must be positive.")
        now = self._clock()
        with Session(self.engine) as session:
            row = session.get(Series, series_id)
            if row is None or row.deleted_at is not None:
                return None
            self._decay(row, now)
            row.activity_score += SIGNAL_WEIGHTS[kind] * count
            if kind is EngagementSignal.CHAPTER_DETECTED:
                row.last_chapter_at = to_db_datetime(now)
            elif kind is EngagementSignal.SEARCH_IMPRESSION:
                row.search_heat += count
            elif kind is EngagementSignal.CHAPTER_READ:
                row.recent_reads += count
            elif kind is EngagementSignal.SERIES_FOLLOWED:
                row.follower_count += count
            elif kind is EngagementSignal.SERIES_UNFOLLOWED:
                row.follower_count = max(0, row.follower_count - count)
            row.last_activity_at = to_db_datetime(now)
            change = self._apply(row, now, allow_demotion=False)
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
        if change is not None:
            logger.info(
                "Series %d promoted %s -> %s (%s)",
                change.series_id,
                change.from_tier.value,
                change.to_tier.value,
                change.reason,
            )
        return change

    def run_maintenance(
        self,
        now: datetime | None = None,
        *,
        batch_size: int = 500,
    ) -> TierMaintenanceSummary:
        """Decay scores, run promotion/demotion transitions, and recompute heat."""

        now = now or self._clock()
        summary = TierMaintenanceSummary()
        last_id = 0
        while True:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(Series)
                    .where(col(Series.deleted_at).is_(None), col(Series.id) > last_id)
                    .order_by(col(Series.id))
                    .limit(batch_size),
                ).all()
                if not rows:
                    break
                for row in rows:
                    last_id = int(row.id or last_id)
                    summary.scanned += 1
                    previous_heat = row.heat
                    self._decay(row, now)
                    change = self._apply(row, now, allow_demotion=True)
                    if change is not None:
                        if _TIER_RANK[change.to_tier] > _TIER_RANK[change.from_tier]:
                            summary.promoted += 1
                        else:
                            summary.demoted += 1
                        logger.info(
                            "Series %d moved %s -> %s (%s)",
                            change.series_id,
                            change.from_tier.value,
                            change.to_tier.value,
                            change.reason,
                        )
                    if row.heat != previous_heat:
                        summary.heat_changed += 1
                    row.updated_at = to_db_datetime(now)
                    session.add(row)
                session.commit()
        return summary

    def _decay(self, row: Series, now: datetime) -> None:
        decayed_at = to_utc_aware_or_none(row.score_decayed_at)
        if decayed_at is None:
            row.score_decayed_at = to_db_datetime(now)
            return
        elapsed = (now - decayed_at).total_seconds()
        if elapsed <= 0:
            return
        half_life = self.settings.score_half_life_days * 86_400.0
        factor = math.pow(0.5, elapsed / half_life) if half_life > 0 else 1.0
        row.activity_score = row.activity_score * factor
        row.recent_reads = int(round(row.recent_reads * factor))
        row.score_decayed_at = to_db_datetime(now)

    def _apply(self, row: Series, now: datetime, *, allow_demotion: bool) -> TierChange | None:
        metrics = _Metrics(
            score=row.activity_score,
            followers=row.follower_count,
            recent_reads=row.recent_reads,
            last_chapter_at=to_utc_aware_or_none(row.last_chapter_at),
        )
        current = CatalogTier(row.catalog_tier)
        target, reason = self._transition(
            current,
            metrics,
            now,
            tier_changed_at=to_utc_aware_or_none(row.tier_changed_at),
            allow_demotion=allow_demotion,
        )
        row.heat = self._heat_for(metrics, now).value
        if target is current:
            return None
        row.catalog_tier = target.value
        row.tier_changed_at = to_db_datetime(now)
        row.tier_reason = reason
        return TierChange(
            series_id=int(row.id or 0),
            from_tier=current,
            to_tier=target,
            heat=Heat(row.heat),
            reason=reason,
        )

    def _transition(
        self,
        current: CatalogTier,
        metrics: _Metrics,
        now: datetime,
        *,
        tier_changed_at: datetime | None,
        allow_demotion: bool,
    ) -> tuple[CatalogTier, str]:
        promoted, reason = self._promotion_target(metrics, now)
        if _TIER_RANK[promoted] > _TIER_RANK[current]:
            return promoted, reason
        if not allow_demotion or current is CatalogTier.C:
            return current, ""

        dwell = timedelta(hours=self.settings.demotion_min_dwell_hours)
        if tier_changed_at is not None and now - tier_changed_at < dwell:
            return current, ""
        if current is CatalogTier.A:
            if self._keeps_a(metrics, now):
                return current, ""
            if self._keeps_b(metrics):
                return CatalogTier.B, "below tier A demotion bar"
            return CatalogTier.C, "below tier B demotion bar"
        if self._keeps_b(metrics):
            return current, ""
        return CatalogTier.C, "below tier B demotion bar"

    def _promotion_target(self, metrics: _Metrics, now: datetime) -> tuple[CatalogTier, str]:
        settings = self.settings
        if metrics.score >= settings.promote_a_score:
            return CatalogTier.A, f"score {metrics.score:.0f} >= {settings.promote_a_score:.0f}"
        if metrics.followers >= settings.a_followers:
            return CatalogTier.A, f"followers {metrics.followers} >= {settings.a_followers}"
        if _within(metrics.last_chapter_at, now, days=settings.promote_a_chapter_days):
            return CatalogTier.A, f"chapter within {settings.promote_a_chapter_days} days"
        if metrics.score >= settings.promote_b_score:
            return CatalogTier.B, f"score {metrics.score:.0f} >= {settings.promote_b_score:.0f}"
        if metrics.followers >= settings.b_followers:
            return CatalogTier.B, f"followers {metrics.followers} >= {settings.b_followers}"
        return CatalogTier.C, ""

    def _keeps_a(self, metrics: _Metrics, now: datetime) -> bool:
        settings = self.settings
        return (
            metrics.score >= settings.demote_a_score
            or metrics.followers >= settings.a_followers
            or _within(metrics.last_chapter_at, now, days=settings.demote_a_chapter_days)
        )

    def _keeps_b(self, metrics: _Metrics) -> bool:
        return (
            metrics.score >= self.settings.demote_b_score
            or metrics.followers >= self.settings.b_followers
        )

    def _heat_for(self, metrics: _Metrics, now: datetime) -> Heat:
        settings = self.settings
        if (
            _within(metrics.last_chapter_at, now, days=settings.hot_chapter_days)
            or metrics.recent_reads >= settings.hot_recent_reads
            or metrics.followers >= settings.hot_followers
        ):
            return Heat.HOT
        if (
            _within(metrics.last_chapter_at, now, days=settings.warm_chapter_days)
            or metrics.score >= settings.warm_score
        ):
            return Heat.WARM
        return Heat.COLD


def _within(moment: datetime | None, now: datetime, *, days: int) -> bool:
    return moment is not None and now - moment <= timedelta(days=days)
