"""Collapse bursts of user searches into at most one discovery job per query."""

from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from chapter_radar.config import SearchSettings
from chapter_radar.queue.models import JobSubmit, QueueName, SubmitResult
from chapter_radar.queue.payloads import DISCOVERY_TRIGGERS, DiscoveryJobPayload
from chapter_radar.queue.repository import JobQueue
from chapter_radar.scheduling.backpressure import BackpressureGuard
from chapter_radar.storage.common import to_db_datetime, to_utc_aware_or_none, utc_now
from chapter_radar.storage.sqlmodel_models import QueryStat, QueryStatUser

logger = logging.getLogger(__name__)

_DISALLOWED_RE = re.compile(r"[^a-z0-9 ]")
_SPACES_RE = re.compile(r"\s+")


def normalize_search_query(raw_query: str) -> str:
    """Lowercase, strip diacritics, keep ``[a-z0-9 ]``, and collapse whitespace."""

    decomposed = unicodedata.normalize("NFD", raw_query.lower())
    without_marks = "".join(char for char in decomposed if not unicodedata.combining(char))
    return _SPACES_RE.sub(" ", _DISALLOWED_RE.sub("", without_marks).strip())


@dataclass(slots=True, frozen=True)
class GateDecision:
    enqueued: bool
    reason: str | None
    normalized_key: str


@dataclass(slots=True, frozen=True)
class QueryStatView:
    normalized_key: str
    total_searches: int
    unique_users: int
    resolved: bool
    deferred: bool
    last_searched_at: datetime
    last_enqueued_at: datetime | None


class SearchIntentGate:
    """Decides whether a search should trigger an outbound discovery crawl.

    Checks run in order: resolved, cooldown, below_threshold, active_job,
    queue_unhealthy. Passing every check is not enough on its own: the caller
    must also win a conditional update of ``last_enqueued_at``, so concurrent
    searches for one key produce exactly one discovery job per cooldown window.
    """

    def __init__(
        self,
        engine: Engine,
        queue: JobQueue,
        guard: BackpressureGuard,
        settings: SearchSettings | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.queue = queue
        self.guard = guard
        self.settings = settings or SearchSettings()
        self._clock = clock

    def record_search(
        self,
        raw_query: str,
        user_key: str | None = None,
        trigger: str = "user_search",
    ) -> GateDecision:
        key = normalize_search_query(raw_query)
        if not key:
            return GateDecision(enqueued=False, reason="empty_query", normalized_key="")
        if trigger not in DISCOVERY_TRIGGERS:
            raise ValueError(f"Unsupported discovery trigger: {trigger!r}")
        stats = self._record_stats(key, user_key)
        return self._decide(stats, trigger=trigger)

    def retry_deferred(self, *, limit: int = 50) -> list[GateDecision]:
        """Re-drive queries deferred by an unhealthy discovery queue."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(QueryStat)
                .where(col(QueryStat.deferred).is_(True), col(QueryStat.resolved).is_(False))
                .order_by(col(QueryStat.last_searched_at).asc())
                .limit(limit),
            ).all()
            snapshots = [_to_view(row) for row in rows]
        decisions = [self._decide(stats, trigger="deferred_retry") for stats in snapshots]
        enqueued = sum(1 for decision in decisions if decision.enqueued)
        if decisions:
            logger.info("Re-drove %d deferred searches, %d enqueued", len(decisions), enqueued)
        return decisions

    def mark_resolved(self, normalized_key: str) -> bool:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueryStat)
                .where(col(QueryStat.normalized_key) == normalized_key)
                .values(resolved=True, deferred=False, updated_at=now),
            )
            session.commit()
        return result.rowcount == 1

    def get_stats(self, normalized_key: str) -> QueryStatView | None:
        with Session(self.engine) as session:
            row = session.get(QueryStat, normalized_key)
            return _to_view(row) if row is not None else None

    def _record_stats(self, key: str, user_key: str | None) -> QueryStatView:
        while True:
            now = to_db_datetime(self._clock())
            with Session(self.engine) as session:
                row = session.get(QueryStat, key)
                if row is None:
                    row = QueryStat(
                        normalized_key=key,
                        total_searches=0,
                        unique_users=0,
                        last_searched_at=now,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                    try:
                        session.flush()
                    except IntegrityError:
                        session.rollback()
                        continue
                row.total_searches += 1
                row.last_searched_at = now
                row.updated_at = now
                if user_key:
                    seen = session.get(QueryStatUser, (key, user_key))
                    if seen is None:
                        session.add(
                            QueryStatUser(normalized_key=key, user_key=user_key, created_at=now),
                        )
                        row.unique_users += 1
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                session.refresh(row)
                return _to_view(row)

    def _decide(self, stats: QueryStatView, *, trigger: str) -> GateDecision:
        key = stats.normalized_key
        now = self._clock()
        cooldown = timedelta(seconds=self.settings.cooldown_seconds)

        if stats.resolved:
            return GateDecision(enqueued=False, reason="resolved", normalized_key=key)
        if stats.last_enqueued_at is not None and now - stats.last_enqueued_at < cooldown:
            return GateDecision(enqueued=False, reason="cooldown", normalized_key=key)
        if (
            stats.total_searches < self.settings.min_total_searches
            and stats.unique_users < self.settings.min_unique_users
        ):
            return GateDecision(enqueued=False, reason="below_threshold", normalized_key=key)
        if self.queue.is_pending(queue_name=QueueName.DISCOVERY, job_id=key):
            return GateDecision(enqueued=False, reason="active_job", normalized_key=key)
        health = self.guard.check_discovery()
        if not health.allowed:
            self._mark_deferred(key)
            logger.warning(
                "Discovery queue unhealthy (%d waiting); deferred search %r",
                health.depth,
                key,
            )
            return GateDecision(enqueued=False, reason="queue_unhealthy", normalized_key=key)

        if not self._claim_window(key, now, cooldown):
            return GateDecision(enqueued=False, reason="cooldown", normalized_key=key)

        payload = DiscoveryJobPayload(normalized_query=key, trigger=trigger)
        result = self.queue.submit(
            JobSubmit(
                queue_name=QueueName.DISCOVERY,
                job_id=key,
                payload=payload.to_payload(),
                max_attempts=self.settings.discovery_max_attempts,
            ),
        )
        if result is SubmitResult.DUPLICATE:
            return GateDecision(enqueued=False, reason="active_job", normalized_key=key)
        logger.info("Enqueued discovery for %r (%s)", key, trigger)
        return GateDecision(enqueued=True, reason=None, normalized_key=key)

    def _claim_window(self, key: str, now: datetime, cooldown: timedelta) -> bool:
        db_now = to_db_datetime(now)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueryStat)
                .where(
                    col(QueryStat.normalized_key) == key,
                    col(QueryStat.resolved).is_(False),
                    or_(
                        col(QueryStat.last_enqueued_at).is_(None),
                        col(QueryStat.last_enqueued_at) <= to_db_datetime(now - cooldown),
                    ),
                )
                .values(last_enqueued_at=db_now, deferred=False, updated_at=db_now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def _mark_deferred(self, key: str) -> None:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            session.exec(
                sa_update(QueryStat)
                .where(col(QueryStat.normalized_key) == key)
                .values(deferred=True, updated_at=now),
            )
            session.commit()


def _to_view(row: QueryStat) -> QueryStatView:
    last_searched_at = to_utc_aware_or_none(row.last_searched_at)
    if last_searched_at is None:
        raise RuntimeError("QueryStat row without last_searched_at")
    return QueryStatView(
        normalized_key=row.normalized_key,
        total_searches=row.total_searches,
        unique_users=row.unique_users,
        resolved=row.resolved,
        deferred=row.deferred,
        last_searched_at=last_searched_at,
        last_enqueued_at=to_utc_aware_or_none(row.last_enqueued_at),
    )
