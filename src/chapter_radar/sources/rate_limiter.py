"""Per-source token bucket shared by all worker processes through the database."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from chapter_radar.config import RateLimitRule, RateLimitSettings
from chapter_radar.sources.base import RateLimitTimeout
from chapter_radar.storage.sqlmodel_models import RateLimitBucket

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RateLimitToken:
    source_name: str
    granted_at: float
    waited_seconds: float


@dataclass(slots=True, frozen=True)
class _BucketDecision:
    granted: bool
    tokens: float
    next_allowed_at: float
    wait_seconds: float


class SourceRateLimiter:
    """Token bucket with a minimum inter-request cooldown, per source name.

    Bucket state lives in ``rate_limit_buckets`` and is advanced with a
    compare-and-set on ``version``, so N worker processes together never exceed
    a source's configured rate. ``clock`` must be wall-clock seconds shared by
    all processes; ``sleep`` is injectable for tests.
    """

    def __init__(
        self,
        engine: Engine,
        settings: RateLimitSettings,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.engine = engine
        self.settings = settings
        self._clock = clock
        self._sleep = sleep

    def acquire(self, source_name: str, *, max_wait: float | None = None) -> RateLimitToken:
        """Block until a token is granted or raise ``RateLimitTimeout``."""

        source = source_name.lower()
        rule = self.settings.rule_for(source)
        budget = self.settings.acquire_timeout_seconds if max_wait is None else max_wait
        started = self._clock()
        deadline = started + budget
        while True:
            now = self._clock()
            decision = self._try_take(source, rule, now)
            if decision is None:
                continue
            if decision.granted:
                return RateLimitToken(
                    source_name=source,
                    granted_at=now,
                    waited_seconds=max(0.0, now - started),
                )
            remaining = deadline - now
            if remaining <= 0 or decision.wait_seconds > remaining:
                logger.info(
                    "Rate limit wait for %s exceeds budget (need %.2fs, have %.2fs)",
                    source,
                    decision.wait_seconds,
                    max(0.0, remaining),
                )
                raise RateLimitTimeout(source_name=source, waited_seconds=max(0.0, now - started))
            self._sleep(decision.wait_seconds)

    def try_acquire(self, source_name: str) -> RateLimitToken | None:
        """Non-blocking variant; ``None`` when the bucket is empty or cooling down."""

        try:
            return self.acquire(source_name, max_wait=0.0)
        except RateLimitTimeout:
            return None

    def reset(self, source_name: str) -> None:
        rule = self.settings.rule_for(source_name.lower())
        now = self._clock()
        with Session(self.engine) as session:
            row = session.exec(
                select(RateLimitBucket).where(RateLimitBucket.source_name == source_name.lower()),
            ).one_or_none()
            if row is None:
                return
            row.tokens = float(rule.burst)
            row.refilled_at = now
            row.next_allowed_at = 0.0
            row.version += 1
            session.add(row)
            session.commit()

    def _try_take(self, source: str, rule: RateLimitRule, now: float) -> _BucketDecision | None:
        """One compare-and-set round; ``None`` means a concurrent writer won, retry."""

        with Session(self.engine) as session:
            row = session.exec(
                select(RateLimitBucket).where(RateLimitBucket.source_name == source),
            ).one_or_none()
            if row is None:
                decision = _evaluate(
                    tokens=float(rule.burst),
                    refilled_at=now,
                    next_allowed_at=0.0,
                    rule=rule,
                    now=now,
                )
                session.add(
                    RateLimitBucket(
                        source_name=source,
                        tokens=decision.tokens,
                        refilled_at=now,
                        next_allowed_at=decision.next_allowed_at,
                        version=1,
                    ),
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return None
                return decision

            decision = _evaluate(
                tokens=row.tokens,
                refilled_at=row.refilled_at,
                next_allowed_at=row.next_allowed_at,
                rule=rule,
                now=now,
            )
            if not decision.granted:
                return decision
            result = session.exec(
                sa_update(RateLimitBucket)
                .where(
                    col(RateLimitBucket.source_name) == source,
                    col(RateLimitBucket.version) == row.version,
                )
                .values(
                    tokens=decision.tokens,
                    refilled_at=max(now, row.refilled_at),
                    next_allowed_at=decision.next_allowed_at,
                    version=row.version + 1,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            return decision


def _evaluate(
    *,
    tokens: float,
    refilled_at: float,
    next_allowed_at: float,
    rule: RateLimitRule,
    now: float,
) -> _BucketDecision:
    elapsed = max(0.0, now - refilled_at)
    available = min(float(rule.burst), tokens + elapsed * rule.requests_per_second)
    cooldown_wait = max(0.0, next_allowed_at - now)
    if available >= 1.0 and cooldown_wait <= 0.0:
        return _BucketDecision(
            granted=True,
            tokens=available - 1.0,
            next_allowed_at=now + rule.cooldown_seconds,
            wait_seconds=0.0,
        )
    token_wait = 0.0
    if available < 1.0:
        token_wait = (1.0 - available) / rule.requests_per_second
    # Round up to the millisecond so the next round lands past the boundary.
    wait = math.ceil(max(token_wait, cooldown_wait) * 1000.0) / 1000.0
    return _BucketDecision(
        granted=False,
        tokens=available,
        next_allowed_at=next_allowed_at,
        wait_seconds=max(wait, 0.001),
    )
