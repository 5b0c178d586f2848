"""Per-source circuit breaker with state shared through the database."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from chapter_radar.sources.base import (
    CircuitBreakerOpenError,
    ProxyBlockedError,
    TransientNetworkError,
)
from chapter_radar.storage.common import to_db_datetime, to_utc_aware, utc_now
from chapter_radar.storage.sqlmodel_models import CircuitBreakerState

logger = logging.getLogger(__name__)


def is_breaker_failure(error: BaseException) -> bool:
    """Only source-health failures count; DNS, 429, not-found, and bad ids do not."""

    return isinstance(error, TransientNetworkError | ProxyBlockedError)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Opens after ``failure_threshold`` consecutive failures, half-opens after ``cooldown``.

    While half-open a single probe is admitted; its success closes the breaker
    and its failure re-opens it for another cooldown.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        failure_threshold: int = 5,
        cooldown: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock

    def check(self, source_name: str) -> None:
        """Raise ``CircuitBreakerOpenError`` unless a call to ``source_name`` is allowed."""

        now = self._clock()
        with Session(self.engine) as session:
            row = self._get_or_create(session, source_name)
            if row.state == BreakerState.CLOSED.value:
                session.commit()
                return
            if row.state == BreakerState.OPEN.value:
                opened_at = to_utc_aware(row.opened_at) if row.opened_at else now
                reopen_at = opened_at + self.cooldown
                if now < reopen_at:
                    session.commit()
                    raise CircuitBreakerOpenError(
                        message=f"Circuit open for {source_name}",
                        retry_after=max(1, int((reopen_at - now).total_seconds())),
                    )
                row.state = BreakerState.HALF_OPEN.value
                row.opened_at = to_db_datetime(now)
                row.updated_at = to_db_datetime(now)
                session.add(row)
                session.commit()
                logger.info("Circuit for %s half-open, admitting probe", source_name)
                return
            # Half-open: one probe is in flight, block others until it reports back or times out.
            probe_started = to_utc_aware(row.opened_at) if row.opened_at else now
            if now < probe_started + self.cooldown:
                session.commit()
                raise CircuitBreakerOpenError(
                    message=f"Circuit half-open for {source_name}, probe in flight",
                    retry_after=max(1, int((probe_started + self.cooldown - now).total_seconds())),
                )
            row.opened_at = to_db_datetime(now)
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()

    def record_success(self, source_name: str) -> None:
        now = self._clock()
        with Session(self.engine) as session:
            row = self._get_or_create(session, source_name)
            if row.state != BreakerState.CLOSED.value:
                logger.info("Circuit for %s closed after successful probe", source_name)
            row.state = BreakerState.CLOSED.value
            row.failure_count = 0
            row.opened_at = None
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()

    def record_failure(self, source_name: str) -> BreakerState:
        now = self._clock()
        with Session(self.engine) as session:
            row = self._get_or_create(session, source_name)
            row.failure_count += 1
            row.last_failure_at = to_db_datetime(now)
            row.updated_at = to_db_datetime(now)
            should_open = (
                row.state == BreakerState.HALF_OPEN.value
                or row.failure_count >= self.failure_threshold
            )
            if should_open and row.state != BreakerState.OPEN.value:
                row.state = BreakerState.OPEN.value
                row.opened_at = to_db_datetime(now)
                logger.warning(
                    "Circuit for %s opened after %d consecutive failures",
                    source_name,
                    row.failure_count,
                )
            state = BreakerState(row.state)
            session.add(row)
            session.commit()
            return state

    def state(self, source_name: str) -> BreakerState:
        with Session(self.engine) as session:
            row = session.exec(
                select(CircuitBreakerState).where(
                    CircuitBreakerState.source_name == source_name,
                ),
            ).one_or_none()
            return BreakerState(row.state) if row is not None else BreakerState.CLOSED

    def _get_or_create(self, session: Session, source_name: str) -> CircuitBreakerState:
        row = session.exec(
            select(CircuitBreakerState).where(CircuitBreakerState.source_name == source_name),
        ).one_or_none()
        if row is not None:
            return row
        row = CircuitBreakerState(
            source_name=source_name,
            state=BreakerState.CLOSED.value,
            failure_count=0,
            updated_at=to_db_datetime(self._clock()),
        )
        session.add(row)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            row = session.exec(
                select(CircuitBreakerState).where(
                    CircuitBreakerState.source_name == source_name,
                ),
            ).one()
        return row
