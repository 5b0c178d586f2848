"""TTL-bounded lease mutex shared through the database."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from chapter_radar.storage.common import to_db_datetime, to_utc_aware, utc_now
from chapter_radar.storage.sqlmodel_models import Lease

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LeaseHandle:
    """A held lease; ``renew`` extends it, ``lost`` flips once renewal fails."""

    store: LeaseStore
    name: str
    holder: str
    ttl: timedelta
    lost: bool = False

    def renew(self) -> bool:
        if self.lost:
            return False
        if not self.store.renew(self.name, holder=self.holder, ttl=self.ttl):
            logger.warning("Lease %s lost by holder %s", self.name, self.holder)
            self.lost = True
        return not self.lost


class LeaseStore:
    """Acquire/renew/release named leases; expiry makes abandoned leases reclaimable."""

    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def acquire(
        self,
        name: str,
        *,
        holder: str,
        ttl: timedelta,
        reentrant: bool = True,
    ) -> bool:
        """Take the lease if free or expired; ``reentrant`` lets its live holder re-take it."""

        now = self._clock()
        expires_at = to_db_datetime(now + ttl)
        with Session(self.engine) as session:
            row = session.exec(select(Lease).where(Lease.name == name)).one_or_none()
            if row is None:
                session.add(
                    Lease(
                        name=name,
                        holder=holder,
                        acquired_at=to_db_datetime(now),
                        expires_at=expires_at,
                    ),
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return False
                return True

            if to_utc_aware(row.expires_at) > now and (row.holder != holder or not reentrant):
                return False

            result = session.exec(
                sa_update(Lease)
                .where(
                    col(Lease.name) == name,
                    col(Lease.holder) == row.holder,
                    col(Lease.expires_at) == row.expires_at,
                )
                .values(holder=holder, acquired_at=to_db_datetime(now), expires_at=expires_at),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            if row.holder != holder:
                logger.info("Lease %s taken over from expired holder %s", name, row.holder)
            return True

    def renew(self, name: str, *, holder: str, ttl: timedelta) -> bool:
        now = self._clock()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Lease)
                .where(
                    col(Lease.name) == name,
                    col(Lease.holder) == holder,
                    col(Lease.expires_at) > to_db_datetime(now),
                )
                .values(expires_at=to_db_datetime(now + ttl)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def release(self, name: str, *, holder: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(Lease).where(col(Lease.name) == name, col(Lease.holder) == holder),
            )
            session.commit()
            return result.rowcount == 1

    def holder_of(self, name: str) -> str | None:
        now = self._clock()
        with Session(self.engine) as session:
            row = session.exec(select(Lease).where(Lease.name == name)).one_or_none()
            if row is None or to_utc_aware(row.expires_at) <= now:
                return None
            return row.holder

    @contextmanager
    def hold(
        self,
        name: str,
        *,
        holder: str,
        ttl: timedelta,
        reentrant: bool = True,
    ) -> Iterator[LeaseHandle | None]:
        """Yield a handle while the lease is held, or ``None`` if it cannot be taken."""

        if not self.acquire(name, holder=holder, ttl=ttl, reentrant=reentrant):
            yield None
            return
        handle = LeaseHandle(store=self, name=name, holder=holder, ttl=ttl)
        try:
            yield handle
        finally:
            if not handle.lost:
                self.release(name, holder=holder)
