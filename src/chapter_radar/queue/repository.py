"""Persistent job queue with idempotent submit keyed by deterministic job ids."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta

from sqlalchemy import case, func
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from chapter_radar.queue.models import (
    PENDING_STATUSES,
    JobStatus,
    JobSubmit,
    JobView,
    QueueDepth,
    QueueName,
    SubmitResult,
)
from chapter_radar.storage.common import (
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_or_none,
    utc_now,
)
from chapter_radar.storage.sqlmodel_models import QueueJob, QueueJobEvent

logger = logging.getLogger(__name__)


class JobQueue:
    """Queue persistence facade backed by SQLModel + SQLite.

    ``submit`` is a no-op while a job with the same ``(queue_name, job_id)``
    is waiting, delayed or active; a finished job with that id is re-armed.
    """

    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def submit(self, payload: JobSubmit) -> SubmitResult:
        """Enqueue a job unless one with the same id is already pending."""

        now = self._clock()
        run_after = to_db_datetime(payload.run_after or now)
        payload_json = json.dumps(payload.payload, ensure_ascii=False, sort_keys=True)
        queue_name = payload.queue_name.value
        while True:
            with Session(self.engine) as session:
                existing = session.exec(
                    select(QueueJob).where(
                        QueueJob.queue_name == queue_name,
                        QueueJob.job_id == payload.job_id,
                    ),
                ).one_or_none()
                if existing is None:
                    session.add(
                        QueueJob(
                            queue_name=queue_name,
                            job_id=payload.job_id,
                            payload_json=payload_json,
                            status=JobStatus.WAITING.value,
                            priority=payload.priority,
                            attempt=0,
                            max_attempts=payload.max_attempts,
                            run_after=run_after,
                            created_at=to_db_datetime(now),
                            updated_at=to_db_datetime(now),
                        ),
                    )
                    self._add_event(
                        session=session,
                        queue_name=queue_name,
                        job_id=payload.job_id,
                        event_type="enqueued",
                        status_from=None,
                        status_to=JobStatus.WAITING,
                        details={"priority": payload.priority},
                    )
                    try:
                        session.commit()
                    except IntegrityError:
                        session.rollback()
                        continue
                    return SubmitResult.CREATED

                previous_status = JobStatus(existing.status)
                if previous_status in PENDING_STATUSES:
                    return SubmitResult.DUPLICATE

                result = session.exec(
                    sa_update(QueueJob)
                    .where(
                        col(QueueJob.id) == existing.id,
                        col(QueueJob.status) == previous_status.value,
                    )
                    .values(
                        payload_json=payload_json,
                        status=JobStatus.WAITING.value,
                        priority=payload.priority,
                        attempt=0,
                        max_attempts=payload.max_attempts,
                        run_after=run_after,
                        worker_id=None,
                        started_at=None,
                        heartbeat_at=None,
                        finished_at=None,
                        failure_code=None,
                        error_summary=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    queue_name=queue_name,
                    job_id=payload.job_id,
                    event_type="requeued",
                    status_from=previous_status,
                    status_to=JobStatus.WAITING,
                    details={},
                )
                session.commit()
                return SubmitResult.REQUEUED

    def claim_next(
        self,
        *,
        queue_names: Sequence[QueueName],
        worker_id: str,
    ) -> JobView | None:
        """Atomically claim one job ready for execution."""

        names = [queue_name.value for queue_name in queue_names]
        while True:
            now = self._clock()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueJob)
                    .where(
                        col(QueueJob.queue_name).in_(names),
                        QueueJob.status == JobStatus.WAITING.value,
                        QueueJob.run_after <= to_db_datetime(now),
                    )
                    .order_by(
                        col(QueueJob.priority).asc(),
                        col(QueueJob.run_after).asc(),
                        col(QueueJob.id).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueueJob)
                    .where(
                        col(QueueJob.id) == candidate.id,
                        col(QueueJob.status) == JobStatus.WAITING.value,
                    )
                    .values(
                        status=JobStatus.ACTIVE.value,
                        attempt=candidate.attempt + 1,
                        worker_id=worker_id,
                        started_at=to_db_datetime(now),
                        heartbeat_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(select(QueueJob).where(QueueJob.id == candidate.id)).one()
                self._add_event(
                    session=session,
                    queue_name=claimed.queue_name,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=JobStatus.WAITING,
                    status_to=JobStatus.ACTIVE,
                    details={"worker_id": worker_id, "attempt": claimed.attempt},
                )
                session.commit()
                session.refresh(claimed)
                return _to_job_view(claimed)

    def touch(self, *, queue_name: QueueName, job_id: str, worker_id: str) -> bool:
        """Refresh the heartbeat of an active job; False once the claim is gone."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.queue_name) == queue_name.value,
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.status) == JobStatus.ACTIVE.value,
                    col(QueueJob.worker_id) == worker_id,
                )
                .values(heartbeat_at=now, updated_at=now),
            )
            session.commit()
            return result.rowcount == 1

    def complete(
        self,
        *,
        queue_name: QueueName,
        job_id: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Mark an active job as completed."""

        return self._finish_active(
            queue_name=queue_name,
            job_id=job_id,
            status=JobStatus.COMPLETED,
            event_type="completed",
            failure_code=None,
            error_summary=None,
            details=details or {},
        )

    def fail(
        self,
        *,
        queue_name: QueueName,
        job_id: str,
        failure_code: str,
        error_summary: str,
    ) -> bool:
        """Mark an active job as failed for good."""

        return self._finish_active(
            queue_name=queue_name,
            job_id=job_id,
            status=JobStatus.FAILED,
            event_type="failed",
            failure_code=failure_code,
            error_summary=error_summary,
            details={"failure_code": failure_code},
        )

    def dead_letter(
        self,
        *,
        queue_name: QueueName,
        job_id: str,
        failure_code: str,
        error_summary: str,
    ) -> bool:
        """Park an active job whose payload can never succeed."""

        return self._finish_active(
            queue_name=queue_name,
            job_id=job_id,
            status=JobStatus.DEAD_LETTER,
            event_type="dead_lettered",
            failure_code=failure_code,
            error_summary=error_summary,
            details={"failure_code": failure_code},
        )

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        queue_name: QueueName,
        job_id: str,
        run_after: datetime,
        failure_code: str,
        error_summary: str,
        consume_attempt: bool = True,
    ) -> bool:
        """Requeue an active job; a deferral (``consume_attempt=False``) refunds the attempt."""

        now = self._clock()
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueJob).where(
                    QueueJob.queue_name == queue_name.value,
                    QueueJob.job_id == job_id,
                    QueueJob.status == JobStatus.ACTIVE.value,
                ),
            ).one_or_none()
            if row is None:
                return False
            attempt = row.attempt if consume_attempt else max(0, row.attempt - 1)
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.id) == row.id,
                    col(QueueJob.status) == JobStatus.ACTIVE.value,
                )
                .values(
                    status=JobStatus.WAITING.value,
                    attempt=attempt,
                    run_after=to_db_datetime(run_after),
                    failure_code=failure_code,
                    error_summary=error_summary,
                    worker_id=None,
                    started_at=None,
                    heartbeat_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                queue_name=queue_name.value,
                job_id=job_id,
                event_type="retry_scheduled" if consume_attempt else "deferred",
                status_from=JobStatus.ACTIVE,
                status_to=JobStatus.WAITING,
                details={
                    "run_after": to_utc_aware(run_after).isoformat(),
                    "failure_code": failure_code,
                },
            )
            session.commit()
            return True

    def cancel_pending(self, *, queue_name: QueueName, job_ids: Iterable[str]) -> int:
        """Remove waiting/delayed jobs; active jobs are left to run to completion."""

        ids = list(job_ids)
        if not ids:
            return 0
        with Session(self.engine) as session:
            removable = session.exec(
                select(QueueJob.job_id).where(
                    QueueJob.queue_name == queue_name.value,
                    col(QueueJob.job_id).in_(ids),
                    QueueJob.status == JobStatus.WAITING.value,
                ),
            ).all()
            if not removable:
                return 0
            result = session.exec(
                sa_delete(QueueJob).where(
                    col(QueueJob.queue_name) == queue_name.value,
                    col(QueueJob.job_id).in_(removable),
                    col(QueueJob.status) == JobStatus.WAITING.value,
                ),
            )
            for job_id in removable:
                self._add_event(
                    session=session,
                    queue_name=queue_name.value,
                    job_id=job_id,
                    event_type="cancelled",
                    status_from=JobStatus.WAITING,
                    status_to=None,
                    details={},
                )
            session.commit()
            return int(result.rowcount or 0)

    def recover_stale_active(self, *, stale_after: timedelta) -> int:
        """Return jobs whose worker stopped heartbeating to the waiting state."""

        now = self._clock()
        cutoff = to_db_datetime(now - stale_after)
        with Session(self.engine) as session:
            stale = session.exec(
                select(QueueJob).where(
                    QueueJob.status == JobStatus.ACTIVE.value,
                    col(QueueJob.heartbeat_at) < cutoff,
                ),
            ).all()
            recovered = 0
            for row in stale:
                result = session.exec(
                    sa_update(QueueJob)
                    .where(
                        col(QueueJob.id) == row.id,
                        col(QueueJob.status) == JobStatus.ACTIVE.value,
                        col(QueueJob.heartbeat_at) == row.heartbeat_at,
                    )
                    .values(
                        status=JobStatus.WAITING.value,
                        run_after=to_db_datetime(now),
                        worker_id=None,
                        heartbeat_at=None,
                        failure_code="stale_worker",
                        error_summary=f"Recovered from stale worker {row.worker_id}",
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                recovered += 1
                self._add_event(
                    session=session,
                    queue_name=row.queue_name,
                    job_id=row.job_id,
                    event_type="stale_recovered",
                    status_from=JobStatus.ACTIVE,
                    status_to=JobStatus.WAITING,
                    details={"worker_id": row.worker_id},
                )
            session.commit()
        if recovered:
            logger.warning("Recovered %d stale active jobs", recovered)
        return recovered

    def is_pending(self, *, queue_name: QueueName, job_id: str) -> bool:
        """Whether a job with this id is waiting, delayed or active."""

        with Session(self.engine) as session:
            status = session.exec(
                select(QueueJob.status).where(
                    QueueJob.queue_name == queue_name.value,
                    QueueJob.job_id == job_id,
                ),
            ).one_or_none()
        return status is not None and JobStatus(status) in PENDING_STATUSES

    def depth(self, queue_name: QueueName) -> QueueDepth:
        now = to_db_datetime(self._clock())
        waiting = QueueJob.status == JobStatus.WAITING.value
        with Session(self.engine) as session:
            row = session.exec(
                select(
                    func.sum(case((waiting & (col(QueueJob.run_after) <= now), 1), else_=0)),
                    func.sum(case((waiting & (col(QueueJob.run_after) > now), 1), else_=0)),
                    func.sum(case((QueueJob.status == JobStatus.ACTIVE.value, 1), else_=0)),
                    func.sum(
                        case(
                            (
                                col(QueueJob.status).in_(
                                    [JobStatus.FAILED.value, JobStatus.DEAD_LETTER.value],
                                ),
                                1,
                            ),
                            else_=0,
                        ),
                    ),
                ).where(QueueJob.queue_name == queue_name.value),
            ).one()
        ready, delayed, active, failed = (int(value or 0) for value in row)
        return QueueDepth(waiting=ready, active=active, delayed=delayed, failed=failed)

    def get(self, *, queue_name: QueueName, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueJob).where(
                    QueueJob.queue_name == queue_name.value,
                    QueueJob.job_id == job_id,
                ),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        queue_name: QueueName | None = None,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        statement = select(QueueJob)
        if queue_name is not None:
            statement = statement.where(QueueJob.queue_name == queue_name.value)
        if status is not None:
            statement = statement.where(QueueJob.status == status.value)
        statement = statement.order_by(col(QueueJob.updated_at).desc()).limit(limit)
        with Session(self.engine) as session:
            return [_to_job_view(row) for row in session.exec(statement).all()]

    def _finish_active(  # noqa: PLR0913
        self,
        *,
        queue_name: QueueName,
        job_id: str,
        status: JobStatus,
        event_type: str,
        failure_code: str | None,
        error_summary: str | None,
        details: dict[str, object],
    ) -> bool:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.queue_name) == queue_name.value,
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.status) == JobStatus.ACTIVE.value,
                )
                .values(
                    status=status.value,
                    failure_code=failure_code,
                    error_summary=error_summary,
                    finished_at=now,
                    heartbeat_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                queue_name=queue_name.value,
                job_id=job_id,
                event_type=event_type,
                status_from=JobStatus.ACTIVE,
                status_to=status,
                details=details,
            )
            session.commit()
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        queue_name: str,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            QueueJobEvent(
                queue_name=queue_name,
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self._clock()),
            ),
        )


def _to_job_view(row: QueueJob) -> JobView:
    return JobView(
        queue_name=QueueName(row.queue_name),
        job_id=row.job_id,
        payload=json.loads(row.payload_json),
        status=JobStatus(row.status),
        priority=row.priority,
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        run_after=to_utc_aware(row.run_after),
        worker_id=row.worker_id,
        started_at=to_utc_aware_or_none(row.started_at),
        finished_at=to_utc_aware_or_none(row.finished_at),
        failure_code=row.failure_code,
        error_summary=row.error_summary,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
