"""Queue-depth gates; every refusal means "try again next cycle", nothing is dropped."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from chapter_radar.config import BackpressureSettings
from chapter_radar.queue.models import QueueDepth, QueueName
from chapter_radar.queue.repository import JobQueue
from chapter_radar.storage.sqlmodel_models import ChapterEvent

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class BackpressureDecision:
    allowed: bool
    reason: str | None = None
    depth: int = 0


class BackpressureGuard:
    def __init__(
        self,
        engine: Engine,
        queue: JobQueue,
        settings: BackpressureSettings | None = None,
    ) -> None:
        self.engine = engine
        self.queue = queue
        self.settings = settings or BackpressureSettings()

    def queue_depth(self, name: QueueName) -> QueueDepth:
        return self.queue.depth(name)

    def outbox_pending(self) -> int:
        with Session(self.engine) as session:
            count = session.exec(
                select(func.count())
                .select_from(ChapterEvent)
                .where(col(ChapterEvent.delivered_at).is_(None)),
            ).one()
        return int(count or 0)

    def check_scheduler(self) -> BackpressureDecision:
        """Refuse a scheduler tick while the poll or ingest backlog is critical."""

        poll_waiting = self.queue_depth(QueueName.POLL).waiting
        if poll_waiting > self.settings.poll_critical_waiting:
            return BackpressureDecision(
                allowed=False,
                reason="poll_queue_critical",
                depth=poll_waiting,
            )
        ingest_waiting = self.queue_depth(QueueName.INGEST).waiting
        if ingest_waiting > self.settings.ingest_critical_waiting:
            return BackpressureDecision(
                allowed=False,
                reason="ingest_queue_critical",
                depth=ingest_waiting,
            )
        return BackpressureDecision(allowed=True, depth=poll_waiting)

    def check_ingest_forwarding(self) -> BackpressureDecision:
        waiting = self.queue_depth(QueueName.INGEST).waiting
        if waiting > self.settings.ingest_critical_waiting:
            return BackpressureDecision(
                allowed=False,
                reason="ingest_queue_critical",
                depth=waiting,
            )
        return BackpressureDecision(allowed=True, depth=waiting)

    def check_ingest_processing(self) -> BackpressureDecision:
        """Ingest consumers pause while the notification outbox is saturated."""

        pending = self.outbox_pending()
        if pending > self.settings.outbox_critical_pending:
            return BackpressureDecision(
                allowed=False,
                reason="notification_outbox_critical",
                depth=pending,
            )
        return BackpressureDecision(allowed=True, depth=pending)

    def check_discovery(self) -> BackpressureDecision:
        waiting = self.queue_depth(QueueName.DISCOVERY).waiting
        if waiting > self.settings.discovery_healthy_waiting:
            return BackpressureDecision(allowed=False, reason="queue_unhealthy", depth=waiting)
        return BackpressureDecision(allowed=True, depth=waiting)
