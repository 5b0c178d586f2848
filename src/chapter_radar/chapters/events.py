"""At-least-once delivery of the chapter event outbox to an external sink."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from chapter_radar.http.client import SourceHttpClient
from chapter_radar.storage.common import to_db_datetime, to_utc_aware, utc_now
from chapter_radar.storage.sqlmodel_models import ChapterEvent

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 500


@dataclass(slots=True, frozen=True)
class OutboundChapterEvent:
    id: int
    event_key: str
    event_type: str
    series_id: int
    logical_chapter_id: int
    payload: dict[str, object]
    created_at: datetime


@dataclass(slots=True)
class PublishSummary:
    delivered: int = 0
    failed: int = 0


class ChapterEventSink(Protocol):
    """Downstream fan-out target (notifications, feeds, webhooks)."""

    def deliver(self, event: OutboundChapterEvent) -> None:
        """Deliver one event; raising leaves it pending for the next publish pass."""
        raise NotImplementedError


class LoggingEventSink:
    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def deliver(self, event: OutboundChapterEvent) -> None:
        self._log.info(
            "Chapter event %s: series=%s chapter=%s url=%s",
            event.event_type,
            event.payload.get("series_title") or event.series_id,
            event.payload.get("chapter_number"),
            event.payload.get("chapter_url"),
        )


class WebhookEventSink:
    """POSTs each event as JSON; any non-2xx answer counts as a failed delivery."""

    def __init__(self, http: SourceHttpClient, url: str) -> None:
        self.http = http
        self.url = url

    def deliver(self, event: OutboundChapterEvent) -> None:
        self.http.post_json(
            self.url,
            {
                "eventKey": event.event_key,
                "eventType": event.event_type,
                "createdAt": event.created_at.isoformat(),
                **event.payload,
            },
        )


class ChapterEventPublisher:
    """Drains undelivered outbox rows in id order.

    A row is marked delivered only after the sink returns, so a crash between
    delivery and bookkeeping re-delivers rather than drops.
    """

    def __init__(
        self,
        engine: Engine,
        sink: ChapterEventSink,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.sink = sink
        self._clock = clock

    def pending_count(self) -> int:
        with Session(self.engine) as session:
            count = session.exec(
                select(func.count())
                .select_from(ChapterEvent)
                .where(col(ChapterEvent.delivered_at).is_(None)),
            ).one()
        return int(count or 0)

    def list_pending(self, *, limit: int) -> list[OutboundChapterEvent]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ChapterEvent)
                .where(col(ChapterEvent.delivered_at).is_(None))
                .order_by(col(ChapterEvent.id))
                .limit(limit),
            ).all()
            return [_to_outbound(row) for row in rows]

    def publish_pending(self, *, limit: int = 200) -> PublishSummary:
        summary = PublishSummary()
        for event in self.list_pending(limit=limit):
            try:
                self.sink.deliver(event)
            except Exception as error:  # noqa: BLE001
                summary.failed += 1
                self._record_failure(event.id, str(error))
                logger.warning("Delivery of chapter event %s failed: %s", event.event_key, error)
                continue
            self._mark_delivered(event.id)
            summary.delivered += 1
        return summary

    def _mark_delivered(self, event_id: int) -> None:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            session.exec(
                sa_update(ChapterEvent)
                .where(col(ChapterEvent.id) == event_id, col(ChapterEvent.delivered_at).is_(None))
                .values(
                    delivered_at=now,
                    delivery_attempts=ChapterEvent.delivery_attempts + 1,
                    last_error=None,
                ),
            )
            session.commit()

    def _record_failure(self, event_id: int, message: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(ChapterEvent)
                .where(col(ChapterEvent.id) == event_id)
                .values(
                    delivery_attempts=ChapterEvent.delivery_attempts + 1,
                    last_error=message[:MAX_ERROR_CHARS],
                ),
            )
            session.commit()


def _to_outbound(row: ChapterEvent) -> OutboundChapterEvent:
    return OutboundChapterEvent(
        id=int(row.id or 0),
        event_key=row.event_key,
        event_type=row.event_type,
        series_id=row.series_id,
        logical_chapter_id=row.logical_chapter_id,
        payload=json.loads(row.payload_json),
        created_at=to_utc_aware(row.created_at),
    )
