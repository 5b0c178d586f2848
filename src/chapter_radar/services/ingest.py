"""Ingest job consumer: hand one chapter report to the reconciler."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from chapter_radar.chapters.reconciler import ChapterReconciler, ReconcileResult
from chapter_radar.queue.payloads import IngestJobPayload
from chapter_radar.scheduling.backpressure import BackpressureGuard

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class IngestOutcome:
    result: ReconcileResult | None = None
    deferred: bool = False
    defer_seconds: int = 0
    reason: str | None = None


class IngestService:
    def __init__(
        self,
        *,
        reconciler: ChapterReconciler,
        guard: BackpressureGuard,
        deferral_seconds: int = 60,
    ) -> None:
        self.reconciler = reconciler
        self.guard = guard
        self.deferral_seconds = deferral_seconds

    def process(self, payload: IngestJobPayload) -> IngestOutcome:
        decision = self.guard.check_ingest_processing()
        if not decision.allowed:
            logger.warning(
                "Deferring ingest for series source %d: %s (%d pending)",
                payload.series_source_id,
                decision.reason,
                decision.depth,
            )
            return IngestOutcome(
                deferred=True,
                defer_seconds=self.deferral_seconds,
                reason=decision.reason,
            )
        result = self.reconciler.reconcile(payload)
        logger.debug(
            "Ingested chapter %r for series source %d: %s",
            payload.chapter_number,
            payload.series_source_id,
            result.action.value,
        )
        return IngestOutcome(result=result)
