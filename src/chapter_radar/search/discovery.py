"""Discovery job consumer: search a source catalog and register what it finds."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from chapter_radar.chapters.repository import CatalogRepository
from chapter_radar.queue.payloads import DiscoveryJobPayload
from chapter_radar.scheduling.tiers import EngagementSignal, TierClassifier
from chapter_radar.search.gate import SearchIntentGate
from chapter_radar.sources.base import SourceError, SourceValidationError
from chapter_radar.sources.circuit_breaker import CircuitBreaker, is_breaker_failure
from chapter_radar.sources.rate_limiter import SourceRateLimiter
from chapter_radar.sources.registry import SourceRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DiscoveryOutcome:
    normalized_query: str
    results: int = 0
    created: int = 0
    resolved: bool = False


class DiscoveryService:
    """Runs one discovery job. Source errors propagate for the worker to classify."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        catalog: CatalogRepository,
        gate: SearchIntentGate,
        tiers: TierClassifier,
        registry: SourceRegistry,
        rate_limiter: SourceRateLimiter,
        breaker: CircuitBreaker,
        result_limit: int = 10,
    ) -> None:
        self.catalog = catalog
        self.gate = gate
        self.tiers = tiers
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.breaker = breaker
        self.result_limit = result_limit

    def run(self, payload: DiscoveryJobPayload) -> DiscoveryOutcome:
        outcome = DiscoveryOutcome(normalized_query=payload.normalized_query)
        client = self.registry.search_client()
        if client is None:
            raise SourceValidationError(
                message="No registered source supports catalog search",
                code="no_search_source",
            )

        self.breaker.check(client.name)
        self.rate_limiter.acquire(client.name)
        try:
            found = client.search_series(payload.normalized_query, limit=self.result_limit)
        except SourceError as error:
            if is_breaker_failure(error):
                self.breaker.record_failure(client.name)
            raise
        self.breaker.record_success(client.name)

        for item in found:
            upserted = self.catalog.upsert_discovered_series(item)
            outcome.results += 1
            if upserted.created:
                outcome.created += 1
            self.tiers.record_signal(upserted.series_id, EngagementSignal.SEARCH_IMPRESSION)

        if found:
            outcome.resolved = self.gate.mark_resolved(payload.normalized_query)
        logger.info(
            "Discovery for %r via %s: %d results, %d new series",
            payload.normalized_query,
            client.name,
            outcome.results,
            outcome.created,
        )
        return outcome
