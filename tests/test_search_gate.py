from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import allure
import pytest
from sqlalchemy.engine import Engine

from chapter_radar.chapters.models import CatalogTier
from chapter_radar.chapters.repository import CatalogRepository
from chapter_radar.config import BackpressureSettings, RateLimitSettings, SearchSettings
from chapter_radar.queue.models import JobSubmit, QueueName
from chapter_radar.queue.payloads import DiscoveryJobPayload
from chapter_radar.queue.repository import JobQueue
from chapter_radar.scheduling.backpressure import BackpressureGuard
from chapter_radar.scheduling.tiers import TierClassifier
from chapter_radar.search.discovery import DiscoveryService
from chapter_radar.search.gate import SearchIntentGate, normalize_search_query
from chapter_radar.sources.base import DiscoveredSeries, TransientNetworkError
from chapter_radar.sources.circuit_breaker import BreakerState, CircuitBreaker
from chapter_radar.sources.rate_limiter import SourceRateLimiter
from chapter_radar.sources.registry import SourceRegistry

pytestmark = [
    allure.epic("Search"),
    allure.feature("Search Intent Gate"),
]


def _gate(
    engine: Engine,
    job_queue: JobQueue,
    clock,
    *,
    backpressure: BackpressureSettings | None = None,
) -> SearchIntentGate:
    return SearchIntentGate(
        engine,
        job_queue,
        BackpressureGuard(engine, job_queue, backpressure),
        SearchSettings(cooldown_seconds=30, min_total_searches=2, min_unique_users=2),
        clock=clock,
    )


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("  Solo   Leveling ", "solo leveling"),
        ("Pokémon Adventures!", "pokemon adventures"),
        ("Re:Zero", "rezero"),
        ("???", ""),
    ],
)
def test_normalize_search_query(raw: str, expected: str) -> None:
    assert normalize_search_query(raw) == expected


def test_one_off_search_does_not_trigger_discovery(
    engine: Engine,
    job_queue: JobQueue,
    clock,
) -> None:
    gate = _gate(engine, job_queue, clock)

    decision = gate.record_search("Kagurabachi", user_key="u1")

    assert not decision.enqueued
    assert decision.reason == "below_threshold"
    assert job_queue.list_jobs(queue_name=QueueName.DISCOVERY) == []


def test_repeated_search_enqueues_one_discovery_job(
    engine: Engine,
    job_queue: JobQueue,
    clock,
) -> None:
    gate = _gate(engine, job_queue, clock)
    gate.record_search("Kagurabachi", user_key="u1")

    decision = gate.record_search("kagurabachi ", user_key="u2")

    assert decision.enqueued
    job = job_queue.get(queue_name=QueueName.DISCOVERY, job_id="kagurabachi")
    assert job is not None
    assert DiscoveryJobPayload.from_payload(job.payload).trigger == "user_search"
    stats = gate.get_stats("kagurabachi")
    assert stats is not None
    assert stats.total_searches == 2
    assert stats.unique_users == 2


def test_concurrent_searches_enqueue_at_most_one_job(
    engine: Engine,
    job_queue: JobQueue,
    clock,
) -> None:
    gate = _gate(engine, job_queue, clock)
    gate.record_search("Dandadan", user_key="seed")

    with ThreadPoolExecutor(max_workers=8) as pool:
        decisions = list(
            pool.map(
                lambda n: gate.record_search("Dandadan", user_key=f"user-{n}"),
                range(16),
            ),
        )

    assert sum(1 for decision in decisions if decision.enqueued) == 1
    assert len(job_queue.list_jobs(queue_name=QueueName.DISCOVERY)) == 1
    stats = gate.get_stats("dandadan")
    assert stats is not None and stats.total_searches == 17


def test_active_job_and_cooldown_suppress_duplicates(
    engine: Engine,
    job_queue: JobQueue,
    clock,
) -> None:
    gate = _gate(engine, job_queue, clock)
    gate.record_search("Sakamoto Days")
    assert gate.record_search("Sakamoto Days").enqueued

    assert gate.record_search("Sakamoto Days").reason == "cooldown"

    clock.advance(seconds=31)
    assert gate.record_search("Sakamoto Days").reason == "active_job"

    job = job_queue.claim_next(queue_names=[QueueName.DISCOVERY], worker_id="w")
    assert job is not None
    job_queue.complete(queue_name=QueueName.DISCOVERY, job_id=job.job_id)
    assert gate.record_search("Sakamoto Days").enqueued


def test_resolved_query_never_enqueues_again(
    engine: Engine,
    job_queue: JobQueue,
    clock,
) -> None:
    gate = _gate(engine, job_queue, clock)
    gate.record_search("Chainsaw Man")
    gate.record_search("Chainsaw Man")

    assert gate.mark_resolved("chainsaw man")
    clock.advance(hours=1)

    assert gate.record_search("Chainsaw Man").reason == "resolved"


def test_unhealthy_discovery_queue_defers_until_retried(
    engine: Engine,
    job_queue: JobQueue,
    clock,
) -> None:
    gate = _gate(
        engine,
        job_queue,
        clock,
        backpressure=BackpressureSettings(discovery_healthy_waiting=1),
    )
    for key in ("backlog one", "backlog two"):
        job_queue.submit(JobSubmit(queue_name=QueueName.DISCOVERY, job_id=key, payload={}))
    gate.record_search("Frieren")

    decision = gate.record_search("Frieren")

    assert decision.reason == "queue_unhealthy"
    stats = gate.get_stats("frieren")
    assert stats is not None and stats.deferred
    assert gate.retry_deferred() == [decision]

    job_queue.cancel_pending(queue_name=QueueName.DISCOVERY, job_ids=["backlog one"])
    [retried] = gate.retry_deferred()

    assert retried.enqueued
    job = job_queue.get(queue_name=QueueName.DISCOVERY, job_id="frieren")
    assert job is not None
    assert job.payload["trigger"] == "deferred_retry"
    stats = gate.get_stats("frieren")
    assert stats is not None and not stats.deferred
    assert gate.retry_deferred() == []


def test_empty_query_is_ignored(engine: Engine, job_queue: JobQueue, clock) -> None:
    decision = _gate(engine, job_queue, clock).record_search("!!!")

    assert decision.reason == "empty_query"
    assert decision.normalized_key == ""


@dataclass
class StubSearchClient:
    name: str = "mangadex"
    kind: str = "api"
    results: list[DiscoveredSeries] = field(default_factory=list)
    error: Exception | None = None

    def fetch(self, ref: object) -> list:
        return []

    def search_series(self, query: str, *, limit: int) -> list[DiscoveredSeries]:
        if self.error is not None:
            raise self.error
        return self.results[:limit]


@pytest.fixture()
def discovery_setup(
    engine: Engine,
    job_queue: JobQueue,
    catalog: CatalogRepository,
    tiers: TierClassifier,
    clock,
    wall_clock,
) -> tuple[SearchIntentGate, StubSearchClient, DiscoveryService, CircuitBreaker]:
    gate = _gate(engine, job_queue, clock)
    client = StubSearchClient()
    breaker = CircuitBreaker(engine, failure_threshold=2, clock=clock)
    service = DiscoveryService(
        catalog=catalog,
        gate=gate,
        tiers=tiers,
        registry=SourceRegistry([client]),
        rate_limiter=SourceRateLimiter(
            engine,
            RateLimitSettings(),
            clock=wall_clock.time,
            sleep=wall_clock.sleep,
        ),
        breaker=breaker,
    )
    return gate, client, service, breaker


def test_discovery_registers_tier_c_series_and_resolves_query(
    discovery_setup: tuple[SearchIntentGate, StubSearchClient, DiscoveryService, CircuitBreaker],
    catalog: CatalogRepository,
) -> None:
    gate, client, service, _ = discovery_setup
    client.results = [
        DiscoveredSeries(source_name="mangadex", external_id="abc-1", title="Frieren"),
        DiscoveredSeries(source_name="mangadex", external_id="abc-2", title="Frieren Extra"),
    ]
    gate.record_search("Frieren")
    gate.record_search("Frieren")

    outcome = service.run(DiscoveryJobPayload(normalized_query="frieren"))
    repeat = service.run(DiscoveryJobPayload(normalized_query="frieren"))

    assert (outcome.results, outcome.created, outcome.resolved) == (2, 2, True)
    assert repeat.created == 0
    series = catalog.list_series()
    assert [item.title for item in series] == ["Frieren", "Frieren Extra"]
    assert {item.catalog_tier for item in series} == {CatalogTier.C}
    assert gate.record_search("Frieren").reason == "resolved"


def test_discovery_without_results_leaves_query_open(
    discovery_setup: tuple[SearchIntentGate, StubSearchClient, DiscoveryService, CircuitBreaker],
) -> None:
    gate, _, service, _ = discovery_setup
    gate.record_search("Unknown Title")

    outcome = service.run(DiscoveryJobPayload(normalized_query="unknown title"))

    assert not outcome.resolved
    stats = gate.get_stats("unknown title")
    assert stats is not None and not stats.resolved


def test_discovery_source_errors_propagate_and_count_for_the_breaker(
    discovery_setup: tuple[SearchIntentGate, StubSearchClient, DiscoveryService, CircuitBreaker],
) -> None:
    _, client, service, breaker = discovery_setup
    client.error = TransientNetworkError(message="timeout")

    for _ in range(2):
        with pytest.raises(TransientNetworkError):
            service.run(DiscoveryJobPayload(normalized_query="anything"))

    assert breaker.state("mangadex") is BreakerState.OPEN

