from __future__ import annotations

from datetime import timedelta

import allure
import pytest
from sqlalchemy.engine import Engine

from chapter_radar.sources.base import (
    CircuitBreakerOpenError,
    DnsError,
    NotFoundError,
    ProxyBlockedError,
    RateLimitedError,
    SourceValidationError,
    TransientNetworkError,
)
from chapter_radar.sources.circuit_breaker import BreakerState, CircuitBreaker, is_breaker_failure

pytestmark = [
    allure.epic("Sources"),
    allure.feature("Circuit Breaker"),
]


def _breaker(engine: Engine, clock) -> CircuitBreaker:
    return CircuitBreaker(
        engine,
        failure_threshold=3,
        cooldown=timedelta(seconds=60),
        clock=clock,
    )


def test_opens_after_consecutive_failures_and_short_circuits(engine: Engine, clock) -> None:
    breaker = _breaker(engine, clock)

    assert breaker.record_failure("bato") is BreakerState.CLOSED
    assert breaker.record_failure("bato") is BreakerState.CLOSED
    assert breaker.record_failure("bato") is BreakerState.OPEN

    with pytest.raises(CircuitBreakerOpenError) as error_info:
        breaker.check("bato")
    assert error_info.value.retry_after == 60
    breaker.check("mangadex")


def test_success_resets_the_failure_streak(engine: Engine, clock) -> None:
    breaker = _breaker(engine, clock)
    breaker.record_failure("bato")
    breaker.record_failure("bato")

    breaker.record_success("bato")

    assert breaker.record_failure("bato") is BreakerState.CLOSED


def test_half_open_admits_one_probe_then_closes_on_success(engine: Engine, clock) -> None:
    breaker = _breaker(engine, clock)
    for _ in range(3):
        breaker.record_failure("bato")

    clock.advance(seconds=61)
    breaker.check("bato")
    assert breaker.state("bato") is BreakerState.HALF_OPEN
    with pytest.raises(CircuitBreakerOpenError):
        breaker.check("bato")

    breaker.record_success("bato")
    assert breaker.state("bato") is BreakerState.CLOSED
    breaker.check("bato")


def test_failed_probe_reopens_for_another_cooldown(engine: Engine, clock) -> None:
    breaker = _breaker(engine, clock)
    for _ in range(3):
        breaker.record_failure("bato")
    clock.advance(seconds=61)
    breaker.check("bato")

    assert breaker.record_failure("bato") is BreakerState.OPEN
    clock.advance(seconds=30)
    with pytest.raises(CircuitBreakerOpenError):
        breaker.check("bato")


@pytest.mark.parametrize(
    ("error", "counts"),
    [
        (TransientNetworkError(message="timeout"), True),
        (ProxyBlockedError(message="403"), True),
        (DnsError(message="nxdomain"), False),
        (RateLimitedError(message="429", retry_after=10), False),
        (NotFoundError(message="404"), False),
        (SourceValidationError(message="bad id"), False),
    ],
)
def test_only_source_health_failures_count(error: Exception, counts: bool) -> None:
    assert is_breaker_failure(error) is counts
