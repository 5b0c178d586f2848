"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine

from chapter_radar.chapters.repository import CatalogRepository
from chapter_radar.queue.repository import JobQueue
from chapter_radar.scheduling.tiers import EngagementSignal, TierClassifier
from chapter_radar.sources.base import ChapterReport, SeriesSourceRef
from chapter_radar.storage.database import Database


@dataclass
class FakeClock:
    """Mutable aware-UTC clock; components take it through their ``clock`` argument."""

    current: datetime = field(default_factory=lambda: datetime(2026, 3, 2, 12, 0, tzinfo=UTC))

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current += timedelta(**delta)
        return self.current


@dataclass
class FakeWallClock:
    """Float wall clock for the rate limiter; ``sleep`` advances time instead of blocking."""

    now: float = 1_000.0
    slept: float = 0.0

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds
        self.slept += seconds


@dataclass
class StubSourceClient:
    """Source client returning scripted results; an exception in the script is raised."""

    name: str
    kind: str = "html"
    script: list[list[ChapterReport] | Exception] = field(default_factory=list)
    fetched: list[SeriesSourceRef] = field(default_factory=list)
    on_fetch: Callable[[SeriesSourceRef], None] | None = None

    def fetch(self, ref: SeriesSourceRef) -> list[ChapterReport]:
        self.fetched.append(ref)
        if self.on_fetch is not None:
            self.on_fetch(ref)
        if not self.script:
            return []
        result = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(result, Exception):
            raise result
        return list(result)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "chapter_radar.db"


@pytest.fixture()
def database(db_path: Path) -> Iterator[Database]:
    db = Database(db_path)
    db.init_schema()
    yield db
    db.close()


@pytest.fixture()
def engine(database: Database) -> Engine:
    return database.engine


@pytest.fixture()
def catalog(engine: Engine, clock: FakeClock) -> CatalogRepository:
    return CatalogRepository(engine, clock=clock)


@pytest.fixture()
def job_queue(engine: Engine, clock: FakeClock) -> JobQueue:
    return JobQueue(engine, clock=clock)


@pytest.fixture()
def tiers(engine: Engine, clock: FakeClock) -> TierClassifier:
    return TierClassifier(engine, clock=clock)


@pytest.fixture()
def follow_series(tiers: TierClassifier) -> Callable[[int, int], None]:
    """Push a series into tier B (1 follower) or tier A (10 followers) with real signals."""

    def _follow(series_id: int, followers: int) -> None:
        tiers.record_signal(series_id, EngagementSignal.SERIES_FOLLOWED, count=followers)

    return _follow


@pytest.fixture()
def stub_source() -> Callable[..., StubSourceClient]:
    def _make(name: str = "stubsource", **kwargs: object) -> StubSourceClient:
        return StubSourceClient(name=name, **kwargs)  # type: ignore[arg-type]

    return _make


def report(number: str | None, url: str | None = None, **extra: object) -> ChapterReport:
    return ChapterReport(
        chapter_number=number,
        url=url or f"https://example.test/ch/{number or 'oneshot'}",
        **extra,  # type: ignore[arg-type]
    )


@pytest.fixture()
def make_report() -> Callable[..., ChapterReport]:
    return report
