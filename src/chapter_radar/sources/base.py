"""Common source client contracts and the source failure taxonomy."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable


@dataclass(slots=True)
class SourceError(Exception):
    """Base source fetch error."""

    message: str
    code: str = "source_error"

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class RateLimitedError(SourceError):
    """Source answered 429; ``retry_after`` is its hint in seconds."""

    code: str = "rate_limited"
    retry_after: int | None = None


@dataclass(slots=True)
class ProxyBlockedError(SourceError):
    """Source refuses our egress (401/403, challenge pages)."""

    code: str = "proxy_blocked"


@dataclass(slots=True)
class DnsError(SourceError):
    code: str = "dns_error"


@dataclass(slots=True)
class NotFoundError(SourceError):
    """The series entity is gone from the source."""

    code: str = "not_found"


@dataclass(slots=True)
class TransientNetworkError(SourceError):
    code: str = "transient_network"


@dataclass(slots=True)
class CircuitBreakerOpenError(SourceError):
    """Source failed repeatedly; short-circuited without a network call."""

    code: str = "circuit_open"
    retry_after: int | None = None


@dataclass(slots=True)
class SourceValidationError(SourceError):
    """Unusable external id or unparseable source response."""

    code: str = "source_validation"


@dataclass(slots=True)
class RateLimitTimeout(Exception):
    """No rate-limit token within the bounded wait. Not a source failure."""

    source_name: str
    waited_seconds: float

    def __str__(self) -> str:
        return (
            f"Rate limit token for {self.source_name} not granted "
            f"within {self.waited_seconds:.1f}s"
        )


@dataclass(slots=True, frozen=True)
class SeriesSourceRef:
    """What a client needs to locate one series on one source."""

    series_source_id: int
    series_id: int
    source_name: str
    external_id: str
    source_url: str | None = None


@dataclass(slots=True)
class ChapterReport:
    """Source-agnostic chapter report produced by every client."""

    chapter_number: str | None
    url: str
    title: str | None = None
    source_chapter_id: str | None = None
    published_at: datetime | None = None
    language: str | None = None
    scanlation_group: str | None = None


@dataclass(slots=True)
class DiscoveredSeries:
    """Search hit returned by a discovery-capable source."""

    source_name: str
    external_id: str
    title: str
    url: str | None = None
    follower_count: int | None = None


class SourceClient(Protocol):
    """Interface for chapter sources."""

    name: str
    kind: str

    def fetch(self, ref: SeriesSourceRef) -> list[ChapterReport]:
        """Fetch the current chapter list for one series on this source."""
        raise NotImplementedError


@runtime_checkable
class SeriesSearchClient(Protocol):
    """Optional capability for sources that can search their catalog by title."""

    name: str

    def search_series(self, query: str, *, limit: int) -> list[DiscoveredSeries]:
        """Return catalog entries matching a normalized query."""
        raise NotImplementedError
