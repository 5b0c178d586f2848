"""Catalog and chapter domain models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from chapter_radar.sources.base import SeriesSourceRef


class CatalogTier(str, Enum):
    """A and B are polled on a schedule; C is known but never polled."""

    A = "A"
    B = "B"
    C = "C"


class Heat(str, Enum):
    HOT = "HOT"
    WARM = "WARM"
    COLD = "COLD"


class SourceStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class ChapterEventType(str, Enum):
    NEW_CHAPTER = "new_chapter"
    SOURCE_ADDED = "source_added"
    AVAILABILITY_CHANGED = "availability_changed"


@dataclass(slots=True)
class SeriesView:
    id: int
    title: str
    catalog_tier: CatalogTier
    heat: Heat
    activity_score: float
    follower_count: int
    recent_reads: int
    last_chapter_at: datetime | None
    tier_changed_at: datetime | None
    deleted_at: datetime | None


@dataclass(slots=True)
class SeriesSourceView:
    id: int
    series_id: int
    source_name: str
    external_id: str
    source_url: str | None
    trust_score: float
    source_status: SourceStatus
    failure_count: int
    not_found_count: int
    last_error_code: str | None
    last_polled_at: datetime | None
    last_success_at: datetime | None
    next_check_at: datetime | None


@dataclass(slots=True)
class PollTarget:
    """Everything the poller needs to decide whether and how to poll one pair."""

    ref: SeriesSourceRef
    source_status: SourceStatus
    catalog_tier: CatalogTier
    series_deleted: bool
    failure_count: int
    not_found_count: int


@dataclass(slots=True, frozen=True)
class PollFailureCounters:
    failure_count: int
    not_found_count: int


@dataclass(slots=True)
class KnownChapterSource:
    """Stored state of one chapter on one source, keyed by normalized chapter key."""

    chapter_key: str
    chapter_url: str
    chapter_title: str | None
    source_chapter_id: str | None
    language: str | None
    scanlation_group: str | None
    is_available: bool


@dataclass(slots=True)
class ChapterListing:
    """Browse row: one logical chapter with one of its non-disabled sources."""

    logical_chapter_id: int
    chapter_number: str
    chapter_kind: str
    sort_value: float | None
    chapter_title: str | None
    source_name: str
    chapter_url: str
    is_available: bool
    trust_score: float
    first_seen_at: datetime
    detected_at: datetime


@dataclass(slots=True)
class UpsertedSeries:
    series_id: int
    series_source_id: int
    created: bool
