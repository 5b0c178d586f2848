"""SQLModel ORM tables for catalog, chapter, queue, and coordination storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel


class Series(SQLModel, table=True):
    __tablename__ = "series"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_series_tier_heat", "catalog_tier", "heat"),)

    id: int | None = Field(default=None, primary_key=True)
    title: str = Field(index=True)
    catalog_tier: str = Field(default="C", index=True)
    heat: str = Field(default="COLD")
    activity_score: float = 0.0
    follower_count: int = 0
    recent_reads: int = 0
    search_heat: int = 0
    last_activity_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_chapter_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    score_decayed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    tier_changed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    tier_reason: str | None = None
    deleted_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True, index=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SeriesSource(SQLModel, table=True):
    __tablename__ = "series_sources"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("series_id", "source_name", name="uq_series_sources_series_source"),
        UniqueConstraint("source_name", "external_id", name="uq_series_sources_source_external"),
        Index("ix_series_sources_due", "source_status", "next_check_at", "last_polled_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    series_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("series.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    source_name: str = Field(index=True)
    external_id: str = Field(sa_column=Column(Text, nullable=False))
    source_url: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    trust_score: float = 0.5
    source_status: str = Field(default="active", index=True)
    failure_count: int = 0
    not_found_count: int = 0
    last_error_code: str | None = None
    last_error: str | None = None
    last_polled_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_success_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    next_check_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    disabled_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LogicalChapter(SQLModel, table=True):
    __tablename__ = "logical_chapters"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "series_id",
            "chapter_number",
            name="uq_logical_chapters_series_number",
        ),
        Index("ix_logical_chapters_first_seen", "first_seen_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    series_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("series.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    chapter_number: str
    chapter_kind: str = "numeric"
    sort_value: float | None = None
    title: str | None = None
    published_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    first_seen_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ChapterSource(SQLModel, table=True):
    __tablename__ = "chapter_sources"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "logical_chapter_id",
            "series_source_id",
            name="uq_chapter_sources_chapter_source",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    logical_chapter_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("logical_chapters.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    series_source_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("series_sources.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    source_chapter_id: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    chapter_url: str = Field(sa_column=Column(Text, nullable=False))
    chapter_title: str | None = None
    language: str | None = None
    scanlation_group: str | None = None
    is_available: bool = True
    source_published_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    detected_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_seen_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ChapterEvent(SQLModel, table=True):
    __tablename__ = "chapter_events"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_chapter_events_pending", "delivered_at", "id"),)

    id: int | None = Field(default=None, primary_key=True)
    event_key: str = Field(sa_column=Column(Text, nullable=False, unique=True))
    event_type: str = Field(index=True)
    series_id: int = Field(index=True)
    logical_chapter_id: int = Field(index=True)
    chapter_source_id: int | None = None
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    delivery_attempts: int = 0
    last_error: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    delivered_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class QueryStat(SQLModel, table=True):
    __tablename__ = "query_stats"  # type: ignore[bad-override]

    normalized_key: str = Field(primary_key=True)
    total_searches: int = 0
    unique_users: int = 0
    resolved: bool = False
    deferred: bool = Field(default=False, index=True)
    last_searched_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    last_enqueued_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueryStatUser(SQLModel, table=True):
    __tablename__ = "query_stat_users"  # type: ignore[bad-override]
    __table_args__ = (PrimaryKeyConstraint("normalized_key", "user_key"),)

    normalized_key: str = Field(
        sa_column=Column(
            Text,
            ForeignKey("query_stats.normalized_key", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    user_key: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueJob(SQLModel, table=True):
    __tablename__ = "queue_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("queue_name", "job_id", name="uq_queue_jobs_queue_job"),
        Index("ix_queue_jobs_claim", "queue_name", "status", "run_after", "priority"),
    )

    id: int | None = Field(default=None, primary_key=True)
    queue_name: str
    job_id: str = Field(sa_column=Column(Text, nullable=False))
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    priority: int = 100
    attempt: int = 0
    max_attempts: int = 3
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    worker_id: str | None = None
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    failure_code: str | None = None
    error_summary: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueJobEvent(SQLModel, table=True):
    __tablename__ = "queue_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_queue_job_events_job", "queue_name", "job_id"),)

    id: int | None = Field(default=None, primary_key=True)
    queue_name: str
    job_id: str = Field(sa_column=Column(Text, nullable=False))
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RateLimitBucket(SQLModel, table=True):
    __tablename__ = "rate_limit_buckets"  # type: ignore[bad-override]

    source_name: str = Field(primary_key=True)
    tokens: float
    refilled_at: float
    next_allowed_at: float = 0.0
    version: int = 0


class CircuitBreakerState(SQLModel, table=True):
    __tablename__ = "circuit_breakers"  # type: ignore[bad-override]

    source_name: str = Field(primary_key=True)
    state: str = "closed"
    failure_count: int = 0
    opened_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_failure_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Lease(SQLModel, table=True):
    __tablename__ = "leases"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    holder: str
    acquired_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
