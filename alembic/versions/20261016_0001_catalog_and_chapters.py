"""Catalog, logical chapter, chapter source, and chapter event outbox tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "series",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("catalog_tier", sa.String(), nullable=False, server_default="C"),
        sa.Column("heat", sa.String(), nullable=False, server_default="COLD"),
        sa.Column("activity_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("follower_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("recent_reads", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("search_heat", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_chapter_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("score_decayed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tier_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tier_reason", sa.String(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("catalog_tier IN ('A', 'B', 'C')", name="ck_series_catalog_tier"),
        sa.CheckConstraint("heat IN ('HOT', 'WARM', 'COLD')", name="ck_series_heat"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_series_title", "series", ["title"])
    op.create_index("ix_series_catalog_tier", "series", ["catalog_tier"])
    op.create_index("ix_series_tier_heat", "series", ["catalog_tier", "heat"])
    op.create_index("ix_series_deleted_at", "series", ["deleted_at"])

    op.create_table(
        "series_sources",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("series_id", sa.Integer(), nullable=False),
        sa.Column("source_name", sa.String(), nullable=False),
        sa.Column("external_id", sa.Text(), nullable=False),
        sa.Column("source_url", sa.Text(), nullable=True),
        sa.Column("trust_score", sa.Float(), nullable=False, server_default="0.5"),
        sa.Column("source_status", sa.String(), nullable=False, server_default="active"),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("not_found_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error_code", sa.String(), nullable=True),
        sa.Column("last_error", sa.String(), nullable=True),
        sa.Column("last_polled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_check_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disabled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "trust_score >= 0 AND trust_score <= 1",
            name="ck_series_sources_trust_score",
        ),
        sa.CheckConstraint(
            "source_status IN ('active', 'disabled')",
            name="ck_series_sources_status",
        ),
        sa.ForeignKeyConstraint(["series_id"], ["series.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("series_id", "source_name", name="uq_series_sources_series_source"),
        sa.UniqueConstraint(
            "source_name",
            "external_id",
            name="uq_series_sources_source_external",
        ),
    )
    op.create_index("ix_series_sources_series_id", "series_sources", ["series_id"])
    op.create_index("ix_series_sources_source_name", "series_sources", ["source_name"])
    op.create_index("ix_series_sources_source_status", "series_sources", ["source_status"])
    op.create_index(
        "ix_series_sources_due",
        "series_sources",
        ["source_status", "next_check_at", "last_polled_at"],
    )

    op.create_table(
        "logical_chapters",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("series_id", sa.Integer(), nullable=False),
        sa.Column("chapter_number", sa.String(), nullable=False),
        sa.Column("chapter_kind", sa.String(), nullable=False, server_default="numeric"),
        sa.Column("sort_value", sa.Float(), nullable=True),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["series_id"], ["series.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "series_id",
            "chapter_number",
            name="uq_logical_chapters_series_number",
        ),
    )
    op.create_index("ix_logical_chapters_series_id", "logical_chapters", ["series_id"])
    op.create_index("ix_logical_chapters_first_seen", "logical_chapters", ["first_seen_at"])

    op.create_table(
        "chapter_sources",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("logical_chapter_id", sa.Integer(), nullable=False),
        sa.Column("series_source_id", sa.Integer(), nullable=False),
        sa.Column("source_chapter_id", sa.Text(), nullable=True),
        sa.Column("chapter_url", sa.Text(), nullable=False),
        sa.Column("chapter_title", sa.String(), nullable=True),
        sa.Column("language", sa.String(), nullable=True),
        sa.Column("scanlation_group", sa.String(), nullable=True),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("source_published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["logical_chapter_id"],
            ["logical_chapters.id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["series_source_id"],
            ["series_sources.id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "logical_chapter_id",
            "series_source_id",
            name="uq_chapter_sources_chapter_source",
        ),
    )
    op.create_index(
        "ix_chapter_sources_logical_chapter_id",
        "chapter_sources",
        ["logical_chapter_id"],
    )
    op.create_index(
        "ix_chapter_sources_series_source_id",
        "chapter_sources",
        ["series_source_id"],
    )

    op.create_table(
        "chapter_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_key", sa.Text(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("series_id", sa.Integer(), nullable=False),
        sa.Column("logical_chapter_id", sa.Integer(), nullable=False),
        sa.Column("chapter_source_id", sa.Integer(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("delivery_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_key"),
    )
    op.create_index("ix_chapter_events_event_type", "chapter_events", ["event_type"])
    op.create_index("ix_chapter_events_series_id", "chapter_events", ["series_id"])
    op.create_index(
        "ix_chapter_events_logical_chapter_id",
        "chapter_events",
        ["logical_chapter_id"],
    )
    op.create_index("ix_chapter_events_pending", "chapter_events", ["delivered_at", "id"])


def downgrade() -> None:
    op.drop_table("chapter_events")
    op.drop_table("chapter_sources")
    op.drop_table("logical_chapters")
    op.drop_table("series_sources")
    op.drop_table("series")
