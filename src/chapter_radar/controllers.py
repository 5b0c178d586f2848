"""Controllers for chapter-radar CLI commands."""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path

from chapter_radar.app import open_app
from chapter_radar.config import Settings
from chapter_radar.queue.models import JobStatus, QueueName
from chapter_radar.scheduling.tiers import EngagementSignal, poll_interval
from chapter_radar.storage.database import Database


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


@dataclass(slots=True)
class SeriesAddCommand:
    db_path: Path | None
    title: str


@dataclass(slots=True)
class SourceAddCommand:
    """CLI input for attaching a source to a series."""

    db_path: Path | None
    series_id: int
    source_name: str
    external_id: str
    source_url: str | None
    trust_score: float


@dataclass(slots=True)
class SourceEnableCommand:
    db_path: Path | None
    series_source_id: int


@dataclass(slots=True)
class SeriesCommand:
    db_path: Path | None
    series_id: int


@dataclass(slots=True)
class SeriesChaptersCommand:
    db_path: Path | None
    series_id: int
    limit: int


@dataclass(slots=True)
class SignalRecordCommand:
    db_path: Path | None
    series_id: int
    signal: str
    count: int


@dataclass(slots=True)
class SchedulerRunCommand:
    db_path: Path | None
    max_ticks: int | None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for the job worker."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None


@dataclass(slots=True)
class SearchRecordCommand:
    db_path: Path | None
    query: str
    user_key: str | None


@dataclass(slots=True)
class LimitCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class EventsPublishCommand:
    db_path: Path | None
    webhook_url: str | None
    limit: int


class ChapterRadarCliController:
    """Coordinates CLI command execution; every method returns lines to print."""

    def init_db(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with Database(settings.db_path, busy_timeout_ms=settings.busy_timeout_ms) as database:
            database.init_schema()
            revision = database.schema_revision()
        return [f"Database ready: {settings.db_path} (schema {revision})"]

    def add_series(self, command: SeriesAddCommand) -> list[str]:
        with open_app(Settings.from_env(db_path=command.db_path)) as app:
            series_id = app.catalog.create_series(command.title)
        return [f"Series created: id={series_id} title={command.title!r} tier=C"]

    def add_source(self, command: SourceAddCommand) -> list[str]:
        with open_app(Settings.from_env(db_path=command.db_path)) as app:
            app.registry.get(command.source_name)
            source_id = app.catalog.add_source(
                series_id=command.series_id,
                source_name=command.source_name,
                external_id=command.external_id,
                source_url=command.source_url,
                trust_score=command.trust_score,
            )
        return [
            f"Source attached: id={source_id} series_id={command.series_id} "
            f"source={command.source_name} external_id={command.external_id}",
        ]

    def enable_source(self, command: SourceEnableCommand) -> list[str]:
        with open_app(Settings.from_env(db_path=command.db_path)) as app:
            enabled = app.catalog.enable_source(command.series_source_id)
        if not enabled:
            return [f"Series source not found: {command.series_source_id}"]
        return [f"Source enabled: id={command.series_source_id}"]

    def remove_series(self, command: SeriesCommand) -> list[str]:
        with open_app(Settings.from_env(db_path=command.db_path)) as app:
            cancelled = app.scheduler().cancel_series(command.series_id)
        if cancelled is None:
            return [f"Series not found: {command.series_id}"]
        return [f"Series removed: id={command.series_id} cancelled_poll_jobs={cancelled}"]

    def list_chapters(self, command: SeriesChaptersCommand) -> list[str]:
        with open_app(Settings.from_env(db_path=command.db_path)) as app:
            series = app.catalog.get_series(command.series_id)
            if series is None:
                return [f"Series not found: {command.series_id}"]
            sources = app.catalog.list_sources(command.series_id)
            listings = app.catalog.list_chapter_sources(command.series_id, limit=command.limit)

        interval = poll_interval(series.catalog_tier, series.heat)
        lines = [
            f"Series {series.id}: {series.title} tier={series.catalog_tier.value} "
            f"heat={series.heat.value} score={series.activity_score:.1f} "
            f"poll_every={interval or 'never'}",
        ]
        for source in sources:
            lines.append(
                f"  source {source.id} [{source.source_name}] {source.source_status.value} "
                f"trust={source.trust_score:.2f} failures={source.failure_count}",
            )
        if not listings:
            lines.append("  no chapters yet")
        for item in listings:
            availability = "" if item.is_available else " (unavailable)"
            lines.append(
                f"  ch {item.chapter_number or 'oneshot'} [{item.source_name}] "
                f"{item.chapter_url}{availability}",
            )
        return lines

    def record_signal(self, command: SignalRecordCommand) -> list[str]:
        with open_app(Settings.from_env(db_path=command.db_path)) as app:
            change = app.tiers.record_signal(
                command.series_id,
                EngagementSignal(command.signal),
                count=command.count,
            )
            series = app.catalog.get_series(command.series_id)
        if series is None:
            return [f"Series not found: {command.series_id}"]
        lines = [
            f"Signal recorded: series_id={series.id} signal={command.signal} "
            f"count={command.count} score={series.activity_score:.1f} "
            f"tier={series.catalog_tier.value} heat={series.heat.value}",
        ]
        if change is not None:
            lines.append(
                f"Tier change: {change.from_tier.value} -> {change.to_tier.value} "
                f"({change.reason})",
            )
        return lines

    def maintain_tiers(self, command: DbCommand) -> list[str]:
        with open_app(Settings.from_env(db_path=command.db_path)) as app:
            summary = app.tiers.run_maintenance()
        return [
            "Tier maintenance: "
            f"scanned={summary.scanned} promoted={summary.promoted} "
            f"demoted={summary.demoted} heat_changed={summary.heat_changed}",
        ]

    def scheduler_tick(self, command: DbCommand) -> list[str]:
        with open_app(Settings.from_env(db_path=command.db_path)) as app:
            result = app.scheduler().tick()
        return [
            "Scheduler tick: "
            f"due={result.due} enqueued={result.enqueued} duplicates={result.duplicates} "
            f"skipped={result.skipped_reason or '-'}",
        ]

    def scheduler_run(self, command: SchedulerRunCommand) -> list[str]:
        with open_app(Settings.from_env(db_path=command.db_path)) as app:
            summary = app.scheduler().run_loop(max_ticks=command.max_ticks)
        return [
            "Scheduler summary: "
            f"ticks={summary.ticks} enqueued={summary.enqueued} "
            f"skipped_ticks={summary.skipped_ticks} "
            f"maintenance_runs={summary.maintenance_runs} "
            f"deferred_searches={summary.deferred_searches_enqueued} "
            f"events_published={summary.events_published}",
        ]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        with open_app(Settings.from_env(db_path=command.db_path)) as app:
            worker = app.worker()
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"retried={summary.retried} deferred={summary.deferred} "
            f"failed={summary.failed} dead_lettered={summary.dead_lettered} "
            f"idle_polls={summary.idle_polls}",
        ]

    def record_search(self, command: SearchRecordCommand) -> list[str]:
        with open_app(Settings.from_env(db_path=command.db_path)) as app:
            decision = app.gate.record_search(command.query, user_key=command.user_key)
            stats = (
                app.gate.get_stats(decision.normalized_key) if decision.normalized_key else None
            )
        lines = [
            f"Search recorded: key={decision.normalized_key!r} "
            f"enqueued={'yes' if decision.enqueued else 'no'} "
            f"reason={decision.reason or '-'}",
        ]
        if stats is not None:
            lines.append(
                f"  total_searches={stats.total_searches} unique_users={stats.unique_users} "
                f"resolved={'yes' if stats.resolved else 'no'} "
                f"deferred={'yes' if stats.deferred else 'no'}",
            )
        return lines

    def retry_deferred_searches(self, command: LimitCommand) -> list[str]:
        with open_app(Settings.from_env(db_path=command.db_path)) as app:
            decisions = app.gate.retry_deferred(limit=command.limit)
        enqueued = sum(1 for decision in decisions if decision.enqueued)
        return [f"Deferred searches retried: checked={len(decisions)} enqueued={enqueued}"]

    def queue_stats(self, command: DbCommand) -> list[str]:
        with open_app(Settings.from_env(db_path=command.db_path)) as app:
            depths = {name: app.queue.depth(name) for name in QueueName}
            pending_events = app.publisher.pending_count()
        lines = ["Queue depth:"]
        for name, depth in depths.items():
            lines.append(
                f"  {name.value}: waiting={depth.waiting} delayed={depth.delayed} "
                f"active={depth.active} failed={depth.failed}",
            )
        lines.append(f"Pending chapter events: {pending_events}")
        return lines

    def dead_letters(self, command: LimitCommand) -> list[str]:
        with open_app(Settings.from_env(db_path=command.db_path)) as app:
            jobs = app.queue.list_jobs(status=JobStatus.DEAD_LETTER, limit=command.limit)
        if not jobs:
            return ["No dead-lettered jobs."]
        return [
            f"{job.queue_name.value}:{job.job_id} failure={job.failure_code or '-'} "
            f"updated={job.updated_at.isoformat()} error={job.error_summary or '-'}"
            for job in jobs
        ]

    def publish_events(self, command: EventsPublishCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.webhook_url:
            settings.notifications = replace(
                settings.notifications,
                webhook_url=command.webhook_url,
            )
        with open_app(settings) as app:
            summary = app.publisher.publish_pending(limit=command.limit)
            remaining = app.publisher.pending_count()
        return [
            f"Chapter events: delivered={summary.delivered} failed={summary.failed} "
            f"pending={remaining}",
        ]
