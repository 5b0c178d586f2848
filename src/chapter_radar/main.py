"""CLI entrypoint for chapter-radar."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from chapter_radar import __version__
from chapter_radar.controllers import (
    ChapterRadarCliController,
    DbCommand,
    EventsPublishCommand,
    LimitCommand,
    SchedulerRunCommand,
    SearchRecordCommand,
    SeriesAddCommand,
    SeriesChaptersCommand,
    SeriesCommand,
    SignalRecordCommand,
    SourceAddCommand,
    SourceEnableCommand,
    WorkerRunCommand,
)
from chapter_radar.queue.payloads import PayloadValidationError
from chapter_radar.scheduling.tiers import EngagementSignal
from chapter_radar.sources.base import SourceError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ChapterRadarCliController()
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

CommandT = TypeVar("CommandT")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="chapter-radar")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=lambda: os.getenv("CHAPTER_RADAR_LOG_LEVEL", "WARNING").upper(),
    show_default="WARNING",
    help="Logging level (env CHAPTER_RADAR_LOG_LEVEL).",
)
def chapter_radar(log_level: str) -> None:
    """Manga chapter discovery and poll scheduling."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@chapter_radar.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@db_path_option
def db_init(db_path: Path | None) -> None:
    """Create or migrate the database schema."""

    _run(CONTROLLER.init_db, DbCommand(db_path=db_path))


@chapter_radar.group()
def series() -> None:
    """Series catalog commands."""


@series.command("add")
@db_path_option
@click.argument("title")
def series_add(db_path: Path | None, title: str) -> None:
    """Register a series in tier C."""

    _run(CONTROLLER.add_series, SeriesAddCommand(db_path=db_path, title=title))


@series.command("source-add")
@db_path_option
@click.argument("series_id", type=int)
@click.argument("source_name")
@click.argument("external_id")
@click.option("--url", "source_url", default=None, help="Explicit series page URL.")
@click.option(
    "--trust",
    "trust_score",
    type=click.FloatRange(min=0.0, max=1.0),
    default=0.5,
    show_default=True,
    help="Trust score used to pick the primary source of a chapter.",
)
def series_source_add(  # noqa: PLR0913
    db_path: Path | None,
    series_id: int,
    source_name: str,
    external_id: str,
    source_url: str | None,
    trust_score: float,
) -> None:
    """Attach a source (for example mangadex, manganato, bato) to a series."""

    _run(
        CONTROLLER.add_source,
        SourceAddCommand(
            db_path=db_path,
            series_id=series_id,
            source_name=source_name,
            external_id=external_id,
            source_url=source_url,
            trust_score=trust_score,
        ),
    )


@series.command("source-enable")
@db_path_option
@click.argument("series_source_id", type=int)
def series_source_enable(db_path: Path | None, series_source_id: int) -> None:
    """Re-activate a disabled source and clear its failure counters."""

    _run(
        CONTROLLER.enable_source,
        SourceEnableCommand(db_path=db_path, series_source_id=series_source_id),
    )


@series.command("remove")
@db_path_option
@click.argument("series_id", type=int)
def series_remove(db_path: Path | None, series_id: int) -> None:
    """Soft-delete a series and cancel its pending polls."""

    _run(CONTROLLER.remove_series, SeriesCommand(db_path=db_path, series_id=series_id))


@series.command("chapters")
@db_path_option
@click.argument("series_id", type=int)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=5000),
    default=100,
    show_default=True,
    help="Max chapter rows to print.",
)
def series_chapters(db_path: Path | None, series_id: int, limit: int) -> None:
    """List known chapters and their sources."""

    _run(
        CONTROLLER.list_chapters,
        SeriesChaptersCommand(db_path=db_path, series_id=series_id, limit=limit),
    )


@chapter_radar.group()
def signals() -> None:
    """Engagement signal commands."""


@signals.command("record")
@db_path_option
@click.argument("series_id", type=int)
@click.argument(
    "signal",
    type=click.Choice([item.value for item in EngagementSignal], case_sensitive=False),
)
@click.option("--count", type=click.IntRange(min=1), default=1, show_default=True)
def signals_record(db_path: Path | None, series_id: int, signal: str, count: int) -> None:
    """Record an engagement signal; may promote the series immediately."""

    _run(
        CONTROLLER.record_signal,
        SignalRecordCommand(
            db_path=db_path,
            series_id=series_id,
            signal=signal.lower(),
            count=count,
        ),
    )


@chapter_radar.group()
def tiers() -> None:
    """Catalog tier commands."""


@tiers.command("maintain")
@db_path_option
def tiers_maintain(db_path: Path | None) -> None:
    """Run one tier maintenance pass (decay, demotion, heat)."""

    _run(CONTROLLER.maintain_tiers, DbCommand(db_path=db_path))


@chapter_radar.group()
def scheduler() -> None:
    """Poll scheduler commands."""


@scheduler.command("tick")
@db_path_option
def scheduler_tick(db_path: Path | None) -> None:
    """Enqueue poll jobs for every due series source once."""

    _run(CONTROLLER.scheduler_tick, DbCommand(db_path=db_path))


@scheduler.command("run")
@db_path_option
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks (default: run until SIGINT/SIGTERM).",
)
def scheduler_run(db_path: Path | None, max_ticks: int | None) -> None:
    """Run the scheduler loop with tier maintenance and event publishing."""

    _run(CONTROLLER.scheduler_run, SchedulerRunCommand(db_path=db_path, max_ticks=max_ticks))


@chapter_radar.group()
def worker() -> None:
    """Job worker commands."""


@worker.command("run")
@db_path_option
@click.option("--once", is_flag=True, default=False, help="Process at most one job.")
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after processing this many jobs.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Exit after this many consecutive empty polls.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
) -> None:
    """Process poll, ingest and discovery jobs."""

    _run(
        CONTROLLER.run_worker,
        WorkerRunCommand(
            db_path=db_path,
            once=once,
            max_jobs=max_jobs,
            max_idle_polls=max_idle_polls,
        ),
    )


@chapter_radar.group()
def search() -> None:
    """Search intent commands."""


@search.command("record")
@db_path_option
@click.argument("query")
@click.option("--user", "user_key", default=None, help="Opaque user key for unique counting.")
def search_record(db_path: Path | None, query: str, user_key: str | None) -> None:
    """Record a user search; may enqueue a discovery job."""

    _run(
        CONTROLLER.record_search,
        SearchRecordCommand(db_path=db_path, query=query, user_key=user_key),
    )


@search.command("retry-deferred")
@db_path_option
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
def search_retry_deferred(db_path: Path | None, limit: int) -> None:
    """Re-drive searches deferred by an unhealthy discovery queue."""

    _run(CONTROLLER.retry_deferred_searches, LimitCommand(db_path=db_path, limit=limit))


@chapter_radar.group()
def queue() -> None:
    """Queue inspection commands."""


@queue.command("stats")
@db_path_option
def queue_stats(db_path: Path | None) -> None:
    """Show per-queue depth and pending chapter events."""

    _run(CONTROLLER.queue_stats, DbCommand(db_path=db_path))


@queue.command("dead-letters")
@db_path_option
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=20, show_default=True)
def queue_dead_letters(db_path: Path | None, limit: int) -> None:
    """List jobs parked because their payload can never succeed."""

    _run(CONTROLLER.dead_letters, LimitCommand(db_path=db_path, limit=limit))


@chapter_radar.group()
def events() -> None:
    """Chapter event outbox commands."""


@events.command("publish")
@db_path_option
@click.option("--webhook-url", default=None, help="POST events here instead of logging them.")
@click.option("--limit", type=click.IntRange(min=1), default=200, show_default=True)
def events_publish(db_path: Path | None, webhook_url: str | None, limit: int) -> None:
    """Deliver pending chapter events."""

    _run(
        CONTROLLER.publish_events,
        EventsPublishCommand(db_path=db_path, webhook_url=webhook_url, limit=limit),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (ValueError, SourceError, PayloadValidationError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    chapter_radar()
