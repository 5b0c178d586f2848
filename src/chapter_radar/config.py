"""Runtime configuration for scheduling, polling, and discovery."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

RATE_LIMIT_ENV_PREFIX = "CHAPTER_RADAR_RATE_LIMIT_"


@dataclass(slots=True, frozen=True)
class RateLimitRule:
    """Token bucket parameters for one source."""

    requests_per_second: float
    burst: int
    cooldown_seconds: float


DEFAULT_RATE_LIMIT_RULES: dict[str, RateLimitRule] = {
    "mangadex": RateLimitRule(requests_per_second=5.0, burst=10, cooldown_seconds=0.2),
    "manganato": RateLimitRule(requests_per_second=0.5, burst=2, cooldown_seconds=2.0),
    "mangakakalot": RateLimitRule(requests_per_second=0.5, burst=2, cooldown_seconds=2.0),
    "mangapark": RateLimitRule(requests_per_second=0.5, burst=2, cooldown_seconds=2.0),
    "bato": RateLimitRule(requests_per_second=0.5, burst=2, cooldown_seconds=2.0),
    "mangasee": RateLimitRule(requests_per_second=0.3, burst=1, cooldown_seconds=3.0),
    "hiperdex": RateLimitRule(requests_per_second=0.2, burst=1, cooldown_seconds=5.0),
}
FALLBACK_RATE_LIMIT_RULE = RateLimitRule(requests_per_second=0.5, burst=1, cooldown_seconds=2.0)


@dataclass(slots=True)
class RateLimitSettings:
    """Per-source token bucket configuration."""

    rules: dict[str, RateLimitRule] = field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMIT_RULES),
    )
    fallback: RateLimitRule = FALLBACK_RATE_LIMIT_RULE
    acquire_timeout_seconds: float = 30.0

    def rule_for(self, source_name: str) -> RateLimitRule:
        return self.rules.get(source_name.lower(), self.fallback)


@dataclass(slots=True)
class SourceSettings:
    """External source client settings."""

    request_timeout_seconds: float = 60.0
    user_agent: str = "Mozilla/5.0 (compatible; ChapterRadar/0.1)"
    mangadex_api_url: str = "https://api.mangadex.org"
    mangadex_site_url: str = "https://mangadex.org"
    languages: tuple[str, ...] = ("en",)
    feed_page_limit: int = 500
    feed_max_offset: int = 10_000
    search_result_limit: int = 10
    breaker_failure_threshold: int = 5
    breaker_cooldown_seconds: int = 60


@dataclass(slots=True)
class PollerSettings:
    """Poll pass behavior and failure policy."""

    max_chapters_per_poll: int = 500
    not_found_disable_threshold: int = 3
    max_consecutive_failures: int = 10
    rate_limit_timeout_retry_seconds: int = 300
    ingest_backpressure_delay_seconds: int = 900
    proxy_blocked_cooldown_seconds: int = 7_200
    retry_base_seconds: int = 30
    retry_max_seconds: int = 3_600
    max_attempts: int = 5
    long_source_id_warning_chars: int = 4_500


@dataclass(slots=True)
class SchedulerSettings:
    """Scheduler tick and lease configuration."""

    tick_interval_seconds: float = 60.0
    lock_ttl_seconds: int = 360
    max_batch_size: int = 500
    renew_every: int = 100
    tier_maintenance_interval_seconds: int = 3_600
    deferred_search_batch_size: int = 50
    publish_batch_size: int = 200
    publish_events: bool = True


@dataclass(slots=True)
class TierSettings:
    """Catalog tier thresholds, hysteresis margins, and heat rules."""

    promote_a_score: float = 5_000.0
    demote_a_score: float = 3_500.0
    a_followers: int = 10
    promote_a_chapter_days: int = 30
    demote_a_chapter_days: int = 90
    promote_b_score: float = 1_000.0
    demote_b_score: float = 600.0
    b_followers: int = 1
    demotion_min_dwell_hours: int = 24
    score_half_life_days: float = 7.0
    hot_chapter_days: int = 2
    hot_recent_reads: int = 100
    hot_followers: int = 100
    warm_chapter_days: int = 14
    warm_score: float = 250.0


@dataclass(slots=True)
class BackpressureSettings:
    """Queue depth thresholds per queue purpose."""

    poll_critical_waiting: int = 10_000
    ingest_critical_waiting: int = 50_000
    discovery_healthy_waiting: int = 5_000
    outbox_critical_pending: int = 100_000


@dataclass(slots=True)
class SearchSettings:
    """Search intent gate configuration."""

    cooldown_seconds: int = 30
    min_total_searches: int = 2
    min_unique_users: int = 2
    discovery_max_attempts: int = 3


@dataclass(slots=True)
class WorkerSettings:
    """Job worker loop configuration."""

    poll_interval_seconds: float = 1.0
    retry_base_seconds: int = 30
    retry_max_seconds: int = 900
    stale_job_seconds: int = 900
    ingest_max_attempts: int = 3
    ingest_deferral_seconds: int = 60


@dataclass(slots=True)
class NotificationSettings:
    """Outbound chapter event delivery configuration."""

    webhook_url: str | None = None
    webhook_timeout_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".chapter_radar.db")
    busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    rate_limits: RateLimitSettings = field(default_factory=RateLimitSettings)
    sources: SourceSettings = field(default_factory=SourceSettings)
    poller: PollerSettings = field(default_factory=PollerSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    tiers: TierSettings = field(default_factory=TierSettings)
    backpressure: BackpressureSettings = field(default_factory=BackpressureSettings)
    search: SearchSettings = field(default_factory=SearchSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("CHAPTER_RADAR_DB_PATH", ".chapter_radar.db")),
            busy_timeout_ms=int(os.getenv("CHAPTER_RADAR_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("CHAPTER_RADAR_LOG_LEVEL", "WARNING").upper(),
            rate_limits=RateLimitSettings(
                rules=_collect_rate_limit_rules(),
                acquire_timeout_seconds=float(
                    os.getenv("CHAPTER_RADAR_RATE_LIMIT_ACQUIRE_TIMEOUT_SECONDS", "30"),
                ),
            ),
            sources=SourceSettings(
                request_timeout_seconds=float(
                    os.getenv("CHAPTER_RADAR_REQUEST_TIMEOUT_SECONDS", "60"),
                ),
                user_agent=os.getenv(
                    "CHAPTER_RADAR_USER_AGENT",
                    "Mozilla/5.0 (compatible; ChapterRadar/0.1)",
                ),
                mangadex_api_url=os.getenv(
                    "CHAPTER_RADAR_MANGADEX_API_URL",
                    "https://api.mangadex.org",
                ).rstrip("/"),
                languages=_collect_csv("CHAPTER_RADAR_LANGUAGES", default=("en",)),
                breaker_failure_threshold=int(
                    os.getenv("CHAPTER_RADAR_BREAKER_FAILURE_THRESHOLD", "5"),
                ),
                breaker_cooldown_seconds=int(
                    os.getenv("CHAPTER_RADAR_BREAKER_COOLDOWN_SECONDS", "60"),
                ),
            ),
            poller=PollerSettings(
                max_chapters_per_poll=int(
                    os.getenv("CHAPTER_RADAR_MAX_CHAPTERS_PER_POLL", "500"),
                ),
                not_found_disable_threshold=int(
                    os.getenv("CHAPTER_RADAR_NOT_FOUND_DISABLE_THRESHOLD", "3"),
                ),
                max_consecutive_failures=int(
                    os.getenv("CHAPTER_RADAR_MAX_CONSECUTIVE_FAILURES", "10"),
                ),
                max_attempts=int(os.getenv("CHAPTER_RADAR_POLL_MAX_ATTEMPTS", "5")),
            ),
            scheduler=SchedulerSettings(
                tick_interval_seconds=float(
                    os.getenv("CHAPTER_RADAR_SCHEDULER_TICK_SECONDS", "60"),
                ),
                lock_ttl_seconds=int(os.getenv("CHAPTER_RADAR_SCHEDULER_LOCK_TTL_SECONDS", "360")),
                max_batch_size=int(os.getenv("CHAPTER_RADAR_SCHEDULER_MAX_BATCH_SIZE", "500")),
                tier_maintenance_interval_seconds=int(
                    os.getenv("CHAPTER_RADAR_TIER_MAINTENANCE_INTERVAL_SECONDS", "3600"),
                ),
                publish_events=_env_bool("CHAPTER_RADAR_PUBLISH_EVENTS", default=True),
            ),
            tiers=TierSettings(
                promote_a_score=float(os.getenv("CHAPTER_RADAR_TIER_PROMOTE_A_SCORE", "5000")),
                demote_a_score=float(os.getenv("CHAPTER_RADAR_TIER_DEMOTE_A_SCORE", "3500")),
                promote_b_score=float(os.getenv("CHAPTER_RADAR_TIER_PROMOTE_B_SCORE", "1000")),
                demote_b_score=float(os.getenv("CHAPTER_RADAR_TIER_DEMOTE_B_SCORE", "600")),
                demotion_min_dwell_hours=int(
                    os.getenv("CHAPTER_RADAR_TIER_DEMOTION_MIN_DWELL_HOURS", "24"),
                ),
                score_half_life_days=float(
                    os.getenv("CHAPTER_RADAR_TIER_SCORE_HALF_LIFE_DAYS", "7"),
                ),
            ),
            backpressure=BackpressureSettings(
                poll_critical_waiting=int(
                    os.getenv("CHAPTER_RADAR_POLL_CRITICAL_WAITING", "10000"),
                ),
                ingest_critical_waiting=int(
                    os.getenv("CHAPTER_RADAR_INGEST_CRITICAL_WAITING", "50000"),
                ),
                discovery_healthy_waiting=int(
                    os.getenv("CHAPTER_RADAR_DISCOVERY_HEALTHY_WAITING", "5000"),
                ),
                outbox_critical_pending=int(
                    os.getenv("CHAPTER_RADAR_OUTBOX_CRITICAL_PENDING", "100000"),
                ),
            ),
            search=SearchSettings(
                cooldown_seconds=int(os.getenv("CHAPTER_RADAR_SEARCH_COOLDOWN_SECONDS", "30")),
                min_total_searches=int(
                    os.getenv("CHAPTER_RADAR_SEARCH_MIN_TOTAL_SEARCHES", "2"),
                ),
                min_unique_users=int(os.getenv("CHAPTER_RADAR_SEARCH_MIN_UNIQUE_USERS", "2")),
            ),
            worker=WorkerSettings(
                poll_interval_seconds=float(
                    os.getenv("CHAPTER_RADAR_WORKER_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                stale_job_seconds=int(os.getenv("CHAPTER_RADAR_STALE_JOB_SECONDS", "900")),
            ),
            notifications=NotificationSettings(
                webhook_url=os.getenv("CHAPTER_RADAR_WEBHOOK_URL") or None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for inconsistent values."""

        if self.rate_limits.acquire_timeout_seconds <= 0:
            raise ValueError("CHAPTER_RADAR_RATE_LIMIT_ACQUIRE_TIMEOUT_SECONDS must be > 0.")
        if self.sources.request_timeout_seconds <= self.rate_limits.acquire_timeout_seconds:
            raise ValueError(
                "CHAPTER_RADAR_REQUEST_TIMEOUT_SECONDS must be larger than the "
                "rate limit acquire timeout.",
            )
        if self.tiers.demote_a_score > self.tiers.promote_a_score:
            raise ValueError("Tier A demotion score must not exceed the promotion score.")
        if self.tiers.demote_b_score > self.tiers.promote_b_score:
            raise ValueError("Tier B demotion score must not exceed the promotion score.")
        if self.tiers.demote_a_chapter_days < self.tiers.promote_a_chapter_days:
            raise ValueError("Tier A demotion window must not be shorter than promotion window.")
        if self.scheduler.lock_ttl_seconds <= 0:
            raise ValueError("CHAPTER_RADAR_SCHEDULER_LOCK_TTL_SECONDS must be > 0.")
        if self.scheduler.max_batch_size <= 0:
            raise ValueError("CHAPTER_RADAR_SCHEDULER_MAX_BATCH_SIZE must be > 0.")
        if self.search.cooldown_seconds < 0:
            raise ValueError("CHAPTER_RADAR_SEARCH_COOLDOWN_SECONDS must be >= 0.")
        for name, value in (
            ("CHAPTER_RADAR_POLL_CRITICAL_WAITING", self.backpressure.poll_critical_waiting),
            ("CHAPTER_RADAR_INGEST_CRITICAL_WAITING", self.backpressure.ingest_critical_waiting),
            (
                "CHAPTER_RADAR_DISCOVERY_HEALTHY_WAITING",
                self.backpressure.discovery_healthy_waiting,
            ),
            ("CHAPTER_RADAR_OUTBOX_CRITICAL_PENDING", self.backpressure.outbox_critical_pending),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be a positive integer.")


def parse_rate_limit_rule(raw: str) -> RateLimitRule:
    """Parse ``"rps,burst,cooldown_ms"`` into a rule."""

    parts = [part.strip() for part in raw.split(",")]
    if len(parts) != 3:  # noqa: PLR2004
        raise ValueError(f"Invalid rate limit rule {raw!r}. Expected 'rps,burst,cooldown_ms'.")
    try:
        rule = RateLimitRule(
            requests_per_second=float(parts[0]),
            burst=int(parts[1]),
            cooldown_seconds=float(parts[2]) / 1000.0,
        )
    except ValueError as error:
        raise ValueError(f"Invalid rate limit rule {raw!r}: {error}") from error
    if rule.requests_per_second <= 0 or rule.burst <= 0 or rule.cooldown_seconds < 0:
        raise ValueError(f"Invalid rate limit rule {raw!r}: values must be positive.")
    return rule


def _collect_rate_limit_rules() -> dict[str, RateLimitRule]:
    rules = dict(DEFAULT_RATE_LIMIT_RULES)
    for name, value in os.environ.items():
        if not name.startswith(RATE_LIMIT_ENV_PREFIX):
            continue
        source = name.removeprefix(RATE_LIMIT_ENV_PREFIX).lower()
        if not source or source == "acquire_timeout_seconds":
            continue
        rules[source] = parse_rate_limit_rule(value)
    return rules


def _collect_csv(name: str, *, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    values = tuple(part.strip() for part in raw.split(",") if part.strip())
    return values or default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
