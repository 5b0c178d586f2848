"""Job payload contracts crossing the queue boundary.

Payload keys are camelCase on the wire; every ``from_payload`` raises
``PayloadValidationError`` for malformed input so that the worker can
dead-letter the job instead of retrying it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from chapter_radar.storage.common import from_iso, to_utc_aware

DISCOVERY_TRIGGERS = frozenset({"user_search", "deferred_retry", "system_sync"})


@dataclass(slots=True)
class PayloadValidationError(Exception):
    """Malformed job payload; never retried."""

    message: str
    code: str = "invalid_payload"

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class PollJobPayload:
    series_source_id: int

    @classmethod
    def from_payload(cls, payload: dict[str, object]) -> PollJobPayload:
        return cls(series_source_id=_require_int(payload, "seriesSourceId"))

    def to_payload(self) -> dict[str, object]:
        return {"seriesSourceId": self.series_source_id}

    @property
    def job_id(self) -> str:
        return str(self.series_source_id)


@dataclass(slots=True)
class IngestJobPayload:
    """One chapter report forwarded by a poll pass."""

    series_id: int
    series_source_id: int
    chapter_number: str
    chapter_url: str
    chapter_title: str | None = None
    source_chapter_id: str | None = None
    published_at: datetime | None = None
    language: str | None = None
    scanlation_group: str | None = None
    is_available: bool = True

    @classmethod
    def from_payload(cls, payload: dict[str, object]) -> IngestJobPayload:
        chapter_number = payload.get("chapterNumber")
        if chapter_number is not None and not isinstance(chapter_number, str | int | float):
            raise PayloadValidationError(message="chapterNumber must be a string")
        chapter_url = payload.get("chapterUrl")
        if not isinstance(chapter_url, str) or not chapter_url.strip():
            raise PayloadValidationError(message="chapterUrl is required")
        is_available = payload.get("isAvailable", True)
        if not isinstance(is_available, bool):
            raise PayloadValidationError(message="isAvailable must be a boolean")
        return cls(
            series_id=_require_int(payload, "seriesId"),
            series_source_id=_require_int(payload, "sourceId"),
            chapter_number="" if chapter_number is None else str(chapter_number),
            chapter_url=chapter_url.strip(),
            chapter_title=_optional_str(payload, "chapterTitle"),
            source_chapter_id=_optional_str(payload, "sourceChapterId"),
            published_at=_optional_datetime(payload, "publishedAt"),
            language=_optional_str(payload, "language"),
            scanlation_group=_optional_str(payload, "scanlationGroup"),
            is_available=is_available,
        )

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "seriesId": self.series_id,
            "sourceId": self.series_source_id,
            "chapterNumber": self.chapter_number,
            "chapterUrl": self.chapter_url,
            "isAvailable": self.is_available,
        }
        optional = {
            "chapterTitle": self.chapter_title,
            "sourceChapterId": self.source_chapter_id,
            "publishedAt": (
                to_utc_aware(self.published_at).isoformat()
                if self.published_at is not None
                else None
            ),
            "language": self.language,
            "scanlationGroup": self.scanlation_group,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload


@dataclass(slots=True)
class DiscoveryJobPayload:
    normalized_query: str
    intent: str = "discover"
    trigger: str = "user_search"

    @classmethod
    def from_payload(cls, payload: dict[str, object]) -> DiscoveryJobPayload:
        query = payload.get("normalizedQuery")
        if not isinstance(query, str) or not query.strip():
            raise PayloadValidationError(message="normalizedQuery is required")
        trigger = payload.get("trigger", "user_search")
        if trigger not in DISCOVERY_TRIGGERS:
            raise PayloadValidationError(message=f"Unsupported discovery trigger: {trigger!r}")
        intent = payload.get("intent", "discover")
        if not isinstance(intent, str):
            raise PayloadValidationError(message="intent must be a string")
        return cls(normalized_query=query, intent=intent, trigger=str(trigger))

    def to_payload(self) -> dict[str, object]:
        return {
            "normalizedQuery": self.normalized_query,
            "intent": self.intent,
            "trigger": self.trigger,
        }


def _require_int(payload: dict[str, object], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int | str):
        raise PayloadValidationError(message=f"{key} must be an integer id")
    try:
        parsed = int(value)
    except ValueError as error:
        raise PayloadValidationError(message=f"{key} must be an integer id") from error
    if parsed <= 0:
        raise PayloadValidationError(message=f"{key} must be positive")
    return parsed


def _optional_str(payload: dict[str, object], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise PayloadValidationError(message=f"{key} must be a string")
    stripped = value.strip()
    return stripped or None


def _optional_datetime(payload: dict[str, object], key: str) -> datetime | None:
    value = _optional_str(payload, key)
    if value is None:
        return None
    try:
        return from_iso(value)
    except ValueError as error:
        raise PayloadValidationError(message=f"{key} is not an ISO timestamp") from error
