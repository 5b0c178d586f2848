"""MangaDex JSON API source client."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from chapter_radar.http.client import SourceHttpClient
from chapter_radar.sources.base import (
    ChapterReport,
    DiscoveredSeries,
    SeriesSourceRef,
    SourceValidationError,
)
from chapter_radar.storage.common import from_iso

logger = logging.getLogger(__name__)

EXTERNAL_ID_RE = re.compile(r"^[a-zA-Z0-9._-]{1,500}$")
ALLOWED_CONTENT_RATINGS: tuple[str, ...] = ("safe", "suggestive", "erotica")


@dataclass(slots=True)
class MangaDexConfig:
    api_url: str = "https://api.mangadex.org"
    site_url: str = "https://mangadex.org"
    languages: tuple[str, ...] = ("en",)
    page_limit: int = 500
    max_offset: int = 10_000


class MangaDexClient:
    """API-backed source: paginated chapter feed plus title search."""

    kind = "api"

    def __init__(
        self,
        http: SourceHttpClient,
        config: MangaDexConfig | None = None,
        *,
        name: str = "mangadex",
    ) -> None:
        self.http = http
        self.config = config or MangaDexConfig()
        self.name = name

    def fetch(self, ref: SeriesSourceRef) -> list[ChapterReport]:
        manga_id = ref.external_id.strip()
        if not EXTERNAL_ID_RE.match(manga_id):
            raise SourceValidationError(
                message=f"Invalid MangaDex id for series source {ref.series_source_id}",
            )

        url = f"{self.config.api_url}/manga/{manga_id}/feed"
        reports: list[ChapterReport] = []
        offset = 0
        while offset < self.config.max_offset:
            params: list[tuple[str, object]] = [
                ("limit", self.config.page_limit),
                ("offset", offset),
                ("order[chapter]", "asc"),
                ("includes[]", "scanlation_group"),
            ]
            params.extend(("translatedLanguage[]", language) for language in self.config.languages)
            params.extend(("contentRating[]", rating) for rating in ALLOWED_CONTENT_RATINGS)
            body = _require_mapping(self.http.get_json(url, params=params), url)
            items = body.get("data")
            if not isinstance(items, list):
                raise SourceValidationError(message=f"MangaDex feed without data list: {url}")
            reports.extend(
                report for item in items if (report := self._parse_chapter(item)) is not None
            )

            total = _as_int(body.get("total"), default=0)
            offset += self.config.page_limit
            if not items or offset >= total:
                break

        logger.debug("MangaDex feed %s returned %d chapters", manga_id, len(reports))
        return reports

    def search_series(self, query: str, *, limit: int) -> list[DiscoveredSeries]:
        url = f"{self.config.api_url}/manga"
        params: list[tuple[str, object]] = [
            ("title", query),
            ("limit", max(1, min(limit, 100))),
            ("order[relevance]", "desc"),
        ]
        params.extend(("contentRating[]", rating) for rating in ALLOWED_CONTENT_RATINGS)
        body = _require_mapping(self.http.get_json(url, params=params), url)
        items = body.get("data")
        if not isinstance(items, list):
            return []

        results: list[DiscoveredSeries] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            manga_id = str(item.get("id") or "")
            if not EXTERNAL_ID_RE.match(manga_id):
                continue
            attributes = item.get("attributes")
            title = _pick_title(attributes if isinstance(attributes, dict) else {})
            if not title:
                continue
            results.append(
                DiscoveredSeries(
                    source_name=self.name,
                    external_id=manga_id,
                    title=title,
                    url=f"{self.config.site_url}/title/{manga_id}",
                ),
            )
        return results

    def _parse_chapter(self, item: object) -> ChapterReport | None:
        if not isinstance(item, dict):
            return None
        chapter_id = item.get("id")
        attributes = item.get("attributes")
        if not isinstance(chapter_id, str) or not isinstance(attributes, dict):
            return None
        external_url = attributes.get("externalUrl")
        url = (
            external_url
            if isinstance(external_url, str) and external_url
            else f"{self.config.site_url}/chapter/{chapter_id}"
        )
        chapter = attributes.get("chapter")
        return ChapterReport(
            chapter_number=str(chapter) if chapter not in (None, "") else None,
            url=url,
            title=_nullable_string(attributes.get("title")),
            source_chapter_id=chapter_id,
            published_at=_parse_datetime(attributes.get("publishAt")),
            language=_nullable_string(attributes.get("translatedLanguage")),
            scanlation_group=_scanlation_group(item.get("relationships")),
        )


def _require_mapping(body: object, url: str) -> dict[str, object]:
    if not isinstance(body, dict):
        raise SourceValidationError(message=f"Unexpected MangaDex response shape from {url}")
    if body.get("result") == "error":
        raise SourceValidationError(message=f"MangaDex returned an error result for {url}")
    return body


def _scanlation_group(relationships: object) -> str | None:
    if not isinstance(relationships, list):
        return None
    for relationship in relationships:
        if not isinstance(relationship, dict) or relationship.get("type") != "scanlation_group":
            continue
        attributes = relationship.get("attributes")
        if isinstance(attributes, dict):
            return _nullable_string(attributes.get("name"))
    return None


def _pick_title(attributes: dict[str, object]) -> str | None:
    titles = attributes.get("title")
    if isinstance(titles, dict) and titles:
        english = _nullable_string(titles.get("en"))
        if english:
            return english
        for value in titles.values():
            text = _nullable_string(value)
            if text:
                return text
    return None


def _parse_datetime(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return from_iso(value)
    except ValueError:
        return None


def _nullable_string(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    return default
