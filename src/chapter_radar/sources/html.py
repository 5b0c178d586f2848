"""Scraped HTML chapter-list sources driven by per-site CSS selector profiles."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag

from chapter_radar.chapters.numbering import extract_chapter_number
from chapter_radar.http.client import SourceHttpClient
from chapter_radar.sources.base import (
    ChapterReport,
    ProxyBlockedError,
    SeriesSourceRef,
    SourceValidationError,
)

logger = logging.getLogger(__name__)

_CHALLENGE_MARKERS: tuple[str, ...] = (
    "cf-browser-verification",
    "challenge-platform",
    "just a moment...",
    "attention required! | cloudflare",
)
_SLUG_SEPARATORS_RE = re.compile(r"[-_]+")
_SAFE_EXTERNAL_ID_RE = re.compile(r"^[a-zA-Z0-9._/-]{1,500}$")


@dataclass(slots=True, frozen=True)
class HtmlSourceProfile:
    """CSS selectors and URL layout for one scraped site."""

    name: str
    series_url_template: str
    item_selector: str
    link_selector: str
    date_selector: str | None = None
    date_attribute: str | None = "title"
    date_formats: tuple[str, ...] = ()
    language: str | None = "en"


MANGANATO_PROFILE = HtmlSourceProfile(
    name="manganato",
    series_url_template="https://chapmanganato.to/{external_id}",
    item_selector="ul.row-content-chapter li",
    link_selector="a.chapter-name",
    date_selector="span.chapter-time",
    date_formats=("%b %d,%Y %H:%M", "%b %d,%y"),
)
MANGAKAKALOT_PROFILE = HtmlSourceProfile(
    name="mangakakalot",
    series_url_template="https://mangakakalot.com/manga/{external_id}",
    item_selector="div.chapter-list div.row",
    link_selector="span a",
    date_selector="span[title]",
    date_formats=("%b-%d-%Y %H:%M", "%b %d,%Y %H:%M", "%b-%d-%y"),
)
BUILTIN_HTML_PROFILES: tuple[HtmlSourceProfile, ...] = (MANGANATO_PROFILE, MANGAKAKALOT_PROFILE)


class HtmlChapterListClient:
    """Scrapes a series page and turns each chapter row into a ``ChapterReport``."""

    kind = "html"

    def __init__(self, http: SourceHttpClient, profile: HtmlSourceProfile) -> None:
        self.http = http
        self.profile = profile
        self.name = profile.name

    def fetch(self, ref: SeriesSourceRef) -> list[ChapterReport]:
        page_url = self.series_url(ref)
        response = self.http.get(page_url, headers={"Accept": "text/html"})
        return self.parse(response.text, page_url)

    def series_url(self, ref: SeriesSourceRef) -> str:
        if ref.source_url:
            return ref.source_url
        external_id = ref.external_id.strip()
        if not _SAFE_EXTERNAL_ID_RE.match(external_id):
            raise SourceValidationError(
                message=f"Invalid {self.name} id for series source {ref.series_source_id}",
            )
        return self.profile.series_url_template.format(external_id=external_id)

    def parse(self, html: str, page_url: str) -> list[ChapterReport]:
        lowered = html[:20_000].lower()
        if any(marker in lowered for marker in _CHALLENGE_MARKERS):
            raise ProxyBlockedError(message=f"Challenge page served by {page_url}")

        soup = BeautifulSoup(html, "html.parser")
        rows = soup.select(self.profile.item_selector)
        if not rows and not _has_container(soup, self.profile.item_selector):
            raise SourceValidationError(
                message=f"Chapter list not found on {page_url}",
                code="layout_changed",
            )

        reports: list[ChapterReport] = []
        for row in rows:
            report = self._parse_row(row, page_url)
            if report is not None:
                reports.append(report)
        logger.debug("Parsed %d chapters from %s", len(reports), page_url)
        return reports

    def _parse_row(self, row: Tag, page_url: str) -> ChapterReport | None:
        link = row.select_one(self.profile.link_selector)
        if link is None:
            return None
        href = link.get("href")
        if not isinstance(href, str) or not href.strip():
            return None
        url = urljoin(page_url, href.strip())
        label = link.get_text(" ", strip=True) or None
        slug = _last_path_segment(url)
        number = extract_chapter_number(label)
        if number is None and slug:
            number = extract_chapter_number(_SLUG_SEPARATORS_RE.sub(" ", slug))
        if number is None:
            logger.debug("Skipping row without a chapter number: %s", url)
            return None
        return ChapterReport(
            chapter_number=number,
            url=url,
            title=label,
            source_chapter_id=slug,
            published_at=self._parse_row_date(row),
            language=self.profile.language,
        )

    def _parse_row_date(self, row: Tag) -> datetime | None:
        if self.profile.date_selector is None:
            return None
        node = row.select_one(self.profile.date_selector)
        if node is None:
            return None
        raw: str | None = None
        if self.profile.date_attribute:
            value = node.get(self.profile.date_attribute)
            raw = value if isinstance(value, str) else None
        if not raw:
            raw = node.get_text(" ", strip=True)
        return _parse_date(raw, self.profile.date_formats)


def _has_container(soup: BeautifulSoup, item_selector: str) -> bool:
    container_selector = item_selector.rsplit(" ", 1)[0]
    if container_selector == item_selector:
        return False
    return soup.select_one(container_selector) is not None


def _last_path_segment(url: str) -> str | None:
    path = urlparse(url).path.rstrip("/")
    if not path:
        return None
    return path.rsplit("/", 1)[-1] or None


def _parse_date(raw: str | None, formats: tuple[str, ...]) -> datetime | None:
    if not raw:
        return None
    text = raw.strip()
    for date_format in formats:
        try:
            return datetime.strptime(text, date_format).replace(tzinfo=UTC)  # noqa: DTZ007
        except ValueError:
            continue
    return None
