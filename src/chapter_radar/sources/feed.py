"""Per-series RSS/Atom chapter feed source."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

from defusedxml import ElementTree

from chapter_radar.chapters.numbering import extract_chapter_number
from chapter_radar.http.client import SourceHttpClient
from chapter_radar.sources.base import ChapterReport, SeriesSourceRef, SourceValidationError

logger = logging.getLogger(__name__)

_SAFE_EXTERNAL_ID_RE = re.compile(r"^[a-zA-Z0-9._-]{1,500}$")


@dataclass(slots=True, frozen=True)
class FeedSourceProfile:
    name: str
    feed_url_template: str
    language: str | None = "en"


BATO_PROFILE = FeedSourceProfile(
    name="bato",
    feed_url_template="https://bato.to/rss/series/{external_id}.xml",
)
BUILTIN_FEED_PROFILES: tuple[FeedSourceProfile, ...] = (BATO_PROFILE,)


class FeedChapterClient:
    """Reads a series chapter feed; every item or entry is one chapter report."""

    kind = "feed"

    def __init__(self, http: SourceHttpClient, profile: FeedSourceProfile) -> None:
        self.http = http
        self.profile = profile
        self.name = profile.name

    def fetch(self, ref: SeriesSourceRef) -> list[ChapterReport]:
        feed_url = self.feed_url(ref)
        response = self.http.get(
            feed_url,
            headers={"Accept": "application/rss+xml, application/atom+xml, application/xml"},
        )
        return parse_chapter_feed(response.text, feed_url, language=self.profile.language)

    def feed_url(self, ref: SeriesSourceRef) -> str:
        if ref.source_url:
            return ref.source_url
        external_id = ref.external_id.strip()
        if not _SAFE_EXTERNAL_ID_RE.match(external_id):
            raise SourceValidationError(
                message=f"Invalid {self.name} id for series source {ref.series_source_id}",
            )
        return self.profile.feed_url_template.format(external_id=external_id)


def parse_chapter_feed(
    raw_xml: str,
    feed_url: str,
    *,
    language: str | None = None,
) -> list[ChapterReport]:
    try:
        root = ElementTree.fromstring(raw_xml)
    except ElementTree.ParseError as error:
        raise SourceValidationError(
            message=f"Invalid RSS/Atom XML from {feed_url}",
            code="invalid_feed_xml",
        ) from error

    root_name = _local_name(root.tag)
    if root_name == "rss" or root.find(".//item") is not None:
        channel = root.find(".//channel")
        container = channel if channel is not None else root
        entries = [child for child in container if _local_name(child.tag) == "item"]
        is_atom = False
    elif root_name == "feed" or any(_local_name(el.tag) == "entry" for el in root.iter()):
        entries = [el for el in root.iter() if _local_name(el.tag) == "entry"]
        is_atom = True
    else:
        raise SourceValidationError(
            message=f"Unsupported feed format from {feed_url}",
            code="unsupported_feed_format",
        )

    reports: list[ChapterReport] = []
    for entry in entries:
        title = _child_text(entry, "title")
        link = _atom_link(entry) if is_atom else _child_text(entry, "link")
        if not link:
            continue
        if is_atom:
            identifier = _child_text(entry, "id")
            raw_date = _child_text(entry, "published") or _child_text(entry, "updated")
        else:
            identifier = _child_text(entry, "guid")
            raw_date = _child_text(entry, "pubDate")
        number = extract_chapter_number(title)
        if number is None:
            logger.debug("Skipping feed entry without a chapter number: %s", link)
            continue
        reports.append(
            ChapterReport(
                chapter_number=number,
                url=link,
                title=title,
                source_chapter_id=identifier or link,
                published_at=_parse_datetime(raw_date),
                language=language,
            ),
        )
    logger.debug("Parsed %d feed entries from %s", len(reports), feed_url)
    return reports


def _atom_link(entry: ElementTree.Element) -> str | None:
    fallback: str | None = None
    for child in entry:
        if _local_name(child.tag) != "link":
            continue
        href = child.attrib.get("href", "").strip()
        if not href:
            continue
        rel = child.attrib.get("rel", "").strip().lower()
        if not rel or rel == "alternate":
            return href
        fallback = fallback or href
    return fallback


def _child_text(element: ElementTree.Element, name: str) -> str | None:
    target = name.lower()
    for child in element:
        if _local_name(child.tag) != target:
            continue
        full_text = "".join(child.itertext()).strip()
        if full_text:
            return full_text
    return None


def _local_name(tag: str) -> str:
    if "}" in tag:
        return tag.rsplit("}", 1)[1].lower()
    return tag.lower()


def _parse_datetime(raw_value: str | None) -> datetime | None:
    if not raw_value:
        return None
    try:
        parsed = parsedate_to_datetime(raw_value)
    except (TypeError, ValueError):
        parsed = None
    if parsed is None:
        try:
            parsed = datetime.fromisoformat(raw_value)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
