"""Source client lookup by source name."""

from __future__ import annotations

from chapter_radar.config import Settings
from chapter_radar.http.client import SourceHttpClient
from chapter_radar.sources.api import MangaDexClient, MangaDexConfig
from chapter_radar.sources.base import SeriesSearchClient, SourceClient, SourceValidationError
from chapter_radar.sources.feed import BUILTIN_FEED_PROFILES, FeedChapterClient
from chapter_radar.sources.html import BUILTIN_HTML_PROFILES, HtmlChapterListClient


class SourceRegistry:
    def __init__(self, clients: list[SourceClient] | None = None) -> None:
        self._clients: dict[str, SourceClient] = {}
        for client in clients or []:
            self.register(client)

    def register(self, client: SourceClient) -> None:
        self._clients[client.name.lower()] = client

    def get(self, source_name: str) -> SourceClient:
        client = self._clients.get(source_name.lower())
        if client is None:
            raise SourceValidationError(
                message=f"No client registered for source {source_name!r}",
                code="unknown_source",
            )
        return client

    def names(self) -> list[str]:
        return sorted(self._clients)

    def search_client(self) -> SeriesSearchClient | None:
        """First registered client that can search its catalog, API sources first."""

        candidates = sorted(
            self._clients.values(),
            key=lambda client: (client.kind != "api", client.name),
        )
        for client in candidates:
            if isinstance(client, SeriesSearchClient):
                return client
        return None


def build_default_registry(settings: Settings, http: SourceHttpClient) -> SourceRegistry:
    """Register the API client plus every built-in HTML and feed profile."""

    registry = SourceRegistry()
    registry.register(
        MangaDexClient(
            http,
            MangaDexConfig(
                api_url=settings.sources.mangadex_api_url,
                site_url=settings.sources.mangadex_site_url,
                languages=settings.sources.languages,
                page_limit=settings.sources.feed_page_limit,
                max_offset=settings.sources.feed_max_offset,
            ),
        ),
    )
    for html_profile in BUILTIN_HTML_PROFILES:
        registry.register(HtmlChapterListClient(http, html_profile))
    for feed_profile in BUILTIN_FEED_PROFILES:
        registry.register(FeedChapterClient(http, feed_profile))
    return registry
