"""HTTP client for source fetches that maps transport failures onto the source taxonomy."""

from __future__ import annotations

import logging
from datetime import UTC
from email.utils import parsedate_to_datetime

import httpx

from chapter_radar.sources.base import (
    DnsError,
    NotFoundError,
    ProxyBlockedError,
    RateLimitedError,
    SourceError,
    TransientNetworkError,
)
from chapter_radar.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; ChapterRadar/0.1)"

_DNS_ERROR_PATTERNS: tuple[str, ...] = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated with hostname",
    "name resolution",
)
_BLOCK_STATUS_CODES = frozenset({401, 403, 451})
_NOT_FOUND_STATUS_CODES = frozenset({404, 410})
_RATE_LIMIT_STATUS = 429


class SourceHttpClient:
    """httpx wrapper with timeout, transport retries, and typed failures."""

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = 1,
        user_agent: str = DEFAULT_USER_AGENT,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout = httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds))
        base_headers = {"User-Agent": user_agent}
        if headers:
            base_headers.update(headers)
        self._client = httpx.Client(
            timeout=self._timeout,
            headers=base_headers,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def get(
        self,
        url: str,
        *,
        params: dict[str, object] | list[tuple[str, object]] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """GET ``url`` and return a 2xx response or raise a ``SourceError`` subclass."""

        try:
            response = self._client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("Timeout fetching %s", url)
            raise TransientNetworkError(message=f"Timeout fetching {url}", code="timeout") from exc
        except httpx.ConnectError as exc:
            if _looks_like_dns_failure(str(exc)):
                raise DnsError(message=f"DNS resolution failed for {url}: {exc}") from exc
            raise TransientNetworkError(message=f"Connection failed for {url}: {exc}") from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error fetching %s: %s", url, exc)
            raise TransientNetworkError(message=f"HTTP error fetching {url}: {exc}") from exc

        raise_for_source_status(response)
        return response

    def get_json(
        self,
        url: str,
        *,
        params: dict[str, object] | list[tuple[str, object]] | None = None,
    ) -> object:
        response = self.get(url, params=params, headers={"Accept": "application/json"})
        try:
            return response.json()
        except ValueError as exc:
            raise TransientNetworkError(
                message=f"Invalid JSON from {url}",
                code="invalid_json",
            ) from exc

    def post_json(self, url: str, payload: dict[str, object]) -> httpx.Response:
        try:
            response = self._client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise TransientNetworkError(message=f"HTTP error posting {url}: {exc}") from exc
        raise_for_source_status(response)
        return response

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> SourceHttpClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def raise_for_source_status(response: httpx.Response) -> None:
    """Translate a non-2xx response into the source failure taxonomy."""

    status = response.status_code
    if response.is_success:
        return
    url = str(response.request.url)
    if status == _RATE_LIMIT_STATUS:
        raise RateLimitedError(
            message=f"Rate limited by {url}",
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status in _NOT_FOUND_STATUS_CODES:
        raise NotFoundError(message=f"Not found: {url}")
    if status in _BLOCK_STATUS_CODES:
        raise ProxyBlockedError(message=f"Blocked with HTTP {status}: {url}")
    if status >= 500:  # noqa: PLR2004
        raise TransientNetworkError(message=f"Server error HTTP {status}: {url}", code=str(status))
    raise SourceError(message=f"Unexpected HTTP {status}: {url}", code=str(status))


def parse_retry_after(value: str | None) -> int | None:
    """Parse Retry-After given either as delta-seconds or an HTTP date."""

    if not value:
        return None
    value = value.strip()
    try:
        return max(0, int(value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=UTC)
    return max(0, int((retry_at - utc_now()).total_seconds()))


def _looks_like_dns_failure(message: str) -> bool:
    lowered = message.lower()
    return any(pattern in lowered for pattern in _DNS_ERROR_PATTERNS)
