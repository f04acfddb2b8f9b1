"""Shared plumbing for the per-catalog provider clients."""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx

from ...errors import (
    AuthRequiredError,
    DataUnavailableError,
    NotFoundError,
    ProviderError,
    RateLimitedError,
    TransientNetworkError,
)
from ...models import (
    ChapterEntity,
    ChapterPage,
    EpisodeEntity,
    EpisodePage,
    MediaDetailsEntity,
    MediaEntity,
    MediaType,
    ProviderId,
    SearchResult,
)

logger = logging.getLogger(__name__)


class RateLimiter:
    """Minimum-interval gate serializing the requests made to one provider."""

    def __init__(self, requests_per_minute: int):
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute
        self._last_request = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            elapsed = time.monotonic() - self._last_request
            if elapsed < self.min_interval:
                await asyncio.sleep(self.min_interval - elapsed)
            self._last_request = time.monotonic()


class ProviderClient(ABC):
    """Typed contract every catalog client implements.

    Subclasses describe their catalog with ``provider_id``, ``display_name`` and
    ``media_types`` and decode responses into the canonical entities.
    Operations a catalog cannot serve raise :class:`DataUnavailableError`.
    """

    provider_id: ProviderId
    display_name: str = ""
    media_types: frozenset[MediaType] = frozenset()
    supports_episode_pages: bool = False
    supports_chapter_pages: bool = False

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        requests_per_minute: int = 60,
        max_retries: int = 3,
    ):
        self._client = http_client
        self._rate_limiter = RateLimiter(requests_per_minute)
        self._max_retries = max_retries

    @property
    def name(self) -> str:
        return self.provider_id.value

    def supports(self, media_type: MediaType) -> bool:
        return media_type in self.media_types

    @abstractmethod
    async def search_media(
        self,
        query: str,
        media_type: MediaType,
        page: int = 1,
        year: int | None = None,
    ) -> SearchResult:
        """Search the catalog for ``query``."""

    @abstractmethod
    async def get_trending(self, media_type: MediaType, page: int = 1) -> list[MediaEntity]:
        """Return trending titles."""

    @abstractmethod
    async def get_popular(self, media_type: MediaType, page: int = 1) -> list[MediaEntity]:
        """Return popular titles."""

    @abstractmethod
    async def get_media_details(
        self,
        media_id: str,
        media_type: MediaType,
        *,
        include_characters: bool = False,
        include_staff: bool = False,
        include_reviews: bool = False,
    ) -> MediaDetailsEntity:
        """Return the full record for ``media_id``."""

    @abstractmethod
    async def get_episodes(
        self, media_id: str, cover_image_hint: str | None = None
    ) -> list[EpisodeEntity]:
        """Return every episode known for ``media_id``."""

    async def get_chapters(self, media_id: str) -> list[ChapterEntity]:
        raise DataUnavailableError(
            f"{self.display_name or self.name} does not expose chapters",
            provider=self.name,
        )

    async def get_episode_page(
        self,
        media_id: str,
        offset: int,
        limit: int,
        cover_image_hint: str | None = None,
    ) -> EpisodePage:
        raise DataUnavailableError(
            "Paged episodes are not supported", provider=self.name
        )

    async def get_chapter_page(
        self, media_id: str, offset: int, limit: int
    ) -> ChapterPage:
        raise DataUnavailableError(
            "Paged chapters are not supported", provider=self.name
        )

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Perform a throttled request and return the decoded JSON body.

        Timeouts, transport errors, 429 and 5xx responses are retried with
        exponential backoff before surfacing as :class:`RateLimitedError` or
        :class:`TransientNetworkError`.
        """

        attempt = 0
        while True:
            await self._rate_limiter.acquire()
            try:
                response = await self._client.request(
                    method, url, params=params, json=json, headers=headers
                )
            except httpx.HTTPError as exc:
                error: ProviderError = TransientNetworkError(
                    f"{exc.__class__.__name__} talking to {self.name}",
                    provider=self.name,
                )
                retry_after = None
            else:
                if response.status_code < 400:
                    try:
                        return response.json()
                    except ValueError as exc:
                        raise TransientNetworkError(
                            f"Invalid JSON from {self.name}", provider=self.name
                        ) from exc
                error, retry_after = self._classify(response)

            attempt += 1
            if attempt > self._max_retries:
                raise error
            backoff = retry_after or min(2 ** (attempt - 1), 5) + (0.1 * attempt)
            logger.info(
                "Transient error talking to %s (%s). Retrying %s in %.1fs",
                self.name,
                error,
                url,
                backoff,
            )
            await asyncio.sleep(backoff)

    def _classify(self, response: httpx.Response) -> tuple[ProviderError, float | None]:
        """Map an error response to an exception; non-retryable ones are raised."""

        status = response.status_code
        if status == 404:
            raise NotFoundError(f"{self.name} returned 404 for {response.url}", provider=self.name)
        if status in (401, 403):
            raise AuthRequiredError(
                f"{self.name} requires authentication", provider=self.name
            )
        if status == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            return (
                RateLimitedError(
                    f"{self.name} rate limit exceeded",
                    provider=self.name,
                    retry_after=retry_after,
                ),
                retry_after,
            )
        if status >= 500:
            return (
                TransientNetworkError(
                    f"{self.name} responded with {status}", provider=self.name
                ),
                None,
            )
        logger.warning(
            "%s request to %s failed with %s: %s",
            self.name,
            response.url,
            status,
            response.text[:200],
        )
        raise ProviderError(
            f"{self.name} rejected request with status {status}", provider=self.name
        )


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return min(float(value), 30.0)
    except ValueError:
        return None


def slice_page(items: list[Any], offset: int, limit: int) -> tuple[list[Any], int | None]:
    """Return ``items[offset:offset + limit]`` and the next offset, if any."""

    offset = max(offset, 0)
    end = min(offset + limit, len(items))
    next_offset = end if end < len(items) else None
    return items[offset:end], next_offset
