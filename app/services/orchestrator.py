"""Façade resolving episode, chapter and details requests across providers."""

from __future__ import annotations

import logging
from typing import Iterable, TypeVar

from ..errors import AuthRequiredError, NotFoundError, ProviderError
from ..models import (
    AGGREGATED_PROVIDER,
    ChapterEntity,
    ChapterPage,
    ChapterPageRequest,
    EpisodeEntity,
    EpisodePage,
    EpisodePageRequest,
    MediaDetailsEntity,
    MediaEntity,
    MediaType,
    ProviderId,
    ProviderMatch,
    SearchResult,
)
from ..utils import normalize_title
from .aggregator import DataAggregator
from .match_cache import MatchSet
from .matcher import CrossProviderMatcher, select_best_match
from .providers.base import ProviderClient, slice_page
from .providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

DEFAULT_EPISODE_PAGE_LIMIT = 50
DEFAULT_CHAPTER_PAGE_LIMIT = 20

# Providers with better episode data that anime lookups always consult.
FORCED_ANIME_PROVIDERS: tuple[ProviderId, ...] = (ProviderId.ANILIST, ProviderId.TMDB)
FORCED_MATCH_CONFIDENCE = 0.85
FORCED_MATCH_MIN_SCORE = 0.5

EPISODE_PAGE_PROVIDERS: tuple[ProviderId, ...] = (
    ProviderId.JIKAN,
    ProviderId.KITSU,
    ProviderId.ANILIST,
)
IMAGE_BACKFILL_PROVIDERS: tuple[ProviderId, ...] = (ProviderId.TMDB, ProviderId.KITSU)

STALE_EPISODE_MINIMUM = 100
STALE_EPISODE_RATIO = 0.5
STALE_YEAR_GAP = 10

T = TypeVar("T")


def is_stale_match(media: MediaEntity, match: ProviderMatch) -> bool:
    """Return whether a cached mapping shows signs of pointing at another title."""

    entity = match.media_entity
    if entity is None:
        return True
    primary_total = media.total_episodes or 0
    candidate_total = entity.total_episodes or 0
    if primary_total >= STALE_EPISODE_MINIMUM and candidate_total > 0:
        if abs(primary_total - candidate_total) >= primary_total * STALE_EPISODE_RATIO:
            return True
    if media.year is not None and entity.year is not None:
        if abs(media.year - entity.year) >= STALE_YEAR_GAP:
            return True
    return False


def merge_unique(
    primary: list[T], extra: Iterable[T], *, key_attr: str
) -> list[T]:
    """Append entries of ``extra`` whose normalized name is not already present."""

    seen = {normalize_title(getattr(item, key_attr)) for item in primary}
    merged = list(primary)
    for item in extra:
        key = normalize_title(getattr(item, key_attr))
        if key and key not in seen:
            seen.add(key)
            merged.append(item)
    return merged


class AggregationOrchestrator:
    """Entry point used by the HTTP layer for every cross-provider lookup."""

    def __init__(
        self,
        registry: ProviderRegistry,
        matcher: CrossProviderMatcher,
        aggregator: DataAggregator,
    ):
        self._registry = registry
        self._matcher = matcher
        self._aggregator = aggregator

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def matcher(self) -> CrossProviderMatcher:
        return self._matcher

    async def get_episodes(self, media: MediaEntity) -> list[EpisodeEntity]:
        matches = await self.resolve_matches(media)
        if media.type is MediaType.ANIME:
            matches = await self._force_include(media, matches, FORCED_ANIME_PROVIDERS)
        logger.info(
            "Aggregating episodes for %r with matches %s",
            media.title,
            [provider.value for provider in matches],
        )
        return await self._aggregator.aggregate_episodes(
            media, matches, self._fetch_episodes
        )

    async def get_chapters(self, media: MediaEntity) -> list[ChapterEntity]:
        matches = await self.resolve_matches(media)
        return await self._aggregator.aggregate_chapters(
            media, matches, self._fetch_chapters
        )

    async def resolve_matches(self, media: MediaEntity) -> MatchSet:
        """Return matches for ``media``, discarding and re-searching stale ones."""

        matches = await self._matcher.find_matches_for(media, self._registry.search)
        stale = [
            provider for provider, match in matches.items() if is_stale_match(media, match)
        ]
        if not stale:
            return matches

        logger.info(
            "Dropping stale matches %s for %r and searching again",
            [provider.value for provider in stale],
            media.title,
        )
        await self._matcher.invalidate_cached_matches(
            media.title,
            media.type,
            media.source_id,
            english_title=media.english_title,
            romaji_title=media.romaji_title,
            year=media.year,
        )
        fresh = await self._matcher.find_matches_for(media, self._registry.search)
        cleaned = {
            provider: match
            for provider, match in fresh.items()
            if not is_stale_match(media, match)
        }
        if len(cleaned) != len(fresh):
            await self._matcher.store_matches(media, cleaned)
        return cleaned

    async def get_episode_page(self, request: EpisodePageRequest) -> EpisodePage:
        """Serve one page of episodes from a provider or the aggregated list."""

        media = request.media
        offset = max(request.offset, 0)
        limit = request.limit if request.limit > 0 else DEFAULT_EPISODE_PAGE_LIMIT

        if (request.provider_id or "").lower() == AGGREGATED_PROVIDER:
            return await self._aggregated_episode_page(media, offset, limit)

        provider: ProviderId | None
        media_id: str | None
        if request.provider_id and request.provider_media_id:
            provider = ProviderId.parse(request.provider_id)
            media_id = request.provider_media_id
        else:
            provider, media_id = await self._resolve_episode_page_provider(media)

        client = self._registry.get(provider)
        if provider is None or media_id is None or client is None:
            logger.warning(
                "Episode paging provider could not be resolved for %r; using aggregation",
                media.title,
            )
            return await self._aggregated_episode_page(media, offset, limit)
        if not client.supports_episode_pages:
            logger.info("%s has no episode paging; using aggregation", provider.value)
            return await self._aggregated_episode_page(media, offset, limit)

        try:
            page = await client.get_episode_page(
                media_id, offset, limit, media.cover_image
            )
        except AuthRequiredError:
            raise
        except Exception as exc:
            logger.warning(
                "Episode paging via %s failed (%s); falling back to aggregation",
                provider.value,
                exc,
            )
            return await self._aggregated_episode_page(media, offset, limit)
        return page.model_copy(
            update={"provider_id": provider.value, "provider_media_id": media_id}
        )

    async def get_chapter_page(self, request: ChapterPageRequest) -> ChapterPage:
        """Serve one page of chapters from the only chapter-paging provider."""

        media = request.media
        offset = max(request.offset, 0)
        limit = request.limit if request.limit > 0 else DEFAULT_CHAPTER_PAGE_LIMIT

        if (request.provider_id or "").lower() == AGGREGATED_PROVIDER:
            return await self._aggregated_chapter_page(media, offset, limit)

        provider: ProviderId | None = None
        media_id: str | None = None
        if request.provider_id and request.provider_media_id:
            provider = ProviderId.parse(request.provider_id)
            media_id = request.provider_media_id
        elif ProviderId.parse(media.source_id) is ProviderId.KITSU:
            provider, media_id = ProviderId.KITSU, media.id
        else:
            match = (await self.resolve_matches(media)).get(ProviderId.KITSU)
            if match is not None:
                provider, media_id = ProviderId.KITSU, match.provider_media_id

        if provider is None or media_id is None:
            raise NotFoundError(f"No provider available for chapter paging of {media.title!r}")
        client = self._registry.get(provider)
        if client is None or not client.supports_chapter_pages:
            raise ProviderError(
                f"Chapter paging not supported for {provider.value}",
                provider=provider.value,
            )
        page = await client.get_chapter_page(media_id, offset, limit)
        return page.model_copy(
            update={"provider_id": provider.value, "provider_media_id": media_id}
        )

    async def get_media_details(
        self, media_id: str, source_id: str, media_type: MediaType
    ) -> MediaDetailsEntity:
        """Fetch details from the source provider and backfill from matches."""

        client = self._require_client(source_id)
        details = await client.get_media_details(
            media_id, media_type, include_characters=True, include_staff=True
        )
        if details.cover_image and details.banner_image and details.characters:
            return details

        matches = await self.resolve_matches(details)
        details = await self._backfill_images(details, matches)
        return await self._merge_people(details, matches)

    async def get_media(
        self, media_id: str, source_id: str, media_type: MediaType
    ) -> MediaEntity:
        """Fetch the primary record without any cross-provider enrichment."""

        return await self._require_client(source_id).get_media_details(media_id, media_type)

    async def search(
        self,
        query: str,
        media_type: MediaType,
        source_id: str,
        page: int = 1,
        year: int | None = None,
    ) -> SearchResult:
        client = self._require_client(source_id)
        return await client.search_media(query, media_type, page, year)

    async def get_trending(
        self, media_type: MediaType, source_id: str, page: int = 1
    ) -> list[MediaEntity]:
        return await self._require_client(source_id).get_trending(media_type, page)

    async def get_popular(
        self, media_type: MediaType, source_id: str, page: int = 1
    ) -> list[MediaEntity]:
        return await self._require_client(source_id).get_popular(media_type, page)

    def get_available_sources(self, media_type: MediaType | None = None) -> list[ProviderClient]:
        return self._registry.available(media_type)

    async def _aggregated_episode_page(
        self, media: MediaEntity, offset: int, limit: int
    ) -> EpisodePage:
        episodes = await self.get_episodes(media)
        items, next_offset = slice_page(episodes, offset, limit)
        return EpisodePage(
            items=items,
            next_offset=next_offset,
            provider_id=AGGREGATED_PROVIDER,
            provider_media_id=media.id,
        )

    async def _aggregated_chapter_page(
        self, media: MediaEntity, offset: int, limit: int
    ) -> ChapterPage:
        chapters = await self.get_chapters(media)
        items, next_offset = slice_page(chapters, offset, limit)
        return ChapterPage(
            items=items,
            next_offset=next_offset,
            provider_id=AGGREGATED_PROVIDER,
            provider_media_id=media.id,
        )

    async def _resolve_episode_page_provider(
        self, media: MediaEntity
    ) -> tuple[ProviderId | None, str | None]:
        primary = ProviderId.parse(media.source_id)
        if primary in EPISODE_PAGE_PROVIDERS:
            return primary, media.id
        matches = await self.resolve_matches(media)
        for candidate in EPISODE_PAGE_PROVIDERS:
            match = matches.get(candidate)
            if match is not None:
                return candidate, match.provider_media_id
        return None, None

    async def _force_include(
        self,
        media: MediaEntity,
        matches: MatchSet,
        providers: Iterable[ProviderId],
    ) -> MatchSet:
        """Add a best-effort match for each provider the matcher did not surface."""

        primary = ProviderId.parse(media.source_id)
        merged = dict(matches)
        for provider in providers:
            if provider == primary or provider in merged:
                continue
            client = self._registry.get(provider)
            if client is None:
                continue
            search_type = MediaType.TV_SHOW if provider is ProviderId.TMDB else media.type
            try:
                result = await client.search_media(media.title, search_type, 1, media.year)
            except AuthRequiredError:
                raise
            except Exception as exc:
                logger.warning("Could not add %s as a fallback: %s", provider.value, exc)
                continue
            best = select_best_match(
                provider, media, result.items, threshold=FORCED_MATCH_MIN_SCORE
            )
            if best is None:
                logger.info("No usable %s candidate for %r", provider.value, media.title)
                continue
            logger.info(
                "Added %s as fallback provider for %r (id %s, score %.2f)",
                provider.value,
                media.title,
                best.provider_media_id,
                best.confidence,
            )
            merged[provider] = best.model_copy(
                update={"confidence": max(best.confidence, FORCED_MATCH_CONFIDENCE)}
            )
        return merged

    async def _backfill_images(
        self, details: MediaDetailsEntity, matches: MatchSet
    ) -> MediaDetailsEntity:
        primary = ProviderId.parse(details.source_id)
        for provider in IMAGE_BACKFILL_PROVIDERS:
            if details.cover_image and details.banner_image:
                break
            if provider == primary:
                continue
            match = matches.get(provider)
            if match is None or match.media_entity is None:
                continue
            entity = match.media_entity
            updated = details.with_images(
                cover_image=entity.cover_image, banner_image=entity.banner_image
            )
            if updated is not details:
                logger.debug("Backfilled artwork for %r from %s", details.title, provider.value)
            details = updated  # type: ignore[assignment]
        return details

    async def _merge_people(
        self, details: MediaDetailsEntity, matches: MatchSet
    ) -> MediaDetailsEntity:
        """Borrow characters, staff and recommendations from the AniList match."""

        if details.characters and details.staff and details.recommendations:
            return details
        match = matches.get(ProviderId.ANILIST)
        client = self._registry.get(ProviderId.ANILIST)
        if match is None or client is None:
            return details
        if ProviderId.parse(details.source_id) is ProviderId.ANILIST:
            return details
        try:
            extra = await client.get_media_details(
                match.provider_media_id,
                details.type,
                include_characters=True,
                include_staff=True,
            )
        except AuthRequiredError:
            raise
        except Exception as exc:
            logger.warning("Could not load AniList people for %r: %s", details.title, exc)
            return details
        return details.model_copy(
            update={
                "characters": merge_unique(details.characters, extra.characters, key_attr="name"),
                "staff": merge_unique(details.staff, extra.staff, key_attr="name"),
                "recommendations": merge_unique(
                    details.recommendations, extra.recommendations, key_attr="title"
                ),
            }
        )

    async def _fetch_episodes(
        self, media_id: str, provider: ProviderId, cover_image_hint: str | None
    ) -> list[EpisodeEntity]:
        client = self._registry.get(provider)
        if client is None:
            return []
        return await client.get_episodes(media_id, cover_image_hint)

    async def _fetch_chapters(self, media_id: str, provider: ProviderId) -> list[ChapterEntity]:
        client = self._registry.get(provider)
        if client is None:
            return []
        return await client.get_chapters(media_id)

    def _require_client(self, source_id: str) -> ProviderClient:
        client = self._registry.get(source_id)
        if client is None:
            raise NotFoundError(f"Unknown or disabled provider {source_id!r}")
        return client
