"""Kitsu JSON:API client."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import parse_qs, urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ...errors import DataUnavailableError, ProviderError
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
from ...utils import coerce_int, parse_date
from .base import ProviderClient

logger = logging.getLogger(__name__)

KITSU_PAGE_LIMIT = 20
MAX_PAGES = 100
JSON_API_HEADERS = {"Accept": "application/vnd.api+json"}


class KitsuImage(BaseModel):
    tiny: str | None = None
    small: str | None = None
    medium: str | None = None
    large: str | None = None
    original: str | None = None


class KitsuMediaAttributes(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    canonical_title: str | None = Field(default=None, alias="canonicalTitle")
    titles: dict[str, str | None] = Field(default_factory=dict)
    abbreviated_titles: list[str] | None = Field(default=None, alias="abbreviatedTitles")
    synopsis: str | None = None
    start_date: str | None = Field(default=None, alias="startDate")
    status: str | None = None
    subtype: str | None = None
    average_rating: str | float | None = Field(default=None, alias="averageRating")
    episode_count: int | None = Field(default=None, alias="episodeCount")
    chapter_count: int | None = Field(default=None, alias="chapterCount")
    poster_image: KitsuImage | None = Field(default=None, alias="posterImage")
    cover_image: KitsuImage | None = Field(default=None, alias="coverImage")


class KitsuResource(BaseModel):
    id: str
    type: str
    attributes: KitsuMediaAttributes = Field(default_factory=KitsuMediaAttributes)

    def to_entity(self) -> MediaEntity:
        return MediaEntity(**self._entity_fields())

    def to_details(self) -> MediaDetailsEntity:
        return MediaDetailsEntity(
            **self._entity_fields(), description=self.attributes.synopsis
        )

    def _entity_fields(self) -> dict[str, Any]:
        attrs = self.attributes
        titles = attrs.titles
        title = attrs.canonical_title or titles.get("en_jp") or titles.get("en") or ""
        poster = attrs.poster_image
        cover = attrs.cover_image
        rating = _to_float(attrs.average_rating)
        return {
            "id": self.id,
            "title": title,
            "type": self._media_type(),
            "source_id": ProviderId.KITSU.value,
            "source_name": "Kitsu",
            "cover_image": (poster.medium or poster.small) if poster else None,
            "banner_image": (cover.original or cover.large) if cover else None,
            "total_episodes": attrs.episode_count,
            "total_chapters": attrs.chapter_count,
            "start_date": parse_date(attrs.start_date),
            "status": attrs.status,
            "rating": rating / 10 if rating is not None else None,
            "english_title": titles.get("en"),
            "romaji_title": titles.get("en_jp"),
            "native_title": titles.get("ja_jp"),
            "synonyms": list(attrs.abbreviated_titles or []),
        }

    def _media_type(self) -> MediaType:
        if self.type == "manga":
            return MediaType.NOVEL if self.attributes.subtype == "novel" else MediaType.MANGA
        return MediaType.ANIME


class KitsuEpisodeAttributes(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    number: int | None = None
    season_number: int | None = Field(default=None, alias="seasonNumber")
    canonical_title: str | None = Field(default=None, alias="canonicalTitle")
    titles: dict[str, str | None] = Field(default_factory=dict)
    airdate: str | None = None
    length: int | None = None
    thumbnail: KitsuImage | None = None


class KitsuChapterAttributes(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    number: float | None = None
    canonical_title: str | None = Field(default=None, alias="canonicalTitle")
    titles: dict[str, str | None] = Field(default_factory=dict)
    published: str | None = None
    length: int | None = None


class KitsuClient(ProviderClient):
    """Client for the Kitsu edge API."""

    provider_id = ProviderId.KITSU
    display_name = "Kitsu"
    media_types = frozenset({MediaType.ANIME, MediaType.MANGA, MediaType.NOVEL})
    supports_episode_pages = True
    supports_chapter_pages = True

    async def search_media(
        self,
        query: str,
        media_type: MediaType,
        page: int = 1,
        year: int | None = None,
    ) -> SearchResult:
        kind = self._kind(media_type)
        params: dict[str, Any] = {
            "filter[text]": query,
            "page[limit]": KITSU_PAGE_LIMIT,
            "page[offset]": (max(page, 1) - 1) * KITSU_PAGE_LIMIT,
        }
        if year and kind == "anime":
            params["filter[seasonYear]"] = year
        payload = await self._get(f"/{kind}", params)
        items = self._decode_resources(payload)
        total = coerce_int((payload.get("meta") or {}).get("count")) or len(items)
        return SearchResult(
            items=items,
            total_count=total,
            current_page=page,
            has_next_page=bool((payload.get("links") or {}).get("next")),
            per_page=KITSU_PAGE_LIMIT,
        )

    async def get_trending(self, media_type: MediaType, page: int = 1) -> list[MediaEntity]:
        payload = await self._get(f"/trending/{self._kind(media_type)}", {})
        return self._decode_resources(payload)

    async def get_popular(self, media_type: MediaType, page: int = 1) -> list[MediaEntity]:
        payload = await self._get(
            f"/{self._kind(media_type)}",
            {
                "sort": "popularityRank",
                "page[limit]": KITSU_PAGE_LIMIT,
                "page[offset]": (max(page, 1) - 1) * KITSU_PAGE_LIMIT,
            },
        )
        return self._decode_resources(payload)

    async def get_media_details(
        self,
        media_id: str,
        media_type: MediaType,
        *,
        include_characters: bool = False,
        include_staff: bool = False,
        include_reviews: bool = False,
    ) -> MediaDetailsEntity:
        payload = await self._get(f"/{self._kind(media_type)}/{media_id}", {})
        return self._decode_resource(payload.get("data")).to_details()

    async def get_episodes(
        self, media_id: str, cover_image_hint: str | None = None
    ) -> list[EpisodeEntity]:
        episodes: list[EpisodeEntity] = []
        offset: int | None = 0
        pages = 0
        while offset is not None and pages < MAX_PAGES:
            page = await self._episode_page(media_id, offset, KITSU_PAGE_LIMIT, cover_image_hint)
            episodes.extend(page.items)
            offset = page.next_offset
            pages += 1
        return episodes

    async def get_episode_page(
        self,
        media_id: str,
        offset: int,
        limit: int,
        cover_image_hint: str | None = None,
    ) -> EpisodePage:
        return await self._episode_page(media_id, offset, limit, cover_image_hint)

    async def get_chapters(self, media_id: str) -> list[ChapterEntity]:
        chapters: list[ChapterEntity] = []
        offset: int | None = 0
        pages = 0
        while offset is not None and pages < MAX_PAGES:
            page = await self.get_chapter_page(media_id, offset, KITSU_PAGE_LIMIT)
            chapters.extend(page.items)
            offset = page.next_offset
            pages += 1
        if chapters:
            return chapters

        details = await self._get(f"/manga/{media_id}", {})
        total = self._decode_resource(details.get("data")).attributes.chapter_count
        raise DataUnavailableError(
            "Kitsu has no chapter entries for this title",
            provider=self.name,
            total_count=total,
        )

    async def get_chapter_page(self, media_id: str, offset: int, limit: int) -> ChapterPage:
        payload = await self._get(
            f"/manga/{media_id}/chapters",
            self._page_params(offset, limit),
        )
        items: list[ChapterEntity] = []
        for raw in payload.get("data") or []:
            try:
                attrs = KitsuChapterAttributes.model_validate(raw.get("attributes") or {})
            except ValidationError:
                logger.debug("Skipping malformed Kitsu chapter: %s", raw)
                continue
            if attrs.number is None:
                continue
            items.append(
                ChapterEntity(
                    id=f"kitsu_{raw.get('id')}",
                    media_id=media_id,
                    number=attrs.number,
                    title=attrs.canonical_title or attrs.titles.get("en_jp") or attrs.titles.get("en"),
                    release_date=parse_date(attrs.published),
                    page_count=attrs.length,
                    source_provider=self.name,
                )
            )
        return ChapterPage(
            items=items,
            next_offset=_next_offset(payload),
            provider_id=self.name,
            provider_media_id=media_id,
        )

    async def _episode_page(
        self, media_id: str, offset: int, limit: int, cover_image_hint: str | None
    ) -> EpisodePage:
        payload = await self._get(
            f"/anime/{media_id}/episodes",
            self._page_params(offset, limit),
        )
        items: list[EpisodeEntity] = []
        for raw in payload.get("data") or []:
            try:
                attrs = KitsuEpisodeAttributes.model_validate(raw.get("attributes") or {})
            except ValidationError:
                logger.debug("Skipping malformed Kitsu episode: %s", raw)
                continue
            if attrs.number is None:
                continue
            thumbnail = attrs.thumbnail.original if attrs.thumbnail else None
            items.append(
                EpisodeEntity(
                    id=f"kitsu_{raw.get('id')}",
                    media_id=media_id,
                    number=attrs.number,
                    season_number=attrs.season_number,
                    title=attrs.canonical_title or attrs.titles.get("en_us") or attrs.titles.get("en_jp"),
                    thumbnail=thumbnail or cover_image_hint,
                    release_date=parse_date(attrs.airdate),
                    duration=attrs.length,
                    source_provider=self.name,
                )
            )
        return EpisodePage(
            items=items,
            next_offset=_next_offset(payload),
            provider_id=self.name,
            provider_media_id=media_id,
        )

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        payload = await self._request("GET", path, params=params, headers=JSON_API_HEADERS)
        if not isinstance(payload, dict):
            raise ProviderError("Unexpected Kitsu payload", provider=self.name)
        return payload

    def _decode_resource(self, raw: Any) -> KitsuResource:
        try:
            return KitsuResource.model_validate(raw)
        except ValidationError as exc:
            raise ProviderError("Malformed Kitsu resource", provider=self.name) from exc

    @staticmethod
    def _decode_resources(payload: dict[str, Any]) -> list[MediaEntity]:
        items: list[MediaEntity] = []
        for raw in payload.get("data") or []:
            try:
                items.append(KitsuResource.model_validate(raw).to_entity())
            except ValidationError:
                logger.debug("Skipping malformed Kitsu entry: %s", raw)
        return items

    @staticmethod
    def _page_params(offset: int, limit: int) -> dict[str, Any]:
        return {
            "page[limit]": max(1, min(limit, KITSU_PAGE_LIMIT)),
            "page[offset]": max(offset, 0),
            "sort": "number",
        }

    @staticmethod
    def _kind(media_type: MediaType) -> str:
        return "manga" if media_type.is_readable else "anime"


def _next_offset(payload: dict[str, Any]) -> int | None:
    """Read ``page[offset]`` from the JSON:API ``links.next`` URL."""

    next_link = (payload.get("links") or {}).get("next")
    if not next_link:
        return None
    values = parse_qs(urlparse(next_link).query).get("page[offset]")
    if not values:
        return None
    return coerce_int(values[0])


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
