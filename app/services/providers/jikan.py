"""Jikan (MyAnimeList) REST client."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ...errors import AuthRequiredError, DataUnavailableError, ProviderError
from ...models import (
    Character,
    ChapterEntity,
    EpisodeEntity,
    EpisodePage,
    MediaDetailsEntity,
    MediaEntity,
    MediaType,
    ProviderId,
    SearchResult,
    StaffMember,
)
from ...utils import parse_date
from .base import ProviderClient

logger = logging.getLogger(__name__)

JIKAN_EPISODE_PAGE_SIZE = 100
JIKAN_SEARCH_LIMIT = 20
MAX_PAGES = 50


class JikanImageSet(BaseModel):
    image_url: str | None = None
    large_image_url: str | None = None


class JikanImages(BaseModel):
    jpg: JikanImageSet | None = None
    webp: JikanImageSet | None = None

    def best(self) -> str | None:
        for image_set in (self.jpg, self.webp):
            if image_set and (image_set.large_image_url or image_set.image_url):
                return image_set.large_image_url or image_set.image_url
        return None


class JikanNamed(BaseModel):
    name: str


class JikanDateRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start: str | None = Field(default=None, alias="from")


class JikanMedia(BaseModel):
    """Decoded anime or manga entry from Jikan v4."""

    mal_id: int
    title: str
    title_english: str | None = None
    title_japanese: str | None = None
    title_synonyms: list[str] = Field(default_factory=list)
    type: str | None = None
    episodes: int | None = None
    chapters: int | None = None
    status: str | None = None
    score: float | None = None
    synopsis: str | None = None
    genres: list[JikanNamed] = Field(default_factory=list)
    images: JikanImages | None = None
    aired: JikanDateRange | None = None
    published: JikanDateRange | None = None

    def media_type(self, requested: MediaType) -> MediaType:
        if requested.is_readable:
            return MediaType.NOVEL if (self.type or "").lower() in {"novel", "light novel"} else MediaType.MANGA
        return MediaType.ANIME

    def entity_fields(self, requested: MediaType) -> dict[str, Any]:
        dates = self.aired or self.published
        return {
            "id": str(self.mal_id),
            "title": self.title,
            "type": self.media_type(requested),
            "source_id": ProviderId.JIKAN.value,
            "source_name": "MyAnimeList",
            "cover_image": self.images.best() if self.images else None,
            "total_episodes": self.episodes,
            "total_chapters": self.chapters,
            "start_date": parse_date(dates.start) if dates else None,
            "status": self.status,
            "rating": self.score,
            "genres": [genre.name for genre in self.genres],
            "english_title": self.title_english,
            "romaji_title": self.title,
            "native_title": self.title_japanese,
            "synonyms": self.title_synonyms,
        }


class JikanEpisode(BaseModel):
    mal_id: int
    title: str | None = None
    title_romanji: str | None = None
    aired: str | None = None


class JikanClient(ProviderClient):
    """Client for the unofficial MyAnimeList API served by Jikan.

    Jikan cannot list chapters. The public record reports the chapter total;
    for titles without one, a MyAnimeList user token unlocks the official API.
    """

    provider_id = ProviderId.JIKAN
    display_name = "MyAnimeList"
    media_types = frozenset({MediaType.ANIME, MediaType.MANGA, MediaType.NOVEL})
    supports_episode_pages = True

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        mal_access_token: str | None = None,
        mal_api_url: str = "https://api.myanimelist.net/v2",
        **kwargs: Any,
    ):
        super().__init__(http_client, **kwargs)
        self._mal_access_token = mal_access_token
        self._mal_api_url = mal_api_url.rstrip("/")

    async def search_media(
        self,
        query: str,
        media_type: MediaType,
        page: int = 1,
        year: int | None = None,
    ) -> SearchResult:
        params: dict[str, Any] = {"q": query, "page": page, "limit": JIKAN_SEARCH_LIMIT}
        if media_type is MediaType.NOVEL:
            params["type"] = "lightnovel"
        if year:
            params["start_date"] = f"{year}-01-01"
        payload = await self._get(f"/{self._kind(media_type)}", params)
        items = self._decode_list(payload, media_type)
        pagination = payload.get("pagination") or {}
        counts = pagination.get("items") or {}
        return SearchResult(
            items=items,
            total_count=counts.get("total") or len(items),
            current_page=pagination.get("current_page") or page,
            has_next_page=bool(pagination.get("has_next_page")),
            per_page=counts.get("per_page") or JIKAN_SEARCH_LIMIT,
        )

    async def get_trending(self, media_type: MediaType, page: int = 1) -> list[MediaEntity]:
        status = "publishing" if media_type.is_readable else "airing"
        payload = await self._get(
            f"/top/{self._kind(media_type)}", {"filter": status, "page": page}
        )
        return self._decode_list(payload, media_type)

    async def get_popular(self, media_type: MediaType, page: int = 1) -> list[MediaEntity]:
        payload = await self._get(
            f"/top/{self._kind(media_type)}", {"filter": "bypopularity", "page": page}
        )
        return self._decode_list(payload, media_type)

    async def get_media_details(
        self,
        media_id: str,
        media_type: MediaType,
        *,
        include_characters: bool = False,
        include_staff: bool = False,
        include_reviews: bool = False,
    ) -> MediaDetailsEntity:
        kind = self._kind(media_type)
        payload = await self._get(f"/{kind}/{media_id}/full", {})
        try:
            media = JikanMedia.model_validate(payload.get("data") or {})
        except ValidationError as exc:
            raise ProviderError(
                f"Malformed Jikan entry {media_id}", provider=self.name
            ) from exc

        characters: list[Character] = []
        if include_characters:
            raw = await self._get(f"/{kind}/{media_id}/characters", {})
            for entry in raw.get("data") or []:
                person = entry.get("character") or {}
                if not person.get("name"):
                    continue
                characters.append(
                    Character(
                        id=str(person.get("mal_id")),
                        name=person["name"],
                        role=entry.get("role"),
                        image=JikanImages.model_validate(person.get("images") or {}).best(),
                    )
                )
        staff: list[StaffMember] = []
        if include_staff and kind == "anime":
            raw = await self._get(f"/anime/{media_id}/staff", {})
            for entry in raw.get("data") or []:
                person = entry.get("person") or {}
                if not person.get("name"):
                    continue
                staff.append(
                    StaffMember(
                        id=str(person.get("mal_id")),
                        name=person["name"],
                        role=", ".join(entry.get("positions") or []) or None,
                    )
                )
        return MediaDetailsEntity(
            **media.entity_fields(media_type),
            description=media.synopsis,
            characters=characters,
            staff=staff,
        )

    async def get_episodes(
        self, media_id: str, cover_image_hint: str | None = None
    ) -> list[EpisodeEntity]:
        episodes: list[EpisodeEntity] = []
        page = 1
        has_next = True
        while has_next and page <= MAX_PAGES:
            batch, has_next = await self._fetch_episode_batch(media_id, page, cover_image_hint)
            episodes.extend(batch)
            page += 1
        return episodes

    async def get_episode_page(
        self,
        media_id: str,
        offset: int,
        limit: int,
        cover_image_hint: str | None = None,
    ) -> EpisodePage:
        """Serve an offset window from Jikan's fixed 100-episode pages."""

        offset = max(offset, 0)
        page = offset // JIKAN_EPISODE_PAGE_SIZE + 1
        skip = offset % JIKAN_EPISODE_PAGE_SIZE
        collected: list[EpisodeEntity] = []
        has_next = True
        while has_next and len(collected) < skip + limit:
            batch, has_next = await self._fetch_episode_batch(
                media_id, page, cover_image_hint
            )
            if not batch:
                break
            collected.extend(batch)
            page += 1

        items = collected[skip : skip + limit]
        more = len(collected) > skip + limit or has_next
        return EpisodePage(
            items=items,
            next_offset=offset + len(items) if items and more else None,
            provider_id=self.name,
            provider_media_id=media_id,
        )

    async def get_chapters(self, media_id: str) -> list[ChapterEntity]:
        """Report the chapter total; MyAnimeList has no per-chapter data.

        The public Jikan record is asked first. Only when it carries no total
        is the authenticated MyAnimeList API needed, which requires a token.
        """

        payload = await self._get(f"/manga/{media_id}", {})
        data = payload.get("data") or {}
        total = data.get("chapters") if isinstance(data, dict) else None
        if not total and not self._mal_access_token:
            raise AuthRequiredError(
                "MyAnimeList authentication is required for chapter data",
                provider=self.name,
            )
        if not total:
            mal_payload = await self._request(
                "GET",
                f"{self._mal_api_url}/manga/{media_id}",
                params={"fields": "num_chapters"},
                headers={"Authorization": f"Bearer {self._mal_access_token}"},
            )
            if isinstance(mal_payload, dict):
                total = mal_payload.get("num_chapters")
        raise DataUnavailableError(
            "MyAnimeList only reports chapter totals",
            provider=self.name,
            total_count=total or None,
        )

    async def _fetch_episode_batch(
        self, media_id: str, page: int, cover_image_hint: str | None
    ) -> tuple[list[EpisodeEntity], bool]:
        payload = await self._get(f"/anime/{media_id}/episodes", {"page": page})
        episodes: list[EpisodeEntity] = []
        for raw in payload.get("data") or []:
            try:
                episode = JikanEpisode.model_validate(raw)
            except ValidationError:
                logger.debug("Skipping malformed Jikan episode: %s", raw)
                continue
            episodes.append(
                EpisodeEntity(
                    id=f"jikan_{media_id}_{episode.mal_id}",
                    media_id=media_id,
                    number=episode.mal_id,
                    title=episode.title or episode.title_romanji,
                    thumbnail=cover_image_hint,
                    release_date=parse_date(episode.aired),
                    source_provider=self.name,
                )
            )
        has_next = bool((payload.get("pagination") or {}).get("has_next_page"))
        return episodes, has_next

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        payload = await self._request("GET", path, params=params)
        if not isinstance(payload, dict):
            raise ProviderError("Unexpected Jikan payload", provider=self.name)
        return payload

    @staticmethod
    def _decode_list(payload: dict[str, Any], media_type: MediaType) -> list[MediaEntity]:
        items: list[MediaEntity] = []
        for raw in payload.get("data") or []:
            try:
                items.append(
                    MediaEntity(**JikanMedia.model_validate(raw).entity_fields(media_type))
                )
            except ValidationError:
                logger.debug("Skipping malformed Jikan entry: %s", raw)
        return items

    @staticmethod
    def _kind(media_type: MediaType) -> str:
        return "manga" if media_type.is_readable else "anime"
