"""AniList GraphQL client."""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ...errors import DataUnavailableError, NotFoundError, ProviderError
from ...models import (
    Character,
    ChapterEntity,
    EpisodeEntity,
    EpisodePage,
    MediaDetailsEntity,
    MediaEntity,
    MediaType,
    ProviderId,
    Recommendation,
    SearchResult,
    StaffMember,
)
from .base import ProviderClient, slice_page

logger = logging.getLogger(__name__)

EPISODE_NUMBER_RE = re.compile(r"(?:episode|ep\.?)\s*(\d+)", re.IGNORECASE)

MEDIA_FIELDS = """
    id
    type
    format
    title { romaji english native }
    synonyms
    status
    genres
    averageScore
    episodes
    chapters
    coverImage { extraLarge large medium }
    bannerImage
    startDate { year month day }
"""

PAGE_QUERY = (
    """
query ($search: String, $page: Int, $perPage: Int, $type: MediaType, $sort: [MediaSort], $year: Int) {
  Page(page: $page, perPage: $perPage) {
    pageInfo { total currentPage hasNextPage perPage }
    media(search: $search, type: $type, sort: $sort, seasonYear: $year) {
"""
    + MEDIA_FIELDS
    + """
    }
  }
}
"""
)

DETAILS_QUERY = (
    """
query ($id: Int, $withCharacters: Boolean!, $withStaff: Boolean!) {
  Media(id: $id) {
"""
    + MEDIA_FIELDS
    + """
    description(asHtml: false)
    characters(perPage: 25, sort: ROLE) @include(if: $withCharacters) {
      edges { role node { id name { full } image { medium } } }
    }
    staff(perPage: 25) @include(if: $withStaff) {
      edges { role node { id name { full } image { medium } } }
    }
    recommendations(perPage: 10, sort: RATING_DESC) {
      nodes { mediaRecommendation { id title { romaji english } coverImage { large } } }
    }
  }
}
"""
)

EPISODES_QUERY = """
query ($id: Int) {
  Media(id: $id) {
    id
    episodes
    coverImage { large }
    streamingEpisodes { title thumbnail url site }
  }
}
"""

CHAPTER_COUNT_QUERY = """
query ($id: Int) {
  Media(id: $id) { id chapters }
}
"""


class AniListTitle(BaseModel):
    romaji: str | None = None
    english: str | None = None
    native: str | None = None


class AniListDate(BaseModel):
    year: int | None = None
    month: int | None = None
    day: int | None = None

    def to_date(self) -> date | None:
        if not self.year:
            return None
        try:
            return date(self.year, self.month or 1, self.day or 1)
        except ValueError:
            return date(self.year, 1, 1)


class AniListImage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    extra_large: str | None = Field(default=None, alias="extraLarge")
    large: str | None = None
    medium: str | None = None

    def best(self) -> str | None:
        return self.extra_large or self.large or self.medium


class AniListName(BaseModel):
    full: str | None = None


class AniListPerson(BaseModel):
    id: int
    name: AniListName = Field(default_factory=AniListName)
    image: AniListImage | None = None


class AniListEdge(BaseModel):
    role: str | None = None
    node: AniListPerson


class AniListConnection(BaseModel):
    edges: list[AniListEdge] = Field(default_factory=list)


class AniListRecommendedMedia(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    title: AniListTitle = Field(default_factory=AniListTitle)
    cover_image: AniListImage | None = Field(default=None, alias="coverImage")


class AniListRecommendationNode(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    media: AniListRecommendedMedia | None = Field(
        default=None, alias="mediaRecommendation"
    )


class AniListRecommendations(BaseModel):
    nodes: list[AniListRecommendationNode] = Field(default_factory=list)


class AniListStreamingEpisode(BaseModel):
    title: str | None = None
    thumbnail: str | None = None
    url: str | None = None
    site: str | None = None


class AniListMedia(BaseModel):
    """Decoded ``Media`` object from the AniList schema."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    type: str | None = None
    format: str | None = None
    title: AniListTitle = Field(default_factory=AniListTitle)
    synonyms: list[str] = Field(default_factory=list)
    status: str | None = None
    genres: list[str] = Field(default_factory=list)
    average_score: int | None = Field(default=None, alias="averageScore")
    episodes: int | None = None
    chapters: int | None = None
    cover_image: AniListImage | None = Field(default=None, alias="coverImage")
    banner_image: str | None = Field(default=None, alias="bannerImage")
    start_date: AniListDate | None = Field(default=None, alias="startDate")
    description: str | None = None
    characters: AniListConnection | None = None
    staff: AniListConnection | None = None
    recommendations: AniListRecommendations | None = None
    streaming_episodes: list[AniListStreamingEpisode] = Field(
        default_factory=list, alias="streamingEpisodes"
    )

    @property
    def media_type(self) -> MediaType:
        if self.type == "MANGA":
            return MediaType.NOVEL if self.format == "NOVEL" else MediaType.MANGA
        return MediaType.ANIME

    def entity_fields(self) -> dict[str, Any]:
        title = self.title.english or self.title.romaji or self.title.native or ""
        return {
            "id": str(self.id),
            "title": title,
            "type": self.media_type,
            "source_id": ProviderId.ANILIST.value,
            "source_name": "AniList",
            "cover_image": self.cover_image.best() if self.cover_image else None,
            "banner_image": self.banner_image,
            "total_episodes": self.episodes,
            "total_chapters": self.chapters,
            "start_date": self.start_date.to_date() if self.start_date else None,
            "status": self.status.lower() if self.status else None,
            "rating": self.average_score / 10 if self.average_score else None,
            "genres": self.genres,
            "english_title": self.title.english,
            "romaji_title": self.title.romaji,
            "native_title": self.title.native,
            "synonyms": self.synonyms,
        }

    def to_entity(self) -> MediaEntity:
        return MediaEntity(**self.entity_fields())

    def to_details(self) -> MediaDetailsEntity:
        characters = [
            Character(
                id=str(edge.node.id),
                name=edge.node.name.full or "",
                role=edge.role,
                image=edge.node.image.best() if edge.node.image else None,
            )
            for edge in (self.characters.edges if self.characters else [])
            if edge.node.name.full
        ]
        staff = [
            StaffMember(
                id=str(edge.node.id),
                name=edge.node.name.full or "",
                role=edge.role,
                image=edge.node.image.best() if edge.node.image else None,
            )
            for edge in (self.staff.edges if self.staff else [])
            if edge.node.name.full
        ]
        recommendations = [
            Recommendation(
                id=str(node.media.id),
                title=node.media.title.english or node.media.title.romaji or "",
                source_id=ProviderId.ANILIST.value,
                cover_image=node.media.cover_image.best()
                if node.media.cover_image
                else None,
            )
            for node in (self.recommendations.nodes if self.recommendations else [])
            if node.media is not None
        ]
        return MediaDetailsEntity(
            **self.entity_fields(),
            description=self.description,
            characters=characters,
            staff=staff,
            recommendations=recommendations,
        )


class AniListClient(ProviderClient):
    """Client for the AniList GraphQL API."""

    provider_id = ProviderId.ANILIST
    display_name = "AniList"
    media_types = frozenset({MediaType.ANIME, MediaType.MANGA, MediaType.NOVEL})
    supports_episode_pages = True

    async def search_media(
        self,
        query: str,
        media_type: MediaType,
        page: int = 1,
        year: int | None = None,
    ) -> SearchResult:
        variables: dict[str, Any] = {
            "search": query,
            "page": page,
            "perPage": 20,
            "type": self._graphql_type(media_type),
            "sort": ["SEARCH_MATCH"],
        }
        if year and media_type is MediaType.ANIME:
            variables["year"] = year
        data = await self._query(PAGE_QUERY, variables)
        page_data = data.get("Page") or {}
        info = page_data.get("pageInfo") or {}
        items = self._decode_list(page_data.get("media"))
        return SearchResult(
            items=items,
            total_count=info.get("total") or len(items),
            current_page=info.get("currentPage") or page,
            has_next_page=bool(info.get("hasNextPage")),
            per_page=info.get("perPage") or 20,
        )

    async def get_trending(self, media_type: MediaType, page: int = 1) -> list[MediaEntity]:
        return await self._sorted_page(media_type, page, "TRENDING_DESC")

    async def get_popular(self, media_type: MediaType, page: int = 1) -> list[MediaEntity]:
        return await self._sorted_page(media_type, page, "POPULARITY_DESC")

    async def get_media_details(
        self,
        media_id: str,
        media_type: MediaType,
        *,
        include_characters: bool = False,
        include_staff: bool = False,
        include_reviews: bool = False,
    ) -> MediaDetailsEntity:
        data = await self._query(
            DETAILS_QUERY,
            {
                "id": int(media_id),
                "withCharacters": include_characters,
                "withStaff": include_staff,
            },
        )
        return self._decode_media(data, media_id).to_details()

    async def get_episodes(
        self, media_id: str, cover_image_hint: str | None = None
    ) -> list[EpisodeEntity]:
        data = await self._query(EPISODES_QUERY, {"id": int(media_id)})
        media = self._decode_media(data, media_id)
        fallback_thumbnail = cover_image_hint or (
            media.cover_image.best() if media.cover_image else None
        )

        episodes: dict[int, EpisodeEntity] = {}
        for index, raw in enumerate(media.streaming_episodes, start=1):
            number = _episode_number(raw.title) or index
            if number in episodes:
                continue
            episodes[number] = EpisodeEntity(
                id=f"anilist_{media_id}_{number}",
                media_id=media_id,
                number=number,
                title=raw.title,
                thumbnail=raw.thumbnail or fallback_thumbnail,
                source_provider=self.name,
            )
        return [episodes[number] for number in sorted(episodes)]

    async def get_episode_page(
        self,
        media_id: str,
        offset: int,
        limit: int,
        cover_image_hint: str | None = None,
    ) -> EpisodePage:
        episodes = await self.get_episodes(media_id, cover_image_hint)
        items, next_offset = slice_page(episodes, offset, limit)
        return EpisodePage(
            items=items,
            next_offset=next_offset,
            provider_id=self.name,
            provider_media_id=media_id,
        )

    async def get_chapters(self, media_id: str) -> list[ChapterEntity]:
        data = await self._query(CHAPTER_COUNT_QUERY, {"id": int(media_id)})
        media = self._decode_media(data, media_id)
        raise DataUnavailableError(
            "AniList only reports chapter totals",
            provider=self.name,
            total_count=media.chapters,
        )

    async def _sorted_page(
        self, media_type: MediaType, page: int, sort: str
    ) -> list[MediaEntity]:
        data = await self._query(
            PAGE_QUERY,
            {
                "page": page,
                "perPage": 20,
                "type": self._graphql_type(media_type),
                "sort": [sort],
            },
        )
        return self._decode_list((data.get("Page") or {}).get("media"))

    async def _query(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        payload = await self._request(
            "POST",
            "",
            json={"query": query, "variables": variables},
            headers={"Accept": "application/json"},
        )
        if not isinstance(payload, dict):
            raise ProviderError("Unexpected AniList payload", provider=self.name)
        data = payload.get("data")
        if not data:
            errors = payload.get("errors") or []
            message = errors[0].get("message") if errors else "empty response"
            raise ProviderError(f"AniList query failed: {message}", provider=self.name)
        return data

    def _decode_media(self, data: dict[str, Any], media_id: str) -> AniListMedia:
        raw = data.get("Media")
        if not raw:
            raise NotFoundError(f"AniList has no media {media_id}", provider=self.name)
        try:
            return AniListMedia.model_validate(raw)
        except ValidationError as exc:
            raise ProviderError(
                f"Malformed AniList media {media_id}", provider=self.name
            ) from exc

    def _decode_list(self, raw_items: Any) -> list[MediaEntity]:
        items: list[MediaEntity] = []
        for raw in raw_items or []:
            try:
                items.append(AniListMedia.model_validate(raw).to_entity())
            except ValidationError:
                logger.debug("Skipping malformed AniList entry: %s", raw)
        return items

    @staticmethod
    def _graphql_type(media_type: MediaType) -> str:
        return "MANGA" if media_type.is_readable else "ANIME"


def _episode_number(title: str | None) -> int | None:
    if not title:
        return None
    match = EPISODE_NUMBER_RE.search(title)
    return int(match.group(1)) if match else None
