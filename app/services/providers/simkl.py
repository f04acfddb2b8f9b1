"""Simkl REST client."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from ...errors import ProviderError
from ...models import (
    EpisodeEntity,
    MediaDetailsEntity,
    MediaEntity,
    MediaType,
    ProviderId,
    SearchResult,
)
from ...utils import coerce_int, parse_date
from .base import ProviderClient

logger = logging.getLogger(__name__)

POSTER_URL = "https://simkl.in/shd/poster/{}_original.jpg"
FANART_URL = "https://simkl.in/shd/fanart/{}_original.jpg"
EPISODE_IMAGE_URL = "https://simkl.in/episodes/{}_w.jpg"
SIMKL_PAGE_LIMIT = 20


class SimklItem(BaseModel):
    title: str
    year: int | None = None
    poster: str | None = None
    fanart: str | None = None
    overview: str | None = None
    status: str | None = None
    rating: float | None = None
    genres: list[str] = Field(default_factory=list)
    episodes: int | None = None
    ids: dict[str, Any] = Field(default_factory=dict)

    @property
    def simkl_id(self) -> str | None:
        value = self.ids.get("simkl") or self.ids.get("simkl_id")
        return str(value) if value is not None else None

    def entity_fields(self, media_type: MediaType) -> dict[str, Any]:
        return {
            "id": self.simkl_id or "",
            "title": self.title,
            "type": media_type,
            "source_id": ProviderId.SIMKL.value,
            "source_name": "Simkl",
            "cover_image": POSTER_URL.format(self.poster) if self.poster else None,
            "banner_image": FANART_URL.format(self.fanart) if self.fanart else None,
            "total_episodes": self.episodes,
            "start_date": date(self.year, 1, 1) if self.year else None,
            "status": self.status,
            "rating": self.rating,
            "genres": self.genres,
        }


class SimklClient(ProviderClient):
    """Client for the Simkl catalog, authenticated by a public client id."""

    provider_id = ProviderId.SIMKL
    display_name = "Simkl"
    media_types = frozenset(
        {MediaType.ANIME, MediaType.TV_SHOW, MediaType.MOVIE, MediaType.CARTOON}
    )

    def __init__(self, http_client: httpx.AsyncClient, *, client_id: str | None, **kwargs: Any):
        if not client_id:
            raise ValueError("Simkl client id is required when initialising SimklClient")
        super().__init__(http_client, **kwargs)
        self._client_id = client_id

    async def search_media(
        self,
        query: str,
        media_type: MediaType,
        page: int = 1,
        year: int | None = None,
    ) -> SearchResult:
        params: dict[str, Any] = {"q": query, "page": page, "limit": SIMKL_PAGE_LIMIT}
        if year:
            params["year"] = year
        kind = "movie" if media_type is MediaType.MOVIE else self._kind(media_type)
        payload = await self._get(f"/search/{kind}", params)
        items = self._decode_list(payload, media_type)
        return SearchResult(
            items=items,
            total_count=len(items),
            current_page=page,
            has_next_page=len(items) >= SIMKL_PAGE_LIMIT,
            per_page=SIMKL_PAGE_LIMIT,
        )

    async def get_trending(self, media_type: MediaType, page: int = 1) -> list[MediaEntity]:
        payload = await self._get(
            f"/trending/{self._kind(media_type)}", {"page": page, "limit": SIMKL_PAGE_LIMIT}
        )
        return self._decode_list(payload, media_type)

    async def get_popular(self, media_type: MediaType, page: int = 1) -> list[MediaEntity]:
        payload = await self._get(
            f"/popular/{self._kind(media_type)}", {"page": page, "limit": SIMKL_PAGE_LIMIT}
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
        payload = await self._get(
            f"/{self._kind(media_type)}/{media_id}", {"extended": "full"}
        )
        if not isinstance(payload, dict):
            raise ProviderError("Unexpected Simkl details payload", provider=self.name)
        try:
            item = SimklItem.model_validate(payload)
        except ValidationError as exc:
            raise ProviderError(
                f"Malformed Simkl record {media_id}", provider=self.name
            ) from exc
        fields = item.entity_fields(media_type)
        fields["id"] = fields["id"] or media_id
        return MediaDetailsEntity(**fields, description=item.overview)

    async def get_episodes(
        self, media_id: str, cover_image_hint: str | None = None
    ) -> list[EpisodeEntity]:
        payload = await self._get(f"/tv/episodes/{media_id}", {"extended": "full"})
        episodes: list[EpisodeEntity] = []
        for raw in payload if isinstance(payload, list) else []:
            if raw.get("type") not in (None, "episode"):
                continue
            number = coerce_int(raw.get("episode"))
            if number is None:
                continue
            image = raw.get("img")
            episodes.append(
                EpisodeEntity(
                    id=f"simkl_{media_id}_{number}",
                    media_id=media_id,
                    number=number,
                    season_number=coerce_int(raw.get("season")),
                    title=raw.get("title"),
                    thumbnail=EPISODE_IMAGE_URL.format(image) if image else cover_image_hint,
                    release_date=parse_date(raw.get("date")),
                    source_provider=self.name,
                )
            )
        return episodes

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        return await self._request(
            "GET", path, params={**params, "client_id": self._client_id}
        )

    @staticmethod
    def _decode_list(payload: Any, media_type: MediaType) -> list[MediaEntity]:
        items: list[MediaEntity] = []
        for raw in payload if isinstance(payload, list) else []:
            # Trending and popular lists wrap entries under "show" or "movie".
            record = raw.get("show") or raw.get("movie") or raw
            try:
                item = SimklItem.model_validate(record)
            except ValidationError:
                logger.debug("Skipping malformed Simkl entry: %s", raw)
                continue
            if item.simkl_id is None:
                continue
            items.append(MediaEntity(**item.entity_fields(media_type)))
        return items

    @staticmethod
    def _kind(media_type: MediaType) -> str:
        if media_type is MediaType.MOVIE:
            return "movies"
        if media_type is MediaType.ANIME:
            return "anime"
        return "tv"
