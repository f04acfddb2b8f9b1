"""Client for The Movie Database (TMDB)."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from ...errors import DataUnavailableError, ProviderError
from ...models import (
    Character,
    EpisodeEntity,
    MediaDetailsEntity,
    MediaEntity,
    MediaType,
    ProviderId,
    Recommendation,
    SearchResult,
    StaffMember,
)
from ...utils import parse_date
from .base import ProviderClient

logger = logging.getLogger(__name__)

POSTER_BASE_URL = "https://image.tmdb.org/t/p/w500"
BACKDROP_BASE_URL = "https://image.tmdb.org/t/p/w780"
STILL_BASE_URL = "https://image.tmdb.org/t/p/w300"


class TMDBGenre(BaseModel):
    id: int
    name: str


class TMDBResult(BaseModel):
    """Movie or TV record as returned by search, list and detail endpoints."""

    id: int
    title: str | None = None
    name: str | None = None
    original_title: str | None = None
    original_name: str | None = None
    overview: str | None = None
    poster_path: str | None = None
    backdrop_path: str | None = None
    release_date: str | None = None
    first_air_date: str | None = None
    vote_average: float | None = None
    status: str | None = None
    number_of_episodes: int | None = None
    genres: list[TMDBGenre] = Field(default_factory=list)

    def entity_fields(self, is_movie: bool) -> dict[str, Any]:
        title = self.title or self.name or ""
        original = self.original_title or self.original_name
        return {
            "id": str(self.id),
            "title": title,
            "type": MediaType.MOVIE if is_movie else MediaType.TV_SHOW,
            "source_id": ProviderId.TMDB.value,
            "source_name": "TMDB",
            "cover_image": build_image_url(self.poster_path, POSTER_BASE_URL),
            "banner_image": build_image_url(self.backdrop_path, BACKDROP_BASE_URL),
            "total_episodes": self.number_of_episodes,
            "start_date": parse_date(self.release_date if is_movie else self.first_air_date),
            "status": self.status,
            "rating": self.vote_average or None,
            "genres": [genre.name for genre in self.genres],
            "native_title": original if original and original != title else None,
        }


class TMDBSeason(BaseModel):
    season_number: int
    episode_count: int | None = None


class TMDBEpisode(BaseModel):
    id: int
    episode_number: int
    season_number: int | None = None
    name: str | None = None
    still_path: str | None = None
    air_date: str | None = None
    runtime: int | None = None


class TMDBClient(ProviderClient):
    """Client for TMDB; anime is treated as television."""

    provider_id = ProviderId.TMDB
    display_name = "TMDB"
    media_types = frozenset(
        {
            MediaType.MOVIE,
            MediaType.TV_SHOW,
            MediaType.ANIME,
            MediaType.CARTOON,
            MediaType.DOCUMENTARY,
        }
    )

    def __init__(self, http_client: httpx.AsyncClient, *, api_key: str | None, **kwargs: Any):
        if not api_key:
            raise ValueError("TMDB API key is required when initialising TMDBClient")
        super().__init__(http_client, **kwargs)
        self._api_key = api_key

    async def search_media(
        self,
        query: str,
        media_type: MediaType,
        page: int = 1,
        year: int | None = None,
    ) -> SearchResult:
        is_movie = media_type is MediaType.MOVIE
        params: dict[str, Any] = {
            "query": query,
            "include_adult": "false",
            "language": "en-US",
            "page": page,
        }
        if year:
            params["year" if is_movie else "first_air_date_year"] = year
        payload = await self._get("/search/movie" if is_movie else "/search/tv", params)
        items = self._decode_list(payload, is_movie)
        return SearchResult(
            items=items,
            total_count=payload.get("total_results") or len(items),
            current_page=payload.get("page") or page,
            has_next_page=(payload.get("page") or page) < (payload.get("total_pages") or 0),
            per_page=20,
        )

    async def get_trending(self, media_type: MediaType, page: int = 1) -> list[MediaEntity]:
        is_movie = media_type is MediaType.MOVIE
        payload = await self._get(
            f"/trending/{'movie' if is_movie else 'tv'}/week", {"page": page}
        )
        return self._decode_list(payload, is_movie)

    async def get_popular(self, media_type: MediaType, page: int = 1) -> list[MediaEntity]:
        is_movie = media_type is MediaType.MOVIE
        payload = await self._get(
            f"/{'movie' if is_movie else 'tv'}/popular", {"page": page}
        )
        return self._decode_list(payload, is_movie)

    async def get_media_details(
        self,
        media_id: str,
        media_type: MediaType,
        *,
        include_characters: bool = False,
        include_staff: bool = False,
        include_reviews: bool = False,
    ) -> MediaDetailsEntity:
        is_movie = media_type is MediaType.MOVIE
        append = ["recommendations"]
        if include_characters or include_staff:
            append.append("credits")
        payload = await self._get(
            f"/{'movie' if is_movie else 'tv'}/{media_id}",
            {"append_to_response": ",".join(append)},
        )
        try:
            result = TMDBResult.model_validate(payload)
        except ValidationError as exc:
            raise ProviderError(
                f"Malformed TMDB record {media_id}", provider=self.name
            ) from exc

        credits = payload.get("credits") or {}
        characters = [
            Character(
                id=str(member.get("id")),
                name=member["character"],
                role=member.get("name"),
                image=build_image_url(member.get("profile_path"), POSTER_BASE_URL),
            )
            for member in credits.get("cast") or []
            if include_characters and member.get("character")
        ]
        staff = [
            StaffMember(
                id=str(member.get("id")),
                name=member["name"],
                role=member.get("job"),
                image=build_image_url(member.get("profile_path"), POSTER_BASE_URL),
            )
            for member in credits.get("crew") or []
            if include_staff and member.get("name")
        ]
        recommendations = [
            Recommendation(
                id=str(item.id),
                title=item.title or item.name or "",
                source_id=self.name,
                cover_image=build_image_url(item.poster_path, POSTER_BASE_URL),
            )
            for item in self._decode_results(payload.get("recommendations") or {})
        ]
        return MediaDetailsEntity(
            **result.entity_fields(is_movie),
            description=result.overview,
            characters=characters,
            staff=staff,
            recommendations=recommendations,
        )

    async def get_episodes(
        self, media_id: str, cover_image_hint: str | None = None
    ) -> list[EpisodeEntity]:
        """Return every regular-season episode numbered across seasons."""

        show = await self._get(f"/tv/{media_id}", {})
        seasons: list[TMDBSeason] = []
        for raw in show.get("seasons") or []:
            try:
                season = TMDBSeason.model_validate(raw)
            except ValidationError:
                continue
            if season.season_number > 0:
                seasons.append(season)
        if not seasons:
            raise DataUnavailableError(
                "TMDB lists no seasons for this title",
                provider=self.name,
                total_count=show.get("number_of_episodes"),
            )

        episodes: list[EpisodeEntity] = []
        for season in sorted(seasons, key=lambda item: item.season_number):
            payload = await self._get(f"/tv/{media_id}/season/{season.season_number}", {})
            for raw in payload.get("episodes") or []:
                try:
                    episode = TMDBEpisode.model_validate(raw)
                except ValidationError:
                    logger.debug("Skipping malformed TMDB episode: %s", raw)
                    continue
                episodes.append(
                    EpisodeEntity(
                        id=f"tmdb_{episode.id}",
                        media_id=media_id,
                        number=len(episodes) + 1,
                        season_number=episode.season_number or season.season_number,
                        title=episode.name,
                        thumbnail=build_image_url(episode.still_path, STILL_BASE_URL)
                        or cover_image_hint,
                        release_date=parse_date(episode.air_date),
                        duration=episode.runtime,
                        source_provider=self.name,
                    )
                )
        return episodes

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        payload = await self._request(
            "GET", path, params={**params, "api_key": self._api_key}
        )
        if not isinstance(payload, dict):
            raise ProviderError("Unexpected TMDB payload", provider=self.name)
        return payload

    @staticmethod
    def _decode_results(payload: dict[str, Any]) -> list[TMDBResult]:
        results: list[TMDBResult] = []
        for raw in payload.get("results") or []:
            try:
                results.append(TMDBResult.model_validate(raw))
            except ValidationError:
                logger.debug("Skipping malformed TMDB result: %s", raw)
        return results

    def _decode_list(self, payload: dict[str, Any], is_movie: bool) -> list[MediaEntity]:
        return [
            MediaEntity(**result.entity_fields(is_movie))
            for result in self._decode_results(payload)
        ]


def build_image_url(path: str | None, base_url: str) -> str | None:
    if not path:
        return None
    if path.startswith("http"):
        return path
    return f"{base_url}{path}"
