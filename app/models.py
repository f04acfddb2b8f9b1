"""Pydantic models describing canonical media payloads."""

from __future__ import annotations

from datetime import date
from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class MediaType(str, Enum):
    """Kinds of media a provider may describe."""

    ANIME = "anime"
    MANGA = "manga"
    NOVEL = "novel"
    MOVIE = "movie"
    TV_SHOW = "tvShow"
    CARTOON = "cartoon"
    DOCUMENTARY = "documentary"
    LIVESTREAM = "livestream"
    NSFW = "nsfw"

    @property
    def is_readable(self) -> bool:
        return self in (MediaType.MANGA, MediaType.NOVEL)


class ProviderId(str, Enum):
    """Identifiers of the supported metadata catalogs."""

    ANILIST = "anilist"
    KITSU = "kitsu"
    JIKAN = "jikan"
    TMDB = "tmdb"
    SIMKL = "simkl"

    @classmethod
    def parse(cls, value: str | None) -> "ProviderId | None":
        """Return the provider for ``value`` accepting common aliases."""

        if not value:
            return None
        key = value.strip().lower()
        key = PROVIDER_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            return None


PROVIDER_ALIASES: dict[str, str] = {
    "mal": "jikan",
    "myanimelist": "jikan",
    "themoviedb": "tmdb",
}

AGGREGATED_PROVIDER = "aggregated"


class MediaEntity(BaseModel):
    """Immutable snapshot of a title as a provider reported it."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    title: str
    type: MediaType
    source_id: str = Field(validation_alias=AliasChoices("source_id", "sourceId"))
    source_name: str = Field(
        default="", validation_alias=AliasChoices("source_name", "sourceName")
    )
    cover_image: str | None = Field(
        default=None, validation_alias=AliasChoices("cover_image", "coverImage")
    )
    banner_image: str | None = Field(
        default=None, validation_alias=AliasChoices("banner_image", "bannerImage")
    )
    total_episodes: int | None = Field(
        default=None,
        validation_alias=AliasChoices("total_episodes", "totalEpisodes"),
    )
    total_chapters: int | None = Field(
        default=None,
        validation_alias=AliasChoices("total_chapters", "totalChapters"),
    )
    start_date: date | None = Field(
        default=None, validation_alias=AliasChoices("start_date", "startDate")
    )
    status: str | None = None
    rating: float | None = None
    genres: list[str] = Field(default_factory=list)
    english_title: str | None = None
    romaji_title: str | None = None
    native_title: str | None = None
    synonyms: list[str] = Field(default_factory=list)

    @property
    def year(self) -> int | None:
        return self.start_date.year if self.start_date else None

    @property
    def alt_titles(self) -> list[str]:
        """Return alternate titles without duplicates of the primary one."""

        seen = {self.title}
        titles: list[str] = []
        for candidate in (
            self.english_title,
            self.romaji_title,
            self.native_title,
            *self.synonyms,
        ):
            if candidate and candidate not in seen:
                seen.add(candidate)
                titles.append(candidate)
        return titles

    def with_images(
        self, *, cover_image: str | None = None, banner_image: str | None = None
    ) -> "MediaEntity":
        """Return a copy with empty artwork fields filled from the arguments."""

        update: dict[str, str] = {}
        if not self.cover_image and cover_image:
            update["cover_image"] = cover_image
        if not self.banner_image and banner_image:
            update["banner_image"] = banner_image
        if not update:
            return self
        return self.model_copy(update=update)


class Character(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    role: str | None = None
    image: str | None = None


class StaffMember(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    role: str | None = None
    image: str | None = None


class Recommendation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    source_id: str
    cover_image: str | None = None


class MediaDetailsEntity(MediaEntity):
    """Full details record including people and related titles."""

    description: str | None = None
    characters: list[Character] = Field(default_factory=list)
    staff: list[StaffMember] = Field(default_factory=list)
    recommendations: list[Recommendation] = Field(default_factory=list)


class EpisodeEntity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    media_id: str
    number: int
    season_number: int | None = None
    title: str | None = None
    thumbnail: str | None = None
    release_date: date | None = None
    duration: int | None = None
    source_provider: str


class ChapterEntity(BaseModel):
    """Chapter record; numbers are fractional to allow entries like 10.5."""

    model_config = ConfigDict(frozen=True)

    id: str
    media_id: str
    number: float
    title: str | None = None
    release_date: date | None = None
    page_count: int | None = None
    source_provider: str


class ProviderMatch(BaseModel):
    """A believed correspondence between a title and a provider entry."""

    model_config = ConfigDict(frozen=True)

    provider_id: ProviderId
    provider_media_id: str
    confidence: float = Field(ge=0.0, le=1.0)
    matched_title: str
    media_entity: MediaEntity | None = None


class SearchResult(BaseModel):
    items: list[MediaEntity] = Field(default_factory=list)
    total_count: int = 0
    current_page: int = 1
    has_next_page: bool = False
    per_page: int = 0


class EpisodePage(BaseModel):
    """Cursor page of episodes; ``next_offset`` is ``None`` on the last page."""

    items: list[EpisodeEntity] = Field(default_factory=list)
    next_offset: int | None = None
    provider_id: str
    provider_media_id: str | None = None

    @property
    def has_more(self) -> bool:
        return self.next_offset is not None


class ChapterPage(BaseModel):
    items: list[ChapterEntity] = Field(default_factory=list)
    next_offset: int | None = None
    provider_id: str
    provider_media_id: str | None = None

    @property
    def has_more(self) -> bool:
        return self.next_offset is not None


class EpisodePageRequest(BaseModel):
    media: MediaEntity
    provider_id: str | None = None
    provider_media_id: str | None = None
    offset: int = 0
    limit: int = 50


class ChapterPageRequest(BaseModel):
    media: MediaEntity
    provider_id: str | None = None
    provider_media_id: str | None = None
    offset: int = 0
    limit: int = 20
