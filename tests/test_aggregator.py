"""Fallback ordering and placeholder synthesis in the data aggregator."""

from __future__ import annotations

import asyncio
from datetime import date

import httpx
import pytest

from app.errors import (
    AuthRequiredError,
    DataUnavailableError,
    NotFoundError,
    TransientNetworkError,
)
from app.models import (
    ChapterEntity,
    EpisodeEntity,
    MediaEntity,
    MediaType,
    ProviderId,
    ProviderMatch,
)
from app.services.aggregator import DataAggregator
from app.services.providers import JikanClient, KitsuClient


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def _media(source: str = "anilist", **overrides: object) -> MediaEntity:
    fields: dict[str, object] = {
        "id": "30013",
        "title": "One Punch Man",
        "type": MediaType.MANGA,
        "source_id": source,
        "cover_image": "https://example.com/primary.jpg",
        "start_date": date(2012, 6, 14),
    }
    fields.update(overrides)
    return MediaEntity(**fields)  # type: ignore[arg-type]


def _match(provider: ProviderId, media_id: str, **entity: object) -> ProviderMatch:
    return ProviderMatch(
        provider_id=provider,
        provider_media_id=media_id,
        confidence=0.9,
        matched_title="One Punch Man",
        media_entity=MediaEntity(
            id=media_id,
            title="One Punch Man",
            type=MediaType.MANGA,
            source_id=provider.value,
            **entity,  # type: ignore[arg-type]
        ),
    )


def _episodes(provider: str, count: int) -> list[EpisodeEntity]:
    return [
        EpisodeEntity(id=f"{provider}-{n}", media_id="x", number=n, source_provider=provider)
        for n in range(1, count + 1)
    ]


def _chapters(provider: str, count: int) -> list[ChapterEntity]:
    return [
        ChapterEntity(id=f"{provider}-{n}", media_id="x", number=float(n), source_provider=provider)
        for n in range(1, count + 1)
    ]


@pytest.mark.anyio("asyncio")
async def test_first_non_empty_episode_list_wins() -> None:
    calls: list[tuple[str, ProviderId, str | None]] = []
    responses = {
        ProviderId.ANILIST: [],
        ProviderId.KITSU: TransientNetworkError("down", provider="kitsu"),
        ProviderId.JIKAN: _episodes("jikan", 12),
        ProviderId.TMDB: _episodes("tmdb", 24),
    }

    async def fetcher(media_id: str, provider: ProviderId, cover: str | None) -> list[EpisodeEntity]:
        calls.append((media_id, provider, cover))
        outcome = responses[provider]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    media = _media(type=MediaType.ANIME)
    matches = {
        ProviderId.KITSU: _match(ProviderId.KITSU, "k1", cover_image="https://example.com/kitsu.jpg"),
        ProviderId.JIKAN: _match(ProviderId.JIKAN, "j1"),
        ProviderId.TMDB: _match(ProviderId.TMDB, "t1"),
    }

    episodes = await DataAggregator().aggregate_episodes(media, matches, fetcher)

    assert [episode.source_provider for episode in episodes] == ["jikan"] * 12
    assert calls == [
        ("30013", ProviderId.ANILIST, "https://example.com/primary.jpg"),
        ("k1", ProviderId.KITSU, "https://example.com/kitsu.jpg"),
        ("j1", ProviderId.JIKAN, "https://example.com/primary.jpg"),
    ]


@pytest.mark.anyio("asyncio")
async def test_episodes_empty_when_every_provider_fails() -> None:
    async def fetcher(media_id: str, provider: ProviderId, cover: str | None) -> list[EpisodeEntity]:
        raise NotFoundError("missing", provider=provider.value)

    episodes = await DataAggregator().aggregate_episodes(
        _media(type=MediaType.ANIME, total_episodes=12), {}, fetcher
    )

    assert episodes == []


@pytest.mark.anyio("asyncio")
async def test_auth_required_is_never_swallowed() -> None:
    async def fetcher(media_id: str, provider: ProviderId) -> list[ChapterEntity]:
        if provider is ProviderId.JIKAN:
            raise AuthRequiredError("token needed", provider="jikan")
        raise DataUnavailableError("none", provider=provider.value)

    with pytest.raises(AuthRequiredError):
        await DataAggregator().aggregate_chapters(
            _media(), {ProviderId.JIKAN: _match(ProviderId.JIKAN, "44347")}, fetcher
        )


@pytest.mark.anyio("asyncio")
async def test_real_chapters_are_returned_without_placeholders() -> None:
    async def fetcher(media_id: str, provider: ProviderId) -> list[ChapterEntity]:
        if provider is ProviderId.KITSU:
            return _chapters("kitsu", 3)
        raise DataUnavailableError("counts only", provider=provider.value, total_count=200)

    chapters = await DataAggregator().aggregate_chapters(
        _media(total_chapters=200),
        {ProviderId.KITSU: _match(ProviderId.KITSU, "k9")},
        fetcher,
    )

    assert [chapter.source_provider for chapter in chapters] == ["kitsu"] * 3


@pytest.mark.anyio("asyncio")
async def test_placeholders_use_the_reported_total() -> None:
    """Fifty placeholders are attributed to the provider that knew the count."""

    async def fetcher(media_id: str, provider: ProviderId) -> list[ChapterEntity]:
        if provider is ProviderId.JIKAN:
            raise DataUnavailableError("counts only", provider="jikan", total_count=50)
        raise DataUnavailableError("nothing", provider=provider.value)

    chapters = await DataAggregator().aggregate_chapters(
        _media(source="simkl"),
        {
            ProviderId.KITSU: _match(ProviderId.KITSU, "k9"),
            ProviderId.JIKAN: _match(ProviderId.JIKAN, "44347"),
        },
        fetcher,
    )

    assert len(chapters) == 50
    assert chapters[0].title == "Chapter 1"
    assert chapters[-1].title == "Chapter 50"
    assert chapters[-1].number == 50.0
    assert {chapter.source_provider for chapter in chapters} == {"jikan"}
    assert chapters[0].id == "jikan_chapter_44347_1"
    assert {chapter.media_id for chapter in chapters} == {"30013"}


@pytest.mark.anyio("asyncio")
async def test_primary_total_takes_precedence_for_placeholders() -> None:
    async def fetcher(media_id: str, provider: ProviderId) -> list[ChapterEntity]:
        raise DataUnavailableError("counts only", provider=provider.value, total_count=999)

    chapters = await DataAggregator().aggregate_chapters(
        _media(total_chapters=7),
        {ProviderId.JIKAN: _match(ProviderId.JIKAN, "44347")},
        fetcher,
    )

    assert len(chapters) == 7
    assert chapters[0].source_provider == "anilist"


@pytest.mark.anyio("asyncio")
async def test_match_entity_totals_feed_placeholders() -> None:
    async def fetcher(media_id: str, provider: ProviderId) -> list[ChapterEntity]:
        return []

    chapters = await DataAggregator().aggregate_chapters(
        _media(),
        {ProviderId.KITSU: _match(ProviderId.KITSU, "k9", total_chapters=4)},
        fetcher,
    )

    assert [chapter.id for chapter in chapters] == [
        f"kitsu_chapter_k9_{n}" for n in range(1, 5)
    ]


@pytest.mark.anyio("asyncio")
async def test_no_chapters_without_any_known_total() -> None:
    async def fetcher(media_id: str, provider: ProviderId) -> list[ChapterEntity]:
        raise TransientNetworkError("down", provider=provider.value)

    assert await DataAggregator().aggregate_chapters(_media(), {}, fetcher) == []


@pytest.mark.anyio("asyncio")
async def test_configured_priority_is_respected() -> None:
    calls: list[ProviderId] = []

    async def fetcher(media_id: str, provider: ProviderId, cover: str | None) -> list[EpisodeEntity]:
        calls.append(provider)
        return []

    aggregator = DataAggregator(episode_priority=(ProviderId.TMDB, ProviderId.KITSU))
    matches = {
        ProviderId.KITSU: _match(ProviderId.KITSU, "k1"),
        ProviderId.TMDB: _match(ProviderId.TMDB, "t1"),
        ProviderId.JIKAN: _match(ProviderId.JIKAN, "j1"),
    }

    await aggregator.aggregate_episodes(_media(type=MediaType.ANIME), matches, fetcher)

    assert calls == [ProviderId.ANILIST, ProviderId.TMDB, ProviderId.KITSU]


@pytest.mark.anyio("asyncio")
async def test_kitsu_count_yields_placeholders_without_a_mal_token() -> None:
    """A known Kitsu total is enough; MyAnimeList is not asked for a token."""

    def kitsu_handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/chapters"):
            return httpx.Response(200, json={"data": [], "links": {}})
        return httpx.Response(
            200,
            json={
                "data": {
                    "id": "5",
                    "type": "manga",
                    "attributes": {"canonicalTitle": "One Punch Man", "chapterCount": 50},
                }
            },
        )

    def jikan_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"mal_id": 44347, "chapters": None}})

    fast = {"requests_per_minute": 60_000, "max_retries": 0}
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(kitsu_handler), base_url="https://kitsu.io/api/edge"
    ) as kitsu_http, httpx.AsyncClient(
        transport=httpx.MockTransport(jikan_handler), base_url="https://api.jikan.moe/v4"
    ) as jikan_http:
        clients = {
            ProviderId.KITSU: KitsuClient(kitsu_http, **fast),
            ProviderId.JIKAN: JikanClient(jikan_http, **fast),
        }

        async def fetcher(media_id: str, provider: ProviderId) -> list[ChapterEntity]:
            return await clients[provider].get_chapters(media_id)

        chapters = await DataAggregator().aggregate_chapters(
            _media(source="kitsu", id="5"),
            {ProviderId.JIKAN: _match(ProviderId.JIKAN, "44347", total_chapters=50)},
            fetcher,
        )

    assert len(chapters) == 50
    assert chapters[-1].title == "Chapter 50"


@pytest.mark.anyio("asyncio")
async def test_count_only_sources_are_skipped_once_a_total_is_known() -> None:
    calls: list[ProviderId] = []

    async def fetcher(media_id: str, provider: ProviderId) -> list[ChapterEntity]:
        calls.append(provider)
        if provider is ProviderId.KITSU:
            raise DataUnavailableError("counts only", provider="kitsu", total_count=12)
        raise AuthRequiredError("token needed", provider=provider.value)

    chapters = await DataAggregator().aggregate_chapters(
        _media(source="kitsu"),
        {
            ProviderId.ANILIST: _match(ProviderId.ANILIST, "a1"),
            ProviderId.JIKAN: _match(ProviderId.JIKAN, "44347"),
        },
        fetcher,
    )

    assert calls == [ProviderId.KITSU]
    assert len(chapters) == 12


@pytest.mark.anyio("asyncio")
async def test_cancelled_chapter_fetch_stops_the_fallback_chain() -> None:
    calls: list[ProviderId] = []
    started = asyncio.Event()

    async def fetcher(media_id: str, provider: ProviderId) -> list[ChapterEntity]:
        calls.append(provider)
        if provider is ProviderId.ANILIST:
            started.set()
            await asyncio.sleep(30)
        return _chapters(provider.value, 1)

    task = asyncio.create_task(
        DataAggregator().aggregate_chapters(
            _media(), {ProviderId.KITSU: _match(ProviderId.KITSU, "k9")}, fetcher
        )
    )
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert calls == [ProviderId.ANILIST]


@pytest.mark.anyio("asyncio")
async def test_cancelled_episode_fetch_stops_the_fallback_chain() -> None:
    calls: list[ProviderId] = []
    started = asyncio.Event()

    async def fetcher(
        media_id: str, provider: ProviderId, cover: str | None
    ) -> list[EpisodeEntity]:
        calls.append(provider)
        if provider is ProviderId.ANILIST:
            started.set()
            await asyncio.sleep(30)
        return _episodes(provider.value, 1)

    task = asyncio.create_task(
        DataAggregator().aggregate_episodes(
            _media(type=MediaType.ANIME),
            {ProviderId.KITSU: _match(ProviderId.KITSU, "k9")},
            fetcher,
        )
    )
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert calls == [ProviderId.ANILIST]
