"""Provider clients decoding canned upstream responses."""

from __future__ import annotations

import json
from typing import Any, Callable, cast

import httpx
import pytest

from app.config import Settings
from app.errors import (
    AuthRequiredError,
    DataUnavailableError,
    NotFoundError,
    ProviderError,
    RateLimitedError,
    TransientNetworkError,
)
from app.models import MediaType, ProviderId
from app.services.providers import (
    AniListClient,
    JikanClient,
    KitsuClient,
    SimklClient,
    TMDBClient,
)
from app.services.providers.registry import ProviderRegistry

FAST = {"requests_per_minute": 60_000, "max_retries": 0}


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def mock_client(
    handler: Callable[[httpx.Request], httpx.Response], base_url: str
) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


def _kitsu_episode(number: int) -> dict[str, Any]:
    return {
        "id": str(1000 + number),
        "type": "episodes",
        "attributes": {
            "number": number,
            "seasonNumber": 1,
            "canonicalTitle": f"Episode {number}",
            "airdate": "2013-04-07",
            "length": 24,
        },
    }


@pytest.mark.anyio("asyncio")
async def test_kitsu_episode_page_reads_next_offset() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "data": [_kitsu_episode(n) for n in range(1, 21)],
                "links": {
                    "next": "https://kitsu.io/api/edge/anime/7442/episodes?page%5Blimit%5D=20&page%5Boffset%5D=20"
                },
            },
        )

    async with mock_client(handler, "https://kitsu.io/api/edge") as http_client:
        client = KitsuClient(http_client, **FAST)
        page = await client.get_episode_page(
            "7442", 0, 50, cover_image_hint="https://example.com/cover.jpg"
        )

    assert requests[0].url.path == "/api/edge/anime/7442/episodes"
    assert requests[0].url.params["page[limit]"] == "20"
    assert len(page.items) == 20
    assert page.next_offset == 20
    assert page.items[0].source_provider == "kitsu"
    assert page.items[0].duration == 24
    assert page.items[0].thumbnail == "https://example.com/cover.jpg"


@pytest.mark.anyio("asyncio")
async def test_kitsu_get_episodes_follows_all_pages() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        offset = int(request.url.params["page[offset]"])
        if offset == 0:
            return httpx.Response(
                200,
                json={
                    "data": [_kitsu_episode(1), _kitsu_episode(2)],
                    "links": {"next": "https://kitsu.io/api/edge/anime/1/episodes?page%5Boffset%5D=2"},
                },
            )
        return httpx.Response(200, json={"data": [_kitsu_episode(3)], "links": {}})

    async with mock_client(handler, "https://kitsu.io/api/edge") as http_client:
        episodes = await KitsuClient(http_client, **FAST).get_episodes(
            "1", "https://example.com/cover.jpg"
        )

    assert [episode.number for episode in episodes] == [1, 2, 3]
    assert episodes[0].thumbnail == "https://example.com/cover.jpg"


@pytest.mark.anyio("asyncio")
async def test_kitsu_chapters_report_total_when_unlisted() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/chapters"):
            return httpx.Response(200, json={"data": [], "links": {}})
        return httpx.Response(
            200,
            json={
                "data": {
                    "id": "5",
                    "type": "manga",
                    "attributes": {"canonicalTitle": "Berserk", "chapterCount": 120},
                }
            },
        )

    async with mock_client(handler, "https://kitsu.io/api/edge") as http_client:
        with pytest.raises(DataUnavailableError) as excinfo:
            await KitsuClient(http_client, **FAST).get_chapters("5")

    assert excinfo.value.total_count == 120


@pytest.mark.anyio("asyncio")
async def test_kitsu_search_decodes_resources() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["filter[text]"] == "attack on titan"
        return httpx.Response(
            200,
            json={
                "data": [
                    {
                        "id": "7442",
                        "type": "anime",
                        "attributes": {
                            "canonicalTitle": "Attack on Titan",
                            "titles": {"en": "Attack on Titan", "en_jp": "Shingeki no Kyojin"},
                            "startDate": "2013-04-07",
                            "averageRating": "84.5",
                            "episodeCount": 25,
                            "posterImage": {"medium": "https://media.kitsu.io/poster.jpg"},
                        },
                    }
                ],
                "meta": {"count": 1},
                "links": {},
            },
        )

    async with mock_client(handler, "https://kitsu.io/api/edge") as http_client:
        result = await KitsuClient(http_client, **FAST).search_media(
            "attack on titan", MediaType.ANIME
        )

    media = result.items[0]
    assert result.total_count == 1
    assert media.id == "7442"
    assert media.year == 2013
    assert media.rating == pytest.approx(8.45)
    assert media.romaji_title == "Shingeki no Kyojin"
    assert media.cover_image == "https://media.kitsu.io/poster.jpg"


@pytest.mark.anyio("asyncio")
async def test_anilist_episodes_from_streaming_list() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["variables"] == {"id": 1}
        return httpx.Response(
            200,
            json={
                "data": {
                    "Media": {
                        "id": 1,
                        "episodes": 26,
                        "coverImage": {"large": "https://example.com/cover.jpg"},
                        "streamingEpisodes": [
                            {"title": "Episode 2 - Stray Dog Strut", "thumbnail": "https://example.com/2.jpg"},
                            {"title": "Episode 1 - Asteroid Blues", "thumbnail": None},
                        ],
                    }
                }
            },
        )

    async with mock_client(handler, "https://graphql.anilist.co") as http_client:
        episodes = await AniListClient(http_client, **FAST).get_episodes("1")

    assert [episode.number for episode in episodes] == [1, 2]
    assert episodes[0].thumbnail == "https://example.com/cover.jpg"
    assert episodes[1].thumbnail == "https://example.com/2.jpg"


@pytest.mark.anyio("asyncio")
async def test_anilist_graphql_errors_raise_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": None, "errors": [{"message": "Invalid query"}]})

    async with mock_client(handler, "https://graphql.anilist.co") as http_client:
        with pytest.raises(ProviderError, match="Invalid query"):
            await AniListClient(http_client, **FAST).search_media("Bebop", MediaType.ANIME)


@pytest.mark.anyio("asyncio")
async def test_anilist_chapters_only_report_totals() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"Media": {"id": 30002, "chapters": 364}}})

    async with mock_client(handler, "https://graphql.anilist.co") as http_client:
        with pytest.raises(DataUnavailableError) as excinfo:
            await AniListClient(http_client, **FAST).get_chapters("30002")

    assert excinfo.value.total_count == 364
    assert excinfo.value.provider == "anilist"


@pytest.mark.anyio("asyncio")
async def test_jikan_chapters_read_public_total_without_token() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"data": {"mal_id": 2, "chapters": 50}})

    async with mock_client(handler, "https://api.jikan.moe/v4") as http_client:
        with pytest.raises(DataUnavailableError) as excinfo:
            await JikanClient(http_client, **FAST).get_chapters("2")

    assert excinfo.value.total_count == 50
    assert [request.url.path for request in requests] == ["/v4/manga/2"]
    assert "Authorization" not in requests[0].headers


@pytest.mark.anyio("asyncio")
async def test_jikan_chapters_require_a_mal_token_when_total_is_unknown() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.host == "api.jikan.moe"
        return httpx.Response(200, json={"data": {"mal_id": 2, "chapters": None}})

    async with mock_client(handler, "https://api.jikan.moe/v4") as http_client:
        with pytest.raises(AuthRequiredError):
            await JikanClient(http_client, **FAST).get_chapters("2")


@pytest.mark.anyio("asyncio")
async def test_jikan_chapters_use_mal_api_with_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.jikan.moe":
            return httpx.Response(200, json={"data": {"mal_id": 2, "chapters": None}})
        assert request.url.host == "api.myanimelist.net"
        assert request.headers["Authorization"] == "Bearer secret"
        return httpx.Response(200, json={"id": 2, "num_chapters": 374})

    async with mock_client(handler, "https://api.jikan.moe/v4") as http_client:
        client = JikanClient(http_client, mal_access_token="secret", **FAST)
        with pytest.raises(DataUnavailableError) as excinfo:
            await client.get_chapters("2")

    assert excinfo.value.total_count == 374


@pytest.mark.anyio("asyncio")
async def test_jikan_episode_page_windows_upstream_pages() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        page = int(request.url.params["page"])
        start = (page - 1) * 100
        return httpx.Response(
            200,
            json={
                "data": [
                    {"mal_id": start + n, "title": f"Episode {start + n}"}
                    for n in range(1, 101)
                ],
                "pagination": {"has_next_page": page < 3},
            },
        )

    async with mock_client(handler, "https://api.jikan.moe/v4") as http_client:
        page = await JikanClient(http_client, **FAST).get_episode_page("21", 190, 20)

    assert [episode.number for episode in page.items] == list(range(191, 211))
    assert page.next_offset == 210


@pytest.mark.anyio("asyncio")
async def test_tmdb_search_sends_key_and_air_year() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/3/search/tv"
        assert request.url.params["api_key"] == "tmdb-key"
        assert request.url.params["first_air_date_year"] == "2013"
        return httpx.Response(
            200,
            json={
                "page": 1,
                "total_pages": 1,
                "total_results": 1,
                "results": [
                    {
                        "id": 1429,
                        "name": "Attack on Titan",
                        "original_name": "進撃の巨人",
                        "first_air_date": "2013-04-07",
                        "poster_path": "/poster.jpg",
                    }
                ],
            },
        )

    async with mock_client(handler, "https://api.themoviedb.org/3") as http_client:
        client = TMDBClient(http_client, api_key="tmdb-key", **FAST)
        result = await client.search_media("Attack on Titan", MediaType.ANIME, year=2013)

    media = result.items[0]
    assert media.type is MediaType.TV_SHOW
    assert media.cover_image == "https://image.tmdb.org/t/p/w500/poster.jpg"
    assert media.native_title == "進撃の巨人"
    assert result.has_next_page is False


def test_credentialed_clients_require_credentials() -> None:
    http_client = cast(httpx.AsyncClient, object())

    with pytest.raises(ValueError):
        TMDBClient(http_client, api_key=None)
    with pytest.raises(ValueError):
        SimklClient(http_client, client_id="")


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize(
    ("status", "error"),
    [
        (404, NotFoundError),
        (401, AuthRequiredError),
        (429, RateLimitedError),
        (503, TransientNetworkError),
        (400, ProviderError),
    ],
)
async def test_status_codes_map_to_errors(status: int, error: type[ProviderError]) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"errors": []})

    async with mock_client(handler, "https://kitsu.io/api/edge") as http_client:
        with pytest.raises(error):
            await KitsuClient(http_client, **FAST).get_media_details("1", MediaType.ANIME)


@pytest.mark.anyio("asyncio")
async def test_rate_limited_requests_are_retried() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            return httpx.Response(429, headers={"Retry-After": "0.01"})
        return httpx.Response(200, json={"data": [], "links": {}})

    async with mock_client(handler, "https://kitsu.io/api/edge") as http_client:
        client = KitsuClient(http_client, requests_per_minute=60_000, max_retries=2)
        page = await client.get_chapter_page("5", 0, 20)

    assert len(attempts) == 2
    assert page.items == []


def test_registry_skips_providers_without_credentials() -> None:
    settings = Settings(_env_file=None, TMDB_API_KEY="", SIMKL_CLIENT_ID="simkl-id")
    http_clients = {provider: cast(httpx.AsyncClient, object()) for provider in ProviderId}

    registry = ProviderRegistry.from_settings(settings, http_clients)

    assert ProviderId.TMDB not in registry.provider_ids
    assert ProviderId.SIMKL in registry.provider_ids
    assert isinstance(registry.get("mal"), JikanClient)
    assert registry.get("crunchyroll") is None
    assert [client.name for client in registry.available(MediaType.MANGA)] == [
        "anilist",
        "kitsu",
        "jikan",
    ]
