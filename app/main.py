"""Entry point for the FastAPI-powered metadata aggregation service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, settings
from .database import Database
from .errors import AuthRequiredError, NotFoundError, ProviderError
from .models import (
    AGGREGATED_PROVIDER,
    ChapterPageRequest,
    EpisodePageRequest,
    MediaType,
    ProviderId,
)
from .services.aggregator import DataAggregator
from .services.match_cache import MatchCache
from .services.matcher import CrossProviderMatcher
from .services.orchestrator import AggregationOrchestrator
from .services.providers.registry import ProviderRegistry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def provider_base_urls(config: Settings) -> dict[ProviderId, str]:
    return {
        ProviderId.ANILIST: str(config.anilist_api_url),
        ProviderId.KITSU: str(config.kitsu_api_url),
        ProviderId.JIKAN: str(config.jikan_api_url),
        ProviderId.TMDB: str(config.tmdb_api_url),
        ProviderId.SIMKL: str(config.simkl_api_url),
    }


def build_orchestrator(
    config: Settings, registry: ProviderRegistry, cache: MatchCache
) -> AggregationOrchestrator:
    """Wire the matcher and aggregator around an already built registry."""

    matcher = CrossProviderMatcher(
        cache,
        providers=registry.provider_ids,
        threshold=config.match_confidence_threshold,
        timeout=config.provider_timeout_seconds,
        max_concurrency=config.max_concurrent_searches,
    )
    aggregator = DataAggregator(
        episode_priority=config.episode_provider_priority,
        chapter_priority=config.chapter_provider_priority,
    )
    return AggregationOrchestrator(registry, matcher, aggregator)


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    http_clients: dict[ProviderId, httpx.AsyncClient] = {}
    for provider, base_url in provider_base_urls(settings).items():
        http_clients[provider] = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                base_url=base_url,
                timeout=httpx.Timeout(20.0, connect=10.0),
                headers={"User-Agent": f"{settings.app_name} (mediabridge)"},
            )
        )

    database: Database | None
    try:
        database = Database(settings.database_url)
    except (SQLAlchemyError, ValueError):
        logger.exception("Invalid DATABASE_URL; match cache disabled")
        database = None
    cache = MatchCache(database)
    await cache.init()

    registry = ProviderRegistry.from_settings(settings, http_clients)
    fastapi_app.state.orchestrator = build_orchestrator(settings, registry, cache)
    fastapi_app.state.match_cache = cache
    logger.info(
        "Providers enabled: %s",
        ", ".join(provider.value for provider in registry.provider_ids),
    )

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        if database is not None:
            await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Cross-provider anime, manga and TV metadata aggregation",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_orchestrator(app: FastAPI) -> AggregationOrchestrator:
    orchestrator = getattr(app.state, "orchestrator", None)
    if not isinstance(orchestrator, AggregationOrchestrator):
        raise RuntimeError("Orchestrator not initialised")
    return orchestrator


def _http_error(exc: ProviderError) -> HTTPException:
    """Translate provider failures into client-facing HTTP errors."""

    if isinstance(exc, AuthRequiredError):
        return HTTPException(
            status_code=401,
            detail={"error": "auth_required", "provider": exc.provider, "message": str(exc)},
        )
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(
        status_code=503,
        detail={"error": "upstream_unavailable", "message": "Please retry later."},
    )


def _parse_media_type(value: str) -> MediaType:
    try:
        return MediaType(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unsupported media type {value!r}") from exc


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/sources")
    async def sources(type: str | None = None) -> list[dict[str, Any]]:
        orchestrator = get_orchestrator(fastapi_app)
        media_type = _parse_media_type(type) if type else None
        return [
            {
                "id": client.name,
                "name": client.display_name,
                "types": sorted(item.value for item in client.media_types),
                "episodePages": client.supports_episode_pages,
                "chapterPages": client.supports_chapter_pages,
            }
            for client in orchestrator.get_available_sources(media_type)
        ]

    @fastapi_app.get("/search")
    async def search(
        q: str = Query(min_length=1),
        source: str = "anilist",
        type: str = "anime",
        page: int = Query(default=1, ge=1),
        year: int | None = None,
    ) -> dict[str, Any]:
        orchestrator = get_orchestrator(fastapi_app)
        try:
            result = await orchestrator.search(q, _parse_media_type(type), source, page, year)
        except ProviderError as exc:
            raise _http_error(exc) from exc
        return result.model_dump(mode="json")

    @fastapi_app.get("/media/{source}/{media_id}")
    async def media_details(source: str, media_id: str, type: str = "anime") -> dict[str, Any]:
        orchestrator = get_orchestrator(fastapi_app)
        try:
            details = await orchestrator.get_media_details(
                media_id, source, _parse_media_type(type)
            )
        except ProviderError as exc:
            raise _http_error(exc) from exc
        return details.model_dump(mode="json")

    @fastapi_app.get("/media/{source}/{media_id}/episodes")
    async def episodes(
        source: str,
        media_id: str,
        type: str = "anime",
        offset: int = 0,
        limit: int = 50,
        provider: str | None = None,
        providerMediaId: str | None = None,
    ) -> dict[str, Any]:
        orchestrator = get_orchestrator(fastapi_app)
        try:
            media = await orchestrator.get_media(media_id, source, _parse_media_type(type))
            page = await orchestrator.get_episode_page(
                EpisodePageRequest(
                    media=media,
                    provider_id=provider,
                    provider_media_id=providerMediaId,
                    offset=offset,
                    limit=limit,
                )
            )
        except ProviderError as exc:
            raise _http_error(exc) from exc
        payload = page.model_dump(mode="json")
        payload["has_more"] = page.has_more
        return payload

    @fastapi_app.get("/media/{source}/{media_id}/chapters")
    async def chapters(
        source: str,
        media_id: str,
        type: str = "manga",
        offset: int = 0,
        limit: int = 20,
        provider: str | None = None,
        providerMediaId: str | None = None,
    ) -> dict[str, Any]:
        orchestrator = get_orchestrator(fastapi_app)
        try:
            media = await orchestrator.get_media(media_id, source, _parse_media_type(type))
            request = ChapterPageRequest(
                media=media,
                provider_id=provider,
                provider_media_id=providerMediaId,
                offset=offset,
                limit=limit,
            )
            try:
                page = await orchestrator.get_chapter_page(request)
            except NotFoundError:
                if provider is not None:
                    raise
                # No Kitsu id known: serve the aggregated list instead.
                page = await orchestrator.get_chapter_page(
                    request.model_copy(update={"provider_id": AGGREGATED_PROVIDER})
                )
        except ProviderError as exc:
            raise _http_error(exc) from exc
        payload = page.model_dump(mode="json")
        payload["has_more"] = page.has_more
        return payload

    @fastapi_app.get("/cache/stats")
    async def cache_stats() -> dict[str, Any]:
        return await get_orchestrator(fastapi_app).matcher.cache.stats()

    @fastapi_app.delete("/cache")
    async def clear_cache() -> dict[str, int]:
        removed = await get_orchestrator(fastapi_app).matcher.cache.clear()
        return {"removed": removed}


app = create_app()
