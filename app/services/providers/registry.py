"""Enum-keyed table of the configured provider clients."""

from __future__ import annotations

import logging
from typing import Iterable, Iterator, Mapping

import httpx

from ...config import Settings
from ...models import MediaEntity, MediaType, ProviderId
from .anilist import AniListClient
from .base import ProviderClient
from .jikan import JikanClient
from .kitsu import KitsuClient
from .simkl import SimklClient
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Resolve provider identifiers to their client, built once at startup."""

    def __init__(self, clients: Iterable[ProviderClient]):
        self._clients: dict[ProviderId, ProviderClient] = {
            client.provider_id: client for client in clients
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_clients: Mapping[ProviderId, httpx.AsyncClient],
    ) -> "ProviderRegistry":
        """Build clients for every provider with an HTTP client and credentials."""

        def options(provider: ProviderId) -> dict[str, int]:
            return {
                "requests_per_minute": settings.rate_limit_for(provider),
                "max_retries": settings.provider_max_retries,
            }

        clients: list[ProviderClient] = []
        if ProviderId.ANILIST in http_clients:
            clients.append(
                AniListClient(http_clients[ProviderId.ANILIST], **options(ProviderId.ANILIST))
            )
        if ProviderId.KITSU in http_clients:
            clients.append(
                KitsuClient(http_clients[ProviderId.KITSU], **options(ProviderId.KITSU))
            )
        if ProviderId.JIKAN in http_clients:
            clients.append(
                JikanClient(
                    http_clients[ProviderId.JIKAN],
                    mal_access_token=settings.mal_access_token,
                    mal_api_url=str(settings.mal_api_url),
                    **options(ProviderId.JIKAN),
                )
            )
        if ProviderId.TMDB in http_clients:
            if settings.tmdb_api_key:
                clients.append(
                    TMDBClient(
                        http_clients[ProviderId.TMDB],
                        api_key=settings.tmdb_api_key,
                        **options(ProviderId.TMDB),
                    )
                )
            else:
                logger.info("TMDB_API_KEY not configured; TMDB provider disabled")
        if ProviderId.SIMKL in http_clients:
            if settings.simkl_client_id:
                clients.append(
                    SimklClient(
                        http_clients[ProviderId.SIMKL],
                        client_id=settings.simkl_client_id,
                        **options(ProviderId.SIMKL),
                    )
                )
            else:
                logger.info("SIMKL_CLIENT_ID not configured; Simkl provider disabled")
        return cls(clients)

    def get(self, provider: ProviderId | str | None) -> ProviderClient | None:
        """Return the client for ``provider`` (aliases accepted) if registered."""

        if provider is None:
            return None
        key = provider if isinstance(provider, ProviderId) else ProviderId.parse(provider)
        if key is None:
            return None
        return self._clients.get(key)

    def __contains__(self, provider: object) -> bool:
        if isinstance(provider, (ProviderId, str)):
            return self.get(provider) is not None
        return False

    def __iter__(self) -> Iterator[ProviderClient]:
        return iter(self._clients.values())

    @property
    def provider_ids(self) -> tuple[ProviderId, ...]:
        return tuple(self._clients)

    def available(self, media_type: MediaType | None = None) -> list[ProviderClient]:
        return [
            client
            for client in self._clients.values()
            if media_type is None or client.supports(media_type)
        ]

    async def search(
        self, title: str, provider: ProviderId, media_type: MediaType
    ) -> list[MediaEntity]:
        """Search one provider; unknown or unsupported providers yield nothing."""

        client = self.get(provider)
        if client is None or not client.supports(media_type):
            return []
        result = await client.search_media(title, media_type)
        return result.items
