"""Per-catalog metadata clients."""

from __future__ import annotations

from .anilist import AniListClient
from .base import ProviderClient, RateLimiter
from .jikan import JikanClient
from .kitsu import KitsuClient
from .registry import ProviderRegistry
from .simkl import SimklClient
from .tmdb import TMDBClient

__all__ = [
    "AniListClient",
    "JikanClient",
    "KitsuClient",
    "ProviderClient",
    "ProviderRegistry",
    "RateLimiter",
    "SimklClient",
    "TMDBClient",
]
