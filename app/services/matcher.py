"""Locate the same title across independent metadata providers."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import date
from typing import Awaitable, Callable, Iterable, Sequence

from ..errors import AuthRequiredError, NotFoundError, ProviderError
from ..models import MediaEntity, MediaType, ProviderId, ProviderMatch
from ..utils import normalize_title, title_similarity
from .match_cache import MatchCache, MatchSet

logger = logging.getLogger(__name__)

SearchFunction = Callable[[str, ProviderId, MediaType], Awaitable[list[MediaEntity]]]

TITLE_WEIGHT = 0.8
SAME_YEAR_BONUS = 0.1
ADJACENT_YEAR_BONUS = 0.05
SAME_TYPE_BONUS = 0.1
COMPATIBLE_TYPE_BONUS = 0.05
TYPE_MISMATCH_PENALTY = 0.3
YEAR_GAP_REJECT = 15
LONG_RUNNING_EPISODES = 100
EPISODE_RATIO_REJECT = 0.5

COMPATIBLE_TYPES: frozenset[frozenset[MediaType]] = frozenset(
    {
        frozenset({MediaType.ANIME, MediaType.TV_SHOW}),
        frozenset({MediaType.ANIME, MediaType.MOVIE}),
        frozenset({MediaType.CARTOON, MediaType.TV_SHOW}),
        frozenset({MediaType.DOCUMENTARY, MediaType.TV_SHOW}),
        frozenset({MediaType.DOCUMENTARY, MediaType.MOVIE}),
    }
)


def build_cache_key(
    title: str,
    media_type: MediaType,
    primary_source_id: str,
    *,
    english_title: str | None = None,
    romaji_title: str | None = None,
    year: int | None = None,
) -> str:
    """Return the match cache key for a title lookup."""

    parts = (
        normalize_title(title),
        normalize_title(english_title),
        normalize_title(romaji_title),
        str(year) if year else "unknown",
        media_type.value,
    )
    return f"{primary_source_id.lower()}_{'|'.join(parts)}"


def _year_adjustment(source_year: int | None, target_year: int | None) -> float | None:
    if source_year is None or target_year is None:
        return 0.0
    gap = abs(source_year - target_year)
    if gap == 0:
        return SAME_YEAR_BONUS
    if gap == 1:
        return ADJACENT_YEAR_BONUS
    if gap <= 2:
        return 0.0
    if gap <= 4:
        return -0.05
    if gap <= 9:
        return -0.1
    if gap < YEAR_GAP_REJECT:
        return -0.2
    return None


def _episode_adjustment(
    source_total: int | None, target_total: int | None
) -> float | None:
    if not source_total or source_total <= 0:
        return 0.0
    if not target_total or target_total <= 0:
        return -0.15
    ratio = abs(source_total - target_total) / source_total
    if source_total >= LONG_RUNNING_EPISODES and ratio >= EPISODE_RATIO_REJECT:
        return None
    if ratio <= 0.05:
        return 0.15
    if ratio <= 0.15:
        return 0.08
    if ratio <= 0.30:
        return 0.02
    return -0.08


def _type_adjustment(
    source_type: MediaType | None, target_type: MediaType | None
) -> float:
    if source_type is None or target_type is None:
        return 0.0
    if source_type == target_type:
        return SAME_TYPE_BONUS
    if frozenset({source_type, target_type}) in COMPATIBLE_TYPES:
        return COMPATIBLE_TYPE_BONUS
    return -TYPE_MISMATCH_PENALTY


def calculate_match_confidence(
    source_title: str,
    target_title: str,
    source_alt_titles: Iterable[str | None] = (),
    target_alt_titles: Iterable[str | None] = (),
    source_year: int | None = None,
    target_year: int | None = None,
    source_type: MediaType | None = None,
    target_type: MediaType | None = None,
    source_total_episodes: int | None = None,
    target_total_episodes: int | None = None,
) -> float | None:
    """Score how likely two provider entries describe the same title.

    Title similarity is the best score over every pairing of primary and
    alternate titles, weighted at 0.8. Matching release years and types add
    up to 0.2, distant years and type mismatches subtract, and the episode
    count nudges the result when the source total is known.

    Returns the clamped score in ``[0, 1]``, or ``None`` when the candidate is
    rejected outright (release years 15 or more apart, or a long-running
    series paired with one whose episode count differs by half or more).
    """

    year_adjustment = _year_adjustment(source_year, target_year)
    if year_adjustment is None:
        return None
    episode_adjustment = _episode_adjustment(
        source_total_episodes, target_total_episodes
    )
    if episode_adjustment is None:
        return None

    source_titles = [source_title, *(t for t in source_alt_titles if t)]
    target_titles = [target_title, *(t for t in target_alt_titles if t)]
    similarity = max(
        (title_similarity(left, right) for left in source_titles for right in target_titles),
        default=0.0,
    )

    score = (
        similarity * TITLE_WEIGHT
        + year_adjustment
        + _type_adjustment(source_type, target_type)
        + episode_adjustment
    )
    return round(min(max(score, 0.0), 1.0), 4)


def score_candidate(reference: MediaEntity, candidate: MediaEntity) -> float | None:
    """Apply :func:`calculate_match_confidence` to two media entities."""

    return calculate_match_confidence(
        reference.title,
        candidate.title,
        reference.alt_titles,
        candidate.alt_titles,
        reference.year,
        candidate.year,
        reference.type,
        candidate.type,
        reference.total_episodes,
        candidate.total_episodes,
    )


def select_best_match(
    provider: ProviderId,
    reference: MediaEntity,
    candidates: Sequence[MediaEntity],
    *,
    threshold: float = 0.0,
) -> ProviderMatch | None:
    """Return the highest scoring candidate that clears ``threshold``."""

    best: ProviderMatch | None = None
    for candidate in candidates:
        confidence = score_candidate(reference, candidate)
        if confidence is None:
            continue
        if best is None or confidence > best.confidence:
            best = ProviderMatch(
                provider_id=provider,
                provider_media_id=candidate.id,
                confidence=confidence,
                matched_title=candidate.title,
                media_entity=candidate,
            )
    if best is None or best.confidence < threshold:
        return None
    return best


class CrossProviderMatcher:
    """Search every other provider for a title and keep confident matches."""

    def __init__(
        self,
        cache: MatchCache,
        *,
        providers: Sequence[ProviderId] = tuple(ProviderId),
        threshold: float = 0.8,
        timeout: float = 10.0,
        max_concurrency: int = 4,
    ):
        self._cache = cache
        self._providers = tuple(providers)
        self._threshold = threshold
        self._timeout = timeout
        self._semaphore = asyncio.Semaphore(max_concurrency)

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def cache(self) -> MatchCache:
        return self._cache

    async def find_matches(
        self,
        title: str,
        media_type: MediaType,
        primary_source_id: str,
        search_fn: SearchFunction,
        *,
        english_title: str | None = None,
        romaji_title: str | None = None,
        alt_titles: Sequence[str] = (),
        year: int | None = None,
        total_episodes: int | None = None,
    ) -> MatchSet:
        """Return confident matches keyed by provider, reading the cache first."""

        key = build_cache_key(
            title,
            media_type,
            primary_source_id,
            english_title=english_title,
            romaji_title=romaji_title,
            year=year,
        )
        cached = await self._cache.get(key)
        if cached is not None:
            logger.debug("Match cache hit for %s (%d providers)", key, len(cached))
            return cached

        reference = MediaEntity(
            id="",
            title=title,
            type=media_type,
            source_id=primary_source_id,
            english_title=english_title,
            romaji_title=romaji_title,
            synonyms=list(alt_titles),
            start_date=date(year, 1, 1) if year else None,
            total_episodes=total_episodes,
        )
        primary = ProviderId.parse(primary_source_id)
        candidates = [provider for provider in self._providers if provider != primary]
        started = time.monotonic()

        tasks = [
            asyncio.create_task(
                self._search_provider(provider, reference, search_fn)
            )
            for provider in candidates
        ]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        matches: MatchSet = {}
        failed = False
        for provider, (match, errored) in zip(candidates, outcomes):
            failed = failed or errored
            if match is not None:
                matches[provider] = match

        logger.info(
            "Matched %r against %d providers in %.0fms: %s",
            title,
            len(candidates),
            (time.monotonic() - started) * 1000,
            {provider.value: match.confidence for provider, match in matches.items()},
        )
        if failed and not matches:
            # An outage is not evidence that no match exists.
            logger.info("Not caching empty match set for %r after provider failures", title)
        else:
            await self._cache.put(key, matches)
        return matches

    def cache_key_for(self, media: MediaEntity) -> str:
        return build_cache_key(
            media.title,
            media.type,
            media.source_id,
            english_title=media.english_title,
            romaji_title=media.romaji_title,
            year=media.year,
        )

    async def store_matches(self, media: MediaEntity, matches: MatchSet) -> None:
        """Replace the cached match set for ``media``."""

        await self._cache.put(self.cache_key_for(media), matches)

    async def find_matches_for(
        self, media: MediaEntity, search_fn: SearchFunction
    ) -> MatchSet:
        """Convenience wrapper pulling the lookup fields from ``media``."""

        return await self.find_matches(
            media.title,
            media.type,
            media.source_id,
            search_fn,
            english_title=media.english_title,
            romaji_title=media.romaji_title,
            alt_titles=media.synonyms,
            year=media.year,
            total_episodes=media.total_episodes,
        )

    async def invalidate_cached_matches(
        self,
        title: str,
        media_type: MediaType,
        primary_source_id: str,
        *,
        english_title: str | None = None,
        romaji_title: str | None = None,
        year: int | None = None,
    ) -> int:
        """Delete cached match sets for every plausible year variant of a title."""

        removed = 0
        for variant in dict.fromkeys((None, year)):
            key = build_cache_key(
                title,
                media_type,
                primary_source_id,
                english_title=english_title,
                romaji_title=romaji_title,
                year=variant,
            )
            if await self._cache.delete(key):
                removed += 1
        logger.info("Invalidated %d cached match sets for %r", removed, title)
        return removed

    async def _search_provider(
        self,
        provider: ProviderId,
        reference: MediaEntity,
        search_fn: SearchFunction,
    ) -> tuple[ProviderMatch | None, bool]:
        """Return the best match from one provider and whether the search failed."""

        try:
            async with self._semaphore:
                results = await asyncio.wait_for(
                    search_fn(reference.title, provider, reference.type),
                    timeout=self._timeout,
                )
        except AuthRequiredError:
            raise
        except NotFoundError:
            return None, False
        except asyncio.TimeoutError:
            logger.warning("Search on %s for %r timed out", provider.value, reference.title)
            return None, True
        except ProviderError as exc:
            logger.warning(
                "Search on %s for %r failed: %s", provider.value, reference.title, exc
            )
            return None, True
        except Exception:
            logger.exception("Unexpected search failure on %s", provider.value)
            return None, True

        if not results:
            return None, False

        match = select_best_match(
            provider, reference, results, threshold=self._threshold
        )
        if match is None:
            logger.debug("No confident match on %s for %r", provider.value, reference.title)
        return match, False
