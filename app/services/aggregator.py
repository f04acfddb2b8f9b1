"""Turn per-provider episode and chapter data into one fallback-ordered list."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Sequence

from ..config import DEFAULT_CHAPTER_PRIORITY, DEFAULT_EPISODE_PRIORITY
from ..errors import (
    AuthRequiredError,
    DataUnavailableError,
    NotFoundError,
    ProviderError,
)
from ..models import ChapterEntity, EpisodeEntity, MediaEntity, ProviderId, ProviderMatch

logger = logging.getLogger(__name__)

EpisodeFetcher = Callable[[str, ProviderId, "str | None"], Awaitable[list[EpisodeEntity]]]
ChapterFetcher = Callable[[str, ProviderId], Awaitable[list[ChapterEntity]]]

# Count-only providers probed after the chapter priority list, before placeholders.
CHAPTER_FALLBACK_ORDER: tuple[ProviderId, ...] = (
    ProviderId.ANILIST,
    ProviderId.JIKAN,
    ProviderId.TMDB,
    ProviderId.SIMKL,
)


@dataclass(slots=True)
class FetchTarget:
    """One provider to try, with the id it knows the title by."""

    provider: ProviderId
    media_id: str
    cover_image: str | None


@dataclass(slots=True)
class KnownTotal:
    provider: str
    media_id: str
    total: int


def build_placeholder_chapters(
    primary_media: MediaEntity, known: KnownTotal
) -> list[ChapterEntity]:
    """Return ``Chapter 1`` .. ``Chapter N`` records attributed to ``known``."""

    return [
        ChapterEntity(
            id=f"{known.provider}_chapter_{known.media_id}_{number}",
            media_id=primary_media.id,
            number=float(number),
            title=f"Chapter {number}",
            source_provider=known.provider,
        )
        for number in range(1, known.total + 1)
    ]


class DataAggregator:
    """Fetch episodes or chapters from providers in priority order.

    The first provider returning a non-empty list wins; lists from different
    providers are never merged. Provider failures are logged and skipped,
    except :class:`AuthRequiredError`, which always propagates.
    """

    def __init__(
        self,
        *,
        episode_priority: Sequence[ProviderId] = DEFAULT_EPISODE_PRIORITY,
        chapter_priority: Sequence[ProviderId] = DEFAULT_CHAPTER_PRIORITY,
    ):
        self._episode_priority = tuple(episode_priority)
        self._chapter_priority = tuple(chapter_priority)

    async def aggregate_episodes(
        self,
        primary_media: MediaEntity,
        matches: Mapping[ProviderId, ProviderMatch],
        episode_fetcher: EpisodeFetcher,
    ) -> list[EpisodeEntity]:
        targets = self._targets(primary_media, matches, self._episode_priority)
        for target in targets:
            try:
                episodes = await episode_fetcher(
                    target.media_id, target.provider, target.cover_image
                )
            except AuthRequiredError:
                raise
            except Exception as exc:
                self._log_failure("episodes", target, exc)
                continue
            if episodes:
                logger.info(
                    "Using %d episodes from %s for %r",
                    len(episodes),
                    target.provider.value,
                    primary_media.title,
                )
                return episodes
        logger.info("No provider returned episodes for %r", primary_media.title)
        return []

    async def aggregate_chapters(
        self,
        primary_media: MediaEntity,
        matches: Mapping[ProviderId, ProviderMatch],
        chapter_fetcher: ChapterFetcher,
    ) -> list[ChapterEntity]:
        """Return real chapters from the first provider that has them.

        When none does but a chapter total is known, synthesize placeholders
        for that total instead. The two are never mixed.
        """

        order = self._chapter_priority + tuple(
            provider
            for provider in CHAPTER_FALLBACK_ORDER
            if provider not in self._chapter_priority
        )
        count_only = frozenset(CHAPTER_FALLBACK_ORDER) - frozenset(self._chapter_priority)
        reported: list[KnownTotal] = []
        for index, target in enumerate(self._targets(primary_media, matches, order)):
            if (
                index > 0
                and target.provider in count_only
                and self._best_known_total(primary_media, matches, reported) is not None
            ):
                # Count-only sources add nothing once a total is known.
                logger.debug(
                    "Skipping %s chapter count for %s", target.provider.value, target.media_id
                )
                continue
            try:
                chapters = await chapter_fetcher(target.media_id, target.provider)
            except AuthRequiredError:
                raise
            except DataUnavailableError as exc:
                logger.debug(
                    "%s has no chapter list for %s (total=%s)",
                    target.provider.value,
                    target.media_id,
                    exc.total_count,
                )
                if exc.total_count and exc.total_count > 0:
                    reported.append(
                        KnownTotal(target.provider.value, target.media_id, exc.total_count)
                    )
                continue
            except Exception as exc:
                self._log_failure("chapters", target, exc)
                continue
            if chapters:
                logger.info(
                    "Using %d chapters from %s for %r",
                    len(chapters),
                    target.provider.value,
                    primary_media.title,
                )
                return chapters

        known = self._best_known_total(primary_media, matches, reported)
        if known is None:
            logger.info("No chapter data or totals known for %r", primary_media.title)
            return []
        logger.info(
            "Synthesizing %d placeholder chapters for %r from %s",
            known.total,
            primary_media.title,
            known.provider,
        )
        return build_placeholder_chapters(primary_media, known)

    @staticmethod
    def _targets(
        primary_media: MediaEntity,
        matches: Mapping[ProviderId, ProviderMatch],
        priority: Sequence[ProviderId],
    ) -> list[FetchTarget]:
        """Order providers: the primary source first, then matches by priority."""

        targets: list[FetchTarget] = []
        primary = ProviderId.parse(primary_media.source_id)
        if primary is not None:
            targets.append(FetchTarget(primary, primary_media.id, primary_media.cover_image))
        for provider in priority:
            if provider == primary:
                continue
            match = matches.get(provider)
            if match is None:
                continue
            cover = (
                match.media_entity.cover_image if match.media_entity else None
            ) or primary_media.cover_image
            targets.append(FetchTarget(provider, match.provider_media_id, cover))
        return targets

    @staticmethod
    def _best_known_total(
        primary_media: MediaEntity,
        matches: Mapping[ProviderId, ProviderMatch],
        reported: list[KnownTotal],
    ) -> KnownTotal | None:
        """Prefer the primary's own total, otherwise the largest one reported."""

        if primary_media.total_chapters and primary_media.total_chapters > 0:
            return KnownTotal(
                primary_media.source_id, primary_media.id, primary_media.total_chapters
            )
        candidates = list(reported)
        for provider, match in matches.items():
            entity = match.media_entity
            if entity is not None and entity.total_chapters and entity.total_chapters > 0:
                candidates.append(
                    KnownTotal(provider.value, match.provider_media_id, entity.total_chapters)
                )
        if not candidates:
            return None
        return max(candidates, key=lambda known: known.total)

    @staticmethod
    def _log_failure(kind: str, target: FetchTarget, exc: Exception) -> None:
        if isinstance(exc, (NotFoundError, DataUnavailableError)):
            logger.debug("%s has no %s for %s", target.provider.value, kind, target.media_id)
        elif isinstance(exc, ProviderError):
            logger.warning(
                "Fetching %s from %s failed: %s", kind, target.provider.value, exc
            )
        else:
            logger.error(
                "Unexpected error fetching %s from %s",
                kind,
                target.provider.value,
                exc_info=exc,
            )
