"""Persistent store of cross-provider match sets."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping

from pydantic import ValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from ..database import Database
from ..db_models import MatchCacheRecord
from ..models import ProviderId, ProviderMatch

logger = logging.getLogger(__name__)

MatchSet = dict[ProviderId, ProviderMatch]


def serialize_matches(matches: Mapping[ProviderId, ProviderMatch]) -> dict[str, Any]:
    return {
        provider.value: match.model_dump(mode="json")
        for provider, match in matches.items()
    }


def deserialize_matches(payload: Mapping[str, Any] | None) -> MatchSet:
    """Decode a stored match map, skipping entries that no longer validate."""

    matches: MatchSet = {}
    for raw_provider, raw_match in (payload or {}).items():
        provider = ProviderId.parse(raw_provider)
        if provider is None:
            logger.debug("Ignoring cached match for unknown provider %s", raw_provider)
            continue
        try:
            matches[provider] = ProviderMatch.model_validate(raw_match)
        except ValidationError:
            logger.warning("Discarding malformed cached match for %s", raw_provider)
    return matches


class MatchCache:
    """Read-through key/value store for match sets.

    The cache never expires entries on its own; stale mappings are removed
    with :meth:`delete`. When the backing store cannot be initialised the
    cache stays disabled, so every lookup misses and writes are dropped.
    """

    def __init__(self, database: Database | None):
        self._database = database
        self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def init(self) -> bool:
        """Open or create the backing table, returning whether it is usable."""

        if self._database is None:
            logger.warning("Match cache has no database configured; caching disabled")
            return False
        try:
            await self._database.create_all()
        except (SQLAlchemyError, OSError):
            logger.exception("Failed to initialise match cache; caching disabled")
            self._enabled = False
            return False
        self._enabled = True
        return True

    async def get(self, key: str) -> MatchSet | None:
        """Return the cached match set for ``key`` or ``None`` on a miss."""

        if not self._enabled or self._database is None:
            return None
        try:
            async with self._database.session() as session:
                record = await session.get(MatchCacheRecord, key)
        except SQLAlchemyError:
            logger.warning("Match cache read failed for %s", key, exc_info=True)
            return None
        if record is None:
            return None
        return deserialize_matches(record.value)

    async def put(self, key: str, matches: Mapping[ProviderId, ProviderMatch]) -> None:
        """Insert or replace the match set stored under ``key``."""

        if not self._enabled or self._database is None:
            return
        payload = serialize_matches(matches)
        now = datetime.utcnow()
        try:
            async with self._database.session() as session:
                if self._database.is_sqlite:
                    statement = sqlite_insert(MatchCacheRecord).values(
                        key=key, value=payload, created_at=now, updated_at=now
                    )
                    statement = statement.on_conflict_do_update(
                        index_elements=[MatchCacheRecord.key],
                        set_={"value": payload, "updated_at": now},
                    )
                    await session.execute(statement)
                else:
                    await session.merge(
                        MatchCacheRecord(key=key, value=payload, updated_at=now)
                    )
                await session.commit()
        except SQLAlchemyError:
            logger.warning("Match cache write failed for %s", key, exc_info=True)

    async def delete(self, key: str) -> bool:
        """Remove ``key`` and report whether an entry existed."""

        if not self._enabled or self._database is None:
            return False
        try:
            async with self._database.session() as session:
                result = await session.execute(
                    delete(MatchCacheRecord).where(MatchCacheRecord.key == key)
                )
                await session.commit()
        except SQLAlchemyError:
            logger.warning("Match cache delete failed for %s", key, exc_info=True)
            return False
        return bool(result.rowcount)

    async def clear(self) -> int:
        """Remove every cached match set and return how many were dropped."""

        if not self._enabled or self._database is None:
            return 0
        try:
            async with self._database.session() as session:
                result = await session.execute(delete(MatchCacheRecord))
                await session.commit()
        except SQLAlchemyError:
            logger.warning("Match cache clear failed", exc_info=True)
            return 0
        return int(result.rowcount or 0)

    async def get_or_create(
        self, key: str, factory: Callable[[], Awaitable[MatchSet]]
    ) -> MatchSet:
        """Return the cached set for ``key`` or build, store and return it."""

        cached = await self.get(key)
        if cached is not None:
            return cached
        matches = await factory()
        await self.put(key, matches)
        return matches

    async def stats(self) -> dict[str, Any]:
        if not self._enabled or self._database is None:
            return {"enabled": False, "entries": 0}
        try:
            async with self._database.session() as session:
                count = await session.scalar(
                    select(func.count()).select_from(MatchCacheRecord)
                )
        except SQLAlchemyError:
            logger.warning("Match cache stats query failed", exc_info=True)
            return {"enabled": True, "entries": 0}
        return {"enabled": True, "entries": int(count or 0)}
