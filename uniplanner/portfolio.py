from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import TypeAdapter, ValidationError

from .cache import RedisSnapshotCache
from .repo import Database
from .schemas import PortfolioSnapshot, University


logger = logging.getLogger("uniplanner.portfolio")

_universities_adapter = TypeAdapter(List[University])


class PortfolioLoadError(RuntimeError):
    def __init__(self, user_id: str, cause: BaseException) -> None:
        super().__init__(f"Failed to load portfolio for user_id={user_id}: {cause}")
        self.user_id = user_id
        self.cause = cause


class PortfolioAggregator:
    """Assembles a user's records into one PortfolioSnapshot.

    All reads go out concurrently. A failed read fails the whole load and
    nothing is cached for it. With a connected cache, snapshots are served
    from Redis until invalidated or expired. Every invalidate bumps a
    per-user generation; a load only writes back under the generation it
    started with, so a fetch that raced an edit never re-caches old data.
    """

    def __init__(self, repo: Database, cache: Optional[RedisSnapshotCache] = None) -> None:
        self._repo = repo
        self._cache = cache if cache is not None and cache.connected else None

    async def _cached(self, user_id: str) -> Optional[PortfolioSnapshot]:
        if self._cache is None:
            return None
        try:
            raw = await self._cache.get_snapshot(user_id)
        except Exception:
            logger.exception("Snapshot cache read failed for user_id=%s", user_id)
            return None
        if not raw:
            return None
        try:
            return PortfolioSnapshot.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable cached snapshot for user_id=%s", user_id)
            return None

    async def _generation(self, user_id: str) -> Optional[int]:
        if self._cache is None:
            return None
        try:
            return await self._cache.get_generation(user_id)
        except Exception:
            logger.exception("Snapshot generation read failed for user_id=%s", user_id)
            return None

    async def _store(self, snapshot: PortfolioSnapshot, generation: Optional[int]) -> None:
        if self._cache is None or generation is None:
            return
        try:
            stored = await self._cache.set_snapshot_if_generation(
                snapshot.user_id, snapshot.model_dump_json(), generation
            )
        except Exception:
            logger.exception("Snapshot cache write failed for user_id=%s", snapshot.user_id)
            return
        if not stored:
            logger.info("Skipped caching superseded snapshot for user_id=%s", snapshot.user_id)

    async def fetch(self, user_id: str) -> PortfolioSnapshot:
        repo = self._repo
        try:
            (
                profile,
                courses,
                scores,
                targets,
                recommendations,
                extracurriculars,
                achievements,
            ) = await asyncio.gather(
                repo.get_profile(user_id),
                repo.list_courses(user_id),
                repo.list_scores(user_id),
                repo.list_targets(user_id),
                repo.list_recommendations(user_id),
                repo.list_extracurriculars(user_id),
                repo.list_achievements(user_id),
            )
        except Exception as exc:
            logger.exception("Portfolio fan-out failed for user_id=%s", user_id)
            raise PortfolioLoadError(user_id, exc) from exc

        snapshot = PortfolioSnapshot(
            user_id=user_id,
            profile=profile,
            courses=courses,
            scores=scores,
            targets=targets,
            recommendations=recommendations,
            extracurriculars=extracurriculars,
            achievements=achievements,
            fetched_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Loaded portfolio: user_id=%s courses=%d scores=%d targets=%d",
            user_id,
            len(courses),
            len(scores),
            len(targets),
        )
        return snapshot

    async def load(self, user_id: str) -> PortfolioSnapshot:
        cached = await self._cached(user_id)
        if cached is not None:
            return cached
        generation = await self._generation(user_id)
        snapshot = await self.fetch(user_id)
        await self._store(snapshot, generation)
        return snapshot

    async def invalidate(self, user_id: str) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.bump_generation(user_id)
            await self._cache.clear_snapshot(user_id)
        except Exception:
            logger.exception("Snapshot cache clear failed for user_id=%s", user_id)

    async def refresh(self, user_id: str) -> PortfolioSnapshot:
        await self.invalidate(user_id)
        generation = await self._generation(user_id)
        snapshot = await self.fetch(user_id)
        await self._store(snapshot, generation)
        return snapshot

    async def universities(self) -> List[University]:
        if self._cache is not None:
            try:
                cached = await self._cache.get_universities()
            except Exception:
                logger.exception("University cache read failed")
                cached = None
            if cached:
                return _universities_adapter.validate_python(cached)
        try:
            unis = await self._repo.list_universities()
        except Exception as exc:
            raise PortfolioLoadError("*", exc) from exc
        if self._cache is not None:
            try:
                await self._cache.set_universities([u.model_dump(mode="json") for u in unis])
            except Exception:
                logger.exception("University cache write failed")
        return unis

    async def invalidate_universities(self) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.clear_universities()
        except Exception:
            logger.exception("University cache clear failed")
