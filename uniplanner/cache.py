from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from .config import settings


class RedisSnapshotCache:
    def __init__(self, url: str) -> None:
        self._url = url
        self._redis: Optional[redis.Redis] = None

    @property
    def connected(self) -> bool:
        return self._redis is not None

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = redis.from_url(self._url, encoding="utf-8", decode_responses=True)

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def set_snapshot(self, user_id: str, payload: str, ttl_seconds: Optional[int] = None) -> None:
        assert self._redis is not None
        key = f"snapshot:{user_id}"
        await self._redis.set(key, payload, ex=ttl_seconds or settings.snapshot_cache_ttl_seconds)

    async def get_snapshot(self, user_id: str) -> Optional[str]:
        assert self._redis is not None
        raw = await self._redis.get(f"snapshot:{user_id}")
        return raw or None

    async def clear_snapshot(self, user_id: str) -> None:
        assert self._redis is not None
        await self._redis.delete(f"snapshot:{user_id}")

    async def bump_generation(self, user_id: str) -> int:
        assert self._redis is not None
        return int(await self._redis.incr(f"snapshot_gen:{user_id}"))

    async def get_generation(self, user_id: str) -> int:
        assert self._redis is not None
        raw = await self._redis.get(f"snapshot_gen:{user_id}")
        return int(raw) if raw else 0

    async def set_snapshot_if_generation(
        self, user_id: str, payload: str, generation: int, ttl_seconds: Optional[int] = None
    ) -> bool:
        """Write the snapshot only while the generation is still the one it was read under."""
        assert self._redis is not None
        gen_key = f"snapshot_gen:{user_id}"
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(gen_key)
                raw = await pipe.get(gen_key)
                if (int(raw) if raw else 0) != generation:
                    return False
                pipe.multi()
                pipe.set(f"snapshot:{user_id}", payload, ex=ttl_seconds or settings.snapshot_cache_ttl_seconds)
                await pipe.execute()
            except WatchError:
                return False
        return True

    async def set_universities(self, payload: Any, ttl_seconds: Optional[int] = None) -> None:
        assert self._redis is not None
        await self._redis.set("universities:all", json.dumps(payload), ex=ttl_seconds or settings.snapshot_cache_ttl_seconds)

    async def get_universities(self) -> Optional[Any]:
        assert self._redis is not None
        raw = await self._redis.get("universities:all")
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    async def clear_universities(self) -> None:
        assert self._redis is not None
        await self._redis.delete("universities:all")


snapshot_cache = RedisSnapshotCache(settings.redis_url)
