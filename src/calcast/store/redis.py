"""Redis-backed key-value store."""

from __future__ import annotations

import re

import redis.asyncio as aioredis

from calcast.config import get_settings

_client: aioredis.Redis | None = None

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def get_redis() -> aioredis.Redis:
    global _client
    if _client is None:
        settings = get_settings()
        _client = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
    return _client


def _escape_glob(prefix: str) -> str:
    return _GLOB_SPECIAL.sub(r"\\\1", prefix)


class RedisStore:
    def __init__(self, client: aioredis.Redis | None = None) -> None:
        self._client = client

    @property
    def client(self) -> aioredis.Redis:
        return self._client or get_redis()

    async def get(self, key: str) -> str | None:
        return await self.client.get(key)

    async def put(self, key: str, value: str, ttl: int | None = None) -> None:
        if ttl:
            await self.client.setex(key, ttl, value)
        else:
            await self.client.set(key, value)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def pop(self, key: str) -> str | None:
        return await self.client.getdel(key)

    async def list_keys(self, prefix: str) -> list[str]:
        pattern = f"{_escape_glob(prefix)}*"
        return sorted([key async for key in self.client.scan_iter(match=pattern, count=500)])
