"""Cache facade over Redis and the cache key grammar.

The services only ever need three operations: ``get``, ``set`` with a TTL and
``delete``. :class:`Cache` exposes exactly those and converts every client
failure into :class:`~sales_erp.errors.CacheError`, so callers can tell
"cache unavailable" apart from "entity absent".

Keys follow the grammar ``{kind}:{id}``, ``{kind}:all``,
``{kind}:pagination:skip={n}:take={m}`` and ``{kind}:{field}:{value}``.
"""

from __future__ import annotations

from typing import Any, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from . import log
from .constants import EntityKind
from .errors import CacheError


def entity_key(kind: EntityKind, entity_id: int) -> str:
    return f"{kind.value}:{entity_id}"


def all_key(kind: EntityKind) -> str:
    return f"{kind.value}:all"


def pagination_key(kind: EntityKind, skip: int, take: int) -> str:
    return f"{kind.value}:pagination:skip={skip}:take={take}"


def lookup_key(kind: EntityKind, field: str, value: Any) -> str:
    return f"{kind.value}:{field}:{value}"


class Cache:
    """Thin async wrapper translating Redis failures into ``CacheError``.

    ``client`` is any object with the ``redis.asyncio.Redis`` coroutine
    methods ``get``, ``set``, ``delete``, ``ping`` and ``aclose`` that returns
    decoded strings.
    """

    def __init__(self, client: Any) -> None:
        self._client = client

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except (RedisError, OSError) as exc:
            log.error("Cache read failed for key '%s': %s", key, exc)
            raise CacheError(f"Error reading cache key {key}", str(exc)) from exc

    async def set(self, key: str, value: str, ttl: int) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds."""
        try:
            await self._client.set(key, value, ex=ttl)
        except (RedisError, OSError) as exc:
            log.error("Cache write failed for key '%s': %s", key, exc)
            raise CacheError(f"Error writing cache key {key}", str(exc)) from exc

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._client.delete(*keys)
        except (RedisError, OSError) as exc:
            log.error("Cache eviction failed for keys %s: %s", ", ".join(keys), exc)
            raise CacheError("Error evicting cache keys", {"keys": list(keys), "detail": str(exc)}) from exc

    async def ping(self) -> None:
        try:
            await self._client.ping()
        except (RedisError, OSError) as exc:
            raise CacheError("Cache server is unreachable", str(exc)) from exc

    async def close(self) -> None:
        await self._client.aclose()


async def connect_cache(url: str) -> Cache:
    """Create a Redis-backed :class:`Cache` for ``url`` and verify it answers.

    A bare ``host:port`` is accepted and treated as ``redis://host:port``.

    Raises:
        CacheError: If the server cannot be reached.
    """

    if "://" not in url:
        url = f"redis://{url}"
    client = aioredis.from_url(url, decode_responses=True)
    cache = Cache(client)
    try:
        await cache.ping()
    except CacheError:
        await client.aclose()
        raise
    log.info("Connected to cache at '%s'", url)
    return cache
