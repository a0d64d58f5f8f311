"""Result cache — memoizes async operations keyed by name + canonical arguments.

Wrap read-only, idempotent operations (web searches, page fetches) so that
repeated tool calls with identical arguments are served from the cache store
instead of hitting the network again::

    cache = CacheLayer(RedisCacheStore(redis), ttl_seconds=3600)

    search = cache.memoize(
        "serper.search",
        search_serper,
        key=lambda query, num=10: canonical_json({"q": query, "num": num}),
        result_type=list[SearchResult],
    )
    results = await search("python asyncio", num=5)

Semantics:
- A hit returns the stored value without calling the wrapped operation.
- A miss calls the operation and stores its result with a fixed TTL.
- Exceptions from the operation propagate unchanged and are never stored.
- Cache store failures degrade to calling the operation directly.
- There is no locking. Two concurrent misses for the same key both run the
  operation and the later write wins.
"""

from __future__ import annotations

import functools
import hashlib
import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, ParamSpec, TypeVar

import redis.asyncio as aioredis
from pydantic import TypeAdapter, ValidationError
from pydantic_core import to_jsonable_python
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deepsearch.config import get_settings
from deepsearch.core.errors import CacheUnavailable
from deepsearch.core.logging import get_logger
from deepsearch.models.cache_entry import CacheEntry

logger = get_logger(__name__)
settings = get_settings()

P = ParamSpec("P")
T = TypeVar("T")


# ── Key derivation ──────────────────────────────────────────────────


def canonical_json(value: Any) -> str:
    """Deterministic JSON for cache keys.

    Mapping keys are sorted, so field insertion order does not matter.
    Sequence order is preserved. Pydantic models, dataclasses, datetimes and
    UUIDs are converted to their JSON form first.
    """
    return json.dumps(
        to_jsonable_python(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def cache_key(operation: str, canonical_args: str, *, prefix: str | None = None) -> str:
    """``{prefix}:{operation}:{sha256(canonical_args)}``."""
    digest = hashlib.sha256(canonical_args.encode()).hexdigest()
    return f"{prefix or settings.cache_key_prefix}:{operation}:{digest}"


# ── Stores ──────────────────────────────────────────────────────────


class CacheStore:
    """Key-value store with TTL. Implementations raise CacheUnavailable on failure."""

    async def get(self, key: str) -> str | None:
        raise NotImplementedError

    async def set(self, key: str, value: str, ttl_seconds: int, *, operation: str) -> None:
        raise NotImplementedError


class RedisCacheStore(CacheStore):
    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    async def get(self, key: str) -> str | None:
        try:
            raw = await self._redis.get(key)
        except RedisError as e:
            raise CacheUnavailable("get", e) from e
        if raw is None:
            return None
        return raw.decode() if isinstance(raw, bytes) else raw

    async def set(self, key: str, value: str, ttl_seconds: int, *, operation: str) -> None:
        try:
            await self._redis.set(key, value, ex=ttl_seconds)
        except RedisError as e:
            raise CacheUnavailable("set", e) from e


class DatabaseCacheStore(CacheStore):
    """Cache entries in the cache_entries table; expiry is checked on read."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._session_maker = session_maker
        self._clock = clock

    async def get(self, key: str) -> str | None:
        try:
            async with self._session_maker() as db:
                result = await db.execute(
                    select(CacheEntry.value)
                    .where(CacheEntry.key == key)
                    .where(CacheEntry.expires_at > self._clock())
                )
                return result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as e:
            raise CacheUnavailable("get", e) from e

    async def set(self, key: str, value: str, ttl_seconds: int, *, operation: str) -> None:
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl_seconds)
        try:
            async with self._session_maker() as db, db.begin():
                existing = await db.get(CacheEntry, key)
                if existing:
                    existing.value = value
                    existing.operation = operation
                    existing.created_at = now
                    existing.expires_at = expires_at
                else:
                    db.add(CacheEntry(
                        key=key,
                        operation=operation,
                        value=value,
                        created_at=now,
                        expires_at=expires_at,
                    ))
        except (SQLAlchemyError, OSError) as e:
            raise CacheUnavailable("set", e) from e


# ── Memoization ─────────────────────────────────────────────────────


class CacheLayer:
    """Wraps async operations with read-through caching."""

    def __init__(
        self,
        store: CacheStore,
        *,
        ttl_seconds: int | None = None,
        key_prefix: str | None = None,
    ) -> None:
        self._store = store
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.cache_ttl_seconds
        self._key_prefix = key_prefix or settings.cache_key_prefix

    def key_for(self, operation: str, canonical_args: str) -> str:
        return cache_key(operation, canonical_args, prefix=self._key_prefix)

    async def _read(self, key: str, operation: str) -> str | None:
        try:
            return await self._store.get(key)
        except CacheUnavailable as e:
            logger.warning("cache_read_failed", operation=operation, error=str(e))
            return None

    async def _write(self, key: str, operation: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._store.set(key, value, ttl_seconds, operation=operation)
        except CacheUnavailable as e:
            logger.warning("cache_write_failed", operation=operation, error=str(e))

    def memoize(
        self,
        operation: str,
        fn: Callable[P, Awaitable[T]],
        *,
        key: Callable[P, str],
        result_type: Any = Any,
        ttl_seconds: int | None = None,
    ) -> Callable[P, Awaitable[T]]:
        """Return ``fn`` with cached behaviour and the same signature.

        Args:
            operation: Stable name of the operation, part of every key.
            fn: The async operation to wrap.
            key: Called with the same arguments as ``fn``; must return a
                canonical serialization of them (see ``canonical_json``).
            result_type: Type used to serialize and restore results.
            ttl_seconds: Overrides the layer's default TTL. Zero or less means
                results are never stored.
        """
        adapter: TypeAdapter[Any] = TypeAdapter(result_type)
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds

        @functools.wraps(fn)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            entry_key = self.key_for(operation, key(*args, **kwargs))

            cached = await self._read(entry_key, operation)
            if cached is not None:
                try:
                    value = adapter.validate_json(cached)
                except ValidationError as e:
                    logger.warning("cache_entry_invalid", operation=operation, error=str(e))
                else:
                    logger.debug("cache_hit", operation=operation)
                    return value

            result = await fn(*args, **kwargs)
            if ttl <= 0:
                return result

            await self._write(entry_key, operation, adapter.dump_json(result).decode(), ttl)
            logger.debug("cache_miss_stored", operation=operation, ttl_seconds=ttl)
            return result

        return wrapper

    def cached(
        self,
        operation: str,
        *,
        key: Callable[..., str],
        result_type: Any = Any,
        ttl_seconds: int | None = None,
    ) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
        """Decorator form of memoize()."""

        def decorator(fn: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
            return self.memoize(
                operation,
                fn,
                key=key,
                result_type=result_type,
                ttl_seconds=ttl_seconds,
            )

        return decorator


def build_cache_store(
    *,
    redis: aioredis.Redis | None = None,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
) -> CacheStore:
    """Pick the store named by the cache_backend setting."""
    if settings.cache_backend == "database":
        if session_maker is None:
            raise ValueError("cache_backend=database requires a session maker")
        return DatabaseCacheStore(session_maker)
    if redis is None:
        raise ValueError("cache_backend=redis requires a Redis client")
    return RedisCacheStore(redis)
