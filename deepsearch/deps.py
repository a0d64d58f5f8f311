"""FastAPI dependencies: current user and service construction.

Every service receives its storage handles here, so tests can swap them with
dependency_overrides.
"""

from typing import Annotated

import redis.asyncio as aioredis
from fastapi import Depends, Header, HTTPException, status

from deepsearch.core.cache import CacheLayer, build_cache_store
from deepsearch.core.streams import get_redis
from deepsearch.database import async_session_maker
from deepsearch.services.chat_store import ChatStore
from deepsearch.services.generation import ChatGenerator
from deepsearch.services.rate_limiter import RateLimiter
from deepsearch.services.stream_registry import StreamRegistry
from deepsearch.services.web_search import build_cached_search


async def get_current_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> str:
    """User id asserted by the upstream auth proxy."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
    return x_user_id


def get_rate_limiter() -> RateLimiter:
    return RateLimiter(async_session_maker)


def get_chat_store() -> ChatStore:
    return ChatStore(async_session_maker)


def get_stream_registry() -> StreamRegistry:
    return StreamRegistry(async_session_maker)


async def get_stream_redis() -> aioredis.Redis:
    return await get_redis()


def get_cache_layer(
    redis: Annotated[aioredis.Redis, Depends(get_stream_redis)],
) -> CacheLayer:
    return CacheLayer(build_cache_store(redis=redis, session_maker=async_session_maker))


def get_chat_generator(
    cache: Annotated[CacheLayer, Depends(get_cache_layer)],
) -> ChatGenerator:
    return ChatGenerator(search=build_cached_search(cache))


CurrentUserId = Annotated[str, Depends(get_current_user_id)]
RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter)]
ChatStoreDep = Annotated[ChatStore, Depends(get_chat_store)]
StreamRegistryDep = Annotated[StreamRegistry, Depends(get_stream_registry)]
StreamRedis = Annotated[aioredis.Redis, Depends(get_stream_redis)]
ChatGeneratorDep = Annotated[ChatGenerator, Depends(get_chat_generator)]
