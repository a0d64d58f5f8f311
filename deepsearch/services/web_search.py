"""Web search service — Serper.dev client with result caching.

``search_serper`` is the raw network call. ``build_cached_search`` wraps it
with the CacheLayer so identical tool calls within the TTL do not hit the
API again. Failures raise UpstreamOperationFailed and are never cached.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import httpx
from pydantic import BaseModel

from deepsearch.config import get_settings
from deepsearch.core.cache import CacheLayer, canonical_json
from deepsearch.core.errors import UpstreamOperationFailed
from deepsearch.core.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

SERPER_URL = "https://google.serper.dev/search"
SEARCH_OPERATION = "serper.search"

SearchFn = Callable[..., Awaitable[list["SearchResult"]]]


class SearchResult(BaseModel):
    """A single organic search result."""

    title: str
    link: str
    snippet: str = ""
    date: str | None = None


async def search_serper(query: str, num: int = 10) -> list[SearchResult]:
    """Query Serper and return organic results in rank order."""
    if not settings.serper_api_key:
        raise UpstreamOperationFailed(SEARCH_OPERATION, "SERPER_API_KEY is not configured")

    try:
        async with httpx.AsyncClient(timeout=settings.web_search_timeout_seconds) as client:
            resp = await client.post(
                SERPER_URL,
                headers={
                    "X-API-KEY": settings.serper_api_key,
                    "Content-Type": "application/json",
                },
                json={"q": query, "num": num},
            )
            resp.raise_for_status()
            data = resp.json()
    except httpx.HTTPStatusError as e:
        logger.warning(
            "web_search_failed",
            query=query[:80],
            status_code=e.response.status_code,
        )
        raise UpstreamOperationFailed(
            SEARCH_OPERATION,
            f"HTTP {e.response.status_code}",
            status_code=e.response.status_code,
        ) from e
    except httpx.HTTPError as e:
        logger.warning("web_search_failed", query=query[:80], error=str(e))
        raise UpstreamOperationFailed(SEARCH_OPERATION, str(e)) from e

    results = [
        SearchResult(
            title=item.get("title", ""),
            link=item.get("link", ""),
            snippet=item.get("snippet", ""),
            date=item.get("date"),
        )
        for item in data.get("organic", [])[:num]
    ]

    logger.info("web_search_completed", query=query[:80], result_count=len(results))
    return results


def search_key(query: str, num: int = 10) -> str:
    return canonical_json({"q": query, "num": num})


def build_cached_search(cache: CacheLayer, search: SearchFn = search_serper) -> SearchFn:
    """Return ``search`` memoized under the ``serper.search`` operation."""
    return cache.memoize(
        SEARCH_OPERATION,
        search,
        key=search_key,
        result_type=list[SearchResult],
    )
