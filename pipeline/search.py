"""Web search collaborator — Brave Search over httpx.

The researcher only sees the SearchService protocol. When no search key is
configured, ``BraveSearch.from_config()`` returns None and the researcher
falls back to knowledge-only evidence.

A failed query never fails the batch: it degrades to an empty result set.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol
from urllib.parse import urlsplit, urlunsplit

import httpx
from pydantic import BaseModel, Field

import config

logger = logging.getLogger(__name__)

BRAVE_ENDPOINT = "https://api.search.brave.com/res/v1/web/search"
BRAVE_MAX_COUNT = 20  # API hard limit


class SearchResult(BaseModel):
    title: str = ""
    url: str = ""
    snippet: str = ""
    extra_text: Optional[str] = None


class SearchResponse(BaseModel):
    query: str
    results: list[SearchResult] = Field(default_factory=list)


class SearchService(Protocol):
    async def search(self, query: str, result_count: int = 5) -> SearchResponse:
        ...


def normalize_url(url: str) -> str:
    """Canonical form used to match model-cited URLs against search results.

    Lowercases scheme and host, drops ``www.``, the fragment and a trailing
    slash. Query strings are kept.
    """
    text = (url or "").strip()
    if not text:
        return ""
    try:
        parts = urlsplit(text)
    except ValueError:
        # e.g. an unbalanced IPv6 bracket; such a URL can only match itself
        return text.lower()
    host = parts.netloc.lower()
    if host.startswith("www."):
        host = host[4:]
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower() or "https", host, path, parts.query, ""))


class BraveSearch:
    """SearchService backed by the Brave web search API."""

    def __init__(
        self,
        api_key: str,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.timeout = timeout if timeout is not None else config.SEARCH_TIMEOUT_SECONDS
        self._client = client

    @classmethod
    def from_config(cls) -> "BraveSearch | None":
        if not config.BRAVE_API_KEY:
            logger.info("BRAVE_API_KEY not set — grounded research disabled")
            return None
        return cls(config.BRAVE_API_KEY)

    async def search(self, query: str, result_count: int = 5) -> SearchResponse:
        headers = {
            "Accept": "application/json",
            "X-Subscription-Token": self.api_key,
        }
        params = {
            "q": query,
            "count": min(max(1, result_count), BRAVE_MAX_COUNT),
            "text_decorations": "false",
            "search_lang": "en",
            "extra_snippets": "true",
        }
        try:
            if self._client is not None:
                response = await self._client.get(BRAVE_ENDPOINT, headers=headers, params=params, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(BRAVE_ENDPOINT, headers=headers, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning("Brave search HTTP %s for query '%s'", e.response.status_code, query)
            return SearchResponse(query=query)
        except httpx.TimeoutException:
            logger.warning("Brave search timed out for query '%s' (%.0fs limit)", query, self.timeout)
            return SearchResponse(query=query)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Brave search failed for query '%s': %s", query, e)
            return SearchResponse(query=query)

        results = _parse_brave_response(data)
        logger.info("Brave search returned %d results for query: %s", len(results), query)
        return SearchResponse(query=query, results=results)


def _parse_brave_response(data: dict) -> list[SearchResult]:
    web_results = (data.get("web") or {}).get("results") or []
    results: list[SearchResult] = []
    for item in web_results:
        if not isinstance(item, dict) or not item.get("url"):
            continue
        extras = item.get("extra_snippets") or []
        results.append(
            SearchResult(
                title=item.get("title") or "",
                url=item["url"],
                snippet=item.get("description") or "",
                extra_text="\n".join(str(e) for e in extras) or None,
            )
        )
    return results


async def search_batch(
    service: SearchService,
    queries: list[str],
    result_count: int = 5,
) -> list[SearchResponse]:
    """Run every query concurrently; a query that raises yields an empty response."""

    async def _one(query: str) -> SearchResponse:
        try:
            return await service.search(query, result_count)
        except Exception as e:
            logger.warning("Search failed for '%s': %s", query, e)
            return SearchResponse(query=query)

    return list(await asyncio.gather(*(_one(q) for q in queries)))
