# =============================================================================
# Web Search — Provider Fallback Chain
# =============================================================================
#
# Every search goes through a fixed chain of providers:
#
#   SearXNG (self-hosted meta search)
#     → Google Custom Search JSON API
#       → Brave Search API
#         → empty result set
#
# A provider that is not configured is skipped. A provider that fails with
# a timeout, a network error or a 5xx is logged and the next one is tried.
#
# DESIGN DECISION: Credential rejections are not transient.
# An HTTP 401/403 means a key is wrong, and silently returning nothing
# would hide that. The chain still tries the remaining providers, but if
# none of them answers, SearchAuthError is raised instead of returning an
# empty result set.
#
# All providers share one httpx.AsyncClient so connection pools are reused
# across the concurrent sub-query searches of multi-query mode.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.config import settings
from app.exceptions import SearchAuthError

logger = logging.getLogger(__name__)

GOOGLE_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class SearchHit:
    """A single normalised web result."""

    title: str
    url: str
    content: str = ""
    img_src: str | None = None
    thumbnail_src: str | None = None


@dataclass
class SearchResponse:
    results: list[SearchHit] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)


@dataclass
class SearchOptions:
    language: str | None = None
    engines: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    page: int | None = None


class ProviderNotConfigured(Exception):
    """Raised internally when a provider lacks its URL or credentials."""


# ---------------------------------------------------------------------------
# Provider Implementations
# ---------------------------------------------------------------------------


async def _search_searxng(
    client: httpx.AsyncClient, query: str, options: SearchOptions,
) -> SearchResponse:
    if not settings.searxng_url:
        raise ProviderNotConfigured("searxng")

    params: dict[str, Any] = {"q": query, "format": "json"}
    if options.engines:
        params["engines"] = ",".join(options.engines)
    if options.categories:
        params["categories"] = ",".join(options.categories)
    if options.language:
        params["language"] = options.language
    if options.page:
        params["pageno"] = options.page

    response = await client.get(
        f"{settings.searxng_url.rstrip('/')}/search", params=params,
    )
    response.raise_for_status()
    data = response.json()

    results = [
        SearchHit(
            title=item.get("title", ""),
            url=item.get("url", ""),
            content=item.get("content") or "",
            img_src=item.get("img_src"),
            thumbnail_src=item.get("thumbnail_src") or item.get("thumbnail"),
        )
        for item in data.get("results", [])
    ]
    return SearchResponse(results=results, suggestions=list(data.get("suggestions", [])))


async def _search_google(
    client: httpx.AsyncClient, query: str, options: SearchOptions,
) -> SearchResponse:
    if not (settings.google_search_api_key and settings.google_search_engine_id):
        raise ProviderNotConfigured("google")

    params: dict[str, Any] = {
        "key": settings.google_search_api_key,
        "cx": settings.google_search_engine_id,
        "q": query,
        "num": 10,
    }
    if options.language:
        params["lr"] = f"lang_{options.language}"
    if options.page:
        params["start"] = (options.page - 1) * 10 + 1

    response = await client.get(GOOGLE_SEARCH_URL, params=params)
    response.raise_for_status()
    data = response.json()

    results = []
    for item in data.get("items") or []:
        thumbnails = (item.get("pagemap") or {}).get("cse_thumbnail") or []
        results.append(SearchHit(
            title=item.get("title", ""),
            url=item.get("link", ""),
            content=item.get("snippet") or "",
            thumbnail_src=thumbnails[0].get("src") if thumbnails else None,
        ))

    corrected = (data.get("spelling") or {}).get("correctedQuery")
    return SearchResponse(results=results, suggestions=[corrected] if corrected else [])


async def _search_brave(
    client: httpx.AsyncClient, query: str, options: SearchOptions,
) -> SearchResponse:
    if not settings.brave_search_api_key:
        raise ProviderNotConfigured("brave")

    params: dict[str, Any] = {"q": query, "count": 20}
    if options.language:
        params["search_lang"] = options.language
    if options.page:
        params["offset"] = (options.page - 1) * 20

    response = await client.get(
        BRAVE_SEARCH_URL,
        params=params,
        headers={
            "Accept": "application/json",
            "X-Subscription-Token": settings.brave_search_api_key,
        },
    )
    response.raise_for_status()
    data = response.json()

    results = [
        SearchHit(
            title=item.get("title", ""),
            url=item.get("url", ""),
            content=item.get("description") or "",
            thumbnail_src=(item.get("thumbnail") or {}).get("src"),
        )
        for item in (data.get("web") or {}).get("results", [])
    ]
    altered = (data.get("query") or {}).get("altered")
    return SearchResponse(results=results, suggestions=[altered] if altered else [])


_PROVIDERS = (
    ("searxng", _search_searxng),
    ("google", _search_google),
    ("brave", _search_brave),
)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class WebSearch:
    """
    Web search collaborator used by the document collector.

    Args:
        client: Optional preconfigured httpx.AsyncClient. Tests pass one
            built on httpx.MockTransport; production code lets the class
            create its own.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient(
            timeout=settings.search_timeout_seconds,
            follow_redirects=True,
        )

    async def search(
        self,
        query: str,
        options: SearchOptions | None = None,
    ) -> SearchResponse:
        """
        Run `query` through the provider chain.

        Returns the first provider's response, or an empty response when
        every configured provider failed transiently.

        Raises:
            SearchAuthError: If a provider rejected its credentials and no
                later provider produced a response.
        """
        options = options or SearchOptions(language=settings.search_language)
        auth_failure: SearchAuthError | None = None

        for name, provider in _PROVIDERS:
            try:
                response = await provider(self._client, query, options)
            except ProviderNotConfigured:
                continue
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status in (401, 403):
                    logger.warning(
                        "Search provider %s rejected credentials (HTTP %d)",
                        name, status,
                    )
                    auth_failure = auth_failure or SearchAuthError(name, status)
                else:
                    logger.warning(
                        "Search provider %s failed (HTTP %d), trying next",
                        name, status,
                    )
                continue
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("Search provider %s failed: %s, trying next", name, e)
                continue

            logger.info(
                "Search via %s → %d results for '%s'",
                name, len(response.results), query[:60],
            )
            return response

        if auth_failure is not None:
            raise auth_failure

        logger.warning("All search providers failed for '%s'", query[:60])
        return SearchResponse()

    async def aclose(self) -> None:
        await self._client.aclose()


_web_search: WebSearch | None = None


def get_web_search() -> WebSearch:
    global _web_search
    if _web_search is None:
        _web_search = WebSearch()
    return _web_search
