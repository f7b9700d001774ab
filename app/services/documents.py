# =============================================================================
# Link Dereferencing — Fetch and Extract Web Pages
# =============================================================================
#
# When the rephraser returns explicit links, each link is fetched and turned
# into exactly one RetrievedDocument (title + visible text).
#
# DESIGN DECISION: BeautifulSoup's html.parser.
# It ships with Python (no lxml build step) and is tolerant of the broken
# markup common on the open web. Script, style and navigation elements are
# removed before text extraction.
#
# Links that fail (timeouts, non-2xx, non-HTML bodies) are logged and
# skipped; the remaining links are still returned, in input order.
# =============================================================================

from __future__ import annotations

import asyncio
import logging

import httpx
from bs4 import BeautifulSoup

from app.agents.types import RetrievedDocument
from app.config import settings

logger = logging.getLogger(__name__)

_STRIP_TAGS = ("script", "style", "noscript", "nav", "footer", "header", "svg")


def extract_text(html: str) -> tuple[str, str]:
    """
    Return (title, text) for an HTML page.

    Whitespace is collapsed to single spaces.
    """
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""
    for tag in soup(_STRIP_TAGS):
        tag.decompose()
    text = " ".join(soup.get_text(separator=" ").split())
    return title, text


async def _fetch_one(client: httpx.AsyncClient, url: str) -> RetrievedDocument | None:
    try:
        response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("Failed to fetch link %s: %s", url, e)
        return None

    content_type = response.headers.get("content-type", "")
    if "html" not in content_type and "text" not in content_type:
        logger.warning(
            "Skipping link %s: unsupported content type '%s'", url, content_type,
        )
        return None

    if "html" in content_type:
        title, text = extract_text(response.text)
    else:
        title, text = "", " ".join(response.text.split())

    if not text:
        logger.warning("Link %s produced no text", url)
        return None

    return RetrievedDocument(
        content=text[: settings.document_max_chars],
        title=title or url,
        source_url=url,
    )


async def fetch_documents(
    urls: list[str],
    client: httpx.AsyncClient | None = None,
) -> list[RetrievedDocument]:
    """
    Dereference `urls` concurrently, one document per successful link.

    Args:
        urls: Links to fetch. Duplicates are fetched once.
        client: Optional httpx client (tests inject a MockTransport client).

    Returns:
        Documents in the order the links were given.
    """
    unique_urls = list(dict.fromkeys(u.strip() for u in urls if u.strip()))
    if not unique_urls:
        return []

    owns_client = client is None
    client = client or httpx.AsyncClient(
        timeout=settings.document_fetch_timeout_seconds,
        follow_redirects=True,
        headers={"User-Agent": "legal-research-orchestrator/0.1"},
    )
    try:
        fetched = await asyncio.gather(*(_fetch_one(client, u) for u in unique_urls))
    finally:
        if owns_client:
            await client.aclose()

    documents = [doc for doc in fetched if doc is not None]
    logger.info("Fetched %d/%d links", len(documents), len(unique_urls))
    return documents
