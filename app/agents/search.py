# =============================================================================
# Query Rephraser + Document Collector
# =============================================================================
#
# Turns (conversation history, follow-up question) into the candidate
# documents for the rerank step.
#
# 1. REPHRASE — the focus mode's rephrase prompt asks the LLM for a
#    standalone query. Its raw output is read as exactly one of:
#      a. the `not_needed` sentinel → no retrieval at all
#      b. a <links> block          → dereference every link
#      c. a rewritten query        → one web search, or one per line in
#                                    multi-query mode
# 2. COLLECT — web search / link fetching through the collaborators in
#    app/services/.
#
# DESIGN DECISION: Plain async functions, not a LangGraph subgraph.
# The flow is a single branch on the rephrase result; LangGraph adds value
# at the orchestrator level but would over-complicate this step.
#
# DESIGN DECISION: Multi-query merge is deterministic.
# Sub-query searches run concurrently with asyncio.gather, but results are
# merged in sub-query order (not completion order), first URL wins.
#
# DESIGN DECISION: Partial failures are skipped, auth failures are not.
# A sub-query whose search fails is logged and left out. A provider that
# rejects its credentials (SearchAuthError) is a configuration problem and
# propagates to the caller.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Literal

from app.agents.analyst import format_chat_history
from app.agents.focus import SearchConfig
from app.agents.types import RetrievedDocument
from app.exceptions import SearchAuthError
from app.services.documents import fetch_documents
from app.services.llm import LLMProvider, generate_text
from app.services.web_search import SearchHit, SearchOptions, WebSearch

logger = logging.getLogger(__name__)

FetchDocuments = Callable[[list[str]], Awaitable[list[RetrievedDocument]]]

NOT_NEEDED_SENTINELS = frozenset({"not_needed", "not needed"})

_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)
_QUESTION_RE = re.compile(r"<question>(.*?)</question>", re.DOTALL | re.IGNORECASE)
_LINKS_RE = re.compile(r"<links>(.*?)</links>", re.DOTALL | re.IGNORECASE)
_TAG_RE = re.compile(r"</?(?:question|links|think)>", re.IGNORECASE)
_LABEL_RE = re.compile(
    r"^(?:rephrased\s+questions?|rephrased\s+query|follow\s+up\s+question|"
    r"(?:search\s+|sub-?)?quer(?:y|ies)|questions?)\s*:\s*",
    re.IGNORECASE,
)
_BULLET_RE = re.compile(r"^(?:[-*•]\s+|\d+[.)]\s+)")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class RephraseResult:
    """How the rephrase output was interpreted."""

    kind: Literal["not_needed", "links", "query"]
    question: str = ""
    links: list[str] = field(default_factory=list)
    sub_queries: list[str] = field(default_factory=list)


@dataclass
class RetrievalResult:
    effective_query: str
    documents: list[RetrievedDocument] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Rephrase Output Parsing
# ---------------------------------------------------------------------------


def strip_tags(text: str) -> str:
    """Remove <think> blocks and any residual tag markers."""
    return _TAG_RE.sub("", _THINK_RE.sub("", text)).strip()


def parse_rephrase_output(raw: str, multi_query: bool = False) -> RephraseResult:
    """
    Interpret the raw rephrase output.

    Checks, in order: the not-needed sentinel, a <links> block, then a
    plain rewritten query (split per line when `multi_query` is set).
    """
    text = _THINK_RE.sub("", raw).strip()
    question_match = _QUESTION_RE.search(text)
    question_body = question_match.group(1).strip() if question_match else ""

    for candidate in (text, question_body):
        if candidate.strip().strip("`'\".").lower() in NOT_NEEDED_SENTINELS:
            return RephraseResult(kind="not_needed")

    links_match = _LINKS_RE.search(text)
    if links_match:
        links = [
            line.strip() for line in links_match.group(1).splitlines() if line.strip()
        ]
        if links:
            if not question_body:
                question_body = strip_tags(_LINKS_RE.sub("", text))
            return RephraseResult(kind="links", question=question_body, links=links)

    if multi_query:
        sub_queries = _split_sub_queries(question_body or text)
        return RephraseResult(
            kind="query", question="\n".join(sub_queries), sub_queries=sub_queries,
        )

    return RephraseResult(kind="query", question=strip_tags(question_body or text))


def _split_sub_queries(text: str) -> list[str]:
    queries: list[str] = []
    for line in strip_tags(text).splitlines():
        line = _BULLET_RE.sub("", line.strip())
        line = _LABEL_RE.sub("", line).strip()
        if line:
            queries.append(line)
    return queries


# ---------------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------------


class DocumentCollector:
    """
    Rephrase a follow-up question and gather candidate documents.

    Args:
        web_search: Web search collaborator.
        llm: LLM provider for the rephrase step.
        fetch: Link dereferencing collaborator (defaults to
            app.services.documents.fetch_documents).
    """

    def __init__(
        self,
        web_search: WebSearch,
        llm: LLMProvider,
        fetch: FetchDocuments | None = None,
    ) -> None:
        self._web_search = web_search
        self._llm = llm
        self._fetch = fetch or fetch_documents

    async def rephrase(
        self,
        history: list[dict[str, str]],
        query: str,
        config: SearchConfig,
    ) -> RephraseResult:
        prompt = config.rephrase_prompt.format(
            chat_history=format_chat_history(history),
            query=query,
        )
        raw = await generate_text(self._llm, prompt=prompt, temperature=0.0)
        result = parse_rephrase_output(raw, multi_query=config.multi_query)
        logger.info("Rephrased '%s' as %s", query[:60], result.kind)
        return result

    async def rephrase_and_collect(
        self,
        history: list[dict[str, str]],
        query: str,
        config: SearchConfig,
    ) -> RetrievalResult:
        """
        Rephrase `query` in the light of `history` and collect documents.

        Raises:
            SearchAuthError: If a search provider rejected its credentials.
        """
        rephrased = await self.rephrase(history, query, config)

        if rephrased.kind == "not_needed":
            return RetrievalResult(effective_query="")

        if rephrased.kind == "links":
            documents = await self._fetch(rephrased.links)
            return RetrievalResult(
                effective_query=rephrased.question or query,
                documents=documents,
            )

        if rephrased.sub_queries:
            documents = await self._search_many(rephrased.sub_queries, config)
            return RetrievalResult(
                effective_query=rephrased.question, documents=documents,
            )

        if not rephrased.question:
            logger.info("Rephrase produced an empty query; skipping search")
            return RetrievalResult(effective_query="")

        documents = await self._search_one(rephrased.question, config)
        return RetrievalResult(effective_query=rephrased.question, documents=documents)

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    async def _search_one(
        self,
        query: str,
        config: SearchConfig,
    ) -> list[RetrievedDocument]:
        options = SearchOptions(engines=list(config.active_engines))
        response = await self._web_search.search(query, options)
        return [_to_document(hit, config) for hit in response.results]

    async def _search_many(
        self,
        queries: list[str],
        config: SearchConfig,
    ) -> list[RetrievedDocument]:
        outcomes = await asyncio.gather(
            *(self._search_one(q, config) for q in queries),
            return_exceptions=True,
        )

        merged: list[RetrievedDocument] = []
        seen: set[str] = set()
        for sub_query, outcome in zip(queries, outcomes):
            if isinstance(outcome, SearchAuthError):
                raise outcome
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning("Sub-query '%s' failed: %s", sub_query[:60], outcome)
                continue
            for doc in outcome:
                if not doc.source_url or doc.source_url in seen:
                    continue
                seen.add(doc.source_url)
                merged.append(doc)

        logger.info(
            "Multi-query search: %d sub-queries → %d unique documents",
            len(queries), len(merged),
        )
        return merged


def _to_document(hit: SearchHit, config: SearchConfig) -> RetrievedDocument:
    content = hit.content or (hit.title if "youtube" in config.active_engines else "")
    return RetrievedDocument(
        content=content,
        title=hit.title,
        source_url=hit.url,
        image_url=hit.img_src or hit.thumbnail_src,
    )
