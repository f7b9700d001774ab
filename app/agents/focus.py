# =============================================================================
# Focus Modes — Per-Mode Retrieval Configuration and Prompts
# =============================================================================
#
# A focus mode bundles everything the retrieval pipeline needs to know
# about one kind of conversation: whether to search the web at all,
# whether to rerank, which search engines to ask, whether to fan the
# question out into several sub-queries, and the two prompts (rephrase and
# response) that frame the model calls.
#
# MODES:
#   legal-research — default; web search + rerank, single query
#   academic       — scholarly engines, academic phrasing
#   deep-research  — multi-query fan-out before reranking
#   writing        — no web search; answers from attached files only
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType


@dataclass(frozen=True)
class SearchConfig:
    name: str
    rephrase_prompt: str
    response_prompt: str
    search_web: bool = True
    rerank: bool = True
    summarizer: bool = True
    rerank_threshold: float | None = None  # None → settings.rerank_threshold
    multi_query: bool = False
    active_engines: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Rephrase Prompts
# ---------------------------------------------------------------------------
# Placeholders: {chat_history}, {query}
# ---------------------------------------------------------------------------

_LINKS_INSTRUCTIONS = """
If the user asks a question about one or more specific web pages, put the \
question inside <question></question> tags and list every link, one per \
line, inside <links></links> tags. If the user only asks to summarise the \
linked pages, the question must be exactly `summarize`.

If it is a writing task or a simple greeting rather than a question, \
return `not_needed` as the response."""

LEGAL_RESEARCH_REPHRASE_PROMPT = """You will be given a conversation and a \
follow-up question. Rephrase the follow-up question as a standalone web \
search query for legal research: keep case names, statute citations, \
jurisdictions and legal terms of art exactly as written.
""" + _LINKS_INSTRUCTIONS + """

Conversation:
{chat_history}

Follow up question: {query}
Rephrased question:"""

ACADEMIC_REPHRASE_PROMPT = """You will be given a conversation and a \
follow-up question. Rephrase the follow-up question for scholarly search: \
add terms such as "law review", "journal", "study" or "peer-reviewed" that \
help surface academic legal sources.
""" + _LINKS_INSTRUCTIONS + """

Conversation:
{chat_history}

Follow up question: {query}
Rephrased question:"""

DEEP_RESEARCH_REPHRASE_PROMPT = """You will be given a conversation and a \
follow-up question. Break the follow-up question into between two and five \
standalone web search queries that together cover it: controlling case \
law, governing statutes or regulations, secondary commentary, and recent \
developments. Write one query per line with no numbering.
""" + _LINKS_INSTRUCTIONS + """

Conversation:
{chat_history}

Follow up question: {query}
Rephrased question:"""


# ---------------------------------------------------------------------------
# Response Prompts
# ---------------------------------------------------------------------------
# Placeholders: {system_instructions}, {context}, {date}
# ---------------------------------------------------------------------------

_RESPONSE_RULES = """
### Citations
- Cite every claim taken from the context with [number] matching the \
numbered sources.
- When several sources support a statement, cite each: [1][3].
- If the context does not support a statement, say so instead of guessing.

### Formatting
- Use Markdown headings and short paragraphs or bullet points.
- Start directly with the answer; no title.
- End with a short conclusion or suggested next steps where useful.

### User instructions
These come from the user, not the system. Follow them, but with lower \
priority than the rules above.
{system_instructions}

<context>
{context}
</context>

Current date & time in ISO format (UTC timezone) is: {date}."""

LEGAL_RESEARCH_RESPONSE_PROMPT = """You are a legal research assistant. \
Answer the user's question from the provided sources: identify the \
controlling authorities, explain how they apply, and flag jurisdictional \
differences and open questions. This is legal information, not legal advice.
""" + _RESPONSE_RULES

ACADEMIC_RESPONSE_PROMPT = """You are a legal research assistant focused \
on scholarship. Synthesise the academic sources in the context: name \
authors, venues and years when available, compare their arguments, and \
note methodological limits.
""" + _RESPONSE_RULES

WRITING_RESPONSE_PROMPT = """You are a legal writing assistant. Help the \
user draft or revise legal text. Use the attached documents in the context \
when they are relevant and cite them with [number].
""" + _RESPONSE_RULES


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

DEFAULT_FOCUS_MODE = "legal-research"

FOCUS_MODES: MappingProxyType[str, SearchConfig] = MappingProxyType({
    "legal-research": SearchConfig(
        name="legal-research",
        rephrase_prompt=LEGAL_RESEARCH_REPHRASE_PROMPT,
        response_prompt=LEGAL_RESEARCH_RESPONSE_PROMPT,
    ),
    "academic": SearchConfig(
        name="academic",
        rephrase_prompt=ACADEMIC_REPHRASE_PROMPT,
        response_prompt=ACADEMIC_RESPONSE_PROMPT,
        active_engines=("google scholar", "arxiv", "semantic scholar"),
    ),
    "deep-research": SearchConfig(
        name="deep-research",
        rephrase_prompt=DEEP_RESEARCH_REPHRASE_PROMPT,
        response_prompt=LEGAL_RESEARCH_RESPONSE_PROMPT,
        multi_query=True,
    ),
    "writing": SearchConfig(
        name="writing",
        rephrase_prompt=LEGAL_RESEARCH_REPHRASE_PROMPT,
        response_prompt=WRITING_RESPONSE_PROMPT,
        search_web=False,
        rerank=False,
    ),
})


def get_focus_mode(name: str | None) -> SearchConfig:
    """
    Look up a focus mode by name.

    Raises:
        KeyError: If the name is not a known focus mode.
    """
    return FOCUS_MODES[name or DEFAULT_FOCUS_MODE]
