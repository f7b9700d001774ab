# =============================================================================
# Analyst Agent — Capability-Specific Answer Generation
# =============================================================================
#
# The analyst takes the ranked context window and the user's question,
# then generates an answer with the configured LLM.
#
# TWO ENTRY SHAPES:
#   stream_answer_text() — incremental text for the chat stream, framed by
#                          the focus mode's response prompt
#   analyse()            — one-shot answer for a plan capability, framed by
#                          that capability's system prompt
#
# DESIGN DECISION: Capability-specific system prompts.
# Brief writing, discovery, contract review, timelines and document review
# share one execution shape and differ only in their instructions. Each
# prompt fixes the output format and the grounding rules for its task.
#
# DESIGN DECISION: Context formatted with numbered references.
# Documents are presented as [1], [2], etc. so the LLM can cite specific
# sources; the numbering matches the order of the `sources` event.
#
# DESIGN DECISION: An empty context still generates.
# A "not needed" rephrase (greeting, writing task) leaves no documents,
# and the model is expected to answer from the conversation alone.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime

from app.agents.types import CapabilityId, RetrievedDocument
from app.services.llm import LLMProvider

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class AnalysisResult:
    """Result from the analyst agent."""

    answer: str
    model: str
    input_tokens: int
    output_tokens: int


# ---------------------------------------------------------------------------
# Capability-Specific System Prompts
# ---------------------------------------------------------------------------
# Each prompt follows the same pattern:
# 1. Role definition
# 2. Grounding instruction (prior results and case context come first)
# 3. Output format guidance
# ---------------------------------------------------------------------------

SYSTEM_PROMPTS: dict[CapabilityId, str] = {
    CapabilityId.BRIEF_WRITING: (
        "You are a legal writing specialist. Draft the requested memorandum, "
        "brief or motion.\n\n"
        "Rules:\n"
        "- Build the argument on the research results provided in the context\n"
        "- Use the standard structure: question presented, brief answer, "
        "facts, discussion, conclusion\n"
        "- Cite authorities using [1], [2], etc. where the context numbers them\n"
        "- Flag any point the research does not support instead of inventing "
        "authority\n"
        "- Write in formal, persuasive legal English"
    ),

    CapabilityId.DISCOVERY: (
        "You are a discovery specialist. Plan or perform the requested "
        "document review.\n\n"
        "Rules:\n"
        "- Identify categories of responsive documents\n"
        "- Flag potential attorney-client privilege and work-product issues\n"
        "- Propose search terms and custodians where useful\n"
        "- Note preservation obligations and deadlines\n"
        "- Present the result as a structured checklist"
    ),

    CapabilityId.CONTRACT: (
        "You are a contract analyst. Review the contract described in the "
        "request.\n\n"
        "Rules:\n"
        "- Extract key terms: parties, term, payment, termination, liability, "
        "indemnity, governing law\n"
        "- Rate each risk as low, medium or high with a one-line reason\n"
        "- Point out missing or unusual clauses\n"
        "- Suggest concrete redlines for high-risk terms\n"
        "- Use a markdown table for the term summary"
    ),

    CapabilityId.TIMELINE: (
        "You are a litigation planning specialist. Produce a timeline for "
        "the matter described.\n\n"
        "Rules:\n"
        "- List each stage in order with typical duration ranges\n"
        "- Mark statutory and procedural deadlines explicitly\n"
        "- Note where timing depends on the jurisdiction\n"
        "- Present the timeline as a numbered list"
    ),

    CapabilityId.DOCUMENT_ANALYSIS: (
        "You are a legal document reviewer. Analyse the attached documents "
        "referenced in the context.\n\n"
        "Rules:\n"
        "- Summarise each document's purpose and key provisions\n"
        "- Identify obligations, rights and deadlines\n"
        "- Flag ambiguous language and inconsistencies between documents\n"
        "- Cite documents by their number or name"
    ),
}

_DEFAULT_SYSTEM = (
    "You are a legal research assistant. Answer the request clearly, "
    "ground every statement in the provided context, and say so when the "
    "context is insufficient."
)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def format_chat_history(history: list[dict[str, str]]) -> str:
    """Render the conversation as `role: content` lines."""
    return "\n".join(
        f"{turn.get('role', 'user')}: {turn.get('content', '')}" for turn in history
    )


def build_answer_messages(
    query: str,
    history: list[dict[str, str]],
    documents: list[RetrievedDocument],
    response_prompt: str,
    system_instructions: str = "",
) -> tuple[str, list[dict[str, str]]]:
    """
    Build the system prompt and message list for answer generation.

    Returns:
        (system prompt, messages) ready for LLMProvider.complete/stream.
    """
    system = response_prompt.format(
        system_instructions=system_instructions,
        context=_format_context(documents),
        date=datetime.now(UTC).isoformat(),
    )
    messages = [
        {"role": turn["role"], "content": turn["content"]}
        for turn in history
        if turn.get("role") in ("user", "assistant") and turn.get("content")
    ]
    messages.append({"role": "user", "content": query})
    return system, messages


async def stream_answer_text(
    llm: LLMProvider,
    query: str,
    history: list[dict[str, str]],
    documents: list[RetrievedDocument],
    response_prompt: str,
    system_instructions: str = "",
) -> AsyncIterator[str]:
    """Yield the generated answer chunk by chunk."""
    system, messages = build_answer_messages(
        query, history, documents, response_prompt, system_instructions,
    )
    logger.info("Generating streamed answer from %d documents", len(documents))
    async for chunk in llm.stream(messages=messages, system=system):
        yield chunk


async def generate_answer(
    llm: LLMProvider,
    query: str,
    history: list[dict[str, str]],
    documents: list[RetrievedDocument],
    response_prompt: str,
    system_instructions: str = "",
) -> str:
    """Generate the whole answer in one call."""
    system, messages = build_answer_messages(
        query, history, documents, response_prompt, system_instructions,
    )
    response = await llm.complete(messages=messages, system=system)
    logger.info(
        "Answer complete: model=%s, tokens=%d+%d",
        response.model, response.input_tokens, response.output_tokens,
    )
    return response.content


async def analyse(
    capability_id: CapabilityId,
    query: str,
    context_text: str,
    llm: LLMProvider,
) -> AnalysisResult:
    """
    Run one prompt-driven capability.

    Args:
        capability_id: Selects the system prompt.
        query: The user's original request.
        context_text: Case context and dependency results, pre-rendered.
        llm: LLM provider to use for generation.
    """
    system_prompt = SYSTEM_PROMPTS.get(capability_id, _DEFAULT_SYSTEM)
    user_message = f"Request: {query}"
    if context_text:
        user_message += f"\n\nContext:\n\n{context_text}"

    logger.info("Analyst generating answer: capability=%s", capability_id.value)

    response = await llm.complete(
        messages=[{"role": "user", "content": user_message}],
        system=system_prompt,
    )

    logger.info(
        "Analyst complete: model=%s, tokens=%d+%d",
        response.model, response.input_tokens, response.output_tokens,
    )

    return AnalysisResult(
        answer=response.content,
        model=response.model,
        input_tokens=response.input_tokens,
        output_tokens=response.output_tokens,
    )


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _format_context(documents: list[RetrievedDocument]) -> str:
    """
    Format documents as numbered context for the LLM.

    Example output:
        [1] Smith v. Jones (page 12):
        The court held that the non-compete clause was unenforceable...

        ---

        [2] 29 U.S.C. § 207:
        No employer shall employ any of his employees...
    """
    sections = []
    for i, doc in enumerate(documents, 1):
        page_label = f" (page {doc.page_number})" if doc.page_number else ""
        sections.append(f"[{i}] {doc.title}{page_label}:\n{doc.content}")
    return "\n\n---\n\n".join(sections)
