# =============================================================================
# Agent Selector — Which Capabilities Does This Request Need?
# =============================================================================
#
# Maps an Intent (plus optional context flags) to an ordered, de-duplicated
# list of capability ids from the closed registry.
#
# 1. MODEL — ask the LLM for a JSON array of capability ids. Anything not
#    in the registry is discarded; an empty result becomes the baseline
#    capability.
# 2. FALLBACK — a decision table keyed on the primary action that also
#    looks for tell-tale phrases in the raw query.
#
# The result is never empty.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Collection, Iterable
from typing import Any

from app.agents.intent import strip_code_fences
from app.agents.types import AnalysisDepth, CapabilityId, Intent, PrimaryAction
from app.config import settings
from app.services.llm import LLMProvider, generate_text

logger = logging.getLogger(__name__)


CAPABILITY_DESCRIPTIONS: dict[CapabilityId, str] = {
    CapabilityId.RESEARCH: "Legal research, case law, statutory analysis",
    CapabilityId.BRIEF_WRITING: "Legal document drafting, memoranda, briefs",
    CapabilityId.DISCOVERY: "Document review, privilege analysis, discovery responses",
    CapabilityId.CONTRACT: "Contract analysis, risk assessment, term extraction",
    CapabilityId.TIMELINE: "Litigation timelines and case stages",
    CapabilityId.DEEP_LEGAL_RESEARCH: (
        "In-depth multi-source legal analysis across cases, statutes, "
        "academic papers and vetted web sources"
    ),
    CapabilityId.DOCUMENT_ANALYSIS: "Review and analysis of attached documents",
}

_SELECTION_SYSTEM = """You decide which legal capabilities are needed for \
a task.

Consider the primary action, the document types involved, the complexity \
and depth of analysis, and workflow dependencies.

Respond with ONLY a JSON array of capability ids in execution order, for \
example ["research", "brief-writing"] for a memo that needs research first."""


def baseline_capability() -> CapabilityId:
    return CapabilityId.parse(settings.baseline_capability) or CapabilityId.RESEARCH


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def select_capabilities(
    intent: Intent,
    query: str,
    llm: LLMProvider | None,
    available: Collection[CapabilityId],
    context: dict[str, Any] | None = None,
    timeout: float | None = None,
) -> list[CapabilityId]:
    """
    Choose capabilities for the request.

    Args:
        intent: The classified intent.
        query: Raw user request (consulted by the fallback rules).
        llm: LLM provider, or None to use the fallback directly.
        available: Capability ids that have a registered implementation.
        context: Caller context; `document_ids` marks attached documents.
        timeout: Override for llm_timeout_seconds.

    Returns:
        A non-empty, duplicate-free list of registered capability ids.
    """
    if llm is None:
        return select_capabilities_basic(intent, query, available, context)

    prompt = (
        f"Intent analysis:\n{json.dumps(intent.to_dict(), indent=2)}\n\n"
        f"Context:\n{json.dumps(_context_summary(context), indent=2)}\n\n"
        f"Available capabilities:\n{_describe(available)}"
    )

    try:
        raw = await generate_text(
            llm,
            prompt=prompt,
            system=_SELECTION_SYSTEM,
            temperature=0.0,
            max_tokens=256,
            timeout=timeout,
        )
        reply = json.loads(strip_code_fences(raw))
        if not isinstance(reply, list):
            raise ValueError("selection reply is not a JSON array")
    except (json.JSONDecodeError, ValueError) as e:
        logger.warning("Failed to parse selection response: %s. Using decision table.", e)
        return select_capabilities_basic(intent, query, available, context)
    except asyncio.TimeoutError:
        logger.warning("Capability selection timed out. Using decision table.")
        return select_capabilities_basic(intent, query, available, context)
    except Exception as e:
        logger.warning("Selection LLM call failed: %s. Using decision table.", e)
        return select_capabilities_basic(intent, query, available, context)

    parsed = [CapabilityId.parse(item) for item in reply]
    dropped = [item for item, cap in zip(reply, parsed) if cap is None or cap not in available]
    if dropped:
        logger.warning("Discarding unknown capabilities from model: %s", dropped)

    selected = _dedupe(cap for cap in parsed if cap is not None and cap in available)
    if not selected:
        selected = [baseline_capability()]

    logger.info("Selected capabilities: %s", [c.value for c in selected])
    return selected


def select_capabilities_basic(
    intent: Intent,
    query: str,
    available: Collection[CapabilityId] | None = None,
    context: dict[str, Any] | None = None,
) -> list[CapabilityId]:
    """Decision table keyed on the primary action, refined by query phrases."""
    action = intent.primary_action
    q = query.lower()
    picked: list[CapabilityId] = []

    if action is PrimaryAction.RESEARCH or _has_any(q, "research", "find cases", "statutes"):
        deep = (
            _has_any(q, "deep", "comprehensive analysis", "thorough research")
            or intent.analysis_depth is AnalysisDepth.COMPREHENSIVE
        )
        picked.append(
            CapabilityId.DEEP_LEGAL_RESEARCH if deep else CapabilityId.RESEARCH,
        )

    if action is PrimaryAction.WRITING or _has_any(q, "write", "draft", "generate memo"):
        picked.append(CapabilityId.BRIEF_WRITING)

    if action is PrimaryAction.DISCOVERY or _has_any(
        q, "discovery", "review documents for privilege",
    ):
        picked.append(CapabilityId.DISCOVERY)

    if action is PrimaryAction.ANALYSIS or _has_any(q, "analyze document", "review contract"):
        if "contract" in intent.document_types or "contract terms" in q:
            picked.append(CapabilityId.CONTRACT)
        else:
            picked.append(CapabilityId.DOCUMENT_ANALYSIS)

    if action is PrimaryAction.CONTRACT_ANALYSIS:
        picked.append(CapabilityId.CONTRACT)

    if action is PrimaryAction.TIMELINE or _has_any(q, "timeline", "case stages"):
        picked.append(CapabilityId.TIMELINE)

    if _has_any(q, "deep legal research", "comprehensive legal investigation"):
        picked.append(CapabilityId.DEEP_LEGAL_RESEARCH)

    if context and context.get("document_ids") and action in (
        PrimaryAction.ANALYSIS, PrimaryAction.UNKNOWN,
    ):
        picked.append(CapabilityId.DOCUMENT_ANALYSIS)

    selected = _dedupe(picked)
    if available is not None:
        selected = [c for c in selected if c in available]
    if not selected:
        selected = [baseline_capability()]

    logger.info("Selected capabilities (rules): %s", [c.value for c in selected])
    return selected


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _dedupe(capabilities: Iterable[CapabilityId]) -> list[CapabilityId]:
    return list(dict.fromkeys(capabilities))


def _has_any(text: str, *needles: str) -> bool:
    return any(n in text for n in needles)


def _describe(available: Collection[CapabilityId]) -> str:
    return "\n".join(
        f"- {cap.value}: {CAPABILITY_DESCRIPTIONS.get(cap, '')}"
        for cap in CapabilityId
        if cap in available
    )


def _context_summary(context: dict[str, Any] | None) -> dict[str, Any]:
    """Only JSON-safe scalar and list values of the caller context."""
    if not context:
        return {}
    return {
        k: v for k, v in context.items()
        if isinstance(v, (str, int, float, bool, list))
    }
