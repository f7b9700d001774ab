# =============================================================================
# Intent Classifier — Model-Backed with Keyword Fallback
# =============================================================================
#
# Turns a free-text legal request into a structured Intent.
#
# 1. MODEL — ask the LLM for a JSON object describing the request
#    (bounded by llm_timeout_seconds)
# 2. FALLBACK — if there is no model, the call fails, times out, or the
#    reply is not valid JSON, apply keyword rules to the lower-cased query
#
# DESIGN DECISION: classify_intent never raises.
# Classification is the first step of every plan; a flaky model must not
# make planning fail. Every failure path is logged at WARNING and produces
# the keyword-rule result instead.
#
# DESIGN DECISION: Out-of-vocabulary values are coerced, not rejected.
# Models occasionally answer "expert" depth or "critical" urgency. Known
# aliases map onto the closest value; anything else becomes the default.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
from enum import Enum
from typing import Any, TypeVar

from app.agents.types import (
    AnalysisDepth,
    Complexity,
    Intent,
    PrimaryAction,
    Urgency,
)
from app.services.llm import LLMProvider, generate_text

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

_FENCE_RE = re.compile(r"```(?:json)?\s*|```")


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

_INTENT_SYSTEM = """You analyse legal requests and describe the user's \
intent and requirements.

Respond with ONLY valid JSON (no markdown, no explanation):
{
  "primary_action": "research|writing|analysis|discovery|contract_analysis|timeline|unknown",
  "secondary_actions": ["additional actions that may be needed"],
  "document_types": ["contract|brief|memo|motion|agreement|discovery|opinion|pleading"],
  "analysis_depth": "summary|standard|comprehensive",
  "urgency": "low|normal|high",
  "practice_area": "corporate|litigation|employment|ip|real_estate|tax|criminal|family|other",
  "jurisdiction": "federal|state|international|unknown",
  "complexity": "simple|moderate|complex|highly_complex",
  "estimated_duration_seconds": 60,
  "key_requirements": ["specific requirements extracted from the request"]
}

Focus on the legal context and the practical requirements of the request."""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def classify_intent(
    query: str,
    llm: LLMProvider | None,
    timeout: float | None = None,
) -> Intent:
    """
    Classify `query`, falling back to keyword rules on any model failure.

    Args:
        query: The user's request.
        llm: LLM provider, or None to use the keyword rules directly.
        timeout: Override for llm_timeout_seconds.
    """
    if llm is None:
        return classify_intent_basic(query)

    try:
        raw = await generate_text(
            llm,
            prompt=f"Legal request: {query}",
            system=_INTENT_SYSTEM,
            temperature=0.0,
            max_tokens=512,
            timeout=timeout,
        )
        payload = json.loads(strip_code_fences(raw))
        if not isinstance(payload, dict):
            raise ValueError("intent reply is not a JSON object")
        intent = intent_from_payload(payload)
    except (json.JSONDecodeError, ValueError, OverflowError) as e:
        logger.warning("Failed to parse intent response: %s. Using keyword rules.", e)
        return classify_intent_basic(query)
    except asyncio.TimeoutError:
        logger.warning("Intent classification timed out. Using keyword rules.")
        return classify_intent_basic(query)
    except Exception as e:
        logger.warning("Intent LLM call failed: %s. Using keyword rules.", e)
        return classify_intent_basic(query)

    logger.info(
        "Classified intent: action=%s depth=%s urgency=%s",
        intent.primary_action.value,
        intent.analysis_depth.value,
        intent.urgency.value,
    )
    return intent


def classify_intent_basic(query: str) -> Intent:
    """
    Keyword rules over the lower-cased query.

    Checks are ordered; the first matching action wins.
    """
    q = query.lower()

    if _has_any(q, "research", "find", "search"):
        action = PrimaryAction.RESEARCH
    elif _has_any(q, "write", "draft", "generate"):
        action = PrimaryAction.WRITING
    elif _has_any(q, "review", "analyze", "analyse", "examine"):
        action = PrimaryAction.ANALYSIS
    elif _has_any(q, "discovery", "privilege"):
        action = PrimaryAction.DISCOVERY
    elif "contract" in q:
        action = PrimaryAction.CONTRACT_ANALYSIS
    elif _has_any(
        q, "timeline", "schedule", "stages", "phases",
        "litigation process", "how long",
    ):
        action = PrimaryAction.TIMELINE
    else:
        action = PrimaryAction.UNKNOWN

    document_types = frozenset(
        t for t in ("contract", "brief", "memo", "motion", "agreement", "discovery")
        if t in q
    )

    if _has_any(q, "comprehensive", "detailed", "thorough"):
        depth = AnalysisDepth.COMPREHENSIVE
    elif _has_any(q, "quick", "brief", "summary"):
        depth = AnalysisDepth.SUMMARY
    else:
        depth = AnalysisDepth.STANDARD

    if _has_any(q, "urgent", "asap", "immediately"):
        urgency = Urgency.HIGH
    elif _has_any(q, "when possible", "no rush"):
        urgency = Urgency.LOW
    else:
        urgency = Urgency.NORMAL

    return Intent(
        primary_action=action,
        document_types=document_types,
        analysis_depth=depth,
        urgency=urgency,
    )


def intent_from_payload(payload: dict[str, Any]) -> Intent:
    """Build an Intent from a model reply, coercing unknown values to defaults."""
    return Intent(
        primary_action=_coerce(
            PrimaryAction, payload.get("primary_action"), PrimaryAction.UNKNOWN,
            {"timeline_generation": PrimaryAction.TIMELINE},
        ),
        secondary_actions=_str_tuple(payload.get("secondary_actions")),
        document_types=frozenset(
            s.lower() for s in _str_tuple(payload.get("document_types"))
        ),
        analysis_depth=_coerce(
            AnalysisDepth, payload.get("analysis_depth"), AnalysisDepth.STANDARD,
            {"expert": AnalysisDepth.COMPREHENSIVE},
        ),
        urgency=_coerce(
            Urgency, payload.get("urgency"), Urgency.NORMAL,
            {"critical": Urgency.HIGH},
        ),
        practice_area=str(payload.get("practice_area") or "other"),
        jurisdiction=str(payload.get("jurisdiction") or "unknown"),
        complexity=_coerce(Complexity, payload.get("complexity"), Complexity.MODERATE),
        estimated_duration_seconds=_as_int(
            payload.get("estimated_duration_seconds"), 60,
        ),
        key_requirements=_str_tuple(payload.get("key_requirements")),
    )


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def _has_any(text: str, *needles: str) -> bool:
    return any(n in text for n in needles)


def _coerce(
    enum_cls: type[E],
    value: Any,
    default: E,
    aliases: dict[str, E] | None = None,
) -> E:
    if not isinstance(value, str):
        return default
    key = value.strip().lower()
    if aliases and key in aliases:
        return aliases[key]
    try:
        return enum_cls(key)
    except ValueError:
        return default


def _str_tuple(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(v) for v in value if isinstance(v, (str, int, float)))


def _as_int(value: Any, default: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default
