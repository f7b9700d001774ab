# =============================================================================
# Unit Tests — Intent Classifier and Capability Selector
# =============================================================================
#
# Both components try the model first and fall back to keyword rules.
# The model is an AsyncMock returning canned LLMResponses, so no API keys
# are needed.
# =============================================================================

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

from app.agents.intent import (
    classify_intent,
    classify_intent_basic,
    intent_from_payload,
    strip_code_fences,
)
from app.agents.selector import select_capabilities, select_capabilities_basic
from app.agents.types import (
    AnalysisDepth,
    CapabilityId,
    Complexity,
    Intent,
    PrimaryAction,
    Urgency,
)
from app.services.llm import LLMResponse

ALL_CAPABILITIES = frozenset(CapabilityId)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _llm_returning(content: str) -> AsyncMock:
    mock_llm = AsyncMock()
    mock_llm.complete.return_value = LLMResponse(
        content=content, model="test-model", input_tokens=50, output_tokens=20,
    )
    return mock_llm


# ---------------------------------------------------------------------------
# Test: Keyword Intent Rules
# ---------------------------------------------------------------------------


class TestClassifyIntentBasic:
    def test_research(self):
        intent = classify_intent_basic("Find cases on non-compete enforceability")
        assert intent.primary_action is PrimaryAction.RESEARCH

    def test_writing_with_document_type(self):
        intent = classify_intent_basic("Draft a motion to dismiss")
        assert intent.primary_action is PrimaryAction.WRITING
        assert intent.document_types == frozenset({"motion"})

    def test_analysis_beats_contract(self):
        intent = classify_intent_basic("Urgent: review this contract")
        assert intent.primary_action is PrimaryAction.ANALYSIS
        assert "contract" in intent.document_types
        assert intent.urgency is Urgency.HIGH

    def test_contract_alone(self):
        intent = classify_intent_basic("What does the contract say about termination?")
        assert intent.primary_action is PrimaryAction.CONTRACT_ANALYSIS

    def test_timeline(self):
        intent = classify_intent_basic("How long does a federal appeal take?")
        assert intent.primary_action is PrimaryAction.TIMELINE

    def test_unknown_defaults(self):
        intent = classify_intent_basic("Hello there")
        assert intent == Intent()

    def test_depth_and_urgency_keywords(self):
        intent = classify_intent_basic("A quick summary, no rush")
        assert intent.analysis_depth is AnalysisDepth.SUMMARY
        assert intent.urgency is Urgency.LOW

        intent = classify_intent_basic("A thorough analysis of the statute")
        assert intent.analysis_depth is AnalysisDepth.COMPREHENSIVE


# ---------------------------------------------------------------------------
# Test: Model-Backed Intent Classification
# ---------------------------------------------------------------------------


class TestClassifyIntent:
    def test_no_llm_uses_rules(self):
        intent = _run(classify_intent("Research fair use precedent", None))
        assert intent.primary_action is PrimaryAction.RESEARCH

    def test_model_reply_parsed(self):
        payload = {
            "primary_action": "writing",
            "document_types": ["Brief"],
            "analysis_depth": "comprehensive",
            "urgency": "high",
            "practice_area": "litigation",
            "jurisdiction": "federal",
            "complexity": "complex",
            "estimated_duration_seconds": 240,
            "key_requirements": ["cite circuit precedent"],
        }
        mock_llm = _llm_returning(json.dumps(payload))

        intent = _run(classify_intent("Prepare an appellate brief", mock_llm))

        assert intent.primary_action is PrimaryAction.WRITING
        assert intent.document_types == frozenset({"brief"})
        assert intent.analysis_depth is AnalysisDepth.COMPREHENSIVE
        assert intent.urgency is Urgency.HIGH
        assert intent.jurisdiction == "federal"
        assert intent.complexity is Complexity.COMPLEX
        assert intent.estimated_duration_seconds == 240
        assert intent.key_requirements == ("cite circuit precedent",)

    def test_fenced_json_accepted(self):
        mock_llm = _llm_returning('```json\n{"primary_action": "discovery"}\n```')
        intent = _run(classify_intent("Something vague", mock_llm))
        assert intent.primary_action is PrimaryAction.DISCOVERY

    def test_invalid_json_falls_back(self):
        mock_llm = _llm_returning("I think this is a research request.")
        intent = _run(classify_intent("Find statutes on wage theft", mock_llm))
        assert intent.primary_action is PrimaryAction.RESEARCH

    def test_non_object_falls_back(self):
        mock_llm = _llm_returning('["research"]')
        intent = _run(classify_intent("Draft a memo", mock_llm))
        assert intent.primary_action is PrimaryAction.WRITING

    def test_llm_error_falls_back(self):
        mock_llm = AsyncMock()
        mock_llm.complete.side_effect = RuntimeError("upstream 500")
        intent = _run(classify_intent("Draft a memo", mock_llm))
        assert intent.primary_action is PrimaryAction.WRITING

    def test_timeout_falls_back(self):
        async def slow(**kwargs):
            await asyncio.sleep(5)

        mock_llm = AsyncMock()
        mock_llm.complete.side_effect = slow
        intent = _run(classify_intent("Draft a memo", mock_llm, timeout=0.01))
        assert intent.primary_action is PrimaryAction.WRITING

    def test_infinite_duration_does_not_raise(self):
        mock_llm = _llm_returning(
            '{"primary_action": "research", "estimated_duration_seconds": 1e999}',
        )
        intent = _run(classify_intent("find cases", mock_llm))
        assert intent.primary_action is PrimaryAction.RESEARCH
        assert intent.estimated_duration_seconds == 60


class TestIntentFromPayload:
    def test_out_of_vocabulary_values_coerced(self):
        intent = intent_from_payload({
            "primary_action": "research",
            "analysis_depth": "expert",
            "urgency": "critical",
            "complexity": "galactic",
        })
        assert intent.analysis_depth is AnalysisDepth.COMPREHENSIVE
        assert intent.urgency is Urgency.HIGH
        assert intent.complexity is Complexity.MODERATE

    def test_missing_fields_default(self):
        assert intent_from_payload({}) == Intent()

    def test_bad_duration_defaults(self):
        intent = intent_from_payload({"estimated_duration_seconds": "soon"})
        assert intent.estimated_duration_seconds == 60

    def test_non_finite_duration_defaults(self):
        for value in (float("inf"), float("-inf"), float("nan"), "Infinity"):
            intent = intent_from_payload({"estimated_duration_seconds": value})
            assert intent.estimated_duration_seconds == 60

    def test_strip_code_fences(self):
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_code_fences('{"a": 1}') == '{"a": 1}'


# ---------------------------------------------------------------------------
# Test: Decision Table
# ---------------------------------------------------------------------------


class TestSelectCapabilitiesBasic:
    def test_research(self):
        query = "Find cases on non-compete enforceability"
        selected = select_capabilities_basic(classify_intent_basic(query), query)
        assert selected == [CapabilityId.RESEARCH]

    def test_deep_research(self):
        query = "Do deep research on Section 230 immunity"
        selected = select_capabilities_basic(classify_intent_basic(query), query)
        assert selected == [CapabilityId.DEEP_LEGAL_RESEARCH]

    def test_comprehensive_depth_means_deep_research(self):
        intent = Intent(
            primary_action=PrimaryAction.RESEARCH,
            analysis_depth=AnalysisDepth.COMPREHENSIVE,
        )
        assert select_capabilities_basic(intent, "anything") == [
            CapabilityId.DEEP_LEGAL_RESEARCH,
        ]

    def test_writing(self):
        query = "Draft a motion to dismiss"
        selected = select_capabilities_basic(classify_intent_basic(query), query)
        assert selected == [CapabilityId.BRIEF_WRITING]

    def test_contract_review(self):
        query = "Review this contract for indemnity risk"
        selected = select_capabilities_basic(classify_intent_basic(query), query)
        assert selected == [CapabilityId.CONTRACT]

    def test_generic_analysis(self):
        query = "Analyze the deposition transcript"
        selected = select_capabilities_basic(classify_intent_basic(query), query)
        assert selected == [CapabilityId.DOCUMENT_ANALYSIS]

    def test_timeline(self):
        query = "Give me a timeline of the case stages"
        selected = select_capabilities_basic(classify_intent_basic(query), query)
        assert selected == [CapabilityId.TIMELINE]

    def test_attached_documents(self):
        query = "Thoughts on these?"
        selected = select_capabilities_basic(
            classify_intent_basic(query), query, context={"document_ids": ["d1"]},
        )
        assert selected == [CapabilityId.DOCUMENT_ANALYSIS]

    def test_nothing_matched_uses_baseline(self):
        query = "Hello there"
        selected = select_capabilities_basic(classify_intent_basic(query), query)
        assert selected == [CapabilityId.RESEARCH]

    def test_unavailable_filtered(self):
        query = "Draft a motion to dismiss"
        selected = select_capabilities_basic(
            classify_intent_basic(query), query,
            available={CapabilityId.RESEARCH},
        )
        assert selected == [CapabilityId.RESEARCH]


# ---------------------------------------------------------------------------
# Test: Model-Backed Selection
# ---------------------------------------------------------------------------


class TestSelectCapabilities:
    def test_unknown_and_duplicate_ids_dropped(self):
        mock_llm = _llm_returning('["research", "astrology", "brief-writing", "research"]')
        selected = _run(select_capabilities(
            Intent(), "Prepare a memo", mock_llm, ALL_CAPABILITIES,
        ))
        assert selected == [CapabilityId.RESEARCH, CapabilityId.BRIEF_WRITING]

    def test_empty_reply_uses_baseline(self):
        mock_llm = _llm_returning("[]")
        selected = _run(select_capabilities(
            Intent(), "Prepare a memo", mock_llm, ALL_CAPABILITIES,
        ))
        assert selected == [CapabilityId.RESEARCH]

    def test_unregistered_ids_dropped(self):
        mock_llm = _llm_returning('["contract", "timeline"]')
        selected = _run(select_capabilities(
            Intent(), "Review the lease", mock_llm,
            frozenset({CapabilityId.RESEARCH, CapabilityId.TIMELINE}),
        ))
        assert selected == [CapabilityId.TIMELINE]

    def test_invalid_reply_falls_back(self):
        mock_llm = _llm_returning('{"capabilities": ["research"]}')
        query = "Draft a motion to dismiss"
        selected = _run(select_capabilities(
            classify_intent_basic(query), query, mock_llm, ALL_CAPABILITIES,
        ))
        assert selected == [CapabilityId.BRIEF_WRITING]

    def test_prompt_lists_available_capabilities(self):
        mock_llm = _llm_returning('["research"]')
        _run(select_capabilities(
            Intent(), "Find cases", mock_llm,
            frozenset({CapabilityId.RESEARCH, CapabilityId.CONTRACT}),
        ))
        prompt = mock_llm.complete.call_args.kwargs["messages"][-1]["content"]
        assert "- research:" in prompt
        assert "- contract:" in prompt
        assert "- timeline:" not in prompt
