# =============================================================================
# Unit Tests — Analyst and Capability Implementations
# =============================================================================
#
# Tests the prompt builders, the two capability kinds and the registry
# without requiring API keys. Uses mock LLM providers and a fake retrieval
# pipeline.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from app.agents.analyst import (
    SYSTEM_PROMPTS,
    AnalysisResult,
    _format_context,
    analyse,
    build_answer_messages,
    format_chat_history,
)
from app.agents.capabilities import (
    CapabilityRegistry,
    PromptCapability,
    ResearchCapability,
    build_default_registry,
    render_context,
)
from app.agents.focus import LEGAL_RESEARCH_RESPONSE_PROMPT
from app.agents.types import (
    CapabilityId,
    CapabilityInput,
    OptimizationMode,
    RetrievedDocument,
)
from app.exceptions import UnknownCapabilityError
from app.services.llm import LLMResponse


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _mock_llm(content: str = "Analysis complete.") -> AsyncMock:
    mock_llm = AsyncMock()
    mock_llm.complete.return_value = LLMResponse(
        content=content, model="test-model", input_tokens=100, output_tokens=20,
    )
    return mock_llm


# ---------------------------------------------------------------------------
# Test: Context Formatting
# ---------------------------------------------------------------------------


class TestFormatContext:
    """Tests for document → LLM context formatting."""

    def test_numbers_documents(self):
        docs = [
            RetrievedDocument(content="The clause is void.", title="Smith v. Jones", page_number=12),
            RetrievedDocument(content="No employer shall...", title="29 U.S.C. 207"),
        ]
        context = _format_context(docs)

        assert context.startswith("[1] Smith v. Jones (page 12):\nThe clause is void.")
        assert "[2] 29 U.S.C. 207:\nNo employer shall..." in context
        assert "\n\n---\n\n" in context

    def test_empty(self):
        assert _format_context([]) == ""

    def test_chat_history(self):
        history = [
            {"role": "user", "content": "What is consideration?"},
            {"role": "assistant", "content": "A bargained-for exchange."},
        ]
        assert format_chat_history(history) == (
            "user: What is consideration?\nassistant: A bargained-for exchange."
        )


class TestBuildAnswerMessages:
    def test_system_prompt_filled(self):
        docs = [RetrievedDocument(content="Holding.", title="Roe v. Doe")]
        system, messages = build_answer_messages(
            "What was held?", [], docs, LEGAL_RESEARCH_RESPONSE_PROMPT, "Be brief.",
        )

        assert "[1] Roe v. Doe:\nHolding." in system
        assert "Be brief." in system
        assert "{context}" not in system
        assert messages == [{"role": "user", "content": "What was held?"}]

    def test_history_filtered(self):
        history = [
            {"role": "system", "content": "ignore me"},
            {"role": "user", "content": "First"},
            {"role": "assistant", "content": ""},
            {"role": "assistant", "content": "Answer"},
        ]
        _, messages = build_answer_messages(
            "Next", history, [], LEGAL_RESEARCH_RESPONSE_PROMPT,
        )
        assert [m["content"] for m in messages] == ["First", "Answer", "Next"]


# ---------------------------------------------------------------------------
# Test: Analyst
# ---------------------------------------------------------------------------


class TestAnalyse:
    def test_uses_capability_prompt(self):
        mock_llm = _mock_llm("Risk table...")

        result = _run(analyse(
            CapabilityId.CONTRACT, "Review the lease", "Case information: ...", mock_llm,
        ))

        assert isinstance(result, AnalysisResult)
        assert result.answer == "Risk table..."
        assert result.model == "test-model"
        kwargs = mock_llm.complete.call_args.kwargs
        assert kwargs["system"] == SYSTEM_PROMPTS[CapabilityId.CONTRACT]
        assert kwargs["messages"][0]["content"] == (
            "Request: Review the lease\n\nContext:\n\nCase information: ..."
        )

    def test_no_context_block_when_empty(self):
        mock_llm = _mock_llm()
        _run(analyse(CapabilityId.TIMELINE, "Appeal timeline", "", mock_llm))
        content = mock_llm.complete.call_args.kwargs["messages"][0]["content"]
        assert content == "Request: Appeal timeline"

    def test_default_prompt_for_unlisted_capability(self):
        mock_llm = _mock_llm()
        _run(analyse(CapabilityId.RESEARCH, "Find cases", "", mock_llm))
        system = mock_llm.complete.call_args.kwargs["system"]
        assert system not in SYSTEM_PROMPTS.values()
        assert "legal research assistant" in system


# ---------------------------------------------------------------------------
# Test: Context Rendering
# ---------------------------------------------------------------------------


class TestRenderContext:
    def test_blocks(self):
        text = render_context({
            "subject_info": {"name": "Acme v. Beta"},
            "research_results": {"success": True, "result": "Cases found."},
            "deadline": "2026-11-01",
            "focus_mode": "academic",
            "document_ids": ["d1"],
            "nested": {"ignored": True},
        })

        assert text.startswith("Case information:\n")
        assert '"name": "Acme v. Beta"' in text
        assert "Results from research:\nCases found." in text
        assert "Additional context:\n- deadline: 2026-11-01" in text
        assert "focus_mode" not in text
        assert "document_ids" not in text
        assert "nested" not in text

    def test_empty(self):
        assert render_context({}) == ""


# ---------------------------------------------------------------------------
# Test: Capabilities
# ---------------------------------------------------------------------------


class FakePipeline:
    def __init__(self, answer="Research answer [1].", documents=None, error=None):
        self._answer = answer
        self._documents = documents or []
        self._error = error
        self.calls = []

    async def answer(self, query, history, options, token=None):
        self.calls.append((query, history, options))
        if self._error is not None:
            raise self._error
        return self._answer, list(self._documents)


class TestPromptCapability:
    def test_success(self):
        mock_llm = _mock_llm("Discovery checklist")
        capability = PromptCapability(CapabilityId.DISCOVERY, lambda: mock_llm)

        output = _run(capability.execute(CapabilityInput(
            subject_id="m1", query="Plan discovery",
            context={"research_results": {"result": "prior"}},
        )))

        assert output.success is True
        assert output.result == "Discovery checklist"
        assert output.metadata == {"model": "test-model", "input_tokens": 100, "output_tokens": 20}
        content = mock_llm.complete.call_args.kwargs["messages"][0]["content"]
        assert "Results from research:\nprior" in content

    def test_llm_error_becomes_failed_output(self):
        mock_llm = AsyncMock()
        mock_llm.complete.side_effect = RuntimeError("rate limited")
        capability = PromptCapability(CapabilityId.TIMELINE, lambda: mock_llm)

        output = _run(capability.execute(CapabilityInput(subject_id="m1", query="q")))

        assert output.success is False
        assert output.error == "rate limited"

    def test_missing_configuration_becomes_failed_output(self):
        def no_llm():
            raise ValueError("ANTHROPIC_API_KEY is required")

        capability = PromptCapability(CapabilityId.TIMELINE, no_llm)
        output = _run(capability.execute(CapabilityInput(subject_id="m1", query="q")))

        assert output.success is False
        assert "ANTHROPIC_API_KEY" in output.error


class TestResearchCapability:
    def test_answer_and_citations(self):
        doc = RetrievedDocument(
            content="...", title="Smith v. Jones", source_url="https://law.example/smith",
        )
        pipeline = FakePipeline(documents=[doc])
        capability = ResearchCapability(
            CapabilityId.RESEARCH, "legal-research", pipeline_factory=lambda: pipeline,
        )

        output = _run(capability.execute(CapabilityInput(
            subject_id="m1", query="Non-compete enforceability",
            context={"optimization_mode": "speed", "document_ids": ["f1"], "state": "CA"},
        )))

        assert output.success is True
        assert output.result == "Research answer [1]."
        assert output.citations == [
            {"title": "Smith v. Jones", "url": "https://law.example/smith", "type": "web"},
        ]
        assert output.metadata["source_count"] == 1
        assert output.metadata["optimization_mode"] == "speed"

        query, history, options = pipeline.calls[0]
        assert query == "Non-compete enforceability"
        assert history == []
        assert options.focus_mode == "legal-research"
        assert options.optimization_mode is OptimizationMode.SPEED
        assert options.file_ids == ["f1"]
        assert "- state: CA" in options.system_instructions

    def test_defaults_and_focus_override(self):
        pipeline = FakePipeline()
        capability = ResearchCapability(
            CapabilityId.DEEP_LEGAL_RESEARCH, "deep-research",
            optimization_mode=OptimizationMode.QUALITY,
            pipeline_factory=lambda: pipeline,
        )

        _run(capability.execute(CapabilityInput(
            subject_id="m1", query="q", context={"focus_mode": "academic"},
        )))

        options = pipeline.calls[0][2]
        assert options.focus_mode == "academic"
        assert options.optimization_mode is OptimizationMode.QUALITY

    def test_invalid_mode_becomes_failed_output(self):
        capability = ResearchCapability(
            CapabilityId.RESEARCH, "legal-research", pipeline_factory=FakePipeline,
        )
        output = _run(capability.execute(CapabilityInput(
            subject_id="m1", query="q", context={"optimization_mode": "ludicrous"},
        )))
        assert output.success is False

    def test_pipeline_error_becomes_failed_output(self):
        pipeline = FakePipeline(error=ConnectionError("search unreachable"))
        capability = ResearchCapability(
            CapabilityId.RESEARCH, "legal-research", pipeline_factory=lambda: pipeline,
        )
        output = _run(capability.execute(CapabilityInput(subject_id="m1", query="q")))
        assert output.success is False
        assert output.error == "search unreachable"


# ---------------------------------------------------------------------------
# Test: Registry
# ---------------------------------------------------------------------------


class TestCapabilityRegistry:
    def test_default_registry_is_complete(self):
        registry = build_default_registry(
            llm_factory=_mock_llm, pipeline_factory=FakePipeline,
        )
        assert registry.available() == frozenset(CapabilityId)
        assert isinstance(registry.get("research"), ResearchCapability)
        assert isinstance(registry.get(CapabilityId.TIMELINE), PromptCapability)
        assert [c["id"] for c in registry.describe()] == [c.value for c in CapabilityId]

    def test_unknown_key_rejected(self):
        with pytest.raises(UnknownCapabilityError):
            CapabilityRegistry({"astrology": object()}, require_complete=False)

    def test_incomplete_registry_rejected(self):
        with pytest.raises(UnknownCapabilityError):
            CapabilityRegistry({CapabilityId.RESEARCH: object()})

    def test_lookup(self):
        registry = CapabilityRegistry(
            {"research": object()}, require_complete=False,
        )
        assert "research" in registry
        assert CapabilityId.RESEARCH in registry
        assert "timeline" not in registry
        with pytest.raises(UnknownCapabilityError):
            registry.get(CapabilityId.TIMELINE)
        with pytest.raises(UnknownCapabilityError):
            registry.get("astrology")
