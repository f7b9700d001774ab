# =============================================================================
# Capability Registry — Closed Set of Executable Agents
# =============================================================================
#
# Every CapabilityId maps to exactly one implementation of the Capability
# protocol. The registry is built once at startup and read-only afterwards,
# so concurrent plans share it without locking.
#
# IMPLEMENTATIONS:
#   ResearchCapability — retrieval pipeline (rephrase → collect → rerank)
#                        followed by a one-shot answer; `research` uses the
#                        legal-research focus mode, `deep-legal-research`
#                        the multi-query mode with quality ranking
#   PromptCapability   — one system-prompted model call over the case
#                        context and the results of its dependencies
#
# DESIGN DECISION: Validation at construction, not at dispatch.
# A registry missing an implementation raises UnknownCapabilityError when
# it is built, which turns a misconfiguration into a startup failure
# instead of a failed plan hours later.
#
# DESIGN DECISION: Capabilities report failure, they do not raise.
# execute() returns CapabilityOutput(success=False, error=...) for model or
# retrieval errors; the engine turns that into a failed task and plan.
# =============================================================================

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any, Protocol

from app.agents.analyst import analyse
from app.agents.selector import CAPABILITY_DESCRIPTIONS
from app.agents.stream import AnswerPipeline, StreamOptions
from app.agents.types import (
    CapabilityId,
    CapabilityInput,
    CapabilityOutput,
    OptimizationMode,
)
from app.exceptions import UnknownCapabilityError
from app.services.llm import LLMProvider, get_llm_provider

logger = logging.getLogger(__name__)

LLMFactory = Callable[[], LLMProvider]
PipelineFactory = Callable[[], AnswerPipeline]

# Context keys that are instructions to the capability, not case facts
_CONTROL_KEYS = frozenset({"focus_mode", "optimization_mode", "file_ids", "document_ids"})


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class Capability(Protocol):
    async def execute(self, capability_input: CapabilityInput) -> CapabilityOutput:
        ...


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


class PromptCapability:
    """A capability that is one system-prompted model call."""

    def __init__(
        self,
        capability_id: CapabilityId,
        llm_factory: LLMFactory | None = None,
    ) -> None:
        self.capability_id = capability_id
        self._llm_factory = llm_factory or get_llm_provider

    async def execute(self, capability_input: CapabilityInput) -> CapabilityOutput:
        start = time.perf_counter()
        try:
            result = await analyse(
                self.capability_id,
                capability_input.query,
                render_context(capability_input.context),
                self._llm_factory(),
            )
        except Exception as e:
            return _failure(self.capability_id, e, start)

        return CapabilityOutput(
            success=True,
            result=result.answer,
            metadata={
                "model": result.model,
                "input_tokens": result.input_tokens,
                "output_tokens": result.output_tokens,
            },
            execution_time=time.perf_counter() - start,
        )


class ResearchCapability:
    """
    Retrieval-backed research.

    Args:
        capability_id: RESEARCH or DEEP_LEGAL_RESEARCH.
        focus_mode: Focus mode used when the caller context names none.
        optimization_mode: Rerank mode used when the context names none
            (None → settings default).
        pipeline_factory: Builds the retrieval collaborators.
    """

    def __init__(
        self,
        capability_id: CapabilityId,
        focus_mode: str,
        optimization_mode: OptimizationMode | None = None,
        pipeline_factory: PipelineFactory | None = None,
    ) -> None:
        self.capability_id = capability_id
        self.focus_mode = focus_mode
        self.optimization_mode = optimization_mode
        self._pipeline_factory = pipeline_factory or AnswerPipeline.from_settings

    async def execute(self, capability_input: CapabilityInput) -> CapabilityOutput:
        start = time.perf_counter()
        context = capability_input.context
        try:
            options = StreamOptions(
                focus_mode=context.get("focus_mode") or self.focus_mode,
                optimization_mode=(
                    OptimizationMode(context["optimization_mode"])
                    if context.get("optimization_mode") else self.optimization_mode
                ),
                file_ids=list(
                    context.get("file_ids") or context.get("document_ids") or [],
                ),
                system_instructions=render_context(context),
            )
            pipeline = self._pipeline_factory()
            answer, documents = await pipeline.answer(
                capability_input.query, [], options,
            )
        except Exception as e:
            return _failure(self.capability_id, e, start)

        return CapabilityOutput(
            success=True,
            result=answer,
            citations=[d.to_dict()["metadata"] for d in documents],
            metadata={
                "focus_mode": options.focus_mode,
                "optimization_mode": options.resolved_mode().value,
                "source_count": len(documents),
            },
            execution_time=time.perf_counter() - start,
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class CapabilityRegistry:
    """
    Read-only mapping of CapabilityId to implementation.

    Args:
        capabilities: Implementations keyed by CapabilityId (or its value).
        require_complete: When True, every CapabilityId must be present.

    Raises:
        UnknownCapabilityError: For a key outside the closed id set, or a
            missing implementation when `require_complete` is set.
    """

    def __init__(
        self,
        capabilities: Mapping[CapabilityId | str, Capability],
        require_complete: bool = True,
    ) -> None:
        resolved: dict[CapabilityId, Capability] = {}
        for key, implementation in capabilities.items():
            capability_id = CapabilityId.parse(key)
            if capability_id is None:
                raise UnknownCapabilityError(str(key))
            resolved[capability_id] = implementation

        if require_complete:
            for capability_id in CapabilityId:
                if capability_id not in resolved:
                    raise UnknownCapabilityError(capability_id.value)

        self._capabilities = MappingProxyType(resolved)

    def get(self, capability_id: CapabilityId | str) -> Capability:
        parsed = CapabilityId.parse(capability_id)
        if parsed is None or parsed not in self._capabilities:
            raise UnknownCapabilityError(str(getattr(capability_id, "value", capability_id)))
        return self._capabilities[parsed]

    def available(self) -> frozenset[CapabilityId]:
        return frozenset(self._capabilities)

    def describe(self) -> list[dict[str, str]]:
        return [
            {"id": cap.value, "description": CAPABILITY_DESCRIPTIONS.get(cap, "")}
            for cap in CapabilityId
            if cap in self._capabilities
        ]

    def __contains__(self, capability_id: object) -> bool:
        return CapabilityId.parse(capability_id) in self._capabilities


def build_default_registry(
    llm_factory: LLMFactory | None = None,
    pipeline_factory: PipelineFactory | None = None,
) -> CapabilityRegistry:
    """Registry with the production implementation of every capability."""
    capabilities: dict[CapabilityId | str, Capability] = {
        CapabilityId.RESEARCH: ResearchCapability(
            CapabilityId.RESEARCH, "legal-research",
            pipeline_factory=pipeline_factory,
        ),
        CapabilityId.DEEP_LEGAL_RESEARCH: ResearchCapability(
            CapabilityId.DEEP_LEGAL_RESEARCH, "deep-research",
            optimization_mode=OptimizationMode.QUALITY,
            pipeline_factory=pipeline_factory,
        ),
    }
    for capability_id in (
        CapabilityId.BRIEF_WRITING,
        CapabilityId.DISCOVERY,
        CapabilityId.CONTRACT,
        CapabilityId.TIMELINE,
        CapabilityId.DOCUMENT_ANALYSIS,
    ):
        capabilities[capability_id] = PromptCapability(capability_id, llm_factory)
    return CapabilityRegistry(capabilities)


# ---------------------------------------------------------------------------
# Context Rendering
# ---------------------------------------------------------------------------


def render_context(context: Mapping[str, Any]) -> str:
    """
    Render case context and dependency results as prompt text.

    `subject_info` becomes a case-information block, each `<id>_results`
    entry becomes a block with that capability's answer, and remaining
    scalar values are listed as key/value lines.
    """
    blocks: list[str] = []

    subject = context.get("subject_info")
    if subject:
        blocks.append(
            "Case information:\n" + json.dumps(subject, indent=2, default=str),
        )

    for key, value in context.items():
        if not key.endswith("_results") or not isinstance(value, Mapping):
            continue
        label = key.removesuffix("_results")
        blocks.append(f"Results from {label}:\n{value.get('result') or ''}")

    extras = [
        f"- {key}: {value}"
        for key, value in context.items()
        if key not in _CONTROL_KEYS
        and key != "subject_info"
        and not key.endswith("_results")
        and isinstance(value, (str, int, float, bool))
    ]
    if extras:
        blocks.append("Additional context:\n" + "\n".join(extras))

    return "\n\n".join(blocks)


def _failure(capability_id: CapabilityId, error: Exception, start: float) -> CapabilityOutput:
    message = str(error) or type(error).__name__
    logger.warning("Capability %s failed: %s", capability_id.value, message)
    return CapabilityOutput(
        success=False,
        error=message,
        execution_time=time.perf_counter() - start,
    )

