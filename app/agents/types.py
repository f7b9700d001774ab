# =============================================================================
# Shared Data Model — Intent, Plan, Capability I/O, Retrieved Documents
# =============================================================================
#
# Plain dataclasses shared by the orchestration engine and the retrieval
# pipeline. Values that are produced once and read many times (Intent,
# CapabilityConfig, RetrievedDocument) are frozen; OrchestrationPlan is the
# one mutable record, and its status can only move forward.
#
# PLAN STATUS STATE MACHINE:
#   PLANNED → EXECUTING → COMPLETED
#                       → FAILED
#                       → CANCELLED
#   PLANNED → CANCELLED            (cancelled before execution started)
#
# DESIGN DECISION: string enums everywhere.
# They serialise to JSON unchanged, which keeps API responses and the
# persisted task records human-readable.
# =============================================================================

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from app.exceptions import InvalidPlanTransitionError


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class CapabilityId(str, enum.Enum):
    """Closed set of capabilities the engine can dispatch."""

    RESEARCH = "research"
    BRIEF_WRITING = "brief-writing"
    DISCOVERY = "discovery"
    CONTRACT = "contract"
    TIMELINE = "timeline"
    DEEP_LEGAL_RESEARCH = "deep-legal-research"
    DOCUMENT_ANALYSIS = "document-analysis"

    @classmethod
    def parse(cls, value: Any) -> CapabilityId | None:
        """Return the matching id, or None for anything outside the set."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class PrimaryAction(str, enum.Enum):
    RESEARCH = "research"
    WRITING = "writing"
    ANALYSIS = "analysis"
    DISCOVERY = "discovery"
    CONTRACT_ANALYSIS = "contract_analysis"
    TIMELINE = "timeline"
    UNKNOWN = "unknown"


class AnalysisDepth(str, enum.Enum):
    SUMMARY = "summary"
    STANDARD = "standard"
    COMPREHENSIVE = "comprehensive"


class Urgency(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class Complexity(str, enum.Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    HIGHLY_COMPLEX = "highly_complex"


class PlanStatus(str, enum.Enum):
    PLANNED = "planned"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OptimizationMode(str, enum.Enum):
    SPEED = "speed"
    BALANCED = "balanced"
    QUALITY = "quality"


_PLAN_TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
    PlanStatus.PLANNED: frozenset({PlanStatus.EXECUTING, PlanStatus.CANCELLED}),
    PlanStatus.EXECUTING: frozenset({
        PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.CANCELLED,
    }),
    PlanStatus.COMPLETED: frozenset(),
    PlanStatus.FAILED: frozenset(),
    PlanStatus.CANCELLED: frozenset(),
}

TERMINAL_PLAN_STATUSES = frozenset({
    PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.CANCELLED,
})


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Intent
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Intent:
    """
    Structured interpretation of one user request.

    Produced once per request by the intent classifier (model-backed or
    keyword fallback) and never mutated afterwards.
    """

    primary_action: PrimaryAction = PrimaryAction.UNKNOWN
    secondary_actions: tuple[str, ...] = ()
    document_types: frozenset[str] = frozenset()
    analysis_depth: AnalysisDepth = AnalysisDepth.STANDARD
    urgency: Urgency = Urgency.NORMAL
    practice_area: str = "other"
    jurisdiction: str = "unknown"
    complexity: Complexity = Complexity.MODERATE
    estimated_duration_seconds: int = 60
    key_requirements: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary_action": self.primary_action.value,
            "secondary_actions": list(self.secondary_actions),
            "document_types": sorted(self.document_types),
            "analysis_depth": self.analysis_depth.value,
            "urgency": self.urgency.value,
            "practice_area": self.practice_area,
            "jurisdiction": self.jurisdiction,
            "complexity": self.complexity.value,
            "estimated_duration_seconds": self.estimated_duration_seconds,
            "key_requirements": list(self.key_requirements),
        }


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CapabilityConfig:
    """One node of the dependency graph."""

    capability_id: CapabilityId
    dependencies: frozenset[CapabilityId] = frozenset()
    priority: int = 1
    estimated_duration_seconds: int = 60

    def to_dict(self) -> dict[str, Any]:
        return {
            "capability_id": self.capability_id.value,
            "dependencies": sorted(d.value for d in self.dependencies),
            "priority": self.priority,
            "estimated_duration_seconds": self.estimated_duration_seconds,
        }


@dataclass(frozen=True)
class CapabilityInput:
    """Input handed to a capability at dispatch time."""

    subject_id: str
    query: str
    context: dict[str, Any] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class CapabilityOutput:
    """Result returned by a capability."""

    success: bool
    result: Any = None
    error: str | None = None
    citations: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    execution_time: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "result": self.result,
            "error": self.error,
            "citations": self.citations,
            "metadata": self.metadata,
            "execution_time": self.execution_time,
        }


@dataclass
class OrchestrationPlan:
    """
    A classified, selected, ordered set of capabilities for one request.

    `agents` is ordered with zero-dependency capabilities first. Run-time
    bookkeeping (task ids, results, error) is filled in by the engine.
    """

    subject_id: str
    user_query: str
    intent: Intent
    agents: list[CapabilityConfig]
    total_estimated_duration: int
    context: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: PlanStatus = PlanStatus.PLANNED
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    task_ids: dict[CapabilityId, str] = field(default_factory=dict)
    results: dict[CapabilityId, CapabilityOutput] = field(default_factory=dict)
    error: str | None = None

    @property
    def capability_ids(self) -> list[CapabilityId]:
        return [a.capability_id for a in self.agents]

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_PLAN_STATUSES

    def transition(self, status: PlanStatus) -> None:
        """Move to `status`, refusing any backwards or sideways move."""
        if status not in _PLAN_TRANSITIONS[self.status]:
            raise InvalidPlanTransitionError(self.status.value, status.value)
        self.status = status
        if status in TERMINAL_PLAN_STATUSES:
            self.completed_at = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "user_query": self.user_query,
            "intent": self.intent.to_dict(),
            "agents": [a.to_dict() for a in self.agents],
            "total_estimated_duration": self.total_estimated_duration,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "task_ids": {k.value: v for k, v in self.task_ids.items()},
            "results": {k.value: v.to_dict() for k, v in self.results.items()},
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetrievedDocument:
    """
    One piece of evidence: a web result, a dereferenced link, or a local
    file chunk. Never mutated; scoring returns a copy via `with_score`.
    """

    content: str
    title: str = ""
    source_url: str = ""
    similarity_score: float | None = None
    chunk_index: int | None = None
    page_number: int | None = None
    image_url: str | None = None
    document_id: str | None = None
    source_type: str = "web"  # "web" or "document"
    uploaded_at: str | None = None

    def with_score(self, score: float) -> RetrievedDocument:
        return replace(self, similarity_score=score)

    def to_dict(self) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "title": self.title,
            "url": self.source_url,
            "type": self.source_type,
        }
        optional = {
            "similarity_score": self.similarity_score,
            "chunk_index": self.chunk_index,
            "page_number": self.page_number,
            "img_src": self.image_url,
            "document_id": self.document_id,
            "date": self.uploaded_at,
        }
        metadata.update({k: v for k, v in optional.items() if v is not None})
        return {"content": self.content, "metadata": metadata}


@dataclass(frozen=True)
class LocalChunk:
    """A pre-embedded chunk of an uploaded file."""

    file_id: str
    file_name: str
    content: str
    embedding: tuple[float, ...]
    chunk_index: int
    page_number: int | None = None
    uploaded_at: str | None = None

    def to_document(self, score: float | None = None) -> RetrievedDocument:
        return RetrievedDocument(
            content=self.content,
            title=self.file_name,
            source_url=f"file://{self.file_id}",
            similarity_score=score,
            chunk_index=self.chunk_index,
            page_number=self.page_number,
            document_id=self.file_id,
            source_type="document",
            uploaded_at=self.uploaded_at,
        )
