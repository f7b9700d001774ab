# =============================================================================
# Dependency Graph Builder — Order, Dependencies, Duration Estimates
# =============================================================================
#
# Turns the selected capability ids into the ordered list of
# CapabilityConfig that makes up a plan.
#
# RULES:
#   - dependencies come from a static table (brief-writing needs research)
#   - a dependency that was not selected is added to the plan so no
#     capability ever waits on something that will not run
#   - duration = round(base × depth multiplier × urgency multiplier)
#   - capabilities are stable-sorted by number of dependencies, so every
#     independent capability precedes every dependent one
#   - total duration = Σ dependent durations + max independent duration
#     (independent capabilities may run side by side; dependent ones
#     run after them)
#
# The tables are read-only (MappingProxyType) and shared by all plans.
# =============================================================================

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from types import MappingProxyType

from app.agents.types import (
    AnalysisDepth,
    CapabilityConfig,
    CapabilityId,
    Intent,
    Urgency,
)

logger = logging.getLogger(__name__)


DEPENDENCIES: MappingProxyType[CapabilityId, frozenset[CapabilityId]] = MappingProxyType({
    CapabilityId.BRIEF_WRITING: frozenset({CapabilityId.RESEARCH}),
})

BASE_DURATIONS: MappingProxyType[CapabilityId, int] = MappingProxyType({
    CapabilityId.RESEARCH: 60,
    CapabilityId.BRIEF_WRITING: 120,
    CapabilityId.DISCOVERY: 180,
    CapabilityId.CONTRACT: 90,
    CapabilityId.DEEP_LEGAL_RESEARCH: 180,
})
DEFAULT_BASE_DURATION = 60

DEPTH_MULTIPLIERS: MappingProxyType[AnalysisDepth, float] = MappingProxyType({
    AnalysisDepth.SUMMARY: 0.7,
    AnalysisDepth.STANDARD: 1.0,
    AnalysisDepth.COMPREHENSIVE: 1.5,
})

URGENCY_MULTIPLIERS: MappingProxyType[Urgency, float] = MappingProxyType({
    Urgency.LOW: 1.2,
    Urgency.NORMAL: 1.0,
    Urgency.HIGH: 0.8,
})


def dependencies_of(capability_id: CapabilityId) -> frozenset[CapabilityId]:
    return DEPENDENCIES.get(capability_id, frozenset())


def estimate_duration(capability_id: CapabilityId, intent: Intent) -> int:
    """Estimated seconds for one capability, rounded half up."""
    base = BASE_DURATIONS.get(capability_id, DEFAULT_BASE_DURATION)
    value = (
        base
        * DEPTH_MULTIPLIERS[intent.analysis_depth]
        * URGENCY_MULTIPLIERS[intent.urgency]
    )
    # Round half up; the epsilon absorbs float error such as 60*0.7*1.2
    return int(math.floor(value + 0.5 + 1e-9))


def _with_dependencies(selected: Iterable[CapabilityId]) -> list[CapabilityId]:
    """Selected ids plus any missing dependencies, each dependency first."""
    ordered: list[CapabilityId] = []

    def visit(cap: CapabilityId, path: tuple[CapabilityId, ...]) -> None:
        if cap in ordered:
            return
        if cap in path:
            raise ValueError(f"Dependency cycle through '{cap.value}'")
        for dep in sorted(dependencies_of(cap), key=lambda c: c.value):
            visit(dep, path + (cap,))
        ordered.append(cap)

    for cap in selected:
        visit(cap, ())
    return ordered


def build_dependency_graph(
    selected: list[CapabilityId],
    intent: Intent,
) -> list[CapabilityConfig]:
    """
    Build the ordered capability list for a plan.

    Args:
        selected: Capability ids in selection order (duplicates ignored).
        intent: Classified intent, used for duration estimates.

    Returns:
        CapabilityConfig list, zero-dependency entries first. Priority is
        the 1-based position in selection order (after dependency closure).
    """
    closed = _with_dependencies(selected)
    added = [c for c in closed if c not in selected]
    if added:
        logger.info(
            "Added missing dependencies to plan: %s", [c.value for c in added],
        )

    configs = [
        CapabilityConfig(
            capability_id=cap,
            dependencies=dependencies_of(cap),
            priority=index + 1,
            estimated_duration_seconds=estimate_duration(cap, intent),
        )
        for index, cap in enumerate(closed)
    ]
    # sorted() is stable, so ties keep selection order
    return sorted(configs, key=lambda c: len(c.dependencies))


def total_estimated_duration(agents: list[CapabilityConfig]) -> int:
    independent = [a.estimated_duration_seconds for a in agents if not a.dependencies]
    dependent = [a.estimated_duration_seconds for a in agents if a.dependencies]
    return sum(dependent) + max(independent, default=0)
