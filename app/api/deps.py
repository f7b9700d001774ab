# =============================================================================
# API Dependencies — Shared Engine Instances for Route Handlers
# =============================================================================
#
# Route handlers receive the orchestration engine, the task store and the
# answer-pipeline factory through FastAPI's Depends(), so tests replace
# them with `app.dependency_overrides` instead of patching modules.
#
# DESIGN DECISION: Lazily created process-wide singletons.
# The engine keeps the live plans and cancellation tokens of this process;
# every request must see the same instance for cancel and status lookups
# to find runs started by other requests.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable

from app.agents.capabilities import build_default_registry
from app.agents.orchestrator import OrchestrationEngine
from app.agents.stream import AnswerPipeline
from app.services.task_store import TaskStore, get_task_store

logger = logging.getLogger(__name__)

_task_store: TaskStore | None = None
_engine: OrchestrationEngine | None = None


def get_store() -> TaskStore:
    global _task_store
    if _task_store is None:
        _task_store = get_task_store()
    return _task_store


def get_engine() -> OrchestrationEngine:
    global _engine
    if _engine is None:
        _engine = OrchestrationEngine(
            registry=build_default_registry(),
            task_store=get_store(),
        )
        logger.info("Orchestration engine initialised")
    return _engine


def get_pipeline_factory() -> Callable[[], AnswerPipeline]:
    return AnswerPipeline.from_settings
