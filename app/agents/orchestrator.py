# =============================================================================
# Orchestration Engine — Plan, Execute, Cancel
# =============================================================================
#
# Turns a free-text legal request into an OrchestrationPlan and runs it.
#
# PLANNING (a LangGraph StateGraph):
#   START ──▶ classify ──▶ select ──▶ build ──▶ END
#   classify — Intent from the model, keyword rules as fallback
#   select   — capability ids from the model, decision table as fallback
#   build    — dependency closure, durations, zero-dependency-first order
#
# EXECUTION:
#   Every capability gets a pending Task up front and its own asyncio task.
#   A capability waits on one asyncio.Event per dependency, then on the
#   concurrency gate (a semaphore, default 1 = one at a time in plan order),
#   then dispatches through the registry. Its input carries the caller
#   context, the subject record and the full output of every dependency.
#
# DESIGN DECISION: Fail-fast.
# The first failed capability halts the run: everything not yet finished
# is aborted, its task is cancelled, the plan becomes FAILED with the
# capability's error, and CapabilityExecutionError propagates. Dependents
# of a failed capability are never dispatched.
#
# DESIGN DECISION: Cooperative cancellation.
# cancel() sets the run's CancellationToken (at most once). Dependency
# waits end immediately and nothing new is dispatched, but a capability
# that is already executing finishes. The plan ends CANCELLED, which is
# reported separately from FAILED. cancel() never raises. The token exists
# from the start of planning, so model round trips are interruptible too.
#
# Finished plans leave the engine's memory; lookups and cancel() then read
# the snapshot in the task store.
#
# DESIGN DECISION: Graph compiled once at module level.
# LangGraph compilation is not free; the compiled planning graph is shared
# by every engine instance.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from app.agents.capabilities import CapabilityRegistry
from app.agents.intent import classify_intent
from app.agents.planner import build_dependency_graph, total_estimated_duration
from app.agents.selector import select_capabilities
from app.agents.types import (
    CapabilityConfig,
    CapabilityId,
    CapabilityInput,
    CapabilityOutput,
    Intent,
    OrchestrationPlan,
    PlanStatus,
)
from app.config import settings
from app.db.models import TaskStatus
from app.exceptions import (
    CapabilityExecutionError,
    OrchestrationCancelledError,
    TaskNotFoundError,
    UnknownCapabilityError,
)
from app.services.cancellation import CancellationToken
from app.services.llm import LLMProvider, try_get_llm_provider
from app.services.task_store import TERMINAL_TASK_STATUSES, Task, TaskStore, task_name

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Planning Graph
# ---------------------------------------------------------------------------


class PlanningState(TypedDict, total=False):
    """
    State that flows through the planning graph.

    Uses total=False so nodes only need to return the keys they update.
    """

    # --- Input (set by caller) ---
    user_query: str
    context: dict[str, Any]
    available: frozenset[CapabilityId]
    # Not JSON-serialisable; safe while no checkpointer is configured.
    llm: LLMProvider | None

    # --- Set by nodes ---
    intent: Intent
    selected: list[CapabilityId]
    agents: list[CapabilityConfig]
    total_estimated_duration: int


async def classify_node(state: PlanningState) -> dict:
    intent = await classify_intent(state["user_query"], state.get("llm"))
    return {"intent": intent}


async def select_node(state: PlanningState) -> dict:
    selected = await select_capabilities(
        state["intent"],
        state["user_query"],
        state.get("llm"),
        state["available"],
        state.get("context"),
    )
    return {"selected": selected}


async def build_node(state: PlanningState) -> dict:
    agents = build_dependency_graph(state["selected"], state["intent"])
    return {
        "agents": agents,
        "total_estimated_duration": total_estimated_duration(agents),
    }


_builder = StateGraph(PlanningState)
_builder.add_node("classify", classify_node)
_builder.add_node("select", select_node)
_builder.add_node("build", build_node)

_builder.add_edge(START, "classify")
_builder.add_edge("classify", "select")
_builder.add_edge("select", "build")
_builder.add_edge("build", END)

planning_graph = _builder.compile()


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class SubjectDirectory(Protocol):
    """Looks up the case/matter record a plan runs against."""

    async def get_subject(self, subject_id: str) -> dict[str, Any] | None:
        ...


class InMemorySubjectDirectory:
    def __init__(self, subjects: dict[str, dict[str, Any]] | None = None) -> None:
        self._subjects = dict(subjects or {})

    def add_subject(self, subject_id: str, info: dict[str, Any]) -> None:
        self._subjects[subject_id] = dict(info)

    async def get_subject(self, subject_id: str) -> dict[str, Any] | None:
        subject = self._subjects.get(subject_id)
        return dict(subject) if subject is not None else None


@dataclass
class CancelOutcome:
    plan_id: str
    cancelled: bool
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"plan_id": self.plan_id, "cancelled": self.cancelled, "reason": self.reason}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class OrchestrationEngine:
    """
    Plans and runs capability graphs.

    Args:
        registry: Capability implementations.
        task_store: Task and plan-snapshot persistence.
        llm_factory: Returns the LLM for classification/selection, or None
            to plan with the keyword rules (default: try_get_llm_provider).
        subject_directory: Case record lookup (default: empty in-memory).
        max_concurrency: Capabilities allowed to execute at once
            (default: settings.orchestration_max_concurrency).
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        task_store: TaskStore,
        llm_factory: Callable[[], LLMProvider | None] | None = None,
        subject_directory: SubjectDirectory | None = None,
        max_concurrency: int | None = None,
    ) -> None:
        self._registry = registry
        self._task_store = task_store
        self._llm_factory = llm_factory or try_get_llm_provider
        self._subjects = subject_directory or InMemorySubjectDirectory()
        self._max_concurrency = max(
            1, max_concurrency or settings.orchestration_max_concurrency,
        )
        self._plans: dict[str, OrchestrationPlan] = {}
        self._tokens: dict[str, CancellationToken] = {}

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    async def plan(
        self,
        subject_id: str,
        user_query: str,
        context: dict[str, Any] | None = None,
        token: CancellationToken | None = None,
        plan_id: str | None = None,
    ) -> OrchestrationPlan:
        """
        Classify, select and order capabilities for one request.

        The plan id and its token are registered before the model calls, so
        cancel(plan_id) or the caller's `token` interrupts planning. A plan
        cancelled while planning comes back with status CANCELLED and no
        capabilities.
        """
        plan_id = plan_id or str(uuid.uuid4())
        token = token or CancellationToken()
        self._tokens[plan_id] = token
        logger.info(
            "Planning %s for subject=%s: query='%s'", plan_id, subject_id, user_query[:80],
        )

        try:
            token.raise_if_cancelled()
            state = await token.guard(planning_graph.ainvoke({
                "user_query": user_query,
                "context": dict(context or {}),
                "available": self._registry.available(),
                "llm": self._llm_factory(),
            }))
        except OrchestrationCancelledError as e:
            plan = OrchestrationPlan(
                subject_id=subject_id,
                user_query=user_query,
                intent=Intent(),
                agents=[],
                total_estimated_duration=0,
                context=dict(context or {}),
                id=plan_id,
            )
            await self._finish(plan, PlanStatus.CANCELLED, error=e.reason)
            return plan
        except BaseException:
            self._tokens.pop(plan_id, None)
            raise

        plan = OrchestrationPlan(
            subject_id=subject_id,
            user_query=user_query,
            intent=state["intent"],
            agents=state["agents"],
            total_estimated_duration=state["total_estimated_duration"],
            context=dict(context or {}),
            id=plan_id,
        )
        self._plans[plan.id] = plan
        await self._save(plan)

        logger.info(
            "Plan %s: %s (~%ds)",
            plan.id, [c.value for c in plan.capability_ids],
            plan.total_estimated_duration,
        )
        return plan

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute(self, plan: OrchestrationPlan) -> dict[CapabilityId, CapabilityOutput]:
        """
        Run every capability of `plan`, dependencies first.

        Returns:
            Output per capability.

        Raises:
            CapabilityExecutionError: A capability failed (plan FAILED).
            OrchestrationCancelledError: The plan was cancelled (plan CANCELLED).
            InvalidPlanTransitionError: The plan already ran.
            Exception: Anything else (e.g. a task store failure) also ends
                the plan FAILED before propagating.
        """
        if plan.status is PlanStatus.CANCELLED:
            raise OrchestrationCancelledError(plan.error or "cancelled")

        plan.transition(PlanStatus.EXECUTING)
        self._plans[plan.id] = plan
        token = self._tokens.setdefault(plan.id, CancellationToken())
        started = time.perf_counter()

        try:
            for agent in plan.agents:
                task = await self._task_store.create_task(
                    plan.subject_id,
                    agent.capability_id.value,
                    {"query": plan.user_query, "plan_id": plan.id},
                    name=task_name(agent.capability_id.value, plan.user_query),
                )
                plan.task_ids[agent.capability_id] = task.id
            await self._save(plan)

            subject_info = await self._subject_info(plan.subject_id)
            await self._run_graph(plan, token, subject_info)
        except CapabilityExecutionError as e:
            await self._finish(plan, PlanStatus.FAILED, error=e.message)
            raise
        except OrchestrationCancelledError as e:
            await self._finish(plan, PlanStatus.CANCELLED, error=e.reason)
            raise
        except asyncio.CancelledError:
            await self._finish(plan, PlanStatus.CANCELLED, error="execution interrupted")
            raise
        except Exception as e:
            logger.exception("Plan %s aborted", plan.id)
            await self._finish(plan, PlanStatus.FAILED, error=str(e) or type(e).__name__)
            raise

        if token.cancelled:
            await self._finish(plan, PlanStatus.CANCELLED, error=token.reason)
            raise OrchestrationCancelledError(token.reason or "cancelled")

        await self._finish(plan, PlanStatus.COMPLETED)
        logger.info(
            "Plan %s completed in %.1fs", plan.id, time.perf_counter() - started,
        )
        return dict(plan.results)

    async def orchestrate(
        self,
        subject_id: str,
        user_query: str,
        context: dict[str, Any] | None = None,
        token: CancellationToken | None = None,
        plan_id: str | None = None,
    ) -> OrchestrationPlan:
        """
        Plan and execute; the returned plan carries status and results.

        Setting `token` (or calling cancel(plan_id)) at any point, model
        calls included, ends the run with OrchestrationCancelledError.
        """
        plan = await self.plan(subject_id, user_query, context, token=token, plan_id=plan_id)
        await self.execute(plan)
        return plan

    async def _run_graph(
        self,
        plan: OrchestrationPlan,
        token: CancellationToken,
        subject_info: dict[str, Any] | None,
    ) -> None:
        completed = {cap: asyncio.Event() for cap in plan.capability_ids}
        gate = asyncio.Semaphore(self._max_concurrency)

        async def run_one(agent: CapabilityConfig) -> None:
            for dep in sorted(agent.dependencies, key=lambda c: c.value):
                await token.guard(completed[dep].wait())
            async with gate:
                token.raise_if_cancelled()
                output = await self._dispatch(plan, agent, subject_info)
            plan.results[agent.capability_id] = output
            completed[agent.capability_id].set()

        tasks = [
            asyncio.create_task(run_one(agent), name=f"{plan.id}:{agent.capability_id.value}")
            for agent in plan.agents
        ]
        failure: CapabilityExecutionError | None = None
        cancelled: OrchestrationCancelledError | None = None
        try:
            pending = set(tasks)
            while pending and failure is None:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_EXCEPTION,
                )
                for finished in done:
                    error = finished.exception()
                    if isinstance(error, CapabilityExecutionError):
                        failure = failure or error
                    elif isinstance(error, OrchestrationCancelledError):
                        cancelled = cancelled or error
                    elif error is not None:
                        raise error
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._cancel_unfinished_tasks(plan)

        if failure is not None:
            raise failure
        if cancelled is not None:
            raise cancelled

    async def _dispatch(
        self,
        plan: OrchestrationPlan,
        agent: CapabilityConfig,
        subject_info: dict[str, Any] | None,
    ) -> CapabilityOutput:
        capability_id = agent.capability_id
        task_id = plan.task_ids[capability_id]
        await self._task_store.update_task_status(task_id, TaskStatus.RUNNING, progress=0)

        context = dict(plan.context)
        if subject_info is not None:
            context["subject_info"] = subject_info
        for dep in agent.dependencies:
            context[f"{dep.value}_results"] = plan.results[dep].to_dict()

        capability_input = CapabilityInput(
            subject_id=plan.subject_id,
            query=plan.user_query,
            context=context,
            parameters={
                "capability_id": capability_id.value,
                "estimated_duration": agent.estimated_duration_seconds,
            },
        )

        logger.info("Dispatching %s for plan %s", capability_id.value, plan.id)
        output = await self._invoke(capability_id, capability_input)

        if not output.success:
            message = output.error or "capability reported failure"
            plan.results[capability_id] = output
            await self._task_store.update_task_status(
                task_id, TaskStatus.FAILED, error=message,
            )
            raise CapabilityExecutionError(capability_id.value, message, plan.id)

        await self._task_store.update_task_status(
            task_id, TaskStatus.COMPLETED, output=output.to_dict(),
        )
        return output

    async def _invoke(
        self,
        capability_id: CapabilityId,
        capability_input: CapabilityInput,
    ) -> CapabilityOutput:
        """Run one capability, converting a raised error into a failed output."""
        started = time.perf_counter()
        try:
            output = await self._registry.get(capability_id).execute(capability_input)
        except Exception as e:
            logger.exception("Capability %s raised", capability_id.value)
            output = CapabilityOutput(success=False, error=str(e) or type(e).__name__)
        if not output.execution_time:
            output.execution_time = time.perf_counter() - started
        return output

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    async def cancel(self, plan_id: str, reason: str = "cancelled by request") -> CancelOutcome:
        """
        Request cancellation of a plan. Never raises.

        Finished plans are left untouched and reported as not cancellable.
        """
        plan = self._plans.get(plan_id)
        if plan is None and plan_id in self._tokens:
            # still planning
            token = self._tokens[plan_id]
            if not token.cancel(reason):
                return CancelOutcome(plan_id, False, "not cancellable: plan is cancelled")
            return CancelOutcome(plan_id, True, reason)
        if plan is None:
            snapshot = await self._safe_get_snapshot(plan_id)
            if snapshot is None:
                return CancelOutcome(plan_id, False, "not found")
            return CancelOutcome(
                plan_id, False, f"not cancellable: plan is {snapshot['status']}",
            )

        if plan.is_finished:
            return CancelOutcome(
                plan_id, False, f"not cancellable: plan is {plan.status.value}",
            )

        token = self._tokens.setdefault(plan_id, CancellationToken())
        token.cancel(reason)
        if plan.status is PlanStatus.PLANNED:
            await self._finish(plan, PlanStatus.CANCELLED, error=token.reason)

        return CancelOutcome(plan_id, True, token.reason or reason)

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def get_plan(self, plan_id: str) -> dict[str, Any] | None:
        plan = self._plans.get(plan_id)
        if plan is not None:
            return plan.to_dict()
        return await self._task_store.get_plan(plan_id)

    async def list_plans(self, subject_id: str) -> list[dict[str, Any]]:
        return await self._task_store.list_plans(subject_id)

    def available_capabilities(self) -> list[dict[str, str]]:
        return self._registry.describe()

    # -------------------------------------------------------------------------
    # Single-Capability Tasks
    # -------------------------------------------------------------------------

    async def execute_directly(
        self,
        capability_id: CapabilityId | str,
        capability_input: CapabilityInput,
    ) -> CapabilityOutput:
        """
        Run one capability without a plan or task record.

        Raises:
            UnknownCapabilityError: If the id is not registered.
        """
        parsed = CapabilityId.parse(capability_id)
        if parsed is None or parsed not in self._registry:
            raise UnknownCapabilityError(str(capability_id))
        return await self._invoke(parsed, capability_input)

    async def create_task(
        self,
        subject_id: str,
        capability_id: CapabilityId | str,
        query: str,
        parameters: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> Task:
        """Record a pending single-capability task for later execution."""
        parsed = CapabilityId.parse(capability_id)
        if parsed is None or parsed not in self._registry:
            raise UnknownCapabilityError(str(capability_id))
        return await self._task_store.create_task(
            subject_id,
            parsed.value,
            {
                "query": query,
                "parameters": dict(parameters or {}),
                "context": dict(context or {}),
            },
            name=task_name(parsed.value, query),
        )

    async def execute_task(self, task_id: str) -> Task:
        """
        Run a pending task: running → completed | failed.

        Raises:
            TaskNotFoundError: Unknown task id.
            InvalidTaskTransitionError: The task is not pending.
        """
        task = await self._task_store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        await self._task_store.update_task_status(task_id, TaskStatus.RUNNING, progress=0)

        context = dict(task.input.get("context") or {})
        context["task_id"] = task_id
        subject_info = await self._subject_info(task.subject_id)
        if subject_info is not None:
            context["subject_info"] = subject_info

        capability_input = CapabilityInput(
            subject_id=task.subject_id,
            query=str(task.input.get("query", "")),
            context=context,
            parameters=dict(task.input.get("parameters") or {}),
        )
        output = await self._invoke(CapabilityId(task.capability_id), capability_input)

        if output.success:
            return await self._task_store.update_task_status(
                task_id, TaskStatus.COMPLETED, output=output.to_dict(),
            )
        logger.warning("Task %s failed: %s", task_id, output.error)
        return await self._task_store.update_task_status(
            task_id, TaskStatus.FAILED, error=output.error or "capability reported failure",
        )

    async def cancel_task(self, task_id: str) -> Task:
        """
        Raises:
            TaskNotFoundError: Unknown task id.
            TaskNotCancellableError: The task already finished.
        """
        return await self._task_store.cancel_task(task_id)

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    async def _subject_info(self, subject_id: str) -> dict[str, Any] | None:
        try:
            return await self._subjects.get_subject(subject_id)
        except Exception as e:
            logger.warning("Subject lookup failed for %s: %s", subject_id, e)
            return None

    async def _cancel_unfinished_tasks(self, plan: OrchestrationPlan) -> None:
        for task_id in plan.task_ids.values():
            task = await self._task_store.get_task(task_id)
            if task is not None and task.status not in TERMINAL_TASK_STATUSES:
                await self._task_store.update_task_status(task_id, TaskStatus.CANCELLED)

    async def _finish(
        self,
        plan: OrchestrationPlan,
        status: PlanStatus,
        error: str | None = None,
    ) -> None:
        plan.transition(status)
        plan.error = error
        # finished plans are served from the task store from here on
        self._plans.pop(plan.id, None)
        self._tokens.pop(plan.id, None)
        await self._save(plan)
        if status is not PlanStatus.COMPLETED:
            logger.warning("Plan %s ended %s: %s", plan.id, status.value, error)

    async def _save(self, plan: OrchestrationPlan) -> None:
        try:
            await self._task_store.save_plan(plan.to_dict())
        except Exception:
            logger.exception("Failed to save snapshot of plan %s", plan.id)

    async def _safe_get_snapshot(self, plan_id: str) -> dict[str, Any] | None:
        try:
            return await self._task_store.get_plan(plan_id)
        except Exception:
            logger.exception("Failed to load plan %s", plan_id)
            return None
