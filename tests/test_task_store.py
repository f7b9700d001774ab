# =============================================================================
# Unit Tests — Task Store (In-Memory and Database Backends)
# =============================================================================
#
# Every behavioural test runs against both backends. The database backend
# uses a throwaway SQLite file through aiosqlite, so no PostgreSQL server
# is needed.
# =============================================================================

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.agents.types import (
    CapabilityConfig,
    CapabilityId,
    CapabilityOutput,
    Intent,
    OrchestrationPlan,
    PlanStatus,
)
from app.db.engine import init_models
from app.db.models import TaskStatus
from app.exceptions import (
    InvalidTaskTransitionError,
    TaskNotCancellableError,
    TaskNotFoundError,
)
from app.services.task_store import (
    DatabaseTaskStore,
    InMemoryTaskStore,
    get_task_store,
    task_name,
)

BOTH_BACKENDS = pytest.mark.parametrize("backend", ["memory", "database"])


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _with_store(backend, tmp_path, body):
    """Run `body(store)` against a fresh store of the given backend."""

    async def scenario():
        engine = None
        if backend == "memory":
            store = InMemoryTaskStore()
        else:
            engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tasks.db'}")
            await init_models(engine)
            store = DatabaseTaskStore(async_sessionmaker(engine, expire_on_commit=False))
        try:
            return await body(store)
        finally:
            if engine is not None:
                await engine.dispose()

    return _run(scenario())


def _plan(subject_id="matter-1") -> OrchestrationPlan:
    return OrchestrationPlan(
        subject_id=subject_id,
        user_query="Find cases on implied warranty",
        intent=Intent(),
        agents=[CapabilityConfig(CapabilityId.RESEARCH)],
        total_estimated_duration=60,
    )


# ---------------------------------------------------------------------------
# Test: Task Lifecycle
# ---------------------------------------------------------------------------


class TestTaskLifecycle:
    @BOTH_BACKENDS
    def test_create_pending(self, backend, tmp_path):
        async def body(store):
            task = await store.create_task("matter-1", "research", {"query": "Find cases"})
            return task, await store.get_task(task.id)

        task, fetched = _with_store(backend, tmp_path, body)

        assert task.status is TaskStatus.PENDING
        assert task.name == "research: Find cases"
        assert task.progress == 0
        assert fetched.id == task.id
        assert fetched.input == {"query": "Find cases"}

    @BOTH_BACKENDS
    def test_run_to_completion(self, backend, tmp_path):
        async def body(store):
            task = await store.create_task("matter-1", "contract", {"query": "q"})
            running = await store.update_task_status(task.id, TaskStatus.RUNNING, progress=10)
            done = await store.update_task_status(
                task.id, TaskStatus.COMPLETED, output={"result": "ok"},
            )
            return running, done

        running, done = _with_store(backend, tmp_path, body)

        assert running.status is TaskStatus.RUNNING
        assert running.started_at is not None
        assert running.progress == 10
        assert done.status is TaskStatus.COMPLETED
        assert done.progress == 100
        assert done.output == {"result": "ok"}
        assert done.completed_at is not None

    @BOTH_BACKENDS
    def test_failure_records_error(self, backend, tmp_path):
        async def body(store):
            task = await store.create_task("matter-1", "contract", {"query": "q"})
            await store.update_task_status(task.id, TaskStatus.RUNNING)
            return await store.update_task_status(task.id, TaskStatus.FAILED, error="boom")

        failed = _with_store(backend, tmp_path, body)

        assert failed.status is TaskStatus.FAILED
        assert failed.error == "boom"

    @BOTH_BACKENDS
    def test_illegal_transitions(self, backend, tmp_path):
        async def body(store):
            task = await store.create_task("matter-1", "contract", {"query": "q"})
            with pytest.raises(InvalidTaskTransitionError):
                await store.update_task_status(task.id, TaskStatus.COMPLETED)
            await store.update_task_status(task.id, TaskStatus.RUNNING)
            await store.update_task_status(task.id, TaskStatus.COMPLETED)
            with pytest.raises(InvalidTaskTransitionError):
                await store.update_task_status(task.id, TaskStatus.RUNNING)
            with pytest.raises(TaskNotFoundError):
                await store.update_task_status("missing", TaskStatus.RUNNING)

        _with_store(backend, tmp_path, body)

    @BOTH_BACKENDS
    def test_cancel(self, backend, tmp_path):
        async def body(store):
            pending = await store.create_task("matter-1", "contract", {"query": "q"})
            cancelled = await store.cancel_task(pending.id)
            with pytest.raises(TaskNotCancellableError):
                await store.cancel_task(pending.id)
            with pytest.raises(TaskNotFoundError):
                await store.cancel_task("missing")
            return cancelled

        cancelled = _with_store(backend, tmp_path, body)

        assert cancelled.status is TaskStatus.CANCELLED
        assert cancelled.completed_at is not None

    @BOTH_BACKENDS
    def test_list_subject_tasks_newest_first(self, backend, tmp_path):
        async def body(store):
            first = await store.create_task("matter-1", "research", {"query": "a"})
            await asyncio.sleep(0.01)
            second = await store.create_task("matter-1", "timeline", {"query": "b"})
            await store.create_task("matter-2", "research", {"query": "c"})
            listed = await store.list_subject_tasks("matter-1")
            return first, second, listed

        first, second, listed = _with_store(backend, tmp_path, body)

        assert [t.id for t in listed] == [second.id, first.id]

    def test_memory_store_returns_copies(self):
        async def scenario():
            store = InMemoryTaskStore()
            task = await store.create_task("matter-1", "research", {"query": "q"})
            task.input["query"] = "changed"
            return await store.get_task(task.id)

        assert _run(scenario()).input == {"query": "q"}


# ---------------------------------------------------------------------------
# Test: Plan Snapshots
# ---------------------------------------------------------------------------


class TestPlanSnapshots:
    @BOTH_BACKENDS
    def test_save_and_update(self, backend, tmp_path):
        plan = _plan()

        async def body(store):
            await store.save_plan(plan.to_dict())
            plan.transition(PlanStatus.EXECUTING)
            plan.results[CapabilityId.RESEARCH] = CapabilityOutput(success=True, result="Cases found.")
            plan.transition(PlanStatus.COMPLETED)
            await store.save_plan(plan.to_dict())
            return await store.get_plan(plan.id), await store.get_plan("missing")

        snapshot, missing = _with_store(backend, tmp_path, body)

        assert snapshot["status"] == "completed"
        assert snapshot["completed_at"] is not None
        assert snapshot["agents"] == [plan.agents[0].to_dict()]
        assert snapshot["results"]["research"]["result"] == "Cases found."
        assert missing is None

    @BOTH_BACKENDS
    def test_list_by_subject(self, backend, tmp_path):
        plans = [_plan(), _plan(), _plan("matter-2")]

        async def body(store):
            for plan in plans:
                await store.save_plan(plan.to_dict())
            return await store.list_plans("matter-1")

        listed = _with_store(backend, tmp_path, body)

        assert {p["id"] for p in listed} == {plans[0].id, plans[1].id}


# ---------------------------------------------------------------------------
# Test: Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_task_name_truncates(self):
        name = task_name("research", "x" * 80)
        assert name == "research: " + "x" * 50 + "..."

    def test_task_name_short(self):
        assert task_name("timeline", "Appeal") == "timeline: Appeal"

    def test_factory_defaults_to_memory(self):
        assert isinstance(get_task_store("memory"), InMemoryTaskStore)
