# =============================================================================
# Task Store — Persistence for Capability Tasks and Plan Snapshots
# =============================================================================
#
# The orchestration engine records every capability it runs as a Task and
# drives it through the TaskStatus state machine (see app/db/models.py).
# Plan snapshots are stored alongside so status lookups survive the run.
#
# ARCHITECTURE:
#   TaskStore (Protocol)
#   ├── InMemoryTaskStore  — dicts guarded by an asyncio.Lock (default)
#   └── DatabaseTaskStore  — async SQLAlchemy over an injected session factory
#
# Both implementations share `_check_transition()`, so the legal moves are
# defined exactly once:
#   pending → running | cancelled
#   running → completed | failed | cancelled
# =============================================================================

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.db.models import AgentTaskRecord, OrchestrationRecord, TaskStatus
from app.exceptions import (
    InvalidTaskTransitionError,
    TaskNotCancellableError,
    TaskNotFoundError,
)

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset({
        TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED,
    }),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

TERMINAL_TASK_STATUSES = frozenset({
    TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED,
})


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class Task:
    id: str
    subject_id: str
    capability_id: str
    name: str
    status: TaskStatus = TaskStatus.PENDING
    input: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] | None = None
    error: str | None = None
    progress: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "capability_id": self.capability_id,
            "name": self.name,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "progress": self.progress,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


def task_name(capability_id: str, query: str) -> str:
    """Human-readable task label, e.g. 'research: Find cases on...'."""
    label = query[:50] + ("..." if len(query) > 50 else "")
    return f"{capability_id}: {label}"


def _check_transition(task_id: str, current: TaskStatus, requested: TaskStatus) -> None:
    if requested not in _TRANSITIONS[current]:
        raise InvalidTaskTransitionError(task_id, current.value, requested.value)


def _apply_status(
    task: Task | AgentTaskRecord,
    status: TaskStatus,
    progress: int | None,
    output: dict[str, Any] | None,
    error: str | None,
) -> None:
    """Set status and the fields that go with it. Mutates `task`."""
    now = datetime.now(UTC)
    task.status = status
    if status is TaskStatus.RUNNING:
        task.started_at = now
    if status in TERMINAL_TASK_STATUSES:
        task.completed_at = now
    if status is TaskStatus.COMPLETED:
        task.progress = 100
    if progress is not None:
        task.progress = max(0, min(100, progress))
    if output is not None:
        task.output = output
    if error is not None:
        task.error = error


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class TaskStore(Protocol):
    async def create_task(
        self,
        subject_id: str,
        capability_id: str,
        input: dict[str, Any],
        name: str | None = None,
    ) -> Task:
        ...

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        progress: int | None = None,
        output: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> Task:
        """
        Raises:
            TaskNotFoundError: Unknown task id.
            InvalidTaskTransitionError: Illegal status move.
        """
        ...

    async def get_task(self, task_id: str) -> Task | None:
        ...

    async def list_subject_tasks(self, subject_id: str) -> list[Task]:
        ...

    async def cancel_task(self, task_id: str) -> Task:
        """
        Raises:
            TaskNotFoundError: Unknown task id.
            TaskNotCancellableError: The task already finished.
        """
        ...

    async def save_plan(self, snapshot: dict[str, Any]) -> None:
        ...

    async def get_plan(self, plan_id: str) -> dict[str, Any] | None:
        ...

    async def list_plans(self, subject_id: str) -> list[dict[str, Any]]:
        ...


# ---------------------------------------------------------------------------
# Implementation 1: In-Memory
# ---------------------------------------------------------------------------


class InMemoryTaskStore:
    """Process-local store. Returned tasks are copies, never live records."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._plans: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def create_task(
        self,
        subject_id: str,
        capability_id: str,
        input: dict[str, Any],
        name: str | None = None,
    ) -> Task:
        task = Task(
            id=str(uuid.uuid4()),
            subject_id=subject_id,
            capability_id=capability_id,
            name=name or task_name(capability_id, str(input.get("query", ""))),
            input=copy.deepcopy(input),
        )
        async with self._lock:
            self._tasks[task.id] = task
        logger.debug("Created task %s (%s)", task.id, capability_id)
        return copy.deepcopy(task)

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        progress: int | None = None,
        output: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> Task:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            _check_transition(task_id, task.status, status)
            _apply_status(task, status, progress, output, error)
            return copy.deepcopy(task)

    async def get_task(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return copy.deepcopy(task) if task else None

    async def list_subject_tasks(self, subject_id: str) -> list[Task]:
        tasks = [t for t in self._tasks.values() if t.subject_id == subject_id]
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return [copy.deepcopy(t) for t in tasks]

    async def cancel_task(self, task_id: str) -> Task:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.status in TERMINAL_TASK_STATUSES:
                raise TaskNotCancellableError(task_id, task.status.value)
            _apply_status(task, TaskStatus.CANCELLED, None, None, None)
            return copy.deepcopy(task)

    async def save_plan(self, snapshot: dict[str, Any]) -> None:
        async with self._lock:
            self._plans[snapshot["id"]] = copy.deepcopy(snapshot)

    async def get_plan(self, plan_id: str) -> dict[str, Any] | None:
        plan = self._plans.get(plan_id)
        return copy.deepcopy(plan) if plan else None

    async def list_plans(self, subject_id: str) -> list[dict[str, Any]]:
        plans = [p for p in self._plans.values() if p["subject_id"] == subject_id]
        plans.sort(key=lambda p: p["created_at"], reverse=True)
        return copy.deepcopy(plans)


# ---------------------------------------------------------------------------
# Implementation 2: SQLAlchemy
# ---------------------------------------------------------------------------


class DatabaseTaskStore:
    """
    Task store over async SQLAlchemy.

    Each operation opens its own session from the injected factory and
    commits before returning (self-managed sessions, no request scope).
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_task(
        self,
        subject_id: str,
        capability_id: str,
        input: dict[str, Any],
        name: str | None = None,
    ) -> Task:
        record = AgentTaskRecord(
            id=str(uuid.uuid4()),
            subject_id=subject_id,
            capability_id=capability_id,
            name=name or task_name(capability_id, str(input.get("query", ""))),
            status=TaskStatus.PENDING,
            input=input,
            progress=0,
            created_at=datetime.now(UTC),
        )
        async with self._session_factory() as session:
            session.add(record)
            await session.commit()
        return _to_task(record)

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        progress: int | None = None,
        output: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> Task:
        async with self._session_factory() as session:
            record = await session.get(AgentTaskRecord, task_id)
            if record is None:
                raise TaskNotFoundError(task_id)
            _check_transition(task_id, record.status, status)
            _apply_status(record, status, progress, output, error)
            await session.commit()
            return _to_task(record)

    async def get_task(self, task_id: str) -> Task | None:
        async with self._session_factory() as session:
            record = await session.get(AgentTaskRecord, task_id)
            return _to_task(record) if record else None

    async def list_subject_tasks(self, subject_id: str) -> list[Task]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AgentTaskRecord)
                .where(AgentTaskRecord.subject_id == subject_id)
                .order_by(AgentTaskRecord.created_at.desc())
            )
            return [_to_task(r) for r in result.scalars().all()]

    async def cancel_task(self, task_id: str) -> Task:
        async with self._session_factory() as session:
            record = await session.get(AgentTaskRecord, task_id)
            if record is None:
                raise TaskNotFoundError(task_id)
            if record.status in TERMINAL_TASK_STATUSES:
                raise TaskNotCancellableError(task_id, record.status.value)
            _apply_status(record, TaskStatus.CANCELLED, None, None, None)
            await session.commit()
            return _to_task(record)

    async def save_plan(self, snapshot: dict[str, Any]) -> None:
        async with self._session_factory() as session:
            record = await session.get(OrchestrationRecord, snapshot["id"])
            if record is None:
                record = OrchestrationRecord(
                    id=snapshot["id"],
                    subject_id=snapshot["subject_id"],
                    user_query=snapshot["user_query"],
                    created_at=datetime.fromisoformat(snapshot["created_at"]),
                )
                session.add(record)
            record.status = snapshot["status"]
            record.intent = snapshot["intent"]
            record.agents = snapshot["agents"]
            record.total_estimated_duration = snapshot["total_estimated_duration"]
            record.task_ids = snapshot["task_ids"]
            record.results = snapshot.get("results") or {}
            record.error = snapshot.get("error")
            if snapshot.get("completed_at"):
                record.completed_at = datetime.fromisoformat(snapshot["completed_at"])
            await session.commit()

    async def get_plan(self, plan_id: str) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            record = await session.get(OrchestrationRecord, plan_id)
            return _plan_to_dict(record) if record else None

    async def list_plans(self, subject_id: str) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OrchestrationRecord)
                .where(OrchestrationRecord.subject_id == subject_id)
                .order_by(OrchestrationRecord.created_at.desc())
            )
            return [_plan_to_dict(r) for r in result.scalars().all()]


# ---------------------------------------------------------------------------
# Factory + Helpers
# ---------------------------------------------------------------------------


def get_task_store(backend: str | None = None) -> InMemoryTaskStore | DatabaseTaskStore:
    """
    Build the configured task store.

    Reads `task_store_backend` from settings:
    - "memory" → InMemoryTaskStore (default)
    - "database" → DatabaseTaskStore on the application engine
    """
    backend = backend or settings.task_store_backend
    if backend == "database":
        from app.db.engine import get_session_factory

        logger.info("Using database task store")
        return DatabaseTaskStore(get_session_factory())
    return InMemoryTaskStore()


def _to_task(record: AgentTaskRecord) -> Task:
    return Task(
        id=record.id,
        subject_id=record.subject_id,
        capability_id=record.capability_id,
        name=record.name,
        status=record.status,
        input=dict(record.input or {}),
        output=record.output,
        error=record.error,
        progress=record.progress,
        created_at=record.created_at,
        started_at=record.started_at,
        completed_at=record.completed_at,
    )


def _plan_to_dict(record: OrchestrationRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "subject_id": record.subject_id,
        "user_query": record.user_query,
        "intent": record.intent,
        "agents": record.agents,
        "total_estimated_duration": record.total_estimated_duration,
        "status": record.status,
        "created_at": record.created_at.isoformat(),
        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
        "task_ids": record.task_ids,
        "results": record.results or {},
        "error": record.error,
    }
