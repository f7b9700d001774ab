# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# Persistent records for the database-backed task store.
#
# SCHEMA OVERVIEW:
#
# ┌──────────────────────────┐     ┌───────────────────────────────┐
# │  orchestrations          │     │  agent_tasks                  │
# ├──────────────────────────┤     ├───────────────────────────────┤
# │ id (PK, uuid str)        │     │ id (PK, uuid str)             │
# │ subject_id               │     │ subject_id                    │
# │ user_query (text)        │     │ capability_id                 │
# │ status                   │     │ name                          │
# │ intent (json)            │     │ status (TaskStatus)           │
# │ agents (json)            │     │ input (json)                  │
# │ total_estimated_duration │     │ output (json)                 │
# │ task_ids (json)          │     │ error (text)                  │
# │ error (text)             │     │ progress (int 0–100)          │
# │ created_at, completed_at │     │ created_at, started_at,       │
# └──────────────────────────┘     │ completed_at                  │
#                                  └───────────────────────────────┘
#
# DESIGN DECISIONS:
#
# 1. Portable column types (String ids, generic JSON) so the same models
#    run on PostgreSQL (asyncpg) in production and SQLite (aiosqlite) in
#    tests.
#
# 2. Plans are stored as snapshots. The live plan object is owned by the
#    orchestration engine; the row is rewritten on every status change.
# =============================================================================

import enum
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


class TaskStatus(str, enum.Enum):
    """
    Lifecycle of a single capability task.

    State machine:
        PENDING → RUNNING → COMPLETED
                          → FAILED
                          → CANCELLED
        PENDING → CANCELLED

    COMPLETED, FAILED and CANCELLED are terminal.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AgentTaskRecord(Base):
    """One capability execution, created pending and driven to a terminal state."""

    __tablename__ = "agent_tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    capability_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(500), nullable=False)

    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus),
        nullable=False,
        default=TaskStatus.PENDING,
    )

    input: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    output: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<AgentTaskRecord(id={self.id}, capability={self.capability_id}, "
            f"status={self.status})>"
        )


class OrchestrationRecord(Base):
    """Snapshot of an orchestration plan and its current status."""

    __tablename__ = "orchestrations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    user_query: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    intent: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    agents: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    total_estimated_duration: Mapped[int] = mapped_column(Integer, nullable=False)
    task_ids: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    results: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def __repr__(self) -> str:
        return f"<OrchestrationRecord(id={self.id}, status={self.status})>"
