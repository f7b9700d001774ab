# =============================================================================
# Tasks API — Single-Capability Tasks
# =============================================================================
#
# ENDPOINTS:
#   POST /tasks                       — record a pending task
#   GET  /tasks/{task_id}             — task status
#   POST /tasks/{task_id}/execute     — run a pending task
#   POST /tasks/{task_id}/cancel      — cancel (409 when already finished)
#   GET  /subjects/{subject_id}/tasks — tasks for a matter, newest first
#
# Plan capabilities are recorded as tasks too, so the subject listing shows
# both kinds.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.agents.orchestrator import OrchestrationEngine
from app.api.deps import get_engine, get_store
from app.exceptions import (
    InvalidTaskTransitionError,
    TaskNotCancellableError,
    TaskNotFoundError,
    UnknownCapabilityError,
)
from app.models.requests import CreateTaskRequest
from app.models.responses import TaskResponse
from app.services.task_store import TaskStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Tasks"])


@router.post("/tasks", response_model=TaskResponse, status_code=201)
async def create_task_endpoint(
    request: CreateTaskRequest,
    engine: OrchestrationEngine = Depends(get_engine),
) -> TaskResponse:
    try:
        task = await engine.create_task(
            request.subject_id,
            request.capability_id,
            request.query,
            parameters=request.parameters,
            context=request.context,
        )
    except UnknownCapabilityError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    logger.info("Created task %s (%s)", task.id, task.capability_id)
    return TaskResponse(**task.to_dict())


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task_endpoint(
    task_id: str,
    store: TaskStore = Depends(get_store),
) -> TaskResponse:
    task = await store.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return TaskResponse(**task.to_dict())


@router.post("/tasks/{task_id}/execute", response_model=TaskResponse)
async def execute_task_endpoint(
    task_id: str,
    engine: OrchestrationEngine = Depends(get_engine),
) -> TaskResponse:
    """
    Run a pending task. A capability failure is reported in the task
    (status "failed"), not as an HTTP error.
    """
    try:
        task = await engine.execute_task(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except InvalidTaskTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return TaskResponse(**task.to_dict())


@router.post("/tasks/{task_id}/cancel", response_model=TaskResponse)
async def cancel_task_endpoint(
    task_id: str,
    engine: OrchestrationEngine = Depends(get_engine),
) -> TaskResponse:
    try:
        task = await engine.cancel_task(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except TaskNotCancellableError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return TaskResponse(**task.to_dict())


@router.get("/subjects/{subject_id}/tasks", response_model=list[TaskResponse])
async def list_tasks_endpoint(
    subject_id: str,
    store: TaskStore = Depends(get_store),
) -> list[TaskResponse]:
    return [TaskResponse(**t.to_dict()) for t in await store.list_subject_tasks(subject_id)]
