# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API.
# They serve as the contract between backend and clients:
# 1. Ensure consistent response structure across all endpoints
# 2. Automatically serialized to JSON by FastAPI
# 3. Generate OpenAPI response schemas (visible at /docs)
#
# DESIGN DECISION: Separate response models from engine dataclasses.
# Plans and tasks carry internal bookkeeping (enum keys, live results);
# the response models fix exactly which fields clients see.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


class CapabilityConfigResponse(BaseModel):
    capability_id: str
    dependencies: list[str]
    priority: int
    estimated_duration_seconds: int


class PlanResponse(BaseModel):
    """
    An orchestration plan and, once executed, its per-capability results.

    `status` is one of planned, executing, completed, failed, cancelled.
    """

    id: str
    subject_id: str
    user_query: str
    intent: dict[str, Any]
    agents: list[CapabilityConfigResponse]
    total_estimated_duration: int = Field(description="Estimated seconds for the whole plan")
    status: str
    created_at: datetime
    completed_at: datetime | None = None
    task_ids: dict[str, str] = Field(default_factory=dict)
    results: dict[str, dict[str, Any]] = Field(default_factory=dict)
    error: str | None = None


class CancelResponse(BaseModel):
    """Response for POST /orchestrations/{id}/cancel. Always 200."""

    plan_id: str
    cancelled: bool
    reason: str


class CapabilityResponse(BaseModel):
    id: str
    description: str


class TaskResponse(BaseModel):
    """A persisted capability task."""

    id: str
    subject_id: str
    capability_id: str
    name: str
    status: str = Field(description="pending, running, completed, failed or cancelled")
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] | None = None
    error: str | None = None
    progress: int = 0
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)
