# =============================================================================
# Orchestrate API — Plan, Run, Inspect and Cancel Capability Graphs
# =============================================================================
#
# ENDPOINTS:
#   POST /orchestrate                         — plan + execute, returns plan
#   GET  /orchestrations/{plan_id}            — plan status and results
#   GET  /subjects/{subject_id}/orchestrations — plan history for a matter
#   POST /orchestrations/{plan_id}/cancel     — cooperative cancel (always 200)
#   GET  /capabilities                        — registered capabilities
#
# This module is thin by design — request validation, error mapping and
# response shaping. The engine lives in app/agents/orchestrator.py.
#
# ERROR MAPPING:
#   CapabilityExecutionError → 502 (detail carries the plan id)
#   ValueError (configuration) → 503
#   cancelled plan            → 200 with status "cancelled"
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.agents.orchestrator import OrchestrationEngine
from app.api.deps import get_engine
from app.exceptions import CapabilityExecutionError, OrchestrationCancelledError
from app.models.requests import OrchestrateRequest
from app.models.responses import CancelResponse, CapabilityResponse, PlanResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Orchestration"])


# ---------------------------------------------------------------------------
# POST /orchestrate
# ---------------------------------------------------------------------------


@router.post(
    "/orchestrate",
    response_model=PlanResponse,
    summary="Plan and run the capabilities a legal request needs",
)
async def orchestrate_endpoint(
    request: OrchestrateRequest,
    engine: OrchestrationEngine = Depends(get_engine),
) -> PlanResponse:
    """
    Classify the request, select and order capabilities, then run them.

    Error handling:
    - Capability failure → 502 with the plan id (plan status "failed")
    - Missing LLM/API configuration → 503
    - Cancellation → 200 with status "cancelled"
    """
    logger.info(
        "Orchestrate request: subject=%s, query='%s'",
        request.subject_id, request.query[:80],
    )

    try:
        plan = await engine.plan(request.subject_id, request.query, request.context)
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise HTTPException(
            status_code=503,
            detail=f"Service configuration error: {e}",
        ) from e

    try:
        await engine.execute(plan)
    except OrchestrationCancelledError as e:
        logger.info("Plan %s cancelled: %s", plan.id, e.reason)
    except CapabilityExecutionError as e:
        logger.error("Plan %s failed: %s", plan.id, e)
        raise HTTPException(
            status_code=502,
            detail={"plan_id": plan.id, "capability_id": e.capability_id, "error": e.message},
        ) from e

    return PlanResponse(**plan.to_dict())


# ---------------------------------------------------------------------------
# Plan Lookups
# ---------------------------------------------------------------------------


@router.get(
    "/orchestrations/{plan_id}",
    response_model=PlanResponse,
    summary="Get plan status and results",
)
async def get_plan_endpoint(
    plan_id: str,
    engine: OrchestrationEngine = Depends(get_engine),
) -> PlanResponse:
    snapshot = await engine.get_plan(plan_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Plan {plan_id} not found")
    return PlanResponse(**snapshot)


@router.get(
    "/subjects/{subject_id}/orchestrations",
    response_model=list[PlanResponse],
    summary="List plans for a case or matter, newest first",
)
async def list_plans_endpoint(
    subject_id: str,
    engine: OrchestrationEngine = Depends(get_engine),
) -> list[PlanResponse]:
    return [PlanResponse(**p) for p in await engine.list_plans(subject_id)]


@router.post(
    "/orchestrations/{plan_id}/cancel",
    response_model=CancelResponse,
    summary="Request cancellation of a plan",
)
async def cancel_plan_endpoint(
    plan_id: str,
    engine: OrchestrationEngine = Depends(get_engine),
) -> CancelResponse:
    """
    Never fails: finished or unknown plans report `cancelled: false` with
    the reason.
    """
    outcome = await engine.cancel(plan_id)
    return CancelResponse(**outcome.to_dict())


@router.get(
    "/capabilities",
    response_model=list[CapabilityResponse],
    summary="List registered capabilities",
)
async def capabilities_endpoint(
    engine: OrchestrationEngine = Depends(get_engine),
) -> list[CapabilityResponse]:
    return [CapabilityResponse(**c) for c in engine.available_capabilities()]
