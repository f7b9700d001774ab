# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request/response bodies for the HTTP surface:
#   - requests.py: OrchestrateRequest, CreateTaskRequest, ChatRequest
#   - responses.py: PlanResponse, TaskResponse, CancelResponse, ...
#
# Kept apart from the engine's dataclasses (app/agents/types.py) and the ORM
# records (app/db/models.py); routers convert with `Model(**obj.to_dict())`.
# =============================================================================
