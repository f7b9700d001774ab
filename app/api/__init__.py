# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - orchestrate.py: Plan + run capabilities for a matter, cancel plans
#   - tasks.py: Single-capability task lifecycle
#   - chat.py: Research answers streamed as Server-Sent Events
#   - deps.py: Shared dependencies (engine, task store, pipeline factory)
# =============================================================================
