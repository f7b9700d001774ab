# =============================================================================
# Exception Taxonomy
# =============================================================================
#
# Every error the engines raise on purpose derives from OrchestratorError,
# so API handlers can translate the whole family in one place.
#
#   OrchestratorError
#   ├── UnknownCapabilityError       — registry misconfiguration (startup)
#   ├── CapabilityExecutionError     — a dispatched capability failed
#   ├── OrchestrationCancelledError  — a run was cancelled (not a failure)
#   ├── InvalidPlanTransitionError   — plan status moved backwards
#   ├── EmbeddingDimensionError      — vectors of unequal length compared
#   ├── SearchAuthError              — search provider rejected credentials
#   ├── TaskNotFoundError
#   ├── InvalidTaskTransitionError
#   └── TaskNotCancellableError      — cancel requested on a finished task
#
# Recoverable conditions (classifier / selector model failures, transient
# search errors) are NOT raised; they are logged and the caller falls back.
# =============================================================================

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for all errors raised by the orchestration service."""


class UnknownCapabilityError(OrchestratorError):
    """A capability id has no registered implementation."""

    def __init__(self, capability_id: str) -> None:
        self.capability_id = capability_id
        super().__init__(f"No implementation registered for capability '{capability_id}'")


class CapabilityExecutionError(OrchestratorError):
    """A capability returned an unsuccessful result or raised."""

    def __init__(
        self,
        capability_id: str,
        message: str,
        plan_id: str | None = None,
    ) -> None:
        self.capability_id = capability_id
        self.message = message
        self.plan_id = plan_id
        super().__init__(f"Capability '{capability_id}' failed: {message}")


class OrchestrationCancelledError(OrchestratorError):
    """The run observed a cancellation request before completing."""

    def __init__(self, reason: str = "cancelled") -> None:
        self.reason = reason
        super().__init__(reason)


class InvalidPlanTransitionError(OrchestratorError):
    def __init__(self, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"Plan cannot move from '{current}' to '{requested}'")


class EmbeddingDimensionError(OrchestratorError):
    """Two embeddings with different dimensionality were compared."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )


class SearchAuthError(OrchestratorError):
    """A search provider rejected our credentials (HTTP 401/403)."""

    def __init__(self, provider: str, status_code: int) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(
            f"Search provider '{provider}' rejected credentials (HTTP {status_code})"
        )


class TaskNotFoundError(OrchestratorError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' not found")


class InvalidTaskTransitionError(OrchestratorError):
    def __init__(self, task_id: str, current: str, requested: str) -> None:
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Task '{task_id}' cannot move from '{current}' to '{requested}'"
        )


class TaskNotCancellableError(OrchestratorError):
    """Cancellation was requested on a task that already finished."""

    def __init__(self, task_id: str, status: str) -> None:
        self.task_id = task_id
        self.status = status
        super().__init__(f"Task '{task_id}' is {status} and cannot be cancelled")
