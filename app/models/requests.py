# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API.
# FastAPI uses them for:
# 1. Request body validation (automatic 422 errors for invalid data)
# 2. OpenAPI documentation generation (visible at /docs)
#
# Capability ids, focus modes and optimization modes are validated here
# so that bad values never reach the engines.
# =============================================================================

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.agents.focus import FOCUS_MODES
from app.agents.types import CapabilityId


class OrchestrateRequest(BaseModel):
    """
    Request body for POST /orchestrate — plan and run capabilities.

    Example:
        {
            "subject_id": "matter-42",
            "query": "Research non-compete enforceability in California and draft a memo",
            "context": {"jurisdiction": "California"}
        }
    """

    subject_id: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="Case or matter the request belongs to",
        examples=["matter-42"],
    )

    query: str = Field(
        ...,
        min_length=3,
        max_length=4000,
        description="The legal request in plain language",
        examples=["Find cases on non-compete enforceability in California"],
    )

    # Free-form context handed to every capability. Keys such as
    # `document_ids`, `focus_mode` and `optimization_mode` steer retrieval.
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Caller context passed to every capability",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "subject_id": "matter-42",
                    "query": "Research non-compete law in California and draft a memo",
                    "context": {"jurisdiction": "California"},
                },
            ]
        }
    )


class CreateTaskRequest(BaseModel):
    """Request body for POST /tasks — record a single-capability task."""

    subject_id: str = Field(..., min_length=1, max_length=128)
    capability_id: str = Field(
        ...,
        description="One of the registered capability ids",
        examples=["contract"],
    )
    query: str = Field(..., min_length=3, max_length=4000)
    parameters: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)

    @field_validator("capability_id")
    @classmethod
    def _known_capability(cls, value: str) -> str:
        capability_id = CapabilityId.parse(value)
        if capability_id is None:
            raise ValueError(
                f"Unknown capability '{value}'. "
                f"Options: {', '.join(c.value for c in CapabilityId)}"
            )
        return capability_id.value


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """
    Request body for POST /chat — streamed research answer.

    Example:
        {
            "query": "What is the statute of limitations for breach of contract in New York?",
            "history": [],
            "focus_mode": "legal-research",
            "optimization_mode": "balanced"
        }
    """

    query: str = Field(..., min_length=1, max_length=4000)
    history: list[ChatMessage] = Field(default_factory=list)
    focus_mode: str = Field(
        default="legal-research",
        description="Retrieval configuration: " + ", ".join(FOCUS_MODES),
    )
    optimization_mode: Literal["speed", "balanced", "quality"] | None = Field(
        default=None,
        description="Rerank mode. If omitted, the server default is used.",
    )
    file_ids: list[str] = Field(
        default_factory=list,
        description="Ids of uploaded files whose pre-embedded chunks join the ranking",
    )
    system_instructions: str = Field(default="", max_length=4000)

    @field_validator("focus_mode")
    @classmethod
    def _known_focus_mode(cls, value: str) -> str:
        if value not in FOCUS_MODES:
            raise ValueError(
                f"Unknown focus mode '{value}'. Options: {', '.join(FOCUS_MODES)}"
            )
        return value
