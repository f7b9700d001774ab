# =============================================================================
# Chat API — Streamed Research Answers over Server-Sent Events
# =============================================================================
#
# POST /chat runs the retrieval pipeline for one chat turn and streams its
# events as `text/event-stream`:
#
#   data: {"type": "progress", "message": "Searching"}
#   data: {"type": "sources", "data": [...]}
#   data: {"type": "response", "data": "The court held..."}
#   data: {"type": "end"}
#
# The stream always finishes with exactly one `end` or `error` frame.
# If the client disconnects, the producer task is cancelled.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from app.agents.stream import AnswerPipeline, StreamOptions, serialize_event, stream_answer
from app.agents.types import OptimizationMode
from app.api.deps import get_pipeline_factory
from app.models.requests import ChatRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Chat"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post(
    "/chat",
    summary="Answer a research question as a server-sent-event stream",
    response_class=StreamingResponse,
)
async def chat_endpoint(
    request: ChatRequest,
    pipeline_factory: Callable[[], AnswerPipeline] = Depends(get_pipeline_factory),
) -> StreamingResponse:
    """
    Error handling:
    - Missing LLM/embedding configuration → 503 before the stream opens
    - Failures after the stream opens → an `error` frame, never `end`
    """
    try:
        pipeline = pipeline_factory()
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise HTTPException(
            status_code=503,
            detail=f"Service configuration error: {e}",
        ) from e

    options = StreamOptions(
        focus_mode=request.focus_mode,
        optimization_mode=(
            OptimizationMode(request.optimization_mode)
            if request.optimization_mode else None
        ),
        file_ids=request.file_ids,
        system_instructions=request.system_instructions,
    )
    history = [m.model_dump() for m in request.history]

    logger.info(
        "Chat request: focus=%s, query='%s'", request.focus_mode, request.query[:80],
    )
    stream = stream_answer(request.query, history, options, pipeline=pipeline)

    async def frames() -> AsyncIterator[str]:
        try:
            async for event in stream:
                yield serialize_event(event)
        finally:
            await stream.aclose()

    return StreamingResponse(frames(), media_type="text/event-stream", headers=_SSE_HEADERS)
