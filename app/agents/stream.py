# =============================================================================
# Streaming Emitter — Ordered Answer Events over a Bounded Queue
# =============================================================================
#
# Runs the retrieval pipeline for one chat turn and publishes its progress
# as an ordered stream of events:
#
#   progress* → sources (exactly one) → response* → end
#                                                 ↘ error (instead of end)
#
# PIPELINE STAGES:
#   1. rephrase + collect   (skipped when the focus mode does not search)
#   2. local chunk load     (when the request carries file ids)
#   3. rerank               (speed mode when the focus mode disables rerank)
#   4. sources event        (the final context window, before generation)
#   5. generation           (one response event per streamed text chunk)
#
# DESIGN DECISION: Async iterator over a bounded asyncio.Queue.
# The producer runs in its own task and `await`s on a full queue, so a slow
# consumer applies backpressure instead of the stream buffering without
# bound. Consumers use plain `async for`; iteration ends after the terminal
# event. `aclose()` cancels the producer.
#
# DESIGN DECISION: Cancellation is a terminal error with code "cancelled".
# The run's CancellationToken is checked at every stage; a cancelled run
# publishes ErrorEvent(code="cancelled") so callers can tell it from a
# failure (code "error").
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

from app.agents.analyst import generate_answer, stream_answer_text
from app.agents.focus import DEFAULT_FOCUS_MODE, get_focus_mode
from app.agents.search import DocumentCollector, FetchDocuments
from app.agents.types import OptimizationMode, RetrievedDocument
from app.config import settings
from app.exceptions import OrchestrationCancelledError
from app.services.cancellation import CancellationToken
from app.services.embedder import Embedder, get_embedder
from app.services.llm import LLMProvider, get_llm_provider
from app.services.rerank import RerankEngine
from app.services.vectorstore import ChunkStore, get_chunk_store
from app.services.web_search import WebSearch, get_web_search

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProgressEvent:
    message: str
    type: ClassVar[str] = "progress"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message}


@dataclass(frozen=True)
class SourcesEvent:
    documents: tuple[RetrievedDocument, ...] = ()
    type: ClassVar[str] = "sources"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": [d.to_dict() for d in self.documents]}


@dataclass(frozen=True)
class ResponseEvent:
    chunk: str
    type: ClassVar[str] = "response"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.chunk}


@dataclass(frozen=True)
class EndEvent:
    type: ClassVar[str] = "end"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type}


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    code: str = "error"  # "error" or "cancelled"
    type: ClassVar[str] = "error"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message, "code": self.code}


StreamEvent = Union[ProgressEvent, SourcesEvent, ResponseEvent, EndEvent, ErrorEvent]
Emit = Callable[[StreamEvent], Awaitable[None]]


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, (EndEvent, ErrorEvent))


def serialize_event(event: StreamEvent) -> str:
    """Render one event as a server-sent-events frame."""
    payload = json.dumps(event.to_dict(), default=str)
    return f"data: {payload}\n\n"


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


@dataclass
class StreamOptions:
    focus_mode: str = DEFAULT_FOCUS_MODE
    optimization_mode: OptimizationMode | None = None  # None → settings default
    file_ids: list[str] = field(default_factory=list)
    system_instructions: str = ""

    def resolved_mode(self) -> OptimizationMode:
        return OptimizationMode(
            self.optimization_mode or settings.default_optimization_mode,
        )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class AnswerPipeline:
    """
    The collaborators one chat turn needs.

    Args:
        llm: Used for the rephrase step and for answer generation.
        embedder: Used by the rerank step.
        web_search: Web search collaborator.
        chunk_store: Source of pre-embedded local file chunks.
        fetch: Optional link dereferencing override (tests).
    """

    def __init__(
        self,
        llm: LLMProvider,
        embedder: Embedder,
        web_search: WebSearch,
        chunk_store: ChunkStore,
        fetch: FetchDocuments | None = None,
    ) -> None:
        self.llm = llm
        self.embedder = embedder
        self.chunk_store = chunk_store
        self.collector = DocumentCollector(web_search, llm, fetch)

    @classmethod
    def from_settings(cls) -> AnswerPipeline:
        return cls(
            llm=get_llm_provider(),
            embedder=get_embedder(),
            web_search=get_web_search(),
            chunk_store=get_chunk_store(),
        )

    async def retrieve(
        self,
        query: str,
        history: list[dict[str, str]],
        options: StreamOptions,
        token: CancellationToken,
        emit: Emit | None = None,
    ) -> list[RetrievedDocument]:
        """
        Rephrase, collect, load local chunks and rerank.

        Returns:
            The final context window, best first.
        """
        config = get_focus_mode(options.focus_mode)
        mode = options.resolved_mode() if config.rerank else OptimizationMode.SPEED

        documents: list[RetrievedDocument] = []
        effective_query = query
        if config.search_web:
            if emit:
                await emit(ProgressEvent("Searching"))
            retrieval = await token.guard(
                self.collector.rephrase_and_collect(history, query, config),
            )
            documents = retrieval.documents
            effective_query = retrieval.effective_query

        chunks = []
        if options.file_ids:
            chunks = await token.guard(self.chunk_store.load_chunks(options.file_ids))

        if emit:
            await emit(ProgressEvent("Ranking"))
        engine = RerankEngine(self.embedder, threshold=config.rerank_threshold)
        return await token.guard(
            engine.rerank(effective_query or query, documents, chunks, mode),
        )

    async def answer(
        self,
        query: str,
        history: list[dict[str, str]],
        options: StreamOptions,
        token: CancellationToken | None = None,
    ) -> tuple[str, list[RetrievedDocument]]:
        """Retrieve, then generate the whole answer in one call."""
        token = token or CancellationToken()
        ranked = await self.retrieve(query, history, options, token)
        config = get_focus_mode(options.focus_mode)
        text = await token.guard(generate_answer(
            self.llm, query, history, ranked,
            config.response_prompt, options.system_instructions,
        ))
        return text, ranked

    async def run(
        self,
        query: str,
        history: list[dict[str, str]],
        options: StreamOptions,
        emit: Emit,
        token: CancellationToken,
    ) -> None:
        """
        Run every stage, publishing sources and response events.

        Raises:
            OrchestrationCancelledError: If `token` fires before the end.
            KeyError: If `options.focus_mode` is unknown.
        """
        config = get_focus_mode(options.focus_mode)
        ranked = await self.retrieve(query, history, options, token, emit)

        token.raise_if_cancelled()
        await emit(SourcesEvent(tuple(ranked)))

        generator = stream_answer_text(
            self.llm, query, history, ranked,
            config.response_prompt, options.system_instructions,
        )
        try:
            while True:
                has_chunk, chunk = await token.guard(_next_chunk(generator))
                if not has_chunk:
                    break
                await emit(ResponseEvent(chunk))
        finally:
            await generator.aclose()


async def _next_chunk(generator: AsyncIterator[str]) -> tuple[bool, str]:
    try:
        return True, await generator.__anext__()
    except StopAsyncIteration:
        return False, ""


# ---------------------------------------------------------------------------
# Stream
# ---------------------------------------------------------------------------


class AnswerStream:
    """
    Async iterator of StreamEvents for one pipeline run.

    The producer task starts on first iteration. Iteration stops after the
    terminal event (EndEvent or ErrorEvent).
    """

    def __init__(
        self,
        produce: Callable[[Emit, CancellationToken], Awaitable[None]],
        token: CancellationToken | None = None,
        maxsize: int | None = None,
    ) -> None:
        self._produce = produce
        self.token = token or CancellationToken()
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue(
            maxsize=maxsize or settings.stream_queue_size,
        )
        self._task: asyncio.Task[None] | None = None
        self._finished = False

    def __aiter__(self) -> AnswerStream:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._finished:
            raise StopAsyncIteration
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        event = await self._queue.get()
        if is_terminal(event):
            self._finished = True
        return event

    def cancel(self, reason: str = "cancelled by request") -> bool:
        return self.token.cancel(reason)

    async def aclose(self) -> None:
        self._finished = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        try:
            await self._produce(self._queue.put, self.token)
        except OrchestrationCancelledError as e:
            logger.info("Answer stream cancelled: %s", e.reason)
            await self._queue.put(ErrorEvent(message=e.reason, code="cancelled"))
            return
        except Exception as e:
            logger.exception("Answer stream failed")
            await self._queue.put(ErrorEvent(message=str(e)))
            return
        await self._queue.put(EndEvent())


def stream_answer(
    query: str,
    history: list[dict[str, str]],
    options: StreamOptions | None = None,
    pipeline: AnswerPipeline | None = None,
    token: CancellationToken | None = None,
) -> AnswerStream:
    """
    Answer `query` as a stream of events.

    Args:
        query: The user's latest message.
        history: Prior turns as {"role", "content"} dicts.
        options: Focus mode, optimization mode, file ids, instructions.
        pipeline: Collaborators (defaults built from settings on first use).
        token: Optional externally owned cancellation token.
    """
    options = options or StreamOptions()

    async def produce(emit: Emit, run_token: CancellationToken) -> None:
        active = pipeline or AnswerPipeline.from_settings()
        await active.run(query, history, options, emit, run_token)

    return AnswerStream(produce, token=token)
