# =============================================================================
# Unit Tests — Streaming Emitter
# =============================================================================
#
# Runs the full answer pipeline against in-memory fakes (LLM, embedder,
# web search, chunk store) and checks the emitted event sequence:
#
#   progress* → sources → response* → end | error
# =============================================================================

from __future__ import annotations

import asyncio
import json

from app.agents.stream import (
    AnswerPipeline,
    EndEvent,
    ErrorEvent,
    ProgressEvent,
    ResponseEvent,
    SourcesEvent,
    StreamOptions,
    serialize_event,
    stream_answer,
)
from app.agents.types import LocalChunk, OptimizationMode, RetrievedDocument
from app.services.cancellation import CancellationToken
from app.services.llm import LLMResponse
from app.services.web_search import SearchHit, SearchResponse


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class FakeLLM:
    """
    complete() answers the rephrase step (no system prompt) with
    `rephrase` and full answers with `answer`; stream() yields `chunks`.
    """

    def __init__(self, rephrase="not_needed", chunks=("The court ", "held [1]."),
                 answer="Full answer.", stream_error=None, hang_after_first=False):
        self.rephrase = rephrase
        self.chunks = chunks
        self.answer = answer
        self.stream_error = stream_error
        self.hang_after_first = hang_after_first
        self.stream_calls = []

    async def complete(self, messages, system=None, temperature=None, max_tokens=None):
        content = self.rephrase if system is None else self.answer
        return LLMResponse(content=content, model="test-model", input_tokens=10, output_tokens=5)

    async def stream(self, messages, system=None, temperature=None, max_tokens=None):
        self.stream_calls.append({"messages": messages, "system": system})
        for i, chunk in enumerate(self.chunks):
            yield chunk
            if self.hang_after_first and i == 0:
                await asyncio.sleep(30)
        if self.stream_error is not None:
            raise self.stream_error


class FakeEmbedder:
    def __init__(self):
        self.batch_calls = 0

    async def embed_query(self, text):
        return [1.0, 0.0]

    async def embed_batch(self, texts):
        self.batch_calls += 1
        return [[1.0, 0.0] for _ in texts]


class FakeWebSearch:
    def __init__(self, hits=None):
        self.hits = hits or []
        self.calls = 0

    async def search(self, query, options=None):
        self.calls += 1
        return SearchResponse(results=list(self.hits))


class FakeChunkStore:
    def __init__(self, chunks=None):
        self.chunks = chunks or []
        self.requested = []

    async def load_chunks(self, file_ids):
        self.requested.append(list(file_ids))
        return [c for c in self.chunks if c.file_id in file_ids]


HITS = [
    SearchHit(title="Campbell v. Acuff-Rose", url="https://law.example/campbell", content="Parody..."),
    SearchHit(title="17 U.S.C. 107", url="https://law.example/107", content="Fair use factors"),
]


def _pipeline(llm=None, web=None, store=None, embedder=None) -> AnswerPipeline:
    return AnswerPipeline(
        llm=llm or FakeLLM(),
        embedder=embedder or FakeEmbedder(),
        web_search=web or FakeWebSearch(),
        chunk_store=store or FakeChunkStore(),
    )


async def _collect(stream):
    return [event async for event in stream]


def _types(events):
    return [e.type for e in events]


# ---------------------------------------------------------------------------
# Test: Event Order
# ---------------------------------------------------------------------------


class TestEventOrder:
    def test_happy_path(self):
        llm = FakeLLM(rephrase="<question>fair use parody</question>")
        pipeline = _pipeline(llm=llm, web=FakeWebSearch(HITS))

        async def scenario():
            return await _collect(stream_answer("Is parody fair use?", [], pipeline=pipeline))

        events = _run(scenario())

        assert _types(events) == [
            "progress", "progress", "sources", "response", "response", "end",
        ]
        assert [e.message for e in events if isinstance(e, ProgressEvent)] == [
            "Searching", "Ranking",
        ]
        sources = events[2]
        assert isinstance(sources, SourcesEvent)
        assert [d.source_url for d in sources.documents] == [h.url for h in HITS]
        assert "".join(e.chunk for e in events if isinstance(e, ResponseEvent)) == (
            "The court held [1]."
        )

    def test_sources_reach_the_prompt(self):
        llm = FakeLLM(rephrase="fair use parody")
        pipeline = _pipeline(llm=llm, web=FakeWebSearch(HITS))

        async def scenario():
            return await _collect(stream_answer(
                "Is parody fair use?",
                [{"role": "user", "content": "Earlier question"}],
                StreamOptions(system_instructions="Answer for a judge."),
                pipeline=pipeline,
            ))

        _run(scenario())

        call = llm.stream_calls[0]
        assert "[1] Campbell v. Acuff-Rose:" in call["system"]
        assert "Answer for a judge." in call["system"]
        assert call["messages"][0] == {"role": "user", "content": "Earlier question"}
        assert call["messages"][-1] == {"role": "user", "content": "Is parody fair use?"}

    def test_empty_context_still_generates(self):
        web = FakeWebSearch(HITS)
        pipeline = _pipeline(llm=FakeLLM(rephrase="not_needed"), web=web)

        async def scenario():
            return await _collect(stream_answer("Thanks, that helps", [], pipeline=pipeline))

        events = _run(scenario())

        assert web.calls == 0
        sources = [e for e in events if isinstance(e, SourcesEvent)]
        assert len(sources) == 1
        assert sources[0].documents == ()
        assert _types(events)[-3:] == ["response", "response", "end"]

    def test_writing_mode_skips_search(self):
        web = FakeWebSearch(HITS)
        embedder = FakeEmbedder()
        store = FakeChunkStore([
            LocalChunk("f1", "brief.docx", "Argument section", (1.0, 0.0), 0),
        ])
        pipeline = _pipeline(web=web, store=store, embedder=embedder)

        async def scenario():
            return await _collect(stream_answer(
                "Tighten the argument",
                [],
                StreamOptions(focus_mode="writing", file_ids=["f1"]),
                pipeline=pipeline,
            ))

        events = _run(scenario())

        assert web.calls == 0
        assert store.requested == [["f1"]]
        assert embedder.batch_calls == 0
        assert _types(events)[0] == "progress"
        assert events[0].message == "Ranking"
        sources = next(e for e in events if isinstance(e, SourcesEvent))
        assert [d.source_type for d in sources.documents] == ["document"]
        assert events[-1] == EndEvent()


# ---------------------------------------------------------------------------
# Test: Errors and Cancellation
# ---------------------------------------------------------------------------


class TestTerminalEvents:
    def test_generation_error_ends_with_error(self):
        llm = FakeLLM(stream_error=RuntimeError("model overloaded"))
        pipeline = _pipeline(llm=llm)

        async def scenario():
            return await _collect(stream_answer("q", [], pipeline=pipeline))

        events = _run(scenario())

        assert events[-1] == ErrorEvent(message="model overloaded", code="error")
        assert "end" not in _types(events)
        assert "response" in _types(events)

    def test_unknown_focus_mode_is_an_error(self):
        pipeline = _pipeline()

        async def scenario():
            return await _collect(stream_answer(
                "q", [], StreamOptions(focus_mode="astrology"), pipeline=pipeline,
            ))

        events = _run(scenario())

        assert len(events) == 1
        assert isinstance(events[0], ErrorEvent)

    def test_cancelled_before_start(self):
        pipeline = _pipeline(llm=FakeLLM(rephrase="<question>q</question>"))

        async def scenario():
            token = CancellationToken()
            token.cancel("user left")
            return await _collect(stream_answer("q", [], pipeline=pipeline, token=token))

        events = _run(scenario())

        assert events[-1] == ErrorEvent(message="user left", code="cancelled")
        assert "sources" not in _types(events)

    def test_cancelled_mid_generation(self):
        llm = FakeLLM(hang_after_first=True)
        pipeline = _pipeline(llm=llm)

        async def scenario():
            stream = stream_answer("q", [], pipeline=pipeline)
            events = []
            async for event in stream:
                events.append(event)
                if isinstance(event, ResponseEvent):
                    stream.cancel("stop")
            return events

        events = _run(scenario())

        assert _types(events)[-2:] == ["response", "error"]
        assert events[-1].code == "cancelled"

    def test_aclose_stops_producer(self):
        llm = FakeLLM(hang_after_first=True)
        pipeline = _pipeline(llm=llm)

        async def scenario():
            stream = stream_answer("q", [], pipeline=pipeline)
            first = await stream.__anext__()
            await stream.aclose()
            remaining = [e async for e in stream]
            return first, remaining, stream._task.done()

        first, remaining, done = _run(scenario())

        assert isinstance(first, ProgressEvent)
        assert remaining == []
        assert done


# ---------------------------------------------------------------------------
# Test: Non-Streaming Answer
# ---------------------------------------------------------------------------


class TestAnswer:
    def test_returns_text_and_sources(self):
        llm = FakeLLM(rephrase="fair use parody", answer="Parody can be fair use [1].")
        pipeline = _pipeline(llm=llm, web=FakeWebSearch(HITS))

        text, documents = _run(pipeline.answer(
            "Is parody fair use?", [],
            StreamOptions(optimization_mode=OptimizationMode.SPEED),
        ))

        assert text == "Parody can be fair use [1]."
        assert [d.title for d in documents] == [h.title for h in HITS]


# ---------------------------------------------------------------------------
# Test: Serialisation
# ---------------------------------------------------------------------------


class TestSerializeEvent:
    def test_response_frame(self):
        assert serialize_event(ResponseEvent("hi")) == (
            'data: {"type": "response", "data": "hi"}\n\n'
        )

    def test_sources_frame(self):
        doc = RetrievedDocument(
            content="text", title="Smith v. Jones", source_url="https://x", page_number=4,
        )
        frame = serialize_event(SourcesEvent((doc,)))
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        payload = json.loads(frame[len("data: "):])
        assert payload == {
            "type": "sources",
            "data": [{
                "content": "text",
                "metadata": {
                    "title": "Smith v. Jones", "url": "https://x", "type": "web",
                    "page_number": 4,
                },
            }],
        }

    def test_error_frame(self):
        payload = json.loads(serialize_event(ErrorEvent("boom"))[6:])
        assert payload == {"type": "error", "message": "boom", "code": "error"}

    def test_end_frame(self):
        assert serialize_event(EndEvent()) == 'data: {"type": "end"}\n\n'
