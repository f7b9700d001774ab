# =============================================================================
# API Tests — Orchestration, Tasks and Chat Endpoints
# =============================================================================
#
# Builds a fresh app per test and swaps the engine, task store and answer
# pipeline for in-memory fakes through FastAPI's dependency_overrides.
# =============================================================================

from __future__ import annotations

import json

from fastapi.testclient import TestClient

from app.agents.capabilities import CapabilityRegistry
from app.agents.orchestrator import OrchestrationEngine
from app.agents.stream import AnswerPipeline
from app.agents.types import CapabilityId, CapabilityOutput
from app.api.deps import get_engine, get_pipeline_factory, get_store
from app.config import settings
from app.main import create_app
from app.services.llm import LLMResponse
from app.services.task_store import InMemoryTaskStore
from app.services.web_search import SearchHit, SearchResponse

MEMO_QUERY = "Draft a memo on the duty to mitigate damages"


class StaticCapability:
    def __init__(self, capability_id, fail=None):
        self.capability_id = capability_id
        self.fail = fail

    async def execute(self, capability_input):
        if self.fail:
            return CapabilityOutput(success=False, error=self.fail)
        return CapabilityOutput(success=True, result=f"{self.capability_id.value} answer")


class FakeLLM:
    async def complete(self, messages, system=None, temperature=None, max_tokens=None):
        content = "<question>duty to mitigate</question>" if system is None else "Answer."
        return LLMResponse(content=content, model="test-model", input_tokens=1, output_tokens=1)

    async def stream(self, messages, system=None, temperature=None, max_tokens=None):
        for chunk in ("Mitigation ", "is required [1]."):
            yield chunk


class FakeEmbedder:
    async def embed_query(self, text):
        return [1.0, 0.0]

    async def embed_batch(self, texts):
        return [[1.0, 0.0] for _ in texts]


class FakeWebSearch:
    async def search(self, query, options=None):
        return SearchResponse(results=[
            SearchHit(title="Parker v. Wren", url="https://law.example/parker", content="Mitigation..."),
        ])


class FakeChunkStore:
    async def load_chunks(self, file_ids):
        return []


def _client(capabilities=None, pipeline_factory=None):
    store = InMemoryTaskStore()
    capabilities = capabilities or [
        StaticCapability(CapabilityId.RESEARCH),
        StaticCapability(CapabilityId.BRIEF_WRITING),
        StaticCapability(CapabilityId.CONTRACT),
    ]
    engine = OrchestrationEngine(
        CapabilityRegistry({c.capability_id: c for c in capabilities}, require_complete=False),
        store,
        llm_factory=lambda: None,
        max_concurrency=1,
    )
    app = create_app()
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_pipeline_factory] = lambda: pipeline_factory or (
        lambda: AnswerPipeline(FakeLLM(), FakeEmbedder(), FakeWebSearch(), FakeChunkStore())
    )
    return TestClient(app)


def _frames(body: str) -> list[dict]:
    return [
        json.loads(line[len("data: "):])
        for line in body.split("\n\n")
        if line.startswith("data: ")
    ]


# ---------------------------------------------------------------------------
# Test: Health + Capabilities
# ---------------------------------------------------------------------------


class TestHealth:
    def test_health(self):
        with _client() as client:
            response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {
            "status": "ok", "version": settings.app_version, "service": settings.app_name,
        }

    def test_capabilities(self):
        with _client() as client:
            response = client.get("/capabilities")
        assert response.status_code == 200
        assert [c["id"] for c in response.json()] == ["research", "brief-writing", "contract"]


# ---------------------------------------------------------------------------
# Test: Orchestration
# ---------------------------------------------------------------------------


class TestOrchestrate:
    def test_plan_and_run(self):
        with _client() as client:
            response = client.post("/orchestrate", json={
                "subject_id": "matter-1", "query": MEMO_QUERY,
            })
            body = response.json()
            fetched = client.get(f"/orchestrations/{body['id']}")
            listed = client.get("/subjects/matter-1/orchestrations")
            tasks = client.get("/subjects/matter-1/tasks")

        assert response.status_code == 200
        assert body["status"] == "completed"
        assert [a["capability_id"] for a in body["agents"]] == ["research", "brief-writing"]
        assert body["agents"][1]["dependencies"] == ["research"]
        assert body["results"]["brief-writing"]["result"] == "brief-writing answer"
        assert fetched.json()["status"] == "completed"
        assert [p["id"] for p in listed.json()] == [body["id"]]
        assert {t["status"] for t in tasks.json()} == {"completed"}

    def test_capability_failure_is_502(self):
        with _client([
            StaticCapability(CapabilityId.RESEARCH, fail="provider down"),
            StaticCapability(CapabilityId.BRIEF_WRITING),
        ]) as client:
            response = client.post("/orchestrate", json={
                "subject_id": "matter-1", "query": MEMO_QUERY,
            })
            detail = response.json()["detail"]
            plan = client.get(f"/orchestrations/{detail['plan_id']}").json()

        assert response.status_code == 502
        assert detail["capability_id"] == "research"
        assert detail["error"] == "provider down"
        assert plan["status"] == "failed"

    def test_validation(self):
        with _client() as client:
            response = client.post("/orchestrate", json={"subject_id": "m", "query": "hi"})
        assert response.status_code == 422

    def test_unknown_plan(self):
        with _client() as client:
            assert client.get("/orchestrations/missing").status_code == 404

    def test_cancel_is_always_200(self):
        with _client() as client:
            plan_id = client.post("/orchestrate", json={
                "subject_id": "matter-1", "query": "Find cases on implied warranty",
            }).json()["id"]
            finished = client.post(f"/orchestrations/{plan_id}/cancel")
            unknown = client.post("/orchestrations/missing/cancel")

        assert finished.status_code == 200
        assert finished.json() == {
            "plan_id": plan_id,
            "cancelled": False,
            "reason": "not cancellable: plan is completed",
        }
        assert unknown.status_code == 200
        assert unknown.json()["reason"] == "not found"


# ---------------------------------------------------------------------------
# Test: Tasks
# ---------------------------------------------------------------------------


class TestTasks:
    def test_lifecycle(self):
        with _client() as client:
            created = client.post("/tasks", json={
                "subject_id": "matter-1", "capability_id": "Contract",
                "query": "Review the indemnity clause",
            })
            task_id = created.json()["id"]
            executed = client.post(f"/tasks/{task_id}/execute")
            again = client.post(f"/tasks/{task_id}/execute")
            cancel = client.post(f"/tasks/{task_id}/cancel")
            fetched = client.get(f"/tasks/{task_id}")

        assert created.status_code == 201
        assert created.json()["status"] == "pending"
        assert created.json()["capability_id"] == "contract"
        assert executed.status_code == 200
        assert executed.json()["status"] == "completed"
        assert executed.json()["output"]["result"] == "contract answer"
        assert again.status_code == 409
        assert cancel.status_code == 409
        assert fetched.json()["status"] == "completed"

    def test_cancel_pending(self):
        with _client() as client:
            task_id = client.post("/tasks", json={
                "subject_id": "matter-1", "capability_id": "research", "query": "Find cases",
            }).json()["id"]
            response = client.post(f"/tasks/{task_id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

    def test_unknown_capability(self):
        with _client() as client:
            response = client.post("/tasks", json={
                "subject_id": "matter-1", "capability_id": "astrology", "query": "Stars",
            })
        assert response.status_code == 422

    def test_unregistered_capability(self):
        with _client() as client:
            response = client.post("/tasks", json={
                "subject_id": "matter-1", "capability_id": "timeline", "query": "Appeal",
            })
        assert response.status_code == 422

    def test_unknown_task(self):
        with _client() as client:
            assert client.get("/tasks/missing").status_code == 404
            assert client.post("/tasks/missing/execute").status_code == 404
            assert client.post("/tasks/missing/cancel").status_code == 404


# ---------------------------------------------------------------------------
# Test: Chat (Server-Sent Events)
# ---------------------------------------------------------------------------


class TestChat:
    def test_event_stream(self):
        with _client() as client:
            response = client.post("/chat", json={
                "query": "Must a landlord mitigate damages?",
                "history": [{"role": "user", "content": "Earlier question"}],
            })

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        frames = _frames(response.text)
        assert [f["type"] for f in frames] == [
            "progress", "progress", "sources", "response", "response", "end",
        ]
        assert frames[2]["data"][0]["metadata"]["url"] == "https://law.example/parker"
        assert frames[3]["data"] == "Mitigation "

    def test_unknown_focus_mode(self):
        with _client() as client:
            response = client.post("/chat", json={"query": "q", "focus_mode": "astrology"})
        assert response.status_code == 422

    def test_missing_configuration_is_503(self):
        def unconfigured():
            raise ValueError("OPENAI_API_KEY is required")

        with _client(pipeline_factory=unconfigured) as client:
            response = client.post("/chat", json={"query": "q"})

        assert response.status_code == 503
        assert "OPENAI_API_KEY" in response.json()["detail"]
