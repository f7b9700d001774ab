# =============================================================================
# Legal Research Assistant
# =============================================================================
# Plans and runs legal-work capabilities (research, brief writing, contract
# review, discovery, timelines) for a matter, and answers research questions
# through a streamed retrieve → rerank → answer pipeline.
#
# Package structure:
#   app/
#   ├── api/          → FastAPI route handlers (orchestrate, tasks, chat)
#   ├── agents/       → Planning graph (intent → selection → dependency
#   │                    order), orchestration engine, answer pipeline
#   ├── db/           → Async engine and ORM models for tasks and plans
#   ├── models/       → Pydantic V2 request/response schemas
#   └── services/     → LLM providers, embeddings, web search, link
#                        fetching, local chunk stores, rerank, task store
# =============================================================================
