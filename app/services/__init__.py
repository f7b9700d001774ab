# =============================================================================
# Services Package — Business Logic
# =============================================================================
# Contains the core business logic, separated from API handlers:
#   - llm.py: Multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#   - embedder.py: OpenAI embedding generation (batch processing)
#   - web_search.py: Search provider chain (SearXNG, Google, Brave)
#   - documents.py: Fetch user-supplied links and extract page text
#   - vectorstore.py: Local chunk stores (uploaded JSON files, Chroma)
#   - rerank.py: Similarity scoring and filtering per optimization mode
#   - cancellation.py: Cooperative cancellation tokens
#   - task_store.py: Task and plan persistence (in-memory, SQLAlchemy)
# =============================================================================
