# =============================================================================
# Database Package
# =============================================================================
# Provides the async SQLAlchemy engine and ORM models.
#
# Key exports:
#   - Base: SQLAlchemy declarative base for ORM models
#   - get_session_factory: async_sessionmaker bound to the configured engine
#   - AgentTaskRecord, OrchestrationRecord: capability tasks and plan snapshots
#   - init_models: create tables on startup (and in tests)
# =============================================================================
