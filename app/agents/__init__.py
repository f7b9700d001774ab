# =============================================================================
# Agents Package — Planning, Orchestration and the Answer Pipeline
# =============================================================================
#   - types.py: Capability ids, plans, configs, documents, stream events
#   - intent.py / selector.py: Classify a request and pick capabilities
#     (model first, keyword rules as fallback)
#   - planner.py: Dependency closure, ordering and duration estimates
#   - orchestrator.py: LangGraph planning graph + plan execution with
#     cancellation and task tracking
#   - search.py / stream.py / focus.py: Rephrase → search or fetch →
#     rerank → streamed answer, configured per focus mode
#   - analyst.py / capabilities.py: Prompt builders and the capability
#     implementations behind the registry
# =============================================================================
