# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - train.py: queue training jobs and poll their status
#   - ask.py: question answering and runtime retrieval tuning
#   - agents.py: agent profiles, knowledge stats and purge
#   - deps.py: dependency providers (overridable in tests)
# =============================================================================
