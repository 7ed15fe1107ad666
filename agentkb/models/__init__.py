# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the API, kept apart from the ORM models in
# agentkb/db/models.py. Embedding vectors never appear in a response.
# =============================================================================
