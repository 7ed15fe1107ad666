# =============================================================================
# Database Package
# =============================================================================
# Async engine for FastAPI, lazy sync engine for Celery workers, and the ORM
# models: KnowledgeChunk, TrainingJob, AgentProfile.
# =============================================================================
