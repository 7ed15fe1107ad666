# =============================================================================
# API Dependencies — FastAPI Dependency Injection
# =============================================================================
#
# Every collaborator a route needs is resolved through Depends(), so tests
# can swap in fakes with app.dependency_overrides:
#
#   app.dependency_overrides[get_store] = lambda: fake_store
#
#   get_store()              → KnowledgeStore (pgvector or Chroma)
#   get_provider()           → ProviderClient (shared credential pool)
#   get_job_repository()     → JobRepository
#   get_profile_repository() → ProfileRepository
#   get_config()             → process-wide RetrievalConfig
# =============================================================================

from __future__ import annotations

import logging

from fastapi import HTTPException

from agentkb.services.jobs import JobRepository, SqlJobRepository
from agentkb.services.knowledge_store import KnowledgeStore, get_knowledge_store
from agentkb.services.profiles import ProfileRepository, SqlProfileRepository
from agentkb.services.provider import NoCredentialsError, ProviderClient, get_provider_client
from agentkb.services.retrieval import RetrievalConfig, get_retrieval_config

logger = logging.getLogger(__name__)

_jobs = SqlJobRepository()
_profiles = SqlProfileRepository()


def get_store() -> KnowledgeStore:
    return get_knowledge_store()


def get_provider() -> ProviderClient:
    """Provider client, or 503 when no credentials are configured."""
    try:
        return get_provider_client()
    except NoCredentialsError as exc:
        logger.error("Provider unavailable: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def get_job_repository() -> JobRepository:
    return _jobs


def get_profile_repository() -> ProfileRepository:
    return _profiles


def get_config() -> RetrievalConfig:
    return get_retrieval_config()
