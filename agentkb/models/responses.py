# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of the JSON the API returns. Embedding vectors never leave the
# service; sources carry provenance and scores only.
#
# /ask responses are returned as plain dicts from services/answering.py
# because 200 and 404 share one shape; AskResponse documents that shape.
# =============================================================================

from datetime import datetime

from pydantic import BaseModel, Field


class CredentialPoolStatus(BaseModel):
    size: int
    cursor: int


class HealthResponse(BaseModel):
    """Response for GET /health."""

    status: str = "ok"
    version: str
    service: str
    knowledge_store: str
    credentials: CredentialPoolStatus | None = None


class TrainAcceptedResponse(BaseModel):
    """Response for POST /train (202)."""

    job_id: str = Field(description="Poll GET /train/status/{job_id} with this id")
    status: str = Field(default="queued")
    message: str = Field(
        default="Training started. Poll /train/status/{job_id} for progress.",
    )


class TrainStatusResponse(BaseModel):
    """Response for GET /train/status/{job_id}."""

    job_id: str
    agent_id: str
    status: str = Field(description="queued, processing, completed or failed")
    progress: int = Field(ge=0, le=100)
    error: dict | None = None
    result: dict | None = None
    chunks_processed: int = 0
    total_chunks: int = 0
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    file_names: list[str] = Field(default_factory=list)
    used_files: bool = False
    created_at: datetime | None = None


class SourceInfo(BaseModel):
    source: str
    source_url: str | None = None
    chunk_index: int
    confidence: float
    similarity: float


class AskMeta(BaseModel):
    tokens_used: int
    retrieval_time_ms: int
    model: str
    retrieval_strategy: str
    chunks_used: int
    chunks_searched: int
    chunks_filtered: int
    context_length: int
    sources_count: int
    average_similarity: float
    retrieval_config: dict
    sources: list[SourceInfo] = Field(default_factory=list)
    error: str | None = None


class AskResponse(BaseModel):
    """Response for POST /ask (200 and 404 share this shape)."""

    agent_id: str
    query: str
    reply: str
    confidence: float
    fallback_used: bool
    question_id: str | None = None
    agent_metadata: dict | None = None
    feedback_prompt: str | None = None
    retraining_suggested: bool | None = None
    meta: AskMeta


class RetrievalConfigResponse(BaseModel):
    """Response for GET/POST /ask/config."""

    retrieval_config: dict
    ignored: dict[str, str] = Field(default_factory=dict)
    description: dict[str, str] = Field(default_factory=dict)


class AgentProfileResponse(BaseModel):
    agent_id: str
    name: str | None = None
    role: str | None = None
    tone: str | None = None
    do_not_answer_from_general_knowledge: bool = False


class AgentStatsResponse(BaseModel):
    agent_id: str
    total_chunks: int
    by_source: dict[str, int]
    latest_version: int


class PurgeResponse(BaseModel):
    agent_id: str
    deleted: int
