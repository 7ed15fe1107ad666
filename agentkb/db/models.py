# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────────────────────┐   ┌──────────────────────────────┐
# │  knowledge_chunks            │   │  training_jobs               │
# ├──────────────────────────────┤   ├──────────────────────────────┤
# │ id (PK)                      │   │ id (PK)                      │
# │ agent_id                     │   │ job_id (unique)              │
# │ text                         │   │ agent_id                     │
# │ embedding (vector(768))      │   │ status                       │
# │ source                       │   │ progress                     │
# │ source_url ('' when absent)  │   │ total_chunks                 │
# │ source_metadata (jsonb)      │   │ chunks_processed             │
# │ chunk_index                  │   │ success/error/skipped_count  │
# │ chunk_metadata (jsonb)       │   │ error (jsonb) / result(jsonb)│
# │ content_hash                 │   │ file_names, used_files       │
# │ content_version              │   │ celery_task_id               │
# │ created_at                   │   │ created_at / updated_at      │
# └──────────────────────────────┘   └──────────────────────────────┘
#
#                 ┌──────────────────────────────┐
#                 │  agent_profiles              │
#                 ├──────────────────────────────┤
#                 │ agent_id (PK)                │
#                 │ name, role, tone             │
#                 │ do_not_answer_from_general_  │
#                 │   knowledge                  │
#                 └──────────────────────────────┘
#
# Chunks and jobs are only linked by agent_id: the agent is a namespace, not
# a row. A chunk is never updated in place; changed content is a new row with
# a higher content_version.
# =============================================================================

import enum
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from agentkb.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for every ORM model."""

    pass


class KnowledgeSource(str, enum.Enum):
    """Where a chunk of knowledge came from."""

    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    WEBSITE = "website"
    YOUTUBE = "youtube"


class JobStatus(str, enum.Enum):
    """
    Training job lifecycle.

    State machine (forward only):
        QUEUED → PROCESSING → COMPLETED
                            → FAILED

    QUEUED may also jump straight to FAILED when the worker dies before
    picking the job up.
    """

    QUEUED = "queued"            # Accepted, waiting for a Celery worker
    PROCESSING = "processing"    # Acquiring, chunking, embedding
    COMPLETED = "completed"      # Chunks stored (or all duplicates)
    FAILED = "failed"            # See `error` for the structured cause

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Statuses a job may be in immediately before entering the key status.
ALLOWED_PREDECESSORS: dict[JobStatus, tuple[JobStatus, ...]] = {
    JobStatus.QUEUED: (),
    JobStatus.PROCESSING: (JobStatus.QUEUED,),
    JobStatus.COMPLETED: (JobStatus.PROCESSING,),
    JobStatus.FAILED: (JobStatus.QUEUED, JobStatus.PROCESSING),
}


class KnowledgeChunk(Base):
    """
    One unit of trained content with its embedding and provenance.

    Deduplication key: (agent_id, content_hash, source_url). source_url is
    stored as an empty string when the ingestion had no URL so the unique
    index also covers URL-less content.
    """

    __tablename__ = "knowledge_chunks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    agent_id: Mapped[str] = mapped_column(String(100), nullable=False)

    text: Mapped[str] = mapped_column(Text, nullable=False)

    embedding: Mapped[list[float]] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=False,
    )

    source: Mapped[KnowledgeSource] = mapped_column(
        Enum(KnowledgeSource),
        nullable=False,
        default=KnowledgeSource.DOCUMENT,
    )
    source_url: Mapped[str] = mapped_column(
        String(2048), nullable=False, default="",
    )
    source_metadata: Mapped[dict | None] = mapped_column(
        JSONB, nullable=True, default=dict,
    )

    # Position within the chunking run that produced this row (0-indexed)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # total_chunks, chunk_size, start_position, end_position, section,
    # file_name, page_number
    chunk_metadata: Mapped[dict] = mapped_column(
        JSONB, nullable=False, default=dict,
    )

    # SHA-256 of the trimmed text
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    content_version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<KnowledgeChunk(id={self.id}, agent={self.agent_id}, "
            f"index={self.chunk_index}, v={self.content_version})>"
        )


class TrainingJob(Base):
    """
    Pollable record of one ingestion request.

    Counter invariant, maintained by the ingestion engine:
        success_count + error_count + skipped_count
            <= chunks_processed <= total_chunks
    """

    __tablename__ = "training_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    job_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    agent_id: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus),
        nullable=False,
        default=JobStatus.QUEUED,
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    chunks_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    error: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    file_names: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    used_files: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    celery_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<TrainingJob(job_id={self.job_id}, agent={self.agent_id}, "
            f"status={self.status}, progress={self.progress})>"
        )


class AgentProfile(Base):
    """Optional persona used to shape generated replies for an agent."""

    __tablename__ = "agent_profiles"

    agent_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    role: Mapped[str | None] = mapped_column(String(500), nullable=True)
    tone: Mapped[str | None] = mapped_column(String(100), nullable=True)
    do_not_answer_from_general_knowledge: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# =============================================================================
# Database Indexes
# =============================================================================

# HNSW index for cosine vector search
chunk_embedding_idx = Index(
    "idx_knowledge_chunk_embedding_hnsw",
    KnowledgeChunk.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

# Deduplication: at most one chunk per (agent, hash, url)
chunk_dedup_idx = Index(
    "uq_knowledge_chunk_agent_hash_url",
    KnowledgeChunk.agent_id,
    KnowledgeChunk.content_hash,
    KnowledgeChunk.source_url,
    unique=True,
)

# Version lookups scoped by agent (and url)
chunk_version_idx = Index(
    "idx_knowledge_chunk_agent_url_version",
    KnowledgeChunk.agent_id,
    KnowledgeChunk.source_url,
    KnowledgeChunk.content_version,
)

chunk_agent_source_idx = Index(
    "idx_knowledge_chunk_agent_source",
    KnowledgeChunk.agent_id,
    KnowledgeChunk.source,
)

job_agent_idx = Index(
    "idx_training_job_agent_created",
    TrainingJob.agent_id,
    TrainingJob.created_at,
)
