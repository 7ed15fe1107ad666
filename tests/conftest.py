# =============================================================================
# Shared Test Fakes
# =============================================================================
#
# In-memory stand-ins for the knowledge store, job repository, provider
# client and profile repository. They follow the same protocols as the real
# implementations, so services can be exercised without PostgreSQL, Redis
# or provider credentials.
# =============================================================================

from __future__ import annotations

import hashlib
import threading

import pytest

from agentkb.db.models import ALLOWED_PREDECESSORS, JobStatus
from agentkb.services.jobs import InvalidTransitionError, JobCounters
from agentkb.services.knowledge_store import NewChunk, StoredChunk
from agentkb.services.retrieval import RetrievalConfig

DIM = 8


class FakeStore:
    """Dict-backed KnowledgeStore honouring the (agent, hash, url) uniqueness rule."""

    def __init__(self) -> None:
        self.rows: list[NewChunk] = []
        self.add_calls = 0

    # -- sync --

    def find_duplicate(self, agent_id, content_hash, source_url=None):
        for row in self.rows:
            if row.agent_id != agent_id or row.content_hash != content_hash:
                continue
            if source_url and (row.source_url or "") != source_url:
                continue
            return row.content_version
        return None

    def max_version(self, agent_id, source_url=None):
        versions = [
            r.content_version for r in self.rows
            if r.agent_id == agent_id
            and (not source_url or (r.source_url or "") == source_url)
        ]
        return max(versions, default=0)

    def add_chunks(self, chunks):
        self.add_calls += 1
        keys = {(r.agent_id, r.content_hash, r.source_url or "") for r in self.rows}
        inserted = 0
        for chunk in chunks:
            key = (chunk.agent_id, chunk.content_hash, chunk.source_url or "")
            if key in keys:
                continue
            keys.add(key)
            self.rows.append(chunk)
            inserted += 1
        return inserted

    # -- async --

    async def agent_exists(self, agent_id):
        return any(r.agent_id == agent_id for r in self.rows)

    async def vector_search(self, agent_id, embedding, k):
        from agentkb.services.retrieval import cosine_similarity

        rows = [r for r in self.rows if r.agent_id == agent_id]
        rows.sort(key=lambda r: cosine_similarity(embedding, r.embedding), reverse=True)
        return [_stored(r) for r in rows[:k]]

    async def keyword_search(self, agent_id, keywords, k):
        if not keywords:
            return []
        hits = [
            r for r in self.rows
            if r.agent_id == agent_id and any(kw in r.text.lower() for kw in keywords)
        ]
        return [_stored(r) for r in hits[:k]]

    async def delete_agent(self, agent_id):
        before = len(self.rows)
        self.rows = [r for r in self.rows if r.agent_id != agent_id]
        return before - len(self.rows)

    async def stats(self, agent_id):
        by_source: dict[str, int] = {}
        latest = 0
        for r in self.rows:
            if r.agent_id != agent_id:
                continue
            by_source[r.source] = by_source.get(r.source, 0) + 1
            latest = max(latest, r.content_version)
        return {
            "agent_id": agent_id,
            "total_chunks": sum(by_source.values()),
            "by_source": by_source,
            "latest_version": latest,
        }


def _stored(row: NewChunk) -> StoredChunk:
    return StoredChunk(
        text=row.text,
        embedding=list(row.embedding),
        source=row.source,
        source_url=row.source_url,
        chunk_index=row.chunk_index,
        content_version=row.content_version,
        chunk_metadata=dict(row.chunk_metadata),
        chunk_id=f"{row.agent_id}:{row.content_hash}",
    )


class FakeJobRepo:
    """Job records in a dict, with the same forward-only transition rules."""

    def __init__(self) -> None:
        self.jobs: dict[str, dict] = {}
        self.progress_writes: list[JobCounters] = []
        self._lock = threading.Lock()

    def add_queued(self, job_id: str, agent_id: str = "agent-1") -> None:
        self.jobs[job_id] = {
            "job_id": job_id,
            "agent_id": agent_id,
            "status": JobStatus.QUEUED,
            "progress": 0,
            "error": None,
            "result": None,
            "chunks_processed": 0,
            "total_chunks": 0,
            "success_count": 0,
            "error_count": 0,
            "skipped_count": 0,
            "file_names": [],
            "used_files": False,
            "created_at": None,
            "celery_task_id": None,
        }

    async def create(self, job_id, agent_id, file_names, used_files):
        self.add_queued(job_id, agent_id)
        self.jobs[job_id].update(file_names=list(file_names), used_files=used_files)
        return self.public(job_id)

    async def get(self, job_id):
        return self.public(job_id) if job_id in self.jobs else None

    async def attach_task(self, job_id, task_id):
        self.jobs[job_id]["celery_task_id"] = task_id

    def start(self, job_id):
        self._transition(job_id, JobStatus.PROCESSING, {"progress": 0})

    def update_progress(self, job_id, counters):
        with self._lock:
            job = self.jobs[job_id]
            if job["status"] != JobStatus.PROCESSING:
                return
            self.progress_writes.append(counters)
            job.update(counters.as_values())
            job["progress"] = max(job["progress"], counters.progress)

    def complete(self, job_id, result, counters):
        self._transition(
            job_id, JobStatus.COMPLETED,
            {"result": result, "error": None, "progress": 100, **counters.as_values()},
        )

    def fail(self, job_id, error, counters=None):
        values = {"error": error, "result": None}
        if counters is not None:
            values.update(counters.as_values())
        self._transition(job_id, JobStatus.FAILED, values)

    def _transition(self, job_id, target, values):
        with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job["status"] not in ALLOWED_PREDECESSORS[target]:
                raise InvalidTransitionError(
                    job_id, target, job["status"] if job else None,
                )
            job.update(status=target, **values)

    def public(self, job_id):
        job = dict(self.jobs[job_id])
        job["status"] = job["status"].value
        job.pop("celery_task_id", None)
        return job


class FakeProvider:
    """
    Deterministic embeddings: a text's vector depends only on its content.

    `embed_failures` lists texts whose embed() raises; `reply` is what
    generate() returns.
    """

    generation_model = "fake-model"

    def __init__(self, reply: str = "Generated answer.", dim: int = DIM) -> None:
        self.reply = reply
        self.dim = dim
        self.embed_failures: set[str] = set()
        self.embedded: list[str] = []
        self.prompts: list[str] = []
        self.vectors: dict[str, list[float]] = {}

    def embed(self, text):
        self.embedded.append(text)
        if text in self.embed_failures:
            raise RuntimeError("embedding service rejected the input")
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [b / 255.0 + 0.01 for b in digest[:self.dim]]

    def generate(self, prompt, temperature=None, max_tokens=None):
        self.prompts.append(prompt)
        return self.reply

    def zero_vector(self):
        return [0.0] * self.dim


class FakeProfiles:
    def __init__(self) -> None:
        self.profiles: dict[str, dict] = {}

    async def get(self, agent_id):
        return self.profiles.get(agent_id)

    async def upsert(self, agent_id, values):
        profile = {
            "agent_id": agent_id,
            "name": values.get("name"),
            "role": values.get("role"),
            "tone": values.get("tone"),
            "do_not_answer_from_general_knowledge": bool(
                values.get("do_not_answer_from_general_knowledge"),
            ),
        }
        self.profiles[agent_id] = profile
        return profile


class StaticAcquirer:
    """SourceAcquirer stand-in returning a fixed AcquiredText or raising."""

    def __init__(self, acquired=None, error: Exception | None = None) -> None:
        self.acquired = acquired
        self.error = error

    def acquire(self, request):
        if self.error is not None:
            raise self.error
        return self.acquired


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def jobs() -> FakeJobRepo:
    return FakeJobRepo()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def profiles() -> FakeProfiles:
    return FakeProfiles()


@pytest.fixture
def config() -> RetrievalConfig:
    return RetrievalConfig()
