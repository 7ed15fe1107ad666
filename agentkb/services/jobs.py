# =============================================================================
# Training Job Records — Forward-Only State Machine
# =============================================================================
#
#   queued ──▶ processing ──▶ completed
#     │            │
#     └────────────┴────────▶ failed
#
# Transitions are enforced in the UPDATE itself
# (`WHERE status IN <allowed predecessors>`), so a late or duplicated write
# from a redelivered Celery task can never move a job backwards or rewrite a
# terminal state. Progress is only ever raised (GREATEST), and only while
# the job is processing.
#
# The API side (create / get) is async; the worker side (transitions and
# progress) is sync, matching the two database engines.
# =============================================================================

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import func, insert, select, update

from agentkb.db.engine import async_session_factory, get_sync_session
from agentkb.db.models import ALLOWED_PREDECESSORS, JobStatus, TrainingJob

logger = logging.getLogger(__name__)


class InvalidTransitionError(RuntimeError):
    """Raised when a job is asked to move to a status it cannot reach."""

    def __init__(self, job_id: str, target: JobStatus, current: JobStatus | None = None):
        self.job_id = job_id
        self.target = target
        self.current = current
        super().__init__(
            f"Job {job_id} cannot move to {target.value}"
            + (f" from {current.value}" if current is not None else "")
        )


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class JobCounters:
    """Snapshot of the per-chunk counters written after every chunk."""

    total_chunks: int = 0
    chunks_processed: int = 0
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    progress: int = 0

    def as_values(self) -> dict:
        return {
            "total_chunks": self.total_chunks,
            "chunks_processed": self.chunks_processed,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "skipped_count": self.skipped_count,
        }


class JobRepository(Protocol):
    """Persistence for training jobs."""

    async def create(
        self, job_id: str, agent_id: str, file_names: list[str], used_files: bool,
    ) -> dict:
        ...

    async def get(self, job_id: str) -> dict | None:
        ...

    async def attach_task(self, job_id: str, task_id: str) -> None:
        ...

    def start(self, job_id: str) -> None:
        """queued → processing. Raises InvalidTransitionError otherwise."""
        ...

    def update_progress(self, job_id: str, counters: JobCounters) -> None:
        ...

    def complete(self, job_id: str, result: dict, counters: JobCounters) -> None:
        ...

    def fail(self, job_id: str, error: dict, counters: JobCounters | None = None) -> None:
        ...


# ---------------------------------------------------------------------------
# SQL Implementation
# ---------------------------------------------------------------------------


class SqlJobRepository:
    """Job records in the `training_jobs` table."""

    async def create(
        self, job_id: str, agent_id: str, file_names: list[str], used_files: bool,
    ) -> dict:
        async with async_session_factory() as session:
            job = TrainingJob(
                job_id=job_id,
                agent_id=agent_id,
                status=JobStatus.QUEUED,
                progress=0,
                file_names=list(file_names),
                used_files=used_files,
            )
            session.add(job)
            await session.commit()
            await session.refresh(job)
            return job_to_dict(job)

    async def get(self, job_id: str) -> dict | None:
        async with async_session_factory() as session:
            result = await session.execute(
                select(TrainingJob).where(TrainingJob.job_id == job_id)
            )
            job = result.scalar_one_or_none()
            return job_to_dict(job) if job is not None else None

    async def attach_task(self, job_id: str, task_id: str) -> None:
        async with async_session_factory() as session:
            await session.execute(
                update(TrainingJob)
                .where(TrainingJob.job_id == job_id)
                .values(celery_task_id=task_id)
            )
            await session.commit()

    def start(self, job_id: str) -> None:
        self._transition(job_id, JobStatus.PROCESSING, {"progress": 0})

    def update_progress(self, job_id: str, counters: JobCounters) -> None:
        with get_sync_session() as session:
            session.execute(
                update(TrainingJob)
                .where(
                    TrainingJob.job_id == job_id,
                    TrainingJob.status == JobStatus.PROCESSING,
                )
                .values(
                    progress=func.greatest(TrainingJob.progress, counters.progress),
                    **counters.as_values(),
                )
            )

    def complete(self, job_id: str, result: dict, counters: JobCounters) -> None:
        self._transition(
            job_id,
            JobStatus.COMPLETED,
            {"result": result, "error": None, "progress": 100, **counters.as_values()},
        )

    def fail(self, job_id: str, error: dict, counters: JobCounters | None = None) -> None:
        values: dict = {"error": error, "result": None}
        if counters is not None:
            values.update(counters.as_values())
        self._transition(job_id, JobStatus.FAILED, values)

    def _transition(self, job_id: str, target: JobStatus, values: dict) -> None:
        with get_sync_session() as session:
            result = session.execute(
                update(TrainingJob)
                .where(
                    TrainingJob.job_id == job_id,
                    TrainingJob.status.in_(ALLOWED_PREDECESSORS[target]),
                )
                .values(status=target, **values)
            )
            if result.rowcount == 0:
                current = session.execute(
                    select(TrainingJob.status).where(TrainingJob.job_id == job_id)
                ).scalar_one_or_none()
                raise InvalidTransitionError(job_id, target, current)

        logger.info("[%s] Job status → %s", job_id, target.value)


def job_to_dict(job: TrainingJob) -> dict:
    """Public view of a job record, as served by GET /train/status."""
    return {
        "job_id": job.job_id,
        "agent_id": job.agent_id,
        "status": job.status.value if isinstance(job.status, JobStatus) else job.status,
        "progress": job.progress,
        "error": job.error,
        "result": job.result,
        "chunks_processed": job.chunks_processed,
        "total_chunks": job.total_chunks,
        "success_count": job.success_count,
        "error_count": job.error_count,
        "skipped_count": job.skipped_count,
        "file_names": list(job.file_names or []),
        "used_files": job.used_files,
        "created_at": job.created_at,
    }


# ---------------------------------------------------------------------------
# Progress Tracker
# ---------------------------------------------------------------------------


class JobProgress:
    """
    Thread-safe per-chunk counters for one running job.

    Every record_*() call counts exactly one processed chunk, recomputes
    progress as round(processed / total * 100) and persists a snapshot.
    Snapshots are written under the lock so progress writes stay ordered
    even with a worker pool.
    """

    def __init__(self, repo: JobRepository, job_id: str, total_chunks: int) -> None:
        self._repo = repo
        self._job_id = job_id
        self._lock = threading.Lock()
        self._counters = JobCounters(total_chunks=total_chunks)

    def record_success(self) -> None:
        self._record("success_count")

    def record_error(self) -> None:
        """An embedded-with-fallback chunk: stored, but counted as an error."""
        self._record("error_count")

    def record_skip(self) -> None:
        self._record("skipped_count")

    def reclassify_as_skipped(self, count: int) -> None:
        """Move `count` stored chunks to skipped after a lost insert race."""
        if count <= 0:
            return
        with self._lock:
            moved = min(count, self._counters.success_count)
            self._counters.success_count -= moved
            self._counters.skipped_count += moved

    def snapshot(self) -> JobCounters:
        with self._lock:
            return JobCounters(**vars(self._counters))

    def _record(self, field_name: str) -> None:
        with self._lock:
            counters = self._counters
            if counters.chunks_processed >= counters.total_chunks:
                raise RuntimeError(
                    f"Job {self._job_id} recorded more chunks than it has"
                )
            counters.chunks_processed += 1
            setattr(counters, field_name, getattr(counters, field_name) + 1)
            counters.progress = max(
                counters.progress,
                round(counters.chunks_processed / counters.total_chunks * 100),
            )
            self._repo.update_progress(self._job_id, JobCounters(**vars(counters)))
