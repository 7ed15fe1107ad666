# =============================================================================
# Ingestion Job Engine — Acquire → Chunk → Version → Embed → Store
# =============================================================================
#
# INGESTION PIPELINE (one training job):
#   1. queued → processing
#   2. Acquire text through SourceAcquirer (failure → failed, structured error)
#   3. Chunk with chunk_text()
#   4. Per chunk, in order:
#        fingerprint → duplicate in store or earlier in this batch? → skip
#        resolve version → embed (provider error → zero vector, error count)
#        → pending
#      counters and progress are persisted after every chunk
#   5. Nothing pending:
#        every chunk skipped → completed ("already trained")
#        otherwise           → failed ("Failed to process any chunks")
#   6. Bulk insert pending chunks → completed with a summary result
#
# run() never raises: any unexpected exception becomes a failed job whose
# error carries the message. The job record is the only error channel.
#
# With chunk_workers > 1 the fingerprint/version/embed step runs on a bounded
# thread pool. Outcomes are consumed in chunk order, so progress stays
# monotonic and pending chunks keep their chunk_index order.
# =============================================================================

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from agentkb.config import settings
from agentkb.services.chunker import TextChunk, chunk_text
from agentkb.services.jobs import InvalidTransitionError, JobProgress, JobRepository
from agentkb.services.knowledge_store import KnowledgeStore, NewChunk
from agentkb.services.provider import ProviderClient
from agentkb.services.sources import AcquisitionError, SourceAcquirer, TrainingRequest
from agentkb.services.versioning import check_content

logger = logging.getLogger(__name__)

ALREADY_TRAINED_MESSAGE = "All content was already trained (duplicates skipped)"
NOTHING_PROCESSED_MESSAGE = "Failed to process any chunks"


# ---------------------------------------------------------------------------
# Per-Chunk Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChunkStored:
    chunk: NewChunk
    embedding_failed: bool = False


@dataclass(frozen=True)
class ChunkSkipped:
    content_hash: str


@dataclass(frozen=True)
class ChunkErrored:
    error: str


ChunkOutcome = ChunkStored | ChunkSkipped | ChunkErrored


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class IngestionEngine:
    """Runs training jobs against a store, a provider and a job repository."""

    def __init__(
        self,
        store: KnowledgeStore,
        provider: ProviderClient,
        jobs: JobRepository,
        acquirer: SourceAcquirer | None = None,
        max_length: int | None = None,
        overlap: int | None = None,
        chunk_workers: int | None = None,
        chunker: Callable[..., list[TextChunk]] = chunk_text,
    ) -> None:
        self.store = store
        self.provider = provider
        self.jobs = jobs
        self.acquirer = acquirer or SourceAcquirer()
        self.max_length = max_length or settings.chunk_max_length
        self.overlap = overlap if overlap is not None else settings.chunk_overlap
        self.chunk_workers = max(1, chunk_workers or settings.chunk_workers)
        self._chunker = chunker

    def run(self, job_id: str, request: TrainingRequest) -> None:
        """Execute one job end to end. Never raises."""
        progress: JobProgress | None = None
        try:
            self.jobs.start(job_id)
        except InvalidTransitionError as exc:
            # Redelivered task for a job that already moved on
            logger.warning("[%s] Not starting job: %s", job_id, exc)
            return
        except Exception as exc:
            logger.exception("[%s] Could not mark job as processing", job_id)
            self._fail(job_id, {"error": f"Could not start job: {exc}"})
            return

        try:
            logger.info(
                "[%s] Step 1/4: Acquiring %s for agent=%s",
                job_id, request.source, request.agent_id,
            )
            try:
                acquired = self.acquirer.acquire(request)
            except AcquisitionError as exc:
                logger.warning("[%s] Acquisition failed: %s", job_id, exc)
                self._fail(job_id, exc.to_dict())
                return

            logger.info(
                "[%s] Step 2/4: Chunking %d characters (max_length=%d, overlap=%d)",
                job_id, len(acquired.text), self.max_length, self.overlap,
            )
            chunks = self._chunker(acquired.text, self.max_length, self.overlap)
            if not chunks:
                self._fail(job_id, {"error": "No chunks produced from training text"})
                return

            logger.info("[%s] Step 3/4: Embedding %d chunks", job_id, len(chunks))
            progress = JobProgress(self.jobs, job_id, total_chunks=len(chunks))
            file_name = acquired.file_names[0] if acquired.used_files and acquired.file_names else None
            pending = self._process_chunks(job_id, request, chunks, file_name, progress)

            counters = progress.snapshot()
            base_result = {
                "agent_id": request.agent_id,
                "total_chunks": len(chunks),
                "file_names": acquired.file_names,
                "used_files": acquired.used_files,
                "source": request.source,
                "source_url": request.source_url,
                "source_metadata": request.source_metadata,
            }
            if acquired.warnings:
                base_result["warnings"] = acquired.warnings

            if not pending:
                if counters.skipped_count == len(chunks):
                    self.jobs.complete(job_id, {
                        **base_result,
                        "chunks_stored": 0,
                        "success_count": 0,
                        "error_count": 0,
                        "skipped_count": counters.skipped_count,
                        "message": ALREADY_TRAINED_MESSAGE,
                    }, counters)
                    logger.info("[%s] %s", job_id, ALREADY_TRAINED_MESSAGE)
                else:
                    self._fail(job_id, {"error": NOTHING_PROCESSED_MESSAGE}, progress)
                return

            logger.info("[%s] Step 4/4: Storing %d chunks", job_id, len(pending))
            stored = self.store.add_chunks(pending)
            progress.reclassify_as_skipped(len(pending) - stored)
            counters = progress.snapshot()

            result = {
                **base_result,
                "chunks_stored": stored,
                "success_count": counters.success_count,
                "error_count": counters.error_count,
                "skipped_count": counters.skipped_count,
            }
            self.jobs.complete(job_id, result, counters)
            logger.info(
                "[%s] Ingestion complete: stored=%d skipped=%d errors=%d",
                job_id, stored, counters.skipped_count, counters.error_count,
            )

        except Exception as exc:
            logger.exception("[%s] Ingestion failed: %s", job_id, exc)
            self._fail(job_id, {"error": str(exc)}, progress)

    # -- per-chunk ----------------------------------------------------------

    def process_chunk(
        self,
        request: TrainingRequest,
        chunk: TextChunk,
        file_name: str | None = None,
    ) -> ChunkOutcome:
        """Fingerprint, version and embed one chunk."""
        check = check_content(
            self.store, request.agent_id, chunk.text, request.source_url,
        )
        if check.is_duplicate:
            return ChunkSkipped(check.content_hash)

        embedding_failed = False
        try:
            embedding = self.provider.embed(chunk.text)
        except Exception as exc:
            logger.warning(
                "Embedding chunk %d failed, storing zero vector: %s",
                chunk.chunk_index, exc,
            )
            embedding = self.provider.zero_vector()
            embedding_failed = True

        metadata = chunk.metadata
        if file_name:
            metadata["file_name"] = file_name

        return ChunkStored(
            NewChunk(
                agent_id=request.agent_id,
                text=chunk.text,
                embedding=embedding,
                source=request.source,
                content_hash=check.content_hash,
                content_version=check.version,
                chunk_index=chunk.chunk_index,
                chunk_metadata=metadata,
                source_url=request.source_url,
                source_metadata=request.source_metadata,
            ),
            embedding_failed=embedding_failed,
        )

    def _safe_process(
        self, request: TrainingRequest, chunk: TextChunk, file_name: str | None,
    ) -> ChunkOutcome:
        try:
            return self.process_chunk(request, chunk, file_name)
        except Exception as exc:
            logger.exception("Chunk %d failed: %s", chunk.chunk_index, exc)
            return ChunkErrored(str(exc))

    def _process_chunks(
        self,
        job_id: str,
        request: TrainingRequest,
        chunks: list[TextChunk],
        file_name: str | None,
        progress: JobProgress,
    ) -> list[NewChunk]:
        pending: list[NewChunk] = []
        seen_hashes: set[str] = set()
        seen_lock = threading.Lock()

        def _consume(outcome: ChunkOutcome) -> None:
            if isinstance(outcome, ChunkSkipped):
                progress.record_skip()
                return
            if isinstance(outcome, ChunkErrored):
                progress.record_error()
                return
            with seen_lock:
                if outcome.chunk.content_hash in seen_hashes:
                    progress.record_skip()
                    return
                seen_hashes.add(outcome.chunk.content_hash)
            pending.append(outcome.chunk)
            if outcome.embedding_failed:
                progress.record_error()
            else:
                progress.record_success()

        if self.chunk_workers == 1:
            for chunk in chunks:
                _consume(self._safe_process(request, chunk, file_name))
            return pending

        logger.info("[%s] Embedding with %d workers", job_id, self.chunk_workers)
        with ThreadPoolExecutor(max_workers=self.chunk_workers) as pool:
            futures = [
                pool.submit(self._safe_process, request, chunk, file_name)
                for chunk in chunks
            ]
            for future in futures:
                _consume(future.result())
        return pending

    def _fail(self, job_id: str, error: dict, progress: JobProgress | None = None) -> None:
        try:
            self.jobs.fail(job_id, error, progress.snapshot() if progress else None)
        except Exception:
            logger.exception("[%s] Could not record job failure: %s", job_id, error)
