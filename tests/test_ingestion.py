# =============================================================================
# Unit Tests — Ingestion Job Engine
# =============================================================================
#
# Runs IngestionEngine end to end against the in-memory fakes from
# conftest.py: job transitions, per-chunk counters, duplicate skipping,
# embedding fallbacks and failure reporting.
#
# Test groups:
#   1. Happy path and versioning
#   2. Duplicates and re-ingestion
#   3. Partial and total failures
#   4. Progress accounting (sequential and pooled)
# =============================================================================

from __future__ import annotations

import pytest

from agentkb.db.models import JobStatus
from agentkb.services.ingestion import (
    ALREADY_TRAINED_MESSAGE,
    NOTHING_PROCESSED_MESSAGE,
    IngestionEngine,
)
from agentkb.services.sources import (
    AcquiredText,
    AcquisitionError,
    SourceAcquirer,
    TrainingRequest,
)
from tests.conftest import FakeStore, StaticAcquirer

PARAGRAPHS = [
    "Our support desk is open Monday to Friday from 9am to 5pm.",
    "Refunds are processed within five business days of approval.",
    "Premium customers can reach us by phone at any time.",
    "Shipping is free for orders above fifty dollars.",
]
TEXT = "\n\n".join(PARAGRAPHS)


def _engine(store, provider, jobs, acquirer=None, workers=1) -> IngestionEngine:
    return IngestionEngine(
        store=store,
        provider=provider,
        jobs=jobs,
        acquirer=acquirer or SourceAcquirer(),
        max_length=100,
        overlap=20,
        chunk_workers=workers,
    )


def _train(engine, jobs, job_id="job-1", text=TEXT, **request_fields):
    jobs.add_queued(job_id, request_fields.get("agent_id", "agent-1"))
    request = TrainingRequest(
        agent_id=request_fields.pop("agent_id", "agent-1"),
        text=text,
        **request_fields,
    )
    engine.run(job_id, request)
    return jobs.jobs[job_id]


def _assert_counters_consistent(job):
    assert (
        job["success_count"] + job["error_count"] + job["skipped_count"]
        <= job["chunks_processed"]
        <= job["total_chunks"]
    )


# ---------------------------------------------------------------------------
# 1. Happy Path and Versioning
# ---------------------------------------------------------------------------


class TestIngestionHappyPath:
    def test_text_job_completes_and_stores_every_chunk(self, store, provider, jobs):
        job = _train(_engine(store, provider, jobs), jobs)

        assert job["status"] == JobStatus.COMPLETED
        assert job["progress"] == 100
        assert job["total_chunks"] == 4
        assert job["chunks_processed"] == 4
        assert job["success_count"] == 4
        assert job["error_count"] == 0
        assert job["skipped_count"] == 0
        assert job["result"]["chunks_stored"] == 4
        assert [r.text for r in store.rows] == PARAGRAPHS
        assert [r.chunk_index for r in store.rows] == [0, 1, 2, 3]

    def test_chunks_of_one_job_share_a_version(self, store, provider, jobs):
        _train(_engine(store, provider, jobs), jobs)
        assert {r.content_version for r in store.rows} == {1}

    def test_new_content_later_gets_next_version(self, store, provider, jobs):
        engine = _engine(store, provider, jobs)
        _train(engine, jobs, "job-1")
        _train(engine, jobs, "job-2", text="Holiday hours are 10am to 2pm.")

        newest = [r for r in store.rows if r.text.startswith("Holiday")]
        assert len(newest) == 1
        assert newest[0].content_version == 2

    def test_chunk_metadata_and_provenance_are_stored(self, store, provider, jobs):
        _train(
            _engine(store, provider, jobs), jobs,
            source_metadata={"campaign": "spring"},
        )
        first = store.rows[0]
        assert first.source == "document"
        assert first.source_metadata == {"campaign": "spring"}
        assert first.chunk_metadata["section"] == "paragraph_1"
        assert first.chunk_metadata["total_chunks"] == 4
        assert first.embedding == provider.embed(PARAGRAPHS[0])

    def test_result_carries_file_names_and_warnings(self, store, provider, jobs):
        acquired = AcquiredText(
            text=TEXT,
            file_names=["a.mp3", "b.mp3"],
            used_files=True,
            warnings=[{"warning": "Some audio files failed to transcribe"}],
        )
        job = _train(
            _engine(store, provider, jobs, StaticAcquirer(acquired)), jobs, source="audio",
        )
        assert job["status"] == JobStatus.COMPLETED
        assert job["result"]["file_names"] == ["a.mp3", "b.mp3"]
        assert job["result"]["used_files"] is True
        assert job["result"]["warnings"][0]["warning"].startswith("Some audio")
        assert store.rows[0].chunk_metadata["file_name"] == "a.mp3"


# ---------------------------------------------------------------------------
# 2. Duplicates and Re-ingestion
# ---------------------------------------------------------------------------


class TestIngestionDuplicates:
    def test_reingesting_same_text_completes_as_already_trained(self, store, provider, jobs):
        engine = _engine(store, provider, jobs)
        _train(engine, jobs, "job-1")
        embedded_before = len(provider.embedded)

        job = _train(engine, jobs, "job-2")

        assert job["status"] == JobStatus.COMPLETED
        assert job["skipped_count"] == 4
        assert job["success_count"] == 0
        assert job["result"]["message"] == ALREADY_TRAINED_MESSAGE
        assert len(store.rows) == 4
        assert store.add_calls == 1
        # Duplicates are never embedded
        assert len(provider.embedded) == embedded_before

    def test_partial_overlap_only_stores_new_chunks(self, store, provider, jobs):
        engine = _engine(store, provider, jobs)
        _train(engine, jobs, "job-1", text="\n\n".join(PARAGRAPHS[:2]))
        job = _train(engine, jobs, "job-2")

        assert job["skipped_count"] == 2
        assert job["success_count"] == 2
        assert len(store.rows) == 4

    def test_repeated_chunk_within_one_job_is_skipped(self, store, provider, jobs):
        text = "\n\n".join([PARAGRAPHS[0], PARAGRAPHS[1], PARAGRAPHS[0]])
        job = _train(_engine(store, provider, jobs), jobs, text=text)

        assert job["success_count"] == 2
        assert job["skipped_count"] == 1
        assert len(store.rows) == 2

    def test_lost_insert_race_is_reported_as_skip(self, provider, jobs):
        class RacingStore(FakeStore):
            # Duplicate check misses rows that another job writes concurrently
            def find_duplicate(self, agent_id, content_hash, source_url=None):
                return None

        racing = RacingStore()
        engine = _engine(racing, provider, jobs)
        _train(engine, jobs, "job-1")
        job = _train(engine, jobs, "job-2")

        assert job["status"] == JobStatus.COMPLETED
        assert job["result"]["chunks_stored"] == 0
        assert job["success_count"] == 0
        assert job["skipped_count"] == 4
        assert len(racing.rows) == 4
        _assert_counters_consistent(job)


# ---------------------------------------------------------------------------
# 3. Partial and Total Failures
# ---------------------------------------------------------------------------


class TestIngestionFailures:
    def test_embedding_failure_stores_zero_vector_and_counts_error(self, store, provider, jobs):
        provider.embed_failures.add(PARAGRAPHS[1])
        job = _train(_engine(store, provider, jobs), jobs)

        assert job["status"] == JobStatus.COMPLETED
        assert job["success_count"] == 3
        assert job["error_count"] == 1
        assert len(store.rows) == 4
        assert store.rows[1].embedding == provider.zero_vector()
        _assert_counters_consistent(job)

    def test_acquisition_failure_fails_job_with_structured_error(self, store, provider, jobs):
        error = AcquisitionError(
            "Failed to scrape https://example.test", source="website",
            url="https://example.test",
        )
        job = _train(
            _engine(store, provider, jobs, StaticAcquirer(error=error)), jobs,
            source="website", source_url="https://example.test",
        )
        assert job["status"] == JobStatus.FAILED
        assert job["error"] == {
            "error": "Failed to scrape https://example.test",
            "source": "website",
            "url": "https://example.test",
        }
        assert store.rows == []

    def test_empty_text_fails_job(self, store, provider, jobs):
        job = _train(_engine(store, provider, jobs), jobs, text="   ")
        assert job["status"] == JobStatus.FAILED
        assert job["error"]["error"] == "No valid training text found in input or files."

    def test_every_chunk_erroring_fails_job(self, provider, jobs):
        class BrokenLookupStore(FakeStore):
            def find_duplicate(self, agent_id, content_hash, source_url=None):
                raise RuntimeError("lookup unavailable")

        broken = BrokenLookupStore()
        job = _train(_engine(broken, provider, jobs), jobs)

        assert job["status"] == JobStatus.FAILED
        assert job["error"] == {"error": NOTHING_PROCESSED_MESSAGE}
        assert job["error_count"] == 4
        assert job["chunks_processed"] == 4

    def test_unexpected_exception_fails_job_with_message(self, provider, jobs):
        class ExplodingStore(FakeStore):
            def add_chunks(self, chunks):
                raise RuntimeError("disk full")

        job = _train(_engine(ExplodingStore(), provider, jobs), jobs)
        assert job["status"] == JobStatus.FAILED
        assert job["error"] == {"error": "disk full"}

    def test_job_not_in_queued_state_is_left_untouched(self, store, provider, jobs):
        engine = _engine(store, provider, jobs)
        _train(engine, jobs, "job-1")
        # Redelivery of the same task
        engine.run("job-1", TrainingRequest(agent_id="agent-1", text="Something new."))

        assert jobs.jobs["job-1"]["status"] == JobStatus.COMPLETED
        assert len(store.rows) == 4

    def test_start_failure_fails_the_queued_job(self, store, provider, jobs):
        class FlakyStartJobs(type(jobs)):
            def start(self, job_id):
                raise RuntimeError("lock timeout")

        flaky = FlakyStartJobs()
        job = _train(_engine(store, provider, flaky), flaky)

        assert job["status"] == JobStatus.FAILED
        assert job["error"] == {"error": "Could not start job: lock timeout"}
        assert store.rows == []

    def test_run_never_raises_when_failure_cannot_be_recorded(self, store, provider, jobs):
        class ForgetfulJobs(type(jobs)):
            def fail(self, job_id, error, counters=None):
                raise RuntimeError("database gone")

        forgetful = ForgetfulJobs()
        error = AcquisitionError("boom", source="document")
        engine = _engine(store, provider, forgetful, StaticAcquirer(error=error))
        _train(engine, forgetful)
        assert forgetful.jobs["job-1"]["status"] == JobStatus.PROCESSING


# ---------------------------------------------------------------------------
# 4. Progress Accounting
# ---------------------------------------------------------------------------


class TestIngestionProgress:
    def test_progress_is_written_after_every_chunk_and_monotonic(self, store, provider, jobs):
        _train(_engine(store, provider, jobs), jobs)

        writes = jobs.progress_writes
        assert [w.chunks_processed for w in writes] == [1, 2, 3, 4]
        assert [w.progress for w in writes] == [25, 50, 75, 100]
        for w in writes:
            assert w.success_count + w.error_count + w.skipped_count <= w.chunks_processed

    @pytest.mark.parametrize("workers", [2, 4])
    def test_worker_pool_gives_same_outcome_as_sequential(self, provider, jobs, workers):
        sequential_store, pooled_store = FakeStore(), FakeStore()
        provider.embed_failures.add(PARAGRAPHS[2])

        _train(_engine(sequential_store, provider, jobs), jobs, "job-seq")
        pooled = _train(
            _engine(pooled_store, provider, jobs, workers=workers), jobs, "job-pool",
        )

        assert pooled["status"] == JobStatus.COMPLETED
        assert pooled["success_count"] == 3
        assert pooled["error_count"] == 1
        assert [r.text for r in pooled_store.rows] == [r.text for r in sequential_store.rows]
        pool_writes = [w.progress for w in jobs.progress_writes[4:]]
        assert pool_writes == sorted(pool_writes)
