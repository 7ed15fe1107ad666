# =============================================================================
# Unit Tests — Celery Training Task
# =============================================================================
#
# The task body is called directly (Celery's eager `.run`), with the job
# repository, store and provider factories patched to in-memory fakes.
# =============================================================================

from __future__ import annotations

from unittest.mock import patch

from agentkb.config import settings
from agentkb.db.models import JobStatus
from agentkb.services.provider import NoCredentialsError
from agentkb.services.sources import TrainingRequest
from agentkb.workers import tasks


def _patched(store, provider, jobs, provider_error=None):
    provider_factory = (
        patch.object(tasks, "get_provider_client", side_effect=provider_error)
        if provider_error is not None
        else patch.object(tasks, "get_provider_client", return_value=provider)
    )
    return (
        patch.object(tasks, "SqlJobRepository", return_value=jobs),
        patch.object(tasks, "get_knowledge_store", return_value=store),
        provider_factory,
    )


class TestTrainAgentTask:
    def test_runs_job_and_cleans_uploads(self, store, provider, jobs, tmp_path, monkeypatch):
        monkeypatch.setattr(settings, "upload_dir", str(tmp_path))
        (tmp_path / "job-1").mkdir()
        (tmp_path / "job-1" / "0_notes.txt").write_text("unused")
        jobs.add_queued("job-1", "bot")
        payload = TrainingRequest(agent_id="bot", text="We open at 9am.").to_payload()

        repo_patch, store_patch, provider_patch = _patched(store, provider, jobs)
        with repo_patch, store_patch, provider_patch:
            result = tasks.train_agent.run("job-1", payload)

        assert result["job_id"] == "job-1"
        assert jobs.jobs["job-1"]["status"] == JobStatus.COMPLETED
        assert [r.text for r in store.rows] == ["We open at 9am."]
        assert not (tmp_path / "job-1").exists()

    def test_missing_credentials_fail_the_job(self, store, provider, jobs, tmp_path, monkeypatch):
        monkeypatch.setattr(settings, "upload_dir", str(tmp_path))
        jobs.add_queued("job-2", "bot")
        payload = TrainingRequest(agent_id="bot", text="hello").to_payload()

        repo_patch, store_patch, provider_patch = _patched(
            store, provider, jobs, provider_error=NoCredentialsError("no keys"),
        )
        with repo_patch, store_patch, provider_patch:
            tasks.train_agent.run("job-2", payload)

        assert jobs.jobs["job-2"]["status"] == JobStatus.FAILED
        assert jobs.jobs["job-2"]["error"] == {"error": "no keys"}
        assert store.rows == []
