# =============================================================================
# Celery Task Definitions — Agent Training Pipeline
# =============================================================================
#
# `train_agent` runs one queued training job:
#   1. Rebuild the TrainingRequest from its JSON payload
#   2. Wire the knowledge store, provider client and job repository
#   3. Hand over to IngestionEngine.run(), which owns every status transition
#   4. Remove the job's upload directory
#
# IMPORTANT: Celery workers are SYNCHRONOUS.
# - Do NOT use `async/await` in Celery tasks
# - The job repository's sync methods use the psycopg2 engine
#
# No automatic retries. Jobs only move forward (queued → processing →
# completed/failed), so a retried task would find its job already out of
# "queued" and do nothing. Provider hiccups are handled per call inside
# ProviderClient instead.
# =============================================================================

import logging
import shutil
from pathlib import Path

from agentkb.config import settings
from agentkb.services.ingestion import IngestionEngine
from agentkb.services.jobs import InvalidTransitionError, SqlJobRepository
from agentkb.services.knowledge_store import get_knowledge_store
from agentkb.services.provider import NoCredentialsError, get_provider_client
from agentkb.services.sources import SourceAcquirer, TrainingRequest
from agentkb.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def cleanup_uploads(job_id: str) -> None:
    job_dir = Path(settings.upload_dir) / job_id
    if job_dir.is_dir():
        shutil.rmtree(job_dir, ignore_errors=True)
        logger.debug("[%s] Removed upload directory %s", job_id, job_dir)


@celery_app.task(bind=True, name="train_agent", max_retries=0)
def train_agent(self, job_id: str, payload: dict) -> dict:
    """
    Execute a training job in the worker.

    Args:
        self: Celery task instance (bound task, provides self.request.id).
        job_id: Training job id created by POST /train.
        payload: TrainingRequest.to_payload() output.

    Returns:
        dict with the job id and task id. The outcome itself lives in the
        job record, not in the Celery result.
    """
    task_id = self.request.id
    logger.info("[%s] Training task started: task_id=%s", job_id, task_id)

    jobs = SqlJobRepository()
    try:
        request = TrainingRequest.from_payload(payload)
        try:
            provider = get_provider_client()
        except NoCredentialsError as exc:
            logger.error("[%s] %s", job_id, exc)
            try:
                jobs.fail(job_id, {"error": str(exc)})
            except InvalidTransitionError as transition_error:
                logger.warning("[%s] %s", job_id, transition_error)
            return {"job_id": job_id, "task_id": task_id}

        engine = IngestionEngine(
            store=get_knowledge_store(),
            provider=provider,
            jobs=jobs,
            acquirer=SourceAcquirer(),
        )
        engine.run(job_id, request)
    finally:
        cleanup_uploads(job_id)

    logger.info("[%s] Training task finished: task_id=%s", job_id, task_id)
    return {"job_id": job_id, "task_id": task_id}
