# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Training jobs run outside the request path:
#   POST /train → Redis (db 0) → worker: acquire → chunk → embed → store
#
# The API only writes the queued job row and dispatches the task; the
# worker owns every later transition of that row. Celery's own result
# backend (Redis db 1) is configured but the job table is the source of
# truth for status polling.
# =============================================================================

from celery import Celery

from agentkb.config import settings

celery_app = Celery(
    "agentkb.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # Task payloads are plain dicts (TrainingRequest.to_payload()).
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    # Website crawls and long media transcriptions need more headroom
    # than a single document parse.
    task_soft_time_limit=1800,
    task_time_limit=2100,

    # --- Results ---
    result_expires=3600,

    # --- Task Discovery ---
    include=["agentkb.workers.tasks"],
)
