# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery application configuration
#   - tasks.py: train_agent, the training job task
#
# Acquisition (parsing, crawling, transcription) and embedding are slow and
# network-bound, so POST /train only queues the job and returns its id.
# =============================================================================
