# =============================================================================
# Training API — Queue Ingestion Jobs and Poll Their Status
# =============================================================================
#
# ENDPOINTS:
#   POST /train                  — validate, save uploads, queue a job (202)
#   GET  /train/status/{job_id}  — job record: status, progress, counters
#
# Validation happens synchronously and rejects with 400 {error, field}.
# Everything after that (parsing, scraping, transcription, embedding) runs
# in the Celery task; failures there only show up in the job record.
# =============================================================================

import asyncio
import json
import logging
import re
import uuid
from pathlib import Path

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from agentkb.api.deps import get_job_repository
from agentkb.config import settings
from agentkb.models.responses import TrainAcceptedResponse, TrainStatusResponse
from agentkb.services.jobs import JobRepository
from agentkb.services.sources import (
    DEFAULT_SOURCE,
    TrainingRequest,
    TrainingValidationError,
    UploadedFile,
    validate_training_request,
)
from agentkb.workers.tasks import cleanup_uploads, train_agent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Training"])

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


def _bad_request(message: str, field: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"error": message, "field": field})


def _parse_source_metadata(raw: str | None) -> dict | None:
    if raw is None or not raw.strip():
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise _bad_request(f"source_metadata must be valid JSON: {exc.msg}", "source_metadata") from exc
    if not isinstance(value, dict):
        raise _bad_request("source_metadata must be a JSON object", "source_metadata")
    return value


async def _save_uploads(job_id: str, files: list[UploadFile]) -> list[UploadedFile]:
    """Write uploads to <upload_dir>/<job_id>/ so the worker can read them."""
    if not files:
        return []
    job_dir = Path(settings.upload_dir) / job_id
    job_dir.mkdir(parents=True, exist_ok=True)

    saved: list[UploadedFile] = []
    for i, upload in enumerate(files):
        content = await upload.read()
        if not content:
            raise _bad_request(f"Uploaded file '{upload.filename}' is empty", "files[]")
        if len(content) > settings.max_upload_bytes:
            raise _bad_request(
                f"File '{upload.filename}' exceeds {settings.max_upload_bytes} bytes",
                "files[]",
            )
        original = upload.filename or f"upload_{i}"
        safe_name = _UNSAFE_FILENAME.sub("_", Path(original).name) or f"upload_{i}"
        path = job_dir / f"{i}_{safe_name}"
        path.write_bytes(content)
        saved.append(UploadedFile(
            path=str(path), filename=original, content_type=upload.content_type,
        ))
        logger.info("Saved upload: %s (%d bytes) → %s", original, len(content), path)
    return saved


# ---------------------------------------------------------------------------
# POST /train — Queue a training job
# ---------------------------------------------------------------------------


@router.post(
    "/train",
    response_model=TrainAcceptedResponse,
    status_code=202,
    summary="Train an agent on text, documents, media, a website or a YouTube video",
)
async def train_endpoint(
    agent_id: str = Form(default=""),
    source: str = Form(default=DEFAULT_SOURCE),
    text: str | None = Form(default=None),
    file_type: str | None = Form(default=None),
    source_url: str | None = Form(default=None),
    source_metadata: str | None = Form(default=None),
    files: list[UploadFile] | None = File(default=None, alias="files[]"),
    jobs: JobRepository = Depends(get_job_repository),
) -> TrainAcceptedResponse:
    """
    Validate the request, persist uploads and queue the job.

    Returns 202 with the job id immediately; poll GET /train/status/{job_id}.
    """
    uploads = [f for f in (files or []) if f.filename]
    if len(uploads) > settings.max_files_per_request:
        raise _bad_request(
            f"At most {settings.max_files_per_request} files per request", "files[]",
        )

    request = TrainingRequest(
        agent_id=agent_id.strip(),
        source=(source or DEFAULT_SOURCE).strip().lower(),
        text=text,
        file_type=file_type,
        source_url=source_url.strip() if source_url else None,
        source_metadata=_parse_source_metadata(source_metadata),
        # Placeholders so validation sees how many files were sent
        files=[UploadedFile(path="", filename=f.filename) for f in uploads],
    )
    try:
        validate_training_request(request)
    except TrainingValidationError as exc:
        logger.info("Rejected training request: %s", exc.to_dict())
        raise HTTPException(status_code=400, detail=exc.to_dict()) from exc

    job_id = str(uuid.uuid4())
    try:
        request.files = await _save_uploads(job_id, uploads)
        await jobs.create(job_id, request.agent_id, request.file_names, bool(request.files))
    except Exception:
        cleanup_uploads(job_id)
        raise

    try:
        task = train_agent.delay(job_id, request.to_payload())
    except Exception as exc:
        logger.exception("[%s] Could not dispatch training task", job_id)
        cleanup_uploads(job_id)
        await asyncio.to_thread(
            jobs.fail, job_id, {"error": f"Could not queue training job: {exc}"},
        )
        raise HTTPException(status_code=503, detail="Task queue unavailable") from exc

    await jobs.attach_task(job_id, task.id)
    logger.info(
        "Dispatched training job: job_id=%s, agent=%s, source=%s, files=%d, task_id=%s",
        job_id, request.agent_id, request.source, len(request.files), task.id,
    )
    return TrainAcceptedResponse(
        job_id=job_id,
        status="queued",
        message=f"Training started. Poll /train/status/{job_id} for progress.",
    )


# ---------------------------------------------------------------------------
# GET /train/status/{job_id} — Poll a training job
# ---------------------------------------------------------------------------


@router.get(
    "/train/status/{job_id}",
    response_model=TrainStatusResponse,
    summary="Check training job status",
)
async def train_status(
    job_id: str,
    jobs: JobRepository = Depends(get_job_repository),
) -> TrainStatusResponse:
    job = await jobs.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail={"error": "Job not found", "job_id": job_id})
    return TrainStatusResponse(**job)
