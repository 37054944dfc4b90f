"""Export API endpoints: submit, status, download, cancel."""

import logging
import os

from fastapi import APIRouter, Query, status

from src.api.deps import JobStoreDep, SettingsDep, StorageDep
from src.exceptions import (
    ArtifactExpiredError,
    ExportNotReadyError,
    InvalidInputError,
    JobNotFoundError,
)
from src.render.render_plan import build_render_plan
from src.schemas.export import (
    ExportCancelResponse,
    ExportDownloadResponse,
    ExportJobPayload,
    ExportJobRecord,
    ExportSubmitRequest,
    ExportSubmitResponse,
    JobStatus,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/exports",
    response_model=ExportSubmitResponse,
    status_code=status.HTTP_201_CREATED,
)
def submit_export(request: ExportSubmitRequest, store: JobStoreDep) -> ExportSubmitResponse:
    """
    Queue an export.

    The render plan is resolved here, before queueing: explicit video sections
    are validated and passed through, otherwise AI suggestions seed the plan,
    otherwise the whole recording is kept.
    """
    if not request.room_id:
        raise InvalidInputError("Room ID is required")
    if not request.recordings:
        raise InvalidInputError("No recordings found for this export")

    plan = build_render_plan(
        request.recordings,
        video_sections=request.video_sections,
        ai_suggestions=request.ai_suggestions,
        focus_segments=request.focus_segments,
    )

    payload = ExportJobPayload(
        room_id=request.room_id,
        recordings=request.recordings,
        video_sections=plan,
        focus_segments=request.focus_segments,
        transcriptions=request.transcriptions,
        export_settings=request.export_settings,
    )
    job_id = store.add_job(payload, job_id=request.job_id)

    logger.info(
        f"[EXPORT] Submitted {job_id}: {len(request.recordings)} recordings, "
        f"{len(plan)} sections, {request.export_settings.format}/{request.export_settings.quality}"
    )
    return ExportSubmitResponse(job_id=job_id)


@router.get("/exports", response_model=list[ExportJobRecord])
def list_exports(
    store: JobStoreDep,
    limit: int = Query(default=50, ge=1, le=500),
) -> list[ExportJobRecord]:
    """Most recent export jobs, newest first."""
    return store.list_jobs(limit)


@router.get("/exports/{job_id}/status")
def get_export_status(job_id: str, store: JobStoreDep) -> dict:
    """Current progress: percentage, message, stage, downloadUrl / error."""
    progress = store.get_job_status(job_id)
    if progress is None:
        raise JobNotFoundError(job_id)
    return progress.model_dump(mode="json", by_alias=True, exclude_none=True)


@router.get("/exports/{job_id}/download", response_model=ExportDownloadResponse)
def get_export_download(
    job_id: str,
    store: JobStoreDep,
    storage: StorageDep,
    settings: SettingsDep,
) -> ExportDownloadResponse:
    """Fresh signed URL for a completed export whose file still exists."""
    job = store.get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)

    if job.status != JobStatus.COMPLETED:
        raise ExportNotReadyError(job.progress.get("stage", job.status.value))

    if job.artifact_purged_at is not None or not job.output_key:
        raise ArtifactExpiredError()
    if not storage.file_exists(job.output_key):
        logger.warning(f"[EXPORT] Artifact for {job_id} missing from storage: {job.output_key}")
        raise ArtifactExpiredError()

    download_url = storage.generate_download_url(
        job.output_key, settings.download_url_expiration_minutes
    )
    return ExportDownloadResponse(
        download_url=download_url,
        filename=os.path.basename(job.output_key),
    )


@router.post(
    "/exports/{job_id}/cancel",
    response_model=ExportCancelResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def cancel_export(job_id: str, store: JobStoreDep) -> ExportCancelResponse:
    """Advisory cancel. A processing job stops at its next stage boundary."""
    return ExportCancelResponse(job_id=job_id, cancel_requested=store.request_cancel(job_id))
