"""Export worker: claims queued jobs and drives them to a terminal state.

Stages and their progress bands:

    queued (0) -> downloading (5-20) -> processing:subtitles (25)
    -> processing:compose (30-85) -> uploading (90) -> completed (100)

Any stage may end in ``failed`` instead, with a message naming the stage. Local
files for a job live in one temp directory that is removed whether the job
succeeds or fails.

Every write carries the claim's attempt number. While a job runs, a heartbeat
thread keeps it fresh for the stale sweep; if the job is reclaimed anyway the
worker stops at its next write or stage boundary without touching the job.
"""

import logging
import os
import shutil
import tempfile
import threading
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, ContextManager
from urllib.parse import urlparse

from pydantic import ValidationError

from src.config import Settings
from src.exceptions import (
    ClaimLostError,
    CompositionError,
    InvalidInputError,
    JobCancelledError,
    JobNotFoundError,
    StorageError,
    UploadError,
)
from src.render.compositor import MediaCompositor, MediaInput
from src.render.render_plan import kept_sections
from src.render.subtitles import (
    derive_subtitles,
    group_into_phrases,
    remap_to_output_timeline,
    write_srt_file,
)
from src.schemas.export import (
    CompletedProgress,
    DownloadingProgress,
    ExportJobPayload,
    ExportProgress,
    FailedProgress,
    ProcessingProgress,
    UploadingProgress,
)
from src.services.export_queue import JobStore
from src.services.media_downloader import MediaDownloader
from src.services.storage_service import StorageService
from src.utils.media_info import has_audio_track

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    "mp4": "video/mp4",
    "webm": "video/webm",
}

DOWNLOAD_START = 5
DOWNLOAD_END = 20
SUBTITLES_PERCENT = 25
COMPOSE_START = 30
COMPOSE_END = 85
UPLOAD_PERCENT = 90


def output_key_for(job_id: str, fmt: str) -> str:
    return f"exports/{job_id}/{job_id}_final.{fmt}"


class JobHeartbeat:
    """Refreshes a claimed job's liveness on a background thread.

    Downloads, ffmpeg and uploads block for long stretches without a progress
    write; the heartbeat covers them.
    """

    def __init__(self, store: JobStore, job_id: str, attempt: int, interval: float):
        self.store = store
        self.job_id = job_id
        self.attempt = attempt
        self.interval = interval
        self._stop = threading.Event()
        self._lost = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def lost(self) -> bool:
        return self._lost.is_set()

    def __enter__(self) -> "JobHeartbeat":
        self._thread = threading.Thread(
            target=self._run, name=f"heartbeat-{self.job_id}", daemon=True
        )
        self._thread.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.store.heartbeat(self.job_id, self.attempt)
            except (ClaimLostError, JobNotFoundError) as e:
                logger.warning(f"[EXPORT] Heartbeat stopped for job {self.job_id}: {e}")
                self._lost.set()
                return
            except StorageError:
                logger.exception(f"[EXPORT] Heartbeat for job {self.job_id} failed, retrying")


@dataclass
class _JobRun:
    job_id: str
    attempt: int | None
    stage: str = "validation"
    heartbeat: JobHeartbeat | None = None


class ExportWorker:
    """Sequential worker. Run several processes for parallelism."""

    def __init__(
        self,
        store: JobStore,
        storage: StorageService,
        downloader: MediaDownloader,
        compositor: MediaCompositor,
        settings: Settings,
        audio_probe: Callable[[str], bool] | None = None,
    ):
        self.store = store
        self.storage = storage
        self.downloader = downloader
        self.compositor = compositor
        self.settings = settings
        self._audio_probe = audio_probe or (
            lambda path: has_audio_track(path, settings.ffprobe_path)
        )

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run_once(self) -> bool:
        """Claim and process one job. Returns False when the queue is empty."""
        claimed = self.store.claim_next_job()
        if claimed is None:
            return False

        logger.info(f"[EXPORT] Processing job {claimed.id} (attempt {claimed.attempt})")
        self.process_job(claimed.id, claimed.payload, attempt=claimed.attempt)
        return True

    def run_forever(self, stop_event: threading.Event) -> None:
        """Poll until ``stop_event`` is set. The current job always finishes."""
        logger.info("[EXPORT] Worker started")
        while not stop_event.is_set():
            try:
                worked = self.run_once()
            except Exception:
                logger.exception("[EXPORT] Worker loop error")
                stop_event.wait(self.settings.worker_error_backoff_seconds)
                continue

            if not worked:
                stop_event.wait(self.settings.worker_poll_interval_seconds)
        logger.info("[EXPORT] Worker stopped")

    # ------------------------------------------------------------------
    # Job
    # ------------------------------------------------------------------

    def process_job(
        self,
        job_id: str,
        payload: ExportJobPayload | dict[str, Any],
        attempt: int | None = None,
    ) -> bool:
        """Run every stage for one claimed job and write its terminal status.

        ``attempt`` is the claim returned by ``claim_next_job``; without it the
        writes are not fenced and no heartbeat runs.

        Returns True if the job completed.
        """
        run = _JobRun(job_id=job_id, attempt=attempt)
        try:
            with self._heartbeat(run):
                temp_dir: str | None = None
                try:
                    temp_dir = self._make_temp_dir(job_id)
                    download_url = self._run_stages(run, payload, temp_dir)
                finally:
                    if temp_dir:
                        shutil.rmtree(temp_dir, ignore_errors=True)

            self._update(
                run,
                CompletedProgress(download_url=download_url, message="Export completed successfully"),
            )
        except ClaimLostError as e:
            logger.warning(f"[EXPORT] Job {job_id}: {e}; stopping without further writes")
            return False
        except Exception as e:
            self._mark_failed(run, e)
            return False

        logger.info(f"[EXPORT] Job {job_id} completed")
        return True

    def _run_stages(self, run: _JobRun, payload: ExportJobPayload | dict[str, Any], temp_dir: str) -> str:
        if not isinstance(payload, ExportJobPayload):
            try:
                payload = ExportJobPayload.model_validate(payload)
            except ValidationError as e:
                raise InvalidInputError(f"Invalid job payload: {e}") from e

        if not payload.recordings:
            raise InvalidInputError("No recordings found for this export")
        if not kept_sections(payload.video_sections):
            raise InvalidInputError("Nothing to export: every section is deleted")

        self._enter_stage(run, "download")
        local_paths = self._download_recordings(run, payload, temp_dir)

        self._enter_stage(run, "subtitles")
        subtitle_path = self._generate_subtitles(run, payload, temp_dir)

        self._enter_stage(run, "compose")
        output_path = self._compose(run, payload, local_paths, subtitle_path, temp_dir)

        self._enter_stage(run, "upload")
        return self._upload(run, payload, output_path)

    def _heartbeat(self, run: _JobRun) -> ContextManager:
        if run.attempt is None:
            return nullcontext()
        run.heartbeat = JobHeartbeat(
            self.store, run.job_id, run.attempt, self.settings.job_heartbeat_interval_seconds
        )
        return run.heartbeat

    def _update(self, run: _JobRun, progress: ExportProgress) -> None:
        self.store.update_progress(run.job_id, progress, attempt=run.attempt)

    def _make_temp_dir(self, job_id: str) -> str:
        os.makedirs(self.settings.export_temp_dir, exist_ok=True)
        return tempfile.mkdtemp(prefix=f"export_{job_id}_", dir=self.settings.export_temp_dir)

    def _enter_stage(self, run: _JobRun, stage: str) -> None:
        if run.heartbeat is not None and run.heartbeat.lost:
            raise ClaimLostError(run.job_id, run.attempt)
        if self.store.is_cancel_requested(run.job_id):
            logger.info(f"[EXPORT] Job {run.job_id} cancelled before {stage}")
            raise JobCancelledError()
        run.stage = stage

    def _mark_failed(self, run: _JobRun, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        if isinstance(error, JobCancelledError):
            logger.info(f"[EXPORT] Job {run.job_id} stopped: {message}")
            progress = FailedProgress(error=message, message="Export cancelled")
        else:
            logger.exception(f"[EXPORT] Job {run.job_id} failed during {run.stage}: {message}")
            progress = FailedProgress(
                error=message, message=f"Export failed during {run.stage}: {message}"
            )
        try:
            self._update(run, progress)
        except ClaimLostError as e:
            logger.warning(f"[EXPORT] Job {run.job_id}: {e}; failure not recorded")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _download_recordings(self, run: _JobRun, payload: ExportJobPayload, temp_dir: str) -> list[str]:
        recordings = payload.recordings
        total = len(recordings)
        self._update(
            run,
            DownloadingProgress(percentage=DOWNLOAD_START, message=f"Downloading {total} recordings"),
        )

        local_paths = []
        for i, recording in enumerate(recordings):
            suffix = Path(urlparse(recording.recording_url).path).suffix or ".mp4"
            local_path = os.path.join(temp_dir, f"{run.job_id}_video_{i}{suffix}")
            self.downloader.download(recording.recording_url, local_path)
            local_paths.append(local_path)

            percentage = DOWNLOAD_START + int((i + 1) / total * (DOWNLOAD_END - DOWNLOAD_START))
            self._update(
                run,
                DownloadingProgress(percentage=percentage, message=f"Downloaded {i + 1}/{total} recordings"),
            )
        return local_paths

    def _generate_subtitles(self, run: _JobRun, payload: ExportJobPayload, temp_dir: str) -> str | None:
        if not payload.export_settings.include_subtitles or not payload.transcriptions:
            return None

        self._update(
            run,
            ProcessingProgress(percentage=SUBTITLES_PERCENT, step="subtitles", message="Generating subtitles"),
        )

        plan = payload.video_sections
        entries = derive_subtitles(payload.transcriptions, plan)
        entries = remap_to_output_timeline(entries, plan)
        if self.settings.subtitle_grouping == "phrase":
            entries = group_into_phrases(
                entries,
                max_gap=self.settings.subtitle_phrase_max_gap_seconds,
                max_words=self.settings.subtitle_phrase_max_words,
            )

        if not entries:
            logger.info(f"[EXPORT] Job {run.job_id}: no words inside kept sections, skipping subtitles")
            return None

        path = write_srt_file(entries, os.path.join(temp_dir, f"{run.job_id}_subtitles.srt"))
        return str(path)

    def _inspect_inputs(self, payload: ExportJobPayload, local_paths: list[str]) -> list[MediaInput]:
        inputs = []
        for recording, path in zip(payload.recordings, local_paths):
            try:
                has_audio = self._audio_probe(path)
            except RuntimeError as e:
                raise CompositionError(f"Could not read {os.path.basename(path)}: {e}") from e
            if not has_audio:
                logger.info(f"[EXPORT] {os.path.basename(path)} has no audio track, mixing in silence")
            inputs.append(
                MediaInput(path=path, participant_id=recording.participant_id, has_audio=has_audio)
            )
        return inputs

    def _compose(
        self,
        run: _JobRun,
        payload: ExportJobPayload,
        local_paths: list[str],
        subtitle_path: str | None,
        temp_dir: str,
    ) -> str:
        self._update(
            run,
            ProcessingProgress(percentage=COMPOSE_START, step="compose", message="Composing video"),
        )
        inputs = self._inspect_inputs(payload, local_paths)

        last_percentage = COMPOSE_START

        def on_progress(fraction: float) -> None:
            nonlocal last_percentage
            percentage = COMPOSE_START + int(fraction * (COMPOSE_END - COMPOSE_START))
            if percentage > last_percentage:
                last_percentage = percentage
                self._update(
                    run,
                    ProcessingProgress(
                        percentage=percentage,
                        step="compose",
                        message=f"Composing video ({int(fraction * 100)}%)",
                    ),
                )

        fmt = payload.export_settings.format
        return self.compositor.compose(
            inputs,
            payload.video_sections,
            payload.export_settings,
            output_path=os.path.join(temp_dir, f"{run.job_id}_final.{fmt}"),
            subtitle_path=subtitle_path,
            progress_callback=on_progress,
            log_path=os.path.join(temp_dir, f"{run.job_id}_ffmpeg.log"),
        )

    def _upload(self, run: _JobRun, payload: ExportJobPayload, output_path: str) -> str:
        self._update(
            run,
            UploadingProgress(percentage=UPLOAD_PERCENT, message="Uploading video"),
        )

        fmt = payload.export_settings.format
        key = output_key_for(run.job_id, fmt)
        try:
            size = os.path.getsize(output_path)
            self.storage.upload_file(output_path, key, content_type=CONTENT_TYPES[fmt])
            download_url = self.storage.generate_download_url(
                key, self.settings.download_url_expiration_minutes
            )
        except Exception as e:
            raise UploadError(f"Failed to upload rendered video: {e}") from e

        self.store.set_output(run.job_id, key, size, attempt=run.attempt)
        logger.info(f"[EXPORT] Job {run.job_id}: uploaded {size} bytes to {key}")
        return download_url
