"""Durable export job queue backed by SQLAlchemy.

The store is the only state workers share. ``claim_next_job`` hands each queued
job to exactly one caller: it is a single UPDATE ... RETURNING whose target row
is chosen by a ``FOR UPDATE SKIP LOCKED`` subquery on PostgreSQL. SQLite has no
row locks but takes the database write lock for the whole statement, which gives
the same guarantee for local runs and tests.

A claim is identified by the job's ``attempts`` count after the claim. Workers
pass it back on every write and heartbeat; once the stale sweep requeues a job
those writes are refused with ``ClaimLostError``, so at most one worker ever
writes a job.
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Generator, NamedTuple

from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from src.exceptions import ClaimLostError, InvalidInputError, JobNotFoundError, StorageError
from src.models.base import utcnow
from src.models.database import session_scope
from src.models.export_job import ExportJob
from src.schemas.export import (
    STAGE_TO_STATUS,
    TERMINAL_STATUSES,
    ExportJobPayload,
    ExportJobRecord,
    ExportProgress,
    FailedProgress,
    JobStatus,
    QueuedProgress,
    parse_progress,
)

logger = logging.getLogger(__name__)

export_jobs = ExportJob.__table__


class ClaimedJob(NamedTuple):
    id: str
    payload: dict[str, Any]
    # Claim generation; passed back on writes so a reclaimed worker is fenced out
    attempt: int


def _dump(progress: ExportProgress) -> dict[str, Any]:
    return progress.model_dump(mode="json", exclude_none=True)


def generate_job_id(room_id: str) -> str:
    return f"export_{room_id}_{uuid.uuid4().hex[:12]}"


def _holds_claim(job: ExportJob, attempt: int) -> bool:
    return job.status == JobStatus.PROCESSING.value and job.attempts == attempt


def _claim_clause(job_id: str, attempt: int | None) -> tuple:
    if attempt is None:
        return (export_jobs.c.id == job_id,)
    return (
        export_jobs.c.id == job_id,
        export_jobs.c.status == JobStatus.PROCESSING.value,
        export_jobs.c.attempts == attempt,
    )


class JobStore:
    """Export job store. One instance per process, built by the entry point."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except SQLAlchemyError as e:
            logger.error(f"[QUEUE] Job store error: {e}")
            raise StorageError(f"Job store unavailable: {e}") from e

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def add_job(self, payload: ExportJobPayload, job_id: str | None = None) -> str:
        """Insert a queued job and return its id.

        A caller-supplied ``job_id`` is an idempotency key: adding the same id
        twice returns the id without creating a second record.
        """
        job_id = job_id or generate_job_id(payload.room_id)
        progress = _dump(QueuedProgress())

        try:
            with session_scope(self._session_factory) as session:
                if session.get(ExportJob, job_id) is not None:
                    logger.info(f"[QUEUE] Job {job_id} already exists, skipping insert")
                    return job_id
                session.add(
                    ExportJob(
                        id=job_id,
                        room_id=payload.room_id,
                        status=JobStatus.QUEUED.value,
                        payload=payload.model_dump(mode="json", by_alias=True),
                        progress=progress,
                    )
                )
        except IntegrityError:
            # Lost a race with a concurrent insert of the same id
            logger.info(f"[QUEUE] Job {job_id} inserted concurrently, reusing it")
            return job_id
        except SQLAlchemyError as e:
            logger.error(f"[QUEUE] Failed to add job {job_id}: {e}")
            raise StorageError(f"Job store unavailable: {e}") from e

        logger.info(f"[QUEUE] Job {job_id} queued for room {payload.room_id}")
        return job_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_job_status(self, job_id: str) -> ExportProgress | None:
        """Current progress, with the terminal columns folded in.

        Returns None when the job does not exist.
        """
        with self._session() as session:
            job = session.get(ExportJob, job_id)
            if job is None:
                return None
            data = dict(job.progress or {})
            if job.download_url and not data.get("download_url"):
                data["download_url"] = job.download_url
            if job.error_message and not data.get("error"):
                data["error"] = job.error_message

        return parse_progress(data)

    def get_job(self, job_id: str) -> ExportJobRecord | None:
        with self._session() as session:
            job = session.get(ExportJob, job_id)
            return ExportJobRecord.model_validate(job) if job is not None else None

    def is_cancel_requested(self, job_id: str) -> bool:
        with self._session() as session:
            flag = session.scalar(
                select(export_jobs.c.cancel_requested).where(export_jobs.c.id == job_id)
            )
        return bool(flag)

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        with self._session() as session:
            rows = session.execute(
                select(export_jobs.c.status, func.count()).group_by(export_jobs.c.status)
            ).all()
        for status, count in rows:
            counts[status] = count
        return counts

    def list_jobs(self, limit: int = 50) -> list[ExportJobRecord]:
        """Most recent jobs first."""
        with self._session() as session:
            jobs = session.scalars(
                select(ExportJob).order_by(ExportJob.created_at.desc()).limit(limit)
            ).all()
            return [ExportJobRecord.model_validate(job) for job in jobs]

    # ------------------------------------------------------------------
    # Claim / progress
    # ------------------------------------------------------------------

    def claim_next_job(self) -> ClaimedJob | None:
        """Atomically move the oldest queued job to processing and return it."""
        now = utcnow()
        oldest_queued = (
            select(export_jobs.c.id)
            .where(export_jobs.c.status == JobStatus.QUEUED.value)
            .order_by(export_jobs.c.created_at, export_jobs.c.id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(export_jobs)
            .where(
                export_jobs.c.id == oldest_queued,
                export_jobs.c.status == JobStatus.QUEUED.value,
            )
            .values(
                status=JobStatus.PROCESSING.value,
                claimed_at=now,
                started_at=func.coalesce(export_jobs.c.started_at, now),
                attempts=export_jobs.c.attempts + 1,
                updated_at=now,
            )
            .returning(export_jobs.c.id, export_jobs.c.payload, export_jobs.c.attempts)
        )

        with self._session() as session:
            row = session.execute(stmt).first()

        if row is None:
            return None

        logger.info(f"[QUEUE] Claimed job {row.id} (attempt {row.attempts})")
        return ClaimedJob(id=row.id, payload=row.payload, attempt=row.attempts)

    def update_progress(
        self,
        job_id: str,
        progress: ExportProgress | dict[str, Any],
        status: JobStatus | None = None,
        attempt: int | None = None,
    ) -> ExportProgress:
        """Merge a progress update into the stored snapshot.

        ``progress`` is either a full progress variant or a partial dict of
        fields. The merged result is re-validated as a whole, so fields that do
        not belong to the new stage are dropped. When ``status`` is omitted it
        follows from the stage.

        A worker passes the ``attempt`` of its claim. The write is refused once
        the job has been reclaimed, so a stale worker cannot overwrite the job
        another worker now owns.

        Raises:
            JobNotFoundError: unknown job
            InvalidInputError: the merged progress is not a valid variant
            ClaimLostError: ``attempt`` is no longer the current claim
        """
        if isinstance(progress, dict):
            update_fields = {k: v for k, v in progress.items() if v is not None}
        else:
            update_fields = _dump(progress)

        with self._session() as session:
            job = session.get(ExportJob, job_id, with_for_update=attempt is not None)
            if job is None:
                raise JobNotFoundError(job_id)
            if attempt is not None and not _holds_claim(job, attempt):
                raise ClaimLostError(job_id, attempt)

            merged = {**(job.progress or {}), **update_fields}
            try:
                parsed = parse_progress(merged)
            except ValidationError as e:
                raise InvalidInputError(f"Invalid progress update for {job_id}: {e}") from e

            new_status = status or STAGE_TO_STATUS[parsed.stage]
            now = utcnow()

            job.progress = _dump(parsed)
            job.status = new_status.value
            job.updated_at = now

            if new_status == JobStatus.PROCESSING and job.started_at is None:
                job.started_at = now
            if new_status in TERMINAL_STATUSES and job.completed_at is None:
                job.completed_at = now

            if parsed.stage == "completed":
                job.download_url = parsed.download_url
                job.error_message = None
            elif parsed.stage == "failed":
                job.error_message = parsed.error
                job.download_url = None

        logger.debug(f"[QUEUE] Job {job_id}: {parsed.stage} {parsed.percentage}% {parsed.message}")
        return parsed

    def set_output(
        self,
        job_id: str,
        output_key: str,
        output_size: int | None,
        attempt: int | None = None,
    ) -> None:
        with self._session() as session:
            result = session.execute(
                update(export_jobs)
                .where(*_claim_clause(job_id, attempt))
                .values(output_key=output_key, output_size=output_size, updated_at=utcnow())
            )
            if result.rowcount == 0:
                self._raise_missing(session, job_id, attempt)

    def heartbeat(self, job_id: str, attempt: int) -> None:
        """Refresh liveness of a claimed job so the stale sweep leaves it alone.

        Raises:
            ClaimLostError: the claim was reclaimed or the job already finished
        """
        with self._session() as session:
            result = session.execute(
                update(export_jobs)
                .where(*_claim_clause(job_id, attempt))
                .values(updated_at=utcnow())
            )
            if result.rowcount == 0:
                self._raise_missing(session, job_id, attempt)

    def _raise_missing(self, session: Session, job_id: str, attempt: int | None) -> None:
        exists = session.scalar(select(export_jobs.c.id).where(export_jobs.c.id == job_id))
        if exists is None:
            raise JobNotFoundError(job_id)
        raise ClaimLostError(job_id, attempt)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def request_cancel(self, job_id: str) -> bool:
        """Ask for a job to stop.

        A queued job is failed right away. A processing job is flagged and the
        worker stops at its next stage boundary. Returns False for jobs that
        already finished.
        """
        now = utcnow()
        cancelled = FailedProgress(error="Export cancelled", message="Export cancelled")

        with self._session() as session:
            result = session.execute(
                update(export_jobs)
                .where(
                    export_jobs.c.id == job_id,
                    export_jobs.c.status == JobStatus.QUEUED.value,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    cancel_requested=True,
                    progress=_dump(cancelled),
                    error_message=cancelled.error,
                    completed_at=now,
                    updated_at=now,
                )
            )
            if result.rowcount:
                logger.info(f"[QUEUE] Cancelled queued job {job_id}")
                return True

            result = session.execute(
                update(export_jobs)
                .where(
                    export_jobs.c.id == job_id,
                    export_jobs.c.status == JobStatus.PROCESSING.value,
                )
                .values(cancel_requested=True)
            )
            if result.rowcount:
                logger.info(f"[QUEUE] Cancel requested for processing job {job_id}")
                return True

            exists = session.scalar(select(export_jobs.c.id).where(export_jobs.c.id == job_id))

        if exists is None:
            raise JobNotFoundError(job_id)
        return False

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reclaim_stale_jobs(
        self,
        timeout_seconds: float,
        max_attempts: int,
        now: datetime | None = None,
    ) -> tuple[int, int]:
        """Recover jobs whose worker stopped writing.

        A processing job with no write for ``timeout_seconds`` goes back to the
        queue while it has attempts left. Jobs out of attempts, or that were
        asked to cancel, are failed with "Job timed out".

        Returns:
            (requeued, failed) counts
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=timeout_seconds)
        stale = (
            export_jobs.c.status == JobStatus.PROCESSING.value,
            export_jobs.c.updated_at < cutoff,
        )
        timed_out = FailedProgress(error="Job timed out", message="Export failed: Job timed out")

        with self._session() as session:
            requeued = session.execute(
                update(export_jobs)
                .where(
                    *stale,
                    export_jobs.c.attempts < max_attempts,
                    export_jobs.c.cancel_requested.is_(False),
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    progress=_dump(QueuedProgress(message="Job requeued")),
                    claimed_at=None,
                    updated_at=now,
                )
            ).rowcount
            failed = session.execute(
                update(export_jobs)
                .where(*stale)
                .values(
                    status=JobStatus.FAILED.value,
                    progress=_dump(timed_out),
                    error_message=timed_out.error,
                    completed_at=now,
                    updated_at=now,
                )
            ).rowcount

        if requeued or failed:
            logger.warning(f"[QUEUE] Reclaimed stale jobs: {requeued} requeued, {failed} failed")
        return requeued, failed

    def list_expired_artifacts(self, older_than: datetime) -> list[ExportJobRecord]:
        """Completed jobs whose artifact is older than ``older_than`` and not yet purged."""
        with self._session() as session:
            jobs = session.scalars(
                select(ExportJob)
                .where(
                    ExportJob.status == JobStatus.COMPLETED.value,
                    ExportJob.completed_at < older_than,
                    ExportJob.artifact_purged_at.is_(None),
                    ExportJob.output_key.is_not(None),
                )
                .order_by(ExportJob.completed_at)
            ).all()
            return [ExportJobRecord.model_validate(job) for job in jobs]

    def mark_artifact_purged(self, job_id: str) -> None:
        now = utcnow()
        with self._session() as session:
            result = session.execute(
                update(export_jobs)
                .where(export_jobs.c.id == job_id)
                .values(artifact_purged_at=now, updated_at=now)
            )
            if result.rowcount == 0:
                raise JobNotFoundError(job_id)
