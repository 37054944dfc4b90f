"""Periodic maintenance: artifact retention, temp file cleanup, stuck job reclaim."""

import logging
import os
import shutil
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Generator

from src.celery_app import celery_app
from src.config import get_settings
from src.models.base import utcnow
from src.models.database import create_db_engine, create_session_factory
from src.services.export_queue import JobStore
from src.services.storage_service import StorageService, create_storage_service

logger = logging.getLogger(__name__)


@contextmanager
def _job_store() -> Generator[JobStore, None, None]:
    """A job store whose engine lives only for one task run."""
    settings = get_settings()
    engine = create_db_engine(settings.database_url, settings.database_echo)
    try:
        yield JobStore(create_session_factory(engine))
    finally:
        engine.dispose()


def cleanup_expired_artifacts(store: JobStore, storage: StorageService, older_than: datetime) -> int:
    """Delete completed exports older than ``older_than`` and mark them purged.

    A failed delete leaves the job unmarked so the next run retries it.
    """
    purged = 0
    for job in store.list_expired_artifacts(older_than):
        try:
            storage.delete_file(job.output_key)
        except Exception:
            logger.exception(f"[CLEANUP] Failed to delete artifact {job.output_key} for job {job.id}")
            continue
        store.mark_artifact_purged(job.id)
        purged += 1
        logger.info(f"[CLEANUP] Purged artifact of job {job.id}")
    return purged


def cleanup_temp_files(temp_dir: str, max_age_seconds: float, now: float | None = None) -> int:
    """Remove files and directories in ``temp_dir`` not modified for ``max_age_seconds``."""
    if not os.path.isdir(temp_dir):
        return 0

    cutoff = (now if now is not None else time.time()) - max_age_seconds
    removed = 0
    with os.scandir(temp_dir) as entries:
        for entry in entries:
            try:
                if entry.stat(follow_symlinks=False).st_mtime >= cutoff:
                    continue
                if entry.is_dir(follow_symlinks=False):
                    shutil.rmtree(entry.path)
                else:
                    os.remove(entry.path)
                removed += 1
            except FileNotFoundError:
                continue  # removed concurrently
            except OSError:
                logger.exception(f"[CLEANUP] Failed to remove {entry.path}")
    if removed:
        logger.info(f"[CLEANUP] Removed {removed} stale temp entries from {temp_dir}")
    return removed


@celery_app.task
def cleanup_expired_exports() -> dict:
    """Hourly retention sweep."""
    settings = get_settings()
    storage = create_storage_service(settings)
    older_than = utcnow() - timedelta(hours=settings.export_retention_hours)

    with _job_store() as store:
        purged = cleanup_expired_artifacts(store, storage, older_than)

    temp_removed = cleanup_temp_files(
        settings.export_temp_dir, settings.temp_file_max_age_hours * 3600
    )
    return {"purged": purged, "temp_removed": temp_removed}


@celery_app.task
def reclaim_stale_jobs() -> dict:
    """Requeue or fail jobs whose worker stopped reporting."""
    settings = get_settings()
    with _job_store() as store:
        requeued, failed = store.reclaim_stale_jobs(
            timeout_seconds=settings.job_stale_timeout_seconds,
            max_attempts=settings.job_max_attempts,
        )
    return {"requeued": requeued, "failed": failed}
