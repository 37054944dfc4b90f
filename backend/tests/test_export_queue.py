"""Tests for the SQLAlchemy-backed export job store."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from conftest import backdate_job, make_payload
from src.exceptions import ClaimLostError, InvalidInputError, JobNotFoundError, StorageError
from src.models.base import utcnow
from src.schemas.export import (
    CompletedProgress,
    DownloadingProgress,
    FailedProgress,
    JobStatus,
    ProcessingProgress,
    UploadingProgress,
)
from src.services.export_queue import JobStore


class TestAddJob:
    """Tests for submission."""

    def test_new_job_is_queued(self, job_store, payload):
        job_id = job_store.add_job(payload)

        progress = job_store.get_job_status(job_id)
        assert progress.stage == "queued"
        assert progress.percentage == 0
        assert progress.message == "Job queued"

        job = job_store.get_job(job_id)
        assert job.status == JobStatus.QUEUED
        assert job.room_id == "room-1"
        assert job.attempts == 0
        assert job.started_at is None

    def test_default_id_embeds_room(self, job_store, payload):
        job_id = job_store.add_job(payload)

        assert job_id.startswith("export_room-1_")

    def test_same_id_is_idempotent(self, job_store, payload):
        first = job_store.add_job(payload, job_id="export-fixed")
        second = job_store.add_job(make_payload(room_id="other"), job_id="export-fixed")

        assert first == second == "export-fixed"
        assert len(job_store.list_jobs()) == 1
        assert job_store.get_job("export-fixed").room_id == "room-1"

    def test_unknown_job(self, job_store):
        assert job_store.get_job_status("missing") is None
        assert job_store.get_job("missing") is None


class TestClaim:
    """Tests for the atomic claim."""

    def test_empty_queue_returns_none(self, job_store):
        assert job_store.claim_next_job() is None

    def test_claim_moves_to_processing(self, job_store, payload):
        job_id = job_store.add_job(payload)

        claimed = job_store.claim_next_job()

        assert claimed.id == job_id
        assert claimed.payload["roomId"] == "room-1"
        job = job_store.get_job(job_id)
        assert job.status == JobStatus.PROCESSING
        assert job.started_at is not None
        assert job.claimed_at is not None
        assert claimed.attempt == 1
        assert job.attempts == 1
        assert job_store.claim_next_job() is None

    def test_oldest_first(self, job_store, payload):
        for job_id in ("job-a", "job-b", "job-c"):
            job_store.add_job(payload, job_id=job_id)

        claimed = [job_store.claim_next_job().id for _ in range(3)]

        assert claimed == ["job-a", "job-b", "job-c"]

    def test_concurrent_claims_hand_out_each_job_once(self, job_store, payload):
        """N concurrent claims against M < N jobs: each job once, N-M empty."""
        job_ids = {job_store.add_job(payload, job_id=f"job-{i}") for i in range(5)}

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: job_store.claim_next_job(), range(12)))

        claimed = [r.id for r in results if r is not None]
        assert sorted(claimed) == sorted(job_ids)
        assert results.count(None) == 7


class TestUpdateProgress:
    """Tests for progress merging."""

    def test_stage_sets_status(self, job_store, payload):
        job_id = job_store.add_job(payload)
        job_store.claim_next_job()

        job_store.update_progress(job_id, DownloadingProgress(percentage=12, message="Downloading"))

        progress = job_store.get_job_status(job_id)
        assert (progress.stage, progress.percentage, progress.message) == ("downloading", 12, "Downloading")
        assert job_store.get_job(job_id).status == JobStatus.PROCESSING

    def test_partial_update_merges(self, job_store, payload):
        job_id = job_store.add_job(payload)
        job_store.update_progress(job_id, ProcessingProgress(percentage=40, step="compose", message="Composing"))

        job_store.update_progress(job_id, {"percentage": 55})

        progress = job_store.get_job_status(job_id)
        assert progress.stage == "processing"
        assert progress.step == "compose"
        assert progress.percentage == 55
        assert progress.message == "Composing"

    def test_stage_specific_fields_dropped_on_transition(self, job_store, payload):
        job_id = job_store.add_job(payload)
        job_store.update_progress(job_id, ProcessingProgress(percentage=40, step="compose"))

        job_store.update_progress(job_id, UploadingProgress(percentage=90, message="Uploading"))

        assert "step" not in job_store.get_job(job_id).progress

    def test_idempotent(self, job_store, payload):
        job_id = job_store.add_job(payload)
        update = CompletedProgress(download_url="https://cdn/x.mp4", message="done")

        job_store.update_progress(job_id, update)
        once = job_store.get_job(job_id)
        job_store.update_progress(job_id, update)
        twice = job_store.get_job(job_id)

        assert once.progress == twice.progress
        assert once.completed_at == twice.completed_at
        assert twice.download_url == "https://cdn/x.mp4"

    def test_completed_sets_terminal_fields(self, job_store, payload):
        job_id = job_store.add_job(payload)
        job_store.claim_next_job()

        job_store.update_progress(job_id, CompletedProgress(download_url="https://cdn/x.mp4"))

        job = job_store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.completed_at is not None
        progress = job_store.get_job_status(job_id)
        assert progress.percentage == 100
        assert progress.download_url == "https://cdn/x.mp4"

    def test_failed_never_carries_download_url(self, job_store, payload):
        job_id = job_store.add_job(payload)
        job_store.update_progress(job_id, CompletedProgress(download_url="https://cdn/x.mp4"))

        job_store.update_progress(job_id, FailedProgress(error="boom", percentage=70))

        progress = job_store.get_job_status(job_id)
        assert progress.stage == "failed"
        assert progress.percentage == 0
        assert progress.error == "boom"
        assert not hasattr(progress, "download_url")
        assert job_store.get_job(job_id).download_url is None

    def test_status_read_merges_terminal_columns(self, job_store, payload, engine):
        """A terminal column written separately still shows up in the status."""
        job_id = job_store.add_job(payload)
        job_store.update_progress(job_id, FailedProgress(error="boom"))
        with engine.begin() as conn:
            conn.exec_driver_sql(
                "UPDATE export_jobs SET progress = ?, error_message = ? WHERE id = ?",
                ('{"stage": "failed", "percentage": 0, "message": "Export failed"}', "disk full", job_id),
            )

        progress = job_store.get_job_status(job_id)

        assert progress.error == "disk full"

    def test_invalid_progress_rejected(self, job_store, payload):
        job_id = job_store.add_job(payload)

        with pytest.raises(InvalidInputError):
            job_store.update_progress(job_id, {"stage": "failed"})  # no error text

        assert job_store.get_job_status(job_id).stage == "queued"

    def test_unknown_job(self, job_store):
        with pytest.raises(JobNotFoundError):
            job_store.update_progress("missing", DownloadingProgress(percentage=5))


class TestCancel:
    def test_cancel_queued_job_fails_it(self, job_store, payload):
        job_id = job_store.add_job(payload)

        assert job_store.request_cancel(job_id) is True

        progress = job_store.get_job_status(job_id)
        assert progress.stage == "failed"
        assert progress.error == "Export cancelled"
        assert job_store.claim_next_job() is None

    def test_cancel_processing_job_sets_flag(self, job_store, payload):
        job_id = job_store.add_job(payload)
        job_store.claim_next_job()

        assert job_store.request_cancel(job_id) is True

        assert job_store.is_cancel_requested(job_id) is True
        assert job_store.get_job(job_id).status == JobStatus.PROCESSING

    def test_cancel_finished_job_is_noop(self, job_store, payload):
        job_id = job_store.add_job(payload)
        job_store.update_progress(job_id, CompletedProgress(download_url="https://cdn/x.mp4"))

        assert job_store.request_cancel(job_id) is False
        assert job_store.get_job(job_id).status == JobStatus.COMPLETED

    def test_cancel_unknown_job(self, job_store):
        with pytest.raises(JobNotFoundError):
            job_store.request_cancel("missing")


class TestReclaim:
    """Tests for recovering jobs left behind by crashed workers."""

    def test_stale_job_requeued_then_claimable(self, job_store, payload):
        job_id = job_store.add_job(payload)
        job_store.claim_next_job()

        requeued, failed = job_store.reclaim_stale_jobs(
            timeout_seconds=60, max_attempts=3, now=utcnow() + timedelta(minutes=5)
        )

        assert (requeued, failed) == (1, 0)
        progress = job_store.get_job_status(job_id)
        assert progress.stage == "queued"
        assert progress.message == "Job requeued"
        assert job_store.claim_next_job().id == job_id
        assert job_store.get_job(job_id).attempts == 2

    def test_fresh_job_left_alone(self, job_store, payload):
        job_store.add_job(payload)
        job_store.claim_next_job()

        assert job_store.reclaim_stale_jobs(timeout_seconds=60, max_attempts=3) == (0, 0)

    def test_exhausted_attempts_fail(self, job_store, payload):
        job_id = job_store.add_job(payload)
        job_store.claim_next_job()

        requeued, failed = job_store.reclaim_stale_jobs(
            timeout_seconds=60, max_attempts=1, now=utcnow() + timedelta(minutes=5)
        )

        assert (requeued, failed) == (0, 1)
        progress = job_store.get_job_status(job_id)
        assert progress.stage == "failed"
        assert progress.error == "Job timed out"

    def test_queued_and_finished_jobs_ignored(self, job_store, payload):
        job_store.add_job(payload, job_id="queued")
        job_store.add_job(payload, job_id="done")
        job_store.update_progress("done", CompletedProgress(download_url="https://cdn/x.mp4"))

        result = job_store.reclaim_stale_jobs(
            timeout_seconds=60, max_attempts=3, now=utcnow() + timedelta(hours=1)
        )

        assert result == (0, 0)


class TestClaimFencing:
    """A worker whose job was reclaimed must not write to it again."""

    def _reclaimed(self, job_store, engine, payload):
        job_id = job_store.add_job(payload)
        first = job_store.claim_next_job()
        backdate_job(engine, job_id)
        assert job_store.reclaim_stale_jobs(timeout_seconds=600, max_attempts=3) == (1, 0)
        second = job_store.claim_next_job()
        return job_id, first, second

    def test_stale_worker_progress_refused(self, job_store, engine, payload):
        job_id, first, second = self._reclaimed(job_store, engine, payload)
        assert (first.attempt, second.attempt) == (1, 2)

        with pytest.raises(ClaimLostError):
            job_store.update_progress(job_id, DownloadingProgress(percentage=12), attempt=first.attempt)
        with pytest.raises(ClaimLostError):
            job_store.update_progress(job_id, FailedProgress(error="boom"), attempt=first.attempt)

        job = job_store.get_job(job_id)
        assert job.status == JobStatus.PROCESSING
        assert job.attempts == 2
        assert job.error_message is None

    def test_current_claim_still_writes(self, job_store, engine, payload):
        job_id, _, second = self._reclaimed(job_store, engine, payload)

        job_store.update_progress(job_id, DownloadingProgress(percentage=12), attempt=second.attempt)

        assert job_store.get_job_status(job_id).percentage == 12

    def test_stale_worker_output_and_heartbeat_refused(self, job_store, engine, payload):
        job_id, first, _ = self._reclaimed(job_store, engine, payload)

        with pytest.raises(ClaimLostError):
            job_store.set_output(job_id, "exports/stale.mp4", 10, attempt=first.attempt)
        with pytest.raises(ClaimLostError):
            job_store.heartbeat(job_id, first.attempt)

        assert job_store.get_job(job_id).output_key is None

    def test_finished_job_refuses_claim_writes(self, job_store, payload):
        job_id = job_store.add_job(payload)
        claimed = job_store.claim_next_job()
        job_store.update_progress(job_id, FailedProgress(error="boom"), attempt=claimed.attempt)

        with pytest.raises(ClaimLostError):
            job_store.update_progress(job_id, CompletedProgress(download_url="https://cdn/x.mp4"), attempt=claimed.attempt)
        assert job_store.get_job_status(job_id).stage == "failed"

    def test_heartbeat_keeps_job_from_reclaim(self, job_store, engine, payload):
        job_id = job_store.add_job(payload)
        claimed = job_store.claim_next_job()
        backdate_job(engine, job_id)

        job_store.heartbeat(job_id, claimed.attempt)

        assert job_store.reclaim_stale_jobs(timeout_seconds=600, max_attempts=3) == (0, 0)
        assert job_store.get_job(job_id).attempts == 1

    def test_heartbeat_unknown_job(self, job_store):
        with pytest.raises(JobNotFoundError):
            job_store.heartbeat("missing", 1)



class TestRetentionQueries:
    def test_expired_artifacts_listed_until_purged(self, job_store, payload):
        job_id = job_store.add_job(payload)
        job_store.set_output(job_id, f"exports/{job_id}/{job_id}_final.mp4", 1024)
        job_store.update_progress(job_id, CompletedProgress(download_url="https://cdn/x.mp4"))
        later = utcnow() + timedelta(hours=25)

        expired = job_store.list_expired_artifacts(later)
        assert [j.id for j in expired] == [job_id]
        assert expired[0].output_size == 1024

        job_store.mark_artifact_purged(job_id)

        assert job_store.list_expired_artifacts(later) == []
        assert job_store.get_job(job_id).artifact_purged_at is not None

    def test_recent_artifacts_not_listed(self, job_store, payload):
        job_id = job_store.add_job(payload)
        job_store.set_output(job_id, "exports/x.mp4", 1)
        job_store.update_progress(job_id, CompletedProgress(download_url="https://cdn/x.mp4"))

        assert job_store.list_expired_artifacts(utcnow() - timedelta(hours=1)) == []

    def test_count_by_status(self, job_store, payload):
        job_store.add_job(payload, job_id="a")
        job_store.add_job(payload, job_id="b")
        job_store.claim_next_job()

        assert job_store.count_by_status() == {
            "queued": 1,
            "processing": 1,
            "completed": 0,
            "failed": 0,
        }


class TestStorageErrors:
    def test_database_errors_become_storage_errors(self, payload):
        session = MagicMock()
        session.get.side_effect = OperationalError("SELECT", {}, Exception("connection refused"))
        store = JobStore(lambda: session)

        with pytest.raises(StorageError):
            store.get_job_status("any")
        with pytest.raises(StorageError):
            store.add_job(payload)
