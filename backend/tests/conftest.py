"""
Pytest fixtures for the export pipeline tests.

The job store runs on a file-backed SQLite database (so several connections can
race on claims) and storage on a temp directory. Nothing here needs ffmpeg or
network access; tests that do are marked with ``requires_ffmpeg``.
"""

import shutil
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import update

from src.config import Settings
from src.models.base import utcnow
from src.models.database import create_db_engine, create_session_factory, init_db
from src.schemas.export import (
    ExportJobPayload,
    ExportSettings,
    Recording,
    Transcription,
    VideoSection,
)
from src.services.export_queue import JobStore, export_jobs
from src.services.storage_service import LocalStorageService


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring ffmpeg/ffprobe on PATH (skipped otherwise)",
    )


requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg/ffprobe not available",
)


@pytest.fixture
def engine(tmp_path: Path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def job_store(engine) -> JobStore:
    return JobStore(create_session_factory(engine))


@pytest.fixture
def storage(tmp_path: Path) -> LocalStorageService:
    return LocalStorageService(str(tmp_path / "storage"), "http://testserver")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'jobs.db'}",
        use_local_storage=True,
        local_storage_path=str(tmp_path / "storage"),
        export_temp_dir=str(tmp_path / "work"),
        worker_poll_interval_seconds=0.01,
        worker_error_backoff_seconds=0.01,
        _env_file=None,
    )


def make_payload(
    room_id: str = "room-1",
    sections: list[VideoSection] | None = None,
    recordings: list[Recording] | None = None,
    transcriptions: list[Transcription] | None = None,
    **export_settings,
) -> ExportJobPayload:
    recordings = recordings or [
        Recording(id="rec-a", recording_url="https://media.example.com/a.mp4", duration=60, participant_id="alice"),
        Recording(id="rec-b", recording_url="https://media.example.com/b.mp4", duration=58, participant_id="bob"),
    ]
    sections = sections or [VideoSection(id="s1", start_time=0, end_time=60)]
    return ExportJobPayload(
        room_id=room_id,
        recordings=recordings,
        video_sections=sections,
        transcriptions=transcriptions or [],
        export_settings=ExportSettings(**export_settings),
    )


@pytest.fixture
def payload() -> ExportJobPayload:
    return make_payload()


def backdate_job(engine, job_id: str, hours: int = 1) -> None:
    """Make a job look like its worker stopped writing ``hours`` ago."""
    with engine.begin() as conn:
        conn.execute(
            update(export_jobs)
            .where(export_jobs.c.id == job_id)
            .values(updated_at=utcnow() - timedelta(hours=hours))
        )
