from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, TimestampMixin

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class ExportJob(Base, TimestampMixin):
    __tablename__ = "export_jobs"
    __table_args__ = (Index("idx_export_jobs_status_created", "status", "created_at"),)

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    room_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Status: queued, processing, completed, failed
    status: Mapped[str] = mapped_column(String(20), default="queued", nullable=False)

    # Immutable snapshot taken at submission
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    # Tagged progress snapshot keyed by "stage"
    progress: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    # Terminal fields, written alongside progress
    download_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Output
    output_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    output_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    artifact_purged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Claim bookkeeping
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Timing
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<ExportJob {self.id} ({self.status})>"
