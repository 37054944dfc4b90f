"""Schemas for export jobs: payload snapshot, edit decisions, progress.

JSON field names are camelCase on the wire (``startTime``, ``downloadUrl``),
snake_case in Python. Models accept either.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobStatus(str, Enum):
    """Persisted coarse status of an export job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


# ============================================================================
# Edit decisions
# ============================================================================


class Recording(CamelModel):
    id: str
    recording_url: str = Field(min_length=1)
    duration: float = Field(default=0.0, ge=0)
    participant_id: str = "unknown"


class Word(CamelModel):
    word: str
    start: float
    end: float
    confidence: float | None = None


class Transcription(CamelModel):
    id: str
    transcript_text: str = ""
    # Either {"words": [...]} as stored by the transcription service or a bare list
    word_timestamps: dict[str, Any] | list[Any] | None = None
    participant_id: str | None = None

    def words(self) -> list[Word]:
        raw = self.word_timestamps
        if isinstance(raw, dict):
            raw = raw.get("words") or []
        if not raw:
            return []
        return [Word.model_validate(w) for w in raw]


class VideoSection(CamelModel):
    id: str
    start_time: float = Field(ge=0)
    end_time: float
    is_deleted: bool = False
    playback_speed: float = Field(default=1.0, gt=0)
    focused_participant_id: str | None = None
    removal_reason: str | None = None  # informational label on AI gap sections

    @model_validator(mode="after")
    def _check_range(self) -> "VideoSection":
        if self.start_time >= self.end_time:
            raise ValueError(
                f"Section {self.id}: startTime ({self.start_time}) must be before endTime ({self.end_time})"
            )
        return self

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


class FocusSegment(CamelModel):
    id: str
    start_time: float = Field(ge=0)
    end_time: float
    focused_participant_id: str
    type: Literal["conversation", "monologue", "silence"] = "conversation"


class ValidSegment(CamelModel):
    """A time range the AI pass recommends keeping."""

    start_time: float = Field(ge=0)
    end_time: float
    confidence: float = Field(default=1.0, ge=0, le=1)
    quality: str = "medium"

    @model_validator(mode="after")
    def _check_range(self) -> "ValidSegment":
        if self.start_time >= self.end_time:
            raise ValueError("startTime must be before endTime")
        return self


class SpeedRecommendation(CamelModel):
    start_time: float = Field(ge=0)
    end_time: float
    speed: float = Field(gt=0)
    reason: str | None = None


class AISuggestions(CamelModel):
    valid_segments: list[ValidSegment] = Field(default_factory=list)
    speed_recommendations: list[SpeedRecommendation] = Field(default_factory=list)


class ExportSettings(CamelModel):
    format: Literal["mp4", "webm"] = "mp4"
    quality: Literal["720p", "1080p", "4k"] = "720p"
    framerate: Literal[25, 30, 60] = 30
    include_subtitles: bool = True


class ExportJobPayload(CamelModel):
    """Immutable snapshot taken at submission time."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    room_id: str
    recordings: list[Recording]
    video_sections: list[VideoSection]
    focus_segments: list[FocusSegment] = Field(default_factory=list)
    transcriptions: list[Transcription] = Field(default_factory=list)
    export_settings: ExportSettings = Field(default_factory=ExportSettings)


# ============================================================================
# Progress (tagged union keyed by stage)
# ============================================================================


class _ProgressBase(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    percentage: int = Field(default=0, ge=0, le=100)
    message: str = ""


class QueuedProgress(_ProgressBase):
    stage: Literal["queued"] = "queued"
    message: str = "Job queued"


class DownloadingProgress(_ProgressBase):
    stage: Literal["downloading"] = "downloading"


class ProcessingProgress(_ProgressBase):
    stage: Literal["processing"] = "processing"
    step: Literal["subtitles", "compose"] | None = None


class UploadingProgress(_ProgressBase):
    stage: Literal["uploading"] = "uploading"


class CompletedProgress(_ProgressBase):
    stage: Literal["completed"] = "completed"
    percentage: int = 100
    download_url: str

    @field_validator("percentage", mode="before")
    @classmethod
    def _always_full(cls, v: Any) -> int:
        return 100


class FailedProgress(_ProgressBase):
    stage: Literal["failed"] = "failed"
    error: str

    @field_validator("percentage", mode="before")
    @classmethod
    def _reset(cls, v: Any) -> int:
        return 0


ExportProgress = Annotated[
    Union[
        QueuedProgress,
        DownloadingProgress,
        ProcessingProgress,
        UploadingProgress,
        CompletedProgress,
        FailedProgress,
    ],
    Field(discriminator="stage"),
]

progress_adapter: TypeAdapter[ExportProgress] = TypeAdapter(ExportProgress)

STAGE_TO_STATUS: dict[str, JobStatus] = {
    "queued": JobStatus.QUEUED,
    "downloading": JobStatus.PROCESSING,
    "processing": JobStatus.PROCESSING,
    "uploading": JobStatus.PROCESSING,
    "completed": JobStatus.COMPLETED,
    "failed": JobStatus.FAILED,
}


def parse_progress(data: dict[str, Any]) -> ExportProgress:
    return progress_adapter.validate_python(data)


# ============================================================================
# API request / response models
# ============================================================================


class ExportSubmitRequest(CamelModel):
    room_id: str = ""
    recordings: list[Recording] = Field(default_factory=list)
    video_sections: list[VideoSection] = Field(default_factory=list)
    focus_segments: list[FocusSegment] = Field(default_factory=list)
    transcriptions: list[Transcription] = Field(default_factory=list)
    export_settings: ExportSettings = Field(default_factory=ExportSettings)
    ai_suggestions: AISuggestions | None = None
    job_id: str | None = None  # optional idempotency key


class ExportSubmitResponse(CamelModel):
    job_id: str
    message: str = "Export job queued successfully"


class ExportDownloadResponse(CamelModel):
    download_url: str
    filename: str


class ExportCancelResponse(CamelModel):
    job_id: str
    cancel_requested: bool


# ============================================================================
# Job record snapshot
# ============================================================================


class ExportJobRecord(CamelModel):
    """Read-only snapshot of a persisted export job."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    room_id: str
    status: JobStatus
    progress: dict[str, Any]
    download_url: str | None = None
    error_message: str | None = None
    output_key: str | None = None
    output_size: int | None = None
    attempts: int = 0
    cancel_requested: bool = False
    created_at: datetime
    updated_at: datetime
    claimed_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    artifact_purged_at: datetime | None = None

    @field_validator(
        "created_at",
        "updated_at",
        "claimed_at",
        "started_at",
        "completed_at",
        "artifact_purged_at",
    )
    @classmethod
    def _assume_utc(cls, v: datetime | None) -> datetime | None:
        # SQLite drops tzinfo; all stored times are UTC
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v
