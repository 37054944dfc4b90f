from src.schemas.envelope import ErrorInfo
from src.schemas.export import (
    ExportJobPayload,
    ExportJobRecord,
    ExportProgress,
    ExportSettings,
    FocusSegment,
    JobStatus,
    Recording,
    Transcription,
    VideoSection,
)

__all__ = [
    "ErrorInfo",
    "ExportJobPayload",
    "ExportJobRecord",
    "ExportProgress",
    "ExportSettings",
    "FocusSegment",
    "JobStatus",
    "Recording",
    "Transcription",
    "VideoSection",
]
