"""Custom exceptions for the export pipeline.

Every failure the pipeline can report maps to one exception class with a
machine-readable code. The worker records ``str(exc)`` on the failed job; the
HTTP layer turns the same exceptions into JSON error responses.
"""

from src.constants.error_codes import get_error_spec
from src.schemas.envelope import ErrorInfo


class ExportError(Exception):
    """Base exception for all export pipeline errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        suggested_fix: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.suggested_fix = suggested_fix
        super().__init__(self.message)

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo for API response."""
        spec = get_error_spec(self.code)
        return ErrorInfo(
            code=self.code,
            message=self.message,
            retryable=spec.get("retryable", False),
            suggested_fix=self.suggested_fix or spec.get("suggested_fix"),
            suggested_action=spec.get("suggested_action"),
            parameters=spec.get("parameters", {}),
        )


# =============================================================================
# Submission / lookup errors
# =============================================================================


class InvalidInputError(ExportError):
    """Malformed or missing payload fields. The job never enters the queue."""

    code = "INVALID_INPUT"
    status_code = 400
    message = "Invalid export request"


class JobNotFoundError(ExportError):
    """Export job not found."""

    code = "JOB_NOT_FOUND"
    status_code = 404
    message = "Export job not found"

    def __init__(self, job_id: str | None = None):
        message = f"Export job not found: {job_id}" if job_id else self.message
        super().__init__(message)


class ExportNotReadyError(ExportError):
    """Download requested before the job completed."""

    code = "EXPORT_NOT_READY"
    status_code = 409
    message = "Export is not ready yet"

    def __init__(self, stage: str | None = None):
        message = f"Export is not ready yet. Status: {stage}" if stage else self.message
        super().__init__(message)


class ArtifactExpiredError(ExportError):
    """The rendered file was purged by retention or is missing from storage."""

    code = "ARTIFACT_EXPIRED"
    status_code = 410
    message = "Export file not found or has been cleaned up"


class JobCancelledError(ExportError):
    code = "JOB_CANCELLED"
    status_code = 409
    message = "Export cancelled"


class ClaimLostError(ExportError):
    """The job was reclaimed and now belongs to another claim.

    The worker holding the old claim must stop without writing.
    """

    code = "CLAIM_LOST"
    status_code = 409
    message = "Job claim lost"

    def __init__(self, job_id: str | None = None, attempt: int | None = None):
        message = f"Claim {attempt} on job {job_id} is no longer current" if job_id else self.message
        super().__init__(message)


# =============================================================================
# Pipeline stage errors
# =============================================================================


class DownloadError(ExportError):
    """A source recording could not be fetched."""

    code = "DOWNLOAD_FAILED"
    status_code = 502
    message = "Failed to download source media"


class CompositionError(ExportError):
    """The media toolchain exited with an error.

    ``diagnostics`` holds the tail of the toolchain's stderr.
    """

    code = "COMPOSITION_FAILED"
    status_code = 500
    message = "Video composition failed"

    def __init__(self, message: str | None = None, *, diagnostics: str = ""):
        self.diagnostics = diagnostics
        msg = message or self.message
        if diagnostics:
            msg = f"{msg}: {diagnostics}"
        super().__init__(msg)


class UploadError(ExportError):
    """The rendered file could not be stored durably."""

    code = "UPLOAD_FAILED"
    status_code = 502
    message = "Failed to upload rendered video"


# =============================================================================
# System errors
# =============================================================================


class StorageError(ExportError):
    """The job store itself is unavailable."""

    code = "STORAGE_UNAVAILABLE"
    status_code = 503
    message = "Job store unavailable"
