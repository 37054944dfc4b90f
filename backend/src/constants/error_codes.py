"""Error codes dictionary for the export API.

This is the single source of truth for all error codes, their retryability,
and suggested recovery actions. Used by exception handlers to generate
machine-readable error responses.
"""

from typing import Any, TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_action: str
    suggested_fix: str
    parameters: dict[str, Any]


# Error codes dictionary - single source of truth
ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Submission errors (not retryable, fix input)
    # ==========================================================================
    "INVALID_INPUT": {
        "retryable": False,
        "suggested_fix": "Check recordings, room id and video sections in the payload",
    },
    # ==========================================================================
    # Lookup errors
    # ==========================================================================
    "JOB_NOT_FOUND": {
        "retryable": False,
    },
    "EXPORT_NOT_READY": {
        "retryable": True,
        "suggested_action": "poll_status",
        "parameters": {"delay_ms": 5000},
    },
    "ARTIFACT_EXPIRED": {
        "retryable": False,
        "suggested_fix": "Submit a new export for this room",
    },
    "JOB_CANCELLED": {
        "retryable": False,
    },
    "CLAIM_LOST": {
        "retryable": False,
    },
    # ==========================================================================
    # Pipeline stage errors (reported on the job, never retried automatically)
    # ==========================================================================
    "DOWNLOAD_FAILED": {
        "retryable": True,
        "suggested_action": "resubmit",
    },
    "COMPOSITION_FAILED": {
        "retryable": False,
    },
    "UPLOAD_FAILED": {
        "retryable": True,
        "suggested_action": "resubmit",
    },
    # ==========================================================================
    # System errors (retryable with backoff)
    # ==========================================================================
    "STORAGE_UNAVAILABLE": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 2000, "max_retries": 3},
    },
    "INTERNAL_ERROR": {
        "retryable": True,
        "suggested_action": "retry_with_backoff",
        "parameters": {"delay_ms": 2000, "max_retries": 2},
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification by code.

    Args:
        code: The error code

    Returns:
        ErrorCodeSpec with retryable flag and suggested actions
    """
    return ERROR_CODES.get(code, {"retryable": False})
