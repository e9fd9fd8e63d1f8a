"""Error codes dictionary for the render API.

Single source of truth for error codes, their retryability and a
human-readable recovery hint. Used by ``ShadowStudioError.to_error_info``.
"""

from typing import TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_fix: str


ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Compilation errors (caller programming errors, never retryable)
    # ==========================================================================
    "VALIDATION_ERROR": {
        "retryable": False,
        "suggested_fix": "Fix the request payload and resubmit",
    },
    "COMPILATION_ERROR": {
        "retryable": False,
        "suggested_fix": "Check the template and clip combination",
    },
    "INVALID_REPEAT_COUNT": {
        "retryable": False,
        "suggested_fix": "Use a repeat count of at least 1",
    },
    "MISSING_SUBTITLE_TEXT": {
        "retryable": False,
        "suggested_fix": "Disable the subtitle layer or provide text for it in the clip",
    },
    "INVALID_TEMPLATE": {
        "retryable": False,
        "suggested_fix": "Fix the template fields listed in the message",
    },
    # ==========================================================================
    # Resource errors
    # ==========================================================================
    "JOB_NOT_FOUND": {
        "retryable": False,
        "suggested_fix": "List recent jobs to find a valid job id",
    },
    "CLIP_NOT_FOUND": {
        "retryable": False,
        "suggested_fix": "Check the clip id against the clip catalog",
    },
    "TEMPLATE_NOT_FOUND": {
        "retryable": False,
        "suggested_fix": "GET /api/render/templates lists the available templates",
    },
    # ==========================================================================
    # Conflicts
    # ==========================================================================
    "JOB_ALREADY_FINISHED": {
        "retryable": False,
        "suggested_fix": "Submit a new job instead of cancelling a finished one",
    },
    "JOB_STILL_ACTIVE": {
        "retryable": True,
        "suggested_fix": "Cancel the job or wait for it to finish before deleting it",
    },
    "TEMPLATE_ID_TAKEN": {
        "retryable": False,
        "suggested_fix": "Save the template under a different id",
    },
    "INVALID_STATUS_TRANSITION": {
        "retryable": False,
    },
    # ==========================================================================
    # Render errors (recorded on the job, resubmit to retry)
    # ==========================================================================
    "RENDER_FAILED": {
        "retryable": True,
        "suggested_fix": "Inspect error_message and resubmit as a new job",
    },
    "TRANSCODER_FAILED": {
        "retryable": True,
        "suggested_fix": "Inspect the transcoder output in error_message",
    },
    "RENDER_TIMEOUT": {
        "retryable": True,
        "suggested_fix": "Raise RENDER_TIMEOUT_S or render fewer clips per batch",
    },
    "RENDER_CANCELLED": {
        "retryable": True,
    },
    "MERGE_PARAMETERS_MISMATCH": {
        "retryable": False,
        "suggested_fix": "Render every clip of a batch with the same template",
    },
    # ==========================================================================
    # System
    # ==========================================================================
    "INTERNAL_ERROR": {
        "retryable": True,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Look up an error code, falling back to an empty spec."""
    return ERROR_CODES.get(code, {})
