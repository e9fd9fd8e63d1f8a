"""Custom exceptions for the shadowstudio render service.

Every exception carries a machine-readable code (see
``shadowstudio.constants.error_codes``) and an HTTP status used by the API
exception handler.
"""

from shadowstudio.constants.error_codes import get_error_spec
from shadowstudio.schemas.envelope import ErrorInfo, ErrorLocation


class ShadowStudioError(Exception):
    """Base exception for all shadowstudio errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        location: ErrorLocation | None = None,
        suggested_fix: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.location = location
        self.suggested_fix = suggested_fix
        super().__init__(self.message)

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo for API response."""
        spec = get_error_spec(self.code)
        return ErrorInfo(
            code=self.code,
            message=self.message,
            location=self.location,
            retryable=spec.get("retryable", False),
            suggested_fix=self.suggested_fix or spec.get("suggested_fix"),
        )


# =============================================================================
# Validation / Compilation Errors (400)
# =============================================================================


class ValidationError(ShadowStudioError):
    """Base class for validation errors."""

    code = "VALIDATION_ERROR"
    status_code = 400


class CompilationError(ValidationError):
    """Template/clip combination cannot be compiled into a command."""

    code = "COMPILATION_ERROR"
    message = "Render request cannot be compiled"


class InvalidRepeatCountError(CompilationError):
    """Repeat count must be positive."""

    code = "INVALID_REPEAT_COUNT"
    message = "Repeat count must be at least 1"

    def __init__(self, repeat_count: int | None = None):
        message = (
            f"Repeat count must be at least 1, got {repeat_count}"
            if repeat_count is not None
            else self.message
        )
        super().__init__(message, location=ErrorLocation(field="repeat_count"))


class MissingSubtitleTextError(CompilationError):
    """A subtitle layer is enabled but the clip has no text for it."""

    code = "MISSING_SUBTITLE_TEXT"
    message = "Subtitle text is missing"

    def __init__(self, layer: str, clip_id: str | None = None, repeat_index: int | None = None):
        message = f"Subtitle layer '{layer}' is enabled but clip {clip_id} has no {layer} text"
        super().__init__(
            message,
            location=ErrorLocation(field=layer, clip_id=clip_id, repeat_index=repeat_index),
        )


class InvalidTemplateError(CompilationError):
    """Template fails validation."""

    code = "INVALID_TEMPLATE"
    message = "Invalid render template"

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Invalid render template: {'; '.join(errors)}")


# =============================================================================
# Resource Not Found Errors (404)
# =============================================================================


class ResourceNotFoundError(ShadowStudioError):
    """Base class for resource not found errors."""

    status_code = 404


class JobNotFoundError(ResourceNotFoundError):
    """Render job not found."""

    code = "JOB_NOT_FOUND"
    message = "Render job not found"

    def __init__(self, job_id: str | None = None):
        message = f"Render job not found: {job_id}" if job_id else self.message
        location = ErrorLocation(job_id=job_id) if job_id else None
        super().__init__(message, location=location)


class ClipNotFoundError(ResourceNotFoundError):
    """Clip not found in the catalog."""

    code = "CLIP_NOT_FOUND"
    message = "Clip not found"

    def __init__(self, clip_id: str | None = None):
        message = f"Clip not found: {clip_id}" if clip_id else self.message
        location = ErrorLocation(clip_id=clip_id) if clip_id else None
        super().__init__(message, location=location)


class TemplateNotFoundError(ResourceNotFoundError):
    """Render template not found."""

    code = "TEMPLATE_NOT_FOUND"
    message = "Render template not found"

    def __init__(self, template_id: str | None = None):
        message = f"Render template not found: {template_id}" if template_id else self.message
        super().__init__(message)


# =============================================================================
# Conflict Errors (409)
# =============================================================================


class ConflictError(ShadowStudioError):
    """Base class for conflict errors."""

    code = "CONFLICT"
    status_code = 409


class JobAlreadyFinishedError(ConflictError):
    """Job reached a terminal status before the request was processed."""

    code = "JOB_ALREADY_FINISHED"
    message = "Render job is already finished"

    def __init__(self, job_id: str | None = None, status: str | None = None):
        message = self.message
        if job_id and status:
            message = f"Render job {job_id} is already {status}"
        location = ErrorLocation(job_id=job_id) if job_id else None
        super().__init__(message, location=location)


class JobStillActiveError(ConflictError):
    """Job is pending or processing and cannot be deleted."""

    code = "JOB_STILL_ACTIVE"
    message = "Render job is still active"

    def __init__(self, job_id: str | None = None):
        message = f"Render job {job_id} is still active; cancel it first" if job_id else self.message
        location = ErrorLocation(job_id=job_id) if job_id else None
        super().__init__(message, location=location)


class InvalidStatusTransitionError(ConflictError):
    """Status change not allowed by the job state machine."""

    code = "INVALID_STATUS_TRANSITION"
    message = "Invalid job status transition"

    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(
            f"Job {job_id} cannot move from {current} to {requested}",
            location=ErrorLocation(job_id=job_id),
        )


class TemplateIdTakenError(ConflictError):
    """A saved template cannot replace a built-in preset."""

    code = "TEMPLATE_ID_TAKEN"
    message = "Template id is reserved by a built-in preset"

    def __init__(self, template_id: str | None = None):
        message = f"Template id {template_id} is a built-in preset" if template_id else self.message
        super().__init__(message)


# =============================================================================
# Render Errors (500)
# =============================================================================


class RenderError(ShadowStudioError):
    """Base class for errors raised while rendering."""

    code = "RENDER_FAILED"
    status_code = 500
    message = "Render failed"


class TranscoderError(RenderError):
    """External transcoder exited with a non-zero status."""

    code = "TRANSCODER_FAILED"
    message = "Transcoder failed"

    def __init__(self, message: str | None = None, *, returncode: int | None = None, clip_id: str | None = None):
        self.returncode = returncode
        location = ErrorLocation(clip_id=clip_id) if clip_id else None
        super().__init__(message, location=location)


class RenderTimeoutError(RenderError):
    """Transcoder exceeded its wall-clock budget and was killed."""

    code = "RENDER_TIMEOUT"
    message = "Render timed out"

    def __init__(self, timeout_s: float | None = None, clip_id: str | None = None):
        message = f"Render timed out after {timeout_s:.0f}s" if timeout_s else self.message
        location = ErrorLocation(clip_id=clip_id) if clip_id else None
        super().__init__(message, location=location)


class MergeParametersMismatchError(RenderError):
    """Segments were encoded with different parameters and cannot be stream-copied."""

    code = "MERGE_PARAMETERS_MISMATCH"
    message = "Cannot merge segments without re-encode: encode parameters differ"


class RenderCancelledError(ShadowStudioError):
    """Render was cancelled by the caller."""

    code = "RENDER_CANCELLED"
    status_code = 409
    message = "Render cancelled"
