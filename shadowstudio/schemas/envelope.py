from pydantic import BaseModel


class ErrorLocation(BaseModel):
    field: str | None = None
    clip_id: str | None = None
    job_id: str | None = None
    repeat_index: int | None = None


class ErrorInfo(BaseModel):
    code: str
    message: str
    location: ErrorLocation | None = None
    retryable: bool = False
    suggested_fix: str | None = None  # Human-readable fix suggestion


class ErrorResponse(BaseModel):
    error: ErrorInfo
