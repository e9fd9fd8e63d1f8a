from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class RenderJobRequest(BaseModel):
    clip_id: str
    template_id: str = "shadowing_basic_16_9"
    # Field overrides applied on top of the preset (e.g. {"quality": "high"})
    template_overrides: dict[str, Any] | None = None


class RenderBatchRequest(BaseModel):
    clip_ids: list[str] = Field(min_length=1)
    template_id: str = "shadowing_basic_16_9"
    template_overrides: dict[str, Any] | None = None


class RenderJobResponse(BaseModel):
    id: str
    kind: str
    clip_id: str
    clip_ids: list[str]
    template_id: str
    status: str
    progress: int
    current_stage: str | None
    output_path: str | None
    output_size: int | None
    output_duration_s: float | None
    estimated_time_s: float | None
    actual_time_s: float | None
    error_code: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    class Config:
        from_attributes = True


class RenderJobListResponse(BaseModel):
    jobs: list[RenderJobResponse]
    total: int


class TemplateListResponse(BaseModel):
    templates: list[dict[str, Any]]


class TemplateSaveRequest(BaseModel):
    # Same shape as a listed template; "resolution" is ignored
    template: dict[str, Any]


class TemplateResponse(BaseModel):
    template: dict[str, Any]
    builtin: bool


class ProgressLogResponse(BaseModel):
    stage: str | None
    progress: int
    status: str
    timestamp: datetime


class ProgressLogListResponse(BaseModel):
    job_id: str
    logs: list[ProgressLogResponse]


class RenderStatsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    active: int
    average_render_time_s: float | None = None


class TranscoderHealthResponse(BaseModel):
    installed: bool
    version: str | None = None
    path: str


class CleanupResponse(BaseModel):
    removed: int
