"""Render API endpoints.

Submission returns immediately with a ``pending`` job; callers poll
``GET /render/jobs/{job_id}`` until the job reaches a terminal status.
"""

import logging
from typing import Any, Literal

from fastapi import APIRouter, Query, status

from shadowstudio.api.deps import RenderServiceDep
from shadowstudio.exceptions import InvalidTemplateError
from shadowstudio.render.template import RenderTemplate
from shadowstudio.schemas.render import (
    CleanupResponse,
    ProgressLogListResponse,
    ProgressLogResponse,
    RenderBatchRequest,
    RenderJobListResponse,
    RenderJobRequest,
    RenderJobResponse,
    RenderStatsResponse,
    TemplateListResponse,
    TemplateResponse,
    TemplateSaveRequest,
    TranscoderHealthResponse,
)
from shadowstudio.services.job_store import JobRecord

router = APIRouter()
logger = logging.getLogger(__name__)


def _to_response(record: JobRecord) -> RenderJobResponse:
    return RenderJobResponse.model_validate(record.to_dict())


def _to_list(records: list[JobRecord]) -> RenderJobListResponse:
    return RenderJobListResponse(jobs=[_to_response(r) for r in records], total=len(records))


def _parse_template(data: dict[str, Any]) -> RenderTemplate:
    if "id" not in data:
        raise InvalidTemplateError(["id is required"])
    try:
        return RenderTemplate.from_dict(data)
    except (TypeError, ValueError) as e:
        raise InvalidTemplateError([str(e)]) from e

@router.post(
    "/render/jobs",
    response_model=RenderJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_render_job(request: RenderJobRequest, service: RenderServiceDep) -> RenderJobResponse:
    """Queue a single-clip render."""
    template = service.resolve_template(request.template_id, request.template_overrides)
    record = await service.submit_clip(request.clip_id, template)
    logger.info(f"[API] Queued render job {record.id} for clip {request.clip_id}")
    return _to_response(record)


@router.post(
    "/render/batches",
    response_model=RenderJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_render_batch(request: RenderBatchRequest, service: RenderServiceDep) -> RenderJobResponse:
    """Queue a multi-clip render merged into one output file."""
    template = service.resolve_template(request.template_id, request.template_overrides)
    record = await service.submit_batch(request.clip_ids, template)
    logger.info(f"[API] Queued batch job {record.id} for {len(request.clip_ids)} clips")
    return _to_response(record)


@router.get("/render/jobs", response_model=RenderJobListResponse)
async def list_render_jobs(
    service: RenderServiceDep,
    scope: Literal["active", "recent"] = "recent",
    clip_id: str | None = None,
    limit: int | None = Query(default=None, ge=1, le=500),
) -> RenderJobListResponse:
    """List active jobs, recent jobs, or every job of one clip."""
    if clip_id is not None:
        return _to_list(await service.list_by_clip(clip_id))
    if scope == "active":
        return _to_list(await service.list_active())
    return _to_list(await service.list_recent(limit))


@router.get("/render/jobs/{job_id}", response_model=RenderJobResponse)
async def get_render_job(job_id: str, service: RenderServiceDep) -> RenderJobResponse:
    """Job status, progress, output (when completed) and error (when failed)."""
    return _to_response(await service.get_job(job_id))


@router.get("/render/jobs/{job_id}/logs", response_model=ProgressLogListResponse)
async def get_render_job_logs(job_id: str, service: RenderServiceDep) -> ProgressLogListResponse:
    """Progress history of one job, oldest first."""
    entries = await service.get_progress_logs(job_id)
    return ProgressLogListResponse(
        job_id=job_id,
        logs=[ProgressLogResponse.model_validate(entry.to_dict()) for entry in entries],
    )


@router.delete("/render/jobs/{job_id}", response_model=RenderJobResponse)
async def cancel_render_job(job_id: str, service: RenderServiceDep) -> RenderJobResponse:
    """Cancel a pending or processing job (409 once it has finished)."""
    return _to_response(await service.cancel(job_id))


@router.delete("/render/jobs/{job_id}/record", status_code=status.HTTP_204_NO_CONTENT)
async def delete_render_job(job_id: str, service: RenderServiceDep) -> None:
    """Delete a finished job record and its output file."""
    await service.delete_job(job_id)


@router.post("/render/cleanup", response_model=CleanupResponse)
async def cleanup_render_jobs(service: RenderServiceDep) -> CleanupResponse:
    """Delete finished jobs older than the retention window."""
    return CleanupResponse(removed=await service.cleanup_old_jobs())


@router.get("/render/templates", response_model=TemplateListResponse)
async def list_templates(service: RenderServiceDep, category: str | None = None) -> TemplateListResponse:
    """Built-in presets followed by saved templates."""
    templates = service.templates.list_templates(category)
    return TemplateListResponse(templates=[t.to_dict() for t in templates])


@router.get("/render/templates/{template_id}", response_model=TemplateResponse)
async def get_template(template_id: str, service: RenderServiceDep) -> TemplateResponse:
    template = service.templates.get(template_id)
    return TemplateResponse(
        template=template.to_dict(), builtin=service.templates.is_preset(template_id)
    )


@router.post("/render/templates", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
async def save_template(request: TemplateSaveRequest, service: RenderServiceDep) -> TemplateResponse:
    """Save a custom template, replacing an earlier one with the same id."""
    template = await service.save_template(_parse_template(request.template))
    logger.info(f"[API] Saved template {template.id}")
    return TemplateResponse(template=template.to_dict(), builtin=False)


@router.delete("/render/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(template_id: str, service: RenderServiceDep) -> None:
    await service.delete_template(template_id)


@router.get("/render/stats", response_model=RenderStatsResponse)
async def get_render_stats(service: RenderServiceDep) -> RenderStatsResponse:
    return RenderStatsResponse(**await service.stats())


@router.get("/render/health", response_model=TranscoderHealthResponse)
async def get_transcoder_health(service: RenderServiceDep) -> TranscoderHealthResponse:
    """Whether the transcoder binary is installed and its version."""
    return TranscoderHealthResponse(**await service.executor.check_installation())
