"""Render submission and job lifecycle.

``RenderService`` is the only entrypoint that creates jobs. Submission
compiles up front (so bad input is rejected before a job exists), records a
``pending`` job and schedules the actual work as an asyncio task. A
semaphore bounds how many renders run at once; everything that happens
after submission is reported through the job store only.

Job store calls are blocking, so async code runs them in a worker thread.
"""

import asyncio
import logging
import os
import uuid
from contextlib import suppress
from datetime import timedelta
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from shadowstudio.config import Settings
from shadowstudio.exceptions import (
    JobAlreadyFinishedError,
    RenderCancelledError,
    ShadowStudioError,
)
from shadowstudio.render.batch import BatchOrchestrator
from shadowstudio.render.compiler import CommandSpec, compile_render
from shadowstudio.render.executor import RenderOutcome, TranscoderExecutor
from shadowstudio.render.template import RenderTemplate, apply_overrides
from shadowstudio.services.clip_catalog import ClipCatalog
from shadowstudio.services.job_store import JobRecord, JobStatus, JobStore, ProgressLogEntry
from shadowstudio.services.template_library import TemplateLibrary
from shadowstudio.utils.media_info import get_media_info

logger = logging.getLogger(__name__)

Runner = Callable[[asyncio.Event], Awaitable[None]]


class RenderService:
    """Submit, run, cancel and clean up render jobs."""

    def __init__(
        self,
        store: JobStore,
        catalog: ClipCatalog,
        executor: TranscoderExecutor,
        *,
        output_dir: str,
        temp_dir: str,
        font_path: str = "",
        templates: Optional[TemplateLibrary] = None,
        max_concurrency: int = 1,
        batch_max_clips: int = 50,
        retention_days: int = 30,
        recent_limit: int = 50,
    ):
        self.store = store
        self.catalog = catalog
        self.executor = executor
        self.output_dir = output_dir
        self.temp_dir = temp_dir
        self.font_path = font_path
        self.templates = templates or TemplateLibrary()
        self.retention = timedelta(days=retention_days)
        self.recent_limit = recent_limit
        self.batch = BatchOrchestrator(
            executor, temp_dir, font_path=font_path, max_clips=batch_max_clips
        )
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(
        cls, settings: Settings, store: JobStore, catalog: ClipCatalog
    ) -> "RenderService":
        executor = TranscoderExecutor(
            settings.ffmpeg_path,
            timeout_s=settings.render_timeout_s,
            kill_grace_s=settings.render_kill_grace_s,
            error_tail_lines=settings.render_error_tail_lines,
            inspect_media=partial(get_media_info, ffprobe_path=settings.ffprobe_path),
        )
        return cls(
            store,
            catalog,
            executor,
            output_dir=settings.output_dir,
            temp_dir=settings.temp_dir,
            font_path=settings.font_path,
            templates=TemplateLibrary(settings.templates_dir),
            max_concurrency=settings.render_max_concurrency,
            batch_max_clips=settings.render_batch_max_clips,
            retention_days=settings.job_retention_days,
            recent_limit=settings.recent_jobs_limit,
        )

    # =========================================================================
    # Templates
    # =========================================================================

    def resolve_template(
        self, template_id: str, overrides: Optional[dict[str, Any]] = None
    ) -> RenderTemplate:
        """Preset or saved template ``template_id`` with optional overrides.

        Raises:
            TemplateNotFoundError: unknown id
            InvalidTemplateError: an override cannot be applied
        """
        return apply_overrides(self.templates.get(template_id), overrides)

    async def save_template(self, template: RenderTemplate) -> RenderTemplate:
        return await asyncio.to_thread(self.templates.save, template)

    async def delete_template(self, template_id: str) -> None:
        await asyncio.to_thread(self.templates.delete, template_id)

    # =========================================================================
    # Submission
    # =========================================================================

    def output_path_for(self, job_id: str, template: RenderTemplate) -> str:
        return str(Path(self.output_dir) / f"{job_id}.{template.output_format.value}")

    async def submit_clip(self, clip_id: str, template: RenderTemplate) -> JobRecord:
        """Compile and queue a single-clip render.

        Raises:
            ClipNotFoundError: unknown clip
            CompilationError: template/clip cannot be compiled (no job created)
        """
        clip = self.catalog.get(clip_id)
        job_id = str(uuid.uuid4())
        spec = compile_render(
            clip, template, self.output_path_for(job_id, template), font_path=self.font_path
        )
        record = await asyncio.to_thread(
            self.store.create,
            [clip.id],
            template.id,
            template=template.to_dict(),
            estimated_time_s=spec.estimated_duration_s,
            job_id=job_id,
        )
        self._schedule(record.id, lambda event: self._run_clip(record.id, spec, event))
        return record

    async def submit_batch(self, clip_ids: list[str], template: RenderTemplate) -> JobRecord:
        """Compile and queue a multi-clip render merged into one file."""
        clips = self.catalog.get_many(clip_ids)
        job_id = str(uuid.uuid4())
        specs = self.batch.compile_batch(clips, template, os.path.join(self.temp_dir, job_id))
        record = await asyncio.to_thread(
            self.store.create,
            [clip.id for clip in clips],
            template.id,
            template=template.to_dict(),
            estimated_time_s=round(sum(s.estimated_duration_s for s in specs), 6),
            kind="batch",
            job_id=job_id,
        )
        output_path = self.output_path_for(job_id, template)

        async def run(event: asyncio.Event) -> None:
            result = await self.batch.render_batch(
                clips, template, output_path, self._progress_callback(job_id), event
            )
            await self._mark_completed(
                job_id,
                result.output_path,
                output_size=result.file_size,
                output_duration_s=result.duration_s,
            )

        self._schedule(record.id, run)
        return record

    # =========================================================================
    # Execution
    # =========================================================================

    async def _update(self, job_id: str, **patch: Any) -> JobRecord:
        return await asyncio.to_thread(self.store.update, job_id, **patch)

    def _schedule(self, job_id: str, runner: Runner) -> None:
        event = asyncio.Event()
        self._cancel_events[job_id] = event
        task = asyncio.create_task(self._guarded(job_id, runner, event))
        self._tasks[job_id] = task

        def forget(_task: asyncio.Task) -> None:
            self._tasks.pop(job_id, None)
            self._cancel_events.pop(job_id, None)

        task.add_done_callback(forget)

    def _progress_callback(self, job_id: str) -> Callable[[int, str], Awaitable[None]]:
        async def on_progress(percent: int, stage: str) -> None:
            await self._update(job_id, progress=percent, current_stage=stage)

        return on_progress

    async def _mark_completed(self, job_id: str, output_path: str, **fields: Any) -> None:
        """Record success, or remove the output if the job was closed meanwhile."""
        record = await self._update(
            job_id,
            status=JobStatus.COMPLETED,
            current_stage="Completed",
            output_path=output_path,
            **fields,
        )
        if record.status != JobStatus.COMPLETED:
            logger.info(
                f"[JOB] {job_id} became {record.status.value} before completion, "
                f"removing {output_path}"
            )
            with suppress(FileNotFoundError):
                os.remove(output_path)

    async def _guarded(self, job_id: str, runner: Runner, event: asyncio.Event) -> None:
        async with self._semaphore:
            if event.is_set():
                return
            record = await self._update(
                job_id, status=JobStatus.PROCESSING, current_stage="Starting"
            )
            if record.is_terminal:
                return
            try:
                await runner(event)
            except RenderCancelledError:
                await self._update(job_id, status=JobStatus.CANCELLED, current_stage="Cancelled")
            except ShadowStudioError as e:
                logger.error(f"[JOB] {job_id} failed: [{e.code}] {e.message}")
                await self._update(
                    job_id,
                    status=JobStatus.FAILED,
                    current_stage="Failed",
                    error_code=e.code,
                    error_message=e.message,
                )
            except asyncio.CancelledError:
                # No await while the task is being cancelled
                self.store.update(job_id, status=JobStatus.CANCELLED, current_stage="Cancelled")
                raise
            except Exception as e:
                logger.exception(f"[JOB] {job_id} crashed")
                await self._update(
                    job_id,
                    status=JobStatus.FAILED,
                    current_stage="Failed",
                    error_code="INTERNAL_ERROR",
                    error_message=str(e),
                )

    async def _run_clip(self, job_id: str, spec: CommandSpec, event: asyncio.Event) -> None:
        Path(spec.output_path).parent.mkdir(parents=True, exist_ok=True)
        result = await self.executor.execute(spec, self._progress_callback(job_id), event)
        if result.outcome != RenderOutcome.COMPLETED:
            result.raise_for_outcome(spec.clip_id, self.executor.timeout_s)
        await self._mark_completed(
            job_id,
            result.output_path,
            output_size=result.file_size,
            output_duration_s=result.duration_s,
            actual_time_s=round(result.elapsed_s, 3),
        )

    async def wait(self, job_id: str) -> JobRecord:
        """Wait for a scheduled job's task to finish and return its record."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return await asyncio.to_thread(self.store.get, job_id)

    # =========================================================================
    # Queries and lifecycle
    # =========================================================================

    async def get_job(self, job_id: str) -> JobRecord:
        return await asyncio.to_thread(self.store.get, job_id)

    async def get_progress_logs(self, job_id: str) -> list[ProgressLogEntry]:
        return await asyncio.to_thread(self.store.get_progress_logs, job_id)

    async def list_active(self) -> list[JobRecord]:
        return await asyncio.to_thread(self.store.list_active)

    async def list_recent(self, limit: Optional[int] = None) -> list[JobRecord]:
        return await asyncio.to_thread(self.store.list_recent, limit or self.recent_limit)

    async def list_by_clip(self, clip_id: str) -> list[JobRecord]:
        return await asyncio.to_thread(self.store.list_by_clip, clip_id)

    async def stats(self) -> dict[str, Any]:
        return await asyncio.to_thread(self.store.stats)

    async def cancel(self, job_id: str) -> JobRecord:
        """Cancel a pending or processing job.

        Raises:
            JobNotFoundError: unknown job
            JobAlreadyFinishedError: job reached a terminal status first
        """
        record = await asyncio.to_thread(self.store.get, job_id)
        if record.is_terminal:
            raise JobAlreadyFinishedError(job_id, record.status.value)

        record = await self._update(job_id, status=JobStatus.CANCELLED, current_stage="Cancelled")
        if record.status != JobStatus.CANCELLED:
            raise JobAlreadyFinishedError(job_id, record.status.value)

        event = self._cancel_events.get(job_id)
        if event is not None:
            event.set()
        logger.info(f"[JOB] Cancellation requested for {job_id}")
        return record

    async def delete_job(self, job_id: str) -> None:
        """Delete a finished job record and its output file."""
        record = await asyncio.to_thread(self.store.get, job_id)
        await asyncio.to_thread(self.store.delete, job_id)
        if record.output_path:
            with suppress(FileNotFoundError):
                os.remove(record.output_path)

    async def cleanup_old_jobs(self) -> int:
        """Retention cleanup of terminal jobs."""
        return await asyncio.to_thread(self.store.cleanup, self.retention)

    async def recover_interrupted(self) -> int:
        """Close out jobs left active by a previous process.

        Processing jobs become failed and pending jobs cancelled; returns the
        number of jobs touched.
        """
        count = 0
        for record in await self.list_active():
            if record.id in self._tasks:
                continue
            if record.status == JobStatus.PROCESSING:
                await self._update(
                    record.id,
                    status=JobStatus.FAILED,
                    current_stage="Failed",
                    error_code="RENDER_FAILED",
                    error_message="Render interrupted by a service restart",
                )
            else:
                await self._update(record.id, status=JobStatus.CANCELLED, current_stage="Cancelled")
            count += 1
        if count:
            logger.info(f"[JOB] Closed {count} jobs interrupted by a restart")
        return count

    async def shutdown(self) -> None:
        """Cancel every in-flight job and wait for the processes to stop."""
        for job_id in list(self._tasks):
            try:
                await self.cancel(job_id)
            except ShadowStudioError:
                continue
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
