"""
Tests for RenderService: submission, scheduling, cancellation and lifecycle.

Jobs run for real against the fake transcoder, so every state change goes
through the job store exactly as it does in production.
"""

import asyncio
import threading
import time
from dataclasses import replace
from pathlib import Path

import pytest

from shadowstudio.exceptions import (
    ClipNotFoundError,
    InvalidTemplateError,
    JobAlreadyFinishedError,
    JobNotFoundError,
    JobStillActiveError,
    MissingSubtitleTextError,
    TemplateNotFoundError,
)
from shadowstudio.render.executor import TranscoderExecutor
from shadowstudio.render.template import AspectRatio, Quality, RenderTemplate
from shadowstudio.services.clip_catalog import InMemoryClipCatalog
from shadowstudio.services.job_store import InMemoryJobStore, JobStatus
from shadowstudio.services.render_service import RenderService
from shadowstudio.services.template_library import TemplateLibrary
from shadowstudio.utils.media_info import MediaInfo


@pytest.fixture
def build_service(make_transcoder, fake_media_info, tmp_path: Path, sample_clip, english_only_clip):
    """Factory for a service wired to a fake transcoder."""

    def factory(
        max_concurrency: int = 1, timeout_s: float = 30.0, inspect_media=None, **transcoder
    ) -> RenderService:
        fake = make_transcoder(**transcoder)
        executor = TranscoderExecutor(
            fake.path,
            timeout_s=timeout_s,
            kill_grace_s=0.5,
            inspect_media=inspect_media or fake_media_info,
        )
        catalog = InMemoryClipCatalog(
            [
                sample_clip,
                english_only_clip,
                replace(sample_clip, id="clip-3", duration_s=1.0),
            ]
        )
        return RenderService(
            InMemoryJobStore(),
            catalog,
            executor,
            output_dir=str(tmp_path / "renders"),
            temp_dir=str(tmp_path / "tmp"),
            templates=TemplateLibrary(str(tmp_path / "templates")),
            max_concurrency=max_concurrency,
        )

    return factory


async def _wait_for_status(service: RenderService, job_id: str, status: JobStatus, timeout: float = 10.0):
    deadline = time.monotonic() + timeout
    while (await service.get_job(job_id)).status != status:
        if time.monotonic() > deadline:
            raise AssertionError(f"job {job_id} never reached {status.value}")
        await asyncio.sleep(0.02)


class TestSubmitClip:
    """Single-clip renders."""

    @pytest.mark.asyncio
    async def test_completes_with_output(self, build_service):
        service = build_service()

        record = await service.submit_clip("clip-1", RenderTemplate(id="shadowing_basic_16_9"))

        assert record.status == JobStatus.PENDING
        # 3 * 2.2 + 0.5 + 1.0
        assert record.estimated_time_s == pytest.approx(8.1)

        final = await service.wait(record.id)

        assert final.status == JobStatus.COMPLETED
        assert final.progress == 100
        assert final.current_stage == "Completed"
        assert final.output_path.endswith(f"{record.id}.mp4")
        assert Path(final.output_path).exists()
        assert final.output_size == 2048
        assert final.output_duration_s == pytest.approx(7.6)
        assert final.actual_time_s is not None
        assert final.error_code is None

    @pytest.mark.asyncio
    async def test_template_snapshot_stored(self, build_service):
        service = build_service()
        template = service.resolve_template("shorts_basic_9_16")

        record = await service.submit_clip("clip-1", template)
        await service.wait(record.id)

        stored = await service.get_job(record.id)
        assert stored.template_id == "shorts_basic_9_16"
        assert stored.template["resolution"] == {"width": 1080, "height": 1920}

    @pytest.mark.asyncio
    async def test_compile_error_creates_no_job(self, build_service):
        service = build_service()

        with pytest.raises(MissingSubtitleTextError):
            await service.submit_clip("clip-2", RenderTemplate(id="t"))

        assert await service.list_recent() == []

    @pytest.mark.asyncio
    async def test_unknown_clip(self, build_service):
        service = build_service()

        with pytest.raises(ClipNotFoundError):
            await service.submit_clip("nope", RenderTemplate(id="t"))

    @pytest.mark.asyncio
    async def test_transcoder_failure_marks_failed(self, build_service):
        service = build_service(exit_code=1)

        record = await service.submit_clip("clip-1", RenderTemplate(id="t"))
        final = await service.wait(record.id)

        assert final.status == JobStatus.FAILED
        assert final.error_code == "TRANSCODER_FAILED"
        assert "Conversion failed!" in final.error_message
        assert final.progress < 100
        assert final.output_path is None
        assert not Path(service.output_path_for(record.id, RenderTemplate(id="t"))).exists()

    @pytest.mark.asyncio
    async def test_timeout_marks_failed(self, build_service):
        service = build_service(timeout_s=0.5, hang=30)

        record = await service.submit_clip("clip-1", RenderTemplate(id="t"))
        final = await service.wait(record.id)

        assert final.status == JobStatus.FAILED
        assert final.error_code == "RENDER_TIMEOUT"


class TestSubmitBatch:
    """Multi-clip renders merged into one file."""

    @pytest.mark.asyncio
    async def test_batch_completes(self, build_service):
        service = build_service()

        record = await service.submit_batch(["clip-1", "clip-3"], RenderTemplate(id="t"))
        final = await service.wait(record.id)

        assert final.kind == "batch"
        assert final.clip_ids == ["clip-1", "clip-3"]
        # (3 * 2.2 + 1.5) + (3 * 1.0 + 1.5)
        assert final.estimated_time_s == pytest.approx(12.6)
        assert final.status == JobStatus.COMPLETED
        assert final.progress == 100
        assert Path(final.output_path).exists()

    @pytest.mark.asyncio
    async def test_batch_failure(self, build_service):
        service = build_service(fail_on_call=2)

        record = await service.submit_batch(["clip-1", "clip-3"], RenderTemplate(id="t"))
        final = await service.wait(record.id)

        assert final.status == JobStatus.FAILED
        assert final.error_code == "TRANSCODER_FAILED"

    @pytest.mark.asyncio
    async def test_batch_with_unknown_clip(self, build_service):
        service = build_service()

        with pytest.raises(ClipNotFoundError):
            await service.submit_batch(["clip-1", "ghost"], RenderTemplate(id="t"))

        assert await service.list_recent() == []


class TestScheduling:
    """Concurrency limit and cancellation."""

    @pytest.mark.asyncio
    async def test_jobs_run_one_at_a_time(self, build_service):
        service = build_service(max_concurrency=1, hang=0.5)

        first = await service.submit_clip("clip-1", RenderTemplate(id="t"))
        second = await service.submit_clip("clip-3", RenderTemplate(id="t"))
        await _wait_for_status(service, first.id, JobStatus.PROCESSING)

        assert (await service.get_job(second.id)).status == JobStatus.PENDING
        assert [r.id for r in await service.list_active()] == [first.id, second.id]

        assert (await service.wait(first.id)).status == JobStatus.COMPLETED
        assert (await service.wait(second.id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_processing_job(self, build_service):
        service = build_service(hang=30)

        record = await service.submit_clip("clip-1", RenderTemplate(id="t"))
        await _wait_for_status(service, record.id, JobStatus.PROCESSING)

        cancelled = await service.cancel(record.id)
        final = await service.wait(record.id)

        assert cancelled.status == JobStatus.CANCELLED
        assert final.status == JobStatus.CANCELLED
        assert final.output_path is None
        assert final.completed_at is not None

    @pytest.mark.asyncio
    async def test_cancel_pending_job_never_runs(self, build_service):
        service = build_service(hang=0.5)

        first = await service.submit_clip("clip-1", RenderTemplate(id="t"))
        second = await service.submit_clip("clip-3", RenderTemplate(id="t"))
        await service.cancel(second.id)

        assert (await service.wait(first.id)).status == JobStatus.COMPLETED
        final = await service.wait(second.id)
        assert final.status == JobStatus.CANCELLED
        assert final.started_at is None

    @pytest.mark.asyncio
    async def test_cancel_finished_job_conflicts(self, build_service):
        service = build_service()

        record = await service.submit_clip("clip-1", RenderTemplate(id="t"))
        await service.wait(record.id)

        with pytest.raises(JobAlreadyFinishedError):
            await service.cancel(record.id)

    @pytest.mark.asyncio
    async def test_shutdown_cancels_in_flight(self, build_service):
        service = build_service(hang=30)

        record = await service.submit_clip("clip-1", RenderTemplate(id="t"))
        await _wait_for_status(service, record.id, JobStatus.PROCESSING)

        await service.shutdown()

        assert (await service.get_job(record.id)).status == JobStatus.CANCELLED


class TestLifecycle:
    """Deletion, retention and restart recovery."""

    @pytest.mark.asyncio
    async def test_delete_removes_output(self, build_service):
        service = build_service()
        record = await service.submit_clip("clip-1", RenderTemplate(id="t"))
        final = await service.wait(record.id)

        await service.delete_job(record.id)

        assert not Path(final.output_path).exists()
        assert await service.list_recent() == []

    @pytest.mark.asyncio
    async def test_delete_active_job_rejected(self, build_service):
        service = build_service(hang=30)
        record = await service.submit_clip("clip-1", RenderTemplate(id="t"))

        with pytest.raises(JobStillActiveError):
            await service.delete_job(record.id)

        await service.cancel(record.id)
        await service.wait(record.id)

    @pytest.mark.asyncio
    async def test_recover_interrupted(self, build_service):
        service = build_service()
        running = service.store.create(["clip-1"], "t")
        service.store.update(running.id, status="processing")
        queued = service.store.create(["clip-1"], "t")

        assert await service.recover_interrupted() == 2

        failed = await service.get_job(running.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error_code == "RENDER_FAILED"
        assert (await service.get_job(queued.id)).status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cleanup_keeps_recent_jobs(self, build_service):
        service = build_service()
        job = service.store.create(["clip-1"], "t")
        service.store.update(job.id, status="cancelled")

        assert await service.cleanup_old_jobs() == 0
        assert (await service.stats())["total"] == 1


class TestOrphanedOutput:
    """A job closed while its output is being checked keeps no file."""

    @pytest.mark.asyncio
    async def test_cancel_after_exit_removes_output(self, build_service):
        def slow_media_info(path: str) -> MediaInfo:
            time.sleep(0.6)
            return MediaInfo(duration_s=7.6, has_video=True, has_audio=True)

        service = build_service(inspect_media=slow_media_info)
        record = await service.submit_clip("clip-1", RenderTemplate(id="t"))
        output = Path(service.output_path_for(record.id, RenderTemplate(id="t")))
        await _wait_for_status(service, record.id, JobStatus.PROCESSING)

        deadline = time.monotonic() + 10
        while not output.exists():
            assert time.monotonic() < deadline, "transcoder never wrote its output"
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.1)

        await service.cancel(record.id)
        final = await service.wait(record.id)

        assert final.status == JobStatus.CANCELLED
        assert final.output_path is None
        assert not output.exists()

    @pytest.mark.asyncio
    async def test_completed_job_keeps_output(self, build_service):
        service = build_service()
        record = await service.submit_clip("clip-1", RenderTemplate(id="t"))

        final = await service.wait(record.id)

        assert Path(final.output_path).exists()


class TestEventLoop:
    """Blocking job store calls stay off the event loop thread."""

    @pytest.mark.asyncio
    async def test_store_updates_run_in_worker_threads(self, build_service):
        service = build_service()
        loop_thread = threading.get_ident()
        update_threads = []
        update = service.store.update

        def recording_update(job_id, **patch):
            update_threads.append(threading.get_ident())
            return update(job_id, **patch)

        service.store.update = recording_update
        record = await service.submit_clip("clip-1", RenderTemplate(id="t"))
        final = await service.wait(record.id)

        assert final.status == JobStatus.COMPLETED
        assert update_threads
        assert loop_thread not in update_threads


class TestProgressLogs:
    """Per-job progress history recorded while rendering."""

    @pytest.mark.asyncio
    async def test_history_of_completed_job(self, build_service):
        service = build_service()
        record = await service.submit_clip("clip-1", RenderTemplate(id="t"))
        await service.wait(record.id)

        logs = await service.get_progress_logs(record.id)

        assert logs[0].status == JobStatus.PENDING
        assert logs[1].stage == "Starting"
        assert logs[-1].status == JobStatus.COMPLETED
        assert logs[-1].progress == 100
        progress = [entry.progress for entry in logs]
        assert progress == sorted(progress)

    @pytest.mark.asyncio
    async def test_unknown_job(self, build_service):
        service = build_service()

        with pytest.raises(JobNotFoundError):
            await service.get_progress_logs("ghost")


class TestResolveTemplate:
    """Preset and saved template lookup with overrides."""

    def test_preset_without_overrides(self, build_service):
        template = build_service().resolve_template("shorts_basic_9_16")
        assert template.resolution == (1080, 1920)

    def test_overrides_merge_nested_fields(self, build_service):
        template = build_service().resolve_template(
            "shadowing_basic_16_9", {"quality": "high", "font": {"size": 50}}
        )

        assert template.quality == Quality.HIGH
        assert template.font.size == 50
        assert template.id == "shadowing_basic_16_9"

    def test_bad_override_value(self, build_service):
        with pytest.raises(InvalidTemplateError):
            build_service().resolve_template("shadowing_basic_16_9", {"quality": "ultra"})

    def test_non_object_override(self, build_service):
        with pytest.raises(InvalidTemplateError):
            build_service().resolve_template("shadowing_basic_16_9", {"background": "x"})

    def test_unknown_template(self, build_service):
        with pytest.raises(TemplateNotFoundError):
            build_service().resolve_template("missing")

    @pytest.mark.asyncio
    async def test_saved_template_renders(self, build_service):
        service = build_service()
        await service.save_template(
            RenderTemplate(id="my-shorts", aspect_ratio=AspectRatio.VERTICAL, category="custom")
        )

        template = service.resolve_template("my-shorts", {"quality": "low"})
        record = await service.submit_clip("clip-1", template)
        final = await service.wait(record.id)

        assert final.status == JobStatus.COMPLETED
        assert final.template_id == "my-shorts"
        assert final.template["quality"] == "low"

    @pytest.mark.asyncio
    async def test_deleted_template_is_gone(self, build_service):
        service = build_service()
        await service.save_template(RenderTemplate(id="tmp"))

        await service.delete_template("tmp")

        with pytest.raises(TemplateNotFoundError):
            service.resolve_template("tmp")
