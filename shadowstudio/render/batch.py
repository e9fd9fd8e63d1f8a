"""Batch orchestrator: several clips rendered into one continuous file.

Each clip is rendered to a private segment under a per-run temp directory,
then the segments are merged with the concat demuxer in stream-copy mode.
The temp directory is removed whatever happens.
"""

import asyncio
import logging
import os
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from shadowstudio.exceptions import CompilationError, MergeParametersMismatchError
from shadowstudio.render.compiler import (
    CommandSpec,
    compile_concat,
    compile_render,
    format_concat_manifest,
)
from shadowstudio.render.executor import ProgressCallback, TranscoderExecutor, emit_progress
from shadowstudio.render.template import ClipRef, RenderTemplate

logger = logging.getLogger(__name__)

MANIFEST_NAME = "concat_list.txt"


@dataclass
class BatchResult:
    """Final artifact of a successful batch."""

    output_path: str
    file_size: int
    duration_s: Optional[float]
    estimated_duration_s: float
    segment_durations: list[Optional[float]] = field(default_factory=list)

    @property
    def clip_count(self) -> int:
        return len(self.segment_durations)


class BatchOrchestrator:
    """Render clips one after another and stream-copy merge the results."""

    def __init__(
        self,
        executor: TranscoderExecutor,
        temp_dir: str,
        *,
        font_path: str = "",
        max_clips: int = 50,
    ):
        self.executor = executor
        self.temp_dir = temp_dir
        self.font_path = font_path
        self.max_clips = max_clips

    def compile_batch(
        self, clips: list[ClipRef], template: RenderTemplate, run_dir: str
    ) -> list[CommandSpec]:
        """Compile every clip up front so bad input fails before any process runs."""
        if not clips:
            raise CompilationError("A batch needs at least one clip")
        if len(clips) > self.max_clips:
            raise CompilationError(
                f"A batch accepts at most {self.max_clips} clips, got {len(clips)}"
            )

        ext = template.output_format.value
        specs = [
            compile_render(
                clip,
                template,
                os.path.join(run_dir, f"segment_{index:03d}.{ext}"),
                font_path=self.font_path,
            )
            for index, clip in enumerate(clips)
        ]
        self._check_mergeable(specs)
        return specs

    @staticmethod
    def _check_mergeable(specs: list[CommandSpec]) -> None:
        reference = specs[0].encode_params
        for spec in specs[1:]:
            if spec.encode_params != reference:
                raise MergeParametersMismatchError(
                    f"Segment for clip {spec.clip_id} uses {spec.encode_params}, "
                    f"expected {reference}"
                )

    async def render_batch(
        self,
        clips: list[ClipRef],
        template: RenderTemplate,
        output_path: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchResult:
        """Render ``clips`` in order into ``output_path``.

        Fails fast: the first clip that does not complete aborts the batch and
        its error is raised (``TranscoderError``, ``RenderTimeoutError`` or
        ``RenderCancelledError``). Aggregate progress stays below 100; the
        caller marks completion.
        """
        run_dir = os.path.join(self.temp_dir, f"batch_{uuid.uuid4().hex}")
        specs = self.compile_batch(clips, template, run_dir)
        total = len(specs)
        estimated = round(sum(spec.estimated_duration_s for spec in specs), 6)

        Path(run_dir).mkdir(parents=True, exist_ok=False)
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"[BATCH] Rendering {total} clips into {output_path} (temp={run_dir})")

        last_sent = 0

        async def report(done: int, current: int, stage: str) -> None:
            nonlocal last_sent
            aggregate = min(99, int(100 * (done + current / 100) / total))
            if aggregate > last_sent:
                last_sent = aggregate
                await emit_progress(on_progress, aggregate, stage)

        try:
            segments: list[str] = []
            durations: list[Optional[float]] = []
            for index, spec in enumerate(specs):
                stage = f"Rendering clip {index + 1}/{total}"

                async def clip_progress(percent: int, _stage: str, index=index, stage=stage) -> None:
                    await report(index, percent, stage)

                result = await self.executor.execute(spec, clip_progress, cancel_event, stage)
                if not result.succeeded:
                    logger.error(
                        f"[BATCH] Clip {index + 1}/{total} ({spec.clip_id}) ended as "
                        f"{result.outcome.value}, aborting batch"
                    )
                    result.raise_for_outcome(spec.clip_id, self.executor.timeout_s)
                segments.append(spec.output_path)
                durations.append(result.duration_s)

            if total == 1:
                shutil.move(segments[0], output_path)
                return BatchResult(
                    output_path=output_path,
                    file_size=os.path.getsize(output_path),
                    duration_s=durations[0],
                    estimated_duration_s=estimated,
                    segment_durations=durations,
                )

            manifest_path = os.path.join(run_dir, MANIFEST_NAME)
            with open(manifest_path, "w", encoding="utf-8") as f:
                f.write(format_concat_manifest(segments))

            merge = compile_concat(manifest_path, output_path, specs[0].encode_params, estimated)
            logger.info(f"[BATCH] Merging {total} segments (stream copy)")
            result = await self.executor.execute(merge, None, cancel_event, "Merging")
            if not result.succeeded:
                logger.error(f"[BATCH] Merge ended as {result.outcome.value}: {result.error}")
                result.raise_for_outcome(None, self.executor.timeout_s)

            logger.info(f"[BATCH] Merge successful: {output_path}")
            return BatchResult(
                output_path=output_path,
                file_size=result.file_size or 0,
                duration_s=result.duration_s,
                estimated_duration_s=estimated,
                segment_durations=durations,
            )
        finally:
            shutil.rmtree(run_dir, ignore_errors=True)
            logger.info(f"[BATCH] Cleaned up temp directory {run_dir}")
