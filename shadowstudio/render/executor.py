"""Process executor: runs one compiled transcoder command.

The executor owns the OS process for the lifetime of a call. It streams the
diagnostic output into a ``ProgressTracker``, enforces the wall-clock timeout,
honours cooperative cancellation and reports the outcome as a
``RenderResult``. It never retries.
"""

import asyncio
import codecs
import contextlib
import inspect
import logging
import os
import shlex
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from shadowstudio.exceptions import (
    RenderCancelledError,
    RenderTimeoutError,
    TranscoderError,
)
from shadowstudio.render.compiler import CommandSpec
from shadowstudio.render.progress import ProgressTracker
from shadowstudio.utils.media_info import MediaInfo, get_media_info

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], Union[None, Awaitable[None]]]

_READ_CHUNK = 4096


class RenderOutcome(Enum):
    """How a transcoder run ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class RenderResult:
    """Result of one transcoder run."""

    outcome: RenderOutcome
    output_path: str
    elapsed_s: float = 0.0
    file_size: Optional[int] = None
    duration_s: Optional[float] = None
    returncode: Optional[int] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == RenderOutcome.COMPLETED

    def raise_for_outcome(self, clip_id: Optional[str] = None, timeout_s: Optional[float] = None) -> None:
        """Raise the matching exception for anything but success."""
        if self.outcome == RenderOutcome.FAILED:
            raise TranscoderError(self.error, returncode=self.returncode, clip_id=clip_id)
        if self.outcome == RenderOutcome.TIMEOUT:
            raise RenderTimeoutError(timeout_s, clip_id=clip_id)
        if self.outcome == RenderOutcome.CANCELLED:
            raise RenderCancelledError()

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "output_path": self.output_path,
            "elapsed_s": self.elapsed_s,
            "file_size": self.file_size,
            "duration_s": self.duration_s,
            "returncode": self.returncode,
            "error": self.error,
        }


async def emit_progress(callback: Optional[ProgressCallback], percent: int, stage: str) -> None:
    if callback is None:
        return
    result = callback(percent, stage)
    if inspect.isawaitable(result):
        await result


async def _notify(callback: Optional[ProgressCallback], percent: int, stage: str) -> None:
    # Failures are logged only: the stderr pipe has to keep draining
    try:
        await emit_progress(callback, percent, stage)
    except Exception:
        logger.exception(f"[FFMPEG] Progress callback failed at {percent}%")


class TranscoderExecutor:
    """Spawns the transcoder and tracks it to a terminal outcome.

    Two calls targeting the same output path are serialized by a per-path
    lock, so at most one process ever writes a given file.
    """

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        *,
        timeout_s: float = 1800.0,
        kill_grace_s: float = 3.0,
        error_tail_lines: int = 40,
        inspect_media: Optional[Callable[[str], MediaInfo]] = None,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.timeout_s = timeout_s
        self.kill_grace_s = kill_grace_s
        self.error_tail_lines = error_tail_lines
        self._inspect_media = inspect_media or get_media_info
        self._path_locks: dict[str, asyncio.Lock] = {}
        self._path_users: dict[str, int] = {}

    async def execute(
        self,
        spec: CommandSpec,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        stage: str = "Rendering",
    ) -> RenderResult:
        """Run ``spec`` to completion, timeout or cancellation.

        ``on_progress(percent, stage)`` is called with strictly increasing
        values below 100 while the process runs and with 100 once on success.
        """
        key = os.path.abspath(spec.output_path)
        lock = self._path_locks.setdefault(key, asyncio.Lock())
        self._path_users[key] = self._path_users.get(key, 0) + 1
        try:
            async with lock:
                return await self._run(spec, on_progress, cancel_event, stage)
        finally:
            self._path_users[key] -= 1
            if not self._path_users[key]:
                del self._path_users[key]
                del self._path_locks[key]

    async def _run(
        self,
        spec: CommandSpec,
        on_progress: Optional[ProgressCallback],
        cancel_event: Optional[asyncio.Event],
        stage: str,
    ) -> RenderResult:
        started = time.monotonic()
        if cancel_event is not None and cancel_event.is_set():
            return RenderResult(RenderOutcome.CANCELLED, spec.output_path, error="Render cancelled")

        cmd = spec.command(self.ffmpeg_path)
        logger.info(f"[FFMPEG] Spawning: {shlex.join(cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"[FFMPEG] Failed to start {self.ffmpeg_path}: {e}")
            return RenderResult(
                RenderOutcome.FAILED,
                spec.output_path,
                elapsed_s=time.monotonic() - started,
                error=f"Failed to start transcoder {self.ffmpeg_path}: {e}",
            )

        tracker = ProgressTracker(spec.estimated_duration_s, self.error_tail_lines)
        reader = asyncio.create_task(self._read_stderr(proc, tracker, on_progress, stage))
        waiter = asyncio.create_task(proc.wait())
        cancel_waiter = (
            asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        )
        watched = {waiter} if cancel_waiter is None else {waiter, cancel_waiter}

        outcome: RenderOutcome
        try:
            done, _ = await asyncio.wait(
                watched, timeout=self.timeout_s, return_when=asyncio.FIRST_COMPLETED
            )
            if waiter in done:
                outcome = RenderOutcome.COMPLETED if proc.returncode == 0 else RenderOutcome.FAILED
            elif cancel_waiter is not None and cancel_waiter in done:
                logger.info(f"[FFMPEG] Cancelling pid {proc.pid}")
                await self._terminate(proc)
                outcome = RenderOutcome.CANCELLED
            else:
                logger.warning(f"[FFMPEG] Timed out after {self.timeout_s}s, killing pid {proc.pid}")
                await self._terminate(proc)
                outcome = RenderOutcome.TIMEOUT
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if not waiter.done():
                waiter.cancel()
            (read_error,) = await asyncio.gather(reader, return_exceptions=True)
            if isinstance(read_error, Exception):
                logger.error(f"[FFMPEG] Diagnostic reader for pid {proc.pid} failed: {read_error!r}")

        elapsed = time.monotonic() - started
        logger.info(f"[FFMPEG] pid {proc.pid} exited with code {proc.returncode} ({elapsed:.1f}s)")

        if outcome == RenderOutcome.COMPLETED:
            return await self._finish_success(spec, tracker, on_progress, elapsed, proc.returncode)

        self._discard_partial(spec.output_path)
        if outcome == RenderOutcome.FAILED:
            detail = tracker.tail_text()
            logger.error(f"[FFMPEG] Transcoder failed (exit {proc.returncode}):\n{detail}")
            error = f"Transcoder exited with code {proc.returncode}"
            if detail:
                error = f"{error}:\n{detail}"
        elif outcome == RenderOutcome.TIMEOUT:
            error = f"Render timed out after {self.timeout_s:.0f}s"
        else:
            error = "Render cancelled"

        return RenderResult(
            outcome,
            spec.output_path,
            elapsed_s=elapsed,
            returncode=proc.returncode,
            error=error,
        )

    async def _finish_success(
        self,
        spec: CommandSpec,
        tracker: ProgressTracker,
        on_progress: Optional[ProgressCallback],
        elapsed: float,
        returncode: Optional[int],
    ) -> RenderResult:
        if not os.path.exists(spec.output_path):
            return RenderResult(
                RenderOutcome.FAILED,
                spec.output_path,
                elapsed_s=elapsed,
                returncode=returncode,
                error=f"Transcoder exited cleanly but produced no output at {spec.output_path}",
            )

        file_size = os.path.getsize(spec.output_path)
        info: Optional[MediaInfo] = None
        try:
            info = await asyncio.to_thread(self._inspect_media, spec.output_path)
        except RuntimeError as e:
            logger.warning(f"[FFMPEG] Could not read output metadata: {e}")

        expected = (spec.encode_params.width, spec.encode_params.height)
        if info is not None and info.width is not None and info.height is not None:
            if (info.width, info.height) != expected:
                self._discard_partial(spec.output_path)
                error = (
                    f"Output is {info.width}x{info.height}, "
                    f"expected {expected[0]}x{expected[1]}"
                )
                logger.error(f"[FFMPEG] {error}: {spec.output_path}")
                return RenderResult(
                    RenderOutcome.FAILED,
                    spec.output_path,
                    elapsed_s=elapsed,
                    returncode=returncode,
                    error=error,
                )
        duration = info.duration_s if info is not None else None

        # No marker seen at all jumps straight from 0 to 100
        await _notify(on_progress, tracker.complete(), "Completed")
        return RenderResult(
            RenderOutcome.COMPLETED,
            spec.output_path,
            elapsed_s=elapsed,
            file_size=file_size,
            duration_s=duration,
            returncode=returncode,
        )

    async def _read_stderr(
        self,
        proc: asyncio.subprocess.Process,
        tracker: ProgressTracker,
        on_progress: Optional[ProgressCallback],
        stage: str,
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        last_sent = 0
        while True:
            data = await proc.stderr.read(_READ_CHUNK)
            if not data:
                break
            percent = tracker.feed(decoder.decode(data))
            # 100 is reserved for a verified successful exit
            if percent is not None and min(percent, 99) > last_sent:
                last_sent = min(percent, 99)
                logger.debug(f"[FFMPEG] progress {last_sent}%")
                await _notify(on_progress, last_sent, stage)
        tracker.feed(decoder.decode(b"", final=True))
        tracker.flush()

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL if the process ignores it for the grace period."""
        if proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_s)
        except asyncio.TimeoutError:
            logger.warning(f"[FFMPEG] pid {proc.pid} did not terminate, sending SIGKILL")
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    @staticmethod
    def _discard_partial(output_path: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            os.remove(output_path)

    async def check_installation(self) -> dict:
        """Run ``ffmpeg -version`` and report whether it is usable."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.ffmpeg_path,
                "-version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=10)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"[FFMPEG] Installation check failed: {e}")
            return {"installed": False, "version": None, "path": self.ffmpeg_path}

        if proc.returncode != 0:
            return {"installed": False, "version": None, "path": self.ffmpeg_path}

        first_line = stdout.decode("utf-8", errors="replace").splitlines()[:1]
        version = None
        if first_line and first_line[0].startswith("ffmpeg version"):
            version = first_line[0].split()[2]
        return {"installed": True, "version": version, "path": self.ffmpeg_path}
