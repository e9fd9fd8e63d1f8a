"""
Pytest fixtures for shadowstudio tests.

Process-level tests run against a fake transcoder: a small Python script
written into ``tmp_path`` that logs its arguments, prints FFmpeg-style
``time=`` status lines on stderr, writes the output file (last argument) and
exits with a chosen code. No real FFmpeg is required.

Tests that need the real binary are marked with @pytest.mark.requires_ffmpeg
and skipped when it is not on PATH.
"""

import json
import shutil
import stat
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

from shadowstudio.render.template import ClipRef
from shadowstudio.utils.media_info import MediaInfo

FAKE_TRANSCODER_SCRIPT = """#!{python}
import json
import signal
import sys
import time

CALLS = {calls!r}
with open(CALLS, "a", encoding="utf-8") as f:
    f.write(json.dumps(sys.argv[1:]) + "\\n")
with open(CALLS, encoding="utf-8") as f:
    call_number = sum(1 for _ in f)

if {ignore_sigterm!r}:
    signal.signal(signal.SIGTERM, signal.SIG_IGN)

if sys.argv[1:2] == ["-version"]:
    print("ffmpeg version 6.1-fake Copyright (c) 2000-2023 the FFmpeg developers")
    sys.exit(0)

for marker in {markers!r}:
    sys.stderr.write(
        "frame=   10 fps=0.0 q=28.0 size=       0kB time=" + marker + " bitrate=N/A speed=1x\\r"
    )
    sys.stderr.flush()
    time.sleep({marker_delay!r})

time.sleep({hang!r})

if {exit_code!r} != 0 or call_number == {fail_on_call!r}:
    sys.stderr.write("\\nError while filtering: Invalid argument\\n")
    sys.stderr.write("Conversion failed!\\n")
    sys.exit({exit_code!r} or 1)

with open(sys.argv[-1], "wb") as f:
    f.write(b"\\0" * {output_size!r})
sys.exit(0)
"""


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring a real ffmpeg binary on PATH",
    )


@pytest.fixture
def real_ffmpeg() -> str:
    """Path of the real ffmpeg binary; skips the test when it is not installed."""
    path = shutil.which("ffmpeg")
    if path is None:
        pytest.skip("ffmpeg not installed")
    return path


@dataclass
class FakeTranscoder:
    """Handle on a generated fake transcoder script."""

    path: str
    calls_log: Path

    def calls(self) -> list[list[str]]:
        if not self.calls_log.exists():
            return []
        return [json.loads(line) for line in self.calls_log.read_text().splitlines() if line]


@pytest.fixture
def make_transcoder(tmp_path: Path):
    """Factory writing a fake transcoder with the requested behaviour."""
    counter = {"n": 0}

    def factory(
        *,
        markers: tuple[str, ...] = ("00:00:01.00", "00:00:03.80", "00:00:07.60"),
        marker_delay: float = 0.0,
        hang: float = 0.0,
        exit_code: int = 0,
        fail_on_call: int = 0,
        output_size: int = 2048,
        ignore_sigterm: bool = False,
    ) -> FakeTranscoder:
        counter["n"] += 1
        script = tmp_path / f"fake_ffmpeg_{counter['n']}"
        calls_log = tmp_path / f"fake_ffmpeg_{counter['n']}.calls"
        script.write_text(
            FAKE_TRANSCODER_SCRIPT.format(
                python=sys.executable,
                calls=str(calls_log),
                markers=list(markers),
                marker_delay=marker_delay,
                hang=hang,
                exit_code=exit_code,
                fail_on_call=fail_on_call,
                output_size=output_size,
                ignore_sigterm=ignore_sigterm,
            )
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return FakeTranscoder(path=str(script), calls_log=calls_log)

    return factory


@pytest.fixture
def fake_media_info():
    """ffprobe stand-in: a 7.6 second output with unknown dimensions."""

    def media_info(path: str) -> MediaInfo:
        return MediaInfo(duration_s=7.6, has_video=True, has_audio=True)

    return media_info


@pytest.fixture
def sample_clip(tmp_path: Path) -> ClipRef:
    """A 2.2 second clip with every text track filled in."""
    return ClipRef(
        id="clip-1",
        title="Don't stop",
        media_path=str(tmp_path / "media" / "clip-1.mp4"),
        duration_s=2.2,
        english='He said: "don\'t stop"',
        korean="그가 말했다: 멈추지 마",
        explanation="Encouragement; used casually",
        pronunciation="hi sed, dount stap",
    )


@pytest.fixture
def english_only_clip(tmp_path: Path) -> ClipRef:
    return ClipRef(
        id="clip-2",
        title="Hello",
        media_path=str(tmp_path / "media" / "clip-2.mp4"),
        duration_s=1.5,
        english="Hello there",
    )


@pytest.fixture
def temp_output_dir(tmp_path: Path) -> Path:
    """Output directory for rendered files."""
    output_dir = tmp_path / "renders"
    output_dir.mkdir()
    return output_dir
