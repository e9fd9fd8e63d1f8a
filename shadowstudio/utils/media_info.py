"""Media probing with ffprobe."""

import json
import subprocess
from dataclasses import dataclass
from fractions import Fraction
from typing import Optional

from shadowstudio.config import get_settings


@dataclass
class MediaInfo:
    """Properties of a rendered or source media file."""

    duration_s: float | None = None
    width: int | None = None
    height: int | None = None
    fps: float | None = None
    video_codec: str | None = None
    audio_codec: str | None = None
    sample_rate: int | None = None
    channels: int | None = None
    has_video: bool = False
    has_audio: bool = False


def _run_ffprobe(file_path: str, *args, ffprobe_path: Optional[str] = None) -> dict:
    """Run ffprobe and return parsed JSON."""
    cmd = [
        ffprobe_path or get_settings().ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        *args,
        file_path,
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise RuntimeError(f"Cannot run {cmd[0]}: {e}") from e
    if result.returncode != 0:
        raise RuntimeError(f"ffprobe failed for {file_path}: {result.stderr.strip()}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"Failed to parse ffprobe output: {e}") from e


def has_audio_track(file_path: str, ffprobe_path: Optional[str] = None) -> bool:
    """
    True when the file carries at least one audio stream.

    Raises:
        RuntimeError: If ffprobe fails
    """
    data = _run_ffprobe(
        file_path, "-show_streams", "-select_streams", "a", ffprobe_path=ffprobe_path
    )
    return len(data.get("streams", [])) > 0


def _parse_frame_rate(value: str) -> Optional[float]:
    try:
        rate = Fraction(value)
    except (ValueError, ZeroDivisionError):
        return None
    return round(float(rate), 3) if rate > 0 else None


def get_media_info(file_path: str, ffprobe_path: Optional[str] = None) -> MediaInfo:
    """
    Get complete media file information.

    Raises:
        RuntimeError: If ffprobe fails
    """
    data = _run_ffprobe(file_path, "-show_format", "-show_streams", ffprobe_path=ffprobe_path)
    info = MediaInfo()

    format_info = data.get("format", {})
    if "duration" in format_info:
        info.duration_s = float(format_info["duration"])

    for stream in data.get("streams", []):
        codec_type = stream.get("codec_type")

        if codec_type == "video" and not info.has_video:
            info.has_video = True
            info.width = stream.get("width")
            info.height = stream.get("height")
            info.video_codec = stream.get("codec_name")
            info.fps = _parse_frame_rate(stream.get("r_frame_rate", "0/1"))

        elif codec_type == "audio" and not info.has_audio:
            info.has_audio = True
            info.audio_codec = stream.get("codec_name")
            info.sample_rate = int(stream.get("sample_rate", 0)) or None
            info.channels = stream.get("channels")

    return info
