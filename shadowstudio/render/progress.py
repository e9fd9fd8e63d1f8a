"""Progress extraction from the transcoder's diagnostic stream.

FFmpeg periodically writes status lines such as::

    frame=  120 fps= 60 q=28.0 size=     256kB time=00:00:04.00 bitrate= 524.3kbits/s

Status updates are terminated by ``\\r`` rather than ``\\n``, so the stream is
split on both and partial lines are buffered until their terminator arrives.
"""

import re
from typing import Optional

TIME_MARKER_RE = re.compile(r"time=(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")


def parse_timestamp(hours: str, minutes: str, seconds: str) -> float:
    """``HH``, ``MM``, ``SS.fraction`` -> seconds."""
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def extract_latest_elapsed(chunk: str) -> Optional[float]:
    """Seconds of the last ``time=`` marker in ``chunk`` (None when absent)."""
    matches = TIME_MARKER_RE.findall(chunk)
    if not matches:
        return None
    return parse_timestamp(*matches[-1])


def percent_of(elapsed_s: float, total_s: float) -> int:
    if total_s <= 0:
        return 0
    return max(0, min(100, round(100 * elapsed_s / total_s)))


class ProgressTracker:
    """Turn diagnostic output into a non-decreasing 0-100 percentage.

    Feed raw decoded chunks as they arrive; ``feed`` returns the new percent
    only when it increased. Complete lines are also kept in a bounded tail for
    error reporting.
    """

    def __init__(self, estimated_total_s: float, tail_lines: int = 40):
        self.estimated_total_s = estimated_total_s
        self.percent = 0
        self.markers_seen = 0
        self._buffer = ""
        self._tail: list[str] = []
        self._tail_limit = tail_lines

    def feed(self, chunk: str) -> Optional[int]:
        """Consume a chunk of stream text, returning the percent if it rose."""
        self._buffer += chunk
        parts = _LINE_SPLIT_RE.split(self._buffer)
        self._buffer = parts.pop()
        return self._consume(parts)

    def flush(self) -> Optional[int]:
        """Consume any trailing partial line at end of stream."""
        if not self._buffer:
            return None
        remaining, self._buffer = self._buffer, ""
        return self._consume([remaining])

    def complete(self) -> int:
        """Mark success: progress reaches exactly 100."""
        self.percent = 100
        return self.percent

    @property
    def tail(self) -> list[str]:
        return list(self._tail)

    def tail_text(self) -> str:
        return "\n".join(self._tail)

    def _consume(self, lines: list[str]) -> Optional[int]:
        latest: Optional[float] = None
        for line in lines:
            if not line.strip():
                continue
            self._remember(line)
            elapsed = extract_latest_elapsed(line)
            if elapsed is not None:
                self.markers_seen += 1
                latest = elapsed
        if latest is None:
            return None

        # Clamp to the previous maximum so out-of-order markers never regress
        candidate = percent_of(latest, self.estimated_total_s)
        if candidate > self.percent:
            self.percent = candidate
            return candidate
        return None

    def _remember(self, line: str) -> None:
        self._tail.append(line)
        if len(self._tail) > self._tail_limit:
            del self._tail[: len(self._tail) - self._tail_limit]
