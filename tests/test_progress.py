"""
Tests for progress extraction from transcoder diagnostics.
"""

import pytest

from shadowstudio.render.progress import (
    ProgressTracker,
    extract_latest_elapsed,
    parse_timestamp,
    percent_of,
)

STATUS = "frame=  60 fps= 30 q=28.0 size=     128kB time={} bitrate= 512.0kbits/s speed=1x"


class TestParsing:
    """time= markers and percentages."""

    def test_parse_timestamp(self):
        assert parse_timestamp("01", "02", "03.50") == pytest.approx(3723.5)

    def test_latest_marker_wins(self):
        chunk = STATUS.format("00:00:01.00") + "\r" + STATUS.format("00:00:03.80")
        assert extract_latest_elapsed(chunk) == pytest.approx(3.8)

    def test_no_marker(self):
        assert extract_latest_elapsed("Input #0, mov,mp4,m4a,3gp") is None

    def test_percent_of(self):
        assert percent_of(3.8, 7.6) == 50
        assert percent_of(9.0, 7.6) == 100
        assert percent_of(1.0, 0) == 0


class TestProgressTracker:
    """Streaming tracker behaviour."""

    def test_example_sequence(self):
        """Markers at 1.0, 3.8 and 7.6 of a 7.6s output."""
        tracker = ProgressTracker(7.6)

        values = [
            tracker.feed(STATUS.format(marker) + "\r")
            for marker in ("00:00:01.00", "00:00:03.80", "00:00:07.60")
        ]

        assert values == [13, 50, 100]
        assert tracker.markers_seen == 3

    def test_partial_line_is_buffered(self):
        tracker = ProgressTracker(10.0)
        line = STATUS.format("00:00:05.00")

        assert tracker.feed(line[:40]) is None
        assert tracker.feed(line[40:]) is None
        assert tracker.feed("\r") == 50

    def test_never_regresses(self):
        tracker = ProgressTracker(10.0)

        assert tracker.feed(STATUS.format("00:00:06.00") + "\n") == 60
        assert tracker.feed(STATUS.format("00:00:02.00") + "\n") is None
        assert tracker.percent == 60

    def test_unchanged_value_not_reported(self):
        tracker = ProgressTracker(100.0)

        assert tracker.feed(STATUS.format("00:00:10.00") + "\r") == 10
        assert tracker.feed(STATUS.format("00:00:10.20") + "\r") is None

    def test_flush_consumes_trailing_line(self):
        tracker = ProgressTracker(4.0)
        tracker.feed(STATUS.format("00:00:02.00"))

        assert tracker.flush() == 50
        assert tracker.flush() is None

    def test_complete_sets_100(self):
        tracker = ProgressTracker(4.0)
        assert tracker.complete() == 100
        assert tracker.percent == 100

    def test_tail_keeps_last_lines(self):
        tracker = ProgressTracker(1.0, tail_lines=3)

        tracker.feed("".join(f"line {i}\n" for i in range(10)))

        assert tracker.tail == ["line 7", "line 8", "line 9"]
        assert tracker.tail_text() == "line 7\nline 8\nline 9"

    def test_blank_lines_ignored(self):
        tracker = ProgressTracker(1.0)
        tracker.feed("\r\n\r\n")
        assert tracker.tail == []
