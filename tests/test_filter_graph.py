"""
Tests for the filter graph builder and its escaping.
"""

import pytest

from shadowstudio.render import filter_graph as fg
from shadowstudio.render.filter_graph import (
    FilterGraph,
    escape_filter_text,
    escape_graph_value,
    escape_option_value,
    ffmpeg_color,
    format_number,
)


def _unescape_once(value: str) -> str:
    """Reference backslash unescape as done by FFmpeg's token parser."""
    out = []
    chars = iter(value)
    for char in chars:
        if char == "\\":
            out.append(next(chars, ""))
        else:
            out.append(char)
    return "".join(out)


class TestEscaping:
    """Two-level escaping for option values embedded in a graph."""

    def test_option_level(self):
        assert escape_option_value("a:b") == "a\\:b"
        assert escape_option_value("don't") == "don\\'t"
        assert escape_option_value("c:\\x") == "c\\:\\\\x"

    def test_graph_level(self):
        assert escape_graph_value("a,b;c[d]") == "a\\,b\\;c\\[d\\]"

    def test_quote_colon_backslash_survive_both_parsers(self):
        """Undoing graph then option escaping yields the original text."""
        text = 'He said: "don\'t stop" \\ [ok], right; 100%'

        escaped = escape_filter_text(text)

        assert _unescape_once(_unescape_once(escaped)) == text

    def test_escaped_text_has_no_bare_separators(self):
        escaped = escape_filter_text("a:b,c;d[e]")
        for separator in (":", ",", ";", "[", "]"):
            index = escaped.index(separator)
            assert escaped[index - 1] == "\\"

    def test_plain_text_unchanged(self):
        assert escape_filter_text("Hello there") == "Hello there"


class TestFormatting:
    """Number and color formatting."""

    def test_format_number(self):
        assert format_number(2.5) == "2.5"
        assert format_number(3.0) == "3"
        assert format_number(0.1 + 0.2) == "0.3"
        assert format_number(7) == "7"

    def test_ffmpeg_color(self):
        assert ffmpeg_color("#1a1a2e") == "0x1A1A2E"
        assert ffmpeg_color("black") == "black"


class TestFilterNode:
    """Single filter serialization."""

    def test_positional_and_keyword_options(self):
        node = fg.pad(1920, 1080, "0x000000")
        assert node.serialize() == "pad=1920:1080:(ow-iw)/2:(oh-ih)/2:color=0x000000"

    def test_scale_with_fit(self):
        node = fg.scale(1080, 1920, fit="decrease")
        assert node.serialize() == (
            "scale=1080:1920:force_original_aspect_ratio=decrease:force_divisible_by=2"
        )

    def test_drawtext_escapes_text(self):
        node = fg.drawtext(
            "a:b",
            fontfile="/fonts/x.ttf",
            fontsize=48,
            fontcolor="0xFFFFFF",
            x="(w-text_w)/2",
            y=100,
        )
        serialized = node.serialize()

        # option level gives a\:b, graph level then doubles the backslash
        assert "text=a\\\\:b" in serialized
        assert "expansion=none" in serialized
        assert "fontfile=/fonts/x.ttf" in serialized
        assert "borderw" not in serialized

    def test_drawtext_uses_family_without_fontfile(self):
        node = fg.drawtext("x", font="Noto Sans KR", fontsize=10, fontcolor="white", x="0", y=0)
        assert "font=Noto Sans KR" in node.serialize()
        assert "fontfile" not in node.serialize()

    def test_bare_filter(self):
        assert fg.FilterNode("null").serialize() == "null"


class TestFilterGraph:
    """Chains, labels and validation."""

    def test_serialize_chains(self):
        graph = FilterGraph()
        graph.add(["0:v"], [fg.setsar(), fg.fps(30)], ["v0"])
        graph.add(["v0", "0:a"], [fg.concat(1)], ["vout", "aout"])

        assert graph.serialize() == (
            "[0:v]setsar=1,fps=30[v0];[v0][0:a]concat=n=1:v=1:a=1[vout][aout]"
        )
        assert len(graph) == 2

    def test_new_label_is_unique(self):
        graph = FilterGraph()
        assert [graph.new_label("v"), graph.new_label("v"), graph.new_label("a")] == ["v0", "v1", "a0"]

    def test_validate_accepts_sinks(self):
        graph = FilterGraph()
        graph.add([], [fg.silence_source(48000, "stereo"), fg.atrim(1.0)], ["aout"])
        graph.validate(["aout"])

    def test_validate_rejects_double_consumption(self):
        graph = FilterGraph()
        graph.add(["0:v"], [fg.setsar()], ["v0"])
        graph.add(["v0"], [fg.fps(30)], ["v1"])
        graph.add(["v0"], [fg.fps(30)], ["v2"])

        with pytest.raises(ValueError, match="more than once"):
            graph.validate(["v1", "v2"])

    def test_validate_rejects_dangling_label(self):
        graph = FilterGraph()
        graph.add(["0:v"], [fg.split(2)], ["a", "b"])

        with pytest.raises(ValueError, match="Unconsumed"):
            graph.validate(["a"])

    def test_empty_chain_rejected(self):
        with pytest.raises(ValueError):
            FilterGraph().add(["0:v"], [], ["v0"])
