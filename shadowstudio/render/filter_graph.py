"""Typed FFmpeg filter graph builder.

Filters are appended as ``FilterNode`` objects grouped into labelled chains
and serialized once by ``FilterGraph.serialize``. All escaping happens in this
module so callers never interpolate raw text into the graph.

FFmpeg parses a ``-filter_complex`` value twice:

1. the graph parser splits chains/filters on ``[ ] , ;`` and honours
   backslash escapes and single quotes;
2. each filter's option parser splits ``key=value`` pairs on ``:`` and again
   honours backslash escapes and single quotes.

``escape_filter_text`` applies both levels, so a value such as
``He said: "don't stop"`` reaches the filter byte-for-byte.
"""

from dataclasses import dataclass, field
from typing import Optional, Union

Value = Union[str, int, float]

# Characters the option parser treats specially (backslash must come first)
_OPTION_SPECIAL = ("\\", "'", ":")
# Characters the graph parser treats specially (backslash must come first)
_GRAPH_SPECIAL = ("\\", "'", "[", "]", ",", ";")


def _backslash_escape(value: str, specials: tuple[str, ...]) -> str:
    for char in specials:
        value = value.replace(char, "\\" + char)
    return value


def escape_option_value(value: str) -> str:
    """Escape a value for a filter's key=value option parser."""
    return _backslash_escape(value, _OPTION_SPECIAL)


def escape_graph_value(value: str) -> str:
    """Escape an already option-escaped value for the graph parser."""
    return _backslash_escape(value, _GRAPH_SPECIAL)


def escape_filter_text(value: str) -> str:
    """Escape arbitrary text for embedding as a filter option value."""
    return escape_graph_value(escape_option_value(value))


def format_number(value: Union[int, float]) -> str:
    """Render a number without float noise (``2.5`` stays ``2.5``, ``3.0`` becomes ``3``)."""
    if isinstance(value, float):
        text = f"{value:.6f}".rstrip("0").rstrip(".")
        return text or "0"
    return str(value)


def ffmpeg_color(hex_color: str) -> str:
    """Convert ``#RRGGBB`` to FFmpeg's ``0xRRGGBB`` notation."""
    if hex_color.startswith("#"):
        return "0x" + hex_color[1:].upper()
    return hex_color


@dataclass
class FilterNode:
    """One filter with ordered positional and keyword options."""

    name: str
    positional: list[Value] = field(default_factory=list)
    options: list[tuple[str, Value]] = field(default_factory=list)

    def serialize(self) -> str:
        parts = [self._render(v) for v in self.positional]
        parts.extend(f"{key}={self._render(v)}" for key, v in self.options)
        if not parts:
            return self.name
        return f"{self.name}=" + ":".join(parts)

    @staticmethod
    def _render(value: Value) -> str:
        if isinstance(value, bool):
            return "1" if value else "0"
        if isinstance(value, (int, float)):
            return format_number(value)
        return escape_filter_text(value)


def _node(name: str, *positional: Value, **options: Optional[Value]) -> FilterNode:
    return FilterNode(
        name=name,
        positional=list(positional),
        options=[(k, v) for k, v in options.items() if v is not None],
    )


# ============================================================================
# Filter factories
# ============================================================================


def scale(width: Value, height: Value, *, fit: Optional[str] = None) -> FilterNode:
    """Scale; ``fit`` is ``decrease`` (letterbox) or ``increase`` (cover)."""
    node = _node("scale", width, height, force_original_aspect_ratio=fit)
    if fit is not None:
        node.options.append(("force_divisible_by", 2))
    return node


def pad(width: int, height: int, color: str) -> FilterNode:
    """Pad to exact size, centering the image."""
    return _node("pad", width, height, "(ow-iw)/2", "(oh-ih)/2", color=color)


def crop(width: int, height: int) -> FilterNode:
    return _node("crop", width, height)


def boxblur(radius: int, power: int = 2) -> FilterNode:
    return _node("boxblur", luma_radius=radius, luma_power=power)


def overlay(x: str = "(W-w)/2", y: str = "(H-h)/2") -> FilterNode:
    return _node("overlay", x=x, y=y, shortest=1)


def split(outputs: int = 2) -> FilterNode:
    return _node("split", outputs)


def setsar() -> FilterNode:
    return _node("setsar", 1)


def fps(rate: int) -> FilterNode:
    return _node("fps", rate)


def pixel_format(pix_fmt: str) -> FilterNode:
    return _node("format", pix_fmt)


def setpts() -> FilterNode:
    return _node("setpts", "PTS-STARTPTS")


def asetpts() -> FilterNode:
    return _node("asetpts", "PTS-STARTPTS")


def audio_format(sample_rate: int, channel_layout: str) -> FilterNode:
    return _node("aformat", sample_rates=sample_rate, channel_layouts=channel_layout)


def aresample(sample_rate: int) -> FilterNode:
    return _node("aresample", sample_rate)


def trim(duration: float) -> FilterNode:
    return _node("trim", duration=duration)


def atrim(duration: float) -> FilterNode:
    return _node("atrim", duration=duration)


def concat(segments: int, video: int = 1, audio: int = 1) -> FilterNode:
    return _node("concat", n=segments, v=video, a=audio)


def color_source(color: str, width: int, height: int, rate: int, duration: float) -> FilterNode:
    """Solid color video source."""
    return _node("color", c=color, s=f"{width}x{height}", r=rate, d=duration)


def gradient_source(
    color_from: str, color_to: str, width: int, height: int, rate: int, duration: float
) -> FilterNode:
    """Two-stop linear gradient video source."""
    return _node(
        "gradients",
        s=f"{width}x{height}",
        c0=color_from,
        c1=color_to,
        n=2,
        r=rate,
        d=duration,
        speed=0,
    )


def silence_source(sample_rate: int, channel_layout: str) -> FilterNode:
    """Infinite silent audio source; bound it with ``atrim``."""
    return _node("anullsrc", r=sample_rate, cl=channel_layout)


def drawtext(
    text: str,
    *,
    fontsize: int,
    fontcolor: str,
    x: str,
    y: Value,
    fontfile: Optional[str] = None,
    font: Optional[str] = None,
    bordercolor: Optional[str] = None,
    borderw: Optional[int] = None,
) -> FilterNode:
    """Text-draw filter with expansion disabled so ``%`` stays literal.

    ``fontfile`` wins over the fontconfig family name ``font``.
    """
    return _node(
        "drawtext",
        fontfile=fontfile or None,
        font=None if fontfile else font,
        text=text,
        expansion="none",
        fontsize=fontsize,
        fontcolor=fontcolor,
        bordercolor=bordercolor if borderw else None,
        borderw=borderw or None,
        x=x,
        y=y,
    )


# ============================================================================
# Graph
# ============================================================================


@dataclass
class FilterChain:
    """Filters applied in sequence from input labels to output labels."""

    inputs: list[str]
    filters: list[FilterNode]
    outputs: list[str]

    def serialize(self) -> str:
        head = "".join(f"[{label}]" for label in self.inputs)
        tail = "".join(f"[{label}]" for label in self.outputs)
        body = ",".join(f.serialize() for f in self.filters)
        return f"{head}{body}{tail}"


class FilterGraph:
    """Ordered collection of filter chains.

    Labels produced by one chain may be consumed by at most one later chain;
    ``validate`` checks this before serialization.
    """

    def __init__(self) -> None:
        self._chains: list[FilterChain] = []
        self._label_counts: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._chains)

    @property
    def chains(self) -> list[FilterChain]:
        return list(self._chains)

    def new_label(self, prefix: str) -> str:
        """Unique label with the given prefix (``v0``, ``v1`` ...)."""
        index = self._label_counts.get(prefix, 0)
        self._label_counts[prefix] = index + 1
        return f"{prefix}{index}"

    def add(
        self,
        inputs: list[str],
        filters: list[FilterNode],
        outputs: list[str],
    ) -> "FilterGraph":
        if not filters:
            raise ValueError("A filter chain needs at least one filter")
        self._chains.append(FilterChain(list(inputs), list(filters), list(outputs)))
        return self

    def filters_named(self, name: str) -> list[FilterNode]:
        """All filter nodes with the given name, in graph order."""
        return [f for chain in self._chains for f in chain.filters if f.name == name]

    def validate(self, sinks: list[str]) -> None:
        """Check every produced label is consumed once (or mapped as a sink).

        Input stream references such as ``0:v`` are not produced by the graph
        and are allowed to appear as chain inputs.
        """
        produced: set[str] = set()
        consumed: set[str] = set()
        for chain in self._chains:
            for label in chain.inputs:
                if ":" in label:
                    continue
                if label not in produced:
                    raise ValueError(f"Label [{label}] consumed before it is produced")
                if label in consumed:
                    raise ValueError(f"Label [{label}] consumed more than once")
                consumed.add(label)
            for label in chain.outputs:
                if label in produced:
                    raise ValueError(f"Label [{label}] produced more than once")
                produced.add(label)

        dangling = produced - consumed - set(sinks)
        if dangling:
            raise ValueError(f"Unconsumed labels: {sorted(dangling)}")
        missing = set(sinks) - produced
        if missing:
            raise ValueError(f"Sink labels never produced: {sorted(missing)}")

    def serialize(self) -> str:
        return ";".join(chain.serialize() for chain in self._chains)
