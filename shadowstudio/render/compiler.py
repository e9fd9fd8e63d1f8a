"""Filter graph compiler.

Turns a ``ClipRef`` and a ``RenderTemplate`` into the argument list for one
transcoder invocation. Compilation is pure: no files are touched and no
process is spawned, so every error raised here is a caller error surfaced
before a job exists.

Output layout for a template with N repeats::

    [repeat 1][pause][repeat 2][pause] ... [repeat N]

Each repeat reads its own ``-i`` copy of the source, is scaled to fit and
padded to the exact template resolution, gets that repeat's subtitle layers
drawn on top, and has its audio normalized. Pauses are black (background
colored) frames with silence. Video and audio segments are concatenated
pairwise by a single ``concat`` filter so both streams always carry the same
segment count and order.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from shadowstudio.exceptions import (
    CompilationError,
    InvalidRepeatCountError,
    InvalidTemplateError,
    MissingSubtitleTextError,
)
from shadowstudio.render import filter_graph as fg
from shadowstudio.render.filter_graph import FilterGraph, ffmpeg_color, format_number
from shadowstudio.render.template import (
    BackgroundType,
    ClipRef,
    OutputFormat,
    Quality,
    RenderTemplate,
    RepeatSettings,
    SubtitleAnchor,
)
from shadowstudio.schemas.envelope import ErrorLocation

logger = logging.getLogger(__name__)

# Fixed output constants (broad playback compatibility, not user-configurable)
FRAME_RATE = 30
PIXEL_FORMAT = "yuv420p"
AUDIO_SAMPLE_RATE = 48000
AUDIO_CHANNELS = 2
AUDIO_CHANNEL_LAYOUT = "stereo"

# Subtitle layout
SUBTITLE_LINE_GAP = 24  # Pixels between stacked layers
SUBTITLE_EDGE_RATIO = 0.08  # Distance from the anchored frame edge

BASE_ARGS = ("-hide_banner", "-nostdin", "-y")

# Quality tier -> (x264 preset, CRF)
QUALITY_PRESETS: dict[Quality, tuple[str, int]] = {
    Quality.HIGH: ("slow", 18),
    Quality.MEDIUM: ("medium", 23),
    Quality.LOW: ("fast", 28),
}

# Quality tier -> (VP9 cpu-used, CRF)
VP9_QUALITY_PRESETS: dict[Quality, tuple[str, int]] = {
    Quality.HIGH: ("1", 24),
    Quality.MEDIUM: ("2", 31),
    Quality.LOW: ("4", 37),
}


@dataclass(frozen=True)
class EncodeParams:
    """Everything that must match for segments to be stream-copy merged."""

    container: str
    video_codec: str
    audio_codec: str
    preset: str
    crf: int
    width: int
    height: int
    frame_rate: int = FRAME_RATE
    pix_fmt: str = PIXEL_FORMAT
    sample_rate: int = AUDIO_SAMPLE_RATE
    channels: int = AUDIO_CHANNELS

    def to_args(self) -> list[str]:
        """Encoder arguments placed before the output path."""
        if self.container == OutputFormat.WEBM.value:
            video = [
                "-c:v", self.video_codec,
                "-deadline", "good",
                "-cpu-used", self.preset,
                "-crf", str(self.crf),
                "-b:v", "0",
            ]
            audio = ["-c:a", self.audio_codec, "-b:a", "128k"]
            container = []
        else:
            video = [
                "-c:v", self.video_codec,
                "-preset", self.preset,
                "-crf", str(self.crf),
            ]
            audio = ["-c:a", self.audio_codec, "-b:a", "192k"]
            container = ["-movflags", "+faststart"]

        return [
            *video,
            "-pix_fmt", self.pix_fmt,
            "-r", str(self.frame_rate),
            *audio,
            "-ar", str(self.sample_rate),
            "-ac", str(self.channels),
            *container,
        ]


@dataclass(frozen=True)
class CommandSpec:
    """Compiled transcoder invocation (arguments exclude the executable)."""

    args: tuple[str, ...]
    output_path: str
    estimated_duration_s: float
    encode_params: EncodeParams
    filter_graph: str = ""
    clip_id: Optional[str] = None

    def command(self, ffmpeg_path: str) -> list[str]:
        return [ffmpeg_path, *self.args]


def encode_params_for(template: RenderTemplate) -> EncodeParams:
    """Deterministic encode parameters for a template."""
    width, height = template.resolution
    if template.output_format == OutputFormat.WEBM:
        cpu_used, crf = VP9_QUALITY_PRESETS[template.quality]
        return EncodeParams(
            container=OutputFormat.WEBM.value,
            video_codec="libvpx-vp9",
            audio_codec="libopus",
            preset=cpu_used,
            crf=crf,
            width=width,
            height=height,
        )
    preset, crf = QUALITY_PRESETS[template.quality]
    return EncodeParams(
        container=OutputFormat.MP4.value,
        video_codec="libx264",
        audio_codec="aac",
        preset=preset,
        crf=crf,
        width=width,
        height=height,
    )


def estimate_duration(clip_duration_s: float, template: RenderTemplate) -> float:
    """N * D plus the pause after every repeat except the last."""
    count = template.effective_repeat_count
    pauses = sum(template.repeat_settings(i).pause_after for i in range(count - 1))
    return round(count * clip_duration_s + pauses, 6)


def subtitle_positions(
    anchor: SubtitleAnchor, layer_count: int, font_size: int, frame_height: int
) -> list[int]:
    """Top y coordinate of each stacked layer, in stacking order.

    Bottom anchoring stacks upward from the lower edge, top anchoring stacks
    downward from the upper edge and middle centres the whole block.
    """
    step = font_size + SUBTITLE_LINE_GAP
    edge = int(frame_height * SUBTITLE_EDGE_RATIO)

    if anchor == SubtitleAnchor.BOTTOM:
        first = frame_height - edge - font_size
        return [first - i * step for i in range(layer_count)]
    if anchor == SubtitleAnchor.TOP:
        return [edge + i * step for i in range(layer_count)]

    block = layer_count * font_size + max(layer_count - 1, 0) * SUBTITLE_LINE_GAP
    first = (frame_height - block) // 2
    return [first + i * step for i in range(layer_count)]


def _check_inputs(clip: ClipRef, template: RenderTemplate) -> None:
    count = template.effective_repeat_count
    if count < 1:
        raise InvalidRepeatCountError(count)

    errors = template.validate()
    if errors:
        raise InvalidTemplateError(errors)

    if not clip.media_path:
        raise CompilationError(
            f"Clip {clip.id} has no media path",
            location=ErrorLocation(field="media_path", clip_id=clip.id),
        )
    if clip.duration_s <= 0:
        raise CompilationError(
            f"Clip {clip.id} has a non-positive duration: {clip.duration_s}",
            location=ErrorLocation(field="duration_s", clip_id=clip.id),
        )

    for index in range(count):
        for layer in template.repeat_settings(index).enabled_layers():
            text = clip.text_for(layer)
            if text is None or not text.strip():
                raise MissingSubtitleTextError(layer.value, clip.id, index + 1)


def _subtitle_filters(
    clip: ClipRef,
    template: RenderTemplate,
    settings: RepeatSettings,
    font_path: str,
) -> list[fg.FilterNode]:
    _, height = template.resolution
    layers = settings.enabled_layers()
    positions = subtitle_positions(template.anchor, len(layers), template.font.size, height)
    font = template.font
    return [
        fg.drawtext(
            clip.text_for(layer),
            fontfile=font_path,
            font=font.family,
            fontsize=font.size,
            fontcolor=ffmpeg_color(font.color),
            bordercolor=ffmpeg_color(font.stroke_color),
            borderw=font.stroke_width,
            x="(w-text_w)/2",
            y=y,
        )
        for layer, y in zip(layers, positions)
    ]


def _add_repeat_video(
    graph: FilterGraph,
    index: int,
    clip: ClipRef,
    template: RenderTemplate,
    font_path: str,
) -> str:
    """Scale/pad one repeat to the exact output size and draw its subtitles."""
    width, height = template.resolution
    background = template.background
    out = graph.new_label("v")
    source = [fg.trim(clip.duration_s), fg.setpts()]
    finish = [
        fg.setsar(),
        fg.fps(FRAME_RATE),
        fg.pixel_format(PIXEL_FORMAT),
        *_subtitle_filters(clip, template, template.repeat_settings(index), font_path),
    ]

    if background.type == BackgroundType.BLUR:
        bg, fgr, blurred = graph.new_label("bg"), graph.new_label("fg"), graph.new_label("bgb")
        graph.add([f"{index}:v"], [*source, fg.split(2)], [bg, fgr])
        graph.add(
            [bg],
            [
                fg.scale(width, height, fit="increase"),
                fg.crop(width, height),
                fg.boxblur(background.blur_strength),
            ],
            [blurred],
        )
        scaled = graph.new_label("fgs")
        graph.add([fgr], [fg.scale(width, height, fit="decrease")], [scaled])
        graph.add([blurred, scaled], [fg.overlay(), *finish], [out])
    elif background.type == BackgroundType.GRADIENT:
        bg, scaled = graph.new_label("bg"), graph.new_label("fgs")
        graph.add(
            [],
            [
                fg.gradient_source(
                    ffmpeg_color(background.color),
                    ffmpeg_color(background.gradient_to),
                    width,
                    height,
                    FRAME_RATE,
                    clip.duration_s,
                )
            ],
            [bg],
        )
        graph.add([f"{index}:v"], [*source, fg.scale(width, height, fit="decrease")], [scaled])
        graph.add([bg, scaled], [fg.overlay(), *finish], [out])
    else:
        graph.add(
            [f"{index}:v"],
            [
                *source,
                fg.scale(width, height, fit="decrease"),
                fg.pad(width, height, ffmpeg_color(background.color)),
                *finish,
            ],
            [out],
        )
    return out


def _add_repeat_audio(graph: FilterGraph, index: int, clip: ClipRef) -> str:
    """Normalize one repeat's audio, or synthesize silence for silent clips."""
    out = graph.new_label("a")
    normalize = [
        fg.atrim(clip.duration_s),
        fg.asetpts(),
        fg.aresample(AUDIO_SAMPLE_RATE),
        fg.audio_format(AUDIO_SAMPLE_RATE, AUDIO_CHANNEL_LAYOUT),
    ]
    if clip.has_audio:
        graph.add([f"{index}:a"], normalize, [out])
    else:
        graph.add(
            [],
            [fg.silence_source(AUDIO_SAMPLE_RATE, AUDIO_CHANNEL_LAYOUT), *normalize],
            [out],
        )
    return out


def _add_pause(graph: FilterGraph, template: RenderTemplate, duration: float) -> tuple[str, str]:
    width, height = template.resolution
    video, audio = graph.new_label("pv"), graph.new_label("pa")
    graph.add(
        [],
        [
            fg.color_source(
                ffmpeg_color(template.background.color), width, height, FRAME_RATE, duration
            ),
            fg.setsar(),
            fg.pixel_format(PIXEL_FORMAT),
        ],
        [video],
    )
    graph.add(
        [],
        [
            fg.silence_source(AUDIO_SAMPLE_RATE, AUDIO_CHANNEL_LAYOUT),
            fg.atrim(duration),
            fg.asetpts(),
        ],
        [audio],
    )
    return video, audio


def build_filter_graph(clip: ClipRef, template: RenderTemplate, font_path: str = "") -> FilterGraph:
    """Filter graph for ``clip`` rendered with ``template``.

    Input ``i`` must be the clip's media for repeat ``i``. The graph exposes
    ``[vout]`` and ``[aout]``.
    """
    graph = FilterGraph()
    count = template.effective_repeat_count
    segments: list[str] = []

    for index in range(count):
        segments.append(_add_repeat_video(graph, index, clip, template, font_path))
        segments.append(_add_repeat_audio(graph, index, clip))
        pause = template.repeat_settings(index).pause_after
        if index < count - 1 and pause > 0:
            segments.extend(_add_pause(graph, template, pause))

    graph.add(segments, [fg.concat(len(segments) // 2)], ["vout", "aout"])
    graph.validate(["vout", "aout"])
    return graph


def compile_render(
    clip: ClipRef,
    template: RenderTemplate,
    output_path: str,
    *,
    font_path: str = "",
) -> CommandSpec:
    """Compile a single-clip render.

    Raises:
        InvalidRepeatCountError: repeat count below 1
        InvalidTemplateError: template fails validation
        MissingSubtitleTextError: an enabled layer has no text in the clip
        CompilationError: clip has no media or a non-positive duration
    """
    _check_inputs(clip, template)

    graph = build_filter_graph(clip, template, font_path)
    filter_complex = graph.serialize()
    params = encode_params_for(template)
    count = template.effective_repeat_count

    inputs: list[str] = []
    for _ in range(count):
        inputs.extend(["-i", clip.media_path])

    args = (
        *BASE_ARGS,
        *inputs,
        "-filter_complex", filter_complex,
        "-map", "[vout]",
        "-map", "[aout]",
        *params.to_args(),
        output_path,
    )
    estimated = estimate_duration(clip.duration_s, template)

    logger.info(
        f"[COMPILE] clip={clip.id} template={template.id} repeats={count} "
        f"{params.width}x{params.height} {params.container} estimated={format_number(estimated)}s"
    )
    logger.debug(f"[COMPILE] filter_complex: {filter_complex}")

    return CommandSpec(
        args=args,
        output_path=output_path,
        estimated_duration_s=estimated,
        encode_params=params,
        filter_graph=filter_complex,
        clip_id=clip.id,
    )


def format_concat_manifest(segment_paths: list[str]) -> str:
    """Concat demuxer list; single quotes in paths are escaped as ``'\\''``."""
    lines = []
    for path in segment_paths:
        escaped = path.replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    return "\n".join(lines) + "\n"


def compile_concat(
    manifest_path: str,
    output_path: str,
    encode_params: EncodeParams,
    estimated_duration_s: float,
) -> CommandSpec:
    """Stream-copy merge of already encoded segments listed in a manifest."""
    container = ["-movflags", "+faststart"] if encode_params.container == OutputFormat.MP4.value else []
    args = (
        *BASE_ARGS,
        "-f", "concat",
        "-safe", "0",
        "-i", manifest_path,
        "-c", "copy",
        *container,
        output_path,
    )
    return CommandSpec(
        args=args,
        output_path=output_path,
        estimated_duration_s=estimated_duration_s,
        encode_params=encode_params,
    )
