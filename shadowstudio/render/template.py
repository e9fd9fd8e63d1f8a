"""Render template model.

A ``RenderTemplate`` describes one rendering intent: output geometry, quality
tier, repeat pattern with per-repeat subtitle visibility, font settings and
the background used for letterbox/pillarbox padding. A ``ClipRef`` is the
read-only clip metadata handed over by the clip catalog.

Templates are immutable. The output resolution is always derived from the
aspect ratio so the compiler and the player agree on output dimensions.
"""

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from shadowstudio.exceptions import InvalidTemplateError

_HEX_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class AspectRatio(Enum):
    """Output aspect ratio."""

    WIDESCREEN = "16:9"
    VERTICAL = "9:16"


RESOLUTIONS: dict[AspectRatio, tuple[int, int]] = {
    AspectRatio.WIDESCREEN: (1920, 1080),
    AspectRatio.VERTICAL: (1080, 1920),
}


class Quality(Enum):
    """Quality tier, mapped to an encoder preset/CRF pair by the compiler."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PatternType(Enum):
    """Repeat pattern."""

    REPEAT_3 = "repeat-3"
    REPEAT_5 = "repeat-5"
    CUSTOM = "custom"


FIXED_REPEAT_COUNTS: dict[PatternType, int] = {
    PatternType.REPEAT_3: 3,
    PatternType.REPEAT_5: 5,
}


class OutputFormat(Enum):
    """Output container."""

    MP4 = "mp4"
    WEBM = "webm"


class SubtitleAnchor(Enum):
    """Where subtitle layers start stacking from."""

    TOP = "top"
    MIDDLE = "middle"
    BOTTOM = "bottom"


class BackgroundType(Enum):
    """Fill used for the padded area around the scaled clip."""

    SOLID = "solid"
    BLUR = "blur"
    GRADIENT = "gradient"


class SubtitleLayer(Enum):
    """Text tracks of a clip, in stacking order."""

    ENGLISH = "english"
    KOREAN = "korean"
    EXPLANATION = "explanation"
    PRONUNCIATION = "pronunciation"


@dataclass(frozen=True)
class ClipRef:
    """Clip metadata supplied by the clip catalog (read-only)."""

    id: str
    title: str
    media_path: str
    duration_s: float
    english: Optional[str] = None
    korean: Optional[str] = None
    explanation: Optional[str] = None
    pronunciation: Optional[str] = None
    has_audio: bool = True

    def text_for(self, layer: SubtitleLayer) -> Optional[str]:
        """Return the text track for a subtitle layer."""
        return getattr(self, layer.value)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClipRef":
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            media_path=data["media_path"],
            duration_s=float(data["duration_s"]),
            english=data.get("english"),
            korean=data.get("korean"),
            explanation=data.get("explanation"),
            pronunciation=data.get("pronunciation"),
            has_audio=data.get("has_audio", True),
        )


@dataclass(frozen=True)
class FontSettings:
    """Global font settings for every subtitle layer."""

    family: str = "Noto Sans KR"
    size: int = 72
    color: str = "#FFFFFF"
    stroke_color: str = "#000000"
    stroke_width: int = 1


@dataclass(frozen=True)
class BackgroundFill:
    """Padding fill. ``gradient_to`` is only used by gradients."""

    type: BackgroundType = BackgroundType.SOLID
    color: str = "#000000"
    gradient_to: str = "#000000"
    blur_strength: int = 20


@dataclass(frozen=True)
class RepeatSettings:
    """Subtitle visibility and trailing pause for one repeat."""

    show_english: bool = True
    show_korean: bool = True
    show_explanation: bool = False
    show_pronunciation: bool = False
    pause_after: float = 1.0

    def enabled_layers(self) -> list[SubtitleLayer]:
        """Enabled layers in stacking order."""
        flags = {
            SubtitleLayer.ENGLISH: self.show_english,
            SubtitleLayer.KOREAN: self.show_korean,
            SubtitleLayer.EXPLANATION: self.show_explanation,
            SubtitleLayer.PRONUNCIATION: self.show_pronunciation,
        }
        return [layer for layer in SubtitleLayer if flags[layer]]


DEFAULT_REPEAT = RepeatSettings()

# English first, then both, then Korean only.
DEFAULT_REPEAT_SCHEDULE: tuple[RepeatSettings, ...] = (
    RepeatSettings(show_english=True, show_korean=False, pause_after=0.5),
    RepeatSettings(show_english=True, show_korean=True, pause_after=1.0),
    RepeatSettings(show_english=False, show_korean=True, pause_after=1.0),
)


@dataclass(frozen=True)
class RenderTemplate:
    """A compiled-once description of how to render a clip."""

    id: str
    name: str = ""
    aspect_ratio: AspectRatio = AspectRatio.WIDESCREEN
    quality: Quality = Quality.MEDIUM
    pattern: PatternType = PatternType.REPEAT_3
    repeat_count: int = 3  # Only used by PatternType.CUSTOM
    repeats: tuple[RepeatSettings, ...] = DEFAULT_REPEAT_SCHEDULE
    font: FontSettings = field(default_factory=FontSettings)
    anchor: SubtitleAnchor = SubtitleAnchor.BOTTOM
    background: BackgroundFill = field(default_factory=BackgroundFill)
    output_format: OutputFormat = OutputFormat.MP4
    category: str = "shadowing"
    description: str = ""

    @property
    def resolution(self) -> tuple[int, int]:
        """(width, height) derived from the aspect ratio."""
        return RESOLUTIONS[self.aspect_ratio]

    @property
    def effective_repeat_count(self) -> int:
        """Number of times the clip plays."""
        if self.pattern in FIXED_REPEAT_COUNTS:
            return FIXED_REPEAT_COUNTS[self.pattern]
        return self.repeat_count

    def repeat_settings(self, index: int) -> RepeatSettings:
        """Settings for the 0-based repeat ``index``.

        Repeats beyond the configured schedule fall back to showing English
        and Korean with the default pause.
        """
        if 0 <= index < len(self.repeats):
            return self.repeats[index]
        return DEFAULT_REPEAT

    def validate(self) -> list[str]:
        """Return every problem with the template (empty when valid)."""
        errors: list[str] = []

        for name, value in (
            ("repeat_count", self.repeat_count),
            ("font.size", self.font.size),
            ("font.stroke_width", self.font.stroke_width),
            ("background.blur_strength", self.background.blur_strength),
        ):
            if not _is_int(value):
                errors.append(f"{name} must be an integer, got {value!r}")
        if errors:
            return errors

        if self.effective_repeat_count < 1:
            errors.append(f"repeat count must be at least 1, got {self.effective_repeat_count}")
        if self.font.size <= 0:
            errors.append(f"font size must be positive, got {self.font.size}")
        if self.font.stroke_width < 0:
            errors.append(f"stroke width must not be negative, got {self.font.stroke_width}")

        for name, value in (
            ("font.color", self.font.color),
            ("font.stroke_color", self.font.stroke_color),
            ("background.color", self.background.color),
            ("background.gradient_to", self.background.gradient_to),
        ):
            if not isinstance(value, str) or not _HEX_COLOR_RE.match(value):
                errors.append(f"{name} must be a #RRGGBB color, got {value!r}")

        for index, repeat in enumerate(self.repeats):
            pause = repeat.pause_after
            if isinstance(pause, bool) or not isinstance(pause, (int, float)):
                errors.append(f"repeat {index + 1}: pause must be a number, got {pause!r}")
            elif pause < 0:
                errors.append(f"repeat {index + 1}: pause must not be negative")

        if self.background.blur_strength <= 0:
            errors.append("background.blur_strength must be positive")

        return errors

    def with_overrides(self, **changes: Any) -> "RenderTemplate":
        """Copy of this template with fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        width, height = self.resolution
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "aspect_ratio": self.aspect_ratio.value,
            "resolution": {"width": width, "height": height},
            "quality": self.quality.value,
            "pattern": self.pattern.value,
            "repeat_count": self.effective_repeat_count,
            "repeats": [
                {
                    "show_english": r.show_english,
                    "show_korean": r.show_korean,
                    "show_explanation": r.show_explanation,
                    "show_pronunciation": r.show_pronunciation,
                    "pause_after": r.pause_after,
                }
                for r in self.repeats
            ],
            "font": {
                "family": self.font.family,
                "size": self.font.size,
                "color": self.font.color,
                "stroke_color": self.font.stroke_color,
                "stroke_width": self.font.stroke_width,
            },
            "anchor": self.anchor.value,
            "background": {
                "type": self.background.type.value,
                "color": self.background.color,
                "gradient_to": self.background.gradient_to,
                "blur_strength": self.background.blur_strength,
            },
            "output_format": self.output_format.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RenderTemplate":
        """Build a template from ``to_dict`` output.

        The ``resolution`` key is ignored: it is always derived.

        Raises:
            ValueError: unknown enum value or a nested object that is not a mapping
            TypeError: unknown nested field
        """
        font = data.get("font") or {}
        background = data.get("background") or {}
        repeats = data.get("repeats")
        for name, value in (("font", font), ("background", background)):
            if not isinstance(value, dict):
                raise ValueError(f"{name} must be an object, got {value!r}")
        if repeats is not None and not (
            isinstance(repeats, (list, tuple)) and all(isinstance(r, dict) for r in repeats)
        ):
            raise ValueError(f"repeats must be a list of objects, got {repeats!r}")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            category=data.get("category", "shadowing"),
            description=data.get("description", ""),
            aspect_ratio=AspectRatio(data.get("aspect_ratio", AspectRatio.WIDESCREEN.value)),
            quality=Quality(data.get("quality", Quality.MEDIUM.value)),
            pattern=PatternType(data.get("pattern", PatternType.REPEAT_3.value)),
            repeat_count=int(data.get("repeat_count", 3)),
            repeats=(
                tuple(RepeatSettings(**r) for r in repeats)
                if repeats is not None
                else DEFAULT_REPEAT_SCHEDULE
            ),
            font=FontSettings(**font),
            anchor=SubtitleAnchor(data.get("anchor", SubtitleAnchor.BOTTOM.value)),
            background=BackgroundFill(
                type=BackgroundType(background.get("type", BackgroundType.SOLID.value)),
                color=background.get("color", "#000000"),
                gradient_to=background.get("gradient_to", "#000000"),
                blur_strength=int(background.get("blur_strength", 20)),
            ),
            output_format=OutputFormat(data.get("output_format", OutputFormat.MP4.value)),
        )


# ============================================================================
# Presets
# ============================================================================


def _preset(
    template_id: str,
    name: str,
    category: str,
    aspect_ratio: AspectRatio,
    font: FontSettings,
    background: BackgroundFill,
    description: str,
    repeats: tuple[RepeatSettings, ...] = DEFAULT_REPEAT_SCHEDULE,
) -> RenderTemplate:
    return RenderTemplate(
        id=template_id,
        name=name,
        category=category,
        aspect_ratio=aspect_ratio,
        font=font,
        background=background,
        description=description,
        repeats=repeats,
    )


TEMPLATE_PRESETS: dict[str, RenderTemplate] = {
    t.id: t
    for t in (
        _preset(
            "shadowing_basic_16_9",
            "Basic shadowing (16:9)",
            "shadowing",
            AspectRatio.WIDESCREEN,
            FontSettings(size=84, stroke_width=1),
            BackgroundFill(color="#000000"),
            "English then Korean, tuned for YouTube",
        ),
        _preset(
            "shadowing_advanced_16_9",
            "Advanced shadowing (16:9)",
            "shadowing",
            AspectRatio.WIDESCREEN,
            FontSettings(size=78, stroke_width=2),
            BackgroundFill(color="#1A1A2E"),
            "Adds pronunciation and explanation for detailed study",
            (
                RepeatSettings(show_english=True, show_korean=False, pause_after=0.5),
                RepeatSettings(show_english=True, show_korean=False, show_pronunciation=True),
                RepeatSettings(show_english=False, show_korean=True, show_explanation=True),
            ),
        ),
        _preset(
            "shadowing_minimal_16_9",
            "Minimal shadowing (16:9)",
            "shadowing",
            AspectRatio.WIDESCREEN,
            FontSettings(size=72, color="#2D3436", stroke_width=0),
            BackgroundFill(color="#F8F9FA"),
            "Subtitles only, clean layout",
        ),
        _preset(
            "shorts_basic_9_16",
            "Basic shorts (9:16)",
            "shorts",
            AspectRatio.VERTICAL,
            FontSettings(size=72, stroke_width=1),
            BackgroundFill(color="#000000"),
            "Vertical layout for shorts and reels",
        ),
        _preset(
            "shorts_colorful_9_16",
            "Colorful shorts (9:16)",
            "shorts",
            AspectRatio.VERTICAL,
            FontSettings(size=68, stroke_width=2),
            BackgroundFill(
                type=BackgroundType.GRADIENT, color="#667EEA", gradient_to="#764BA2"
            ),
            "Gradient background",
        ),
        _preset(
            "shorts_professional_9_16",
            "Professional shorts (9:16)",
            "shorts",
            AspectRatio.VERTICAL,
            FontSettings(size=64, color="#ECF0F1", stroke_color="#34495E", stroke_width=1),
            BackgroundFill(color="#2C3E50"),
            "Calm tone for business and education",
        ),
    )
}


def apply_overrides(template: RenderTemplate, overrides: Optional[dict[str, Any]]) -> RenderTemplate:
    """Copy of ``template`` with top-level field overrides; the id is kept.

    Nested objects (``font``, ``background``) are merged key by key and the
    result is validated.

    Raises:
        InvalidTemplateError: an override cannot be applied or the result is invalid
    """
    if not overrides:
        return template
    data = template.to_dict()
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    data["id"] = template.id
    try:
        result = RenderTemplate.from_dict(data)
    except (TypeError, ValueError) as e:
        raise InvalidTemplateError([f"invalid override: {e}"]) from e
    errors = result.validate()
    if errors:
        raise InvalidTemplateError(errors)
    return result
